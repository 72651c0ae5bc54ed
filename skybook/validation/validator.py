"""
Search and passenger validation

Stateless rules that reject malformed or inconsistent search parameters and
passenger records before any provider call is made. Accepts raw intent
arguments (dicts) as well as parsed models, because the input may be invalid
enough that it cannot be parsed into a model at all.
"""

from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from datetime import date
from pydantic import BaseModel
import re

from skybook.errors import FieldError
from skybook.types import TimeWindow
from skybook.utils.dates import add_months, age_on, parse_iso_date, today as business_today


TIME_OF_DAY_WINDOWS: Dict[str, TimeWindow] = {
    "morning": TimeWindow(from_="06:00", to="12:00"),
    "afternoon": TimeWindow(from_="12:00", to="17:00"),
    "evening": TimeWindow(from_="17:00", to="21:00"),
    "night": TimeWindow(from_="21:00", to="23:59"),
    "red_eye": TimeWindow(from_="23:00", to="05:00"),
}

# Order matters: longer phrases must be checked before the phrases they contain.
_NAMED_TIME_PREFERENCES = [
    ("early morning", TimeWindow(from_="05:00", to="08:00")),
    ("late night", TimeWindow(from_="22:00", to="23:59")),
    ("red eye", TimeWindow(from_="23:00", to="05:00")),
    ("red-eye", TimeWindow(from_="23:00", to="05:00")),
    ("business hours", TimeWindow(from_="08:00", to="18:00")),
    ("morning", TimeWindow(from_="06:00", to="12:00")),
    ("afternoon", TimeWindow(from_="12:00", to="17:00")),
    ("evening", TimeWindow(from_="17:00", to="21:00")),
    ("night", TimeWindow(from_="21:00", to="23:59")),
    ("daytime", TimeWindow(from_="06:00", to="18:00")),
]


class ValidationReport(BaseModel):
    """Result of a validation pass. Warnings never block."""
    errors: List[FieldError] = []
    warnings: List[str] = []

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def fields(self) -> List[str]:
        return [e.field for e in self.errors]


_FEMALE_TITLES = {"mrs", "ms", "miss"}


def resolve_gender(gender: Any, title: Any) -> Optional[str]:
    """Provider gender code from an explicit gender, else from the title. None when neither tells."""
    explicit = str(gender or "").strip().lower()
    if explicit in ("male", "m"):
        return "m"
    if explicit in ("female", "f"):
        return "f"
    honorific = str(title or "").strip().lower().rstrip(".")
    if honorific == "mr":
        return "m"
    if honorific in _FEMALE_TITLES:
        return "f"
    return None


def _as_mapping(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True)
    return value


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class SearchValidator:
    """Pure validation rules for flight searches and passenger details"""

    def __init__(self, clock: Optional[Callable[[], date]] = None):
        self.airport_code_pattern = re.compile(r"^[A-Z]{3}$")
        self.time_pattern = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")
        self.email_pattern = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
        self._clock = clock or business_today

    def validate(self, params: Any) -> ValidationReport:
        """Validate search parameters; never calls external services."""
        p: Mapping[str, Any] = _as_mapping(params) or {}
        errors: List[FieldError] = []
        warnings: List[str] = []

        trip_type = p.get("trip_type") or p.get("type") or "one_way"

        # 1. Airports
        errors.extend(self._validate_airports(p))

        # 2. Dates
        errors.extend(self._validate_dates(p, trip_type))

        # 3. Time windows
        for name in ("departure_time", "arrival_time"):
            if p.get(name) is not None:
                errors.extend(self.validate_time_range(p[name], name))

        # 4. Trip type specifics
        if trip_type == "round_trip" and not p.get("return_date"):
            errors.append(FieldError(field="return_date", message="Return date is required for round-trip flights"))
        if trip_type == "multi_city":
            errors.extend(self._validate_multi_city(p))

        # 5. Passengers
        errors.extend(self.validate_passenger_counts(p.get("passengers")))

        # 6. Connections
        max_connections = p.get("max_connections")
        if max_connections is not None:
            if not _is_int(max_connections) or max_connections < 0 or max_connections > 3:
                errors.append(FieldError(field="max_connections", message="Max connections must be between 0 and 3"))

        # 7. Non-blocking warnings
        warnings.extend(self._departure_warnings(p))

        return ValidationReport(errors=errors, warnings=warnings)

    def _validate_airports(self, p: Mapping[str, Any]) -> List[FieldError]:
        errors = []
        origin = p.get("origin")
        destination = p.get("destination")

        if not origin:
            errors.append(FieldError(field="origin", message="Origin airport is required"))
        elif not self.is_valid_airport_code(origin):
            errors.append(FieldError(field="origin", message="Invalid origin airport code format"))

        if not destination:
            errors.append(FieldError(field="destination", message="Destination airport is required"))
        elif not self.is_valid_airport_code(destination):
            errors.append(FieldError(field="destination", message="Invalid destination airport code format"))

        if origin and destination and origin == destination:
            errors.append(FieldError(field="destination", message="Origin and destination cannot be the same"))

        return errors

    def _validate_dates(self, p: Mapping[str, Any], trip_type: str) -> List[FieldError]:
        errors = []

        if not p.get("departure_date"):
            errors.append(FieldError(field="departure_date", message="Departure date is required"))
            return errors

        dep = parse_iso_date(p["departure_date"])
        if dep is None:
            errors.append(FieldError(field="departure_date", message="Invalid departure date format"))
            return errors

        if dep < self._clock():
            errors.append(FieldError(field="departure_date", message="Departure date must be in the future"))

        if trip_type == "round_trip" and p.get("return_date"):
            ret = parse_iso_date(p["return_date"])
            if ret is None:
                errors.append(FieldError(field="return_date", message="Invalid return date format"))
            elif ret <= dep:
                errors.append(FieldError(field="return_date", message="Return date must be after departure date"))

        return errors

    def validate_time_range(self, time_range: Any, field_name: str) -> List[FieldError]:
        """HH:MM window, ``from`` strictly before ``to``. Overnight ranges are rejected here."""
        errors = []
        tr = _as_mapping(time_range)

        if not isinstance(tr, Mapping):
            errors.append(FieldError(field=field_name, message="Time range must be an object with from and to properties"))
            return errors

        start = tr.get("from") or tr.get("from_")
        end = tr.get("to")
        if not start or not end:
            errors.append(FieldError(field=field_name, message="Time range must have both from and to times"))
            return errors

        if not self.time_pattern.match(str(start)):
            errors.append(FieldError(field=field_name, message='Invalid "from" time format. Use HH:MM format'))
        if not self.time_pattern.match(str(end)):
            errors.append(FieldError(field=field_name, message='Invalid "to" time format. Use HH:MM format'))

        if not errors and self.time_to_minutes(start) >= self.time_to_minutes(end):
            errors.append(FieldError(field=field_name, message='"From" time must be before "to" time'))

        return errors

    def _validate_multi_city(self, p: Mapping[str, Any]) -> List[FieldError]:
        errors = []
        stops = p.get("additional_stops")

        if not isinstance(stops, (list, tuple)):
            errors.append(FieldError(field="additional_stops", message="Additional stops are required for multi-city trips"))
            return errors
        if len(stops) == 0:
            errors.append(FieldError(field="additional_stops", message="At least one additional stop is required for multi-city trips"))
            return errors

        chain = [{"origin": p.get("origin"), "destination": p.get("destination"), "departure_date": p.get("departure_date")}]
        chain.extend(_as_mapping(s) or {} for s in stops)

        for i, segment in enumerate(chain):
            # The first segment's codes are reported under origin/destination already
            if i > 0:
                if not self.is_valid_airport_code(segment.get("origin")):
                    errors.append(FieldError(field="additional_stops", message=f"Invalid airport code in segment {i + 1} origin"))
                if not self.is_valid_airport_code(segment.get("destination")):
                    errors.append(FieldError(field="additional_stops", message=f"Invalid airport code in segment {i + 1} destination"))
                if segment.get("origin") and segment.get("origin") == segment.get("destination"):
                    errors.append(FieldError(field="additional_stops", message=f"Segment {i + 1} origin and destination cannot be the same"))

            if i == len(chain) - 1:
                break
            nxt = chain[i + 1]

            if segment.get("destination") != nxt.get("origin"):
                errors.append(FieldError(
                    field="additional_stops",
                    message=f"Segment {i + 1} destination doesn't match segment {i + 2} origin",
                ))

            current_date = parse_iso_date(segment.get("departure_date") or segment.get("date"))
            next_date = parse_iso_date(nxt.get("departure_date") or nxt.get("date"))
            if next_date is None:
                errors.append(FieldError(field="additional_stops", message=f"Segment {i + 2} departure date is missing or invalid"))
            elif current_date is not None and next_date <= current_date:
                errors.append(FieldError(
                    field="additional_stops",
                    message=f"Segment {i + 2} departure must be after segment {i + 1}",
                ))

        return errors

    def validate_passenger_counts(self, passengers: Any) -> List[FieldError]:
        errors = []
        pax = _as_mapping(passengers)

        if not isinstance(pax, Mapping):
            errors.append(FieldError(field="passengers", message="Passengers must be specified"))
            return errors

        adults = pax.get("adults", 0)
        children = pax.get("children", 0)
        infants = pax.get("infants", 0)

        if not _is_int(adults) or adults < 1:
            errors.append(FieldError(field="passengers.adults", message="At least one adult passenger is required"))
        if not _is_int(children) or children < 0:
            errors.append(FieldError(field="passengers.children", message="Number of children must be a non-negative integer"))
        if not _is_int(infants) or infants < 0:
            errors.append(FieldError(field="passengers.infants", message="Number of infants must be a non-negative integer"))

        if errors:
            return errors

        if adults + children + infants > 9:
            errors.append(FieldError(field="passengers", message="Maximum 9 passengers allowed"))
        if infants > adults:
            errors.append(FieldError(field="passengers.infants", message="Number of infants cannot exceed number of adults"))

        return errors

    def _departure_warnings(self, p: Mapping[str, Any]) -> List[str]:
        dep = parse_iso_date(p.get("departure_date"))
        if dep is None:
            return []
        days_ahead = (dep - self._clock()).days
        if days_ahead < 2:
            return ["Booking very close to departure date may have limited availability"]
        if days_ahead > 365:
            return ["Booking more than a year in advance may have limited availability"]
        return []

    def validate_passenger_details(self, passengers: Sequence[Any],
                                   departure_date: Optional[Any] = None) -> ValidationReport:
        """Pre-booking checks on each traveller record."""
        errors: List[FieldError] = []

        if not passengers:
            return ValidationReport(errors=[FieldError(field="passengers", message="Passenger details are required")])

        today = self._clock()
        for index, raw in enumerate(passengers):
            pax = _as_mapping(raw) or {}
            prefix = f"passengers[{index}]"

            if not pax.get("first_name"):
                errors.append(FieldError(field=f"{prefix}.first_name", message="First name is required"))
            if not pax.get("last_name"):
                errors.append(FieldError(field=f"{prefix}.last_name", message="Last name is required"))

            if not pax.get("date_of_birth"):
                errors.append(FieldError(field=f"{prefix}.date_of_birth", message="Date of birth is required"))
            else:
                dob = parse_iso_date(pax["date_of_birth"])
                if dob is None:
                    errors.append(FieldError(field=f"{prefix}.date_of_birth", message="Invalid date of birth format"))
                elif dob >= today:
                    errors.append(FieldError(field=f"{prefix}.date_of_birth", message="Date of birth must be in the past"))
                else:
                    age = age_on(dob, today)
                    if pax.get("type") == "child" and (age < 2 or age > 11):
                        errors.append(FieldError(field=f"{prefix}.date_of_birth", message="Child must be between 2-11 years old"))
                    if pax.get("type") == "infant" and age >= 2:
                        errors.append(FieldError(field=f"{prefix}.date_of_birth", message="Infant must be under 2 years old"))

            if not pax.get("email"):
                errors.append(FieldError(field=f"{prefix}.email", message="Email is required"))
            elif not self.is_valid_email(pax["email"]):
                errors.append(FieldError(field=f"{prefix}.email", message="Invalid email format"))

            if not pax.get("phone_number"):
                errors.append(FieldError(field=f"{prefix}.phone_number", message="Phone number is required"))

            # the provider only accepts m/f, so an uninformative title needs an explicit gender
            if resolve_gender(pax.get("gender"), pax.get("title")) is None:
                errors.append(FieldError(field=f"{prefix}.gender",
                                         message="Gender is required when the title does not indicate it"))

            if pax.get("requires_passport"):
                errors.extend(self._validate_passport(pax, prefix, departure_date, today))

        return ValidationReport(errors=errors)

    def _validate_passport(self, pax: Mapping[str, Any], prefix: str,
                           departure_date: Optional[Any], today: date) -> List[FieldError]:
        errors = []
        if not pax.get("passport_number"):
            errors.append(FieldError(field=f"{prefix}.passport_number", message="Passport number is required for international flights"))

        if not pax.get("passport_expiry"):
            errors.append(FieldError(field=f"{prefix}.passport_expiry", message="Passport expiry date is required"))
        else:
            expiry = parse_iso_date(pax["passport_expiry"])
            departure = parse_iso_date(departure_date) or today
            if expiry is None:
                errors.append(FieldError(field=f"{prefix}.passport_expiry", message="Invalid passport expiry format"))
            elif expiry < add_months(departure, 6):
                errors.append(FieldError(
                    field=f"{prefix}.passport_expiry",
                    message="Passport must be valid for at least 6 months from departure date",
                ))

        if not pax.get("nationality"):
            errors.append(FieldError(field=f"{prefix}.nationality", message="Nationality is required for international flights"))
        return errors

    # Helpers
    def is_valid_airport_code(self, code: Any) -> bool:
        return isinstance(code, str) and bool(self.airport_code_pattern.match(code))

    def is_valid_email(self, email: Any) -> bool:
        return isinstance(email, str) and bool(self.email_pattern.match(email))

    @staticmethod
    def time_to_minutes(value: str) -> int:
        hours, minutes = str(value).split(":")
        return int(hours) * 60 + int(minutes)


def parse_time_preference(text: str) -> Optional[TimeWindow]:
    """Map day-part phrases ("morning", "red eye") or "3pm" mentions to a departure window."""
    if not text:
        return None
    lower = text.lower()
    for phrase, window in _NAMED_TIME_PREFERENCES:
        if phrase in lower:
            return window

    m = re.search(r"(\d{1,2})\s*(am|pm)", lower)
    if m:
        hour = int(m.group(1))
        if hour > 12:
            return None
        if m.group(2) == "pm" and hour != 12:
            hour += 12
        if m.group(2) == "am" and hour == 12:
            hour = 0
        end = min(hour + 2, 23)
        return TimeWindow(from_=f"{hour:02d}:00", to=f"{end:02d}:00" if end > hour else "23:59")
    return None


# Helper function to create validator
def create_validator() -> SearchValidator:
    """Create search validator"""
    return SearchValidator()
