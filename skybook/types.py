from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

TripType = Literal["one_way", "round_trip", "multi_city"]
CabinClass = Literal["economy", "premium_economy", "business", "first"]
SeatType = Literal["window", "aisle", "middle", "extra_legroom", "standard"]
PassengerType = Literal["adult", "child", "infant"]


_HHMM = r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$"


class TimeWindow(BaseModel):
    """HH:MM range; serialized with ``from``/``to`` keys."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    from_: str = Field(alias="from", pattern=_HHMM)
    to: str = Field(pattern=_HHMM)


class PassengerCounts(BaseModel):
    adults: int = 1
    children: int = 0
    infants: int = 0

    @property
    def total(self) -> int:
        return self.adults + self.children + self.infants


class AdditionalStop(BaseModel):
    origin: str
    destination: str
    departure_date: date
    departure_time: Optional[TimeWindow] = None


class SearchPreferences(BaseModel):
    preferred_airlines: List[str] = Field(default_factory=list)
    avoid_airlines: List[str] = Field(default_factory=list)
    flexible_dates: bool = False
    nearby_airports: bool = False


class FlightSearchParams(BaseModel):
    trip_type: TripType = "one_way"
    origin: str
    destination: str
    departure_date: date
    return_date: Optional[date] = None
    departure_time: Optional[TimeWindow] = None
    arrival_time: Optional[TimeWindow] = None
    cabin_class: CabinClass = "economy"
    passengers: PassengerCounts = Field(default_factory=PassengerCounts)
    max_connections: Optional[int] = None
    additional_stops: List[AdditionalStop] = Field(default_factory=list)
    preferences: Optional[SearchPreferences] = None


# Canonical offer model. Values are immutable once fetched: a refreshed offer is a new value.

class Airport(BaseModel):
    model_config = ConfigDict(frozen=True)

    iata_code: str
    name: Optional[str] = None
    city_name: Optional[str] = None
    time_zone: Optional[str] = None


class SegmentAirport(BaseModel):
    model_config = ConfigDict(frozen=True)

    iata_code: str
    name: Optional[str] = None
    terminal: Optional[str] = None


class Airline(BaseModel):
    model_config = ConfigDict(frozen=True)

    iata_code: str
    name: Optional[str] = None
    logo_url: Optional[str] = None


class Segment(BaseModel):
    model_config = ConfigDict(frozen=True)

    airline: Airline
    flight_number: Optional[str] = None
    aircraft: Optional[str] = None
    departure_airport: SegmentAirport
    arrival_airport: SegmentAirport
    departure_at: datetime
    arrival_at: datetime
    duration: str = ""


class Slice(BaseModel):
    model_config = ConfigDict(frozen=True)

    origin: Airport
    destination: Airport
    segments: List[Segment]
    departure_at: datetime
    arrival_at: datetime
    duration: str        # display form, e.g. "2h 30m"
    duration_minutes: int

    @property
    def connections(self) -> int:
        return len(self.segments) - 1


class BaggageAllowance(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    quantity: int = 0


class OfferConditions(BaseModel):
    model_config = ConfigDict(frozen=True)

    refundable: bool = False
    changeable: bool = False
    refund_penalty: Optional[Decimal] = None
    change_penalty: Optional[Decimal] = None


class SeatService(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    segment_id: Optional[str] = None
    passenger_id: Optional[str] = None
    designator: Optional[str] = None
    row: Optional[str] = None
    column: Optional[str] = None
    type: SeatType = "standard"
    amount: Decimal
    currency: str


class BaggageService(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: str = "checked"
    weight_kg: Optional[int] = None
    max_quantity: int = 1
    amount: Decimal
    currency: str


class OtherService(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: str
    name: str
    description: Optional[str] = None
    max_quantity: int = 1
    amount: Decimal
    currency: str


class AvailableServices(BaseModel):
    model_config = ConfigDict(frozen=True)

    seats: List[SeatService] = Field(default_factory=list)
    baggage: List[BaggageService] = Field(default_factory=list)
    other: List[OtherService] = Field(default_factory=list)

    def ids(self) -> List[str]:
        return [s.id for s in self.seats] + [b.id for b in self.baggage] + [o.id for o in self.other]

    def find(self, service_id: str):
        for service in (*self.seats, *self.baggage, *self.other):
            if service.id == service_id:
                return service
        return None


class SeatMapSeat(BaseModel):
    model_config = ConfigDict(frozen=True)

    designator: Optional[str] = None
    available: bool = False
    type: Optional[str] = None
    amenities: List[str] = Field(default_factory=list)
    amount: Optional[Decimal] = None
    currency: Optional[str] = None


class SeatMapRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    row_number: Optional[int] = None
    seats: List[SeatMapSeat] = Field(default_factory=list)


class SeatMapCabin(BaseModel):
    model_config = ConfigDict(frozen=True)

    cabin_class: Optional[str] = None
    rows: List[SeatMapRow] = Field(default_factory=list)


class SeatMap(BaseModel):
    model_config = ConfigDict(frozen=True)

    segment_id: Optional[str] = None
    aircraft: Optional[str] = None
    cabins: List[SeatMapCabin] = Field(default_factory=list)


class Offer(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    total_amount: Decimal
    total_currency: str
    expires_at: Optional[datetime] = None
    slices: List[Slice]
    passenger_ids: List[str] = Field(default_factory=list)
    baggage_allowance: List[BaggageAllowance] = Field(default_factory=list)
    cabin_class: Optional[str] = None
    conditions: OfferConditions = Field(default_factory=OfferConditions)
    available_services: Optional[AvailableServices] = None
    seat_maps: Optional[List[SeatMap]] = None
    brand_attributes: Optional[Dict[str, Any]] = None

    @property
    def total_duration_minutes(self) -> int:
        return sum(s.duration_minutes for s in self.slices)

    @property
    def departure_at(self) -> Optional[datetime]:
        return self.slices[0].departure_at if self.slices else None

    def is_expired(self, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        if self.expires_at.tzinfo is None and now.tzinfo is not None:
            now = now.replace(tzinfo=None)
        elif self.expires_at.tzinfo is not None and now.tzinfo is None:
            now = now.replace(tzinfo=self.expires_at.tzinfo)
        return self.expires_at <= now


class SortOrder(str, Enum):
    PRICE_LOW = "price_low"
    PRICE_HIGH = "price_high"
    DURATION_SHORT = "duration_short"
    DURATION_LONG = "duration_long"
    DEPARTURE_EARLY = "departure_early"
    DEPARTURE_LATE = "departure_late"


class Passenger(BaseModel):
    """Booking-time traveller record; maps by position onto the offer's passenger ids."""
    title: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    type: PassengerType = "adult"
    nationality: Optional[str] = None
    passport_number: Optional[str] = None
    passport_expiry: Optional[date] = None
    requires_passport: bool = False


class SelectedService(BaseModel):
    id: str
    type: str
    quantity: int = 1
    amount: Decimal = Decimal("0")
    currency: Optional[str] = None
    name: Optional[str] = None
