from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from skybook.types import Offer, SortOrder, TimeWindow
from skybook.validation.validator import TIME_OF_DAY_WINDOWS


class FilterCriteria(BaseModel):
    departure_time: Optional[TimeWindow] = None
    max_connections: Optional[int] = None
    airlines: List[str] = []
    min_price: Optional[Decimal] = None
    max_price: Optional[Decimal] = None
    max_duration: Optional[int] = None   # minutes, summed over slices
    sort: Optional[SortOrder] = None

    @classmethod
    def from_intent(cls, args: Dict[str, Any]) -> "FilterCriteria":
        """Build criteria from the dialogue's filter intent arguments.

        ``time_of_day`` is a day-part name, ``price_sort`` lowest/highest and
        ``duration_sort`` shortest/longest. Price sort wins when both are given.
        """
        sort = None
        if args.get("price_sort") == "lowest":
            sort = SortOrder.PRICE_LOW
        elif args.get("price_sort") == "highest":
            sort = SortOrder.PRICE_HIGH
        elif args.get("duration_sort") == "shortest":
            sort = SortOrder.DURATION_SHORT
        elif args.get("duration_sort") == "longest":
            sort = SortOrder.DURATION_LONG
        elif args.get("sort"):
            sort = SortOrder(args["sort"])

        window = None
        if args.get("time_of_day"):
            window = TIME_OF_DAY_WINDOWS.get(args["time_of_day"])
        elif args.get("departure_time"):
            window = TimeWindow.model_validate(args["departure_time"])

        return cls(
            departure_time=window,
            max_connections=args.get("max_connections"),
            airlines=args.get("airlines") or [],
            min_price=args.get("min_price"),
            max_price=args.get("max_price"),
            max_duration=args.get("max_duration"),
            sort=sort,
        )

    def is_empty(self) -> bool:
        return self == FilterCriteria()


def _hour(hhmm: str) -> int:
    return int(hhmm.split(":")[0])


def in_hour_window(hour: int, window: TimeWindow) -> bool:
    """Compare whole hours, inclusive of the end hour, so "06:00-12:00" keeps a 12:40 departure.

    A window whose end hour is before its start wraps midnight.
    """
    start, end = _hour(window.from_), _hour(window.to)
    if end < start:
        return hour >= start or hour <= end
    return start <= hour <= end


class OfferFilterEngine:
    """Narrow and order an offer set. Never mutates its input."""

    def filter(self, offers: List[Offer], criteria: FilterCriteria) -> List[Offer]:
        result = list(offers)

        if criteria.departure_time is not None:
            result = [
                o for o in result
                if o.departure_at is not None and in_hour_window(o.departure_at.hour, criteria.departure_time)
            ]

        if criteria.max_connections is not None:
            result = [
                o for o in result
                if all(s.connections <= criteria.max_connections for s in o.slices)
            ]

        if criteria.airlines:
            codes = {a.upper() for a in criteria.airlines}
            result = [
                o for o in result
                if any(seg.airline.iata_code.upper() in codes for s in o.slices for seg in s.segments)
            ]

        if criteria.max_price is not None:
            result = [o for o in result if o.total_amount <= criteria.max_price]
        if criteria.min_price is not None:
            result = [o for o in result if o.total_amount >= criteria.min_price]

        if criteria.max_duration is not None:
            result = [o for o in result if o.total_duration_minutes <= criteria.max_duration]

        if criteria.sort is not None:
            result = self.sort(result, criteria.sort)

        return result

    @staticmethod
    def sort(offers: List[Offer], order: SortOrder) -> List[Offer]:
        # sorted() is stable, ties keep their incoming order in both directions
        if order == SortOrder.PRICE_LOW:
            return sorted(offers, key=lambda o: o.total_amount)
        if order == SortOrder.PRICE_HIGH:
            return sorted(offers, key=lambda o: o.total_amount, reverse=True)
        if order == SortOrder.DURATION_SHORT:
            return sorted(offers, key=lambda o: o.total_duration_minutes)
        if order == SortOrder.DURATION_LONG:
            return sorted(offers, key=lambda o: o.total_duration_minutes, reverse=True)
        if order == SortOrder.DEPARTURE_EARLY:
            return sorted(offers, key=lambda o: o.departure_at)
        if order == SortOrder.DEPARTURE_LATE:
            return sorted(offers, key=lambda o: o.departure_at, reverse=True)
        return list(offers)
