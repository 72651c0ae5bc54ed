"""Duffel wire payloads -> canonical models.

Everything provider-shaped stops here: the rest of the package only sees
``Offer``, ``AvailableServices``, ``Order`` and friends.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional
import re

from skybook.booking.models import Cancellation, Order, OrderService, Payment
from skybook.types import (
    Airline,
    Airport,
    AvailableServices,
    BaggageAllowance,
    BaggageService,
    Offer,
    OfferConditions,
    OtherService,
    SeatMap,
    SeatMapCabin,
    SeatMapRow,
    SeatMapSeat,
    SeatService,
    Segment,
    SegmentAirport,
    Slice,
)

_DURATION = re.compile(r"PT(?:(\d+)H)?(?:(\d+)M)?")

_WINDOW_COLUMNS = {"A", "F", "K"}
_AISLE_COLUMNS = {"C", "D", "E", "H"}


def parse_duration(duration: Optional[str]) -> int:
    """ISO-8601 'PT#H#M' -> minutes. Missing parts count as zero, junk as 0."""
    if not duration:
        return 0
    m = _DURATION.search(duration)
    if not m:
        return 0
    hours = int(m.group(1)) if m.group(1) else 0
    minutes = int(m.group(2)) if m.group(2) else 0
    return hours * 60 + minutes


def format_duration(duration: Optional[str]) -> str:
    """'PT12H30M' -> '12h 30m'. Unrecognised input is returned as-is."""
    if not duration:
        return ""
    m = _DURATION.search(duration)
    if not m:
        return duration
    hours = int(m.group(1)) if m.group(1) else 0
    minutes = int(m.group(2)) if m.group(2) else 0
    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    return " ".join(parts) or "0m"


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def classify_seat(metadata: Optional[Dict[str, Any]]) -> str:
    if not metadata:
        return "standard"
    amenities = metadata.get("amenities") or []
    disclosures = metadata.get("disclosures") or []
    if "extra_legroom" in amenities or "extra_legroom" in disclosures:
        return "extra_legroom"
    column = metadata.get("column")
    if column:
        if column in _WINDOW_COLUMNS:
            return "window"
        if column in _AISLE_COLUMNS:
            return "aisle"
        return "middle"
    return "standard"


def normalize_services(raw_services: Optional[Iterable[Dict[str, Any]]]) -> AvailableServices:
    seats: List[SeatService] = []
    baggage: List[BaggageService] = []
    other: List[OtherService] = []

    for s in raw_services or []:
        if not s or not s.get("id"):
            continue
        meta = s.get("metadata") or {}
        amount = to_decimal(s.get("total_amount")) or Decimal("0")
        currency = s.get("total_currency") or ""

        if s.get("type") == "seat":
            seats.append(SeatService(
                id=s["id"],
                segment_id=meta.get("segment_id"),
                passenger_id=meta.get("passenger_id"),
                designator=meta.get("designator"),
                row=str(meta["row"]) if meta.get("row") is not None else None,
                column=meta.get("column"),
                type=classify_seat(meta),
                amount=amount,
                currency=currency,
            ))
        elif s.get("type") == "baggage":
            baggage.append(BaggageService(
                id=s["id"],
                type=meta.get("type") or "checked",
                weight_kg=meta.get("maximum_weight_kg") or meta.get("weight"),
                max_quantity=s.get("maximum_quantity") or 1,
                amount=amount,
                currency=currency,
            ))
        else:
            other.append(OtherService(
                id=s["id"],
                type=s.get("type") or "other",
                name=meta.get("name") or s.get("type") or "service",
                description=meta.get("description"),
                max_quantity=s.get("maximum_quantity") or 1,
                amount=amount,
                currency=currency,
            ))

    return AvailableServices(seats=seats, baggage=baggage, other=other)


def normalize_seat_maps(raw_maps: Iterable[Dict[str, Any]]) -> List[SeatMap]:
    maps = []
    for sm in raw_maps:
        cabins = []
        for cabin in sm.get("cabins") or []:
            rows = []
            for row in cabin.get("rows") or []:
                seats = []
                for seat in row.get("seats") or []:
                    price = seat.get("price") or {}
                    seats.append(SeatMapSeat(
                        designator=seat.get("designator"),
                        available=bool(seat.get("available")),
                        type=seat.get("type"),
                        amenities=seat.get("amenities") or [],
                        amount=to_decimal(price.get("amount")),
                        currency=price.get("currency"),
                    ))
                rows.append(SeatMapRow(row_number=row.get("row"), seats=seats))
            cabins.append(SeatMapCabin(cabin_class=cabin.get("cabin_class"), rows=rows))
        maps.append(SeatMap(
            segment_id=sm.get("segment_id"),
            aircraft=(sm.get("aircraft") or {}).get("name"),
            cabins=cabins,
        ))
    return maps


def _airport(raw: Dict[str, Any]) -> Airport:
    return Airport(
        iata_code=raw["iata_code"],
        name=raw.get("name"),
        city_name=raw.get("city_name"),
        time_zone=raw.get("time_zone"),
    )


def _segment(raw: Dict[str, Any]) -> Segment:
    carrier = raw.get("operating_carrier") or raw.get("marketing_carrier") or {}
    return Segment(
        airline=Airline(
            iata_code=carrier.get("iata_code") or "",
            name=carrier.get("name"),
            logo_url=carrier.get("logo_symbol_url"),
        ),
        flight_number=raw.get("operating_carrier_flight_number") or raw.get("marketing_carrier_flight_number"),
        aircraft=(raw.get("aircraft") or {}).get("name"),
        departure_airport=SegmentAirport(
            iata_code=raw["origin"]["iata_code"],
            name=raw["origin"].get("name"),
            terminal=raw.get("origin_terminal"),
        ),
        arrival_airport=SegmentAirport(
            iata_code=raw["destination"]["iata_code"],
            name=raw["destination"].get("name"),
            terminal=raw.get("destination_terminal"),
        ),
        departure_at=raw["departing_at"],
        arrival_at=raw["arriving_at"],
        duration=format_duration(raw.get("duration")),
    )


def _slice(raw: Dict[str, Any]) -> Slice:
    segments = [_segment(s) for s in raw["segments"]]
    return Slice(
        origin=_airport(raw["origin"]),
        destination=_airport(raw["destination"]),
        segments=segments,
        # slice timestamps always come from its segments
        departure_at=segments[0].departure_at,
        arrival_at=segments[-1].arrival_at,
        duration=format_duration(raw.get("duration")),
        duration_minutes=parse_duration(raw.get("duration")),
    )


def _cabin_class(raw: Dict[str, Any]) -> Optional[str]:
    try:
        return raw["slices"][0]["segments"][0]["passengers"][0].get("cabin_class")
    except (KeyError, IndexError, TypeError):
        return None


class OfferNormalizer:
    """Convert Duffel offers into canonical, immutable ``Offer`` values."""

    def normalize(self, raw: Dict[str, Any]) -> Offer:
        passengers = raw.get("passengers") or []
        conditions = raw.get("conditions") or {}
        refund = conditions.get("refund_before_departure") or {}
        change = conditions.get("change_before_departure") or {}

        available = raw.get("available_services")
        seat_maps = raw.get("seat_maps")

        return Offer(
            id=raw["id"],
            total_amount=to_decimal(raw.get("total_amount")) or Decimal("0"),
            total_currency=raw.get("total_currency") or "",
            expires_at=raw.get("expires_at"),
            slices=[_slice(s) for s in raw.get("slices") or []],
            passenger_ids=[p["id"] for p in passengers if p.get("id")],
            baggage_allowance=[
                BaggageAllowance(type=b.get("type") or "checked", quantity=b.get("quantity") or 0)
                for b in ((passengers[0].get("baggages") if passengers else None) or [])
            ],
            cabin_class=_cabin_class(raw),
            conditions=OfferConditions(
                refundable=bool(refund.get("allowed")),
                changeable=bool(change.get("allowed")),
                refund_penalty=to_decimal(refund.get("penalty_amount")),
                change_penalty=to_decimal(change.get("penalty_amount")),
            ),
            available_services=normalize_services(available) if available is not None else None,
            seat_maps=normalize_seat_maps(seat_maps) if seat_maps else None,
            brand_attributes=raw.get("brand_attributes"),
        )

    def normalize_all(self, raws: Iterable[Dict[str, Any]]) -> List[Offer]:
        return [self.normalize(r) for r in raws]


def normalize_order(raw: Dict[str, Any]) -> Order:
    payment_status = raw.get("payment_status") or {}
    return Order(
        id=raw["id"],
        booking_reference=raw.get("booking_reference"),
        total_amount=to_decimal(raw.get("total_amount")) or Decimal("0"),
        total_currency=raw.get("total_currency") or "",
        passenger_ids=[p["id"] for p in raw.get("passengers") or [] if p.get("id")],
        services=[
            OrderService(id=s["id"], quantity=s.get("quantity") or 1)
            for s in raw.get("services") or [] if s.get("id")
        ],
        awaiting_payment=bool(payment_status.get("awaiting_payment")),
        payment_required_by=payment_status.get("payment_required_by"),
        created_at=raw.get("created_at"),
        cancelled_at=raw.get("cancelled_at"),
    )


def normalize_payment(raw: Dict[str, Any]) -> Payment:
    return Payment(
        id=raw["id"],
        order_id=raw.get("order_id"),
        type=raw.get("type") or "balance",
        amount=to_decimal(raw.get("amount")) or Decimal("0"),
        currency=raw.get("currency") or "",
        created_at=raw.get("created_at"),
    )


def normalize_cancellation(raw: Dict[str, Any]) -> Cancellation:
    return Cancellation(
        id=raw["id"],
        order_id=raw.get("order_id") or "",
        refund_amount=to_decimal(raw.get("refund_amount")),
        refund_currency=raw.get("refund_currency"),
        refund_to=raw.get("refund_to"),
        confirmed_at=raw.get("confirmed_at"),
        expires_at=raw.get("expires_at"),
    )
