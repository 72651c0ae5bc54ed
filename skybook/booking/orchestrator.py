"""
Booking orchestration

Search, refresh, order creation (paid and hold), hold payment and two-phase
cancellation against an ``InventoryProvider``. Validation and passenger-count
checks run before any order call, so a rejected booking leaves nothing behind
at the provider.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
import re

from skybook.booking.enrichment import enrich_offers
from skybook.booking.models import (
    Booking,
    Cancellation,
    FlightSummary,
    Order,
    Payment,
    PaymentSnapshot,
    PricingSnapshot,
)
from skybook.config import settings
from skybook.duffel.client import InventoryProvider
from skybook.duffel.transform import (
    OfferNormalizer,
    normalize_cancellation,
    normalize_order,
    normalize_payment,
    normalize_seat_maps,
    normalize_services,
)
from skybook.errors import CountMismatchError, ExpiryError, FieldError, ValidationError
from skybook.obs.logger import log_event
from skybook.obs.metrics import inc_counter, timed
from skybook.types import (
    AvailableServices,
    FlightSearchParams,
    Offer,
    Passenger,
    PassengerCounts,
    SelectedService,
)
from skybook.validation.validator import SearchValidator, resolve_gender


def map_gender(passenger: Passenger) -> Optional[str]:
    """Explicit gender wins, then the title. None when neither says."""
    return resolve_gender(passenger.gender, passenger.title)


def format_phone_number(phone: Optional[str], country_code: Optional[str] = None) -> str:
    """'06 1234 5678' -> '+310612345678'. Numbers already written with '+' keep their own prefix."""
    if not phone:
        return ""
    international = phone.strip().startswith("+")
    digits = re.sub(r"\D", "", phone)
    if not international and len(digits) <= 10:
        digits = (country_code or settings.DEFAULT_PHONE_COUNTRY_CODE) + digits
    return "+" + digits


def build_search_passengers(counts: Optional[PassengerCounts]) -> List[Dict[str, Any]]:
    counts = counts or PassengerCounts()
    result: List[Dict[str, Any]] = [{"type": "adult"} for _ in range(max(1, counts.adults))]
    # the provider prices children and lap infants by age
    result.extend({"type": "child", "age": 10} for _ in range(max(0, counts.children)))
    result.extend({"type": "infant_without_seat", "age": 1} for _ in range(max(0, counts.infants)))
    return result


def build_search_slices(params: FlightSearchParams) -> List[Dict[str, Any]]:
    def window(tw):
        return {"from": tw.from_, "to": tw.to}

    outbound: Dict[str, Any] = {
        "origin": params.origin,
        "destination": params.destination,
        "departure_date": params.departure_date.isoformat(),
    }
    if params.departure_time:
        outbound["departure_time"] = window(params.departure_time)
    if params.arrival_time:
        outbound["arrival_time"] = window(params.arrival_time)
    slices = [outbound]

    if params.trip_type == "round_trip" and params.return_date:
        inbound: Dict[str, Any] = {
            "origin": params.destination,
            "destination": params.origin,
            "departure_date": params.return_date.isoformat(),
        }
        if params.departure_time:
            inbound["departure_time"] = window(params.departure_time)
        slices.append(inbound)

    if params.trip_type == "multi_city":
        for stop in params.additional_stops:
            leg: Dict[str, Any] = {
                "origin": stop.origin,
                "destination": stop.destination,
                "departure_date": stop.departure_date.isoformat(),
            }
            if stop.departure_time:
                leg["departure_time"] = window(stop.departure_time)
            slices.append(leg)

    return slices


def _order_passenger(passenger: Passenger, passenger_id: str) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": passenger_id,
        "phone_number": format_phone_number(passenger.phone_number),
        "email": passenger.email,
        "born_on": passenger.date_of_birth.isoformat() if passenger.date_of_birth else None,
        "title": (passenger.title or "").lower() or None,
        "gender": map_gender(passenger),
        "given_name": passenger.first_name,
        "family_name": passenger.last_name,
    }
    if passenger.passport_number:
        data["identity_documents"] = [{
            "unique_identifier": passenger.passport_number,
            "expires_on": passenger.passport_expiry.isoformat() if passenger.passport_expiry else None,
            "issuing_country_code": passenger.nationality,
            "type": "passport",
        }]
    return data


def booking_from_order(conversation_id: str, offer: Offer, order: Order, passengers: Sequence[Passenger],
                       services: Sequence[SelectedService], payment_type: str, hold: bool,
                       user_id: Optional[str] = None) -> Booking:
    """Snapshot of what was booked, kept with the conversation."""
    first = offer.slices[0]
    services_amount = sum((s.amount * (s.quantity or 1) for s in services), Decimal("0"))
    return Booking(
        conversation_id=conversation_id,
        user_id=user_id,
        order_id=order.id,
        booking_reference=order.booking_reference,
        status="pending" if hold else "confirmed",
        flight=FlightSummary(
            offer_id=offer.id,
            origin=first.origin.iata_code,
            destination=first.destination.iata_code,
            departure_at=first.departure_at,
            return_departure_at=offer.slices[1].departure_at if len(offer.slices) > 1 else None,
            airlines=sorted({seg.airline.iata_code for s in offer.slices for seg in s.segments}),
            slices=len(offer.slices),
        ),
        passengers=[p.model_dump(mode="json", exclude={"requires_passport"}) for p in passengers],
        pricing=PricingSnapshot(
            total_amount=order.total_amount,
            currency=order.total_currency,
            additional_services_amount=services_amount,
        ),
        payment=PaymentSnapshot(
            method="hold" if hold else payment_type,
            status="pending" if hold else "completed",
            paid_at=None if hold else datetime.now(timezone.utc),
        ),
        services=[s.model_dump(mode="json") for s in services],
        ticketing_deadline=order.payment_required_by,
    )


class BookingOrchestrator:
    def __init__(self, provider: InventoryProvider, normalizer: Optional[OfferNormalizer] = None,
                 validator: Optional[SearchValidator] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.provider = provider
        self.normalizer = normalizer or OfferNormalizer()
        self.validator = validator or SearchValidator()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def search(self, params: FlightSearchParams, limit: Optional[int] = None, sort: str = "total_amount",
                     max_price: Optional[Decimal] = None, airlines: Optional[List[str]] = None) -> List[Offer]:
        report = self.validator.validate(params)
        if not report.is_valid:
            raise ValidationError(report.errors)
        for warning in report.warnings:
            log_event("search_warning", level="WARN", warning=warning)

        multi_city = params.trip_type == "multi_city"
        timeout = settings.MULTI_CITY_SEARCH_TIMEOUT_SECONDS if multi_city else settings.SEARCH_TIMEOUT_SECONDS

        with timed("flight_search_ms", {"trip_type": params.trip_type}):
            request_id = await self.provider.create_search_request(
                build_search_slices(params),
                build_search_passengers(params.passengers),
                cabin_class=params.cabin_class,
                max_connections=params.max_connections,
                timeout_seconds=timeout,
            )
            filters = {"max_price": str(max_price) if max_price is not None else None, "airlines": airlines}
            raw_offers = await self.provider.list_offers(
                request_id, sort=sort, limit=limit or settings.SEARCH_RESULT_LIMIT, filters=filters,
            )
            offers = await enrich_offers(self.provider, self.normalizer, raw_offers)

        log_event("flight_search_completed", origin=params.origin, destination=params.destination,
                  trip_type=params.trip_type, offers=len(offers))
        return offers

    async def refresh_offer(self, offer: Offer, passengers: Optional[PassengerCounts] = None) -> Offer:
        """Re-price ``offer`` with a fresh search. Returns a new value, the input is untouched."""
        slices = [
            {
                "origin": s.origin.iata_code,
                "destination": s.destination.iata_code,
                "departure_date": s.departure_at.date().isoformat(),
            }
            for s in offer.slices
        ]
        counts = passengers or PassengerCounts(adults=max(1, len(offer.passenger_ids)))
        request_id = await self.provider.create_search_request(
            slices, build_search_passengers(counts), cabin_class=offer.cabin_class,
            timeout_seconds=settings.MULTI_CITY_SEARCH_TIMEOUT_SECONDS if len(slices) > 2 else None,
        )
        raw_offers = await self.provider.list_offers(request_id, sort="total_amount", limit=1)
        if not raw_offers:
            raise ExpiryError(offer.id, offer.expires_at)
        refreshed = self.normalizer.normalize(raw_offers[0])
        log_event("offer_refreshed", offer_id=offer.id, refreshed_offer_id=refreshed.id,
                  old_amount=str(offer.total_amount), new_amount=str(refreshed.total_amount))
        return refreshed

    async def get_offer_services(self, offer_id: str) -> AvailableServices:
        raw = await self.provider.get_offer(offer_id, services=True)
        return normalize_services(raw.get("available_services") or [])

    async def get_offer_details(self, offer_id: str, services: bool = True, seat_maps: bool = False,
                                brand_attributes: bool = False) -> Offer:
        raw = await self.provider.get_offer(offer_id, services=services, brand_attributes=brand_attributes)
        offer = self.normalizer.normalize(raw)
        if seat_maps:
            maps = await self.provider.get_seat_maps(offer_id)
            offer = offer.model_copy(update={"seat_maps": normalize_seat_maps(maps)})
        return offer

    async def _prepare_order(self, offer_id: str, passengers: Sequence[Passenger],
                             services: Optional[Sequence[SelectedService]]) -> Tuple[Offer, Dict[str, Any]]:
        unresolved = [
            FieldError(field=f"passengers[{i}].gender",
                       message="Gender is required when the title does not indicate it")
            for i, p in enumerate(passengers) if map_gender(p) is None
        ]
        if unresolved:
            inc_counter("booking_rejected", {"reason": "gender_unresolved"})
            raise ValidationError(unresolved)

        # always re-read: amount and passenger slots come from the provider, never the caller
        raw = await self.provider.get_offer(offer_id, services=True)
        offer = self.normalizer.normalize(raw)

        if offer.is_expired(self._clock()):
            raise ExpiryError(offer.id, offer.expires_at)
        if len(passengers) != len(offer.passenger_ids):
            inc_counter("booking_rejected", {"reason": "passenger_count_mismatch"})
            raise CountMismatchError(len(offer.passenger_ids), len(passengers))

        available = set(offer.available_services.ids()) if offer.available_services else set()
        valid_services = [s for s in services or [] if s.id in available]
        dropped = len(services or []) - len(valid_services)
        if dropped:
            log_event("order_services_dropped", level="WARN", offer_id=offer_id, dropped=dropped)

        payload: Dict[str, Any] = {
            "selected_offers": [offer_id],
            "passengers": [_order_passenger(p, pid) for p, pid in zip(passengers, offer.passenger_ids)],
        }
        if valid_services:
            payload["services"] = [{"id": s.id, "quantity": s.quantity or 1} for s in valid_services]
        return offer, payload

    async def create_order(self, offer_id: str, passengers: Sequence[Passenger], payment_type: Optional[str] = None,
                           services: Optional[Sequence[SelectedService]] = None) -> Order:
        offer, payload = await self._prepare_order(offer_id, passengers, services)

        method = payment_type or settings.DEFAULT_PAYMENT_TYPE
        if method == "card":
            # card capture happens outside this service; the order is settled from balance
            method = settings.DEFAULT_PAYMENT_TYPE
        payload["type"] = "instant"
        payload["payments"] = [{
            "type": method,
            "currency": offer.total_currency,
            "amount": str(offer.total_amount),
        }]

        order = normalize_order(await self.provider.create_order(payload))
        inc_counter("orders_created", {"kind": "paid"})
        log_event("order_created", offer_id=offer_id, order_id=order.id, kind="paid",
                  amount=str(offer.total_amount), currency=offer.total_currency)
        return order

    async def create_hold_order(self, offer_id: str, passengers: Sequence[Passenger],
                                services: Optional[Sequence[SelectedService]] = None) -> Order:
        _, payload = await self._prepare_order(offer_id, passengers, services)
        payload["type"] = "hold"

        order = normalize_order(await self.provider.create_order(payload))
        inc_counter("orders_created", {"kind": "hold"})
        log_event("order_created", offer_id=offer_id, order_id=order.id, kind="hold",
                  payment_required_by=order.payment_required_by)
        return order

    async def pay_for_hold_order(self, order_id: str, payment_type: Optional[str] = None) -> Payment:
        # never pay a cached price: the held amount can move until it is paid
        order = await self.get_order(order_id)
        payment = normalize_payment(await self.provider.create_payment(
            order.id,
            payment_type or settings.DEFAULT_PAYMENT_TYPE,
            str(order.total_amount),
            order.total_currency,
        ))
        inc_counter("hold_orders_paid")
        log_event("hold_order_paid", order_id=order_id, amount=str(payment.amount), currency=payment.currency)
        return payment

    async def cancel_order(self, order_id: str) -> Cancellation:
        pending = await self.provider.create_cancellation(order_id)
        # an unconfirmed cancellation request has no effect on the booking
        confirmed = normalize_cancellation(await self.provider.confirm_cancellation(pending["id"]))
        inc_counter("orders_cancelled")
        log_event("order_cancelled", order_id=order_id, refund_amount=confirmed.refund_amount,
                  refund_currency=confirmed.refund_currency)
        return confirmed

    async def get_order(self, order_id: str) -> Order:
        return normalize_order(await self.provider.get_order(order_id))

    async def orders_by_email(self, email: str, limit: int = 10) -> List[Order]:
        """Provider orders booked with ``email`` as a passenger contact."""
        if not self.validator.is_valid_email(email):
            raise ValidationError([FieldError(field="email", message="Invalid email format")])
        return [normalize_order(raw) for raw in await self.provider.list_orders(email, limit=limit)]
