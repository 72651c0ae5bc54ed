"""
Conversation state machine

Owns every mutation of a ``Conversation``: stage changes are checked against
the transition table, history lists are trimmed to fixed windows, and each
mutation refreshes ``updated_at`` and rolls the inactivity expiry forward.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from skybook.booking.models import Booking, PaymentStatus
from skybook.config import settings
from skybook.conversation.state import (
    TRANSITIONS,
    Conversation,
    Message,
    RejectedOffer,
    SearchHistoryItem,
    Stage,
)
from skybook.errors import StateTransitionError
from skybook.obs.logger import log_event
from skybook.types import FlightSearchParams, Offer, Passenger, SelectedService, SortOrder


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStateMachine:

    def __init__(self, conversation: Conversation,
                 ttl_seconds: Optional[int] = None,
                 search_history_limit: Optional[int] = None,
                 offer_tracking_limit: Optional[int] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.conversation = conversation
        self.ttl = timedelta(seconds=ttl_seconds or settings.CONVERSATION_TTL_SECONDS)
        self.search_history_limit = search_history_limit or settings.SEARCH_HISTORY_LIMIT
        self.offer_tracking_limit = offer_tracking_limit or settings.OFFER_TRACKING_LIMIT
        self._clock = clock or _utcnow

    @classmethod
    def start(cls, session_id: str, user_id: Optional[str] = None, **kwargs) -> "ConversationStateMachine":
        machine = cls(Conversation(session_id=session_id, user_id=user_id), **kwargs)
        now = machine._clock()
        machine.conversation.created_at = now
        machine.touch()
        return machine

    @property
    def stage(self) -> Stage:
        return self.conversation.stage

    # Stage graph
    @staticmethod
    def can_transition(current: Stage, target: Stage) -> bool:
        return Stage(target) in TRANSITIONS.get(Stage(current), frozenset())

    def transition(self, target: Stage) -> bool:
        """Move to ``target`` if the edge exists. Rejection leaves the stage untouched."""
        current = self.conversation.stage
        if not self.can_transition(current, target):
            log_event("stage_transition_rejected", level="WARN",
                      session_id=self.conversation.session_id,
                      current=current.value, target=Stage(target).value)
            return False
        self.conversation.stage = Stage(target)
        self.touch()
        log_event("stage_transition", session_id=self.conversation.session_id,
                  current=current.value, target=self.conversation.stage.value)
        return True

    def require_transition(self, target: Stage) -> None:
        current = self.conversation.stage
        if not self.transition(target):
            raise StateTransitionError(current.value, Stage(target).value)

    def touch(self) -> None:
        now = self._clock()
        self.conversation.updated_at = now
        # booked conversations are kept; only unbooked ones age out
        if not self.conversation.is_booked:
            self.conversation.expires_at = now + self.ttl

    # Messages
    def add_message(self, role: str, content: str, metadata: Optional[Dict[str, Any]] = None) -> Message:
        message = Message(role=role, content=content, timestamp=self._clock(), metadata=metadata or {})
        self.conversation.messages.append(message)
        self.touch()
        return message

    def history(self) -> List[Dict[str, str]]:
        """role/content pairs for the dialogue collaborator."""
        return [{"role": m.role, "content": m.content} for m in self.conversation.messages]

    # Search
    def update_search_params(self, params: FlightSearchParams) -> None:
        self.conversation.search_params = params
        self.conversation.search_history.append(SearchHistoryItem(params=params, searched_at=self._clock()))
        if len(self.conversation.search_history) > self.search_history_limit:
            self.conversation.search_history = self.conversation.search_history[-self.search_history_limit:]
        self.touch()

    def set_search_results(self, offers: List[Offer], results_count: Optional[int] = None) -> None:
        self.conversation.search_results = list(offers)
        if self.conversation.search_history:
            last = self.conversation.search_history[-1]
            if last.results_count is None:
                last.results_count = results_count if results_count is not None else len(offers)
        self.touch()

    def apply_filter(self, criteria: Dict[str, Any]) -> None:
        applied = dict(self.conversation.refinements.applied_filters)
        applied.update({k: v for k, v in criteria.items() if v is not None and k != "sort"})
        self.conversation.refinements.applied_filters = applied
        if criteria.get("sort"):
            self.conversation.refinements.sort_preference = SortOrder(criteria["sort"])
        self.touch()

    def track_viewed_offer(self, offer_id: str) -> None:
        viewed = self.conversation.refinements.viewed_offers
        if offer_id not in viewed:
            viewed.append(offer_id)
        if len(viewed) > self.offer_tracking_limit:
            self.conversation.refinements.viewed_offers = viewed[-self.offer_tracking_limit:]
        self.touch()

    def reject_offer(self, offer_id: str, reason: Optional[str] = None) -> None:
        rejected = self.conversation.refinements.rejected_offers
        rejected.append(RejectedOffer(offer_id=offer_id, reason=reason))
        if len(rejected) > self.offer_tracking_limit:
            self.conversation.refinements.rejected_offers = rejected[-self.offer_tracking_limit:]
        self.touch()

    # Selection and booking details
    def select_offer(self, offer: Offer) -> None:
        self.conversation.selected_offer = offer
        if self.conversation.search_history:
            self.conversation.search_history[-1].selected_offer_id = offer.id
        self.track_viewed_offer(offer.id)

    def replace_selected_offer(self, offer: Offer) -> None:
        self.conversation.selected_offer = offer
        self.touch()

    def set_passengers(self, passengers: List[Passenger]) -> None:
        self.conversation.passengers = list(passengers)
        self.touch()

    def set_services(self, services: List[SelectedService]) -> None:
        self.conversation.selected_services = list(services)
        self.touch()

    def set_payment_status(self, status: PaymentStatus) -> None:
        self.conversation.payment_status = status
        self.touch()

    def record_booking(self, booking: Booking, payment_status: PaymentStatus) -> None:
        self.conversation.order_id = booking.order_id
        self.conversation.booking_reference = booking.booking_reference
        self.conversation.booking = booking
        self.conversation.payment_status = payment_status
        self.touch()
        # a booked conversation no longer ages out
        self.conversation.expires_at = None

    def total_amount(self) -> Decimal:
        offer = self.conversation.selected_offer
        base = offer.total_amount if offer else Decimal("0")
        return base + self.conversation.services_amount()

    def sanitized_context(self) -> Dict[str, Any]:
        """What the dialogue collaborator may see. Never passenger or payment data."""
        c = self.conversation
        params = c.search_params
        context: Dict[str, Any] = {
            "stage": c.stage.value,
            "search_params": {
                "trip_type": params.trip_type,
                "origin": params.origin,
                "destination": params.destination,
                "departure_date": params.departure_date.isoformat(),
                "return_date": params.return_date.isoformat() if params.return_date else None,
                "departure_time": params.departure_time.model_dump(by_alias=True) if params.departure_time else None,
                "arrival_time": params.arrival_time.model_dump(by_alias=True) if params.arrival_time else None,
                "cabin_class": params.cabin_class,
                "passengers": params.passengers.model_dump(),
                "max_connections": params.max_connections,
            } if params else {},
            "has_selected_flight": c.selected_offer is not None,
            "has_passenger_details": bool(c.passengers),
            "has_additional_services": bool(c.selected_services),
            "results_shown": len(c.search_results),
        }
        if c.selected_offer is not None:
            context["selected_flight"] = {
                "total_amount": str(c.selected_offer.total_amount),
                "total_currency": c.selected_offer.total_currency,
                "trip_shape": "round_trip" if len(c.selected_offer.slices) > 1 else "one_way",
            }
        return context
