"""
Conversation state schema

The per-session ``Conversation`` record and the stage graph that governs it.
The record is plain data; ``ConversationStateMachine`` owns every mutation.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Optional

from pydantic import BaseModel, Field

from skybook.booking.models import Booking, PaymentStatus
from skybook.types import FlightSearchParams, Offer, Passenger, SelectedService, SortOrder


class Stage(str, Enum):
    INITIAL = "initial"
    SEARCH = "search"
    SELECTION = "selection"
    AUTHENTICATION = "authentication"
    PASSENGER_DETAILS = "passenger_details"
    ADDITIONAL_SERVICES = "additional_services"
    PAYMENT = "payment"
    CONFIRMATION = "confirmation"


TRANSITIONS: Dict[Stage, FrozenSet[Stage]] = {
    Stage.INITIAL: frozenset({Stage.SEARCH}),
    Stage.SEARCH: frozenset({Stage.SELECTION}),
    Stage.SELECTION: frozenset({Stage.AUTHENTICATION, Stage.PASSENGER_DETAILS}),
    # a user who logs in after selecting can skip straight to services
    Stage.AUTHENTICATION: frozenset({Stage.PASSENGER_DETAILS, Stage.ADDITIONAL_SERVICES}),
    Stage.PASSENGER_DETAILS: frozenset({Stage.ADDITIONAL_SERVICES}),
    Stage.ADDITIONAL_SERVICES: frozenset({Stage.PAYMENT}),
    Stage.PAYMENT: frozenset({Stage.CONFIRMATION}),
    Stage.CONFIRMATION: frozenset(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Message(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchHistoryItem(BaseModel):
    params: FlightSearchParams
    searched_at: datetime = Field(default_factory=_utcnow)
    results_count: Optional[int] = None
    selected_offer_id: Optional[str] = None


class RejectedOffer(BaseModel):
    offer_id: str
    reason: Optional[str] = None


class Refinements(BaseModel):
    applied_filters: Dict[str, Any] = Field(default_factory=dict)
    sort_preference: Optional[SortOrder] = None
    viewed_offers: List[str] = Field(default_factory=list)
    rejected_offers: List[RejectedOffer] = Field(default_factory=list)


class Conversation(BaseModel):
    session_id: str
    user_id: Optional[str] = None
    stage: Stage = Stage.INITIAL
    messages: List[Message] = Field(default_factory=list)

    search_params: Optional[FlightSearchParams] = None
    search_results: List[Offer] = Field(default_factory=list)
    selected_offer: Optional[Offer] = None
    passengers: List[Passenger] = Field(default_factory=list)
    selected_services: List[SelectedService] = Field(default_factory=list)

    booking_reference: Optional[str] = None
    order_id: Optional[str] = None
    payment_status: PaymentStatus = "pending"
    booking: Optional[Booking] = None

    search_history: List[SearchHistoryItem] = Field(default_factory=list)
    refinements: Refinements = Field(default_factory=Refinements)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None

    @property
    def is_booked(self) -> bool:
        return bool(self.booking_reference)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at < (now or _utcnow())

    def status(self, now: Optional[datetime] = None) -> str:
        if self.booking_reference:
            return "completed"
        if self.payment_status == "processing":
            return "processing"
        if self.stage == Stage.CONFIRMATION:
            return "confirmed"
        if self.is_expired(now):
            return "expired"
        return "active"

    def services_amount(self) -> Decimal:
        return sum((s.amount * (s.quantity or 1) for s in self.selected_services), Decimal("0"))
