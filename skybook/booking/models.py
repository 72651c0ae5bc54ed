from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from skybook.errors import SkybookError

BookingStatus = Literal["pending", "confirmed", "cancelled", "completed"]
PaymentStatus = Literal["pending", "processing", "completed", "failed", "refunded"]


class OrderService(BaseModel):
    id: str
    quantity: int = 1


class Order(BaseModel):
    """Provider order, paid or on hold."""
    id: str
    booking_reference: Optional[str] = None
    total_amount: Decimal
    total_currency: str
    passenger_ids: List[str] = Field(default_factory=list)
    services: List[OrderService] = Field(default_factory=list)
    awaiting_payment: bool = False
    payment_required_by: Optional[datetime] = None
    created_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class Payment(BaseModel):
    id: str
    order_id: Optional[str] = None
    type: str
    amount: Decimal
    currency: str
    created_at: Optional[datetime] = None


class Cancellation(BaseModel):
    id: str
    order_id: str
    refund_amount: Optional[Decimal] = None
    refund_currency: Optional[str] = None
    refund_to: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class FlightSummary(BaseModel):
    offer_id: str
    origin: str
    destination: str
    departure_at: Optional[datetime] = None
    return_departure_at: Optional[datetime] = None
    airlines: List[str] = Field(default_factory=list)
    slices: int = 1


class PricingSnapshot(BaseModel):
    total_amount: Decimal
    currency: str
    additional_services_amount: Decimal = Decimal("0")


class PaymentSnapshot(BaseModel):
    method: str
    status: PaymentStatus = "pending"
    paid_at: Optional[datetime] = None


class CancellationSnapshot(BaseModel):
    reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    refund_amount: Optional[Decimal] = None
    refund_currency: Optional[str] = None


# Forward-only progression; cancellation is handled separately
_STATUS_ORDER = {"pending": 0, "confirmed": 1, "completed": 2}


class Booking(BaseModel):
    """Durable record of a completed booking flow."""
    conversation_id: str
    user_id: Optional[str] = None
    order_id: str
    booking_reference: Optional[str] = None
    status: BookingStatus = "pending"
    flight: FlightSummary
    passengers: List[Dict[str, Any]] = Field(default_factory=list)
    pricing: PricingSnapshot
    payment: PaymentSnapshot
    services: List[Dict[str, Any]] = Field(default_factory=list)
    cancellation: Optional[CancellationSnapshot] = None
    ticketing_deadline: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def advance(self, status: BookingStatus) -> None:
        """Move status forward. Going backwards or leaving ``cancelled`` is an error."""
        if status == "cancelled":
            raise SkybookError("Use cancel() to cancel a booking")
        if self.status == "cancelled":
            raise SkybookError(f"Booking {self.order_id} is cancelled")
        if _STATUS_ORDER[status] < _STATUS_ORDER[self.status]:
            raise SkybookError(f"Booking {self.order_id} cannot go from {self.status} to {status}")
        self.status = status

    def cancel(self, cancellation: Cancellation, reason: Optional[str] = None) -> None:
        if self.status == "cancelled":
            raise SkybookError(f"Booking {self.order_id} is already cancelled")
        self.status = "cancelled"
        self.cancellation = CancellationSnapshot(
            reason=reason,
            cancelled_at=cancellation.confirmed_at or datetime.now(timezone.utc),
            refund_amount=cancellation.refund_amount,
            refund_currency=cancellation.refund_currency,
        )
        if self.payment.status == "completed" and cancellation.refund_amount:
            self.payment.status = "refunded"
