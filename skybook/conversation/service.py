"""
Conversation service

Entry point for every user-facing operation. Each call runs under the
session's lock: load the conversation, check the stage, call the validator,
ranking or booking components, record the outcome and save. Failures come
back as ``OperationResponse(success=False)`` with machine-readable errors.
"""

from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union
import uuid

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from skybook.booking.models import PaymentSnapshot
from skybook.booking.orchestrator import BookingOrchestrator, booking_from_order
from skybook.config import settings
from skybook.conversation.machine import ConversationStateMachine
from skybook.conversation.state import Stage
from skybook.errors import (
    BookingAccessError,
    BookingNotFoundError,
    ErrorDetail,
    FieldError,
    NoOfferSelectedError,
    ProviderError,
    SessionNotFoundError,
    SkybookError,
    StateTransitionError,
    ValidationError,
)
from skybook.llm.dialogue import DialogueAgent, Intent
from skybook.obs.context import request_id_var, session_id_var
from skybook.obs.logger import log_event
from skybook.obs.metrics import inc_counter
from skybook.rank.filters import FilterCriteria, OfferFilterEngine
from skybook.rank.selector import select_diverse
from skybook.session.store import ConversationStore
from skybook.types import (
    BaggageService,
    FlightSearchParams,
    Offer,
    OtherService,
    Passenger,
    SeatService,
    SelectedService,
    SortOrder,
)
from skybook.validation.validator import SearchValidator

AUTH_REQUIRED_MESSAGE = (
    "To continue with your booking, please sign in or create an account. "
    "This keeps your booking details secure and makes future bookings faster."
)

_FOCUS_SORT = {
    "cheaper": SortOrder.PRICE_LOW,
    "faster": SortOrder.DURATION_SHORT,
    "premium": SortOrder.PRICE_HIGH,
    "different_times": SortOrder.DEPARTURE_EARLY,
}


class OperationResponse(BaseModel):
    success: bool
    stage: Optional[Stage] = None
    message: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    errors: Optional[List[ErrorDetail]] = None


class AuthenticatedUser(BaseModel):
    """Identity handed over by the authentication collaborator."""
    user_id: str
    profile: Optional[Passenger] = None


def _offers_payload(offers: Sequence[Offer]) -> List[Dict[str, Any]]:
    return [o.model_dump(mode="json") for o in offers]


def _field_errors(e: PydanticValidationError, prefix: str = "") -> List[FieldError]:
    errors = []
    for err in e.errors():
        path = ".".join(str(p) for p in err.get("loc", ()))
        errors.append(FieldError(field=f"{prefix}{path}" if path else prefix.rstrip(".") or "input",
                                 message=err.get("msg", "Invalid value")))
    return errors


def _parse_criteria(args: Dict[str, Any]) -> FilterCriteria:
    try:
        return FilterCriteria.from_intent(args)
    except PydanticValidationError as e:
        raise ValidationError(_field_errors(e)) from e
    except ValueError as e:
        raise ValidationError([FieldError(field="sort", message=str(e))]) from e


def _service_kind(service: Union[SeatService, BaggageService, OtherService]) -> str:
    if isinstance(service, SeatService):
        return "seat"
    if isinstance(service, BaggageService):
        return "baggage"
    return service.type


class ConversationService:
    def __init__(self, store: ConversationStore, orchestrator: BookingOrchestrator,
                 dialogue: Optional[DialogueAgent] = None,
                 validator: Optional[SearchValidator] = None,
                 filter_engine: Optional[OfferFilterEngine] = None):
        self.store = store
        self.orchestrator = orchestrator
        self.dialogue = dialogue
        self.validator = validator or SearchValidator()
        self.filter_engine = filter_engine or OfferFilterEngine()

    # Plumbing

    async def _run(self, session_id: str, action: str,
                   handler: Callable[[ConversationStateMachine], Awaitable[OperationResponse]],
                   create_missing: bool = False) -> OperationResponse:
        session_id_var.set(session_id)
        request_id_var.set(uuid.uuid4().hex)

        async with self.store.lock(session_id):
            conversation = await self.store.load(session_id)
            if conversation is not None and not conversation.is_booked and conversation.is_expired():
                log_event("conversation_expired", action=action)
                await self.store.delete(session_id)
                conversation = None

            if conversation is None:
                if not create_missing:
                    err = SessionNotFoundError(session_id)
                    return OperationResponse(success=False, stage=Stage.INITIAL, message=err.message,
                                             errors=err.to_error_details())
                machine = ConversationStateMachine.start(session_id)
            else:
                machine = ConversationStateMachine(conversation)

            try:
                response = await handler(machine)
            except SkybookError as e:
                response = self._fail(machine, action, e)

            await self.store.save(machine.conversation)
            inc_counter("operations", {"action": action, "success": str(response.success).lower()})
            return response

    def _ok(self, machine: ConversationStateMachine, message: Optional[str] = None,
            data: Optional[Dict[str, Any]] = None, record: bool = True) -> OperationResponse:
        if message and record:
            machine.add_message("assistant", message)
        return OperationResponse(success=True, stage=machine.stage, message=message, data=data)

    def _fail(self, machine: ConversationStateMachine, action: str, error: SkybookError) -> OperationResponse:
        if isinstance(error, ValidationError):
            message = "I need to correct some information:\n" + "\n".join(f"- {e.message}" for e in error.errors)
        else:
            message = error.message
        level = "ERROR" if isinstance(error, StateTransitionError) else "WARN"
        log_event("operation_failed", level=level, action=action, code=error.code,
                  category=error.category, stage=machine.stage.value)
        machine.add_message("assistant", message, metadata={"error": error.code})
        return OperationResponse(success=False, stage=machine.stage, message=message,
                                 errors=error.to_error_details())

    @staticmethod
    def _require_stage(machine: ConversationStateMachine, target: Stage, *allowed: Stage) -> None:
        if machine.stage not in allowed:
            raise StateTransitionError(machine.stage.value, target.value)

    @staticmethod
    def _selected_offer(machine: ConversationStateMachine) -> Offer:
        offer = machine.conversation.selected_offer
        if offer is None:
            raise NoOfferSelectedError()
        return offer

    # Conversation entry points

    async def start(self, session_id: str, user_id: Optional[str] = None) -> OperationResponse:
        async def handler(machine: ConversationStateMachine) -> OperationResponse:
            if user_id and not machine.conversation.user_id:
                machine.conversation.user_id = user_id
                machine.touch()
            return self._ok(machine, data={
                "session_id": session_id,
                "status": machine.conversation.status(),
                "messages": len(machine.conversation.messages),
            })
        return await self._run(session_id, "start", handler, create_missing=True)

    async def handle_message(self, session_id: str, text: str,
                             user: Optional[AuthenticatedUser] = None) -> OperationResponse:
        if self.dialogue is None:
            raise RuntimeError("ConversationService was built without a dialogue agent")

        async def handler(machine: ConversationStateMachine) -> OperationResponse:
            machine.add_message("user", text)
            if machine.stage == Stage.AUTHENTICATION:
                if user is not None:
                    return await self._authenticate(machine, user)
                return self._ok(machine, AUTH_REQUIRED_MESSAGE, {"requires_auth": True})

            reply = await self.dialogue.respond(machine.history(), machine.sanitized_context())
            if reply.intent is None:
                return self._ok(machine, reply.message)
            return await self._dispatch(machine, reply.intent, user)

        return await self._run(session_id, "message", handler, create_missing=True)

    async def handle_intent(self, session_id: str, intent: Intent,
                            user: Optional[AuthenticatedUser] = None) -> OperationResponse:
        async def handler(machine: ConversationStateMachine) -> OperationResponse:
            return await self._dispatch(machine, intent, user)
        return await self._run(session_id, intent.name, handler, create_missing=intent.name == "search_flights")

    async def _dispatch(self, machine: ConversationStateMachine, intent: Intent,
                        user: Optional[AuthenticatedUser]) -> OperationResponse:
        args = intent.arguments
        log_event("intent_dispatch", intent=intent.name, stage=machine.stage.value)
        if intent.name == "search_flights":
            return await self._search(machine, args)
        if intent.name == "filter_flights":
            return await self._filter(machine, _parse_criteria(args))
        if intent.name == "search_more_flights":
            return await self._search_more(machine, args.get("focus_on"))
        if intent.name == "select_offer":
            return await self._select(machine, option_number=args.get("option_number"), user=user)
        raise ValidationError([FieldError(field="intent", message=f"Unknown intent {intent.name}")])

    # Search

    async def search_flights(self, session_id: str,
                             params: Union[FlightSearchParams, Dict[str, Any]]) -> OperationResponse:
        if isinstance(params, FlightSearchParams):
            params = params.model_dump(mode="json", by_alias=True, exclude_none=True)

        async def handler(machine: ConversationStateMachine) -> OperationResponse:
            return await self._search(machine, params)
        return await self._run(session_id, "search_flights", handler, create_missing=True)

    def _merge_search_params(self, machine: ConversationStateMachine, args: Dict[str, Any]) -> Dict[str, Any]:
        current = machine.conversation.search_params
        merged: Dict[str, Any] = current.model_dump(mode="json", by_alias=True, exclude_none=True) if current else {}
        merged.update({k: v for k, v in args.items() if v is not None})
        if "type" in merged and "trip_type" not in args:
            merged["trip_type"] = merged.pop("type")
        merged.setdefault("passengers", {"adults": 1, "children": 0, "infants": 0})
        return merged

    async def _search(self, machine: ConversationStateMachine, args: Dict[str, Any]) -> OperationResponse:
        self._require_stage(machine, Stage.SEARCH, Stage.INITIAL, Stage.SEARCH, Stage.SELECTION)

        merged = self._merge_search_params(machine, args)
        report = self.validator.validate(merged)
        if not report.is_valid:
            raise ValidationError(report.errors)
        try:
            params = FlightSearchParams.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError(_field_errors(e)) from e

        if machine.stage == Stage.INITIAL:
            machine.require_transition(Stage.SEARCH)
        machine.update_search_params(params)

        offers = await self.orchestrator.search(params, limit=settings.SEARCH_RESULT_LIMIT)
        shown = select_diverse(offers, settings.DIVERSE_RESULT_COUNT)
        machine.set_search_results(shown, results_count=len(offers))

        if not shown:
            return self._ok(machine, "I couldn't find any flights for those details. "
                                     "Would you like to try different dates or airports?",
                            {"search_results": [], "warnings": report.warnings})

        if machine.stage == Stage.SEARCH:
            machine.require_transition(Stage.SELECTION)
        return self._ok(
            machine,
            f"I found {len(shown)} flight options for you. Pick the one that suits you best "
            f"(1-{len(shown)}), or ask for more options or specific preferences.",
            {"search_results": _offers_payload(shown), "warnings": report.warnings},
        )

    async def filter_flights(self, session_id: str,
                             criteria: Union[FilterCriteria, Dict[str, Any]]) -> OperationResponse:
        async def handler(machine: ConversationStateMachine) -> OperationResponse:
            parsed = criteria if isinstance(criteria, FilterCriteria) else _parse_criteria(criteria)
            return await self._filter(machine, parsed)
        return await self._run(session_id, "filter_flights", handler)

    async def _filter(self, machine: ConversationStateMachine, criteria: FilterCriteria) -> OperationResponse:
        self._require_stage(machine, Stage.SELECTION, Stage.INITIAL, Stage.SEARCH, Stage.SELECTION)
        current = machine.conversation.search_results
        if not current:
            return self._ok(machine, "I don't have any flight results to filter yet. Let's search for flights first.")

        filtered = self.filter_engine.filter(current, criteria)
        if not filtered and machine.conversation.search_params is not None:
            # nothing left among the shown options: widen to a larger result set
            wider = await self.orchestrator.search(machine.conversation.search_params,
                                                   limit=settings.FILTER_SEARCH_LIMIT)
            filtered = self.filter_engine.filter(wider, criteria)[:settings.DIVERSE_RESULT_COUNT]

        machine.apply_filter(criteria.model_dump(mode="json", exclude_none=True, by_alias=True))
        if not filtered:
            return self._ok(machine, "No flights match those preferences. "
                                     "Would you like to try different filters or see all options?",
                            {"search_results": _offers_payload(current)})

        machine.set_search_results(filtered)
        return self._ok(machine, f"Here are {len(filtered)} options that match your preferences.",
                        {"search_results": _offers_payload(filtered)})

    async def search_more_flights(self, session_id: str, focus_on: Optional[str] = None) -> OperationResponse:
        async def handler(machine: ConversationStateMachine) -> OperationResponse:
            return await self._search_more(machine, focus_on)
        return await self._run(session_id, "search_more_flights", handler)

    async def _search_more(self, machine: ConversationStateMachine, focus_on: Optional[str]) -> OperationResponse:
        self._require_stage(machine, Stage.SELECTION, Stage.INITIAL, Stage.SEARCH, Stage.SELECTION)
        params = machine.conversation.search_params
        if params is None:
            return self._ok(machine, "I don't have enough information to search for more flights yet. "
                                     "Where would you like to go?")

        offers = await self.orchestrator.search(params, limit=settings.MORE_OPTIONS_SEARCH_LIMIT)
        seen = {o.id for o in machine.conversation.search_results}
        seen.update(r.offer_id for r in machine.conversation.refinements.rejected_offers)
        fresh = [o for o in offers if o.id not in seen]

        if focus_on in _FOCUS_SORT:
            shown = OfferFilterEngine.sort(fresh, _FOCUS_SORT[focus_on])[:settings.DIVERSE_RESULT_COUNT]
        else:
            shown = select_diverse(fresh, settings.DIVERSE_RESULT_COUNT)

        if not shown:
            return self._ok(machine, "I've shown you all the available options. "
                                     "Would you like to change your search to find different flights?")

        machine.set_search_results(shown)
        if machine.stage == Stage.SEARCH:
            machine.require_transition(Stage.SELECTION)
        return self._ok(machine, f"Here are {len(shown)} more flight options for you.",
                        {"search_results": _offers_payload(shown)})

    # Selection and authentication

    async def select_offer(self, session_id: str, option_number: Optional[int] = None,
                           offer_id: Optional[str] = None, user: Optional[AuthenticatedUser] = None,
                           require_auth: bool = True) -> OperationResponse:
        async def handler(machine: ConversationStateMachine) -> OperationResponse:
            return await self._select(machine, option_number=option_number, offer_id=offer_id,
                                      user=user, require_auth=require_auth)
        return await self._run(session_id, "select_offer", handler)

    async def _select(self, machine: ConversationStateMachine, option_number: Optional[int] = None,
                      offer_id: Optional[str] = None, user: Optional[AuthenticatedUser] = None,
                      require_auth: bool = True) -> OperationResponse:
        target = Stage.AUTHENTICATION if require_auth else Stage.PASSENGER_DETAILS
        self._require_stage(machine, target, Stage.SELECTION)

        results = machine.conversation.search_results
        offer = None
        if offer_id is not None:
            offer = next((o for o in results if o.id == offer_id), None)
        elif isinstance(option_number, int) and 1 <= option_number <= len(results):
            offer = results[option_number - 1]
        if offer is None:
            raise ValidationError([FieldError(
                field="offer_id" if offer_id is not None else "option_number",
                message=f"Invalid option. Please select from the available options (1-{len(results)}).",
            )])

        services = await self.orchestrator.get_offer_services(offer.id)
        offer = offer.model_copy(update={"available_services": services})
        machine.select_offer(offer)
        for other in results:
            if other.id != offer.id:
                machine.reject_offer(other.id, reason="another option selected")

        if not require_auth:
            machine.require_transition(Stage.PASSENGER_DETAILS)
            return self._ok(machine, "Good choice. Please fill in the passenger details to continue.",
                            {"selected_offer": offer.model_dump(mode="json"), "requires_auth": False})

        machine.require_transition(Stage.AUTHENTICATION)
        if user is not None:
            return await self._authenticate(machine, user)
        return self._ok(machine, "Good choice. " + AUTH_REQUIRED_MESSAGE,
                        {"selected_offer": offer.model_dump(mode="json"), "requires_auth": True})

    async def authenticate(self, session_id: str, user: AuthenticatedUser) -> OperationResponse:
        async def handler(machine: ConversationStateMachine) -> OperationResponse:
            return await self._authenticate(machine, user)
        return await self._run(session_id, "authenticate", handler)

    async def _authenticate(self, machine: ConversationStateMachine, user: AuthenticatedUser) -> OperationResponse:
        self._require_stage(machine, Stage.PASSENGER_DETAILS, Stage.AUTHENTICATION)
        offer = self._selected_offer(machine)
        machine.conversation.user_id = user.user_id

        # a profile covers the whole booking only when a single traveller is flying
        if user.profile is not None and len(offer.passenger_ids) <= 1:
            machine.set_passengers([user.profile])
            machine.require_transition(Stage.ADDITIONAL_SERVICES)
            return self._ok(machine, "You're signed in and we've pre-filled your passenger details. "
                                     "You can now add seats, bags or other extras.",
                            {"prefilled": True, "available_services": self._services_payload(offer)})

        if user.profile is not None:
            machine.set_passengers([user.profile])
        machine.require_transition(Stage.PASSENGER_DETAILS)
        return self._ok(machine, "You're signed in. Please complete the passenger details.",
                        {"prefilled": user.profile is not None, "passengers_required": len(offer.passenger_ids)})

    @staticmethod
    def _services_payload(offer: Offer) -> Optional[Dict[str, Any]]:
        return offer.available_services.model_dump(mode="json") if offer.available_services else None

    # Passenger details and services

    async def submit_passengers(self, session_id: str,
                                passengers: Sequence[Union[Passenger, Dict[str, Any]]]) -> OperationResponse:
        async def handler(machine: ConversationStateMachine) -> OperationResponse:
            self._require_stage(machine, Stage.ADDITIONAL_SERVICES, Stage.PASSENGER_DETAILS,
                                Stage.AUTHENTICATION, Stage.ADDITIONAL_SERVICES)
            offer = self._selected_offer(machine)

            report = self.validator.validate_passenger_details(passengers, departure_date=offer.departure_at)
            if not report.is_valid:
                raise ValidationError(report.errors)
            parsed: List[Passenger] = []
            for index, raw in enumerate(passengers):
                try:
                    parsed.append(raw if isinstance(raw, Passenger) else Passenger.model_validate(raw))
                except PydanticValidationError as e:
                    raise ValidationError(_field_errors(e, prefix=f"passengers[{index}].")) from e

            machine.set_passengers(parsed)
            if machine.stage != Stage.ADDITIONAL_SERVICES:
                machine.require_transition(Stage.ADDITIONAL_SERVICES)
            return self._ok(machine, "Thank you, the passenger details are recorded. "
                                     "Would you like to select seats, add baggage or choose other extras?",
                            {"passengers": len(parsed), "available_services": self._services_payload(offer)})
        return await self._run(session_id, "submit_passengers", handler)

    async def select_services(self, session_id: str,
                              services: Sequence[Union[SelectedService, Dict[str, Any]]],
                              proceed: bool = True) -> OperationResponse:
        async def handler(machine: ConversationStateMachine) -> OperationResponse:
            self._require_stage(machine, Stage.PAYMENT, Stage.ADDITIONAL_SERVICES)
            offer = self._selected_offer(machine)
            available = offer.available_services

            chosen: List[SelectedService] = []
            for raw in services:
                requested = raw if isinstance(raw, SelectedService) else None
                service_id = requested.id if requested else raw.get("id")
                quantity = (requested.quantity if requested else raw.get("quantity")) or 1
                match = available.find(service_id) if available and service_id else None
                if match is None:
                    log_event("service_not_offered", level="WARN", service_id=service_id)
                    continue
                chosen.append(SelectedService(
                    id=match.id,
                    type=_service_kind(match),
                    quantity=min(quantity, getattr(match, "max_quantity", 1)),
                    amount=match.amount,
                    currency=match.currency,
                    name=getattr(match, "designator", None) or getattr(match, "name", None),
                ))

            machine.set_services(chosen)
            if proceed:
                machine.require_transition(Stage.PAYMENT)
            total = machine.total_amount()
            return self._ok(
                machine,
                f"Your extras are added. The total for your trip is {offer.total_currency} {total:.2f}.",
                {"selected_services": [s.model_dump(mode="json") for s in chosen],
                 "total_amount": str(total), "currency": offer.total_currency},
            )
        return await self._run(session_id, "select_services", handler)

    async def proceed_to_payment(self, session_id: str) -> OperationResponse:
        async def handler(machine: ConversationStateMachine) -> OperationResponse:
            offer = self._selected_offer(machine)
            machine.require_transition(Stage.PAYMENT)
            total = machine.total_amount()
            return self._ok(machine, f"The total for your trip is {offer.total_currency} {total:.2f}.",
                            {"total_amount": str(total), "currency": offer.total_currency})
        return await self._run(session_id, "proceed_to_payment", handler)

    # Booking

    async def book(self, session_id: str, payment_type: Optional[str] = None,
                   hold: bool = False) -> OperationResponse:
        async def handler(machine: ConversationStateMachine) -> OperationResponse:
            if not machine.can_transition(machine.stage, Stage.CONFIRMATION):
                raise StateTransitionError(machine.stage.value, Stage.CONFIRMATION.value)
            offer = self._selected_offer(machine)
            conversation = machine.conversation
            if not conversation.passengers:
                raise ValidationError([FieldError(field="passengers", message="Passenger details required")])

            method = payment_type or settings.DEFAULT_PAYMENT_TYPE
            machine.set_payment_status("processing")
            try:
                if hold:
                    order = await self.orchestrator.create_hold_order(
                        offer.id, conversation.passengers, conversation.selected_services)
                else:
                    order = await self.orchestrator.create_order(
                        offer.id, conversation.passengers, method, conversation.selected_services)
            except SkybookError:
                machine.set_payment_status("failed")
                raise

            booking = booking_from_order(conversation.session_id, offer, order, conversation.passengers,
                                         conversation.selected_services, method, hold,
                                         user_id=conversation.user_id)
            machine.record_booking(booking, payment_status="pending" if hold else "completed")
            machine.require_transition(Stage.CONFIRMATION)

            if hold:
                message = (f"Your booking {order.booking_reference} is on hold. "
                           f"Pay {order.total_currency} {order.total_amount} to confirm it.")
            else:
                message = f"Your booking is confirmed. Your booking reference is {order.booking_reference}."
            return self._ok(machine, message, {
                "booking_reference": order.booking_reference,
                "order_id": order.id,
                "status": booking.status,
                "total_amount": str(order.total_amount),
                "currency": order.total_currency,
                "payment_required_by": order.payment_required_by.isoformat() if order.payment_required_by else None,
            })
        return await self._run(session_id, "book", handler)

    async def pay_hold_order(self, session_id: str, payment_type: Optional[str] = None) -> OperationResponse:
        async def handler(machine: ConversationStateMachine) -> OperationResponse:
            booking = machine.conversation.booking
            if booking is None or booking.payment.method != "hold" or booking.status != "pending":
                raise ValidationError([FieldError(field="order_id", message="There is no unpaid held booking")])

            payment = await self.orchestrator.pay_for_hold_order(booking.order_id, payment_type)
            booking.advance("confirmed")
            booking.payment = PaymentSnapshot(method=payment.type, status="completed", paid_at=payment.created_at)
            booking.pricing.total_amount = payment.amount
            booking.pricing.currency = payment.currency
            machine.set_payment_status("completed")
            return self._ok(machine, f"Payment received. Booking {booking.booking_reference} is confirmed.",
                            {"order_id": booking.order_id, "amount": str(payment.amount),
                             "currency": payment.currency, "status": booking.status})
        return await self._run(session_id, "pay_hold_order", handler)

    async def cancel_booking(self, session_id: str, reason: Optional[str] = None) -> OperationResponse:
        async def handler(machine: ConversationStateMachine) -> OperationResponse:
            booking = machine.conversation.booking
            if booking is None or booking.status == "cancelled":
                raise ValidationError([FieldError(field="order_id", message="There is no active booking to cancel")])

            cancellation = await self.orchestrator.cancel_order(booking.order_id)
            booking.cancel(cancellation, reason or "Customer requested cancellation")
            if booking.payment.status == "refunded":
                machine.set_payment_status("refunded")
            else:
                machine.touch()
            refund = booking.cancellation
            return self._ok(machine, f"Booking {booking.booking_reference} has been cancelled.", {
                "order_id": booking.order_id,
                "refund_amount": str(refund.refund_amount) if refund.refund_amount is not None else None,
                "refund_currency": refund.refund_currency,
            })
        return await self._run(session_id, "cancel_booking", handler)

    async def refresh_selected_offer(self, session_id: str) -> OperationResponse:
        async def handler(machine: ConversationStateMachine) -> OperationResponse:
            offer = self._selected_offer(machine)
            params = machine.conversation.search_params
            refreshed = await self.orchestrator.refresh_offer(offer, params.passengers if params else None)
            services = await self.orchestrator.get_offer_services(refreshed.id)
            refreshed = refreshed.model_copy(update={"available_services": services})

            machine.replace_selected_offer(refreshed)
            if machine.conversation.selected_services:
                # service ids belong to the old offer
                machine.set_services([])
            changed = refreshed.total_amount != offer.total_amount
            message = (f"The price has changed to {refreshed.total_currency} {refreshed.total_amount}."
                       if changed else "The price is unchanged.")
            return self._ok(machine, message, {
                "previous_offer_id": offer.id,
                "offer": refreshed.model_dump(mode="json"),
                "price_changed": changed,
            })
        return await self._run(session_id, "refresh_selected_offer", handler)

    async def purge_expired(self) -> int:
        return await self.store.purge_expired()

    # Booking lookups, outside any one conversation

    async def _lookup(self, action: str, handler: Callable[[], Awaitable[OperationResponse]]) -> OperationResponse:
        request_id_var.set(uuid.uuid4().hex)
        try:
            response = await handler()
        except SkybookError as e:
            log_event("operation_failed", level="WARN", action=action, code=e.code, category=e.category)
            response = OperationResponse(success=False, message=e.message, errors=e.to_error_details())
        inc_counter("operations", {"action": action, "success": str(response.success).lower()})
        return response

    async def get_booking(self, booking_reference: str,
                          user: Optional[AuthenticatedUser] = None) -> OperationResponse:
        """Stored booking plus the provider's current view of the order when it can be fetched."""
        async def handler() -> OperationResponse:
            conversation = await self.store.find_booking(booking_reference)
            if conversation is None or conversation.booking is None:
                raise BookingNotFoundError(booking_reference)
            booking = conversation.booking
            if user is not None and booking.user_id and booking.user_id != user.user_id:
                raise BookingAccessError(booking_reference)

            order = None
            try:
                order = await self.orchestrator.get_order(booking.order_id)
            except ProviderError as e:
                log_event("booking_order_unavailable", level="WARN", order_id=booking.order_id, code=e.code)
            return OperationResponse(success=True, stage=conversation.stage, data={
                "booking": booking.model_dump(mode="json"),
                "order": order.model_dump(mode="json") if order else None,
            })
        return await self._lookup("get_booking", handler)

    async def list_bookings(self, user: AuthenticatedUser) -> OperationResponse:
        async def handler() -> OperationResponse:
            bookings = await self.store.list_bookings(user.user_id)
            return OperationResponse(success=True, data={"bookings": [b.model_dump(mode="json") for b in bookings]})
        return await self._lookup("list_bookings", handler)

    async def orders_by_email(self, email: str, limit: int = 10) -> OperationResponse:
        async def handler() -> OperationResponse:
            orders = await self.orchestrator.orders_by_email(email, limit=limit)
            return OperationResponse(success=True, data={"orders": [o.model_dump(mode="json") for o in orders]})
        return await self._lookup("orders_by_email", handler)
