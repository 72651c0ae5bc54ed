import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

from skybook.booking.orchestrator import BookingOrchestrator
from skybook.conversation.service import AuthenticatedUser, ConversationService
from skybook.conversation.state import Conversation, Stage
from skybook.errors import ProviderError
from skybook.llm.dialogue import DialogueReply, Intent
from skybook.session.store import SessionStore
from skybook.types import Passenger

from factories import passenger, raw_offer, raw_services


SEARCH = {"trip_type": "one_way", "origin": "LHR", "destination": "AMS", "departure_date": "2030-05-01"}


def raws(passengers=1):
    return [
        raw_offer(offer_id="off_a", amount="220.00", departing_at="2030-05-01T12:00:00", minutes=150, passengers=passengers),
        raw_offer(offer_id="off_b", amount="99.00", departing_at="2030-05-01T15:00:00", minutes=300, passengers=passengers),
        raw_offer(offer_id="off_c", amount="250.00", departing_at="2030-05-01T18:00:00", minutes=60, passengers=passengers),
        raw_offer(offer_id="off_d", amount="230.00", departing_at="2030-05-01T06:00:00", minutes=200, passengers=passengers),
    ]


def make_provider(offers=None):
    offers = raws() if offers is None else offers
    by_id = {o["id"]: o for o in offers}

    async def get_offer(offer_id, services=True, brand_attributes=False):
        raw = dict(by_id[offer_id])
        raw["available_services"] = raw_services()
        return raw

    p = Mock()
    p.by_id = by_id
    p.create_search_request = AsyncMock(return_value="orq_1")
    p.list_offers = AsyncMock(return_value=offers)
    p.get_offer = AsyncMock(side_effect=get_offer)
    p.create_order = AsyncMock(return_value={
        "id": "ord_1", "booking_reference": "ABC123", "total_amount": "159.00", "total_currency": "GBP",
    })
    p.get_order = AsyncMock(return_value={"id": "ord_1", "total_amount": "99.00", "total_currency": "GBP"})
    p.create_payment = AsyncMock(return_value={
        "id": "pay_1", "order_id": "ord_1", "type": "balance", "amount": "99.00", "currency": "GBP",
        "created_at": "2030-04-02T10:00:00Z",
    })
    p.create_cancellation = AsyncMock(return_value={"id": "ore_1", "order_id": "ord_1"})
    p.confirm_cancellation = AsyncMock(return_value={
        "id": "ore_1", "order_id": "ord_1", "refund_amount": "100.00", "refund_currency": "GBP",
    })
    return p


def make_service(provider=None, reply=None):
    provider = provider or make_provider()
    dialogue = Mock()
    dialogue.respond = AsyncMock(return_value=reply or DialogueReply(message="Where would you like to go?"))
    store = SessionStore()
    svc = ConversationService(store=store, orchestrator=BookingOrchestrator(provider), dialogue=dialogue)
    return svc, provider, dialogue, store


def profile():
    return Passenger.model_validate(passenger())


async def to_payment(svc, sid="s1"):
    await svc.search_flights(sid, SEARCH)
    await svc.select_offer(sid, option_number=1)
    await svc.authenticate(sid, AuthenticatedUser(user_id="u1", profile=profile()))
    return await svc.select_services(sid, [{"id": "ase_bag_23", "quantity": 5}, {"id": "ase_unknown"}])


async def test_plain_reply_is_recorded():
    svc, _, dialogue, store = make_service()
    resp = await svc.handle_message("s1", "hi there")

    assert resp.success
    assert resp.stage == Stage.INITIAL
    assert resp.message == "Where would you like to go?"
    history, context = dialogue.respond.call_args.args
    assert history == [{"role": "user", "content": "hi there"}]
    assert context["stage"] == "initial"
    saved = await store.load("s1")
    assert [m.role for m in saved.messages] == ["user", "assistant"]


async def test_search_intent_moves_to_selection_with_diverse_options():
    reply = DialogueReply(intent=Intent(name="search_flights", arguments=SEARCH))
    svc, provider, _, store = make_service(reply=reply)

    resp = await svc.handle_message("s1", "yes, search please")

    assert resp.success
    assert resp.stage == Stage.SELECTION
    assert [o["id"] for o in resp.data["search_results"]] == ["off_b", "off_c", "off_d"]
    saved = await store.load("s1")
    assert saved.search_params.origin == "LHR"
    assert saved.search_history[-1].results_count == 4
    assert provider.list_offers.call_args.kwargs["limit"] == 10


async def test_invalid_search_reports_field_errors_without_provider_call():
    svc, provider, _, store = make_service()
    resp = await svc.search_flights("s1", {**SEARCH, "destination": "LHR"})

    assert not resp.success
    assert resp.stage == Stage.INITIAL
    assert resp.errors[0].code == "validation_failed"
    assert resp.errors[0].field == "destination"
    assert resp.message.startswith("I need to correct some information")
    provider.create_search_request.assert_not_called()
    assert (await store.load("s1")).stage == Stage.INITIAL


async def test_search_without_results_stays_in_search():
    svc, _, _, _ = make_service(provider=make_provider(offers=[]))
    resp = await svc.search_flights("s1", SEARCH)
    assert resp.success
    assert resp.stage == Stage.SEARCH
    assert resp.data["search_results"] == []


async def test_follow_up_search_merges_previous_params():
    svc, provider, _, store = make_service()
    await svc.search_flights("s1", SEARCH)
    resp = await svc.search_flights("s1", {"departure_date": "2030-05-03"})

    assert resp.success
    assert resp.stage == Stage.SELECTION
    saved = await store.load("s1")
    assert saved.search_params.origin == "LHR"
    assert saved.search_params.departure_date.isoformat() == "2030-05-03"
    assert len(saved.search_history) == 2


async def test_filter_narrows_and_widens_when_nothing_matches():
    svc, provider, _, store = make_service()
    await svc.search_flights("s1", SEARCH)

    morning = await svc.filter_flights("s1", {"time_of_day": "morning"})
    assert [o["id"] for o in morning.data["search_results"]] == ["off_d"]

    evening = await svc.filter_flights("s1", {"time_of_day": "evening"})
    assert [o["id"] for o in evening.data["search_results"]] == ["off_c"]
    assert provider.list_offers.call_args.kwargs["limit"] == 20

    saved = await store.load("s1")
    assert saved.refinements.applied_filters["departure_time"] == {"from": "17:00", "to": "21:00"}


async def test_search_more_excludes_shown_offers():
    svc, provider, _, _ = make_service()
    await svc.search_flights("s1", SEARCH)
    resp = await svc.search_more_flights("s1", focus_on="cheaper")

    assert [o["id"] for o in resp.data["search_results"]] == ["off_a"]
    assert provider.list_offers.call_args.kwargs["limit"] == 15


async def test_selection_requires_sign_in_and_blocks_dialogue():
    reply = DialogueReply(intent=Intent(name="search_flights", arguments=SEARCH))
    svc, _, dialogue, store = make_service(reply=reply)
    await svc.handle_message("s1", "search")

    resp = await svc.select_offer("s1", option_number=1)
    assert resp.stage == Stage.AUTHENTICATION
    assert resp.data["requires_auth"] is True
    saved = await store.load("s1")
    assert saved.selected_offer.id == "off_b"
    assert saved.selected_offer.available_services is not None

    blocked = await svc.handle_message("s1", "can I just pay?")
    assert blocked.data == {"requires_auth": True}
    assert dialogue.respond.await_count == 1


async def test_invalid_option_number():
    svc, _, _, _ = make_service()
    await svc.search_flights("s1", SEARCH)
    resp = await svc.select_offer("s1", option_number=7)
    assert not resp.success
    assert resp.stage == Stage.SELECTION
    assert resp.errors[0].field == "option_number"


async def test_guest_checkout_goes_to_passenger_details():
    svc, _, _, _ = make_service()
    await svc.search_flights("s1", SEARCH)
    resp = await svc.select_offer("s1", option_number=2, require_auth=False)
    assert resp.stage == Stage.PASSENGER_DETAILS


async def test_full_booking_flow():
    svc, provider, _, store = make_service()
    services = await to_payment(svc)

    assert services.stage == Stage.PAYMENT
    assert [s["id"] for s in services.data["selected_services"]] == ["ase_bag_23"]
    assert services.data["selected_services"][0]["quantity"] == 2
    assert services.data["total_amount"] == "159.00"

    resp = await svc.book("s1")
    assert resp.success
    assert resp.stage == Stage.CONFIRMATION
    assert resp.data["booking_reference"] == "ABC123"

    payload = provider.create_order.call_args.args[0]
    assert payload["services"] == [{"id": "ase_bag_23", "quantity": 2}]

    saved = await store.load("s1")
    assert saved.expires_at is None
    assert saved.payment_status == "completed"
    assert saved.booking.status == "confirmed"
    assert saved.user_id == "u1"
    assert saved.status() == "completed"


async def test_book_with_wrong_passenger_count_is_rejected():
    svc, provider, _, store = make_service(provider=make_provider(raws(passengers=2)))
    await svc.search_flights("s1", {**SEARCH, "passengers": {"adults": 2}})
    await svc.select_offer("s1", option_number=1)
    auth = await svc.authenticate("s1", AuthenticatedUser(user_id="u1", profile=profile()))
    assert auth.stage == Stage.PASSENGER_DETAILS

    await svc.submit_passengers("s1", [passenger()])
    await svc.proceed_to_payment("s1")
    resp = await svc.book("s1")

    assert not resp.success
    assert resp.stage == Stage.PAYMENT
    assert resp.errors[0].code == "passenger_count_mismatch"
    provider.create_order.assert_not_called()
    assert (await store.load("s1")).payment_status == "failed"


async def test_booking_from_wrong_stage_is_illegal():
    svc, provider, _, _ = make_service()
    await svc.start("s1")
    resp = await svc.book("s1")
    assert not resp.success
    assert resp.errors[0].code == "illegal_transition"
    assert resp.stage == Stage.INITIAL
    provider.create_order.assert_not_called()


async def test_invalid_passenger_details_keep_stage():
    svc, _, _, _ = make_service()
    await svc.search_flights("s1", SEARCH)
    await svc.select_offer("s1", option_number=1, require_auth=False)
    resp = await svc.submit_passengers("s1", [passenger(email="nope")])
    assert not resp.success
    assert resp.stage == Stage.PASSENGER_DETAILS
    assert resp.errors[0].field == "passengers[0].email"


async def test_hold_then_pay_then_cancel():
    provider = make_provider()
    provider.create_order = AsyncMock(return_value={
        "id": "ord_1", "booking_reference": "HLD123", "total_amount": "99.00", "total_currency": "GBP",
        "payment_status": {"awaiting_payment": True, "payment_required_by": "2030-04-03T10:00:00Z"},
    })
    svc, _, _, store = make_service(provider=provider)
    await to_payment(svc)

    held = await svc.book("s1", hold=True)
    assert held.data["status"] == "pending"
    assert held.data["payment_required_by"].startswith("2030-04-03")
    assert "payments" not in provider.create_order.call_args.args[0]
    assert (await store.load("s1")).payment_status == "pending"

    paid = await svc.pay_hold_order("s1")
    assert paid.success
    provider.create_payment.assert_awaited_once_with("ord_1", "balance", "99.00", "GBP")
    saved = await store.load("s1")
    assert saved.booking.status == "confirmed"
    assert saved.payment_status == "completed"

    again = await svc.pay_hold_order("s1")
    assert not again.success

    cancelled = await svc.cancel_booking("s1", reason="plans changed")
    assert cancelled.success
    assert cancelled.data["refund_amount"] == "100.00"
    saved = await store.load("s1")
    assert saved.booking.status == "cancelled"
    assert saved.booking.cancellation.reason == "plans changed"
    assert saved.payment_status == "refunded"


async def test_refresh_selected_offer_clears_services():
    svc, provider, _, store = make_service()
    await to_payment(svc)

    fresh = raw_offer(offer_id="off_new", amount="109.00")
    provider.by_id["off_new"] = fresh
    provider.list_offers.return_value = [fresh]

    resp = await svc.refresh_selected_offer("s1")
    assert resp.success
    assert resp.stage == Stage.PAYMENT
    assert resp.data["price_changed"] is True
    saved = await store.load("s1")
    assert saved.selected_offer.id == "off_new"
    assert saved.selected_offer.total_amount == Decimal("109.00")
    assert saved.selected_services == []


async def test_unknown_session_is_reported():
    svc, _, _, _ = make_service()
    resp = await svc.filter_flights("missing", {"time_of_day": "morning"})
    assert not resp.success
    assert resp.errors[0].code == "session_not_found"


async def test_expired_conversation_starts_over():
    svc, _, _, store = make_service()
    await store.save(Conversation(session_id="old", stage=Stage.PAYMENT,
                                  expires_at=datetime.now(timezone.utc) - timedelta(minutes=1)))
    resp = await svc.start("old", user_id="u9")
    assert resp.stage == Stage.INITIAL
    saved = await store.load("old")
    assert saved.user_id == "u9"
    assert saved.expires_at > datetime.now(timezone.utc)


async def test_concurrent_requests_on_expired_session_run_one_at_a_time():
    provider = make_provider()
    running = []
    peak = []

    async def slow_search_request(*args, **kwargs):
        running.append(1)
        peak.append(len(running))
        await asyncio.sleep(0.05)
        running.pop()
        return "orq_1"

    provider.create_search_request = AsyncMock(side_effect=slow_search_request)
    svc, _, _, store = make_service(provider=provider)
    await store.save(Conversation(session_id="old", stage=Stage.SELECTION,
                                  expires_at=datetime.now(timezone.utc) - timedelta(minutes=1)))

    first, second = await asyncio.gather(svc.search_flights("old", SEARCH), svc.search_flights("old", SEARCH))

    assert first.success and second.success
    assert max(peak) == 1
    assert len((await store.load("old")).search_history) == 2


async def test_malformed_filter_arguments_come_back_as_errors():
    reply = DialogueReply(intent=Intent(name="search_flights", arguments=SEARCH))
    svc, _, _, _ = make_service(reply=reply)
    await svc.handle_message("s1", "search")

    bad_sort = await svc.handle_intent("s1", Intent(name="filter_flights", arguments={"sort": "cheapest"}))
    assert not bad_sort.success
    assert bad_sort.errors[0].code == "validation_failed"
    assert bad_sort.errors[0].field == "sort"
    assert bad_sort.stage == Stage.SELECTION

    bad_count = await svc.filter_flights("s1", {"max_connections": "two"})
    assert not bad_count.success
    assert bad_count.errors[0].field == "max_connections"

    bad_window = await svc.filter_flights("s1", {"departure_time": {"from": "late", "to": "later"}})
    assert not bad_window.success
    assert bad_window.errors[0].category == "validation"


async def test_filter_and_more_options_are_refused_after_selection():
    svc, provider, _, store = make_service()
    await to_payment(svc)
    searches = provider.list_offers.await_count

    filtered = await svc.filter_flights("s1", {"time_of_day": "morning"})
    more = await svc.search_more_flights("s1", focus_on="cheaper")
    for resp in (filtered, more):
        assert not resp.success
        assert resp.stage == Stage.PAYMENT
        assert resp.errors[0].code == "illegal_transition"
    assert provider.list_offers.await_count == searches

    await svc.book("s1")
    shown = [o.id for o in (await store.load("s1")).search_results]
    after = await svc.filter_flights("s1", {"price_sort": "lowest"})
    assert not after.success
    assert after.stage == Stage.CONFIRMATION
    assert [o.id for o in (await store.load("s1")).search_results] == shown


async def test_booking_lookup_by_reference_and_user():
    svc, provider, _, _ = make_service()
    await to_payment(svc)
    await svc.book("s1")

    found = await svc.get_booking("ABC123", user=AuthenticatedUser(user_id="u1"))
    assert found.success
    assert found.stage == Stage.CONFIRMATION
    assert found.data["booking"]["order_id"] == "ord_1"
    assert found.data["order"]["id"] == "ord_1"

    other = await svc.get_booking("ABC123", user=AuthenticatedUser(user_id="u2"))
    assert not other.success
    assert other.errors[0].code == "booking_forbidden"

    missing = await svc.get_booking("ZZZ999")
    assert missing.errors[0].code == "booking_not_found"

    listed = await svc.list_bookings(AuthenticatedUser(user_id="u1"))
    assert [b["booking_reference"] for b in listed.data["bookings"]] == ["ABC123"]
    assert (await svc.list_bookings(AuthenticatedUser(user_id="u2"))).data["bookings"] == []


async def test_booking_lookup_survives_provider_failure():
    svc, provider, _, _ = make_service()
    await to_payment(svc)
    await svc.book("s1")
    provider.get_order = AsyncMock(side_effect=ProviderError("down", status=503))

    found = await svc.get_booking("ABC123")
    assert found.success
    assert found.data["order"] is None
    assert found.data["booking"]["booking_reference"] == "ABC123"


async def test_orders_by_email():
    provider = make_provider()
    provider.list_orders = AsyncMock(return_value=[
        {"id": "ord_1", "booking_reference": "ABC123", "total_amount": "99.00", "total_currency": "GBP"},
    ])
    svc, _, _, _ = make_service(provider=provider)

    resp = await svc.orders_by_email("jan@example.com", limit=5)
    assert resp.success
    assert [o["booking_reference"] for o in resp.data["orders"]] == ["ABC123"]
    provider.list_orders.assert_awaited_once_with("jan@example.com", limit=5)

    bad = await svc.orders_by_email("not-an-email")
    assert not bad.success
    assert bad.errors[0].field == "email"
