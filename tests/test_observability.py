import json

import pytest

from skybook.obs.context import clear_context, request_id_var, session_id_var
from skybook.obs.logger import log_event
from skybook.obs.metrics import get_metrics_snapshot, inc_counter, record_timing, timed


def last_line(capsys):
    return json.loads(capsys.readouterr().out.strip().splitlines()[-1])


def test_logger_redacts_phone_and_email(capsys):
    log_event("passenger_saved", phone_number="+31 6 1234 5678", email="jan@example.nl")
    payload = last_line(capsys)
    assert payload["phone_number"] == "***5678"
    assert payload["email"] == "j***@example.nl"
    assert payload["level"] == "INFO"


def test_logger_attaches_context(capsys):
    request_id_var.set("req-1")
    session_id_var.set("sess-1")
    try:
        log_event("step", level="WARN")
        payload = last_line(capsys)
    finally:
        clear_context()
    assert payload["request_id"] == "req-1"
    assert payload["session_id"] == "sess-1"
    assert payload["level"] == "WARN"


def test_counters_are_keyed_by_labels():
    inc_counter("orders_created", {"kind": "paid"})
    inc_counter("orders_created", {"kind": "paid"})
    inc_counter("orders_created", {"kind": "hold"})
    counters = {(c["name"], c["labels"].get("kind")): c["value"] for c in get_metrics_snapshot()["counters"]}
    assert counters[("orders_created", "paid")] == 2
    assert counters[("orders_created", "hold")] == 1


def test_timing_buckets():
    record_timing("duffel_request_ms", 120, {"op": "get_offer"})
    record_timing("duffel_request_ms", 60000, {"op": "get_offer"})
    hist = get_metrics_snapshot()["histograms"][0]
    assert hist["counts"][1] == 1
    assert hist["counts"][-1] == 1
    assert hist["sum_ms"] == 60120


def test_timed_records_failed_blocks():
    with pytest.raises(RuntimeError):
        with timed("flight_search_ms"):
            raise RuntimeError("boom")
    hist = get_metrics_snapshot()["histograms"]
    assert hist[0]["name"] == "flight_search_ms"
    assert sum(hist[0]["counts"]) == 1
