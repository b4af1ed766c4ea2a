# tests/test_telemetry.py

from __future__ import annotations

from persyste.services.errors import NetworkError
from persyste.services.telemetry import RequestTelemetry, redact


class TickClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def test_identities_are_unique_for_identical_calls() -> None:
    telemetry = RequestTelemetry(clock=TickClock())
    a = telemetry.start("get", "/todos")
    b = telemetry.start("GET", "/todos")

    assert a.key != b.key
    assert a.method == b.method == "GET"
    assert b.sequence_number == a.sequence_number + 1
    assert telemetry.pending_count() == 2


def test_completions_correlate_out_of_order() -> None:
    clock = TickClock()
    telemetry = RequestTelemetry(clock=clock)

    slow = telemetry.start("GET", "/todos")
    clock.now += 0.5
    fast = telemetry.start("POST", "/todos")
    clock.now += 0.1

    assert telemetry.finish(fast, status=201) == 100.0
    clock.now += 0.4
    assert telemetry.finish(slow, error=NetworkError()) == 1000.0
    assert telemetry.pending_count() == 0


def test_finish_is_recorded_once() -> None:
    telemetry = RequestTelemetry(clock=TickClock())
    identity = telemetry.start("DELETE", "/todos/1")

    assert telemetry.finish(identity, status=200) == 0.0
    assert telemetry.finish(identity, status=200) is None


def test_redact_hides_credentials() -> None:
    payload = {"email": "a@b.c", "password": "secret", "nested": [{"token": "t"}]}
    assert redact(payload) == {
        "email": "a@b.c",
        "password": "***",
        "nested": [{"token": "***"}],
    }
