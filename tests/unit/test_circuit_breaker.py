"""
Unit tests for SafetyBreaker
"""

import pytest

from riskcore.circuit_breaker import BreakerConfig, CircuitState, SafetyBreaker


@pytest.fixture
def breaker():
    return SafetyBreaker(BreakerConfig())


def feed(breaker, flagged, clean):
    for _ in range(flagged):
        breaker.record_evaluation(True)
    for _ in range(clean):
        breaker.record_evaluation(False)


class TestSafetyBreaker:

    def test_starts_green(self, breaker):
        assert breaker.state == CircuitState.GREEN
        assert not breaker.halted

    def test_trip_halts(self, breaker):
        breaker.trip("Sequencer down")

        assert breaker.halted
        status = breaker.get_status()
        assert status["state"] == "black"
        assert status["halt_reason"] == "Sequencer down"
        assert status["trips"] == 1

    def test_trip_is_idempotent(self, breaker):
        breaker.trip("first")
        breaker.trip("second")

        assert breaker.halt_reason == "first"
        assert breaker.get_status()["trips"] == 1

    def test_halt_needs_manual_reset(self, breaker):
        breaker.trip("Oracle down")
        feed(breaker, 0, 50)
        assert breaker.halted

        assert breaker.reset("ops") is True
        assert breaker.state == CircuitState.GREEN
        assert breaker.halt_reason is None

    def test_reset_when_green(self, breaker):
        assert breaker.reset() is False

    def test_amber_needs_min_samples(self, breaker):
        feed(breaker, 9, 0)
        assert breaker.state == CircuitState.GREEN

    def test_amber_and_recovery(self, breaker):
        feed(breaker, 3, 7)
        assert breaker.state == CircuitState.AMBER
        assert not breaker.halted

        feed(breaker, 0, 19)
        assert breaker.state == CircuitState.AMBER
        feed(breaker, 0, 1)
        assert breaker.state == CircuitState.GREEN

    def test_state_change_callback(self, breaker):
        changes = []
        breaker.on_state_change = lambda old, new, reason: changes.append((old, new))

        breaker.trip("Emergency halt")
        breaker.reset()

        assert changes == [
            (CircuitState.GREEN, CircuitState.BLACK),
            (CircuitState.BLACK, CircuitState.GREEN),
        ]

    def test_history(self, breaker):
        breaker.trip("x")
        breaker.reset("ops")

        history = breaker.get_history()
        assert [h["to"] for h in history] == ["black", "green"]
        assert history[-1]["reason"] == "Reset by ops"
