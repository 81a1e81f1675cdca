"""Tests for licenseguard.watch -- startup gate and expiry enforcer."""

from __future__ import annotations

import logging
from datetime import timedelta

import pytest

from licenseguard import exit_codes
from licenseguard.models import Entitlement, utcnow
from licenseguard.supervisor import Supervisor
from licenseguard.watch import (
    EnforcerState,
    ExpiryEnforcer,
    GateState,
    StartupGate,
    TerminationRequest,
    Ticker,
)

from .conftest import CLUSTER_UUID, SUBJECT, T0, FakeTicker


def _entitlement(expires_at):
    return Entitlement(
        subject_id=SUBJECT,
        encrypted_key="U2FsdGVkX1abcdef",
        cluster_uuid=CLUSTER_UUID,
        expires_at=expires_at,
    )


class TestTicker:
    def test_wait_elapses(self):
        assert Ticker().wait(0) is True

    def test_cancel(self):
        ticker = Ticker()
        ticker.cancel()
        assert ticker.cancelled
        assert ticker.wait(30) is False


# ---------------------------------------------------------------------------
# Startup gate
# ---------------------------------------------------------------------------


class TestStartupGate:
    def test_never_opens_without_license(self, store, clock):
        ticker = FakeTicker(clock, max_waits=20)
        gate = StartupGate(store, interval=5, ticker=ticker, clock=clock)
        assert gate.wait() is False
        assert gate.state is GateState.WAITING
        assert ticker.waits == [5] * 20

    def test_checks_immediately(self, store, clock):
        store.commit(_entitlement(T0 + timedelta(days=1)))
        ticker = FakeTicker(clock)
        gate = StartupGate(store, ticker=ticker, clock=clock)
        assert gate.wait() is True
        assert gate.state is GateState.SATISFIED
        assert ticker.waits == []

    def test_opens_on_next_poll_after_validation(self, store, clock, validator, make_raw):
        def install_on_third_wait(count):
            if count == 3:
                validator.validate(make_raw())

        ticker = FakeTicker(clock, on_wait=install_on_third_wait)
        gate = StartupGate(store, interval=5, ticker=ticker, clock=clock)
        assert gate.wait() is True
        assert len(ticker.waits) == 3

    def test_expired_entitlement_keeps_gate_closed(self, store, clock):
        store.commit(_entitlement(T0))
        gate = StartupGate(store, ticker=FakeTicker(clock, max_waits=3), clock=clock)
        assert gate.wait() is False
        assert gate.state is GateState.WAITING

    def test_satisfied_is_sticky(self, store, clock):
        store.commit(_entitlement(T0 + timedelta(seconds=10)))
        gate = StartupGate(store, clock=clock)
        assert gate.poll()
        clock.advance(60)
        assert gate.poll()

    def test_cancel(self, store):
        gate = StartupGate(store, interval=30)
        gate.cancel()
        assert gate.wait() is False


# ---------------------------------------------------------------------------
# Expiry enforcer
# ---------------------------------------------------------------------------


class TestExpiryEnforcer:
    def test_expired_on_first_poll(self, store, clock):
        store.commit(_entitlement(T0 - timedelta(seconds=1)))
        requests = []
        enforcer = ExpiryEnforcer(store, requests.append, clock=clock)

        request = enforcer.poll()
        assert request == requests[0]
        assert request.reason == "expired"
        assert request.exit_code == exit_codes.LICENSE_EXPIRED
        assert enforcer.state is EnforcerState.TERMINATED
        assert enforcer.termination_request is request

    def test_missing_license(self, store, clock):
        requests = []
        enforcer = ExpiryEnforcer(store, requests.append, clock=clock)
        request = enforcer.poll()
        assert request.reason == "missing"
        assert request.exit_code == exit_codes.LICENSE_MISSING

    def test_terminates_once(self, store, clock):
        requests = []
        enforcer = ExpiryEnforcer(store, requests.append, clock=clock)
        first = enforcer.poll()
        store.commit(_entitlement(T0 + timedelta(days=1)))
        assert enforcer.poll() is first
        assert len(requests) == 1
        assert enforcer.state is EnforcerState.TERMINATED

    def test_healthy_until_expiry(self, store, clock):
        store.commit(_entitlement(T0 + timedelta(seconds=30)))
        requests = []
        enforcer = ExpiryEnforcer(store, requests.append, clock=clock)
        assert enforcer.poll() is None
        assert enforcer.state is EnforcerState.HEALTHY
        clock.advance(30)
        assert enforcer.poll().reason == "expired"
        assert len(requests) == 1

    def test_run_detects_expiry_at_boundary(self, store, clock):
        store.commit(_entitlement(T0 + timedelta(seconds=60)))
        requests = []
        ticker = FakeTicker(clock)
        enforcer = ExpiryEnforcer(store, requests.append, interval=15, ticker=ticker, clock=clock)
        enforcer.run()
        assert [r.reason for r in requests] == ["expired"]
        assert ticker.waits == [15, 15, 15, 15]

    def test_run_stops_when_cancelled(self, store, clock):
        store.commit(_entitlement(T0 + timedelta(days=1)))
        requests = []
        enforcer = ExpiryEnforcer(store, requests.append, ticker=FakeTicker(clock, max_waits=3), clock=clock)
        enforcer.run()
        assert requests == []
        assert enforcer.state is EnforcerState.HEALTHY

    def test_failed_delivery_is_retried(self, store, clock, caplog):
        store.commit(_entitlement(T0 - timedelta(seconds=1)))
        calls = []
        delivered = []

        def flaky(request):
            calls.append(request)
            if len(calls) == 1:
                raise RuntimeError("supervisor not ready")
            delivered.append(request)

        ticker = FakeTicker(clock, max_waits=10)
        enforcer = ExpiryEnforcer(store, flaky, ticker=ticker, clock=clock)
        with caplog.at_level(logging.ERROR, logger="licenseguard.watch"):
            enforcer.run()

        assert "Expiry enforcer poll error" in caplog.text
        assert [r.reason for r in delivered] == ["expired"]
        assert calls[0] is calls[1]
        assert enforcer.delivered
        assert len(ticker.waits) == 1

    def test_pending_request_survives_recovery(self, store, clock):
        # A license installed after the request was issued does not cancel it.
        calls = []

        def flaky(request):
            calls.append(request)
            if len(calls) == 1:
                raise RuntimeError("supervisor not ready")

        enforcer = ExpiryEnforcer(store, flaky, clock=clock)
        with pytest.raises(RuntimeError):
            enforcer.poll()
        assert not enforcer.delivered
        store.commit(_entitlement(T0 + timedelta(days=1)))
        assert enforcer.poll().reason == "missing"
        assert enforcer.delivered

    def test_undeliverable_request_keeps_retrying(self, store, clock):
        calls = []

        def explode(request):
            calls.append(request)
            raise RuntimeError("supervisor gone")

        ticker = FakeTicker(clock, max_waits=5)
        enforcer = ExpiryEnforcer(store, explode, ticker=ticker, clock=clock)
        enforcer.run()
        assert len(calls) == 6
        assert enforcer.state is EnforcerState.TERMINATED
        assert not enforcer.delivered

    def test_thread_reaches_supervisor(self, store):
        store.commit(_entitlement(utcnow() - timedelta(seconds=1)))
        exits = []
        supervisor = Supervisor(exit_func=exits.append)
        enforcer = ExpiryEnforcer(store, supervisor.request_termination, interval=0.01)
        enforcer.start()
        try:
            request = supervisor.wait(timeout=5)
        finally:
            enforcer.stop()
        assert isinstance(request, TerminationRequest)
        assert request.exit_code == exit_codes.LICENSE_EXPIRED
        supervisor.run()
        assert exits == [exit_codes.LICENSE_EXPIRED]

    def test_start_stop(self, store, clock):
        store.commit(_entitlement(T0 + timedelta(days=1)))
        enforcer = ExpiryEnforcer(store, lambda request: None, interval=0.01, clock=clock)
        enforcer.start()
        assert enforcer.running
        enforcer.start()  # second start is a no-op
        enforcer.stop()
        assert not enforcer.running
        assert enforcer.state is EnforcerState.HEALTHY


@pytest.mark.parametrize("offset, expected", [(-1, "expired"), (0, "expired"), (1, None)])
def test_enforcer_boundary(store, clock, offset, expected):
    store.commit(_entitlement(T0 + timedelta(seconds=offset)))
    request = ExpiryEnforcer(store, lambda r: None, clock=clock).poll()
    assert (request.reason if request else None) == expected
