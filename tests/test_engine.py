"""Tests for the reconciliation engine state machine."""

from __future__ import annotations

import pytest

from shopwatch.monitor.engine import STALL_THRESHOLD, ReconciliationEngine
from shopwatch.monitor.models import CheckResult, HealthState, IncidentKind, ProbeUnavailable
from shopwatch.monitor.scheduler import watchdog_threshold
from shopwatch.monitor.store import LAST_CHECK, LAST_FAILURE, LAST_FLUSH, STATUS

OK = CheckResult(products_exist=True, shop_query_empty=False)
EMPTY = CheckResult(products_exist=False, shop_query_empty=True)
NO_DATA = CheckResult(products_exist=False, shop_query_empty=False)
DESYNC = CheckResult(products_exist=True, shop_query_empty=True)


def kinds(engine: ReconciliationEngine, n: int = 20) -> list[IncidentKind]:
    return [r.kind for r in engine.incidents.recent(n)]


def subjects(email) -> list[str]:
    return [subject for _, subject, _ in email.sent]


# ── CheckResult ──────────────────────────────────────────────────────────────


class TestCheckResult:
    @pytest.mark.parametrize(
        "result, state, desync",
        [
            (OK, HealthState.OK, False),
            (EMPTY, HealthState.EMPTY, False),
            (NO_DATA, HealthState.EMPTY, False),
            (DESYNC, HealthState.EMPTY, True),
        ],
    )
    def test_classification(self, result, state, desync) -> None:
        assert result.state == state
        assert result.is_desync is desync


# ── Steady state ─────────────────────────────────────────────────────────────


class TestSteadyState:
    def test_first_cycle_ok(self, engine, email, webhook, backends, fallback) -> None:
        assert engine.state == HealthState.UNKNOWN
        engine.reconcile()

        assert engine.state == HealthState.OK
        assert engine.store.get(LAST_CHECK)
        assert engine.store.get(LAST_FAILURE) is None
        assert email.sent == [] and webhook.posts == []
        assert engine.incidents.recent(20) == []
        assert all(b.purges == 0 for b in [*backends, fallback])

    def test_ok_to_ok_no_alert(self, engine, store, email) -> None:
        store.set(STATUS, "ok")
        engine.reconcile()
        engine.reconcile()
        assert email.sent == []

    def test_empty_to_empty_no_new_failure(self, engine, store, probe, email, backends) -> None:
        store.set(STATUS, "empty")
        probe.queue(EMPTY)
        engine.reconcile()
        assert engine.state == HealthState.EMPTY
        assert email.sent == []
        assert backends[1].purges == 0


# ── New failure ──────────────────────────────────────────────────────────────


class TestNewFailure:
    def test_failure_reprobe_still_empty(self, engine, store, probe, email, scheduled) -> None:
        store.set(STATUS, "ok")
        probe.queue(EMPTY)

        engine.reconcile()

        assert engine.state == HealthState.EMPTY
        assert kinds(engine) == [IncidentKind.INFO, IncidentKind.FAILURE]
        assert subjects(email) == ["⚠ Shop Products Missing"]
        assert engine.store.get(LAST_FAILURE)
        assert engine.store.get(LAST_FLUSH)
        assert probe.calls == 2  # exactly one re-probe
        assert scheduled == [10]
        assert engine.recovery_pending

    def test_failure_from_unknown(self, engine, probe, email) -> None:
        probe.queue(NO_DATA)
        engine.reconcile()
        assert IncidentKind.FAILURE in kinds(engine)
        assert len(email.sent) == 1

    def test_failure_immediate_recovery(self, engine, store, probe, email, webhook, scheduled) -> None:
        store.set(STATUS, "ok")
        probe.queue(EMPTY, OK)

        engine.reconcile()

        assert engine.state == HealthState.OK
        assert kinds(engine) == [IncidentKind.RECOVERY, IncidentKind.INFO, IncidentKind.FAILURE]
        assert kinds(engine).count(IncidentKind.FAILURE) == 1
        assert subjects(email) == ["⚠ Shop Products Missing", "✅ Shop Recovered"]
        assert len(webhook.posts) == 2
        assert scheduled == []
        assert probe.calls == 2

    def test_reprobe_waits(self, make_engine, store, probe) -> None:
        waits: list[float] = []
        engine = make_engine(sleep=waits.append, reprobe_delay=3.0)
        store.set(STATUS, "ok")
        probe.queue(EMPTY)
        engine.reconcile()
        assert waits == [3.0]

    def test_reprobe_unavailable_counts_as_empty(self, engine, store, probe, probe_unavailable) -> None:
        store.set(STATUS, "ok")
        probe.queue(EMPTY, probe_unavailable)
        engine.reconcile()
        assert engine.state == HealthState.EMPTY

    def test_recovery_scheduled_once(self, engine, store, probe, scheduled) -> None:
        store.set(STATUS, "ok")
        probe.queue(EMPTY)
        engine.reconcile()
        # Still empty; a later ok→empty flip must not stack a second pending check
        store.set(STATUS, "ok")
        engine.reconcile()
        assert scheduled == [10]

    def test_no_scheduler_hook(self, make_engine, store, probe) -> None:
        engine = make_engine(schedule_recovery=None)
        store.set(STATUS, "ok")
        probe.queue(EMPTY)
        engine.reconcile()
        assert not engine.recovery_pending

    def test_failed_scheduling_is_swallowed(self, make_engine, store, probe) -> None:
        def _boom(_delay: float) -> None:
            raise RuntimeError("scheduler not running")

        engine = make_engine(schedule_recovery=_boom)
        store.set(STATUS, "ok")
        probe.queue(EMPTY)
        engine.reconcile()
        assert engine.state == HealthState.EMPTY
        assert not engine.recovery_pending


# ── Desync ───────────────────────────────────────────────────────────────────


class TestDesync:
    def test_desync_is_warning_not_failure(self, engine, store, probe, email, backends) -> None:
        store.set(STATUS, "ok")
        probe.queue(DESYNC)

        engine.reconcile()

        assert kinds(engine) == [IncidentKind.INFO, IncidentKind.WARNING]
        assert IncidentKind.FAILURE not in kinds(engine)
        assert subjects(email) == ["⚠ Shop Cache Desync"]
        assert backends[1].purges == 1
        assert engine.state == HealthState.EMPTY
        assert engine.store.get(LAST_FAILURE)
        assert probe.calls == 1

    def test_desync_fires_even_when_already_empty(self, engine, store, probe, email) -> None:
        store.set(STATUS, "empty")
        probe.queue(DESYNC)
        engine.reconcile()
        assert subjects(email) == ["⚠ Shop Cache Desync"]

    def test_recovery_after_desync(self, engine, store, probe, email) -> None:
        store.set(STATUS, "ok")
        probe.queue(DESYNC)
        engine.reconcile()
        probe.queue(OK)
        engine.reconcile()
        assert engine.state == HealthState.OK
        assert kinds(engine)[0] == IncidentKind.RECOVERY


# ── Recovery ─────────────────────────────────────────────────────────────────


class TestRecovery:
    def test_empty_to_ok(self, engine, store, probe, email, backends, fallback) -> None:
        store.set(STATUS, "empty")
        probe.queue(OK)

        engine.reconcile()

        assert engine.state == HealthState.OK
        assert kinds(engine) == [IncidentKind.RECOVERY]
        assert subjects(email) == ["✅ Shop Recovered"]
        assert all(b.purges == 0 for b in [*backends, fallback])

    def test_documented_scenario(self, engine, store, probe) -> None:
        store.set(STATUS, "ok")
        probe.queue(EMPTY)
        engine.reconcile()
        assert engine.state == HealthState.EMPTY
        assert kinds(engine) == [IncidentKind.INFO, IncidentKind.FAILURE]

        probe.queue(OK)
        engine.reconcile()
        assert engine.state == HealthState.OK
        assert kinds(engine) == [IncidentKind.RECOVERY, IncidentKind.INFO, IncidentKind.FAILURE]


class TestRecoveryCheck:
    def test_promotes_to_ok(self, engine, store, probe, email) -> None:
        store.set(STATUS, "ok")
        probe.queue(EMPTY)
        engine.reconcile()

        probe.queue(OK)
        engine.run_recovery_check()

        assert engine.state == HealthState.OK
        assert engine.incidents.recent(1)[0].message == "Immediate recovery after cache flush."
        assert subjects(email)[-1] == "✅ Immediate Recovery"
        assert not engine.recovery_pending

    def test_still_empty_is_noop(self, engine, store, probe, email) -> None:
        store.set(STATUS, "empty")
        probe.queue(EMPTY)
        engine.run_recovery_check()
        assert engine.state == HealthState.EMPTY
        assert email.sent == []
        assert engine.incidents.recent(5) == []

    def test_skips_when_not_empty(self, engine, store, probe) -> None:
        store.set(STATUS, "ok")
        engine.run_recovery_check()
        assert probe.calls == 0

    def test_normal_cycle_then_recovery_check(self, engine, store, probe) -> None:
        store.set(STATUS, "empty")
        probe.queue(OK)
        engine.reconcile()
        engine.run_recovery_check()
        assert kinds(engine).count(IncidentKind.RECOVERY) == 1


# ── Probe unavailable ────────────────────────────────────────────────────────


class TestProbeUnavailable:
    def test_cycle_aborted(self, engine, store, probe, email, probe_unavailable) -> None:
        store.set(STATUS, "ok")
        probe.queue(probe_unavailable)

        engine.reconcile()

        assert engine.state == HealthState.OK
        assert store.get(LAST_CHECK) is None
        assert email.sent == []
        assert engine.incidents.recent(5) == []

    def test_unexpected_probe_error_aborts(self, engine, probe) -> None:
        probe.queue(RuntimeError("db locked"))
        engine.reconcile()
        assert engine.state == HealthState.UNKNOWN

    def test_probe_unavailable_type(self) -> None:
        assert issubclass(ProbeUnavailable, Exception)


# ── Stall detector ───────────────────────────────────────────────────────────


class TestStallDetector:
    def test_no_data_no_stall(self, engine, webhook) -> None:
        assert engine.check_stall() is False
        assert webhook.posts == []

    def test_fresh_check_no_stall(self, engine, webhook) -> None:
        engine.reconcile()
        assert engine.check_stall() is False
        assert webhook.posts == []

    def test_stale_check_alerts_webhook_only(self, engine, clock, email, webhook) -> None:
        engine.reconcile()
        clock.advance(seconds=STALL_THRESHOLD.total_seconds() + 60)

        assert engine.check_stall() is True
        assert len(webhook.posts) == 1
        assert "Stalled" in webhook.posts[0][1]
        assert email.sent == []

    def test_runs_after_aborted_cycle(self, engine, clock, probe, webhook, probe_unavailable) -> None:
        engine.reconcile()
        clock.advance(minutes=10)
        probe.queue(probe_unavailable)
        engine.reconcile()
        assert len(webhook.posts) == 1

    def test_garbage_timestamp_ignored(self, engine, store) -> None:
        store.set(LAST_CHECK, "not a date")
        assert engine.check_stall() is False

    def test_long_interval_gap_is_not_a_stall(self, engine, clock, webhook) -> None:
        engine.reconcile()
        clock.advance(minutes=6)

        assert engine.check_stall(watchdog_threshold(10)) is False
        assert webhook.posts == []

    def test_missed_long_interval_cycle_is_a_stall(self, engine, clock, webhook) -> None:
        engine.reconcile()
        clock.advance(minutes=13)

        assert engine.check_stall(watchdog_threshold(10)) is True
        assert "12 minutes" in webhook.posts[0][1]


# ── Manual test alert ────────────────────────────────────────────────────────


class TestTestAlert:
    @pytest.mark.parametrize("state", ["unknown", "ok", "empty"])
    def test_independent_of_state(self, engine, store, email, webhook, state) -> None:
        store.set(STATUS, state)

        outcome = engine.trigger_test_alert()

        assert outcome.backends_invoked == ("page-cache",)
        assert kinds(engine) == [IncidentKind.INFO, IncidentKind.TEST]
        assert subjects(email) == ["[TEST] Shop Monitor"]
        assert webhook.posts[0][1] == "[TEST] Shop Monitor\n\nThis is a test alert."
        assert store.get(STATUS) == state


# ── Invariants ───────────────────────────────────────────────────────────────


class TestInvariants:
    def test_log_bounded_over_many_cycles(self, engine, probe) -> None:
        for i in range(40):
            probe.queue(EMPTY if i % 2 else OK)
            engine.reconcile()
            assert len(engine.incidents) <= 20
        times = [r.time for r in engine.incidents.recent(20)]
        assert times == sorted(times, reverse=True)

    def test_one_alert_per_transition(self, engine, store, probe, email) -> None:
        store.set(STATUS, "ok")
        probe.queue(EMPTY)
        for _ in range(5):
            engine.reconcile()
        assert subjects(email) == ["⚠ Shop Products Missing"]

    def test_snapshot(self, engine) -> None:
        snap = engine.snapshot()
        assert snap["status"] == "unknown"
        assert snap["last_check"] is None
        assert snap["incidents"] == []

        engine.trigger_test_alert()
        engine.trigger_test_alert()
        assert len(engine.snapshot(limit=3)["incidents"]) == 3
