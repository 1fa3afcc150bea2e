"""Reconciliation engine — the shop health state machine.

One cycle: read the previous status, probe the catalog, classify, react to
the transition (desync → new failure → recovery → steady), persist, then run
the stall detector. Every public operation holds the same lock, so a manual
trigger never overlaps a scheduled cycle.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from shopwatch.config import Settings, settings
from shopwatch.monitor.alerts import (
    AlertDispatcher,
    AlertKind,
    EmailChannel,
    compose,
    compose_stall,
)
from shopwatch.monitor.incidents import IncidentLog
from shopwatch.monitor.models import (
    CheckResult,
    HealthState,
    IncidentKind,
    RemediationOutcome,
    parse_instant,
    utc_now,
)
from shopwatch.monitor.probe import CatalogProbe, HttpCatalogProbe
from shopwatch.monitor.remediation import (
    ObjectCacheFlush,
    RemediationDispatcher,
    default_backends,
)
from shopwatch.monitor.store import (
    LAST_CHECK,
    LAST_FAILURE,
    LAST_FLUSH,
    STATUS,
    StateStore,
    load_config,
)

logger = logging.getLogger(__name__)

STALL_THRESHOLD = timedelta(minutes=5)


class ReconciliationEngine:
    """Probes the catalog and drives remediation + alerts on transitions."""

    def __init__(
        self,
        store: StateStore,
        probe: CatalogProbe,
        incidents: IncidentLog,
        remediation: RemediationDispatcher,
        alerts: AlertDispatcher,
        site_url: str = "",
        reprobe_delay: float = 3.0,
        recovery_delay: float = 10.0,
        schedule_recovery: Callable[[float], Any] | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.probe = probe
        self.incidents = incidents
        self.remediation = remediation
        self.alerts = alerts
        self.site_url = site_url or settings.site_url
        self.reprobe_delay = reprobe_delay
        self.recovery_delay = recovery_delay
        self.schedule_recovery = schedule_recovery  # set by the scheduler
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._recovery_pending = False

    # -- public API ------------------------------------------------------------

    @property
    def state(self) -> HealthState:
        raw = self.store.get(STATUS, HealthState.UNKNOWN.value)
        try:
            return HealthState(raw)
        except ValueError:
            return HealthState.UNKNOWN

    @property
    def recovery_pending(self) -> bool:
        return self._recovery_pending

    def reconcile(self) -> None:
        """Run one reconciliation cycle."""
        with self._lock:
            try:
                self._reconcile()
            finally:
                self._check_stall()

    def run_recovery_check(self) -> None:
        """Deferred one-shot check after a failure that did not clear immediately."""
        with self._lock:
            self._recovery_pending = False
            if self.state != HealthState.EMPTY:
                return
            result = self._safe_probe()
            if result is None or result.is_empty:
                logger.info("Recovery check: shop still empty")
                return
            self._set_state(HealthState.OK)
            self.incidents.append(IncidentKind.RECOVERY, "Immediate recovery after cache flush.")
            self._alert(AlertKind.IMMEDIATE_RECOVERY)

    def check_stall(self, threshold: timedelta = STALL_THRESHOLD) -> bool:
        """Heartbeat guard; True when a stall alert was sent."""
        with self._lock:
            return self._check_stall(threshold)

    def cancel_recovery_check(self) -> None:
        """Forget a pending deferred check (its task was cancelled)."""
        self._recovery_pending = False

    def trigger_test_alert(self) -> RemediationOutcome:
        """Manual end-to-end exercise of the flush + alert path."""
        with self._lock:
            self.incidents.append(IncidentKind.TEST, "Manual test alert triggered.")
            outcome = self.remediation.flush()
            self._alert(AlertKind.TEST)
            return outcome

    def snapshot(self, limit: int = 3) -> dict[str, Any]:
        """Read-only view for the dashboard."""
        return {
            "status": self.state.value,
            "last_check": self.store.get(LAST_CHECK),
            "last_failure": self.store.get(LAST_FAILURE),
            "last_flush": self.store.get(LAST_FLUSH),
            "recovery_pending": self._recovery_pending,
            "incidents": [r.to_dict() for r in self.incidents.recent(limit)],
        }

    # -- cycle -----------------------------------------------------------------

    def _reconcile(self) -> None:
        previous = self.state
        result = self._safe_probe()
        if result is None:
            return

        now = self._clock()
        self.store.set(LAST_CHECK, now.isoformat())

        current = result.state
        self._set_state(current)
        logger.debug("Cycle: %s → %s (%s)", previous.value, current.value, result)

        if result.is_desync:
            self.incidents.append(
                IncidentKind.WARNING, "Shop empty but products exist. Cache desync detected.",
            )
            self.remediation.flush()
            self._alert(AlertKind.DESYNC)
            self.store.set(LAST_FAILURE, now.isoformat())
            return

        if previous != HealthState.EMPTY and current == HealthState.EMPTY:
            self._handle_new_failure(now)
            return

        if previous == HealthState.EMPTY and current == HealthState.OK:
            self.incidents.append(IncidentKind.RECOVERY, "Shop recovered.")
            self._alert(AlertKind.RECOVERY)

    def _handle_new_failure(self, now: datetime) -> None:
        self.store.set(LAST_FAILURE, now.isoformat())
        self.incidents.append(IncidentKind.FAILURE, "Zero products detected. Auto-recovery started.")
        self.remediation.flush()
        self._alert(AlertKind.FAILURE)

        # Exactly one re-probe: a transient blip becomes one incident, not two
        self._sleep(self.reprobe_delay)
        result = self._safe_probe()
        if result is not None and not result.is_empty:
            self._set_state(HealthState.OK)
            self.incidents.append(IncidentKind.RECOVERY, "Shop recovered right after cache flush.")
            self._alert(AlertKind.RECOVERY)
            return

        self._request_recovery_check()

    def _request_recovery_check(self) -> None:
        if self._recovery_pending or self.schedule_recovery is None:
            return
        try:
            self.schedule_recovery(self.recovery_delay)
            self._recovery_pending = True
        except Exception:
            logger.exception("Could not schedule recovery check")

    def _check_stall(self, threshold: timedelta = STALL_THRESHOLD) -> bool:
        raw = self.store.get(LAST_CHECK)
        if not raw:
            return False
        try:
            last = parse_instant(raw)
        except (TypeError, ValueError):
            logger.warning("Unparseable last_check %r", raw)
            return False
        gap = self._clock() - last
        if gap <= threshold:
            return False
        logger.warning("No successful check for %s — monitor stalled", gap)
        self.alerts.heartbeat(compose_stall(int(threshold.total_seconds() // 60)))
        return True

    # -- helpers ---------------------------------------------------------------

    def _safe_probe(self) -> CheckResult | None:
        try:
            return self.probe.probe()
        except Exception as exc:
            logger.warning("Catalog probe unavailable: %s", exc)
            return None

    def _set_state(self, state: HealthState) -> None:
        self.store.set(STATUS, state.value)

    def _alert(self, kind: AlertKind) -> None:
        subject, body = compose(kind, self.site_url)
        try:
            self.alerts.alert(kind, subject, body)
        except Exception:
            logger.exception("Alert dispatch failed")


def create_engine(store: StateStore, cfg: Settings | None = None) -> ReconciliationEngine:
    """Wire an engine with the HTTP probe, configured backends and both alert channels."""
    cfg = cfg or settings
    incidents = IncidentLog(store)
    return ReconciliationEngine(
        store=store,
        probe=HttpCatalogProbe.from_settings(cfg),
        incidents=incidents,
        remediation=RemediationDispatcher(
            store,
            incidents,
            backends=default_backends(cfg),
            fallback=ObjectCacheFlush(cfg.object_cache_flush_url),
        ),
        alerts=AlertDispatcher(
            config=lambda: load_config(store, cfg),
            email=EmailChannel(cfg),
        ),
        site_url=cfg.site_url,
        reprobe_delay=cfg.reprobe_delay_seconds,
        recovery_delay=cfg.recovery_delay_seconds,
    )
