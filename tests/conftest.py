"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from shopwatch.monitor.alerts import AlertDispatcher
from shopwatch.monitor.engine import ReconciliationEngine
from shopwatch.monitor.incidents import IncidentLog
from shopwatch.monitor.models import CheckResult, MonitorConfig, ProbeUnavailable
from shopwatch.monitor.remediation import RemediationDispatcher
from shopwatch.monitor.store import MemoryStateStore

OK = CheckResult(products_exist=True, shop_query_empty=False)
EMPTY = CheckResult(products_exist=False, shop_query_empty=True)
DESYNC = CheckResult(products_exist=True, shop_query_empty=True)


class FakeClock:
    """Manually advanced UTC clock; each read ticks one second so log order is strict."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeProbe:
    """Returns queued results; the last one repeats. Exceptions are raised."""

    def __init__(self, *results: CheckResult | Exception) -> None:
        self.results: list[CheckResult | Exception] = list(results) or [OK]
        self.calls = 0

    def queue(self, *results: CheckResult | Exception) -> None:
        self.results = list(results)

    def probe(self) -> CheckResult:
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class FakeBackend:
    def __init__(self, name: str, active: bool = True, error: Exception | None = None) -> None:
        self.name = name
        self.active = active
        self.error = error
        self.purges = 0

    def is_active(self) -> bool:
        return self.active

    def purge(self) -> None:
        self.purges += 1
        if self.error:
            raise self.error


class RecordingEmail:
    def __init__(self, error: Exception | None = None) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.error = error

    def send(self, recipient: str, subject: str, body: str) -> None:
        if self.error:
            raise self.error
        self.sent.append((recipient, subject, body))


class RecordingWebhook:
    def __init__(self, error: Exception | None = None) -> None:
        self.posts: list[tuple[str, str]] = []
        self.error = error
        self.timeout = 5.0

    def post(self, url: str, text: str) -> None:
        if self.error:
            raise self.error
        self.posts.append((url, text))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore({
        "webhook_url": "https://hooks.example.com/T000/B000",
        "admin_email": "admin@shop.example.com",
        "check_interval_minutes": 1,
    })


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe(OK)


@pytest.fixture
def email() -> RecordingEmail:
    return RecordingEmail()


@pytest.fixture
def webhook() -> RecordingWebhook:
    return RecordingWebhook()


@pytest.fixture
def backend_factory() -> type[FakeBackend]:
    return FakeBackend


@pytest.fixture
def fallback() -> FakeBackend:
    return FakeBackend("object-cache")


@pytest.fixture
def backends() -> list[FakeBackend]:
    return [FakeBackend("edge-cache", active=False), FakeBackend("page-cache", active=True)]


@pytest.fixture
def scheduled() -> list[float]:
    """Delays passed to the engine's recovery-scheduling hook."""
    return []


@pytest.fixture
def make_engine(
    store, probe, email, webhook, backends, fallback, clock, scheduled,
) -> Callable[..., ReconciliationEngine]:
    def _make(**overrides: Any) -> ReconciliationEngine:
        incidents = IncidentLog(store, clock=clock)
        config = MonitorConfig(
            webhook_url=store.get("webhook_url") or None,
            check_interval_minutes=store.get("check_interval_minutes", 1),
            admin_email=store.get("admin_email", ""),
        )
        kwargs: dict[str, Any] = dict(
            store=store,
            probe=probe,
            incidents=incidents,
            remediation=RemediationDispatcher(
                store, incidents, backends=backends, fallback=fallback, clock=clock,
            ),
            alerts=AlertDispatcher(config=lambda: config, email=email, webhook=webhook),
            site_url="https://shop.example.com",
            reprobe_delay=0,
            recovery_delay=10,
            schedule_recovery=scheduled.append,
            clock=clock,
            sleep=lambda _s: None,
        )
        kwargs.update(overrides)
        return ReconciliationEngine(**kwargs)

    return _make


@pytest.fixture
def engine(make_engine) -> ReconciliationEngine:
    return make_engine()


@pytest.fixture
def probe_unavailable() -> ProbeUnavailable:
    return ProbeUnavailable("catalog layer not installed")
