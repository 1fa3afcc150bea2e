"""Monitor models — health states, probe results, incidents, flush outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, PositiveInt

INCIDENT_LOG_CAPACITY = 20


class ShopwatchError(Exception):
    """Base error for the monitor."""


class ProbeUnavailable(ShopwatchError):
    """The catalog layer could not be queried; the cycle has nothing to report."""


class HealthState(str, Enum):
    UNKNOWN = "unknown"
    OK = "ok"
    EMPTY = "empty"


class IncidentKind(str, Enum):
    INFO = "info"
    WARNING = "warning"
    FAILURE = "failure"
    RECOVERY = "recovery"
    TEST = "test"


@dataclass(frozen=True)
class CheckResult:
    """One catalog sample.

    ``products_exist`` comes from the backing data, ``shop_query_empty`` from
    the customer-facing listing. They disagree when a cache layer is stale.
    """

    products_exist: bool
    shop_query_empty: bool

    @property
    def is_empty(self) -> bool:
        return not self.products_exist or self.shop_query_empty

    @property
    def is_desync(self) -> bool:
        return self.products_exist and self.shop_query_empty

    @property
    def state(self) -> HealthState:
        return HealthState.EMPTY if self.is_empty else HealthState.OK


@dataclass(frozen=True)
class IncidentRecord:
    """A single logged event."""

    time: datetime
    kind: IncidentKind
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "time": self.time.isoformat(),
            "kind": self.kind.value,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IncidentRecord":
        return cls(
            time=parse_instant(data["time"]),
            kind=IncidentKind(data["kind"]),
            message=data.get("message", ""),
        )


@dataclass(frozen=True)
class RemediationOutcome:
    """Which cache backends actually ran during one flush."""

    backends_invoked: tuple[str, ...]
    failed: tuple[str, ...] = field(default=())

    def to_dict(self) -> dict[str, Any]:
        return {"backends_invoked": list(self.backends_invoked), "failed": list(self.failed)}


class MonitorConfig(BaseModel):
    """Snapshot of the runtime-editable settings."""

    webhook_url: str | None = None
    check_interval_minutes: PositiveInt = 1
    admin_email: str = Field(default="admin@localhost", min_length=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_instant(value: str) -> datetime:
    """Parse a stored ISO timestamp, treating naive values as UTC."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt
