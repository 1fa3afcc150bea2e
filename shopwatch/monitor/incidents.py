"""Incident log — newest-first ring of the last 20 events."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from shopwatch.monitor.models import (
    INCIDENT_LOG_CAPACITY,
    IncidentKind,
    IncidentRecord,
    utc_now,
)
from shopwatch.monitor.store import INCIDENT_LOG, StateStore

logger = logging.getLogger(__name__)


class IncidentLog:
    """Append-only, capacity-bounded incident history persisted in the store."""

    def __init__(
        self,
        store: StateStore,
        capacity: int = INCIDENT_LOG_CAPACITY,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.capacity = capacity
        self._clock = clock

    def _load(self) -> list[IncidentRecord]:
        records = []
        for raw in self.store.get(INCIDENT_LOG, []) or []:
            try:
                records.append(IncidentRecord.from_dict(raw))
            except (KeyError, ValueError, TypeError):
                logger.warning("Dropping malformed incident entry: %r", raw)
        return records

    def append(self, kind: IncidentKind, message: str) -> IncidentRecord:
        record = IncidentRecord(time=self._clock(), kind=IncidentKind(kind), message=message)
        records = [record, *self._load()][: self.capacity]
        self.store.set(INCIDENT_LOG, [r.to_dict() for r in records])
        logger.info("Incident [%s] %s", record.kind.value, message)
        return record

    def recent(self, n: int = 3) -> list[IncidentRecord]:
        if n < 0:
            raise ValueError(f"n must be >= 0, got {n}")
        return self._load()[: min(n, self.capacity)]

    def __len__(self) -> int:
        return len(self._load())
