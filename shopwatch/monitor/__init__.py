"""Monitor subsystem — state machine, remediation, alerts, incident log, scheduler."""

from .alerts import AlertDispatcher, AlertKind
from .engine import ReconciliationEngine
from .incidents import IncidentLog
from .models import CheckResult, HealthState, IncidentKind, IncidentRecord, ProbeUnavailable
from .remediation import RemediationDispatcher
from .scheduler import MonitorScheduler
from .store import MemoryStateStore, SqliteStateStore
