"""State store — persisted key/value options for the monitor.

Holds the health status, timestamps, incident log and the runtime-editable
settings. SQLite for the service, an in-memory dict for tests.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from shopwatch.config import Settings, settings
from shopwatch.monitor.models import MonitorConfig

logger = logging.getLogger(__name__)

DB_PATH = Path(__file__).parent.parent.parent / "data" / "shopwatch.db"

# Keys
STATUS = "status"
LAST_CHECK = "last_check"
LAST_FAILURE = "last_failure"
LAST_FLUSH = "last_flush"
INCIDENT_LOG = "incident_log"
CONFIG_KEYS = ("webhook_url", "check_interval_minutes", "admin_email")


class StateStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...


class MemoryStateStore:
    """Dict-backed store (tests, dry runs)."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value


class SqliteStateStore:
    """SQLite-backed option table; values are stored as JSON."""

    def __init__(self, db_path: Path | str | None = None) -> None:
        self._db_path = Path(db_path) if db_path else DB_PATH
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS options (
                key   TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        conn.commit()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT value FROM options WHERE key = ?", (key,),
            ).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            logger.warning("Corrupt option %r in %s — using default", key, self._db_path)
            return default

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                "INSERT INTO options (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, json.dumps(value)),
            )
            conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None


def open_store(cfg: Settings | None = None) -> SqliteStateStore:
    cfg = cfg or settings
    return SqliteStateStore(cfg.db_path or None)


# ── Settings snapshot ────────────────────────────────────────────────────────


def load_config(store: StateStore, defaults: Settings | None = None) -> MonitorConfig:
    """Read one configuration snapshot, falling back to env defaults."""
    defaults = defaults or settings
    raw = {
        "webhook_url": store.get("webhook_url", defaults.webhook_url) or None,
        "check_interval_minutes": store.get(
            "check_interval_minutes", defaults.check_interval_minutes,
        ),
        "admin_email": store.get("admin_email") or defaults.admin_email or "admin@localhost",
    }
    try:
        return MonitorConfig(**raw)
    except ValidationError:
        logger.warning("Stored settings invalid — falling back to defaults")
        return MonitorConfig(
            webhook_url=defaults.webhook_url or None,
            check_interval_minutes=max(defaults.check_interval_minutes, 1),
            admin_email=defaults.admin_email or "admin@localhost",
        )


def save_config(store: StateStore, config: MonitorConfig) -> None:
    """Write path for the admin settings form."""
    store.set("webhook_url", config.webhook_url or "")
    store.set("check_interval_minutes", config.check_interval_minutes)
    store.set("admin_email", config.admin_email)
