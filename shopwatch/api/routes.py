"""Admin API routes — dashboard, manual actions, settings.

Endpoints:
  GET  /api/status        — current status, last check, 3 latest incidents
  GET  /api/incidents     — incident log (newest first, up to 20)
  POST /api/check         — run a reconciliation cycle now
  POST /api/test-alert    — test alert + forced cache flush
  GET  /api/settings      — webhook URL, check interval, admin email
  PUT  /api/settings      — update them
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ValidationError

from shopwatch.monitor.models import INCIDENT_LOG_CAPACITY, MonitorConfig
from shopwatch.monitor.store import load_config, save_config

logger = logging.getLogger(__name__)

router = APIRouter()


class SettingsUpdate(BaseModel):
    webhook_url: str | None = None
    check_interval_minutes: int | None = None
    admin_email: str | None = None


# ── Dashboard ────────────────────────────────────────────────────────────────


@router.get("/status")
def status(request: Request) -> dict[str, Any]:
    """Dashboard widget data."""
    return request.app.state.engine.snapshot(limit=3)


@router.get("/incidents")
def list_incidents(request: Request, limit: int = INCIDENT_LOG_CAPACITY) -> dict[str, Any]:
    if limit < 0:
        raise HTTPException(status_code=422, detail="limit must be >= 0")
    incidents = request.app.state.engine.incidents.recent(min(limit, INCIDENT_LOG_CAPACITY))
    return {"incidents": [r.to_dict() for r in incidents]}


# ── Manual actions ───────────────────────────────────────────────────────────


@router.post("/check")
async def manual_check(request: Request) -> dict[str, Any]:
    """Run a check synchronously and report the resulting state."""
    scheduler = request.app.state.scheduler
    snapshot = await scheduler.run_now()
    return {"message": "Manual check completed.", **snapshot}


@router.post("/test-alert")
async def test_alert(request: Request) -> dict[str, Any]:
    engine = request.app.state.engine
    loop = asyncio.get_running_loop()
    outcome = await loop.run_in_executor(None, engine.trigger_test_alert)
    return {"message": "Test alert sent.", **outcome.to_dict()}


# ── Settings ─────────────────────────────────────────────────────────────────


@router.get("/settings")
def get_settings(request: Request) -> dict[str, Any]:
    return load_config(request.app.state.store).model_dump()


@router.put("/settings")
def update_settings(update: SettingsUpdate, request: Request) -> dict[str, Any]:
    store = request.app.state.store
    current = load_config(store).model_dump()
    current.update({k: v for k, v in update.model_dump().items() if v is not None})
    if update.webhook_url == "":
        current["webhook_url"] = None
    try:
        config = MonitorConfig(**current)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False)) from e
    save_config(store, config)
    logger.info("Settings saved (webhook=%s, interval=%dm)",
                "set" if config.webhook_url else "none", config.check_interval_minutes)
    return {"message": "Settings saved.", **config.model_dump()}
