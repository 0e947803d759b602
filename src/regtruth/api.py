from __future__ import annotations

import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel

from .config import Config, ConfigError, load_config
from .context import build_context
from .errors import InvalidTransitionError
from .health import health_snapshot
from .pipelines.release import retrieval_view
from .pipelines.review import HUMAN_DECISIONS, apply_human_decision
from .queues import queue_contracts, queue_snapshot
from .storage import get_backfill_run, init_db, list_backfill_runs
from .utils import log_event

app = FastAPI(title="regtruth API")


class DecisionRequest(BaseModel):
    decision: str
    reviewer: str
    note: str | None = None


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("RT_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("regtruth")
    except Exception:  # noqa: BLE001
        return "unknown"


def _open() -> tuple[Config, Any]:
    try:
        config = load_config()
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return config, init_db(config.paths.state_db)


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "regtruth API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/health/snapshot")
def health_snapshot_view() -> dict[str, object]:
    config, conn = _open()
    try:
        return health_snapshot(conn, config)
    finally:
        conn.close()


@app.get("/queues")
def queues() -> dict[str, object]:
    config, conn = _open()
    try:
        return {"contracts": queue_contracts(config), "counts": queue_snapshot(conn)}
    finally:
        conn.close()


@app.get("/backfill/runs")
def backfill_runs(limit: int = 20) -> list[dict[str, object]]:
    _, conn = _open()
    try:
        return [asdict(run) for run in list_backfill_runs(conn, limit=limit)]
    finally:
        conn.close()


@app.get("/backfill/runs/{run_id}")
def backfill_run(run_id: str) -> dict[str, object]:
    _, conn = _open()
    try:
        run = get_backfill_run(conn, run_id)
    finally:
        conn.close()
    if run is None:
        raise HTTPException(status_code=404, detail="backfill run not found")
    return asdict(run)


@app.get("/rules/published")
def rules_published(concept_id: str | None = None) -> list[dict[str, object]]:
    config, conn = _open()
    try:
        return retrieval_view(conn, config, concept_id)
    finally:
        conn.close()


@app.post("/rules/{rule_id}/decision", dependencies=[Depends(_require_admin_token)])
def rules_decide(rule_id: str, payload: DecisionRequest) -> dict[str, object]:
    if payload.decision not in HUMAN_DECISIONS:
        raise HTTPException(status_code=400, detail=f"decision must be one of {', '.join(HUMAN_DECISIONS)}")
    config, conn = _open()
    logger = logging.getLogger("regtruth.api")
    try:
        ctx = build_context(config, conn, logger)
        try:
            rule = apply_human_decision(ctx, rule_id, payload.decision, reviewer=payload.reviewer, note=payload.note)
        except InvalidTransitionError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
    finally:
        conn.close()
    log_event(logger, logging.INFO, "api_rule_decision", rule_id=rule_id, decision=payload.decision)
    return {"rule_id": rule.id, "status": rule.status}
