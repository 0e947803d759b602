from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any

from .config import Config
from .models import Evidence
from .queues import queue_snapshot
from .storage import (
    count_claims,
    count_dead_letters,
    count_evidence_by_staleness,
    count_items_by_status,
    count_rules_by_status,
    get_setting,
    list_backfill_runs,
    list_conflicts,
    list_evidence,
    list_published_without_grounding,
    list_sources,
    set_evidence_staleness,
)
from .utils import log_event, parse_date_value, utc_now

DRAIN_HEARTBEAT_KEY = "drain.heartbeat"
_DEGRADED = ("STALE", "EXPIRED", "UNAVAILABLE")


def staleness_status(
    evidence: Evidence, authority_level: str, config: Config, now: datetime
) -> str:
    if evidence.verify_failures >= config.staleness.unavailable_after_failures:
        return "UNAVAILABLE"
    thresholds = config.staleness.thresholds_days
    threshold_days = thresholds.get(authority_level, min(thresholds.values()))
    verified = parse_date_value(evidence.last_verified_at) or now
    age_days = (now - verified).total_seconds() / 86400
    ratio = age_days / threshold_days if threshold_days > 0 else float("inf")
    if ratio <= 0.5:
        return "FRESH"
    if ratio <= 1.0:
        return "AGING"
    if ratio <= 2.0:
        return "STALE"
    return "EXPIRED"


def refresh_staleness(
    conn: Any, config: Config, logger: logging.Logger, now: datetime | None = None
) -> dict[str, int]:
    now = now or utc_now()
    authority = {source.id: source.authority_level for source in list_sources(conn, enabled_only=False)}
    changed = 0
    with conn.transaction():
        for evidence in list_evidence(conn, limit=1_000_000):
            status = staleness_status(evidence, authority.get(evidence.source_id, "PRACTICE"), config, now)
            if status != evidence.staleness_status:
                set_evidence_staleness(conn, evidence.id, status)
                changed += 1
    counts = count_evidence_by_staleness(conn)
    log_event(logger, logging.INFO, "staleness_refreshed", changed=changed, **{k.lower(): v for k, v in counts.items()})
    return counts


def health_snapshot(conn: Any, config: Config) -> dict[str, object]:
    staleness = count_evidence_by_staleness(conn)
    return {
        "generated_at": utc_now().isoformat(),
        "queues": queue_snapshot(conn),
        "dead_letters": count_dead_letters(conn),
        "items": count_items_by_status(conn),
        "rules": count_rules_by_status(conn),
        "claims": count_claims(conn),
        "open_conflicts": len(list_conflicts(conn, status="OPEN")),
        "evidence_staleness": staleness,
        "backfill_runs": [_run_summary(asdict(run)) for run in list_backfill_runs(conn, limit=5)],
        "drain_heartbeat": get_setting(conn, DRAIN_HEARTBEAT_KEY, None),
        "gates": health_gates(conn, config, staleness),
    }


def _run_summary(run: dict[str, object]) -> dict[str, object]:
    run.pop("errors", None)
    return run


def health_gates(
    conn: Any, config: Config, staleness: dict[str, int] | None = None
) -> dict[str, object]:
    staleness = staleness if staleness is not None else count_evidence_by_staleness(conn)
    ungrounded = list_published_without_grounding(conn)
    dead_letters = count_dead_letters(conn)
    total = sum(staleness.values())
    degraded = sum(staleness.get(status, 0) for status in _DEGRADED)
    stale_ratio = degraded / total if total else 0.0
    checks = [
        {
            "name": "published_rules_grounded",
            "ok": not ungrounded,
            "detail": {"ungrounded_rule_ids": ungrounded},
        },
        {
            "name": "dead_letter_backlog",
            "ok": dead_letters <= config.health.max_dead_letters,
            "detail": {"count": dead_letters, "max": config.health.max_dead_letters},
        },
        {
            "name": "stale_evidence_ratio",
            "ok": stale_ratio <= config.health.max_stale_ratio,
            "detail": {"ratio": round(stale_ratio, 4), "max": config.health.max_stale_ratio},
        },
    ]
    return {"ok": all(check["ok"] for check in checks), "checks": checks}
