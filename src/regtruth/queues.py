from __future__ import annotations

import logging
from typing import Any

from .config import QUEUE_NAMES, Config
from .models import Job
from .storage import (
    complete_job,
    count_active_jobs,
    count_jobs_by_queue,
    count_jobs_started_since,
    fail_job,
    get_job,
    insert_dead_letter,
    insert_job_if_absent,
    mark_job_active,
    next_waiting_job_id,
    prune_jobs,
    requeue_stale_jobs,
    retry_job,
)
from .utils import log_event, utc_now_iso, utc_now_iso_offset

# Stages this service runs itself; the remaining queues are drained by
# external consumers (human reviewers, downstream content sync).
PIPELINE_QUEUES = ("fetch", "ocr", "extract", "compose", "review", "arbiter", "release")
EXTERNAL_QUEUES = ("human-review", "content-sync")


def queue_contracts(config: Config) -> list[dict[str, object]]:
    contracts = []
    for name in QUEUE_NAMES:
        queue = config.queue(name)
        contracts.append(
            {
                "name": name,
                "concurrency": queue.concurrency,
                "limit": {"max": queue.limit_max, "duration_seconds": queue.limit_duration_seconds},
                "retain": {"completed": queue.retain_completed, "failed": queue.retain_failed},
                "attempts": queue.attempts,
                "backoff": {"type": "exponential", "base_seconds": queue.backoff_seconds},
                "consumer": "external" if name in EXTERNAL_QUEUES else "pipeline",
            }
        )
    return contracts


def backoff_delay_seconds(base_seconds: float, attempt: int) -> float:
    return base_seconds * (2 ** max(0, attempt - 1))


def enqueue(
    conn: Any,
    config: Config,
    queue: str,
    job_id: str,
    payload: dict[str, object] | None,
    *,
    priority: int = 100,
    delay_seconds: float = 0,
) -> bool:
    """Add a job under its deterministic id.

    A no-op when the id is waiting, active, or still retained as completed or
    failed. Returns True only when a new job row was written.
    """
    queue_cfg = config.queue(queue)
    not_before = utc_now_iso_offset(seconds=delay_seconds) if delay_seconds > 0 else None
    return insert_job_if_absent(
        conn,
        job_id,
        queue,
        payload,
        priority=priority,
        max_attempts=queue_cfg.attempts,
        not_before=not_before,
    )


def claim_next(
    conn: Any,
    config: Config,
    worker_id: str,
    queues: list[str] | tuple[str, ...] | None = None,
) -> Job | None:
    """Atomically claim the next runnable job honoring per-queue concurrency and rate limits."""
    names = list(queues or PIPELINE_QUEUES)
    with conn.transaction():
        cutoff = utc_now_iso_offset(seconds=-config.jobs.lock_timeout_seconds)
        requeue_stale_jobs(conn, cutoff)
        now = utc_now_iso()
        for name in names:
            queue_cfg = config.queue(name)
            if count_active_jobs(conn, name) >= queue_cfg.concurrency:
                continue
            window_start = utc_now_iso_offset(seconds=-queue_cfg.limit_duration_seconds)
            if count_jobs_started_since(conn, name, window_start) >= queue_cfg.limit_max:
                continue
            job_id = next_waiting_job_id(conn, name, now)
            if job_id is None:
                continue
            if mark_job_active(conn, job_id, worker_id, now):
                return get_job(conn, job_id)
    return None


def finish_success(
    conn: Any, config: Config, job: Job, result: dict[str, object] | None = None
) -> bool:
    with conn.transaction():
        done = complete_job(conn, job.id, result)
        prune_jobs(conn, job.queue, "completed", config.queue(job.queue).retain_completed)
    return done


def finish_failure(
    conn: Any,
    config: Config,
    job: Job,
    error: str,
    logger: logging.Logger | None = None,
    *,
    permanent: bool = False,
) -> str:
    """Retry with exponential backoff, or dead-letter once attempts are spent.

    Returns ``"retrying"`` or ``"dead_lettered"``.
    """
    queue_cfg = config.queue(job.queue)
    with conn.transaction():
        if not permanent and job.attempts < job.max_attempts:
            delay = backoff_delay_seconds(queue_cfg.backoff_seconds, job.attempts)
            retry_job(conn, job.id, error, utc_now_iso_offset(seconds=delay))
            outcome = "retrying"
        else:
            fail_job(conn, job.id, error)
            insert_dead_letter(conn, job, error)
            prune_jobs(conn, job.queue, "failed", queue_cfg.retain_failed)
            outcome = "dead_lettered"
    if logger is not None:
        log_event(
            logger,
            logging.WARNING if outcome == "retrying" else logging.ERROR,
            "job_" + outcome,
            job_id=job.id,
            queue=job.queue,
            attempt=job.attempts,
            error=error,
        )
    return outcome


def queue_snapshot(conn: Any) -> dict[str, dict[str, int]]:
    counts = count_jobs_by_queue(conn)
    return {name: counts.get(name, {}) for name in QUEUE_NAMES}
