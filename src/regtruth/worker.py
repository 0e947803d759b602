from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Callable

from .canonical import job_id
from .context import PipelineContext
from .db import connect_db
from .discovery.classify import tier_priority
from .errors import PermanentFetchError
from .health import DRAIN_HEARTBEAT_KEY
from .models import Job
from .pipelines.arbiter import arbitrate_conflict
from .pipelines.compose import compose_concept
from .pipelines.extract import extract_evidence
from .pipelines.fetch import fetch_item
from .pipelines.ocr import run_ocr
from .pipelines.release import publish_rule
from .pipelines.review import review_rule
from .queues import PIPELINE_QUEUES, claim_next, enqueue, finish_failure, finish_success
from .storage import get_source, list_items_by_status, set_setting
from .utils import log_event, utc_now_iso


def run_claimed_job(ctx: PipelineContext, job: Job) -> dict[str, object]:
    payload = job.payload or {}
    log_event(ctx.logger, logging.INFO, "job_claimed", job_id=job.id, queue=job.queue, attempt=job.attempts)
    if job.queue == "fetch":
        return fetch_item(ctx, int(payload["item_id"]))
    if job.queue == "ocr":
        return run_ocr(ctx, str(payload["evidence_id"]))
    if job.queue == "extract":
        return extract_evidence(ctx, str(payload["evidence_id"]))
    if job.queue == "compose":
        return compose_concept(ctx, str(payload["concept_id"]))
    if job.queue == "review":
        return review_rule(ctx, str(payload["rule_id"]))
    if job.queue == "arbiter":
        return arbitrate_conflict(ctx, str(payload["conflict_id"]))
    if job.queue == "release":
        return publish_rule(ctx, str(payload["rule_id"]))
    raise ValueError(f"unsupported queue {job.queue}")


def _process_claimed_job(ctx: PipelineContext, job: Job) -> int:
    try:
        result = run_claimed_job(ctx, job)
    except PermanentFetchError as exc:
        finish_failure(ctx.conn, ctx.config, job, str(exc), ctx.logger, permanent=True)
        return 1
    except Exception as exc:  # noqa: BLE001
        finish_failure(ctx.conn, ctx.config, job, f"{type(exc).__name__}: {exc}", ctx.logger)
        log_event(ctx.logger, logging.ERROR, "job_failed", job_id=job.id, queue=job.queue, error=str(exc))
        return 1
    if finish_success(ctx.conn, ctx.config, job, result):
        log_event(ctx.logger, logging.INFO, "job_succeeded", job_id=job.id, queue=job.queue, status=result.get("status"))
    else:
        log_event(ctx.logger, logging.ERROR, "job_complete_failed", job_id=job.id)
    return 0


def run_once(ctx: PipelineContext, queues: list[str] | None = None) -> bool:
    """Claim and run a single job. Returns False when nothing was runnable."""
    job = claim_next(ctx.conn, ctx.config, ctx.worker_id, queues or PIPELINE_QUEUES)
    if job is None:
        return False
    _process_claimed_job(ctx, job)
    return True


def run_until_idle(
    ctx: PipelineContext, queues: list[str] | None = None, max_jobs: int = 10_000
) -> int:
    processed = 0
    while processed < max_jobs and run_once(ctx, queues):
        processed += 1
    return processed


def _thread_context(ctx: PipelineContext) -> PipelineContext:
    return replace(ctx, conn=connect_db(ctx.conn.path))


def _process_claimed_job_thread(ctx: PipelineContext, job: Job) -> int:
    thread_ctx = _thread_context(ctx)
    try:
        return _process_claimed_job(thread_ctx, job)
    finally:
        thread_ctx.conn.close()


def run_loop(
    ctx: PipelineContext,
    sleep_seconds: float,
    queues: list[str] | None = None,
    concurrency: int = 1,
    max_iterations: int | None = None,
) -> int:
    iterations = 0
    if concurrency <= 1:
        while max_iterations is None or iterations < max_iterations:
            iterations += 1
            if not run_once(ctx, queues):
                time.sleep(sleep_seconds)
        return 0

    max_workers = max(1, concurrency)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = set()
        while max_iterations is None or iterations < max_iterations:
            iterations += 1
            while len(futures) < max_workers:
                job = claim_next(ctx.conn, ctx.config, ctx.worker_id, queues or PIPELINE_QUEUES)
                if job is None:
                    break
                futures.add(executor.submit(_process_claimed_job_thread, ctx, job))
            if futures:
                done, futures = wait(futures, timeout=sleep_seconds, return_when=FIRST_COMPLETED)
                for future in done:
                    try:
                        future.result()
                    except Exception as exc:  # noqa: BLE001
                        log_event(ctx.logger, logging.ERROR, "job_thread_error", error=str(exc))
            else:
                time.sleep(sleep_seconds)
        wait(futures)
    return 0


def requeue_pending_items(ctx: PipelineContext, limit: int) -> int:
    """Make sure every PENDING item with retries left has a fetch job."""
    conn = ctx.conn
    queued = 0
    for item in list_items_by_status(conn, "PENDING", limit=limit, max_retries=ctx.config.fetch.max_item_retries):
        source = get_source(conn, item.source_id)
        if source is None:
            continue
        if enqueue(
            conn,
            ctx.config,
            "fetch",
            job_id(item.source_id, item.canonical_url, ctx.config.canonical.tracking_params),
            {"item_id": item.id, "source_id": item.source_id, "url": item.canonical_url},
            priority=tier_priority(source, ctx.config.discovery),
        ):
            queued += 1
    return queued


def drain_once(ctx: PipelineContext) -> dict[str, int]:
    batch = ctx.config.drain.batch_size
    requeued = requeue_pending_items(ctx, batch)
    processed = run_until_idle(ctx, max_jobs=batch)
    return {"requeued": requeued, "processed": processed}


def next_drain_sleep(previous: float, processed: int, ctx: PipelineContext) -> float:
    drain = ctx.config.drain
    if processed > 0:
        return drain.min_backoff_seconds
    return min(drain.max_backoff_seconds, max(drain.min_backoff_seconds, previous * drain.backoff_multiplier))


def run_drain_loop(
    ctx: PipelineContext,
    *,
    max_cycles: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Advance backlog continuously: short sleeps under load, longer ones when idle."""
    delay = ctx.config.drain.min_backoff_seconds
    cycles = 0
    while max_cycles is None or cycles < max_cycles:
        cycles += 1
        stats = drain_once(ctx)
        delay = next_drain_sleep(delay, stats["processed"], ctx)
        set_setting(
            ctx.conn,
            DRAIN_HEARTBEAT_KEY,
            {"at": utc_now_iso(), "cycle": cycles, "next_sleep_seconds": delay, **stats},
        )
        log_event(ctx.logger, logging.DEBUG, "drain_cycle", cycle=cycles, sleep=delay, **stats)
        sleep(delay)
    return cycles
