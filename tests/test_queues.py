from regtruth.config import build_config
from regtruth.queues import (
    backoff_delay_seconds,
    claim_next,
    enqueue,
    finish_failure,
    finish_success,
    queue_contracts,
)
from regtruth.storage import count_dead_letters, get_job, list_dead_letters


def test_enqueue_same_id_is_noop_while_waiting_active_or_retained(conn, config):
    assert enqueue(conn, config, "fetch", "src:abc", {"item_id": 1}) is True
    assert enqueue(conn, config, "fetch", "src:abc", {"item_id": 1}) is False

    job = claim_next(conn, config, "worker-1", ["fetch"])
    assert job is not None and job.id == "src:abc"
    assert enqueue(conn, config, "fetch", "src:abc", {"item_id": 1}) is False

    assert finish_success(conn, config, job, {"status": "ok"}) is True
    assert enqueue(conn, config, "fetch", "src:abc", {"item_id": 1}) is False
    assert get_job(conn, "src:abc").status == "completed"


def test_claim_honors_queue_concurrency(conn, config):
    for index in range(3):
        enqueue(conn, config, "fetch", f"src:{index}", {"item_id": index})
    first = claim_next(conn, config, "worker-1", ["fetch"])
    second = claim_next(conn, config, "worker-2", ["fetch"])
    third = claim_next(conn, config, "worker-3", ["fetch"])
    assert first is not None and second is not None
    assert first.id != second.id
    assert third is None


def test_claim_honors_jobs_per_window(conn):
    config = build_config({"queues": {"compose": {"limit_max": 1, "limit_duration_seconds": 3600}}})
    enqueue(conn, config, "compose", "compose:a", {"concept_id": "a"})
    enqueue(conn, config, "compose", "compose:b", {"concept_id": "b"})
    job = claim_next(conn, config, "worker-1", ["compose"])
    finish_success(conn, config, job)
    assert claim_next(conn, config, "worker-1", ["compose"]) is None


def test_claim_orders_by_priority(conn, config):
    enqueue(conn, config, "fetch", "src:low", None, priority=100)
    enqueue(conn, config, "fetch", "src:high", None, priority=10)
    job = claim_next(conn, config, "worker-1", ["fetch"])
    assert job.id == "src:high"


def test_failure_retries_then_dead_letters(conn):
    config = build_config({"queues": {"extract": {"attempts": 2, "backoff_seconds": 0}}})
    enqueue(conn, config, "extract", "extract:e1", {"evidence_id": "e1"})

    job = claim_next(conn, config, "worker-1", ["extract"])
    assert finish_failure(conn, config, job, "boom") == "retrying"
    assert get_job(conn, job.id).status == "waiting"

    job = claim_next(conn, config, "worker-1", ["extract"])
    assert job is not None and job.attempts == 2
    assert finish_failure(conn, config, job, "boom again") == "dead_lettered"

    assert get_job(conn, job.id).status == "failed"
    assert count_dead_letters(conn) == 1
    letter = list_dead_letters(conn)[0]
    assert letter["job_id"] == "extract:e1"
    assert letter["payload"] == {"evidence_id": "e1"}
    assert enqueue(conn, config, "extract", "extract:e1", {"evidence_id": "e1"}) is False


def test_permanent_failure_skips_retries(conn, config):
    enqueue(conn, config, "fetch", "src:gone", {"item_id": 9})
    job = claim_next(conn, config, "worker-1", ["fetch"])
    assert finish_failure(conn, config, job, "HTTP 404", permanent=True) == "dead_lettered"
    assert count_dead_letters(conn) == 1


def test_stale_lock_is_requeued(conn, config):
    enqueue(conn, config, "review", "review:r1", {"rule_id": "r1"})
    job = claim_next(conn, config, "worker-1", ["review"])
    conn.execute(
        "UPDATE jobs SET locked_at = ? WHERE id = ?",
        ("2000-01-01T00:00:00+00:00", job.id),
    )
    again = claim_next(conn, config, "worker-2", ["review"])
    assert again is not None
    assert again.id == job.id
    assert again.locked_by == "worker-2"


def test_backoff_is_exponential():
    assert backoff_delay_seconds(30, 1) == 30
    assert backoff_delay_seconds(30, 2) == 60
    assert backoff_delay_seconds(30, 3) == 120


def test_queue_contracts_cover_every_queue(config):
    contracts = {contract["name"]: contract for contract in queue_contracts(config)}
    assert set(contracts) == {
        "fetch",
        "ocr",
        "extract",
        "compose",
        "review",
        "arbiter",
        "release",
        "human-review",
        "content-sync",
    }
    assert contracts["human-review"]["consumer"] == "external"
    assert contracts["fetch"]["backoff"]["type"] == "exponential"
    assert contracts["fetch"]["retain"] == {"completed": 1000, "failed": 5000}
