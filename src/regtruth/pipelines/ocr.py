from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from typing import TYPE_CHECKING, Protocol

from ..canonical import stage_job_id
from ..config import Config, OcrConfig
from ..errors import ValidationError
from ..models import SkippedState
from ..queues import enqueue
from ..storage import (
    get_evidence,
    insert_artifact,
    insert_rejection,
    list_items_for_evidence,
    merge_evidence_pipeline_state,
    update_item_state,
)
from ..utils import log_event, utc_now_iso
from .text import normalize_whitespace

if TYPE_CHECKING:
    from ..context import PipelineContext


class OcrEngine(Protocol):
    name: str

    def recognize(self, pdf_bytes: bytes) -> str: ...


class CommandOcrEngine:
    """Runs an external OCR command; ``{input}`` in the command is replaced by a temp file path."""

    name = "command"

    def __init__(self, config: OcrConfig) -> None:
        self._config = config

    def recognize(self, pdf_bytes: bytes) -> str:
        with tempfile.TemporaryDirectory(prefix="regtruth-ocr-") as tmpdir:
            path = os.path.join(tmpdir, "input.pdf")
            with open(path, "wb") as handle:
                handle.write(pdf_bytes)
            command = [part.replace("{input}", path) for part in self._config.command]
            completed = subprocess.run(
                command,
                capture_output=True,
                check=False,
                timeout=self._config.timeout_seconds,
            )
        if completed.returncode != 0:
            stderr = completed.stderr.decode("utf-8", errors="replace").strip()
            raise RuntimeError(f"ocr command failed ({completed.returncode}): {stderr[:300]}")
        return completed.stdout.decode("utf-8", errors="replace")


def build_ocr_engine(config: Config) -> OcrEngine | None:
    if not config.ocr.enabled:
        return None
    return CommandOcrEngine(config.ocr)


def run_ocr(ctx: "PipelineContext", evidence_id: str) -> dict[str, object]:
    conn = ctx.conn
    evidence = get_evidence(conn, evidence_id)
    if evidence is None:
        return {"status": "missing", "evidence_id": evidence_id}
    if evidence.pipeline_state.get("ocr_done"):
        return {"status": "noop", "evidence_id": evidence_id}
    if ctx.ocr_engine is None:
        with conn.transaction():
            merge_evidence_pipeline_state(conn, evidence_id, {"ocr_error": "ocr disabled"})
            _skip_items(conn, evidence_id, "ocr disabled")
        log_event(ctx.logger, logging.WARNING, "ocr_skipped", evidence_id=evidence_id, reason="disabled")
        return {"status": "skipped", "evidence_id": evidence_id}
    try:
        text = normalize_whitespace(ctx.ocr_engine.recognize(evidence.raw_content))
    except (OSError, RuntimeError, subprocess.TimeoutExpired) as exc:
        with conn.transaction():
            merge_evidence_pipeline_state(conn, evidence_id, {"ocr_error": str(exc), "ocr_failed_at": utc_now_iso()})
        log_event(ctx.logger, logging.WARNING, "ocr_failed", evidence_id=evidence_id, error=str(exc))
        raise
    if not text:
        error = ValidationError("ocr produced no text", stage="ocr")
        with conn.transaction():
            insert_rejection(conn, "ocr", evidence_id, error.reason, {"url": evidence.url})
            merge_evidence_pipeline_state(conn, evidence_id, {"ocr_error": error.reason})
            _skip_items(conn, evidence_id, error.reason)
        return {"status": "rejected", "evidence_id": evidence_id, "reason": error.reason}
    with conn.transaction():
        insert_artifact(conn, evidence_id, "OCR_TEXT", text)
        merge_evidence_pipeline_state(
            conn,
            evidence_id,
            {"ocr_done": True, "ocr_engine": ctx.ocr_engine.name, "ocr_error": None},
        )
        enqueue(ctx.conn, ctx.config, "extract", stage_job_id("extract", evidence_id), {"evidence_id": evidence_id})
    log_event(ctx.logger, logging.INFO, "ocr_completed", evidence_id=evidence_id, chars=len(text))
    return {"status": "ocr_done", "evidence_id": evidence_id, "chars": len(text)}


def _skip_items(conn, evidence_id: str, reason: str) -> None:
    for item in list_items_for_evidence(conn, evidence_id):
        if item.status == "FETCHED":
            update_item_state(conn, item.id, SkippedState(reason=reason))
