from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

from pypdf import PdfReader

from ..canonical import stage_job_id
from ..config import FetchConfig
from ..errors import PermanentFetchError, TransientFetchError, ValidationError
from ..models import FailedState, FetchedState, ProcessedState, SkippedState
from ..queues import enqueue
from ..storage import (
    get_discovered_item,
    get_source,
    increment_item_retry,
    insert_artifact,
    insert_rejection,
    record_evidence_verify_failure,
    update_item_state,
    upsert_evidence,
)
from ..utils import log_event, sha256_hex, utc_now_iso
from .text import html_to_text, normalize_whitespace, printable_ratio

if TYPE_CHECKING:
    from ..context import PipelineContext

_TERMINAL = ("PROCESSED", "SKIPPED")


def classify_content(
    content_type: str | None, body: bytes, config: FetchConfig
) -> tuple[str, str | None]:
    """Return ``(content_class, extracted_text)``.

    PDFs whose text layer is too thin or mostly unprintable are PDF_SCANNED
    and carry no text; they go through OCR before extraction.
    """
    if not body or not body.strip():
        raise ValidationError("empty payload", stage="fetch")
    kind = (content_type or "").split(";", 1)[0].strip().lower()
    head = body[:1024].lstrip().lower()
    if kind == "application/pdf" or body.startswith(b"%PDF"):
        return _classify_pdf(body, config)
    if "html" in kind or head.startswith((b"<!doctype html", b"<html")):
        text = html_to_text(body)
        if not text:
            raise ValidationError("html without text", stage="fetch")
        return "HTML", text
    return "OTHER", None


def _classify_pdf(body: bytes, config: FetchConfig) -> tuple[str, str | None]:
    try:
        reader = PdfReader(io.BytesIO(body))
        pages = [page.extract_text() or "" for page in reader.pages]
    except Exception as exc:  # noqa: BLE001
        raise ValidationError(f"undecodable pdf: {exc}", stage="fetch") from exc
    text = "\n".join(pages).strip()
    page_count = max(1, len(pages))
    chars = len(normalize_whitespace(text))
    if (
        chars < config.pdf_min_total_chars
        or chars / page_count < config.pdf_min_chars_per_page
        or printable_ratio(text) < config.pdf_min_printable_ratio
    ):
        return "PDF_SCANNED", None
    return "PDF_TEXT", text


_ARTIFACT_KIND = {"HTML": "HTML_TEXT", "PDF_TEXT": "PDF_TEXT"}


def fetch_item(ctx: "PipelineContext", item_id: int) -> dict[str, object]:
    conn = ctx.conn
    item = get_discovered_item(conn, item_id)
    if item is None:
        return {"status": "missing", "item_id": item_id}
    if item.status in _TERMINAL:
        return {"status": "noop", "item_id": item_id, "item_status": item.status}
    if isinstance(item.state, FailedState) and item.state.permanent:
        return {"status": "noop", "item_id": item_id, "item_status": item.status}
    source = get_source(conn, item.source_id)

    try:
        response = ctx.fetcher.get(item.canonical_url, source)
    except TransientFetchError as exc:
        with conn.transaction():
            retries = increment_item_retry(conn, item_id)
            if retries >= ctx.config.fetch.max_item_retries:
                update_item_state(conn, item_id, FailedState(error=str(exc), permanent=False))
        log_event(ctx.logger, logging.WARNING, "fetch_transient", item_id=item_id, url=item.canonical_url, retries=retries, error=str(exc))
        raise
    except PermanentFetchError as exc:
        with conn.transaction():
            update_item_state(conn, item_id, FailedState(error=str(exc), permanent=True))
            record_evidence_verify_failure(conn, item.canonical_url)
        log_event(ctx.logger, logging.WARNING, "fetch_permanent", item_id=item_id, url=item.canonical_url, status=exc.status, error=str(exc))
        raise

    try:
        content_class, text = classify_content(response.content_type, response.body, ctx.config.fetch)
    except ValidationError as exc:
        with conn.transaction():
            insert_rejection(
                conn,
                "fetch",
                str(item_id),
                exc.reason,
                {"url": item.canonical_url, "content_type": response.content_type, "size": len(response.body)},
            )
            update_item_state(conn, item_id, SkippedState(reason=exc.reason))
        log_event(ctx.logger, logging.WARNING, "fetch_rejected", item_id=item_id, url=item.canonical_url, reason=exc.reason)
        return {"status": "rejected", "item_id": item_id, "reason": exc.reason}

    content_hash = sha256_hex(response.body)
    with conn.transaction():
        evidence, created = upsert_evidence(
            conn,
            source_id=item.source_id,
            url=item.canonical_url,
            content_hash=content_hash,
            raw_content=response.body,
            content_type=response.content_type,
            content_class=content_class,
            fetched_at=utc_now_iso(),
        )
        if created and text:
            insert_artifact(conn, evidence.id, _ARTIFACT_KIND[content_class], text)
        next_stage = _route(ctx, evidence.id, content_class, evidence.pipeline_state)
        if next_stage == "skip":
            state = SkippedState(reason=f"unsupported content class {content_class}")
        elif next_stage == "done":
            state = ProcessedState(
                evidence_id=evidence.id,
                claim_count=int(evidence.pipeline_state.get("claim_count", 0)),
            )
        else:
            state = FetchedState(evidence_id=evidence.id, content_hash=content_hash, content_class=content_class)
        update_item_state(conn, item_id, state, content_hash=content_hash, evidence_id=evidence.id)

    log_event(
        ctx.logger,
        logging.INFO,
        "evidence_captured" if created else "evidence_verified",
        item_id=item_id,
        evidence_id=evidence.id,
        url=item.canonical_url,
        content_class=content_class,
        next=next_stage,
    )
    return {
        "status": "fetched",
        "item_id": item_id,
        "evidence_id": evidence.id,
        "created": created,
        "content_class": content_class,
        "next": next_stage,
    }


def _route(
    ctx: "PipelineContext", evidence_id: str, content_class: str, pipeline_state: dict[str, object]
) -> str:
    if content_class == "OTHER":
        return "skip"
    if pipeline_state.get("extracted"):
        return "done"
    if content_class == "PDF_SCANNED" and not pipeline_state.get("ocr_done"):
        enqueue(ctx.conn, ctx.config, "ocr", stage_job_id("ocr", evidence_id), {"evidence_id": evidence_id})
        return "ocr"
    enqueue(ctx.conn, ctx.config, "extract", stage_job_id("extract", evidence_id), {"evidence_id": evidence_id})
    return "extract"
