from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from datetime import date
from typing import TYPE_CHECKING, Any, Protocol

from ..canonical import stage_job_id
from ..config import Config, ConceptConfig
from ..errors import ValidationError
from ..llm.router import run_structured
from ..models import VALUE_TYPES, ProcessedState, SkippedState
from ..queues import enqueue
from ..storage import (
    get_evidence,
    get_primary_artifact,
    insert_claim,
    insert_rejection,
    list_claims_for_evidence,
    list_items_for_evidence,
    merge_evidence_pipeline_state,
    update_item_state,
)
from ..utils import log_event, sha256_hex, utc_now_iso
from .text import normalize_for_match, quote_in_text

if TYPE_CHECKING:
    from ..context import PipelineContext


@dataclass(frozen=True)
class ClaimDraft:
    concept_id: str
    exact_quote: str
    normalized_value: str
    value_type: str
    confidence: float
    article_ref: str | None = None
    effective_from: str | None = None


class Extractor(Protocol):
    name: str

    def extract(self, text: str, concepts: list[ConceptConfig]) -> list[ClaimDraft]: ...


_MONTHS = {
    name: index
    for index, names in enumerate(
        [
            ("january", "jan"),
            ("february", "feb"),
            ("march", "mar"),
            ("april", "apr"),
            ("may",),
            ("june", "jun"),
            ("july", "jul"),
            ("august", "aug"),
            ("september", "sep", "sept"),
            ("october", "oct"),
            ("november", "nov"),
            ("december", "dec"),
        ],
        start=1,
    )
    for name in names
}
_MONTH_NAMES = "|".join(sorted(_MONTHS, key=len, reverse=True))

_SENTENCE_SPLIT = re.compile(r"(?<=[.;!?])\s+(?=[A-Z(\"'])")
_PERCENT = re.compile(r"(\d{1,3}(?:[.,]\d{1,2})?)\s*(?:%|per\s?cent\b|percent\b)", re.IGNORECASE)
_CURRENCY_CODES = r"EUR|USD|GBP|CHF|€|\$|£|euros?\b"
_AMOUNT = r"\d{1,3}(?:[.,\s]\d{3})+(?:[.,]\d{1,2})?|\d+(?:[.,]\d{1,2})?"
_CURRENCY = re.compile(
    rf"(?:(?P<pre>{_CURRENCY_CODES})\s*(?P<pre_amount>{_AMOUNT}))"
    rf"|(?:(?P<post_amount>{_AMOUNT})\s*(?P<post>{_CURRENCY_CODES}))",
    re.IGNORECASE,
)
_ISO_DATE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
_DOTTED_DATE = re.compile(r"\b(\d{1,2})\.\s?(\d{1,2})\.\s?(\d{4})\b")
_DAY_MONTH_YEAR = re.compile(rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+({_MONTH_NAMES})\.?\s+(\d{{4}})\b", re.IGNORECASE)
_MONTH_DAY_YEAR = re.compile(rf"\b({_MONTH_NAMES})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(\d{{4}})\b", re.IGNORECASE)
_NUMBER = re.compile(r"\b\d+(?:[.,]\d+)?\b")
_ARTICLE = re.compile(
    r"\b(?:Article|Art\.)\s*(\d+[a-z]?)(?:\s*(?:\((\d+)\)|(?:paragraph|para\.)\s*(\d+)))?",
    re.IGNORECASE,
)
_EFFECTIVE = re.compile(r"\b(?:from|as of|effective(?: from)?|with effect from|starting)\s+", re.IGNORECASE)
_CURRENCY_SYMBOLS = {"€": "EUR", "$": "USD", "£": "GBP", "euro": "EUR", "euros": "EUR"}


def split_sentences(text: str) -> list[str]:
    return [sentence.strip() for sentence in _SENTENCE_SPLIT.split(text) if sentence.strip()]


def parse_amount(raw: str) -> str | None:
    cleaned = re.sub(r"\s+", "", raw)
    if not cleaned:
        return None
    if "," in cleaned and "." in cleaned:
        decimal = "," if cleaned.rfind(",") > cleaned.rfind(".") else "."
        thousands = "." if decimal == "," else ","
        cleaned = cleaned.replace(thousands, "").replace(decimal, ".")
    elif "," in cleaned or "." in cleaned:
        sep = "," if "," in cleaned else "."
        head, _, tail = cleaned.rpartition(sep)
        if cleaned.count(sep) == 1 and len(tail) in (1, 2):
            cleaned = head.replace(sep, "") + "." + tail
        else:
            cleaned = cleaned.replace(sep, "")
    try:
        value = float(cleaned)
    except ValueError:
        return None
    return _format_number(value)


def _format_number(value: float) -> str:
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return text or "0"


def find_dates(text: str) -> list[tuple[int, str]]:
    """All dates in ``text`` as ``(position, iso_date)``, in order of appearance."""
    found: list[tuple[int, str]] = []
    for match in _ISO_DATE.finditer(text):
        found.append((match.start(), _iso(match.group(1), match.group(2), match.group(3))))
    for match in _DOTTED_DATE.finditer(text):
        found.append((match.start(), _iso(match.group(3), match.group(2), match.group(1))))
    for match in _DAY_MONTH_YEAR.finditer(text):
        found.append((match.start(), _iso(match.group(3), _MONTHS[match.group(2).lower()], match.group(1))))
    for match in _MONTH_DAY_YEAR.finditer(text):
        found.append((match.start(), _iso(match.group(3), _MONTHS[match.group(1).lower()], match.group(2))))
    return sorted((position, value) for position, value in found if value)


def _iso(year: object, month: object, day: object) -> str:
    try:
        return date(int(year), int(month), int(day)).isoformat()
    except (TypeError, ValueError):
        return ""


def find_article_ref(text: str) -> str | None:
    match = _ARTICLE.search(text)
    if not match:
        return None
    paragraph = match.group(2) or match.group(3)
    return f"Article {match.group(1)}({paragraph})" if paragraph else f"Article {match.group(1)}"


def find_effective_from(text: str) -> str | None:
    for marker in _EFFECTIVE.finditer(text):
        for position, value in find_dates(text[marker.end() : marker.end() + 40]):
            if position == 0:
                return value
    return None


def extract_values(sentence: str, value_type: str) -> list[str]:
    if value_type == "PERCENTAGE":
        values = [parse_amount(match.group(1)) for match in _PERCENT.finditer(sentence)]
    elif value_type == "CURRENCY":
        values = []
        for match in _CURRENCY.finditer(sentence):
            amount = parse_amount(match.group("pre_amount") or match.group("post_amount") or "")
            code = (match.group("pre") or match.group("post") or "").lower()
            code = _CURRENCY_SYMBOLS.get(code, code.upper())
            if amount:
                values.append(f"{amount} {code}")
    elif value_type == "DATE":
        values = [value for _, value in find_dates(sentence)]
    elif value_type == "NUMERIC":
        values = [parse_amount(match.group(0)) for match in _NUMBER.finditer(sentence)]
    else:
        values = []
    seen: list[str] = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


class PatternExtractor:
    """Keyword-anchored value extraction over sentences of the evidence text."""

    name = "pattern"

    def extract(self, text: str, concepts: list[ConceptConfig]) -> list[ClaimDraft]:
        drafts: list[ClaimDraft] = []
        for sentence in split_sentences(text):
            folded = normalize_for_match(sentence)
            for concept in concepts:
                if not any(keyword.lower() in folded for keyword in concept.keywords):
                    continue
                effective_from = find_effective_from(sentence)
                values = extract_values(sentence, concept.value_type)
                if concept.value_type == "DATE" and effective_from in values and len(values) > 1:
                    values.remove(effective_from)
                if not values:
                    continue
                article_ref = find_article_ref(sentence)
                confidence = 0.8
                if article_ref:
                    confidence += 0.1
                if effective_from:
                    confidence += 0.05
                if len(values) > 1:
                    # Several candidate values in one sentence: ambiguous.
                    confidence = 0.4
                drafts.append(
                    ClaimDraft(
                        concept_id=concept.id,
                        exact_quote=sentence,
                        normalized_value=values[0],
                        value_type=concept.value_type,
                        confidence=round(min(confidence, 0.95), 2),
                        article_ref=article_ref,
                        effective_from=effective_from,
                    )
                )
        return drafts


CLAIMS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["claims"],
    "properties": {
        "claims": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["concept_id", "exact_quote", "value", "value_type", "confidence"],
                "properties": {
                    "concept_id": {"type": "string", "minLength": 1},
                    "exact_quote": {"type": "string", "minLength": 1},
                    "value": {"type": "string", "minLength": 1},
                    "value_type": {"type": "string", "enum": list(VALUE_TYPES)},
                    "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                    "article_ref": {"type": ["string", "null"]},
                    "effective_from": {"type": ["string", "null"]},
                },
            },
        }
    },
}

_LLM_SYSTEM = (
    "You extract regulatory facts from official documents. "
    "Only report values stated in the text and copy the supporting sentence verbatim. "
    "Return JSON with a 'claims' array; each claim has concept_id, exact_quote, value, "
    "value_type, confidence (0-1), article_ref and effective_from (YYYY-MM-DD or null)."
)


class LlmExtractor:
    name = "llm"

    def __init__(self, config: Config, logger: logging.Logger) -> None:
        self._config = config
        self._logger = logger

    def extract(self, text: str, concepts: list[ConceptConfig]) -> list[ClaimDraft]:
        catalogue = "\n".join(
            f"- {concept.id} ({concept.value_type}): {', '.join(concept.keywords)}" for concept in concepts
        )
        user = f"Concepts:\n{catalogue}\n\nDocument:\n{text}"
        result = run_structured(self._config.llm, _LLM_SYSTEM, user, CLAIMS_SCHEMA, self._logger)
        if not result["schema_valid"]:
            raise ValidationError(
                f"model output failed schema: {result['schema_error']}",
                result["raw"],
                stage="extract",
            )
        return [
            ClaimDraft(
                concept_id=claim["concept_id"],
                exact_quote=claim["exact_quote"],
                normalized_value=claim["value"].strip(),
                value_type=claim["value_type"],
                confidence=float(claim["confidence"]),
                article_ref=claim.get("article_ref"),
                effective_from=claim.get("effective_from"),
            )
            for claim in result["parsed"]["claims"]
        ]


def build_extractors(config: Config, logger: logging.Logger) -> list[Extractor]:
    extractors: list[Extractor] = []
    for name in config.extraction.extractors:
        if name == "pattern":
            extractors.append(PatternExtractor())
        elif name == "llm":
            extractors.append(LlmExtractor(config, logger))
        else:
            raise ValueError(f"unknown extractor: {name}")
    return extractors


def validate_draft(draft: ClaimDraft, text: str, config: Config) -> str | None:
    """Return a rejection reason, or None when the draft may be persisted."""
    known = {concept.id for concept in config.concepts} | {
        alias for concept in config.concepts for alias in concept.aliases
    }
    if draft.concept_id not in known:
        return f"unknown concept {draft.concept_id}"
    if draft.value_type not in VALUE_TYPES:
        return f"unknown value type {draft.value_type}"
    if not 0.0 <= draft.confidence <= 1.0:
        return f"confidence out of range: {draft.confidence}"
    if not draft.normalized_value:
        return "empty value"
    if not quote_in_text(draft.exact_quote, text):
        return "quote not found in evidence"
    if draft.value_type == "PERCENTAGE":
        try:
            percent = float(draft.normalized_value)
        except ValueError:
            return f"not a percentage: {draft.normalized_value}"
        if not 0.0 <= percent <= 100.0:
            return f"percentage out of range: {draft.normalized_value}"
    if draft.value_type == "DATE" and not _is_iso_date(draft.normalized_value):
        return f"not an ISO date: {draft.normalized_value}"
    if draft.effective_from and not _is_iso_date(draft.effective_from):
        return f"effective_from is not an ISO date: {draft.effective_from}"
    return None


def _is_iso_date(value: str) -> bool:
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def extract_evidence(ctx: "PipelineContext", evidence_id: str) -> dict[str, object]:
    """Run every configured extractor over the evidence text and persist grounded claims.

    Evidence is only read; re-running adds claims that are new and leaves
    existing ones untouched.
    """
    conn = ctx.conn
    config = ctx.config
    evidence = get_evidence(conn, evidence_id)
    if evidence is None:
        return {"status": "missing", "evidence_id": evidence_id}
    artifact = get_primary_artifact(conn, evidence_id)
    if artifact is None:
        with conn.transaction():
            insert_rejection(conn, "extract", evidence_id, "no text artifact", {"url": evidence.url})
            for item in list_items_for_evidence(conn, evidence_id):
                if item.status == "FETCHED":
                    update_item_state(conn, item.id, SkippedState(reason="no text artifact"))
        return {"status": "no_text", "evidence_id": evidence_id}
    text = artifact.content[: config.extraction.max_text_chars]

    accepted: list[tuple[str, ClaimDraft]] = []
    rejected: list[tuple[str, object]] = []
    discarded = 0
    for extractor in ctx.extractors:
        try:
            drafts = extractor.extract(text, config.concepts)
        except ValidationError as exc:
            rejected.append((exc.reason, {"extractor": extractor.name, "payload": exc.payload}))
            continue
        for draft in drafts:
            reason = validate_draft(draft, text, config)
            if reason:
                rejected.append((reason, {"extractor": extractor.name, "claim": asdict(draft)}))
            elif draft.confidence < config.extraction.min_confidence:
                discarded += 1
            else:
                accepted.append((extractor.name, draft))
    new_claims: dict[str, list[str]] = {}
    with conn.transaction():
        for extractor_name, draft in accepted:
            claim_id = insert_claim(
                conn,
                evidence_id=evidence_id,
                concept_id=draft.concept_id,
                exact_quote=draft.exact_quote,
                normalized_value=draft.normalized_value,
                value_type=draft.value_type,
                confidence=draft.confidence,
                article_ref=draft.article_ref,
                effective_from=draft.effective_from,
                extractor=extractor_name,
            )
            if claim_id:
                concept = config.canonical_concept_id(draft.concept_id)
                new_claims.setdefault(concept, []).append(claim_id)
        for reason, payload in rejected:
            insert_rejection(conn, "extract", evidence_id, reason, payload)
        claim_count = len(list_claims_for_evidence(conn, evidence_id))
        merge_evidence_pipeline_state(
            conn,
            evidence_id,
            {"extracted": True, "claim_count": claim_count, "extracted_at": utc_now_iso()},
        )
        for item in list_items_for_evidence(conn, evidence_id):
            if item.status == "FETCHED":
                update_item_state(conn, item.id, ProcessedState(evidence_id=evidence_id, claim_count=claim_count))
        for concept, claim_ids in sorted(new_claims.items()):
            enqueue(
                conn,
                config,
                "compose",
                stage_job_id("compose", concept, sha256_hex(",".join(sorted(claim_ids)))),
                {"concept_id": concept},
            )
    created = sum(len(ids) for ids in new_claims.values())
    log_event(
        ctx.logger,
        logging.INFO,
        "evidence_extracted",
        evidence_id=evidence_id,
        new_claims=created,
        discarded=discarded,
        rejected=len(rejected),
    )
    return {
        "status": "extracted",
        "evidence_id": evidence_id,
        "new_claims": created,
        "discarded": discarded,
        "rejected": len(rejected),
        "concepts": sorted(new_claims),
    }
