from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .models import AUTHORITY_LEVELS, LISTING_KINDS, PRIORITY_TIERS

QUEUE_NAMES = (
    "fetch",
    "ocr",
    "extract",
    "compose",
    "review",
    "arbiter",
    "release",
    "human-review",
    "content-sync",
)


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str
    sources_file: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_bytes: int


@dataclass(frozen=True)
class CanonicalConfig:
    tracking_params: list[str]


@dataclass(frozen=True)
class RateLimitConfig:
    min_delay_ms: int
    max_delay_ms: int
    max_concurrent_per_domain: int
    circuit_error_threshold: int
    circuit_reset_seconds: int
    retryable_statuses: list[int]


@dataclass(frozen=True)
class DiscoveryConfig:
    cadence_minutes: dict[str, int]
    tier_priority: dict[str, int]
    jitter_ratio: float
    max_sitemap_depth: int


@dataclass(frozen=True)
class BackfillConfig:
    default_max_urls: int
    default_max_per_source: int
    default_delay_ms: int
    batch_size: int
    max_pages: int


@dataclass(frozen=True)
class FetchConfig:
    max_item_retries: int
    pdf_min_chars_per_page: int
    pdf_min_printable_ratio: float
    pdf_min_total_chars: int


@dataclass(frozen=True)
class OcrConfig:
    enabled: bool
    command: list[str]
    timeout_seconds: int


@dataclass(frozen=True)
class ExtractionConfig:
    min_confidence: float
    extractors: list[str]
    max_text_chars: int


@dataclass(frozen=True)
class ConceptConfig:
    id: str
    value_type: str
    keywords: list[str]
    aliases: list[str]


@dataclass(frozen=True)
class ReviewConfig:
    auto_approve_threshold: float
    require_grounding: bool


@dataclass(frozen=True)
class PolicyConfig:
    tiebreak: list[str]
    authority_ranks: dict[str, int]
    confidence_epsilon: float


@dataclass(frozen=True)
class QueueConfig:
    concurrency: int
    limit_max: int
    limit_duration_seconds: int
    attempts: int
    backoff_seconds: float
    retain_completed: int
    retain_failed: int


@dataclass(frozen=True)
class JobsConfig:
    lock_timeout_seconds: int
    poll_seconds: int


@dataclass(frozen=True)
class DrainConfig:
    batch_size: int
    min_backoff_seconds: float
    max_backoff_seconds: float
    backoff_multiplier: float


@dataclass(frozen=True)
class StalenessConfig:
    thresholds_days: dict[str, int]
    unavailable_after_failures: int


@dataclass(frozen=True)
class HealthConfig:
    max_dead_letters: int
    max_stale_ratio: float


@dataclass(frozen=True)
class LlmConfig:
    enabled: bool
    base_url: str
    model: str
    api_key_env: str
    timeout_seconds: int
    temperature: float


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    http: HttpConfig
    canonical: CanonicalConfig
    rate_limit: RateLimitConfig
    discovery: DiscoveryConfig
    backfill: BackfillConfig
    fetch: FetchConfig
    ocr: OcrConfig
    extraction: ExtractionConfig
    concepts: list[ConceptConfig]
    review: ReviewConfig
    policy: PolicyConfig
    queues: dict[str, QueueConfig]
    jobs: JobsConfig
    drain: DrainConfig
    staleness: StalenessConfig
    health: HealthConfig
    llm: LlmConfig

    def queue(self, name: str) -> QueueConfig:
        try:
            return self.queues[name]
        except KeyError as exc:
            raise ConfigError(f"unknown queue: {name}") from exc

    def concept(self, concept_id: str) -> ConceptConfig | None:
        for concept in self.concepts:
            if concept.id == concept_id:
                return concept
        return None

    def canonical_concept_id(self, concept_id: str) -> str:
        for concept in self.concepts:
            if concept.id == concept_id or concept_id in concept.aliases:
                return concept.id
        return concept_id


def _queue(
    concurrency: int,
    limit_max: int,
    limit_duration_seconds: int,
    attempts: int = 3,
    backoff_seconds: float = 30.0,
    retain_completed: int = 1000,
    retain_failed: int = 5000,
) -> dict[str, Any]:
    return {
        "concurrency": concurrency,
        "limit_max": limit_max,
        "limit_duration_seconds": limit_duration_seconds,
        "attempts": attempts,
        "backoff_seconds": backoff_seconds,
        "retain_completed": retain_completed,
        "retain_failed": retain_failed,
    }


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "regtruth",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/state.sqlite3",
        "sources_file": "/config/sources.yml",
    },
    "http": {
        "timeout_seconds": 30,
        "user_agent": "regtruth/0.1 (+regulatory-monitor)",
        "max_bytes": 25_000_000,
    },
    "canonical": {
        "tracking_params": ["_hsenc", "_hsmi", "mkt_tok"],
    },
    "rate_limit": {
        "min_delay_ms": 2000,
        "max_delay_ms": 5000,
        "max_concurrent_per_domain": 1,
        "circuit_error_threshold": 5,
        "circuit_reset_seconds": 3600,
        "retryable_statuses": [408, 429, 500, 502, 503, 504],
    },
    "discovery": {
        "cadence_minutes": {"CRITICAL": 60, "HIGH": 360, "MEDIUM": 1440, "LOW": 4320},
        "tier_priority": {"CRITICAL": 10, "HIGH": 20, "MEDIUM": 50, "LOW": 100},
        "jitter_ratio": 0.1,
        "max_sitemap_depth": 3,
    },
    "backfill": {
        "default_max_urls": 500,
        "default_max_per_source": 200,
        "default_delay_ms": 5000,
        "batch_size": 25,
        "max_pages": 50,
    },
    "fetch": {
        "max_item_retries": 3,
        "pdf_min_chars_per_page": 100,
        "pdf_min_printable_ratio": 0.8,
        "pdf_min_total_chars": 50,
    },
    "ocr": {
        "enabled": True,
        "command": ["tesseract", "{input}", "stdout", "-l", "eng"],
        "timeout_seconds": 300,
    },
    "extraction": {
        "min_confidence": 0.6,
        "extractors": ["pattern"],
        "max_text_chars": 200_000,
    },
    "concepts": [
        {
            "id": "vat-standard-rate",
            "value_type": "PERCENTAGE",
            "keywords": ["standard vat rate", "standard rate of vat", "value added tax at the rate"],
            "aliases": ["vat-rate"],
        },
        {
            "id": "vat-reduced-rate",
            "value_type": "PERCENTAGE",
            "keywords": ["reduced vat rate", "reduced rate of vat"],
            "aliases": [],
        },
        {
            "id": "vat-registration-threshold",
            "value_type": "CURRENCY",
            "keywords": ["registration threshold", "vat threshold"],
            "aliases": ["vat-threshold"],
        },
        {
            "id": "late-payment-interest-rate",
            "value_type": "PERCENTAGE",
            "keywords": ["late payment interest", "default interest rate"],
            "aliases": [],
        },
        {
            "id": "annual-return-deadline",
            "value_type": "DATE",
            "keywords": ["annual return must be filed", "annual tax return deadline"],
            "aliases": [],
        },
    ],
    "review": {
        "auto_approve_threshold": 0.9,
        "require_grounding": True,
    },
    "policy": {
        "tiebreak": ["authority", "confidence", "recency"],
        "authority_ranks": {"LAW": 1, "GUIDANCE": 2, "PROCEDURE": 3, "PRACTICE": 4},
        "confidence_epsilon": 0.0,
    },
    "queues": {
        "fetch": _queue(2, 10, 60, attempts=3, backoff_seconds=60.0),
        "ocr": _queue(1, 5, 60, attempts=2, backoff_seconds=120.0),
        "extract": _queue(2, 20, 60),
        "compose": _queue(1, 30, 60),
        "review": _queue(1, 30, 60, backoff_seconds=10.0),
        "arbiter": _queue(1, 10, 60, backoff_seconds=10.0),
        "release": _queue(1, 30, 60, backoff_seconds=10.0),
        "human-review": _queue(1, 100, 60, attempts=1),
        "content-sync": _queue(1, 100, 60, attempts=5),
    },
    "jobs": {
        "lock_timeout_seconds": 600,
        "poll_seconds": 5,
    },
    "drain": {
        "batch_size": 50,
        "min_backoff_seconds": 1.0,
        "max_backoff_seconds": 60.0,
        "backoff_multiplier": 2.0,
    },
    "staleness": {
        "thresholds_days": {"LAW": 30, "GUIDANCE": 21, "PROCEDURE": 14, "PRACTICE": 7},
        "unavailable_after_failures": 3,
    },
    "health": {
        "max_dead_letters": 25,
        "max_stale_ratio": 0.3,
    },
    "llm": {
        "enabled": False,
        "base_url": "https://api.openai.com/v1",
        "model": "",
        "api_key_env": "RT_LLM_API_KEY",
        "timeout_seconds": 60,
        "temperature": 0.0,
    },
}


def is_backfill_enabled() -> bool:
    return os.environ.get("RT_BACKFILL_ENABLED", "").strip().lower() == "true"


def load_config(path: str | None = None) -> Config:
    """Load defaults, overlay the YAML file at ``path`` (or ``RT_CONFIG``) and validate."""
    path = path or os.environ.get("RT_CONFIG")
    overrides: dict[str, Any] = {}
    if path:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                loaded = yaml.safe_load(handle) or {}
        except FileNotFoundError as exc:
            raise ConfigError(f"config file not found: {path}") from exc
        except yaml.YAMLError as exc:
            raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigError("config file must contain a mapping")
        overrides = loaded
    data_dir = os.environ.get("RT_DATA_DIR")
    if data_dir:
        paths = dict(overrides.get("paths") or {})
        paths.setdefault("data_dir", data_dir)
        paths.setdefault("state_db", os.path.join(data_dir, "state.sqlite3"))
        overrides = {**overrides, "paths": paths}
    sources_file = os.environ.get("RT_SOURCES")
    if sources_file:
        paths = dict(overrides.get("paths") or {})
        paths["sources_file"] = sources_file
        overrides = {**overrides, "paths": paths}
    return build_config(overrides)


def build_config(overrides: dict[str, Any] | None = None) -> Config:
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if overrides:
        cfg = _deep_merge(cfg, overrides)
    errors = validate_config(cfg)
    if errors:
        raise ConfigError("Invalid config: " + "; ".join(errors))
    return _build_config(cfg)


def validate_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config", errors)
    if not errors:
        _validate_semantics(cfg, errors)
    return errors


def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        if default:
            sample = default[0]
            for item in value:
                if isinstance(sample, dict):
                    _validate_value(item, sample, f"{path}[]", errors)
                    continue
                if not isinstance(item, type(sample)) or isinstance(item, bool) != isinstance(sample, bool):
                    errors.append(f"{path} must be a list of {type(sample).__name__}")
                    break
        else:
            for item in value:
                if not isinstance(item, str):
                    errors.append(f"{path} must be a list of strings")
                    break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _validate_semantics(cfg: dict[str, Any], errors: list[str]) -> None:
    rate = cfg["rate_limit"]
    if rate["min_delay_ms"] > rate["max_delay_ms"]:
        errors.append("config.rate_limit.min_delay_ms must not exceed max_delay_ms")
    if rate["max_concurrent_per_domain"] < 1:
        errors.append("config.rate_limit.max_concurrent_per_domain must be >= 1")
    for key in ("min_confidence",):
        value = cfg["extraction"][key]
        if not 0.0 <= value <= 1.0:
            errors.append(f"config.extraction.{key} must be within [0, 1]")
    threshold = cfg["review"]["auto_approve_threshold"]
    if not 0.0 <= threshold <= 1.0:
        errors.append("config.review.auto_approve_threshold must be within [0, 1]")
    for criterion in cfg["policy"]["tiebreak"]:
        if criterion not in ("authority", "confidence", "recency"):
            errors.append(f"config.policy.tiebreak has unknown criterion {criterion}")
    for name, queue in cfg["queues"].items():
        if queue["concurrency"] < 1:
            errors.append(f"config.queues.{name}.concurrency must be >= 1")
        if queue["attempts"] < 1:
            errors.append(f"config.queues.{name}.attempts must be >= 1")
    seen: set[str] = set()
    for concept in cfg["concepts"]:
        if concept["id"] in seen:
            errors.append(f"config.concepts has duplicate id {concept['id']}")
        seen.add(concept["id"])


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg["app"]
    paths_cfg = cfg["paths"]
    http_cfg = cfg["http"]
    rate_cfg = cfg["rate_limit"]
    discovery_cfg = cfg["discovery"]
    backfill_cfg = cfg["backfill"]
    fetch_cfg = cfg["fetch"]
    ocr_cfg = cfg["ocr"]
    extraction_cfg = cfg["extraction"]
    review_cfg = cfg["review"]
    policy_cfg = cfg["policy"]
    jobs_cfg = cfg["jobs"]
    drain_cfg = cfg["drain"]
    staleness_cfg = cfg["staleness"]
    health_cfg = cfg["health"]
    llm_cfg = cfg["llm"]

    queues = {
        name: QueueConfig(
            concurrency=int(queue_cfg["concurrency"]),
            limit_max=int(queue_cfg["limit_max"]),
            limit_duration_seconds=int(queue_cfg["limit_duration_seconds"]),
            attempts=int(queue_cfg["attempts"]),
            backoff_seconds=float(queue_cfg["backoff_seconds"]),
            retain_completed=int(queue_cfg["retain_completed"]),
            retain_failed=int(queue_cfg["retain_failed"]),
        )
        for name, queue_cfg in cfg["queues"].items()
    }

    concepts = [
        ConceptConfig(
            id=str(concept["id"]),
            value_type=str(concept["value_type"]),
            keywords=[str(keyword) for keyword in concept["keywords"]],
            aliases=[str(alias) for alias in concept["aliases"]],
        )
        for concept in cfg["concepts"]
    ]

    return Config(
        app=AppConfig(name=str(app_cfg["name"]), timezone=str(app_cfg["timezone"])),
        paths=PathsConfig(
            data_dir=str(paths_cfg["data_dir"]),
            state_db=str(paths_cfg["state_db"]),
            sources_file=str(paths_cfg["sources_file"]),
        ),
        http=HttpConfig(
            timeout_seconds=int(http_cfg["timeout_seconds"]),
            user_agent=str(http_cfg["user_agent"]),
            max_bytes=int(http_cfg["max_bytes"]),
        ),
        canonical=CanonicalConfig(tracking_params=list(cfg["canonical"]["tracking_params"])),
        rate_limit=RateLimitConfig(
            min_delay_ms=int(rate_cfg["min_delay_ms"]),
            max_delay_ms=int(rate_cfg["max_delay_ms"]),
            max_concurrent_per_domain=int(rate_cfg["max_concurrent_per_domain"]),
            circuit_error_threshold=int(rate_cfg["circuit_error_threshold"]),
            circuit_reset_seconds=int(rate_cfg["circuit_reset_seconds"]),
            retryable_statuses=[int(code) for code in rate_cfg["retryable_statuses"]],
        ),
        discovery=DiscoveryConfig(
            cadence_minutes={k: int(v) for k, v in discovery_cfg["cadence_minutes"].items()},
            tier_priority={k: int(v) for k, v in discovery_cfg["tier_priority"].items()},
            jitter_ratio=float(discovery_cfg["jitter_ratio"]),
            max_sitemap_depth=int(discovery_cfg["max_sitemap_depth"]),
        ),
        backfill=BackfillConfig(
            default_max_urls=int(backfill_cfg["default_max_urls"]),
            default_max_per_source=int(backfill_cfg["default_max_per_source"]),
            default_delay_ms=int(backfill_cfg["default_delay_ms"]),
            batch_size=int(backfill_cfg["batch_size"]),
            max_pages=int(backfill_cfg["max_pages"]),
        ),
        fetch=FetchConfig(
            max_item_retries=int(fetch_cfg["max_item_retries"]),
            pdf_min_chars_per_page=int(fetch_cfg["pdf_min_chars_per_page"]),
            pdf_min_printable_ratio=float(fetch_cfg["pdf_min_printable_ratio"]),
            pdf_min_total_chars=int(fetch_cfg["pdf_min_total_chars"]),
        ),
        ocr=OcrConfig(
            enabled=bool(ocr_cfg["enabled"]),
            command=[str(part) for part in ocr_cfg["command"]],
            timeout_seconds=int(ocr_cfg["timeout_seconds"]),
        ),
        extraction=ExtractionConfig(
            min_confidence=float(extraction_cfg["min_confidence"]),
            extractors=list(extraction_cfg["extractors"]),
            max_text_chars=int(extraction_cfg["max_text_chars"]),
        ),
        concepts=concepts,
        review=ReviewConfig(
            auto_approve_threshold=float(review_cfg["auto_approve_threshold"]),
            require_grounding=bool(review_cfg["require_grounding"]),
        ),
        policy=PolicyConfig(
            tiebreak=list(policy_cfg["tiebreak"]),
            authority_ranks={k: int(v) for k, v in policy_cfg["authority_ranks"].items()},
            confidence_epsilon=float(policy_cfg["confidence_epsilon"]),
        ),
        queues=queues,
        jobs=JobsConfig(
            lock_timeout_seconds=int(jobs_cfg["lock_timeout_seconds"]),
            poll_seconds=int(jobs_cfg["poll_seconds"]),
        ),
        drain=DrainConfig(
            batch_size=int(drain_cfg["batch_size"]),
            min_backoff_seconds=float(drain_cfg["min_backoff_seconds"]),
            max_backoff_seconds=float(drain_cfg["max_backoff_seconds"]),
            backoff_multiplier=float(drain_cfg["backoff_multiplier"]),
        ),
        staleness=StalenessConfig(
            thresholds_days={k: int(v) for k, v in staleness_cfg["thresholds_days"].items()},
            unavailable_after_failures=int(staleness_cfg["unavailable_after_failures"]),
        ),
        health=HealthConfig(
            max_dead_letters=int(health_cfg["max_dead_letters"]),
            max_stale_ratio=float(health_cfg["max_stale_ratio"]),
        ),
        llm=LlmConfig(
            enabled=bool(llm_cfg["enabled"]),
            base_url=str(llm_cfg["base_url"]),
            model=str(llm_cfg["model"]),
            api_key_env=str(llm_cfg["api_key_env"]),
            timeout_seconds=int(llm_cfg["timeout_seconds"]),
            temperature=float(llm_cfg["temperature"]),
        ),
    )


SOURCE_REQUIRED_FIELDS = ("id", "name", "domain", "authority_level")


def load_sources_file(path: str) -> list[dict[str, Any]]:
    """Read the sources YAML (``sources: [...]``) and return validated source dicts."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"sources file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    entries = data.get("sources") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise ConfigError("sources file must contain a 'sources' list")
    sources = []
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        sources.append(validate_source_dict(entry, f"sources[{index}]"))
        if entry["id"] in seen:
            raise ConfigError(f"duplicate source id: {entry['id']}")
        seen.add(entry["id"])
    return sources


def validate_source_dict(entry: Any, path: str = "source") -> dict[str, Any]:
    if not isinstance(entry, dict):
        raise ConfigError(f"{path} must be a mapping")
    missing = [key for key in SOURCE_REQUIRED_FIELDS if not entry.get(key)]
    if missing:
        raise ConfigError(f"{path} missing required fields: {', '.join(missing)}")
    source = dict(entry)
    source["authority_level"] = str(source["authority_level"]).upper()
    source["priority_tier"] = str(source.get("priority_tier") or "MEDIUM").upper()
    source["listing_kind"] = str(source.get("listing_kind") or "SITEMAP").upper()
    if source["authority_level"] not in AUTHORITY_LEVELS:
        raise ConfigError(f"{path}.authority_level must be one of {', '.join(AUTHORITY_LEVELS)}")
    if source["priority_tier"] not in PRIORITY_TIERS:
        raise ConfigError(f"{path}.priority_tier must be one of {', '.join(PRIORITY_TIERS)}")
    if source["listing_kind"] not in LISTING_KINDS:
        raise ConfigError(f"{path}.listing_kind must be one of {', '.join(LISTING_KINDS)}")
    min_delay = source.get("min_delay_ms")
    max_delay = source.get("max_delay_ms")
    if min_delay is not None and max_delay is not None and int(min_delay) > int(max_delay):
        raise ConfigError(f"{path}.min_delay_ms must not exceed max_delay_ms")
    return source
