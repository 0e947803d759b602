from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from .config import Config
from .httpclient import FetchResponse, HttpFetcher
from .models import Source
from .ratelimit import DomainRateLimiter


class Fetcher(Protocol):
    def get(self, url: str, source: Source | None = None) -> FetchResponse: ...


@dataclass
class PipelineContext:
    """Everything a stage needs, passed explicitly at every stage boundary."""

    conn: Any
    config: Config
    logger: logging.Logger
    fetcher: Fetcher
    extractors: list[Any] = field(default_factory=list)
    ocr_engine: Any | None = None
    run_id: str | None = None
    worker_id: str = "worker-1"

    def with_run(self, run_id: str | None) -> "PipelineContext":
        return replace(self, run_id=run_id)


def build_context(
    config: Config,
    conn: Any,
    logger: logging.Logger | None = None,
    *,
    fetcher: Fetcher | None = None,
    extractors: list[Any] | None = None,
    ocr_engine: Any | None = None,
    worker_id: str = "worker-1",
) -> PipelineContext:
    from .pipelines.extract import build_extractors
    from .pipelines.ocr import build_ocr_engine

    logger = logger or logging.getLogger("regtruth")
    if fetcher is None:
        fetcher = HttpFetcher(config.http, DomainRateLimiter(config.rate_limit, logger=logger), logger)
    if extractors is None:
        extractors = build_extractors(config, logger)
    if ocr_engine is None:
        ocr_engine = build_ocr_engine(config)
    return PipelineContext(
        conn=conn,
        config=config,
        logger=logger,
        fetcher=fetcher,
        extractors=extractors,
        ocr_engine=ocr_engine,
        worker_id=worker_id,
    )
