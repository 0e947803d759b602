from __future__ import annotations

import logging
import socket
from dataclasses import dataclass, field
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .canonical import domain_of
from .config import HttpConfig
from .errors import PermanentFetchError, TransientFetchError
from .models import Source
from .ratelimit import DomainRateLimiter
from .utils import log_event

PERMANENT_STATUSES = {400, 401, 403, 404, 410, 451}


@dataclass(frozen=True)
class FetchResponse:
    url: str
    status: int
    content_type: str | None
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)


class HttpFetcher:
    """urllib client that routes every request through the per-domain rate limiter."""

    def __init__(
        self,
        config: HttpConfig,
        rate_limiter: DomainRateLimiter,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._limiter = rate_limiter
        self._logger = logger or logging.getLogger("regtruth.http")

    @property
    def rate_limiter(self) -> DomainRateLimiter:
        return self._limiter

    def get(self, url: str, source: Source | None = None) -> FetchResponse:
        domain = domain_of(url)
        with self._limiter.acquire(
            domain,
            min_delay_ms=source.min_delay_ms if source else None,
            max_delay_ms=source.max_delay_ms if source else None,
            max_concurrent=source.max_concurrent if source else None,
        ):
            try:
                response = self._request(url)
            except (TransientFetchError, PermanentFetchError) as exc:
                self._limiter.record_failure(domain, exc.status)
                log_event(
                    self._logger,
                    logging.WARNING,
                    "http_fetch_failed",
                    url=url,
                    status=exc.status,
                    error=str(exc),
                    permanent=isinstance(exc, PermanentFetchError),
                )
                raise
        self._limiter.record_success(domain, response.status)
        return response

    def _request(self, url: str) -> FetchResponse:
        request = Request(url, headers={"User-Agent": self._config.user_agent})
        try:
            with urlopen(request, timeout=self._config.timeout_seconds) as response:
                status = response.getcode()
                body = response.read(self._config.max_bytes + 1)
                headers = {key.lower(): value for key, value in response.headers.items()}
                final_url = response.geturl()
        except HTTPError as exc:
            if exc.code in PERMANENT_STATUSES:
                raise PermanentFetchError(f"HTTP {exc.code}", url=url, status=exc.code) from exc
            if self._limiter.is_retryable_status(exc.code) or exc.code >= 500:
                raise TransientFetchError(f"HTTP {exc.code}", url=url, status=exc.code) from exc
            raise PermanentFetchError(f"HTTP {exc.code}", url=url, status=exc.code) from exc
        except URLError as exc:
            if isinstance(exc.reason, socket.gaierror):
                raise PermanentFetchError(f"DNS failure: {exc.reason}", url=url) from exc
            raise TransientFetchError(f"network error: {exc.reason}", url=url) from exc
        except (TimeoutError, ConnectionError) as exc:
            raise TransientFetchError(f"network error: {exc}", url=url) from exc
        if len(body) > self._config.max_bytes:
            raise PermanentFetchError(
                f"response exceeds {self._config.max_bytes} bytes", url=url, status=status
            )
        content_type = headers.get("content-type")
        return FetchResponse(
            url=final_url or url,
            status=int(status or 200),
            content_type=content_type,
            body=body,
            headers=headers,
        )
