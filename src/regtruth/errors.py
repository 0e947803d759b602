from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    pass


class FetchError(PipelineError):
    def __init__(self, message: str, *, url: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class TransientFetchError(FetchError):
    """Network failures, timeouts and 408/429/5xx responses. Retried with backoff."""


class PermanentFetchError(FetchError):
    """404/410/403, DNS failures and blocked URLs. Never retried."""


class ValidationError(PipelineError):
    def __init__(self, reason: str, payload: Any = None, *, stage: str = "unknown") -> None:
        super().__init__(reason)
        self.reason = reason
        self.payload = payload
        self.stage = stage


class BackfillDisabledError(PipelineError):
    pass


class InvalidTransitionError(PipelineError):
    pass


class GraphCycleError(PipelineError):
    pass
