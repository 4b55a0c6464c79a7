"""Error taxonomy shared by every pipeline stage.

Transient errors are retried by the job layer with backoff; permanent errors
fail the job immediately and are recorded verbatim.
"""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class FetchFailure(str, Enum):
    NETWORK = "network"
    BLOCKED = "blocked"
    INVALID_URL = "invalid_url"


class PipelineError(Exception):
    kind: ErrorKind = ErrorKind.PERMANENT

    def __init__(self, message: str, *, kind: ErrorKind | None = None) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT


class FetchError(PipelineError):
    def __init__(self, url: str, failure: FetchFailure, detail: str = "") -> None:
        kind = ErrorKind.TRANSIENT if failure is FetchFailure.NETWORK else ErrorKind.PERMANENT
        text = f"{failure.value}: {url}"
        if detail:
            text = f"{text} ({detail})"
        super().__init__(text, kind=kind)
        self.url = url
        self.failure = failure


class BackendError(PipelineError):
    """AI backend or search backend failure (timeouts, rate limits, 5xx)."""

    kind = ErrorKind.TRANSIENT


class MalformedResponseError(PipelineError):
    """Structured output could not be parsed into the expected schema."""

    kind = ErrorKind.PERMANENT


class NotFoundError(PipelineError):
    kind = ErrorKind.PERMANENT


class ProposalStateError(PipelineError):
    """Review action on a proposal or batch that is no longer pending."""

    kind = ErrorKind.PERMANENT
