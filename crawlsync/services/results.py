"""Tagged outcomes for job handlers: Ok(fact) or Err(kind, message)."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Union

from crawlsync.errors import ErrorKind, PipelineError


@dataclass(frozen=True)
class Ok:
    fact: Dict[str, Any] = field(default_factory=dict)

    ok = True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    message: str

    ok = False

    @property
    def retryable(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT

    @classmethod
    def from_exception(cls, exc: BaseException) -> "Err":
        if isinstance(exc, PipelineError):
            return cls(exc.kind, exc.message)
        # unclassified failures are assumed to be transient
        return cls(ErrorKind.TRANSIENT, f"{type(exc).__name__}: {exc}")


Result = Union[Ok, Err]
