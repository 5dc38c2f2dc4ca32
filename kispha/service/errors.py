from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Failure kinds produced by identity operations.

    The HTTP layer collapses all of them into one rejection response; the kind
    is kept for logs and tests.
    """

    INVALID_REQUEST = "invalid_request"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    BAD_CREDENTIAL = "bad_credential"
    FORBIDDEN_MUTATION = "forbidden_mutation"
    MALFORMED_TOKEN = "malformed_token"
    INVALID = "invalid"
    SUBJECT_MISMATCH = "subject_mismatch"
    EXPIRED = "expired"
    MISSING_TOKEN = "missing_token"
    STALE_OR_FORGED_TOKEN = "stale_or_forged_token"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Success value or failure kind returned across the operation boundary.

    A failed outcome may still carry a value: the update path returns the
    unchanged record alongside ``CONFLICT``.
    """

    value: Optional[T] = None
    error: Optional[ErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, value: Optional[T] = None) -> "Outcome[T]":
        return cls(value=value, error=kind)


class ConfigurationError(RuntimeError):
    """Raised at startup when token key material is unusable."""


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses."""

    status_code: int = 400
    error_code: str = "rejected"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class RejectedError(ServiceError):
    """Uniform rejection for any failed identity operation (400)."""

    status_code = 400
    error_code = "rejected"

    def __init__(self, kind: ErrorKind, message: str = "request rejected") -> None:
        super().__init__(message)
        self.kind = kind


__all__ = [
    "ErrorKind",
    "Outcome",
    "ConfigurationError",
    "ServiceError",
    "RejectedError",
]
