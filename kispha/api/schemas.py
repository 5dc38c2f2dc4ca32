from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from kispha.storage.models import IdentityRecord

MAX_FIELD_LENGTH = 255

_VALID_ERROR_CODES = frozenset({"rejected", "server_error"})


def _normalize_text(value: Optional[str]) -> Optional[str]:
    """Strip surrounding whitespace and apply NFKC normalization."""
    if value is None:
        return None
    return unicodedata.normalize("NFKC", value.strip())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class RegisterRequest(BaseModel):
    subject_id: Optional[int] = None
    handle: str = Field(..., min_length=1, max_length=MAX_FIELD_LENGTH)
    contact: str = Field(..., min_length=1, max_length=MAX_FIELD_LENGTH)
    secret: str = Field(..., min_length=1, max_length=MAX_FIELD_LENGTH)
    role: Optional[str] = None
    token: Optional[str] = None

    @field_validator("handle", "contact")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_text(value)


class LoginRequest(BaseModel):
    subject_id: int
    secret: str = Field(..., max_length=MAX_FIELD_LENGTH)


class UpdateProfileRequest(BaseModel):
    subject_id: int
    secret: str = Field(..., max_length=MAX_FIELD_LENGTH)
    role: Optional[str] = None
    handle: str = Field(..., min_length=1, max_length=MAX_FIELD_LENGTH)
    contact: str = Field(..., min_length=1, max_length=MAX_FIELD_LENGTH)
    token: Optional[str] = None

    @field_validator("handle", "contact")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return _normalize_text(value)


class HeartbeatRequest(BaseModel):
    subject_id: int
    token: Optional[str] = None


class DeleteRequest(BaseModel):
    """Credentials of the administrator performing the deletion."""

    subject_id: int
    secret: str = Field(..., max_length=MAX_FIELD_LENGTH)


class IdentityResponse(BaseModel):
    subject_id: int
    handle: str
    contact: str
    role: str
    token: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: IdentityRecord, *, include_token: bool = True) -> "IdentityResponse":
        return cls(
            subject_id=record.subject_id,
            handle=record.handle,
            contact=record.contact,
            role=record.role,
            token=record.current_token if include_token else None,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class IdentityListResponse(BaseModel):
    items: List[IdentityResponse]


class HeartbeatResponse(BaseModel):
    token: str


class DeleteResponse(BaseModel):
    deleted: bool
    subject_id: int
