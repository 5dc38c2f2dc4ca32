from __future__ import annotations

from typing import TypeVar

from fastapi import APIRouter, Path, Query

from kispha.api.schemas import (
    DeleteRequest,
    DeleteResponse,
    Envelope,
    HeartbeatRequest,
    HeartbeatResponse,
    IdentityListResponse,
    IdentityResponse,
    LoginRequest,
    RegisterRequest,
    UpdateProfileRequest,
)
from kispha.service.errors import Outcome, RejectedError
from kispha.service.runtime import get_runtime

router = APIRouter(prefix="/users")

T = TypeVar("T")


def _unwrap(outcome: Outcome[T], operation: str) -> T:
    if not outcome.ok:
        raise RejectedError(outcome.error, f"{operation} rejected")
    return outcome.value


# Sync handlers; FastAPI runs them on its thread pool.


@router.post("/register", response_model=Envelope, tags=["users"])
def register(body: RegisterRequest):
    """Create a standard identity and return it with its first token."""
    runtime = get_runtime()
    record = _unwrap(
        runtime.identity.register(
            body.handle,
            body.contact,
            body.secret,
            body.role,
            body.token,
            subject_id=body.subject_id,
        ),
        "register",
    )
    return Envelope(status="ok", data=IdentityResponse.from_record(record))


@router.post("/login", response_model=Envelope, tags=["users"])
def login(body: LoginRequest):
    runtime = get_runtime()
    record = _unwrap(runtime.identity.login(body.subject_id, body.secret), "login")
    return Envelope(status="ok", data=IdentityResponse.from_record(record))


@router.post("/update", response_model=Envelope, tags=["users"])
def update_profile(body: UpdateProfileRequest):
    """Change handle and contact; requires the current token and rotates it."""
    runtime = get_runtime()
    record = _unwrap(
        runtime.identity.update_profile(
            body.subject_id,
            body.secret,
            body.role,
            body.handle,
            body.contact,
            body.token,
        ),
        "update",
    )
    return Envelope(status="ok", data=IdentityResponse.from_record(record))


@router.post("/work", response_model=Envelope, tags=["users"])
def heartbeat(body: HeartbeatRequest):
    """Freshness check: trade the current token for its replacement."""
    runtime = get_runtime()
    token = _unwrap(runtime.identity.heartbeat(body.subject_id, body.token), "heartbeat")
    return Envelope(status="ok", data=HeartbeatResponse(token=token))


@router.post("/delete/{subject_id}", response_model=Envelope, tags=["users"])
def delete_identity(
    body: DeleteRequest,
    subject_id: int = Path(..., description="Identity to destroy"),
):
    runtime = get_runtime()
    _unwrap(
        runtime.identity.delete_by_subject_id(subject_id, body.subject_id, body.secret),
        "delete",
    )
    return Envelope(status="ok", data=DeleteResponse(deleted=True, subject_id=subject_id))


@router.get("", response_model=Envelope, tags=["users"])
def list_identities(limit: int = Query(100, ge=1, le=1000)):
    runtime = get_runtime()
    records = _unwrap(runtime.identity.find_all(limit=limit), "list")
    return Envelope(
        status="ok",
        data=IdentityListResponse(
            items=[IdentityResponse.from_record(r, include_token=False) for r in records]
        ),
    )


@router.get("/search", response_model=Envelope, tags=["users"])
def search_identities(
    handle: str = Query(..., min_length=1, max_length=255),
    limit: int = Query(100, ge=1, le=1000),
):
    runtime = get_runtime()
    records = _unwrap(runtime.identity.search_by_handle(handle, limit=limit), "search")
    return Envelope(
        status="ok",
        data=IdentityListResponse(
            items=[IdentityResponse.from_record(r, include_token=False) for r in records]
        ),
    )


@router.get("/{subject_id}", response_model=Envelope, tags=["users"])
def get_identity(subject_id: int):
    runtime = get_runtime()
    record = _unwrap(runtime.identity.find_by_subject_id(subject_id), "get")
    return Envelope(
        status="ok", data=IdentityResponse.from_record(record, include_token=False)
    )
