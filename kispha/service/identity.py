from __future__ import annotations

import functools
from dataclasses import replace
from typing import Callable, List, Optional, TypeVar

from kispha.logging import get_logger
from kispha.service.errors import ErrorKind, Outcome
from kispha.service.gate import MutationGate
from kispha.service.invariants import IdentityInvariants
from kispha.service.tokens import TokenValidator
from kispha.storage.base import IdentityStore
from kispha.storage.errors import ConstraintViolation
from kispha.storage.models import IdentityRecord

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Outcome])


def _operation_boundary(operation: str) -> Callable[[F], F]:
    """Map faults escaping an operation to an outcome instead of raising."""

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Outcome:
            try:
                return func(*args, **kwargs)
            except ConstraintViolation as exc:
                logger.warning(
                    "identity_constraint_violation",
                    operation=operation,
                    message=exc.message,
                    detail=exc.detail,
                )
                return Outcome.failure(ErrorKind.CONFLICT)
            except Exception as exc:
                logger.exception(
                    "identity_operation_failed",
                    operation=operation,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return Outcome.failure(ErrorKind.INVALID_REQUEST)

        return wrapper  # type: ignore[return-value]

    return decorator


class IdentityService:
    """Identity operations; every write that needs a token goes through the gate.

    State machine per record: created (token minted) -> active, rotating the
    token on each login, update and heartbeat -> destroyed by an administrator.
    """

    def __init__(
        self,
        store: IdentityStore,
        validator: TokenValidator,
        *,
        gate: Optional[MutationGate] = None,
        invariants: Optional[IdentityInvariants] = None,
    ) -> None:
        self.store = store
        self.validator = validator
        self.gate = gate or MutationGate(validator)
        self.invariants = invariants or IdentityInvariants(store)

    @_operation_boundary("register")
    def register(
        self,
        handle: str,
        contact: str,
        secret: str,
        role: Optional[str],
        token: Optional[str] = None,
        *,
        subject_id: Optional[int] = None,
    ) -> Outcome[IdentityRecord]:
        logger.info("register_started", handle=handle, contact=contact)
        if not handle or not contact or not secret:
            logger.warning("register_missing_fields")
            return Outcome.failure(ErrorKind.INVALID_REQUEST)
        kind = self.invariants.check_creation_preconditions(subject_id, role, token)
        if kind is None:
            kind = self.invariants.check_unique_on_create(handle, contact)
        if kind is not None:
            logger.warning("register_rejected", handle=handle, kind=kind.value)
            return Outcome.failure(kind)

        created = self.store.save(
            IdentityRecord(handle=handle, contact=contact, secret=secret, role=role)
        )
        created.current_token = self.validator.issue(created.subject_id)
        try:
            saved = self.store.save(created)
        except Exception:
            # Release the handle and contact held by the tokenless insert
            self.store.delete(created.subject_id)
            raise
        logger.info("register_succeeded", subject_id=saved.subject_id)
        return Outcome.success(saved)

    @_operation_boundary("login")
    def login(self, subject_id: Optional[int], secret: Optional[str]) -> Outcome[IdentityRecord]:
        """Re-authenticate and mint a fresh token regardless of the stored one."""
        logger.info("login_started", subject_id=subject_id)
        if subject_id is None or not secret:
            logger.warning("login_missing_fields")
            return Outcome.failure(ErrorKind.INVALID_REQUEST)
        record = self.store.get_by_subject_id(subject_id)
        if record is None:
            logger.warning("login_not_found", subject_id=subject_id)
            return Outcome.failure(ErrorKind.NOT_FOUND)
        if secret != record.secret:
            logger.warning("login_bad_secret", subject_id=subject_id)
            return Outcome.failure(ErrorKind.BAD_CREDENTIAL)

        record.current_token = self.validator.issue(subject_id, record.current_token)
        saved = self.store.save(record)
        logger.info("login_succeeded", subject_id=subject_id)
        return Outcome.success(saved)

    @_operation_boundary("update_profile")
    def update_profile(
        self,
        subject_id: Optional[int],
        secret: Optional[str],
        role: Optional[str],
        handle: str,
        contact: str,
        presented_token: Optional[str],
    ) -> Outcome[IdentityRecord]:
        """Change handle and contact.

        On a uniqueness conflict the stored record is returned unchanged with
        ``CONFLICT``; the rotated token is discarded, so the presented token
        stays valid for a retry.
        """
        logger.info("update_started", subject_id=subject_id)
        if subject_id is None or not handle or not contact:
            logger.warning("update_missing_fields", subject_id=subject_id)
            return Outcome.failure(ErrorKind.INVALID_REQUEST)
        record = self.store.get_by_subject_id(subject_id)
        if record is None:
            logger.warning("update_not_found", subject_id=subject_id)
            return Outcome.failure(ErrorKind.NOT_FOUND)
        if not secret or secret != record.secret:
            logger.warning("update_bad_secret", subject_id=subject_id)
            return Outcome.failure(ErrorKind.BAD_CREDENTIAL)
        kind = self.invariants.check_role_unchanged(record, role)
        if kind is not None:
            return Outcome.failure(kind)

        authorized = self.gate.authorize(record, presented_token)
        if not authorized.ok:
            logger.warning("update_rejected", subject_id=subject_id, kind=authorized.error.value)
            return Outcome.failure(authorized.error)

        kind = self.invariants.check_unique_on_update(subject_id, handle, contact)
        if kind is not None:
            logger.warning("update_conflict", subject_id=subject_id, handle=handle)
            return Outcome.failure(kind, record)

        updated = replace(
            record, handle=handle, contact=contact, current_token=authorized.value
        )
        try:
            saved = self.store.compare_and_save(updated, presented_token)
        except ConstraintViolation as exc:
            logger.warning("update_conflict", subject_id=subject_id, detail=exc.detail)
            return Outcome.failure(ErrorKind.CONFLICT, record)
        if saved is None:
            return Outcome.failure(ErrorKind.STALE_OR_FORGED_TOKEN)
        logger.info("update_succeeded", subject_id=subject_id)
        return Outcome.success(saved)

    @_operation_boundary("heartbeat")
    def heartbeat(self, subject_id: Optional[int], presented_token: Optional[str]) -> Outcome[str]:
        """Prove freshness and return the rotated token."""
        logger.info("heartbeat_started", subject_id=subject_id)
        if subject_id is None:
            return Outcome.failure(ErrorKind.INVALID_REQUEST)
        if not presented_token:
            logger.warning("heartbeat_missing_token", subject_id=subject_id)
            return Outcome.failure(ErrorKind.MISSING_TOKEN)
        record = self.store.get_by_subject_id(subject_id)
        if record is None:
            logger.warning("heartbeat_not_found", subject_id=subject_id)
            return Outcome.failure(ErrorKind.NOT_FOUND)

        authorized = self.gate.authorize(record, presented_token)
        if not authorized.ok:
            logger.warning(
                "heartbeat_rejected", subject_id=subject_id, kind=authorized.error.value
            )
            return authorized

        record.current_token = authorized.value
        if self.store.compare_and_save(record, presented_token) is None:
            return Outcome.failure(ErrorKind.STALE_OR_FORGED_TOKEN)
        logger.info("heartbeat_succeeded", subject_id=subject_id)
        return authorized

    @_operation_boundary("delete")
    def delete_by_subject_id(
        self,
        target_id: Optional[int],
        acting_subject_id: Optional[int],
        acting_secret: Optional[str],
    ) -> Outcome[bool]:
        logger.info(
            "delete_started", target_id=target_id, acting_subject_id=acting_subject_id
        )
        if target_id is None:
            return Outcome.failure(ErrorKind.INVALID_REQUEST)
        actor = self.invariants.authorize_deletion(acting_subject_id, acting_secret)
        if not actor.ok:
            return Outcome.failure(actor.error)
        if self.store.get_by_subject_id(target_id) is None:
            logger.warning("delete_target_not_found", target_id=target_id)
            return Outcome.failure(ErrorKind.NOT_FOUND)
        if not self.store.delete(target_id):
            return Outcome.failure(ErrorKind.NOT_FOUND)
        logger.info(
            "delete_succeeded", target_id=target_id, acting_subject_id=acting_subject_id
        )
        return Outcome.success(True)

    @_operation_boundary("find_all")
    def find_all(self, limit: int = 100) -> Outcome[List[IdentityRecord]]:
        return Outcome.success(self.store.list_all(limit=limit))

    @_operation_boundary("find_by_subject_id")
    def find_by_subject_id(self, subject_id: int) -> Outcome[IdentityRecord]:
        record = self.store.get_by_subject_id(subject_id)
        if record is None:
            return Outcome.failure(ErrorKind.NOT_FOUND)
        return Outcome.success(record)

    @_operation_boundary("search_by_handle")
    def search_by_handle(self, fragment: str, limit: int = 100) -> Outcome[List[IdentityRecord]]:
        return Outcome.success(self.store.search_by_handle(fragment, limit=limit))
