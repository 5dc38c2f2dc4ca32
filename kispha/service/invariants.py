from __future__ import annotations

from typing import Optional

from kispha.logging import get_logger
from kispha.service.errors import ErrorKind, Outcome
from kispha.storage.base import IdentityStore
from kispha.storage.models import IdentityRecord, Role

logger = get_logger(__name__)


class IdentityInvariants:
    """Business rules checked before an identity write commits."""

    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    def check_creation_preconditions(
        self,
        subject_id: Optional[int],
        role: Optional[str],
        token: Optional[str],
    ) -> Optional[ErrorKind]:
        if subject_id:
            logger.warning("register_preset_subject_id", subject_id=subject_id)
            return ErrorKind.INVALID_REQUEST
        if role != Role.STANDARD.value:
            logger.warning("register_invalid_role", role=role)
            return ErrorKind.INVALID_REQUEST
        if token:
            logger.warning("register_preset_token")
            return ErrorKind.INVALID_REQUEST
        return None

    def check_unique_on_create(self, handle: str, contact: str) -> Optional[ErrorKind]:
        if handle and self.store.get_by_handle(handle) is not None:
            logger.debug("handle_taken", handle=handle)
            return ErrorKind.CONFLICT
        if contact and self.store.get_by_contact(contact) is not None:
            logger.debug("contact_taken")
            return ErrorKind.CONFLICT
        return None

    def check_unique_on_update(
        self, subject_id: int, handle: str, contact: str
    ) -> Optional[ErrorKind]:
        if handle:
            owner = self.store.get_by_handle(handle)
            if owner is not None and owner.subject_id != subject_id:
                logger.debug("handle_taken", handle=handle, subject_id=subject_id)
                return ErrorKind.CONFLICT
        if contact:
            owner = self.store.get_by_contact(contact)
            if owner is not None and owner.subject_id != subject_id:
                logger.debug("contact_taken", subject_id=subject_id)
                return ErrorKind.CONFLICT
        return None

    @staticmethod
    def check_role_unchanged(stored: IdentityRecord, proposed_role: Optional[str]) -> Optional[ErrorKind]:
        if proposed_role != stored.role:
            logger.warning(
                "role_change_rejected",
                subject_id=stored.subject_id,
                stored_role=stored.role,
                proposed_role=proposed_role,
            )
            return ErrorKind.FORBIDDEN_MUTATION
        return None

    def authorize_deletion(
        self, acting_subject_id: Optional[int], acting_secret: Optional[str]
    ) -> Outcome[IdentityRecord]:
        """Resolve the acting administrator; no token is involved on this path."""
        if acting_subject_id is None:
            return Outcome.failure(ErrorKind.INVALID_REQUEST)
        actor = self.store.get_by_subject_id(acting_subject_id)
        if actor is None:
            logger.warning("delete_actor_not_found", acting_subject_id=acting_subject_id)
            return Outcome.failure(ErrorKind.NOT_FOUND)
        if not actor.is_administrator:
            logger.warning(
                "delete_actor_not_administrator",
                acting_subject_id=acting_subject_id,
                role=actor.role,
            )
            return Outcome.failure(ErrorKind.FORBIDDEN_MUTATION)
        if not acting_secret or acting_secret != actor.secret:
            logger.warning("delete_actor_bad_secret", acting_subject_id=acting_subject_id)
            return Outcome.failure(ErrorKind.BAD_CREDENTIAL)
        return Outcome.success(actor)
