from __future__ import annotations

from typing import List, Optional, Protocol

from kispha.storage.models import IdentityRecord


class IdentityStore(Protocol):
    """Record store consumed by the identity service.

    Every call is a single synchronous round trip with no internal retry.
    """

    def get_by_subject_id(self, subject_id: int) -> Optional[IdentityRecord]: ...

    def get_by_handle(self, handle: str) -> Optional[IdentityRecord]: ...

    def get_by_contact(self, contact: str) -> Optional[IdentityRecord]: ...

    def save(self, record: IdentityRecord) -> IdentityRecord:
        """Insert when ``subject_id`` is 0 (assigning a fresh id), else update."""
        ...

    def compare_and_save(
        self, record: IdentityRecord, expected_token: str
    ) -> Optional[IdentityRecord]:
        """Update only if the stored token still equals ``expected_token``.

        Returns None when another writer rotated the token first.
        """
        ...

    def delete(self, subject_id: int) -> bool: ...

    def list_all(self, limit: int = 100) -> List[IdentityRecord]: ...

    def search_by_handle(self, fragment: str, limit: int = 100) -> List[IdentityRecord]: ...
