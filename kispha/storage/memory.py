from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from kispha.logging import get_logger
from kispha.storage.errors import ConstraintViolation
from kispha.storage.models import IdentityRecord


class MemoryStore:
    """In-memory identity store with JSON state persisted under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/kispha") -> None:
        self.logger = get_logger(__name__)
        self.records: Dict[int, IdentityRecord] = {}
        # Ids are handed out monotonically and never reused, even after deletion
        self._subject_id_seq: int = 1
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _ensure_unique(self, record: IdentityRecord) -> None:
        for existing in self.records.values():
            if existing.subject_id == record.subject_id:
                continue
            if record.handle and existing.handle == record.handle:
                raise ConstraintViolation("handle already exists", {"field": "handle"})
            if record.contact and existing.contact == record.contact:
                raise ConstraintViolation("contact already exists", {"field": "contact"})

    def get_by_subject_id(self, subject_id: int) -> Optional[IdentityRecord]:
        with self._data_lock:
            record = self.records.get(subject_id)
            return replace(record) if record else None

    def get_by_handle(self, handle: str) -> Optional[IdentityRecord]:
        with self._data_lock:
            record = next((r for r in self.records.values() if r.handle == handle), None)
            return replace(record) if record else None

    def get_by_contact(self, contact: str) -> Optional[IdentityRecord]:
        with self._data_lock:
            record = next((r for r in self.records.values() if r.contact == contact), None)
            return replace(record) if record else None

    def save(self, record: IdentityRecord) -> IdentityRecord:
        with self._data_lock:
            stored = replace(record)
            next_seq = self._subject_id_seq
            if not stored.subject_id:
                stored.subject_id = next_seq
                self._ensure_unique(stored)
                next_seq += 1
            else:
                if stored.subject_id not in self.records:
                    raise KeyError(f"identity {stored.subject_id} does not exist")
                self._ensure_unique(stored)
                stored.updated_at = datetime.utcnow()
            records = {**self.records, stored.subject_id: stored}
            # In-memory state only changes once the state file is written
            self._persist_state(records, next_seq)
            self.records = records
            self._subject_id_seq = next_seq
            return replace(stored)

    def compare_and_save(
        self, record: IdentityRecord, expected_token: str
    ) -> Optional[IdentityRecord]:
        with self._data_lock:
            current = self.records.get(record.subject_id)
            if current is None or current.current_token != expected_token:
                self.logger.warning(
                    "compare_and_save_lost_race",
                    subject_id=record.subject_id,
                    exists=current is not None,
                )
                return None
            return self.save(record)

    def delete(self, subject_id: int) -> bool:
        with self._data_lock:
            if subject_id not in self.records:
                return False
            records = {k: v for k, v in self.records.items() if k != subject_id}
            self._persist_state(records, self._subject_id_seq)
            self.records = records
            return True

    def list_all(self, limit: int = 100) -> List[IdentityRecord]:
        with self._data_lock:
            ordered = sorted(self.records.values(), key=lambda r: r.subject_id)
            return [replace(r) for r in ordered[:limit]]

    def search_by_handle(self, fragment: str, limit: int = 100) -> List[IdentityRecord]:
        with self._data_lock:
            matches = [r for r in self.records.values() if fragment in r.handle]
            matches.sort(key=lambda r: r.subject_id)
            return [replace(r) for r in matches[:limit]]

    def _persist_state(self, records: Dict[int, IdentityRecord], next_subject_id: int) -> None:
        state = {
            "next_subject_id": next_subject_id,
            "records": [self._serialize_record(r) for r in records.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.records = {
            int(r["subject_id"]): self._deserialize_record(r)
            for r in data.get("records", [])
        }
        max_id = max(self.records, default=0)
        self._subject_id_seq = max(int(data.get("next_subject_id", 1)), max_id + 1)
        return True

    def _serialize_record(self, record: IdentityRecord) -> dict:
        return {
            "subject_id": record.subject_id,
            "handle": record.handle,
            "contact": record.contact,
            "secret": record.secret,
            "role": record.role,
            "current_token": record.current_token,
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
        }

    def _deserialize_record(self, data: dict) -> IdentityRecord:
        return IdentityRecord(
            subject_id=int(data["subject_id"]),
            handle=data["handle"],
            contact=data["contact"],
            secret=data["secret"],
            role=data.get("role", "standard"),
            current_token=data.get("current_token"),
            created_at=self._deserialize_datetime(data.get("created_at")) or datetime.utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
        )
