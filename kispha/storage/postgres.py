from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from kispha.logging import get_logger
from kispha.storage.errors import ConstraintViolation
from kispha.storage.models import IdentityRecord

_CONSTRAINT_FIELDS = {
    "identity_record_handle_key": "handle",
    "identity_record_contact_key": "contact",
}


class PostgresStore:
    """Postgres-backed identity store."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``identity_record`` table if it is missing.

        ``GENERATED ALWAYS AS IDENTITY`` never hands out an id twice, so a
        destroyed subject's id stays retired.
        """

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS identity_record (
                    subject_id BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY,
                    handle TEXT NOT NULL,
                    contact TEXT NOT NULL,
                    secret TEXT NOT NULL,
                    role TEXT NOT NULL,
                    current_token TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ,
                    CONSTRAINT identity_record_handle_key UNIQUE (handle),
                    CONSTRAINT identity_record_contact_key UNIQUE (contact)
                )
                """
            )

    @staticmethod
    def _row_to_record(row: dict) -> IdentityRecord:
        return IdentityRecord(
            subject_id=int(row["subject_id"]),
            handle=row["handle"],
            contact=row["contact"],
            secret=row["secret"],
            role=row.get("role", "standard"),
            current_token=row.get("current_token"),
            created_at=row.get("created_at") or datetime.utcnow(),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
        diag = getattr(exc, "diag", None)
        constraint = getattr(diag, "constraint_name", None)
        field = _CONSTRAINT_FIELDS.get(constraint or "", "handle")
        return ConstraintViolation(f"{field} already exists", {"field": field})

    def _fetch_one(self, sql: str, params: tuple) -> Optional[IdentityRecord]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._row_to_record(row) if row else None

    def get_by_subject_id(self, subject_id: int) -> Optional[IdentityRecord]:
        return self._fetch_one(
            "SELECT * FROM identity_record WHERE subject_id = %s", (subject_id,)
        )

    def get_by_handle(self, handle: str) -> Optional[IdentityRecord]:
        return self._fetch_one(
            "SELECT * FROM identity_record WHERE handle = %s", (handle,)
        )

    def get_by_contact(self, contact: str) -> Optional[IdentityRecord]:
        return self._fetch_one(
            "SELECT * FROM identity_record WHERE contact = %s", (contact,)
        )

    def save(self, record: IdentityRecord) -> IdentityRecord:
        try:
            with self._connect() as conn:
                if not record.subject_id:
                    row = conn.execute(
                        """
                        INSERT INTO identity_record (handle, contact, secret, role, current_token)
                        VALUES (%s, %s, %s, %s, %s)
                        RETURNING *
                        """,
                        (
                            record.handle,
                            record.contact,
                            record.secret,
                            record.role,
                            record.current_token,
                        ),
                    ).fetchone()
                else:
                    row = conn.execute(
                        """
                        UPDATE identity_record
                        SET handle = %s, contact = %s, secret = %s, current_token = %s,
                            updated_at = now()
                        WHERE subject_id = %s
                        RETURNING *
                        """,
                        (
                            record.handle,
                            record.contact,
                            record.secret,
                            record.current_token,
                            record.subject_id,
                        ),
                    ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        if not row:
            raise KeyError(f"identity {record.subject_id} does not exist")
        return self._row_to_record(row)

    def compare_and_save(
        self, record: IdentityRecord, expected_token: str
    ) -> Optional[IdentityRecord]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE identity_record
                    SET handle = %s, contact = %s, current_token = %s, updated_at = now()
                    WHERE subject_id = %s AND current_token = %s
                    RETURNING *
                    """,
                    (
                        record.handle,
                        record.contact,
                        record.current_token,
                        record.subject_id,
                        expected_token,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise self._constraint_violation(exc) from exc
        if not row:
            self.logger.warning("compare_and_save_lost_race", subject_id=record.subject_id)
            return None
        return self._row_to_record(row)

    def delete(self, subject_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM identity_record WHERE subject_id = %s", (subject_id,)
            )
            return result.rowcount > 0

    def list_all(self, limit: int = 100) -> List[IdentityRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM identity_record ORDER BY subject_id LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def search_by_handle(self, fragment: str, limit: int = 100) -> List[IdentityRecord]:
        # strpos avoids treating % and _ in the fragment as LIKE wildcards
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM identity_record
                WHERE strpos(handle, %s) > 0
                ORDER BY subject_id
                LIMIT %s
                """,
                (fragment, limit),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def close(self) -> None:
        self.pool.close()
