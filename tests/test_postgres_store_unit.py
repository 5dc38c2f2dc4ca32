from datetime import datetime
from pathlib import Path
from types import SimpleNamespace

import pytest
from psycopg import errors

from kispha.logging import get_logger
from kispha.storage.errors import ConstraintViolation
from kispha.storage.models import IdentityRecord
from kispha.storage.postgres import PostgresStore


class _ContactViolation(errors.UniqueViolation):
    @property
    def diag(self):
        return SimpleNamespace(constraint_name="identity_record_contact_key")


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=()):
        self.pool.executed.append((" ".join(sql.split()), params))
        result = self.pool.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, *results):
        self.results = list(results)
        self.executed = []

    def connection(self):
        return FakeConnection(self)


def _store(tmp_path: Path, *results) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(*results)
    store.fs_root = tmp_path
    store.dsn = "postgresql://stub"
    store.logger = get_logger("test")
    return store


def _row(**overrides):
    row = {
        "subject_id": 1,
        "handle": "alice",
        "contact": "a@x.com",
        "secret": "p1",
        "role": "standard",
        "current_token": "t0",
        "created_at": datetime(2024, 1, 1),
        "updated_at": None,
    }
    row.update(overrides)
    return row


def test_get_by_subject_id_maps_row(tmp_path):
    store = _store(tmp_path, FakeCursor([_row()]))

    record = store.get_by_subject_id(1)

    assert record == IdentityRecord(
        subject_id=1,
        handle="alice",
        contact="a@x.com",
        secret="p1",
        role="standard",
        current_token="t0",
        created_at=datetime(2024, 1, 1),
    )
    assert store.pool.executed[0][1] == (1,)


def test_missing_row_is_none(tmp_path):
    store = _store(tmp_path, FakeCursor())

    assert store.get_by_handle("nobody") is None


def test_insert_when_subject_id_unset(tmp_path):
    store = _store(tmp_path, FakeCursor([_row(subject_id=7, current_token=None)]))

    saved = store.save(IdentityRecord(handle="alice", contact="a@x.com", secret="p1"))

    sql, params = store.pool.executed[0]
    assert sql.startswith("INSERT INTO identity_record")
    assert params == ("alice", "a@x.com", "p1", "standard", None)
    assert saved.subject_id == 7


def test_update_of_missing_row_raises(tmp_path):
    store = _store(tmp_path, FakeCursor())

    with pytest.raises(KeyError):
        store.save(IdentityRecord(subject_id=9, handle="x", contact="y", secret="z"))


def test_unique_violation_maps_to_constraint_field(tmp_path):
    store = _store(tmp_path, _ContactViolation("duplicate key"))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.save(IdentityRecord(handle="bob", contact="a@x.com", secret="p2"))

    assert excinfo.value.detail == {"field": "contact"}


def test_unknown_constraint_defaults_to_handle(tmp_path):
    store = _store(tmp_path, errors.UniqueViolation("duplicate key"))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.compare_and_save(
            IdentityRecord(subject_id=1, handle="bob", contact="a@x.com", secret="p1"), "t0"
        )

    assert excinfo.value.detail == {"field": "handle"}


def test_compare_and_save_filters_on_expected_token(tmp_path):
    store = _store(tmp_path, FakeCursor([_row(current_token="t1")]), FakeCursor())
    record = IdentityRecord(
        subject_id=1, handle="alice", contact="a@x.com", secret="p1", current_token="t1"
    )

    saved = store.compare_and_save(record, "t0")
    lost = store.compare_and_save(record, "t0")

    sql, params = store.pool.executed[0]
    assert "WHERE subject_id = %s AND current_token = %s" in sql
    assert params == ("alice", "a@x.com", "t1", 1, "t0")
    assert saved.current_token == "t1"
    assert lost is None


def test_delete_reports_rowcount(tmp_path):
    store = _store(tmp_path, FakeCursor(rowcount=1), FakeCursor(rowcount=0))

    assert store.delete(1) is True
    assert store.delete(1) is False


def test_search_uses_literal_fragment(tmp_path):
    store = _store(tmp_path, FakeCursor([_row(), _row(subject_id=3, handle="malice")]))

    results = store.search_by_handle("li%", limit=5)

    sql, params = store.pool.executed[0]
    assert "strpos(handle, %s) > 0" in sql
    assert params == ("li%", 5)
    assert [r.subject_id for r in results] == [1, 3]
