from dataclasses import replace

import pytest

from kispha.service.errors import ErrorKind
from kispha.service.gate import MutationGate
from kispha.storage.models import IdentityRecord


@pytest.fixture
def gate(validator):
    return MutationGate(validator)


@pytest.fixture
def record(codec, clock):
    return IdentityRecord(
        subject_id=5,
        handle="alice",
        contact="a@x.com",
        secret="p1",
        current_token=codec.encode(5, clock.now_ms),
    )


class TestMutationGate:
    def test_current_token_is_rotated(self, gate, record, clock):
        clock.advance(5)
        result = gate.authorize(record, record.current_token)

        assert result.ok
        assert result.value != record.current_token

    @pytest.mark.parametrize("presented", [None, ""])
    def test_missing_token(self, gate, record, presented):
        assert gate.authorize(record, presented).error == ErrorKind.MISSING_TOKEN

    def test_token_other_than_stored_is_stale(self, gate, record, codec, clock):
        other = codec.encode(5, clock.now_ms - 10)

        assert gate.authorize(record, other).error == ErrorKind.STALE_OR_FORGED_TOKEN

    def test_record_without_token_rejects_everything(self, gate, record):
        presented = record.current_token
        bare = replace(record, current_token=None)

        assert gate.authorize(bare, presented).error == ErrorKind.STALE_OR_FORGED_TOKEN

    def test_stored_but_expired_token(self, gate, record, clock):
        clock.advance(60 * 60 * 1000 + 1)

        assert gate.authorize(record, record.current_token).error == ErrorKind.EXPIRED

    def test_stored_token_for_another_subject(self, gate, record, codec, clock):
        foreign = codec.encode(6, clock.now_ms)
        record.current_token = foreign

        assert gate.authorize(record, foreign).error == ErrorKind.SUBJECT_MISMATCH

    def test_stored_garbage_token_is_invalid(self, gate, record):
        record.current_token = "garbage"

        assert gate.authorize(record, "garbage").error == ErrorKind.INVALID

    def test_only_latest_rotation_is_accepted(self, gate, record, clock):
        first = record.current_token
        clock.advance(1)
        second = gate.authorize(record, first).value
        record.current_token = second
        clock.advance(1)
        third = gate.authorize(record, second).value
        record.current_token = third

        # Still fresh and for the right subject, but superseded
        assert gate.validator.check_fresh_and_rotate(second, 5).ok
        assert gate.authorize(record, second).error == ErrorKind.STALE_OR_FORGED_TOKEN
        assert gate.authorize(record, first).error == ErrorKind.STALE_OR_FORGED_TOKEN
