import pytest

from kispha.service.errors import ErrorKind
from kispha.service.invariants import IdentityInvariants
from kispha.storage.models import IdentityRecord


@pytest.fixture
def invariants(memory_store):
    return IdentityInvariants(memory_store)


@pytest.fixture
def alice(memory_store):
    return memory_store.save(IdentityRecord(handle="alice", contact="a@x.com", secret="p1"))


class TestCreationPreconditions:
    def test_clean_request_passes(self, invariants):
        assert invariants.check_creation_preconditions(None, "standard", None) is None
        assert invariants.check_creation_preconditions(0, "standard", "") is None

    @pytest.mark.parametrize(
        "subject_id,role,token",
        [
            (3, "standard", None),
            (None, "administrator", None),
            (None, None, None),
            (None, "root", None),
            (None, "standard", "preset"),
        ],
    )
    def test_violations_are_invalid_request(self, invariants, subject_id, role, token):
        assert (
            invariants.check_creation_preconditions(subject_id, role, token)
            == ErrorKind.INVALID_REQUEST
        )


class TestUniqueness:
    def test_duplicate_handle_conflicts_on_create(self, invariants, alice):
        assert invariants.check_unique_on_create("alice", "other@x.com") == ErrorKind.CONFLICT

    def test_duplicate_contact_conflicts_on_create(self, invariants, alice):
        assert invariants.check_unique_on_create("bob", "a@x.com") == ErrorKind.CONFLICT

    def test_empty_values_are_exempt(self, invariants, alice):
        assert invariants.check_unique_on_create("", "") is None

    def test_self_match_allowed_on_update(self, invariants, alice):
        assert invariants.check_unique_on_update(alice.subject_id, "alice", "a@x.com") is None

    def test_other_owner_conflicts_on_update(self, invariants, memory_store, alice):
        bob = memory_store.save(IdentityRecord(handle="bob", contact="b@x.com", secret="p2"))

        assert invariants.check_unique_on_update(bob.subject_id, "alice", "b@x.com") == ErrorKind.CONFLICT
        assert invariants.check_unique_on_update(bob.subject_id, "bob", "a@x.com") == ErrorKind.CONFLICT


class TestRoleAndDeletion:
    def test_role_change_is_forbidden(self, invariants, alice):
        assert invariants.check_role_unchanged(alice, "administrator") == ErrorKind.FORBIDDEN_MUTATION
        assert invariants.check_role_unchanged(alice, "standard") is None

    def test_admin_with_correct_secret_may_delete(self, invariants, admin):
        result = invariants.authorize_deletion(admin.subject_id, "adminpw")

        assert result.ok
        assert result.value.subject_id == admin.subject_id

    def test_unknown_actor(self, invariants):
        assert invariants.authorize_deletion(404, "x").error == ErrorKind.NOT_FOUND

    def test_standard_actor_is_forbidden(self, invariants, alice):
        assert invariants.authorize_deletion(alice.subject_id, "p1").error == ErrorKind.FORBIDDEN_MUTATION

    @pytest.mark.parametrize("secret", ["wrong", "", None])
    def test_wrong_admin_secret(self, invariants, admin, secret):
        assert invariants.authorize_deletion(admin.subject_id, secret).error == ErrorKind.BAD_CREDENTIAL
