import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="kispha_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from kispha.service.errors import Outcome  # noqa: E402
from kispha.service.identity import IdentityService  # noqa: E402
from kispha.service.runtime import reset_runtime_for_tests  # noqa: E402
from kispha.service.tokens import TokenCodec, TokenKeys, TokenValidator  # noqa: E402
from kispha.storage.memory import MemoryStore  # noqa: E402
from kispha.storage.models import IdentityRecord, Role  # noqa: E402

TEST_KEY = b"0123456789abcdef"
TEST_IV = b"fedcba9876543210"


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state directory per test so the memory store starts empty
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec():
    return TokenCodec(TokenKeys(key=TEST_KEY, iv=TEST_IV))


@pytest.fixture
def validator(codec, clock):
    return TokenValidator(codec, clock=clock)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def service(memory_store, validator):
    return IdentityService(memory_store, validator)


@pytest.fixture
def admin(memory_store):
    """Administrator written directly to the store, as the bootstrap script does."""
    return memory_store.save(
        IdentityRecord(
            handle="root",
            contact="root@x.com",
            secret="adminpw",
            role=Role.ADMINISTRATOR.value,
        )
    )


def expect_ok(outcome: Outcome):
    assert outcome.ok, f"expected success, got {outcome.error}"
    return outcome.value
