import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before authkernel modules configure logging/settings
_test_tmp_dir = tempfile.mkdtemp(prefix="authkernel_test_")
os.environ.setdefault("STATE_ROOT", _test_tmp_dir)
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authkernel.config import Settings  # noqa: E402
from authkernel.service.coordinator import AccountStateCoordinator  # noqa: E402
from authkernel.service.credentials import CredentialVerifier  # noqa: E402
from authkernel.service.errors import NotificationDeliveryError  # noqa: E402
from authkernel.service.runtime import reset_runtime_for_tests  # noqa: E402
from authkernel.storage.memory import MemoryAccountRepository  # noqa: E402


class FakeClock:
    """Settable clock so expiry windows can be crossed without sleeping."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Notifier that remembers what it was asked to send."""

    def __init__(self):
        self.sent = []
        self.fail_with = None

    def _record(self, kind, account):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((kind, account))

    def kinds(self):
        return [kind for kind, _ in self.sent]

    def last(self, kind):
        matches = [account for sent_kind, account in self.sent if sent_kind == kind]
        return matches[-1] if matches else None

    def notify_confirmation_instructions(self, account):
        self._record("confirmation_instructions", account)

    def notify_recovery_instructions(self, account):
        self._record("recovery_instructions", account)

    def notify_credential_changed(self, account):
        self._record("credential_changed", account)

    def notify_email_changed(self, account):
        self._record("email_changed", account)

    def notify_invitation_instructions(self, account):
        self._record("invitation_instructions", account)

    def notify_unlock_instructions(self, account):
        self._record("unlock_instructions", account)

    def fail(self, message="smtp down"):
        self.fail_with = NotificationDeliveryError(message)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        confirmations_url="http://app.test/confirm",
        reset_passwords_url="http://app.test/reset",
        invitations_url="http://app.test/invite",
        unlock_url="http://app.test/unlock",
    )


@pytest.fixture
def verifier():
    # cheap argon2 parameters keep the suite fast
    return CredentialVerifier(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def repository():
    return MemoryAccountRepository()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_coordinator(repository, notifier, clock, verifier, settings):
    def _make(**overrides):
        configured = settings.model_copy(update=overrides) if overrides else settings
        return AccountStateCoordinator(
            configured, repository, notifier, clock=clock, verifier=verifier
        )

    return _make


@pytest.fixture
def coordinator(make_coordinator):
    return make_coordinator()


@pytest.fixture
def confirmed_account(coordinator, notifier):
    """A registered, confirmed account with password ``OldPassword1!``."""
    result = coordinator.register(
        "user@example.com", "OldPassword1!", skip_confirmation=True
    )
    assert result.ok, result.errors
    notifier.sent.clear()
    return result.account
