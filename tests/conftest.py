import pathlib
import sys

import pytest
from werkzeug.security import generate_password_hash

SYS_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(SYS_ROOT) not in sys.path:
    sys.path.insert(0, str(SYS_ROOT))

from attendance_checkin.modules.auth_manager import ClearAuthorizer
from attendance_checkin.modules.checkin_coordinator import CheckInCoordinator
from attendance_checkin.modules.database_manager import DatabaseManager
from attendance_checkin.modules.notification_system import StatsNotifier
from attendance_checkin.modules.session_registry import SessionRegistry
from attendance_checkin.modules.token_codec import IdentityToken, KeyRing, TokenCodec, new_nonce
from attendance_checkin.modules.token_validator import TokenValidator

CLEAR_PASSWORD = 'clear-me-please'
START_MS = 1_700_000_000_000


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now=START_MS):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, ms):
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def key_ring():
    return KeyRing({'v1': 'unit-test-secret-one'})


@pytest.fixture
def codec(key_ring):
    return TokenCodec(key_ring)


@pytest.fixture
def validator(codec, clock):
    return TokenValidator(codec, clock=clock)


@pytest.fixture
def make_envelope(codec, clock):
    """Seal a token for ``subject_id``, issued ``age_ms`` before the fake clock."""

    def _make(subject_id, age_ms=1000, purpose='attendance', first_name='Ada', last_name='Lovelace'):
        token = IdentityToken(
            subject_id=subject_id,
            first_name=first_name,
            last_name=last_name,
            email=f'{subject_id}@students.example.edu',
            issued_at_ms=clock() - age_ms,
            purpose=purpose,
            nonce=new_nonce(),
        )
        return codec.encode(token)

    return _make


@pytest.fixture
def db():
    manager = DatabaseManager(':memory:')
    yield manager
    manager.close()


@pytest.fixture
def notifier():
    return StatsNotifier(async_dispatch=False)


@pytest.fixture
def authorizer():
    return ClearAuthorizer(generate_password_hash(CLEAR_PASSWORD), max_attempts=3, lockout_minutes=15)


@pytest.fixture
def registry(db, authorizer, notifier, clock):
    return SessionRegistry(db, authorizer=authorizer, notifier=notifier, clock=clock)


@pytest.fixture
def coordinator(validator, registry, notifier, clock):
    return CheckInCoordinator(validator, registry, notifier=notifier, clock=clock)


@pytest.fixture
def roster():
    return [f'S{n:03d}' for n in range(1, 31)]
