"""
Fix My Area - Test Configuration and Fixtures
"""
import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

# Set testing environment before the app modules read it
os.environ['ENVIRONMENT'] = 'test'
os.environ['JWT_SECRET'] = 'test-jwt-secret-for-testing-only'
os.environ['STORE_BACKEND'] = 'memory'
os.environ.pop('DATABASE_URL', None)
os.environ.pop('EMAIL_API_URL', None)

import pytest
from faker import Faker
from httpx import ASGITransport, AsyncClient

from auth import create_token
from container import build_services
from database import MemoryDatabase
from main import app
from ratelimit import OtpRateLimiter
from schemas import Identity

fake = Faker()

LAGOS = [3.3792, 6.5244]


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class RecordingNotifier:
    """Notification sink that keeps everything it was asked to send."""

    def __init__(self):
        self.otps = {}
        self.welcomed = []
        self.status_changes = []

    async def send_otp(self, email, otp, name=None):
        self.otps[email] = otp
        return True

    async def send_welcome(self, email, name):
        self.welcomed.append(email)
        return True

    async def send_status_change(self, event):
        self.status_changes.append(event)
        return True


def issue_payload(**overrides) -> dict:
    payload = {
        'title': fake.sentence(nb_words=5)[:100],
        'description': f'{fake.sentence()} {fake.sentence()}',
        'category': 'infrastructure',
        'priority': 'medium',
        'location': {'type': 'Point', 'coordinates': list(LAGOS)},
        'address': fake.street_address(),
        'images': [],
    }
    payload.update(overrides)
    return payload


def auth_headers(user) -> dict:
    return {'Authorization': f'Bearer {create_token(user)}'}


def identity_of(user) -> Identity:
    return Identity(id=user.id, role=user.role, email=user.email, name=user.name)


@pytest.fixture
def clock() -> FakeClock:
    # a little behind wall time so tokens minted from it are never issued in the future
    start = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(minutes=5)
    return FakeClock(start)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def services(clock, notifier):
    return build_services(MemoryDatabase(), clock, notifier, OtpRateLimiter(15 * 60, 5))


@pytest.fixture
async def alice(services):
    return await services.users.create('alice@fixmyarea.org', 'Alice Okafor', verified=True)


@pytest.fixture
async def bob(services):
    return await services.users.create('bob@fixmyarea.org', 'Bob Adeyemi', verified=True)


@pytest.fixture
async def admin(services):
    return await services.users.create_admin('admin@fixmyarea.org', 'Admin User')


@pytest.fixture
async def issue(services, alice):
    return await services.issues.create(issue_payload(), alice.id)


@pytest.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    """Test client bound to the in-memory service graph"""
    app.state.services = services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac
    app.state.services = None
