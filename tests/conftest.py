"""
Shared fixtures: in-process repository, controllable clock and rate
provider, services, and an HTTP client bound to the ASGI app
"""
import asyncio
from decimal import Decimal
from typing import List, Union

import httpx
import pytest

from booking_api.auth import create_access_token
from booking_api.config import Settings
from booking_api.exchange_rate import ExchangeRateCache, FixedRateProvider
from booking_api.main import create_app
from booking_api.memory_store import MemoryRepository
from booking_api.models import SpaceCreate, UserRole
from booking_api.services import InstallmentLedger, ReservationService

JWT_TEST_SECRET = "test-secret-key-that-is-at-least-32-characters"
FX_RATE = Decimal("150.5")

SATURDAY = "2024-01-06"
MONDAY = "2024-01-08"
TUESDAY = "2024-01-09"


# ============================================================
# Test Doubles
# ============================================================

class FakeClock:
    """Monotonic clock the test advances by hand"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedRateProvider:
    """Returns (or raises) the scripted values in order, repeating the last one"""

    name = "scripted"

    def __init__(self, *values: Union[str, Exception], delay: float = 0.0):
        self.values: List[Union[str, Exception]] = list(values) or ["150.5"]
        self.delay = delay
        self.calls = 0

    async def fetch_rate(self) -> Decimal:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        value = self.values[min(self.calls, len(self.values)) - 1]
        if isinstance(value, Exception):
            raise value
        return Decimal(value)


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def settings():
    """Settings for tests (memory storage, fast bcrypt, fixed rate)"""
    return Settings(
        environment="test",
        storage_backend="memory",
        jwt_secret_key=JWT_TEST_SECRET,
        bcrypt_rounds=4,
        json_logs=False,
        log_level="WARNING",
        fx_provider="fixed",
        fx_fixed_rate=FX_RATE,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    return MemoryRepository(lock_timeout=5.0)


@pytest.fixture
def rate_cache(clock):
    return ExchangeRateCache(FixedRateProvider(FX_RATE), ttl_seconds=3600, clock=clock)


@pytest.fixture
def reservation_service(repository, rate_cache):
    return ReservationService(repository, rate_cache)


@pytest.fixture
def ledger(repository):
    return InstallmentLedger(repository)


@pytest.fixture
async def user(repository):
    return await repository.create_user("Ana Perez", "ana@example.com", "not-a-real-hash")


@pytest.fixture
async def other_user(repository):
    return await repository.create_user("Luis Gomez", "luis@example.com", "not-a-real-hash")


@pytest.fixture
async def admin(repository):
    return await repository.create_user("Admin", "admin@example.com", "not-a-real-hash", role=UserRole.ADMIN)


@pytest.fixture
async def space(repository):
    """Space priced at 100.00/hour"""
    return await repository.create_space(SpaceCreate(name="Sala A", price_per_hour=Decimal("100.00")))


@pytest.fixture
async def cheap_space(repository):
    """Space priced at 50.00/hour"""
    return await repository.create_space(SpaceCreate(name="Sala B", price_per_hour=Decimal("50.00")))


@pytest.fixture
def app(settings, repository, rate_cache):
    return create_app(settings=settings, repository=repository, rate_cache=rate_cache)


@pytest.fixture
async def client(app):
    """Async HTTP client for API calls (no network)"""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as api_client:
        yield api_client


@pytest.fixture
def auth_headers(settings):
    """Build an Authorization header for a stored user"""
    def _headers(user) -> dict:
        token = create_access_token(
            user.id, user.email, user.role,
            settings.jwt_secret_key, settings.jwt_algorithm, settings.access_token_expire_minutes
        )
        return {"Authorization": f"Bearer {token}"}
    return _headers
