"""
Test configuration and fixtures.

Services run against an in-memory SQLite database (one shared connection per
test) and an in-memory stand-in for the handful of Redis commands the
messaging code issues.
"""

import os
from uuid import UUID, uuid4

import pytest

# Must be set BEFORE any imports of database.connection or shared.config
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["REDIS_URL"] = "redis://localhost:6379/15"
os.environ["JWT_SECRET"] = "test-jwt-secret-for-messaging-tests"
os.environ["RESEND_API_KEY"] = "re_test_key"

from jose import jwt  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from database import connection  # noqa: E402
from database.models import Appointment, Base, User, UserRole  # noqa: E402
from messaging.schemas import ConversationOut  # noqa: E402
from messaging.services import conversation_service  # noqa: E402
from shared.config import get_settings  # noqa: E402

REDIS_CLIENT_IMPORTERS = (
    "shared.redis_client",
    "shared.presence",
    "shared.email_rate_limiter",
    "shared.auth",
    "messaging.realtime.broadcaster",
    "api.middleware.rate_limiting",
    "api.main",
)


# ============================================================================
# Redis test double
# ============================================================================


class InMemoryPipeline:
    """Queues commands and runs them in order on execute()."""

    def __init__(self, client: "InMemoryRedis"):
        self._client = client
        self._commands: list[tuple[str, tuple, dict]] = []

    def __getattr__(self, name: str):
        def queue(*args, **kwargs):
            self._commands.append((name, args, kwargs))
            return self

        return queue

    async def execute(self) -> list:
        results = []
        for name, args, kwargs in self._commands:
            results.append(await getattr(self._client, name)(*args, **kwargs))
        self._commands.clear()
        return results


class InMemoryRedis:
    """Enough of redis.asyncio.Redis for presence, rate limiting, auth and pub/sub publish."""

    def __init__(self):
        self.values: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.ttls: dict[str, int] = {}
        self.published: list[tuple[str, str]] = []

    def _exists(self, key: str) -> bool:
        return key in self.values or key in self.sets

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def set(self, key: str, value, nx: bool = False, ex: int | None = None):
        if nx and self._exists(key):
            return None
        self.values[key] = str(value)
        if ex is not None:
            self.ttls[key] = int(ex)
        else:
            self.ttls.pop(key, None)
        return True

    async def incr(self, key: str) -> int:
        value = int(self.values.get(key, 0)) + 1
        self.values[key] = str(value)
        return value

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._exists(key):
                removed += 1
            self.values.pop(key, None)
            self.sets.pop(key, None)
            self.ttls.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        return sum(1 for key in keys if self._exists(key))

    async def expire(self, key: str, seconds: int) -> bool:
        if not self._exists(key):
            return False
        self.ttls[key] = int(seconds)
        return True

    async def ttl(self, key: str) -> int:
        if not self._exists(key):
            return -2
        return self.ttls.get(key, -1)

    async def sadd(self, key: str, *members: str) -> int:
        members_set = self.sets.setdefault(key, set())
        added = len(set(members) - members_set)
        members_set.update(members)
        return added

    async def srem(self, key: str, *members: str) -> int:
        members_set = self.sets.get(key, set())
        removed = len(members_set & set(members))
        members_set.difference_update(members)
        if not members_set:
            # Redis drops empty sets
            self.sets.pop(key, None)
            self.ttls.pop(key, None)
        return removed

    async def scard(self, key: str) -> int:
        return len(self.sets.get(key, ()))

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 0

    def pipeline(self, transaction: bool = True) -> InMemoryPipeline:
        return InMemoryPipeline(self)


class BrokenRedis:
    """Every command fails, like an unreachable Redis."""

    def __getattr__(self, name: str):
        async def fail(*args, **kwargs):
            raise ConnectionError("Redis unavailable")

        if name == "pipeline":
            return lambda transaction=True: BrokenPipeline()
        return fail


class BrokenPipeline:
    def __getattr__(self, name: str):
        return lambda *args, **kwargs: self

    async def execute(self):
        raise ConnectionError("Redis unavailable")


@pytest.fixture
def fake_redis(monkeypatch) -> InMemoryRedis:
    """Route every get_redis_client() call to one in-memory instance."""
    client = InMemoryRedis()
    for module in REDIS_CLIENT_IMPORTERS:
        monkeypatch.setattr(f"{module}.get_redis_client", lambda: client)
    return client


@pytest.fixture
def broken_redis(monkeypatch) -> BrokenRedis:
    client = BrokenRedis()
    for module in REDIS_CLIENT_IMPORTERS:
        monkeypatch.setattr(f"{module}.get_redis_client", lambda: client)
    return client


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
async def db_engine(monkeypatch):
    """Fresh schema per test, shared by every get_async_session() call."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    monkeypatch.setattr(
        connection,
        "AsyncSessionLocal",
        async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False),
    )
    yield engine
    await engine.dispose()


@pytest.fixture
def make_user(db_engine):
    async def _make_user(role: UserRole, **fields) -> User:
        user_id = fields.pop("id", uuid4())
        user = User(
            id=user_id,
            email=fields.pop("email", f"{user_id.hex[:12]}@example.com"),
            role=role,
            **fields,
        )
        async with connection.get_async_session() as session:
            session.add(user)
            await session.commit()
        return user

    return _make_user


@pytest.fixture
async def salon(make_user) -> User:
    return await make_user(UserRole.SALON, salon_name="Salon Lumière")


@pytest.fixture
async def client_user(make_user) -> User:
    return await make_user(UserRole.CLIENT, first_name="Camille", last_name="Martin")


@pytest.fixture
async def outsider(make_user) -> User:
    return await make_user(UserRole.CLIENT, first_name="Ursula")


@pytest.fixture
async def conversation(salon, client_user) -> ConversationOut:
    """An ACTIVE conversation between `salon` and `client_user`, without messages."""
    return await conversation_service.create_conversation(
        salon.id, client_user.id, subject="Coloration"
    )


@pytest.fixture
def make_appointment(db_engine):
    async def _make_appointment(salon_id: UUID, client_user_id: UUID | None = None) -> Appointment:
        appointment = Appointment(salon_id=salon_id, client_user_id=client_user_id)
        async with connection.get_async_session() as session:
            session.add(appointment)
            await session.commit()
        return appointment

    return _make_appointment


# ============================================================================
# Auth
# ============================================================================


def make_token(user_id: UUID, role: UserRole | None = None, **claims) -> str:
    settings = get_settings()
    payload = {"sub": str(user_id), **claims}
    if role is not None:
        payload["role"] = role.value
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user.id, user.role)}"}


@pytest.fixture
def health_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(get_settings(), "HEALTH_CHECK_DIR", str(tmp_path))
    return tmp_path


