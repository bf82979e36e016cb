import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Module-level app construction in arang_chat.main must not need a database.
os.environ.setdefault("GATEWAY_MODE", "memory")
os.environ.setdefault("CHANGE_FEED_MODE", "local")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from arang_chat.domain.profiles.directory import ProfileDirectory
from arang_chat.domain.support_chat.schemas import ChatRole
from arang_chat.domain.support_chat.session_resolver import SessionResolver
from arang_chat.infra import db_models_all  # noqa: F401
from arang_chat.infra.change_feed import LocalChangeFeed
from arang_chat.infra.db import Base
from arang_chat.infra.gateway import InMemoryGateway, SqlGateway
from arang_chat.infra.identity import CurrentUser, build_proxy_headers
from arang_chat.settings import Settings

PROXY_SECRET = "test-proxy-secret"
START = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


class TickingClock:
    """Deterministic clock: every read moves time forward by ``step``."""

    def __init__(self, start: datetime = START, step: timedelta = timedelta(milliseconds=500)) -> None:
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def feed():
    return LocalChangeFeed()


@pytest.fixture
def gateway(clock, feed):
    return InMemoryGateway(clock=clock, feed=feed)


@pytest.fixture
def directory(gateway):
    return ProfileDirectory(gateway)


@pytest.fixture
def resolver(gateway):
    return SessionResolver(gateway, default_topic="Pertanyaan Umum")


@pytest.fixture
def customer():
    return CurrentUser(id="cust-1", role=ChatRole.customer, display_name="Sari")


@pytest.fixture
def admin():
    return CurrentUser(id="admin-1", role=ChatRole.admin, display_name="Budi")


async def seed_profile(gateway, profile_id: str, *, name=None, email=None, role="customer", fcm_token=None):
    return await gateway.insert(
        "profiles",
        {
            "id": profile_id,
            "name": name,
            "email": email,
            "phone": None,
            "role": role,
            "fcm_token": fcm_token,
        },
    )


@pytest.fixture
def test_settings():
    return Settings(
        app_env="dev",
        gateway_mode="memory",
        change_feed_mode="local",
        auth_proxy_secret=PROXY_SECRET,
        metrics_enabled=True,
    )


def auth_headers(user_id: str) -> dict[str, str]:
    return build_proxy_headers(proxy_secret=PROXY_SECRET, user_id=user_id)


@pytest.fixture
def app_services(test_settings):
    from arang_chat.services import build_app_services

    services = build_app_services(test_settings)

    async def seed() -> None:
        await seed_profile(services.gateway, "cust-1", name="Sari")
        await seed_profile(services.gateway, "cust-2", email="rina@example.com")
        await seed_profile(services.gateway, "admin-1", name="Budi", role="admin")
        await services.gateway.insert(
            "orders",
            {"id": "order-1", "user_id": "cust-1", "total": 150000, "status": "paid", "date": START},
        )

    asyncio.run(seed())
    return services


@pytest.fixture
def client(test_settings, app_services):
    from arang_chat.main import create_app

    app = create_app(test_settings, services=app_services)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def sql_session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=NullPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield async_sessionmaker(engine, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def sql_gateway(sql_session_factory, feed):
    return SqlGateway(sql_session_factory, feed=feed)
