from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import verigate.models  # noqa: F401
from verigate.database import Base
from verigate.models.user import User
from verigate.services.email_service import DeliveryStatus, NotificationTemplate
from verigate.services.security_service import SecurityService
from verigate.services.verification_service import VerificationService
from verigate.utils.codes import CodeHasher
from verigate.utils.security import get_password_hash

TEST_HASH_ROUNDS = 4


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeNotifier:
    """记录所有通知，验证码从 data["code"] 中取出"""

    def __init__(self, status: DeliveryStatus = DeliveryStatus.DELIVERED):
        self.status = status
        self.raise_error = False
        self.sent: List[Tuple[str, NotificationTemplate, Dict[str, Any]]] = []

    async def notify(self, address, template, data):
        self.sent.append((address, template, dict(data)))
        if self.raise_error:
            raise RuntimeError("smtp unavailable")
        return self.status

    def last_code(self, address: Optional[str] = None) -> str:
        for sent_to, _, data in reversed(self.sent):
            if "code" in data and (address is None or sent_to == address):
                return data["code"]
        raise AssertionError(f"no code sent to {address}")

    def templates_for(self, address: str) -> List[NotificationTemplate]:
        return [template for sent_to, template, _ in self.sent if sent_to == address]


def _storage_down():
    return OperationalError("SELECT 1", {}, Exception("database is down"))


class BrokenSession:
    """所有数据库操作都失败的会话"""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def execute(self, *args, **kwargs):
        raise _storage_down()

    async def get(self, *args, **kwargs):
        raise _storage_down()

    async def commit(self):
        raise _storage_down()

    async def rollback(self):
        return None

    async def delete(self, obj):
        raise _storage_down()

    def add(self, obj):
        return None


def broken_session_factory():
    return BrokenSession()


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def security(session_factory, notifier, clock):
    return SecurityService(session_factory, notifier=notifier, clock=clock)


@pytest.fixture
def verification(session_factory, notifier, security, clock):
    return VerificationService(
        session_factory,
        notifier,
        security=security,
        clock=clock,
        hasher=CodeHasher(TEST_HASH_ROUNDS),
        expose_codes_in_logs=True,
    )


async def create_user(
    session_factory,
    email: str = "owner@example.com",
    password: str = "old-password",
    phone: Optional[str] = None,
    created_at: datetime = datetime(2026, 1, 1, 12, 0, 0),
) -> User:
    async with session_factory() as db:
        user = User(
            email=email,
            password_hash=get_password_hash(password),
            name="Owner",
            phone=phone,
            email_verified=True,
            created_at=created_at,
            updated_at=created_at,
        )
        db.add(user)
        await db.commit()
        return user
