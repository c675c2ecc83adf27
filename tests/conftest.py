"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os
import tempfile

# Mandatory secret key for settings validation
os.environ.setdefault("SECRET_KEY", "test-secret-key")
# Module-level engine must not point at a real database
os.environ.setdefault(
    "DATABASE__URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.mkdtemp(prefix='payments-tests-'), 'app.db')}",
)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from application.services.payment_service import PaymentApplicationService  # noqa: E402
from application.services.reconciliation_service import ReconciliationService  # noqa: E402
from infrastructure.external.identity import JWTIdentityProvider  # noqa: E402
from infrastructure.models import Base  # noqa: E402
from infrastructure.unit_of_work import sqlalchemy_uow_factory  # noqa: E402

from fakes import FakeGateway, InMemoryOrders, make_order  # noqa: E402


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(bind=engine, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest.fixture
def uow_factory(session_factory):
    return sqlalchemy_uow_factory(session_factory)


@pytest.fixture
def orders():
    return InMemoryOrders(make_order())


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notify_failures():
    return []


@pytest.fixture
def reconciler(uow_factory, orders, notify_failures):
    return ReconciliationService(
        uow_factory,
        orders,
        on_notify_failure=lambda *args: notify_failures.append(args),
    )


@pytest.fixture
def service(uow_factory, orders, gateway, reconciler):
    return PaymentApplicationService(
        uow_factory=uow_factory,
        orders=orders,
        identity=JWTIdentityProvider(secret_key="test-secret-key", algorithm="HS256"),
        gateway_factory=lambda method: gateway,
        reconciler=reconciler,
    )
