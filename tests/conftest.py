"""Shared fixtures: a frozen clock, both storage backends and a test app."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from billing_service import BillingService
from catalog import default_catalog
from config import Settings
from database import init_db, make_engine
from entitlements import EntitlementResolver
from errors import StorageError
from license_service import LicenseService
from main import create_app
from models import CameraLicense, GrowthPackAssignment, Subscription
from storage import InMemoryStorage, SQLStorage

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class Seeder:
    """Writes fixture records straight into a storage backend."""

    def __init__(self, storage, clock):
        self.storage = storage
        self.clock = clock

    def subscription(self, tenant_id: str, plan: str = "base", **fields) -> Subscription:
        now = self.clock()
        values = dict(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            plan=plan,
            status="active",
            cameras_licensed=2 if plan == "trial" else 10,
            created_at=now,
            updated_at=now,
        )
        if plan == "trial":
            values.update(trial_start=now, trial_end=now + timedelta(days=90))
        else:
            values.update(subscription_start=now, subscription_end=now + timedelta(days=365))
        values.update(fields)
        sub = Subscription(**values)
        self.storage.create_subscription(sub)
        return sub

    def camera(self, tenant_id: str, camera_id: str, mode: str = "base") -> CameraLicense:
        now = self.clock()
        cam = CameraLicense(
            id=str(uuid.uuid4()),
            camera_id=camera_id,
            tenant_id=tenant_id,
            license_mode=mode,
            is_valid=True,
            valid_until=now + timedelta(days=365),
            last_validated=now,
            created_at=now,
            updated_at=now,
        )
        self.storage.save_camera_license(cam)
        return cam

    def pack(self, tenant_id: str, pack_name: str, price=None) -> GrowthPackAssignment:
        assignment = GrowthPackAssignment(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            pack_name=pack_name,
            enabled=True,
            enabled_at=self.clock(),
            price_monthly=price,
        )
        self.storage.enable_growth_pack(assignment)
        return assignment


def raise_storage_error(*args, **kwargs):
    raise StorageError("backend unavailable")


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def config():
    return Settings(
        _env_file=None,
        STORAGE_BACKEND="memory",
        REQUIRE_AUTH=False,
        REQUIRE_ADMIN_AUTH=False,
        ADMIN_API_KEY="",
    )


@pytest.fixture
def catalog():
    return default_catalog()


@pytest.fixture
def memory_storage():
    return InMemoryStorage()


@pytest.fixture
def sql_storage():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    init_db(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False)()
    yield SQLStorage(session)
    session.close()
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def storage(request):
    """Runs the test once against each storage backend."""
    return request.getfixturevalue(f"{request.param}_storage")


@pytest.fixture
def seed(storage, clock):
    return Seeder(storage, clock)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def license_service(storage, catalog, config, clock):
    return LicenseService(storage, catalog, config, clock)


@pytest.fixture
def resolver(storage, catalog, clock):
    return EntitlementResolver(storage, catalog, clock)


@pytest.fixture
def billing(storage, catalog, config, clock):
    return BillingService(storage, catalog, config, clock)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


@pytest.fixture
def app(config, memory_storage):
    app = create_app(config)
    app.state.storage = memory_storage
    return app


@pytest.fixture
def client(app):
    # Not used as a context manager: the lifespan would select real storage
    return TestClient(app)
