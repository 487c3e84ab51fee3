import datetime
import os
from decimal import Decimal
from unittest.mock import AsyncMock

# Settings are read at import time, so the environment must be ready first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ALGORITHM", "HS256")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("SERVICE_TOKEN", "test-service-token")
os.environ.setdefault("MIGRATE_LEGACY_ON_STARTUP", "false")

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from adbooking import models
from adbooking.config import settings
from adbooking.database import Base, get_db
from adbooking.main import app
from adbooking.models import ApplicationStatus, UserRole
from adbooking.routers import application_router

# --- Test Database Setup ---
# In-memory SQLite shared between the test thread and the TestClient thread
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

CUSTOMER_ID = 1
AGENT_ID = 2
COMMERCIAL_ID = 3
ACCOUNTANT_ID = 4
OTHER_AGENT_ID = 5
OTHER_CUSTOMER_ID = 6
SHOW_ID = 1


def create_test_token(user_id: int = CUSTOMER_ID, role: str = "customer", name: str | None = None) -> str:
    """Creates a JWT the way the auth service issues them."""
    payload = {"sub": str(user_id), "role": role}
    if name:
        payload["name"] = name
    token = jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return f"Bearer {token}"


def headers_for(user_id: int, role: str, name: str | None = None) -> dict:
    return {"Authorization": create_test_token(user_id, role, name)}


# --- Database Management Fixtures ---
@pytest.fixture(scope="function")
def db_session():
    """
    Fresh schema per test. The workflow commits and rolls back on its own,
    so an outer rollback cannot be used to isolate tests.
    """
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def seed(db_session):
    """Users for every role, one show priced 5000/min and a schedule slot for tomorrow."""
    db_session.add_all([
        models.User(id=CUSTOMER_ID, name="Carol Customer", email="customer@example.com",
                    role=UserRole.CUSTOMER, bank_details={"iban": "KZ000000000000000001"}),
        models.User(id=AGENT_ID, name="Alex Agent", email="agent@example.com", role=UserRole.AGENT),
        models.User(id=COMMERCIAL_ID, name="Cora Commercial", email="commercial@example.com",
                    role=UserRole.COMMERCIAL),
        models.User(id=ACCOUNTANT_ID, name="Ann Accountant", email="accountant@example.com",
                    role=UserRole.ACCOUNTANT),
        models.User(id=OTHER_AGENT_ID, name="Otto Agent", email="agent2@example.com", role=UserRole.AGENT),
        models.User(id=OTHER_CUSTOMER_ID, name="No Bank", email="nobank@example.com",
                    role=UserRole.CUSTOMER, bank_details={}),
        models.Show(id=SHOW_ID, name="Evening News", time_slot="19:00", base_price_per_min=Decimal("5000")),
    ])
    db_session.add(models.ShowSchedule(
        show_id=SHOW_ID,
        scheduled_date=tomorrow().date(),
        available_slots=10,
    ))
    db_session.commit()
    return db_session


def tomorrow() -> datetime.datetime:
    return (datetime.datetime.utcnow() + datetime.timedelta(days=1)).replace(
        hour=19, minute=0, second=0, microsecond=0
    )


@pytest.fixture
def make_application(db_session):
    """Inserts an application straight into the partition that matches its status."""
    from adbooking import crud

    def factory(
            status: ApplicationStatus = ApplicationStatus.PENDING,
            agent_id: int | None = None,
            commercial_id: int | None = None,
            duration_seconds: int = 90,
            scheduled_at: datetime.datetime | None = None,
            customer_id: int = CUSTOMER_ID,
            cost: Decimal = Decimal("10000"),
            model=None,
            description: str | None = None,
    ):
        model = model or crud.partition_for_status(status)
        now = datetime.datetime.utcnow()
        row = model(
            customer_id=customer_id,
            agent_id=agent_id,
            commercial_id=commercial_id,
            show_id=SHOW_ID,
            scheduled_at=scheduled_at or tomorrow(),
            duration_seconds=duration_seconds,
            status=status,
            cost=cost,
            description=description,
            created_at=now,
            updated_at=now,
        )
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return factory


# --- Mocking External Services ---
@pytest.fixture(scope="function", autouse=True)
def mock_background_tasks(mocker):
    """
    Mocks everything the lifespan starts: the expiry sweep, Kafka and the Redis limiter.
    """
    mocker.patch("adbooking.main.run_expiry_scheduler", new_callable=AsyncMock)
    mocker.patch("adbooking.main.connect_to_kafka", new_callable=AsyncMock)
    mocker.patch("adbooking.main.close_kafka_connection", new_callable=AsyncMock)
    mocker.patch("adbooking.main.FastAPILimiter.init", new_callable=AsyncMock)


@pytest.fixture(scope="function", autouse=True)
def published(mocker):
    """Captures realtime events instead of sending them to Kafka."""
    return mocker.patch("adbooking.kafka_producer.publish_event", new_callable=AsyncMock, return_value=True)


def published_events(mock) -> list[tuple]:
    """(event, data, room) for every publish_event call."""
    events = []
    for call in mock.await_args_list:
        args = list(call.args) + [None] * 3
        event = call.kwargs.get("event", args[0])
        data = call.kwargs.get("data", args[1])
        room = call.kwargs.get("room", args[2])
        events.append((event, data, room))
    return events


# --- API Test Client Fixture ---
@pytest.fixture(scope="function")
def client(db_session):
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # No Redis in tests
    app.dependency_overrides[application_router.write_limiter] = lambda: None
    app.dependency_overrides[application_router.read_limiter] = lambda: None

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
