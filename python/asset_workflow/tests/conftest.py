"""Pytest configuration and shared fixtures for asset workflow tests."""

import os

# Keep the module-level engine off PostgreSQL while testing
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from datetime import datetime, timezone
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from fastapi.testclient import TestClient

from asset_workflow.database import Base, get_db
from asset_workflow.api import create_app
from asset_workflow.clock import DeterministicClock
from asset_workflow.config import WorkflowConfig
from asset_workflow.events import EventDispatcher
from asset_workflow.models import Asset, AssetStatus, UtilizationStatus
from asset_workflow.schemas import Actor, RequestCreate
from asset_workflow.service import RequestService


# Use in-memory SQLite for tests
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"

ORG = "ORG1"
HOSPITAL = "H1"
ICU = "D-ICU"
RADIOLOGY = "D-RAD"


class RecordingSink:
    """Audit/notification sink that keeps every event it is handed."""

    def __init__(self):
        self.events = []

    def record(self, event):
        self.events.append(event)

    def notify(self, event):
        self.events.append(event)

    def actions(self):
        return [e.action.value for e in self.events]


class FailingSink:
    """Sink that always raises."""

    def record(self, event):
        raise RuntimeError("audit store unavailable")

    def notify(self, event):
        raise RuntimeError("notification channel unavailable")


@pytest.fixture(scope="function")
def test_engine():
    engine = create_engine(
        SQLALCHEMY_TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def test_db(session_factory):
    """Create a fresh test database session for each test."""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clock():
    return DeterministicClock(datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def config():
    return WorkflowConfig()


@pytest.fixture
def audit():
    return RecordingSink()


@pytest.fixture
def notifications():
    return RecordingSink()


@pytest.fixture
def events(audit, notifications):
    return EventDispatcher(audit=audit, notifications=notifications)


@pytest.fixture
def service(test_db, config, clock, events):
    return RequestService(test_db, config, clock, events)


@pytest.fixture
def client(test_db, test_engine, session_factory, config, clock, events):
    """Create a test client with the test database."""
    app = create_app(config=config, engine=test_engine, session_factory=session_factory,
                     clock=clock, events=events)

    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ------------------------------------------------------------------
# Actors
# ------------------------------------------------------------------

def make_actor(role, actor_id=None, department_id=ICU, hospital_id=HOSPITAL, organization_id=ORG):
    return Actor(
        actor_id=actor_id or f"u-{role}",
        role=role,
        organization_id=organization_id,
        hospital_id=hospital_id,
        department_id=department_id,
    )


@pytest.fixture
def requester():
    return make_actor("staff", actor_id="u-nurse")


@pytest.fixture
def supervisor():
    return make_actor("supervisor")


@pytest.fixture
def hod():
    return make_actor("hod")


@pytest.fixture
def cfo():
    return make_actor("cfo")


@pytest.fixture
def radiology_staff():
    return make_actor("staff", actor_id="u-rad", department_id=RADIOLOGY)


# ------------------------------------------------------------------
# Assets and requests
# ------------------------------------------------------------------

def add_asset(db, code, department_id=RADIOLOGY, hospital_id=HOSPITAL, **overrides):
    asset = Asset(
        asset_code=code,
        asset_name=overrides.pop("asset_name", "Infusion Pump"),
        category=overrides.pop("category", "Biomedical"),
        hospital_id=hospital_id,
        current_department_id=department_id,
        status=overrides.pop("status", AssetStatus.ACTIVE.value),
        utilization_status=overrides.pop("utilization_status", UtilizationStatus.NOT_IN_USE.value),
        **overrides,
    )
    db.add(asset)
    db.commit()
    db.refresh(asset)
    return asset


@pytest.fixture
def idle_assets(test_db):
    """Four reservable pumps sitting in radiology."""
    return [add_asset(test_db, f"PUMP-{i:03d}") for i in range(1, 5)]


def request_payload(**overrides):
    data = {
        "request_type": "procurement",
        "scope": {
            "level": "department",
            "department_id": ICU,
            "hospital_id": HOSPITAL,
            "organization_id": ORG,
        },
        "asset_category": "Biomedical",
        "asset_name": "Infusion Pump",
        "justification": "ICU expansion",
        "priority": "high",
        "estimated_cost": 1200,
    }
    data.update(overrides)
    return RequestCreate(**data)


@pytest.fixture
def count_request(service, requester):
    """Procurement request for two pumps, waiting at level1."""
    return service.create_request(requester, request_payload(requested_count=2))


@pytest.fixture
def transfer_request(service, requester, idle_assets):
    """Transfer request naming the first two idle pumps."""
    return service.create_request(requester, request_payload(
        request_type="asset_transfer",
        requested_asset_ids=[idle_assets[0].id, idle_assets[1].id],
    ))
