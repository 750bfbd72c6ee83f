from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import orgtasks.models as models
from orgtasks.config import Settings
from orgtasks.database import Base
from orgtasks.identity import DatabaseIdentityProvider
from orgtasks.services.task_engine import TaskEngine, TaskLocks
from orgtasks.store import RecordStore

TEST_DATABASE_URL = "sqlite://"
engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

ORG = "org_acme"
OTHER_ORG = "org_globex"


class FakeClock:
    """Deterministic clock; every reading is one second after the previous one."""

    def __init__(self, start: datetime = datetime(2024, 5, 1, 9, 0, 0)):
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value

    def peek(self) -> datetime:
        return self.current


@pytest.fixture(autouse=True)
def db_session() -> Session:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def members(db_session: Session):
    rows = [
        models.OrganizationMember(organization_id=ORG, user_id="admin", display_name="Ada Admin", role="org:admin"),
        models.OrganizationMember(organization_id=ORG, user_id="alice", display_name="Alice", role="org:member"),
        models.OrganizationMember(organization_id=ORG, user_id="bob", display_name="Bob", role="member"),
        models.OrganizationMember(organization_id=ORG, user_id="carol", display_name="Carol", role="org:member"),
        models.OrganizationMember(organization_id=OTHER_ORG, user_id="admin", display_name="Ada Admin", role="admin"),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return rows


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def app_settings() -> Settings:
    return Settings(AUTO_START_TASK_ON_PROGRESS=False, AGGREGATE_RETRY_ATTEMPTS=3)


@pytest.fixture()
def task_engine(db_session: Session, members, clock: FakeClock, app_settings: Settings) -> TaskEngine:
    return TaskEngine(
        RecordStore(db_session),
        DatabaseIdentityProvider(db_session),
        settings=app_settings,
        clock=clock,
        locks=TaskLocks(),
    )
