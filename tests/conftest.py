"""
Test fixtures for the alert pipeline.

Provides:
- Async SQLite database per test (file-backed, so concurrent sessions work)
- Session / session factory fixtures
- A fixed clock
- Profile, goal, alert and webhook factories
"""

from datetime import date, datetime, timezone
from typing import AsyncGenerator
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from crm_alerts.core.config import Settings
from crm_alerts.models import (
    AlertDefinition,
    AlertInstance,
    AppRole,
    Base,
    Goal,
    NotificationChannel,
    Profile,
    UserRole,
    Webhook,
)

NOW = datetime(2026, 3, 16, 12, 0, tzinfo=timezone.utc)

CRON_SECRET = "test-cron-secret"
SERVICE_ROLE_KEY = "test-service-role-key"


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Create a test database engine with all tables."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'alerts.db'}", echo=False)

    # pysqlite's implicit transactions break SAVEPOINT; take over BEGIN.
    # IMMEDIATE serializes writers instead of failing on lock upgrade.
    @event.listens_for(eng.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a clean DB session per test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def settings() -> Settings:
    return Settings(
        CRON_SECRET=CRON_SECRET,
        SERVICE_ROLE_KEY=SERVICE_ROLE_KEY,
        _env_file=None,
    )


# =============================================================================
# FACTORIES
# =============================================================================


@pytest.fixture
def make_profile(session):
    async def factory(
        *roles: AppRole,
        office: str | None = "Andorra la Vella",
        full_name: str | None = None,
    ) -> Profile:
        profile_id = uuid4()
        profile = Profile(
            id=profile_id,
            full_name=full_name or f"User {profile_id.hex[:6]}",
            email=f"{profile_id.hex[:8]}@bank.test",
            office=office,
            created_at=NOW,
        )
        session.add(profile)
        session.add_all([UserRole(user_id=profile_id, role=role) for role in roles])
        await session.flush()
        return profile

    return factory


@pytest.fixture
def make_goal(session):
    async def factory(
        owner_id: UUID | None,
        metric_type: str = "visits",
        target_value: float = 100,
        period_start: date = date(2026, 3, 1),
        period_end: date = date(2026, 3, 31),
    ) -> Goal:
        goal = Goal(
            id=uuid4(),
            metric_type=metric_type,
            target_value=target_value,
            period_start=period_start,
            period_end=period_end,
            assigned_to=owner_id,
            description=f"{metric_type} target",
            created_at=NOW,
        )
        session.add(goal)
        await session.flush()
        return goal

    return factory


@pytest.fixture
def make_alert(session):
    async def factory(**overrides) -> AlertDefinition:
        values = dict(
            id=uuid4(),
            alert_name="Low visits",
            metric_type="visits",
            condition_type="below",
            threshold_value=10,
            period_type="monthly",
            active=True,
            target_type="global",
            escalation_enabled=True,
            escalation_hours=4,
            max_escalation_level=3,
            created_at=NOW,
        )
        values.update(overrides)
        definition = AlertDefinition(**values)
        session.add(definition)
        await session.flush()
        return definition

    return factory


@pytest.fixture
def make_instance(session):
    async def factory(definition: AlertDefinition, **overrides) -> AlertInstance:
        values = dict(
            id=uuid4(),
            alert_id=definition.id,
            alert_name=definition.alert_name,
            metric_type=definition.metric_type,
            metric_value=3,
            threshold_value=definition.threshold_value,
            condition_type=definition.condition_type,
            triggered_at=NOW,
            escalation_level=0,
            escalation_notified_to=[],
            target_type=definition.target_type,
            target_office=definition.target_office,
            target_gestor_id=definition.target_gestor_id,
        )
        values.update(overrides)
        instance = AlertInstance(**values)
        session.add(instance)
        await session.flush()
        return instance

    return factory


@pytest.fixture
def make_webhook(session):
    async def factory(
        channel: NotificationChannel,
        events: list[str],
        **overrides,
    ) -> Webhook:
        values = dict(
            id=uuid4(),
            channel_id=channel.id,
            name=f"hook-{uuid4().hex[:6]}",
            url="https://hooks.example.test/receive",
            secret_key=None,
            headers={},
            retry_config={},
            events=events,
            is_active=True,
            failure_count=0,
            created_at=NOW,
        )
        values.update(overrides)
        webhook = Webhook(**values)
        session.add(webhook)
        await session.flush()
        return webhook

    return factory


@pytest_asyncio.fixture
async def channel(session) -> NotificationChannel:
    channel = NotificationChannel(id=uuid4(), channel_name="goals", description="Goal alerts", is_active=True)
    session.add(channel)
    await session.flush()
    return channel
