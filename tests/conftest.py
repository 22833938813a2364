import os

# Must be set before axmon_core.config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "testing"

import uuid
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from axmon_core.database.base import init_models
from axmon_core.models.alert import Alert
from axmon_core.models.remediation import RemediationExecution
from axmon_core.task_queue.service import BackgroundTaskQueue


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 11, 9, 14, 0, 0))


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_models(engine)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def task_queue():
    queue = BackgroundTaskQueue(shutdown_grace_seconds=1.0)
    await queue.start()
    yield queue
    await queue.stop()


@pytest.fixture
def seed_alert(session_factory, clock):
    """Insert an alert directly, bypassing the creation gates."""
    async def _seed(
        alert_type="JobFailure",
        severity="Warning",
        message="Batch job failed",
        minutes_ago=0,
        status="Active",
        metadata=None,
        correlation_id=None,
    ):
        created = clock() - timedelta(minutes=minutes_ago)
        alert = Alert(
            id=uuid.uuid4(),
            alert_key=f"ALERT_{created:%Y%m%d_%H%M%S}_{uuid.uuid4().hex[:8]}",
            type=alert_type,
            severity=severity,
            message=message,
            status=status,
            timestamp=created,
            created_at=created,
            updated_at=created,
            created_by="test",
            metadata_=metadata or {},
            correlation_id=correlation_id,
        )
        async with session_factory() as session:
            session.add(alert)
            await session.commit()
        return alert

    return _seed


@pytest.fixture
def seed_execution(session_factory, clock):
    async def _seed(rule_id, minutes_ago=0, status="Success"):
        started = clock() - timedelta(minutes=minutes_ago)
        execution = RemediationExecution(
            id=f"EXEC_{started:%Y%m%d_%H%M%S}_{uuid.uuid4().hex}",
            rule_id=rule_id,
            trigger_data={},
            status=status,
            actions_executed=[],
            start_time=started,
        )
        async with session_factory() as session:
            session.add(execution)
            await session.commit()
        return execution

    return _seed
