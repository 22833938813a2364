from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import DateTime
from sqlalchemy.ext.asyncio import AsyncAttrs, AsyncEngine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..utils import utcnow


class Base(AsyncAttrs, DeclarativeBase):
    """
    Base class for all ORM models.
    Includes common fields like id, created_at, updated_at.
    """
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class UUIDMixin:
    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)


async def init_models(engine: AsyncEngine):
    """
    Create all tables that do not exist yet, straight from the models.
    Used by the test suite; deployed databases are migrated with Alembic.
    """
    # Import models so they register on Base.metadata
    from ..models import alert, escalation, incident, remediation  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
