from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from ..config import settings

_engine_options = {
    "echo": settings.DEBUG,
    "pool_pre_ping": True,  # Check connection liveness before checkout
}
if not settings.DATABASE_URL.startswith("sqlite"):
    # Production tuning; SQLite uses its own pool classes
    _engine_options.update(pool_size=20, max_overflow=10)

# Async Engine
engine = create_async_engine(settings.DATABASE_URL, **_engine_options)

# Session Factory
async_session_maker = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False
)
