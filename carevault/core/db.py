from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from .config import settings
from .base import Base

def _engine_options(dsn: str) -> dict:
    timeout = settings.DB_TIMEOUT_SECONDS
    if "+asyncpg" in dsn:
        # connect and per-statement limits on the driver, plus a wait limit for a pooled connection
        return {"connect_args": {"timeout": timeout, "command_timeout": timeout}, "pool_timeout": timeout}
    # aiosqlite: how long a writer waits on a locked database
    return {"connect_args": {"timeout": timeout}}

engine = create_async_engine(settings.DATABASE_DSN, pool_pre_ping=True, **_engine_options(settings.DATABASE_DSN))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

async def get_session():
    async with SessionLocal() as session:
        yield session

def import_models():
    # registers every table on Base.metadata
    from carevault.modules.directory import models as _directory  # noqa: F401
    from carevault.modules.sessions import models as _sessions  # noqa: F401
    from carevault.modules.capability import models as _capability  # noqa: F401
    from carevault.modules.notifications import models as _notifications  # noqa: F401
    from carevault.modules.audit import models as _audit  # noqa: F401

async def init_models():
    ## In dev-only "create_all" mode, build the schema; otherwise, migrations own the schema.
    if settings.DB_MANAGE == "create_all":
        import_models()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
