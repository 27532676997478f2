from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from .config import settings
from .base import Base

engine = create_async_engine(settings.POSTGRES_DSN, pool_pre_ping=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

async def init_models(bind: AsyncEngine = engine):
    ## In dev-only "create_all" mode create tables directly; otherwise, migrations own the schema.
    if settings.DB_MANAGE.lower() != "create_all":
        return
    # register the mapped classes on Base.metadata
    import app.modules.media.models  # noqa: F401
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
