from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from app.core.config import settings

engine = create_async_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO, future=True)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

def make_session_factory(db_engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

async def init_db(db_engine: AsyncEngine = engine):
    # Register table models on the metadata before create_all
    import app.db.models  # noqa: F401

    async with db_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

def get_session_factory() -> async_sessionmaker:
    return async_session