from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from cbt.config import get_settings

settings = get_settings()

engine_options = {"echo": settings.database_echo}
# aiosqlite connections are bound to the loop that opened them
if settings.database_url.startswith("sqlite"):
    engine_options["poolclass"] = NullPool

engine = create_async_engine(settings.database_url, **engine_options)

SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db():
    async with SessionLocal() as session:
        yield session
