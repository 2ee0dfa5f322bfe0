# shopbridge/database.py

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base
from shopbridge.core.config import get_settings

settings = get_settings()

database_url = settings.async_database_url
if not database_url:
    raise ValueError("DATABASE_URL is not set in environment variables")

engine_options = {"echo": False, "future": True}
if database_url.startswith("postgresql"):
    engine_options.update(
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,
    )

engine = create_async_engine(database_url, **engine_options)


async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()
