"""Root test configuration: shared fixtures for all test modules.

IMPORTANT: Environment variables are set BEFORE any stockloyal imports
so that config.py can load Settings without a .env file.
"""

from __future__ import annotations

import os

# Set required env vars before importing anything from stockloyal
from cryptography.fernet import Fernet

_TEST_FERNET_KEY = Fernet.generate_key().decode()
os.environ.setdefault("ENCRYPTION_KEY", _TEST_FERNET_KEY)
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")  # In-memory SQLite
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")  # Test DB 15
os.environ.setdefault("CELERY_BROKER_URL", "redis://localhost:6379/15")
os.environ.setdefault("CELERY_RESULT_BACKEND", "redis://localhost:6379/15")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("FIRM_ACCOUNT_ID", "firm-sweep-001")

# Now safe to import stockloyal modules

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from stockloyal.common.config import get_settings
from stockloyal.common.models import Base

# ─── Clear cached settings so test env vars are used ───
get_settings.cache_clear()


# ─── Test Database ───


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory SQLite database per test.

    The engines under test commit their own transactions, so isolation comes
    from a new database rather than a rolled-back outer transaction.
    """
    test_engine = create_async_engine(
        "sqlite+aiosqlite://",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    """Provide a database session per test."""
    session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
