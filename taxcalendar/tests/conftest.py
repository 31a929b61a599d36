from __future__ import annotations

import asyncio
import os
import tempfile

# Point the engine at a throwaway SQLite file unless a real database is provided.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{tempfile.gettempdir()}/taxcalendar-tests-{os.getpid()}.db",
)

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from taxcalendar.core.config import get_settings
from taxcalendar.domain.models import Base, Plan, PlanFeature
from taxcalendar.persistence.db import engine
from taxcalendar.services.entitlements import FEATURE_COMPLIANCE_CALENDAR, reset_entitlements_cache


TEST_PLANS = {"free": False, "pro": True}


async def _prepare_schema(database_url: str) -> None:
    schema_engine = create_async_engine(database_url)
    try:
        async with schema_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        sessions = async_sessionmaker(schema_engine, expire_on_commit=False)
        async with sessions() as session:
            for plan_id, enabled in TEST_PLANS.items():
                existing = await session.execute(select(Plan).where(Plan.id == plan_id))
                if existing.scalar_one_or_none() is None:
                    session.add(Plan(id=plan_id, name=plan_id.title(), is_active=True))
                    await session.flush()
                    session.add(
                        PlanFeature(
                            plan_id=plan_id,
                            feature_key=FEATURE_COMPLIANCE_CALENDAR,
                            enabled=enabled,
                        )
                    )
            await session.commit()
    finally:
        await schema_engine.dispose()


@pytest.fixture(scope="session", autouse=True)
def database_schema() -> None:
    # Build tables from model metadata on a private engine and loop.
    asyncio.run(_prepare_schema(get_settings().database_url))
    yield


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_caches_between_tests() -> None:
    yield
    reset_entitlements_cache()
