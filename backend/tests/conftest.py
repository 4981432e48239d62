"""Pytest configuration and fixtures."""

import pytest
from datetime import date, datetime, timedelta
from types import SimpleNamespace
from typing import AsyncGenerator

from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

import medtrack.models  # noqa: F401  registers tables on Base.metadata
from medtrack.config import Settings
from medtrack.database import Base, build_engine, build_sessionmaker, get_db
from medtrack.services.appointment_service import AppointmentService
from medtrack.services.directory_service import DirectoryService
from medtrack.services.session_service import SessionService
from medtrack.timeutils import utcnow


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'medtrack_test.db'}",
        jwt_secret_key="test-secret",
        session_ttl_minutes=30,
        create_retry_backoff_seconds=0.0,
    )


@pytest.fixture
async def engine(settings):
    engine = build_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def directory(settings) -> DirectoryService:
    return DirectoryService(settings)


@pytest.fixture
def sessions(directory, settings) -> SessionService:
    return SessionService(directory, settings)


@pytest.fixture
def scheduler(directory, settings) -> AppointmentService:
    return AppointmentService(directory, settings)


@pytest.fixture
async def users(directory, db):
    """Three doctors and two patients, all with password 'secret123'."""

    async def doctor(email, name, specialty):
        return await directory.register_doctor(
            email=email,
            password="secret123",
            name=name,
            surname="Doctor",
            birth_date=date(1975, 6, 1),
            specialty=specialty,
            db=db,
        )

    async def patient(email, name):
        return await directory.register_patient(
            email=email,
            password="secret123",
            name=name,
            surname="Patient",
            birth_date=date(1990, 1, 15),
            db=db,
        )

    return SimpleNamespace(
        d1=await doctor("d1@example.com", "Deniz", "Cardiology"),
        d2=await doctor("d2@example.com", "Derya", "Cardiology"),
        d3=await doctor("d3@example.com", "Duru", "Dermatology"),
        p1=await patient("p1@example.com", "Pelin"),
        p2=await patient("p2@example.com", "Polat"),
    )


@pytest.fixture
def slot() -> datetime:
    """A fixed future instant, 10 March next year at 09:00."""
    return datetime(utcnow().year + 1, 3, 10, 9, 0)


@pytest.fixture
def later_slot(slot) -> datetime:
    return slot + timedelta(hours=1)


@pytest.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    from medtrack.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
