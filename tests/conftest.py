"""
Pytest fixtures for the MGNREGA tracker tests.

Every test gets a fresh in-memory SQLite database (one shared connection via
StaticPool), an in-memory cache, and factory fixtures for districts and
monthly statistics.  ``client`` wires the same engine and cache into the
FastAPI app.
"""
import sys
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "backend"))

from fastapi.testclient import TestClient  # noqa: E402

from mgnrega.core.config import Settings  # noqa: E402
from mgnrega.db.database import Base, create_db_engine, create_session_factory  # noqa: E402
from mgnrega.main import create_app  # noqa: E402
from mgnrega.models.district import District, MonthlyStat  # noqa: E402
from mgnrega.services.redis_client import MemoryCache  # noqa: E402


# ── Store / cache ─────────────────────────────────────────────────────────────

@pytest.fixture()
def engine():
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture()
def session(session_factory):
    with session_factory() as s:
        yield s


@pytest.fixture()
def cache():
    return MemoryCache()


@pytest.fixture()
def settings():
    return Settings(
        DATABASE_URL="sqlite://",
        API_KEY="test-key",
        DATASET_URL="https://api.example.test/resource/mgnrega",
        CACHE_BACKEND="memory",
        LOG_LEVEL="WARNING",
        ETL_REQUEST_DELAY=0,
    )


# ── Row factories ─────────────────────────────────────────────────────────────

@pytest.fixture()
def make_district(session):
    """Create and commit a district; coordinates default to Pune."""
    counter = {"n": 0}

    def _make(name_en="Pune", state_code="27", district_code=None, lat=18.5204, lon=73.8567, name_local=None):
        counter["n"] += 1
        district = District(
            state_code=state_code,
            district_code=district_code or f"{state_code}{counter['n']:02d}",
            name_en=name_en,
            name_local=name_local,
            centroid_lat=lat,
            centroid_lon=lon,
        )
        session.add(district)
        session.commit()
        return district

    return _make


@pytest.fixture()
def make_stat(session):
    """Create and commit one MonthlyStat row."""

    def _make(district, year, month, workers=0, wages=0.0, jobs=0, person_days=0, updated_at=None):
        stat = MonthlyStat(
            district_id=district.id,
            year_month=date(year, month, 1),
            workers_count=workers,
            person_days=person_days,
            total_wages=wages,
            pending_payments=0,
            jobs_created=jobs,
        )
        if updated_at is not None:
            stat.updated_at = updated_at
        session.add(stat)
        session.commit()
        return stat

    return _make


@pytest.fixture()
def utc_now():
    return datetime.now(timezone.utc)


# ── API ───────────────────────────────────────────────────────────────────────

@pytest.fixture()
def client(engine, cache, settings):
    app = create_app(settings=settings, engine=engine, cache=cache)
    return TestClient(app)
