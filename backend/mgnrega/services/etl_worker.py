# backend/mgnrega/services/etl_worker.py
import argparse
import json
import logging
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from mgnrega.core.config import get_settings
from mgnrega.core.logging import configure_logging
from mgnrega.db.database import Base, create_db_engine, create_session_factory
from mgnrega.models.district import District, FetchLog, MonthlyStat
from mgnrega.services.data_fetcher import (
    FetchError, build_district_params, fetch_with_retry, get_session, public_url,
)
from mgnrega.utils import extract_year_month, pick, safe_float, safe_int

logger = logging.getLogger("etl")

# Alternative upstream names for each metric, most specific first
FIELD_NAMES = {
    "workers_count": ("total_individuals_worked", "Total_Individuals_Worked", "workers_count"),
    "person_days": (
        "total_persondays_generated", "Persondays_of_Central_Liability_so_far",
        "persondays", "person_days",
    ),
    "total_wages": ("total_wages_paid", "Wages", "wages", "total_wages"),
    "pending_payments": ("total_pending_payments", "pending_payments"),
    "jobs_created": ("total_jobs_created", "jobs_created"),
}

UPDATABLE = ("workers_count", "person_days", "total_wages", "pending_payments", "jobs_created")


@dataclass
class EtlResult:
    success: int = 0
    failed: int = 0
    skipped: int = 0
    total_time: float = 0.0

    def to_dict(self):
        return {
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "totalTime": round(self.total_time, 3),
        }


def transform_record(rec):
    return {
        "year_month": extract_year_month(rec),
        "workers_count": safe_int(pick(rec, *FIELD_NAMES["workers_count"])),
        "person_days": safe_int(pick(rec, *FIELD_NAMES["person_days"])),
        "total_wages": safe_float(pick(rec, *FIELD_NAMES["total_wages"])),
        "pending_payments": safe_float(pick(rec, *FIELD_NAMES["pending_payments"])),
        "jobs_created": safe_int(pick(rec, *FIELD_NAMES["jobs_created"])),
    }


def _insert_for(session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"upsert not supported on {dialect}")


def upsert_monthly_stat(session, district_id, values, raw_json_path=None):
    insert = _insert_for(session)
    stmt = insert(MonthlyStat).values(district_id=district_id, raw_json_path=raw_json_path, **values)
    table = MonthlyStat.__table__
    set_ = {col: stmt.excluded[col] for col in UPDATABLE}
    set_["raw_json_path"] = func.coalesce(stmt.excluded.raw_json_path, table.c.raw_json_path)
    set_["updated_at"] = func.now()
    session.execute(
        stmt.on_conflict_do_update(index_elements=["district_id", "year_month"], set_=set_)
    )


def is_recently_updated(session, district_id, threshold):
    latest = session.scalar(
        select(func.max(MonthlyStat.updated_at)).where(MonthlyStat.district_id == district_id)
    )
    if latest is None:
        return False
    if latest.tzinfo is None:
        # SQLite hands back naive UTC
        latest = latest.replace(tzinfo=timezone.utc)
    return latest > threshold


def save_raw_payload(raw_dir, district, payload):
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    path = Path(raw_dir) / str(district.state_code) / str(district.district_code) / f"{stamp}.json"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(payload), encoding="utf-8")
    except OSError:
        logger.exception("Could not store raw payload for district %s", district.id)
        return None
    return str(path)


def _attempt_recorder(session):
    def record(url, status_code, size, error):
        try:
            session.add(FetchLog(source_url=url, status_code=status_code, response_size=size, error_message=error))
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception("Failed to write fetch log for %s", url)
    return record


def process_district(session, http, district, settings, sleep=time.sleep):
    """Fetch, transform and upsert one district. Returns rows written."""
    public, params = build_district_params(district, settings.API_KEY, settings.FETCH_LIMIT)
    payload = fetch_with_retry(
        http,
        settings.DATASET_URL,
        params,
        log_url=public_url(settings.DATASET_URL, public),
        secret=settings.API_KEY,
        record_attempt=_attempt_recorder(session),
        timeout=settings.FETCH_TIMEOUT,
        sleep=sleep,
    )
    records = payload.get("records") if isinstance(payload, dict) else None
    if not records:
        logger.warning("⚠️ %s (%s): no records in response", district.name_en, district.state_code)
        return 0

    raw_path = save_raw_payload(settings.RAW_DATA_DIR, district, payload) if settings.RAW_DATA_DIR else None
    try:
        for rec in records:
            upsert_monthly_stat(session, district.id, transform_record(rec), raw_path)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return len(records)


def run_etl(session_factory, http=None, settings=None, sleep=time.sleep, now=None):
    """Pull the latest statistics for every district, one at a time.

    Districts refreshed within ``ETL_FRESHNESS_HOURS`` are skipped. A
    district whose fetch or upsert fails is counted and the job moves on;
    anything failing outside the per-district loop propagates.
    """
    settings = settings or get_settings()
    if not settings.API_KEY or not settings.DATASET_URL:
        raise ValueError("API_KEY and DATASET_URL must be set to run the ETL")

    http = http or get_session()
    started = time.monotonic()
    now = now or datetime.now(timezone.utc)
    threshold = now - timedelta(hours=settings.ETL_FRESHNESS_HOURS)
    result = EtlResult()

    logger.info("🚀 Starting ETL run")
    with session_factory() as session:
        districts = session.scalars(
            select(District).order_by(District.state_code, District.name_en)
        ).all()
        logger.info("Found %d districts", len(districts))

        for district in districts:
            if is_recently_updated(session, district.id, threshold):
                result.skipped += 1
                continue

            try:
                written = process_district(session, http, district, settings, sleep=sleep)
            except FetchError as e:
                result.failed += 1
                logger.error(
                    "✗ %s (%s): giving up after %d attempt(s): %s",
                    district.name_en, district.state_code, e.attempts, e,
                    extra={"district_id": district.id},
                )
            except Exception:
                result.failed += 1
                logger.exception("Failed processing district %s", district.id)
            else:
                if written:
                    result.success += 1
                    logger.info("✓ %s (%s): %d month(s) stored", district.name_en, district.state_code, written)
                else:
                    result.failed += 1

            if settings.ETL_REQUEST_DELAY:
                sleep(settings.ETL_REQUEST_DELAY)

    result.total_time = time.monotonic() - started
    logger.info(
        "✅ ETL complete: %d succeeded, %d failed, %d skipped in %.1fs",
        result.success, result.failed, result.skipped, result.total_time,
    )
    return result


def main(argv=None):
    parser = argparse.ArgumentParser(description="Pull MGNREGA district statistics into the database.")
    parser.add_argument(
        "--interval", type=float, default=None,
        help="Repeat every N seconds instead of running once",
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings)
    engine = create_db_engine(settings.DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    session_factory = create_session_factory(engine)
    http = get_session()

    while True:
        try:
            result = run_etl(session_factory, http, settings=settings)
        except ValueError as e:
            logger.error("%s", e)
            return 1
        print(json.dumps(result.to_dict()))
        if not args.interval:
            return 0
        time.sleep(args.interval)


if __name__ == "__main__":
    sys.exit(main())
