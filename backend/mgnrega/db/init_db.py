"""Create the schema and load reference districts.

Usage:
    python -m mgnrega.db.init_db                     # tables only
    python -m mgnrega.db.init_db --sample            # + bundled sample districts
    python -m mgnrega.db.init_db --seed districts.csv
"""

import argparse
import csv
import json
import logging
import sys
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from mgnrega.core.config import get_settings
from mgnrega.core.logging import configure_logging
from mgnrega.db.database import Base, create_db_engine, create_session_factory
from mgnrega.models.district import District

logger = logging.getLogger("mgnrega.db")

SAMPLE_DISTRICTS = Path(__file__).with_name("sample_districts.json")


def init_db(engine):
    Base.metadata.create_all(bind=engine)


def _coord(value):
    if value in (None, ""):
        return None
    return float(value)


def load_district_file(path):
    """Read district rows from a .json list or a .csv with a header row."""
    path = Path(path)
    if path.suffix.lower() == ".csv":
        with path.open(newline="", encoding="utf-8") as f:
            return list(csv.DictReader(f))
    with path.open(encoding="utf-8") as f:
        return json.load(f)


def seed_districts(session, records):
    """Insert or update districts keyed by (state_code, district_code)."""
    count = 0
    for rec in records:
        state_code = str(rec["state_code"]).strip()
        district_code = str(rec["district_code"]).strip()
        district = session.scalars(
            select(District).where(
                District.state_code == state_code, District.district_code == district_code
            )
        ).first()
        if district is None:
            district = District(state_code=state_code, district_code=district_code)
            session.add(district)
        district.name_en = rec["name_en"].strip()
        district.name_local = (rec.get("name_local") or "").strip() or None
        district.centroid_lat = _coord(rec.get("centroid_lat"))
        district.centroid_lon = _coord(rec.get("centroid_lon"))
        count += 1
    session.commit()
    return count


def main(argv=None):
    parser = argparse.ArgumentParser(description="Create tables and load district reference data.")
    parser.add_argument("--seed", type=Path, help="JSON or CSV file of districts to load")
    parser.add_argument("--sample", action="store_true", help="Load the bundled sample districts")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings)
    engine = create_db_engine(args.database_url or settings.DATABASE_URL)

    try:
        init_db(engine)
    except OperationalError as e:
        logger.error("Database connection failed: %s", e)
        return 1
    logger.info("Schema created/verified")

    sources = [p for p in (SAMPLE_DISTRICTS if args.sample else None, args.seed) if p]
    session_factory = create_session_factory(engine)
    for source in sources:
        with session_factory() as session:
            loaded = seed_districts(session, load_district_file(source))
        logger.info("Loaded %d districts from %s", loaded, source)
    return 0


if __name__ == "__main__":
    sys.exit(main())
