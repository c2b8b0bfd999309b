import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from mgnrega.services.district_service import DistrictNotFound, DistrictService
from mgnrega.services.geolocation import GeolocationService, InvalidCoordinates
from mgnrega.utils import parse_month

logger = logging.getLogger("mgnrega.api")

MAX_RADIUS_KM = 200
MAX_HISTORY_MONTHS = 60

router = APIRouter()


# ---------- DEPENDENCIES ----------
def get_db(request: Request):
    session = request.app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


def get_district_service(request: Request, session=Depends(get_db)):
    return DistrictService(session, request.app.state.cache, ttl=request.app.state.settings.CACHE_TTL)


def get_geolocation_service(request: Request, session=Depends(get_db)):
    return GeolocationService(session, request.app.state.cache)


# ---------- HELPERS ----------
def _parse_district_id(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="District id must be numeric") from None


# ---------- HEALTH ----------
@router.get("/health")
def health(request: Request, session=Depends(get_db)):
    try:
        session.execute(text("SELECT 1"))
        database = "connected"
    except SQLAlchemyError:
        logger.exception("Health check could not reach the database")
        database = "disconnected"

    return {
        "status": "ok" if database == "connected" else "degraded",
        "database": database,
        "uptime": round(time.monotonic() - request.app.state.started_at, 1),
        "time": datetime.now(timezone.utc).isoformat(),
    }


# ---------- DISTRICTS ----------
@router.get("/districts")
def list_districts(service: DistrictService = Depends(get_district_service)):
    return service.get_districts()


@router.get("/districts/nearby")
def nearby_district(
    lat: float = Query(...),
    lon: float = Query(...),
    service: GeolocationService = Depends(get_geolocation_service),
):
    try:
        district = service.find_nearest_district(lat, lon)
    except InvalidCoordinates as e:
        raise HTTPException(status_code=400, detail=str(e))

    if district is None:
        raise HTTPException(status_code=404, detail="No district found")
    return district


@router.get("/districts/nearby-multiple")
def nearby_districts(
    lat: float = Query(...),
    lon: float = Query(...),
    radius: float = Query(50, gt=0),
    service: GeolocationService = Depends(get_geolocation_service),
):
    try:
        return service.find_nearby_districts(lat, lon, min(radius, MAX_RADIUS_KM))
    except InvalidCoordinates as e:
        raise HTTPException(status_code=400, detail=str(e))


# ---------- SUMMARY ----------
@router.get("/districts/{district_id}/summary")
def district_summary(
    district_id: str,
    month: Optional[str] = Query(None, description="YYYY-MM"),
    service: DistrictService = Depends(get_district_service),
):
    district_id = _parse_district_id(district_id)
    try:
        pinned = parse_month(month) if month else None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        return service.get_district_summary(district_id, pinned)
    except DistrictNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


# ---------- HISTORY ----------
@router.get("/districts/{district_id}/history")
def district_history(
    district_id: str,
    months: int = Query(12, ge=1),
    service: DistrictService = Depends(get_district_service),
):
    district_id = _parse_district_id(district_id)
    try:
        return service.get_district_history(district_id, min(months, MAX_HISTORY_MONTHS))
    except DistrictNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
