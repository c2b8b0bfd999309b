
# backend/mgnrega/models/district.py
from sqlalchemy import (
    BigInteger, Column, Date, DateTime, Float, ForeignKey, Index, Integer,
    Numeric, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from mgnrega.db.database import Base


def _float_or_none(v):
    return float(v) if v is not None else None


class District(Base):
    __tablename__ = "districts"
    id = Column(Integer, primary_key=True, index=True)
    state_code = Column(String(16), nullable=False, index=True)
    district_code = Column(String(32), nullable=False)
    name_en = Column(String(128), nullable=False, index=True)
    name_local = Column(String(128))
    centroid_lat = Column(Float)
    centroid_lon = Column(Float)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    stats = relationship("MonthlyStat", back_populates="district", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("state_code", "district_code", name="uq_districts_state_district"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "state_code": self.state_code,
            "district_code": self.district_code,
            "name_en": self.name_en,
            "name_local": self.name_local,
            "centroid_lat": _float_or_none(self.centroid_lat),
            "centroid_lon": _float_or_none(self.centroid_lon),
        }


class MonthlyStat(Base):
    __tablename__ = "monthly_stats"
    id = Column(Integer, primary_key=True, index=True)
    district_id = Column(Integer, ForeignKey("districts.id", ondelete="CASCADE"), nullable=False)
    year_month = Column(Date, nullable=False)
    workers_count = Column(BigInteger, nullable=False, default=0)
    person_days = Column(BigInteger, nullable=False, default=0)
    total_wages = Column(Numeric(16, 2, asdecimal=False), nullable=False, default=0)
    pending_payments = Column(Numeric(16, 2, asdecimal=False), nullable=False, default=0)
    jobs_created = Column(Integer, nullable=False, default=0)
    raw_json_path = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    district = relationship("District", back_populates="stats")

    __table_args__ = (
        UniqueConstraint("district_id", "year_month", name="uq_monthly_stats_district_month"),
        Index("ix_monthly_stats_month", "year_month"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "district_id": self.district_id,
            "year_month": self.year_month.isoformat() if self.year_month else None,
            "workers_count": int(self.workers_count or 0),
            "person_days": int(self.person_days or 0),
            "total_wages": float(self.total_wages or 0),
            "pending_payments": float(self.pending_payments or 0),
            "jobs_created": int(self.jobs_created or 0),
            "raw_json_path": self.raw_json_path,
        }


class FetchLog(Base):
    __tablename__ = "fetch_logs"
    id = Column(Integer, primary_key=True, index=True)
    source_url = Column(Text, nullable=False)
    status_code = Column(Integer)
    response_size = Column(Integer)
    error_message = Column(Text)
    fetched_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
