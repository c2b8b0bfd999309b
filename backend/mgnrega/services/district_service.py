"""District listing and the per-district summary served to the dashboard.

A summary is recomputed from ``monthly_stats`` on every cache miss and
combines five parts:

* ``currentStats``: the latest month (or a pinned one);
* ``trends``: month-over-month direction per metric;
* ``stateComparison``: the district against the average of its state for
  the same month;
* ``timeSeries``: recent months, oldest first;
* ``comparisons``: display strings built from ``stateComparison``.

Trend and comparison values always come from a fixed vocabulary and fall
back to ``stable`` / ``equal`` when there is not enough data.
"""

import logging
from datetime import date
from typing import Dict, List, Optional

from sqlalchemy import func, select

from mgnrega.models.district import District, MonthlyStat
from mgnrega.services.redis_client import cache_get, cache_set

logger = logging.getLogger("mgnrega.summary")

CACHE_TTL = 86400
TREND_WINDOW = 6
TREND_THRESHOLD_PCT = 5.0
DEFAULT_SERIES_MONTHS = 12

# summary key -> monthly_stats column
METRICS = {
    "workers": "workers_count",
    "wages": "total_wages",
    "jobs": "jobs_created",
}

_COMPARISON_LABELS = {
    "workers": "Workers vs State Avg",
    "wages": "Wages vs State Avg",
    "jobs": "Jobs vs State Avg",
}
_COMPARISON_VALUES = {"above": "↑ Above", "below": "↓ Below", "equal": "→ Equal"}


class DistrictNotFound(LookupError):
    def __init__(self, district_id):
        super().__init__(f"District {district_id} not found")
        self.district_id = district_id


def classify_trend(values: List[float]) -> str:
    """Trend of a series ordered most recent first."""
    if len(values) < 2:
        return "stable"
    recent = float(values[0] or 0)
    previous = float(values[1] or 0)
    if previous == 0:
        return "up" if recent > 0 else "stable"
    change = (recent - previous) / previous * 100
    if abs(change) < TREND_THRESHOLD_PCT:
        return "stable"
    return "up" if change > 0 else "down"


def build_comparisons(current_stats: Optional[dict], state_comparison: Dict[str, str]) -> List[dict]:
    if not current_stats:
        return []
    return [
        {
            "label": _COMPARISON_LABELS[metric],
            "value": _COMPARISON_VALUES[state_comparison[metric]],
            "note": "State Average",
        }
        for metric in METRICS
    ]


def summary_cache_key(district_id: int, month: Optional[date] = None) -> str:
    return f"district:{district_id}:summary:{month.strftime('%Y-%m') if month else 'current'}"


class DistrictService:
    def __init__(self, session, cache=None, ttl: int = CACHE_TTL):
        self.session = session
        self.cache = cache
        self.ttl = ttl

    # ---------- districts ----------
    def get_districts(self) -> List[dict]:
        cache_key = "districts:all"
        if (cached := cache_get(self.cache, cache_key)) is not None:
            return cached

        rows = self.session.scalars(
            select(District).order_by(District.state_code, District.name_en)
        ).all()
        districts = [d.to_dict() for d in rows]
        cache_set(self.cache, cache_key, districts, self.ttl)
        return districts

    def _load_district(self, district_id: int) -> District:
        district = self.session.get(District, district_id)
        if district is None:
            raise DistrictNotFound(district_id)
        return district

    def get_district(self, district_id: int) -> dict:
        return self._load_district(district_id).to_dict()

    # ---------- summary ----------
    def get_district_summary(self, district_id: int, month: Optional[date] = None) -> dict:
        cache_key = summary_cache_key(district_id, month)
        if (cached := cache_get(self.cache, cache_key)) is not None:
            return cached

        district = self._load_district(district_id)
        current = self.get_current_stats(district_id, month)
        state_comparison = self.get_state_comparison(district_id, district.state_code)

        summary = {
            "district": district.to_dict(),
            "currentStats": current,
            "trends": self.calculate_trends(district_id),
            "stateComparison": state_comparison,
            "timeSeries": self.get_time_series(district_id, DEFAULT_SERIES_MONTHS),
            "comparisons": build_comparisons(current, state_comparison),
        }
        cache_set(self.cache, cache_key, summary, self.ttl)
        return summary

    def _recent_stats(self, district_id: int, limit: int) -> List[MonthlyStat]:
        return self.session.scalars(
            select(MonthlyStat)
            .where(MonthlyStat.district_id == district_id)
            .order_by(MonthlyStat.year_month.desc())
            .limit(limit)
        ).all()

    def get_current_stats(self, district_id: int, month: Optional[date] = None) -> Optional[dict]:
        query = select(MonthlyStat).where(MonthlyStat.district_id == district_id)
        if month is not None:
            query = query.where(MonthlyStat.year_month == month)
        row = self.session.scalars(query.order_by(MonthlyStat.year_month.desc()).limit(1)).first()
        return row.to_dict() if row else None

    def calculate_trends(self, district_id: int) -> Dict[str, str]:
        stats = self._recent_stats(district_id, TREND_WINDOW)
        return {
            metric: classify_trend([getattr(s, column) for s in stats])
            for metric, column in METRICS.items()
        }

    def get_state_comparison(self, district_id: int, state_code: str) -> Dict[str, str]:
        """Compare the latest month against the state average for that month.

        Only districts with a row for exactly the same ``year_month`` count
        towards the average, the district itself included. When the
        district has no data, or no other district in the state reported
        that month, every metric is ``equal``.
        """
        fallback = {metric: "equal" for metric in METRICS}
        recent = self._recent_stats(district_id, 1)
        if not recent:
            return fallback
        latest = recent[0]

        columns = [getattr(MonthlyStat, column) for column in METRICS.values()]
        row = self.session.execute(
            select(func.count(MonthlyStat.id), *[func.avg(col) for col in columns])
            .select_from(MonthlyStat)
            .join(District, District.id == MonthlyStat.district_id)
            .where(District.state_code == state_code, MonthlyStat.year_month == latest.year_month)
        ).one()
        peer_count, averages = row[0], row[1:]
        if peer_count < 2 or any(avg is None for avg in averages):
            return fallback

        comparison = {}
        for (metric, column), avg in zip(METRICS.items(), averages):
            value = float(getattr(latest, column) or 0)
            comparison[metric] = "above" if value > float(avg) else "below"
        return comparison

    def get_time_series(self, district_id: int, months: int = DEFAULT_SERIES_MONTHS) -> List[dict]:
        stats = self._recent_stats(district_id, months)
        return [
            {
                "date": s.year_month.strftime("%Y-%m"),
                "workers_count": int(s.workers_count or 0),
                "total_wages": float(s.total_wages or 0),
                "jobs_created": int(s.jobs_created or 0),
            }
            for s in reversed(stats)
        ]

    def get_district_history(self, district_id: int, months: int = DEFAULT_SERIES_MONTHS) -> List[dict]:
        self._load_district(district_id)
        return [s.to_dict() for s in reversed(self._recent_stats(district_id, months))]
