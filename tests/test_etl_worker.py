"""
Tests for the ingestion job: mgnrega/services/data_fetcher.py and
mgnrega/services/etl_worker.py

HTTP is replaced with a MagicMock session returning real requests.Response
objects; sleeps are recorded instead of slept.
"""
import json
from datetime import date, timedelta
from unittest.mock import MagicMock

import pytest
import requests
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from mgnrega.models.district import FetchLog, MonthlyStat
from mgnrega.services import etl_worker
from mgnrega.services.data_fetcher import FetchError, fetch_with_retry
from mgnrega.services.etl_worker import run_etl, transform_record, upsert_monthly_stat


def _response(status, payload=None, reason="OK"):
    r = requests.Response()
    r.status_code = status
    r.reason = reason
    r.url = "https://api.example.test/resource/mgnrega"
    r._content = json.dumps(payload if payload is not None else {}).encode()
    return r


def _records(*rows):
    return {"records": [dict(row) for row in rows]}


class Sleeps(list):
    def __call__(self, seconds):
        self.append(seconds)


# ── Transform ─────────────────────────────────────────────────────────────────

class TestTransformRecord:
    def test_primary_field_names(self):
        values = transform_record({
            "year": "2024", "month": "2",
            "total_individuals_worked": "1,200",
            "total_persondays_generated": "35,000",
            "total_wages_paid": "₹ 9,87,654.25",
            "total_pending_payments": "1200.50",
            "total_jobs_created": "88",
        })
        assert values == {
            "year_month": date(2024, 2, 1),
            "workers_count": 1200,
            "person_days": 35000,
            "total_wages": 987654.25,
            "pending_payments": 1200.5,
            "jobs_created": 88,
        }

    def test_fallback_field_names(self):
        values = transform_record({
            "fin_year": "2023-2024", "month": "Jan",
            "Total_Individuals_Worked": 450,
            "Persondays_of_Central_Liability_so_far": "9000",
            "Wages": "12345.6",
            "jobs_created": 3,
        })
        assert values["year_month"] == date(2024, 1, 1)
        assert values["workers_count"] == 450
        assert values["person_days"] == 9000
        assert values["total_wages"] == 12345.6
        assert values["pending_payments"] == 0.0
        assert values["jobs_created"] == 3

    def test_malformed_numbers_become_zero(self):
        values = transform_record({"year": "2024", "month": "5", "workers_count": "N/A", "wages": "--"})
        assert values["workers_count"] == 0
        assert values["total_wages"] == 0.0

    def test_nan_and_infinity_literals_become_zero(self):
        rec = json.loads(
            '{"year": 2024, "month": 2, "total_individuals_worked": NaN,'
            ' "total_wages_paid": Infinity, "total_jobs_created": 1e400}'
        )
        values = transform_record(rec)
        assert values["year_month"] == date(2024, 2, 1)
        assert (values["workers_count"], values["total_wages"], values["jobs_created"]) == (0, 0.0, 0)


# ── Upsert ────────────────────────────────────────────────────────────────────

class TestUpsert:
    def _values(self, workers):
        return {
            "year_month": date(2024, 2, 1), "workers_count": workers, "person_days": 10,
            "total_wages": 100.0, "pending_payments": 0.0, "jobs_created": 1,
        }

    def test_same_month_twice_keeps_one_row_with_latest_values(self, session, make_district):
        district = make_district()
        upsert_monthly_stat(session, district.id, self._values(1000))
        session.commit()
        upsert_monthly_stat(session, district.id, self._values(1300))
        session.commit()

        rows = session.scalars(select(MonthlyStat).where(MonthlyStat.district_id == district.id)).all()
        assert len(rows) == 1
        assert rows[0].workers_count == 1300

    def test_keeps_raw_path_when_new_one_missing(self, session, make_district):
        district = make_district()
        upsert_monthly_stat(session, district.id, self._values(1), raw_json_path="raw/27/2701/a.json")
        upsert_monthly_stat(session, district.id, self._values(2))
        session.commit()
        row = session.scalars(select(MonthlyStat)).one()
        assert row.raw_json_path == "raw/27/2701/a.json"
        assert row.workers_count == 2

    def test_different_months_are_separate_rows(self, session, make_district):
        district = make_district()
        first = self._values(1)
        second = {**self._values(2), "year_month": date(2024, 3, 1)}
        upsert_monthly_stat(session, district.id, first)
        upsert_monthly_stat(session, district.id, second)
        session.commit()
        assert session.scalar(select(func.count(MonthlyStat.id))) == 2


# ── Fetch with retry ──────────────────────────────────────────────────────────

class TestFetchWithRetry:
    URL = "https://api.example.test/resource/mgnrega"

    def test_permanent_failure_tries_three_times(self):
        http = MagicMock()
        http.get.return_value = _response(500, reason="Server Error")
        sleeps, attempts = Sleeps(), []
        with pytest.raises(FetchError) as exc:
            fetch_with_retry(http, self.URL, sleep=sleeps, record_attempt=lambda *a: attempts.append(a))
        assert http.get.call_count == 3
        assert exc.value.attempts == 3
        assert exc.value.status_code == 500
        assert sleeps == [1.0, 2.0]
        assert [a[1] for a in attempts] == [500, 500, 500]

    @pytest.mark.parametrize("status", [401, 404])
    def test_auth_and_not_found_stop_immediately(self, status):
        http = MagicMock()
        http.get.return_value = _response(status, reason="Nope")
        sleeps = Sleeps()
        with pytest.raises(FetchError) as exc:
            fetch_with_retry(http, self.URL, sleep=sleeps)
        assert http.get.call_count == 1
        assert exc.value.attempts == 1
        assert sleeps == []

    def test_recovers_after_transient_error(self):
        http = MagicMock()
        http.get.side_effect = [requests.ConnectionError("reset"), _response(200, {"records": []})]
        sleeps, attempts = Sleeps(), []
        data = fetch_with_retry(http, self.URL, sleep=sleeps, record_attempt=lambda *a: attempts.append(a))
        assert data == {"records": []}
        assert sleeps == [1.0]
        assert attempts[0][1] is None and attempts[0][3] == "reset"
        assert attempts[1][1] == 200 and attempts[1][2] > 0 and attempts[1][3] is None

    def test_timeout_passed_to_every_request(self):
        http = MagicMock()
        http.get.return_value = _response(200, {})
        fetch_with_retry(http, self.URL, timeout=12, sleep=Sleeps())
        assert http.get.call_args[1]["timeout"] == 12

    def test_secret_masked_in_errors(self):
        http = MagicMock()
        http.get.side_effect = requests.ConnectionError("failed for url ?api-key=s3cret")
        attempts = []
        with pytest.raises(FetchError) as exc:
            fetch_with_retry(
                http, self.URL, secret="s3cret", max_attempts=1, sleep=Sleeps(),
                record_attempt=lambda *a: attempts.append(a),
            )
        assert "s3cret" not in str(exc.value)
        assert "s3cret" not in attempts[0][3]


# ── Whole job ─────────────────────────────────────────────────────────────────

class TestRunEtl:
    def _http_by_district(self, responses):
        """Mock session answering per filters[district_code]."""
        http = MagicMock()

        def get(url, params=None, timeout=None):
            return responses[params["filters[district_code]"]]

        http.get.side_effect = get
        return http

    def test_counts_success_and_failure(self, session, session_factory, make_district, settings):
        good = make_district("Pune", district_code="2725")
        make_district("Nashik", district_code="2720")
        http = self._http_by_district({
            "2725": _response(200, _records(
                {"year": 2024, "month": 1, "total_individuals_worked": "1000"},
                {"year": 2024, "month": 2, "total_individuals_worked": "1200"},
            )),
            "2720": _response(503, reason="Unavailable"),
        })

        result = run_etl(session_factory, http, settings=settings, sleep=Sleeps())

        assert (result.success, result.failed, result.skipped) == (1, 1, 0)
        assert set(result.to_dict()) == {"success", "failed", "skipped", "totalTime"}
        stats = session.scalars(select(MonthlyStat).where(MonthlyStat.district_id == good.id)).all()
        assert sorted(s.workers_count for s in stats) == [1000, 1200]
        # one successful fetch plus three failed attempts
        assert session.scalar(select(func.count(FetchLog.id))) == 4

    def test_fetch_log_hides_api_key(self, session, session_factory, make_district, settings):
        make_district("Pune", district_code="2725")
        http = self._http_by_district({"2725": _response(404, reason="Not Found")})
        run_etl(session_factory, http, settings=settings, sleep=Sleeps())
        log = session.scalars(select(FetchLog)).one()
        assert log.status_code == 404
        assert "filters%5Bdistrict_code%5D=2725" in log.source_url
        assert settings.API_KEY not in log.source_url
        assert log.error_message

    def test_recently_updated_district_skipped(
        self, session_factory, make_district, make_stat, settings, utc_now,
    ):
        fresh = make_district("Pune", district_code="2725")
        stale = make_district("Nashik", district_code="2720")
        make_stat(fresh, 2024, 2, workers=10, updated_at=utc_now - timedelta(hours=2))
        make_stat(stale, 2024, 2, workers=10, updated_at=utc_now - timedelta(days=2))
        http = self._http_by_district({
            "2720": _response(200, _records({"year": 2024, "month": 3, "workers_count": 7})),
        })

        result = run_etl(session_factory, http, settings=settings, sleep=Sleeps(), now=utc_now)

        assert (result.success, result.failed, result.skipped) == (1, 0, 1)
        assert http.get.call_count == 1

    def test_empty_payload_counts_as_failed(self, session_factory, make_district, settings):
        make_district("Pune", district_code="2725")
        http = self._http_by_district({"2725": _response(200, {"records": []})})
        result = run_etl(session_factory, http, settings=settings, sleep=Sleeps())
        assert (result.success, result.failed) == (0, 1)

    def test_pauses_between_districts(self, session_factory, make_district, settings):
        make_district("Pune", district_code="2725")
        make_district("Nashik", district_code="2720")
        payload = _records({"year": 2024, "month": 1, "workers_count": 1})
        http = self._http_by_district({"2725": _response(200, payload), "2720": _response(200, payload)})
        settings.ETL_REQUEST_DELAY = 0.5
        sleeps = Sleeps()
        run_etl(session_factory, http, settings=settings, sleep=sleeps)
        assert sleeps == [0.5, 0.5]

    def test_raw_payload_written(self, session, session_factory, make_district, settings, tmp_path):
        make_district("Pune", state_code="27", district_code="2725")
        payload = _records({"year": 2024, "month": 1, "workers_count": 1})
        http = self._http_by_district({"2725": _response(200, payload)})
        settings.RAW_DATA_DIR = str(tmp_path)

        run_etl(session_factory, http, settings=settings, sleep=Sleeps())

        row = session.scalars(select(MonthlyStat)).one()
        assert row.raw_json_path.startswith(str(tmp_path / "27" / "2725"))
        with open(row.raw_json_path, encoding="utf-8") as f:
            assert json.load(f) == payload

    def test_log_write_failure_does_not_abort(self, monkeypatch, session_factory, make_district, settings):
        make_district("Pune", district_code="2725")

        def broken_log(**kwargs):
            raise SQLAlchemyError("fetch_logs unavailable")

        monkeypatch.setattr(etl_worker, "FetchLog", broken_log)
        http = self._http_by_district({
            "2725": _response(200, _records({"year": 2024, "month": 1, "workers_count": 5})),
        })
        result = run_etl(session_factory, http, settings=settings, sleep=Sleeps())
        assert result.success == 1

    def test_top_level_error_propagates(self, settings):
        factory = MagicMock()
        factory.return_value.__enter__.return_value.scalars.side_effect = SQLAlchemyError("db down")
        with pytest.raises(SQLAlchemyError):
            run_etl(factory, MagicMock(), settings=settings, sleep=Sleeps())

    def test_requires_api_settings(self, session_factory, settings):
        settings.API_KEY = None
        with pytest.raises(ValueError):
            run_etl(session_factory, MagicMock(), settings=settings)
