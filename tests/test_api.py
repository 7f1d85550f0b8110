"""Endpoint tests for energy_api using FastAPI's TestClient."""

import sqlite3
from typing import Dict, Iterator

import pytest
from fastapi.testclient import TestClient

import energy_api
import energy_queries


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, db_path: str, sample_sources: Dict[str, str]) -> Iterator[TestClient]:
    """App with the sample CSVs ingested during startup."""
    monkeypatch.setattr(energy_api, "DB_PATH", db_path)
    monkeypatch.setattr(energy_api, "INGEST_ON_STARTUP", True)
    monkeypatch.setattr(energy_api, "default_sources", lambda: dict(sample_sources))
    with TestClient(energy_api.app) as c:
        yield c


class TestStartup:
    def test_data_is_loaded_before_first_request(self, client: TestClient) -> None:
        r = client.get("/api/debug/metadata")

        assert r.status_code == 200
        assert r.json()["count"] == 3

    def test_schema_failure_prevents_startup(self, monkeypatch: pytest.MonkeyPatch, db_path: str) -> None:
        def broken_schema(conn):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(energy_api, "DB_PATH", db_path)
        monkeypatch.setattr(energy_api, "ensure_schema", broken_schema)

        with pytest.raises(Exception):
            with TestClient(energy_api.app):
                pass

    def test_startup_without_ingest(self, monkeypatch: pytest.MonkeyPatch, db_path: str) -> None:
        monkeypatch.setattr(energy_api, "DB_PATH", db_path)
        monkeypatch.setattr(energy_api, "INGEST_ON_STARTUP", False)

        with TestClient(energy_api.app) as c:
            assert c.get("/api/buildings").json() == []

    def test_health(self, client: TestClient) -> None:
        assert client.get("/health").json() == {"ok": True}


class TestBuildings:
    def test_lists_buildings_by_energy(self, client: TestClient) -> None:
        r = client.get("/api/buildings")

        assert r.status_code == 200
        body = r.json()
        assert [b["cpe"] for b in body] == ["B1", "B2", "B3"]
        assert body[0] == {
            "cpe": "B1", "lat": 40.0, "lon": -73.9, "totalarea": 1000.0,
            "name": "A", "fulladdress": "1 Main St", "annual_energy": 116.0,
        }
        assert body[2]["annual_energy"] == 0

    def test_csv_export(self, client: TestClient) -> None:
        r = client.get("/api/buildings", params={"format": "csv"})

        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/csv")
        assert 'filename="buildings.csv"' in r.headers["content-disposition"]
        assert r.text.splitlines()[0] == "cpe,lat,lon,totalarea,name,fulladdress,annual_energy"

    def test_store_failure_is_500(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        def broken(conn):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(energy_queries, "building_totals", broken)

        r = client.get("/api/buildings")

        assert r.status_code == 500
        assert r.json() == {"error": "database is locked"}


class TestEnergySeries:
    def test_monthly(self, client: TestClient) -> None:
        r = client.get("/api/energy/B1/monthly", params={"year": "2021"})

        assert r.status_code == 200
        assert r.json() == [
            {"month": "2021-03", "total_energy": 8.0},
            {"month": "2021-04", "total_energy": 8.0},
        ]

    def test_monthly_requires_year(self, client: TestClient) -> None:
        r = client.get("/api/energy/B1/monthly")

        assert r.status_code == 400
        assert "year is required" in r.json()["error"]

    def test_monthly_rejects_bad_year(self, client: TestClient) -> None:
        r = client.get("/api/energy/B1/monthly", params={"year": "undefined"})

        assert r.status_code == 400
        assert "Invalid year" in r.json()["error"]

    def test_daily_full_month(self, client: TestClient) -> None:
        r = client.get("/api/energy/B1/daily", params={"month": "2021-03"})

        assert r.json() == [
            {"day": "2021-03-01", "total_energy": 5.0},
            {"day": "2021-03-02", "total_energy": 3.0},
        ]

    def test_daily_month_with_year(self, client: TestClient) -> None:
        by_parts = client.get("/api/energy/B1/daily", params={"year": "2021", "month": "3"})
        by_full = client.get("/api/energy/B1/daily", params={"month": "2021-03"})

        assert by_parts.status_code == 200
        assert by_parts.json() == by_full.json()

    def test_daily_requires_month(self, client: TestClient) -> None:
        r = client.get("/api/energy/B1/daily", params={"year": "2021"})

        assert r.status_code == 400
        assert "month is required" in r.json()["error"]

    def test_daily_bare_month_needs_year(self, client: TestClient) -> None:
        r = client.get("/api/energy/B1/daily", params={"month": "03"})

        assert r.status_code == 400
        assert "year is required" in r.json()["error"]

    def test_daily_rejects_bad_month(self, client: TestClient) -> None:
        r = client.get("/api/energy/B1/daily", params={"month": "2021-13"})

        assert r.status_code == 400

    def test_hourly(self, client: TestClient) -> None:
        r = client.get("/api/energy/B1/hourly", params={"day": "2021-04-10"})

        assert r.json() == [
            {"hour": "13:00", "total_energy": 4.0},
            {"hour": "14:00", "total_energy": 4.0},
        ]

    def test_hourly_day_from_parts(self, client: TestClient) -> None:
        r = client.get("/api/energy/B1/hourly", params={"year": "2021", "month": "04", "day": "10"})

        assert r.status_code == 200
        assert len(r.json()) == 2

    def test_hourly_requires_day(self, client: TestClient) -> None:
        r = client.get("/api/energy/B1/hourly", params={"year": "2021"})

        assert r.status_code == 400
        assert "day is required" in r.json()["error"]

    def test_invalid_period(self, client: TestClient) -> None:
        r = client.get("/api/energy/B1/weekly", params={"year": "2021"})

        assert r.status_code == 400
        assert r.json() == {"error": "Invalid period"}

    def test_unknown_building_is_empty(self, client: TestClient) -> None:
        r = client.get("/api/energy/NOPE/monthly", params={"year": "2021"})

        assert r.status_code == 200
        assert r.json() == []

    def test_csv_export(self, client: TestClient) -> None:
        r = client.get("/api/energy/B1/monthly", params={"year": "2021", "format": "csv"})

        assert r.headers["content-type"].startswith("text/csv")
        assert r.text.splitlines() == ["month,total_energy", "2021-03,8.0", "2021-04,8.0"]


class TestEnergyBreakdown:
    def test_default_is_first_24_rows(self, client: TestClient) -> None:
        body = client.get("/api/energy-breakdown").json()

        assert len(body) == 24
        assert body[0]["timestamp"] == "2021-03-01T00:00:00"
        assert body[0]["renewable"] == 99.5
        assert body[0]["unknown"] is None

    def test_prefix(self, client: TestClient) -> None:
        body = client.get("/api/energy-breakdown", params={"timestamp": "2021-03-02"}).json()

        assert len(body) == 6
        assert body[0]["timestamp"] == "2021-03-02T00:00:00"

    def test_limit_is_configurable(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(energy_api, "BREAKDOWN_LIMIT", 3)

        assert len(client.get("/api/energy-breakdown").json()) == 3


class TestBuildingsEnergy:
    def test_explicit_year(self, client: TestClient) -> None:
        body = client.get("/api/buildings-energy", params={"year": "2022"}).json()

        assert [(b["cpe"], b["annual_energy"]) for b in body] == [("B1", 100.0), ("B2", 0), ("B3", 0)]

    def test_default_year(self, client: TestClient) -> None:
        default = client.get("/api/buildings-energy").json()
        explicit = client.get("/api/buildings-energy", params={"year": energy_api.DEFAULT_YEAR}).json()

        assert default == explicit

    def test_bad_year(self, client: TestClient) -> None:
        r = client.get("/api/buildings-energy", params={"year": "21"})

        assert r.status_code == 400
        assert "error" in r.json()


class TestAdmin:
    def test_reload_reports_each_source(self, client: TestClient) -> None:
        r = client.post("/api/admin/reload")

        assert r.status_code == 200
        body = r.json()
        assert body["metadata"]["status"] == "loaded"
        assert body["meter"]["rows"] == 8
        assert body["breakdown"]["table"] == "energy_breakdown"
        assert client.get("/api/debug/metadata").json()["count"] == 3

    def test_concurrent_reload_is_rejected(self, client: TestClient) -> None:
        energy_api._reload_lock.acquire()
        try:
            r = client.post("/api/admin/reload")
        finally:
            energy_api._reload_lock.release()

        assert r.status_code == 409
        assert "already running" in r.json()["error"]


class TestErrors:
    def test_unknown_route(self, client: TestClient) -> None:
        r = client.get("/api/nothing-here")

        assert r.status_code == 404
        assert r.json() == {"error": "Not Found"}

    def test_wrong_method(self, client: TestClient) -> None:
        r = client.post("/api/buildings")

        assert r.status_code == 405
        assert "error" in r.json()
