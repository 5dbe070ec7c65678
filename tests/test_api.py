from __future__ import annotations

import re
from dataclasses import replace
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

import hilal_api
from conftest import FakeEphemeris
from hilal_api import app, get_provider

ROUTE_PATTERN = re.compile(r"^/\d+AH/[A-Za-z-]+$")


@pytest.fixture
def client(periodic_provider: FakeEphemeris) -> Iterator[TestClient]:
    app.dependency_overrides[get_provider] = lambda: periodic_provider
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def fixed_client(fake_provider: FakeEphemeris) -> Iterator[TestClient]:
    app.dependency_overrides[get_provider] = lambda: fake_provider
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_months_from_start(fixed_client: TestClient) -> None:
    response = fixed_client.get("/months", params={"start": "2025-03-01", "count": 3})
    assert response.status_code == 200
    payload = response.json()
    assert payload["ok"] is True
    months = payload["months"]
    assert [entry["name"] for entry in months] == ["Ramadan", "Shawwal", "Dhul Qi'dah"]
    first = months[0]
    assert first["year"] == 1446
    assert first["new_moon_utc"] == "2025-02-28T00:45:00Z"
    assert first["map_dates"] == ["2025-02-28", "2025-03-01", "2025-03-02"]
    assert first["route"] == "/1446AH/Ramadan"
    assert months[2]["route_slug"] == "Dhul-Qi-dah"


def test_months_count_validation(fixed_client: TestClient) -> None:
    response = fixed_client.get("/months", params={"start": "2025-03-01", "count": 0})
    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


def test_nearest_month_route(client: TestClient) -> None:
    response = client.get("/months/nearest")
    assert response.status_code == 200
    assert ROUTE_PATTERN.match(response.json()["route"])


def test_month_by_route(client: TestClient) -> None:
    route = client.get("/months/nearest").json()["route"]
    response = client.get(f"/months{route}")
    assert response.status_code == 200
    assert response.json()["month"]["route"] == route


def test_month_by_route_not_found(client: TestClient) -> None:
    response = client.get("/months/1300AH/Ramadan")
    assert response.status_code == 404
    assert response.json()["ok"] is False


def test_month_by_route_malformed_year(client: TestClient) -> None:
    response = client.get("/months/soon/Ramadan")
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_request"


def test_month_maps(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(hilal_api, "SETTINGS", replace(hilal_api.SETTINGS, grid_resolution=30.0))
    route = client.get("/months/nearest").json()["route"]
    response = client.get(f"/months{route}/maps")
    assert response.status_code == 200
    payload = response.json()
    assert payload["month"]["route"] == route
    grids = payload["grids"]
    assert [grid["observation_date"] for grid in grids] == payload["month"]["map_dates"]
    assert grids[0]["day_label"] == "New Moon Day (Conjunction)"
    for grid in grids:
        assert grid["crescent"] == "waxing"
        assert len(grid["points"]) == 5 * 13


def test_visibility_grid(fixed_client: TestClient) -> None:
    response = fixed_client.get(
        "/visibility", params={"date": "2025-03-30", "crescent": "waxing", "resolution": 30}
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["observation_date"] == "2025-03-30"
    assert payload["policy"] == "relaxed"
    assert payload["new_moon_utc"] == "2025-03-29T10:58:00Z"
    assert len(payload["points"]) == 5 * 13
    polar = [point for point in payload["points"] if point["lat"] == -65.0]
    assert all(point["observation_utc"] is None for point in polar)
    assert all(point["category"] == "E" for point in polar)
    equatorial = next(p for p in payload["points"] if p["lat"] == -5.0 and p["lng"] == 0.0)
    assert equatorial["observation_utc"] == "2025-03-30T18:05:00Z"


@pytest.mark.parametrize(
    "params",
    [
        {},
        {"date": "not-a-date"},
        {"date": "2025-03-30", "crescent": "gibbous"},
        {"date": "2025-03-30", "resolution": "0.0001"},
        {"date": "2025-03-30", "resolution": "45"},
    ],
)
def test_visibility_validation(fixed_client: TestClient, params) -> None:
    response = fixed_client.get("/visibility", params=params)
    assert response.status_code == 422
    body = response.json()
    assert body["ok"] is False
    assert body["code"] == "validation_error"


def test_missing_provider_is_server_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(hilal_api, "PROVIDER", None)
    app.dependency_overrides.clear()
    response = TestClient(app).get("/months/nearest")
    assert response.status_code == 500
    assert response.json()["code"] == "ephemeris_error"


def test_health_after_startup(spice_provider, kernel_dir, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HILAL_BSP", str(kernel_dir))
    # Startup replaces both globals; record them so they are restored afterwards.
    monkeypatch.setattr(hilal_api, "PROVIDER", hilal_api.PROVIDER)
    monkeypatch.setattr(hilal_api, "SETTINGS", hilal_api.SETTINGS)
    with TestClient(app) as started:
        response = started.get("/health")
    assert response.status_code == 200
    payload = response.json()
    assert payload["ok"] is True
    assert payload["ephemeris_loaded"] is True
    assert any(path.endswith("hilal_test.bsp") for path in payload["files"])
    assert payload["source"] == "CSPICE-DE"
