from datetime import datetime, timedelta, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

import data_fetchers
import geocoding
from routes import app

MCI_URL = "https://services.example.org/arcgis/rest/services/MCI/FeatureServer/0"


@pytest.fixture
def api():
    return TestClient(app)


@pytest.fixture
def upstream(monkeypatch, stub_client):
    """Point both upstream clients at one stub handler."""

    def install(handler):
        http, rec = stub_client(handler)
        monkeypatch.setattr(geocoding, "client", http)
        monkeypatch.setattr(data_fetchers, "client", http)
        return rec

    return install


def _stale_mci_payload(age_days: int = 30) -> dict:
    occ = datetime.now(timezone.utc) - timedelta(days=age_days)
    midnight = occ.replace(hour=0, minute=0, second=0, microsecond=0)
    return {"features": [
        {"attributes": {
            "OBJECTID": n, "OFFENCE": "Theft Over", "MCI_CATEGORY": "Theft Over",
            "OCC_DATE": int(midnight.timestamp() * 1000), "OCC_HOUR": 12,
            "LAT_WGS84": 43.65 + n * 0.001, "LONG_WGS84": -79.38,
        }}
        for n in range(1, 4)
    ]}


# ── /geocode ─────────────────────────────────────────────────────

def test_geocode_requires_postal_without_upstream_calls(api, upstream):
    rec = upstream(lambda req: httpx.Response(200, json=[]))
    for url in ("/geocode?postal=", "/geocode?postal=%20%20", "/geocode"):
        resp = api.get(url)
        assert resp.status_code == 400
        assert resp.json()["error"]
    assert rec.requests == []


def test_geocode_success(api, upstream):
    match = {"lat": "43.5931", "lon": "-79.6421", "address": {"state": "Ontario", "country_code": "ca"}}
    upstream(lambda req: httpx.Response(200, json=[match]))
    resp = api.get("/geocode", params={"postal": "L5B 3Y1"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["lat"] == pytest.approx(43.5931)
    assert body["lng"] == pytest.approx(-79.6421)
    assert body["raw"] == match


def test_geocode_not_found(api, upstream):
    upstream(lambda req: httpx.Response(200, json=[]))
    resp = api.get("/geocode", params={"postal": "L5B 3Y1"})
    assert resp.status_code == 404
    assert resp.json() == {"error": "no results"}


def test_geocode_upstream_failure(api, upstream):
    upstream(lambda req: httpx.Response(502))
    resp = api.get("/geocode", params={"postal": "L5B 3Y1"})
    assert resp.status_code == 500
    assert resp.json()["error"]


# ── /incidents ───────────────────────────────────────────────────

def test_incidents_requires_lat_lng(api):
    for url in ("/incidents", "/incidents?lat=43.65", "/incidents?lat=abc&lng=-79.38"):
        resp = api.get(url)
        assert resp.status_code == 400
        assert "error" in resp.json()


def test_incidents_rejects_bad_radius(api):
    resp = api.get("/incidents?lat=43.65&lng=-79.38&radiusKm=-1")
    assert resp.status_code == 400


def test_incidents_mock_ignores_configured_source(api, upstream, monkeypatch):
    monkeypatch.setenv("TORONTO_MCI_FEATURE_URL", MCI_URL)
    rec = upstream(lambda req: httpx.Response(200, json=_stale_mci_payload()))
    resp = api.get("/incidents?lat=43.65&lng=-79.38&radiusKm=2&days=7&mock=1")

    assert resp.status_code == 200
    body = resp.json()
    assert body["count"] == 3
    assert [i["id"] for i in body["incidents"]] == ["mock-1", "mock-2", "mock-4"]
    assert body["radiusKm"] == 2
    assert body["days"] == 7
    assert "notice" not in body
    assert rec.requests == []


def test_incidents_without_sources_uses_synthetic_data(api, upstream):
    rec = upstream(lambda req: httpx.Response(500))
    body = api.get("/incidents?lat=43.65&lng=-79.38").json()
    assert body["count"] == 3
    assert {i["source"] for i in body["incidents"]} == {"mock"}
    assert rec.requests == []


def test_incidents_stale_results_fall_back_with_notice(api, upstream, monkeypatch):
    monkeypatch.setenv("TORONTO_MCI_FEATURE_URL", MCI_URL)
    upstream(lambda req: httpx.Response(200, json=_stale_mci_payload()))

    body = api.get("/incidents?lat=43.65&lng=-79.38&radiusKm=2&days=7").json()
    assert body["count"] == 3
    assert len(body["incidents"]) == 3
    assert body["notice"]
    assert "7 day(s)" in body["notice"]


def test_incidents_strict_returns_empty_without_notice(api, upstream, monkeypatch):
    monkeypatch.setenv("TORONTO_MCI_FEATURE_URL", MCI_URL)
    upstream(lambda req: httpx.Response(200, json=_stale_mci_payload()))

    body = api.get("/incidents?lat=43.65&lng=-79.38&radiusKm=2&days=7&strict=1").json()
    assert body["incidents"] == []
    assert body["count"] == 0
    assert "notice" not in body


def test_incidents_debug_payload(api, upstream, monkeypatch):
    monkeypatch.setenv("TORONTO_MCI_FEATURE_URL", MCI_URL)
    upstream(lambda req: httpx.Response(200, json=_stale_mci_payload()))

    body = api.get("/incidents?lat=43.65&lng=-79.38&days=7&debug=1").json()
    debug = body["debug"]
    assert debug["preFilterCount"] == 3
    assert debug["filterFallback"] is True
    assert debug["env"]["hasTorontoMciUrl"] is True
    notes = [a["note"] for a in debug["attempts"]]
    assert notes == ["attr-bbox", "post-filter"]
    assert debug["attempts"][0]["status"] == 200


def test_incidents_failed_source_is_not_an_error(api, upstream, monkeypatch):
    monkeypatch.setenv("TORONTO_MCI_FEATURE_URL", MCI_URL)
    upstream(lambda req: httpx.Response(503))
    resp = api.get("/incidents?lat=43.65&lng=-79.38")
    assert resp.status_code == 200
    assert resp.json()["incidents"] == []


def test_incidents_unexpected_fault_is_500(api, monkeypatch):
    async def boom(*args, **kwargs):
        raise RuntimeError("kaboom")

    monkeypatch.setattr("routes.fetch_incidents", boom)
    resp = api.get("/incidents?lat=43.65&lng=-79.38")
    assert resp.status_code == 500
    assert resp.json() == {"error": "kaboom"}


# ── /meta, /health ───────────────────────────────────────────────

def test_meta_requires_configured_source(api):
    resp = api.get("/meta")
    assert resp.status_code == 500
    assert "TORONTO_MCI_FEATURE_URL" in resp.json()["error"]


def test_meta_reports_last_edit(api, upstream, monkeypatch):
    monkeypatch.setenv("TORONTO_MCI_FEATURE_URL", MCI_URL)
    upstream(lambda req: httpx.Response(200, json={"editorTrackingInfo": {"lastEditDate": 1714521600000}}))
    resp = api.get("/meta")
    assert resp.status_code == 200
    assert resp.json() == {"lastUpdated": 1714521600000, "source": MCI_URL}


def test_health(api):
    assert api.get("/health").json()["status"] == "ok"


def test_incidents_huge_day_window_is_not_an_error(api):
    resp = api.get("/incidents?lat=43.65&lng=-79.38&days=1000000&mock=1")
    assert resp.status_code == 200
    body = resp.json()
    assert body["count"] == 3
    assert body["days"] == 1000000


def test_launcher_serves_the_routes_app():
    import main
    assert main.app is app
