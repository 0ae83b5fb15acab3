"""Toronto Safety Backend — Incident fetchers (ArcGIS FeatureServer)"""

import json
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from config import (
    MCI_SOURCE_TAG,
    feature_result_limit, get_incident_sources, upstream_timeout,
)
from geo import bounding_envelope, haversine_km
from normalizer import normalize_attributes, normalize_mci_attributes, to_iso

logger = logging.getLogger("safety.fetchers")

# Shared async HTTP client (timeouts are passed per request)
client = httpx.AsyncClient()

MCI_OUT_FIELDS = (
    "OBJECTID,OFFENCE,MCI_CATEGORY,OCC_DATE,OCC_HOUR,REPORT_DATE,REPORT_HOUR,"
    "LAT_WGS84,LONG_WGS84,NEIGHBOURHOOD_140,NEIGHBOURHOOD_158"
)


def _query_url(layer_url: str) -> str:
    return layer_url.rstrip("/") + "/query"


def _has_coords(incident: dict) -> bool:
    return incident.get("lat") is not None and incident.get("lng") is not None


async def _arcgis_query(http: httpx.AsyncClient, tag: str, url: str, params: dict,
                        note: str, attempts: Optional[list]) -> list[dict]:
    """One FeatureServer query. Any fault is logged and reads as zero features."""
    try:
        r = await http.get(url, params=params, timeout=upstream_timeout())
        data = r.json() if r.status_code == 200 else None
        if isinstance(data, dict) and data.get("error"):
            # ArcGIS reports query errors with a 200 and an error object
            logger.warning(f"ArcGIS {tag} ({note}): {data['error']}")
            data = None
        features = data.get("features") if isinstance(data, dict) else None
        if attempts is not None:
            attempts.append({
                "source": tag, "note": note, "url": str(r.request.url),
                "status": r.status_code, "ok": data is not None,
                "count": len(features) if isinstance(features, list) else -1,
            })
        if r.status_code != 200:
            logger.warning(f"ArcGIS {tag} ({note}): HTTP {r.status_code}")
        return features if isinstance(features, list) else []
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"ArcGIS {tag} ({note}) error: {e}")
        if attempts is not None:
            attempts.append({"source": tag, "note": f"{note}-error", "error": str(e) or type(e).__name__})
        return []


# ─────────────────────── Attribute-filtered (MCI) ──────────────

async def fetch_mci_incidents(
    layer_url: str, lat: float, lng: float, radius_km: float,
    attempts: Optional[list] = None, http: Optional[httpx.AsyncClient] = None,
    tag: str = MCI_SOURCE_TAG,
) -> list[dict]:
    """Query a layer with flat LAT_WGS84/LONG_WGS84 columns by bounding box.

    The box is only a coarse server-side pre-filter; records are re-checked
    here against the exact haversine radius. Day-window filtering is left to
    ``fetch_incidents`` so it can fall back to the unfiltered set.
    """
    envelope = bounding_envelope(lat, lng, radius_km)
    where = " AND ".join([
        f"LAT_WGS84 >= {envelope['ymin']}",
        f"LAT_WGS84 <= {envelope['ymax']}",
        f"LONG_WGS84 >= {envelope['xmin']}",
        f"LONG_WGS84 <= {envelope['xmax']}",
    ])
    params = {
        "f": "json",
        "outFields": MCI_OUT_FIELDS,
        "where": where,
        "returnGeometry": "false",
        "orderByFields": "OCC_DATE DESC",
        "resultRecordCount": feature_result_limit(),
        "returnExceededLimitFeatures": "true",
    }
    features = await _arcgis_query(http or client, tag, _query_url(layer_url), params, "attr-bbox", attempts)

    items = [normalize_mci_attributes(f.get("attributes") or {}, source=tag) for f in features if isinstance(f, dict)]
    items = [i for i in items if _has_coords(i)]
    inside = [i for i in items if haversine_km(lat, lng, i["lat"], i["lng"]) <= radius_km]

    if attempts is not None:
        attempts.append({"source": tag, "note": "post-filter", "kept": len(inside), "total": len(items)})
    logger.info(f"MCI ({tag}): {len(inside)}/{len(items)} incidents within {radius_km}km of ({lat:.4f}, {lng:.4f})")
    return inside


# ─────────────────────── Spatial buffer (generic ArcGIS) ───────

def _spatial_query_variants(lat: float, lng: float, radius_km: float) -> list[tuple[str, dict]]:
    point = {
        "geometry": f"{lng},{lat}",
        "geometryType": "esriGeometryPoint",
        "inSR": 4326,
        "spatialRel": "esriSpatialRelIntersects",
    }
    envelope = bounding_envelope(lat, lng, radius_km)
    return [
        ("buffer-m", {**point, "distance": radius_km * 1000, "units": "esriSRUnit_Meter"}),
        # Some layers misread the unit; same buffer expressed in kilometres
        ("buffer-km", {**point, "distance": radius_km, "units": "esriSRUnit_Kilometer"}),
        ("envelope", {
            "geometry": json.dumps(envelope),
            "geometryType": "esriGeometryEnvelope",
            "inSR": 4326,
            "spatialRel": "esriSpatialRelIntersects",
        }),
    ]


async def fetch_arcgis_incidents(
    layer_url: str, lat: float, lng: float, radius_km: float, tag: str,
    attempts: Optional[list] = None, http: Optional[httpx.AsyncClient] = None,
) -> list[dict]:
    """Query a layer of unknown schema with a point buffer around (lat, lng).

    Falls through meter buffer -> kilometre buffer -> envelope intersection
    until one returns features. The server-side buffer is trusted; there is
    no client-side radius re-check.
    """
    base = {
        "f": "json",
        "where": "1=1",
        "outFields": "*",
        "returnGeometry": "true",
        "outSR": 4326,
        "resultRecordCount": feature_result_limit(),
    }
    features: list = []
    for note, spatial in _spatial_query_variants(lat, lng, radius_km):
        features = await _arcgis_query(http or client, tag, _query_url(layer_url), {**base, **spatial}, note, attempts)
        if features:
            break

    items = [
        normalize_attributes(f.get("attributes") or {}, f.get("geometry"), tag)
        for f in features if isinstance(f, dict)
    ]
    items = [i for i in items if _has_coords(i)]
    logger.info(f"ArcGIS ({tag}): {len(items)} incidents near ({lat:.4f}, {lng:.4f})")
    return items


# ─────────────────────── Post-processing ───────────────────────

def dedupe_incidents(incidents: list[dict]) -> list[dict]:
    """Drop repeats of the same (source, id); first occurrence wins."""
    seen = set()
    out = []
    for inc in incidents:
        key = (inc.get("source"), inc.get("id"))
        if key in seen:
            continue
        seen.add(key)
        out.append(inc)
    return out


def _parse_ts(value: str) -> Optional[datetime]:
    try:
        dt = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def filter_by_days(incidents: list[dict], days: float, now: Optional[datetime] = None) -> list[dict]:
    """Keep incidents at or after now - days. Unparseable timestamps are kept."""
    try:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
    except OverflowError:
        cutoff = datetime.min.replace(tzinfo=timezone.utc)
    out = []
    for inc in incidents:
        ts = _parse_ts(inc.get("timestamp"))
        if ts is None or ts >= cutoff:
            out.append(inc)
    return out


def _fmt(value: float) -> str:
    return f"{value:g}"


def apply_day_window(incidents: list[dict], days: float, radius_km: float,
                     strict: bool = False) -> tuple[list[dict], Optional[str]]:
    """Day-window filter with the visibility fallback.

    When the window empties a non-empty set and ``strict`` is off, the
    unfiltered set is returned with a notice instead of nothing.
    """
    filtered = filter_by_days(incidents, days)
    if not strict and not filtered and incidents:
        notice = (
            f"No incidents in the last {_fmt(days)} day(s) within {_fmt(radius_km)}km; "
            "showing nearby historical results."
        )
        return incidents, notice
    return filtered, None


def mock_incidents(lat: float, lng: float) -> list[dict]:
    """Fixed demo incidents around the query point, for setups with no feed configured."""
    now = datetime.now(timezone.utc)

    def mk(i: int, dx: float, dy: float, kind: str) -> dict:
        return {
            "id": f"mock-{i}",
            "type": kind,
            "timestamp": to_iso(now - timedelta(hours=i)),
            "address": "Near searched area",
            "lat": lat + dx,
            "lng": lng + dy,
            "source": "mock",
        }

    return [
        mk(1, 0.002, -0.001, "Police - Property Damage"),
        mk(2, -0.0015, 0.001, "Police - Assault"),
        mk(4, 0.001, 0.0015, "Police - Break and Enter"),
    ]


# ─────────────────────── Orchestration ─────────────────────────

async def _fetch_source(source: dict, lat: float, lng: float, radius_km: float,
                        attempts: Optional[list], http: Optional[httpx.AsyncClient]) -> list[dict]:
    if source.get("strategy") == "attribute":
        return await fetch_mci_incidents(source["url"], lat, lng, radius_km, attempts, http, tag=source["tag"])
    return await fetch_arcgis_incidents(source["url"], lat, lng, radius_km, source["tag"], attempts, http)


async def fetch_incidents(
    lat: float, lng: float, radius_km: float, days: float,
    strict: bool = False, mock: bool = False,
    sources: Optional[list[dict]] = None,
    attempts: Optional[list] = None,
    http: Optional[httpx.AsyncClient] = None,
) -> dict:
    """Fetch, merge and window incidents around a point.

    Returns ``{"incidents", "notice", "preFilterCount", "filterFallback"}``.
    Sources are queried concurrently; a failing source is logged and left
    out. With ``mock`` set, or no source configured, synthetic incidents are
    used instead of any upstream call.
    """
    if sources is None:
        sources = get_incident_sources()

    if mock or not sources:
        incidents = mock_incidents(lat, lng)
    else:
        results = await asyncio.gather(
            *[_fetch_source(src, lat, lng, radius_km, attempts, http) for src in sources],
            return_exceptions=True,
        )
        incidents = []
        for src, r in zip(sources, results):
            if isinstance(r, BaseException):
                logger.warning(f"Incident source {src.get('tag')} failed: {r}")
                if attempts is not None:
                    attempts.append({"source": src.get("tag"), "note": "source-error", "error": str(r)})
                continue
            incidents.extend(r)
        incidents = dedupe_incidents(incidents)

    pre_filter_count = len(incidents)
    windowed, notice = apply_day_window(incidents, days, radius_km, strict)
    return {
        "incidents": windowed,
        "notice": notice,
        "preFilterCount": pre_filter_count,
        "filterFallback": notice is not None,
    }


# ─────────────────────── Layer metadata ────────────────────────

async def fetch_layer_metadata(layer_url: str, http: Optional[httpx.AsyncClient] = None) -> dict:
    """Last-edit time of a FeatureServer layer. Raises on transport/parse failure."""
    r = await (http or client).get(
        layer_url.rstrip("/"), params={"f": "json"}, timeout=upstream_timeout(),
        headers={"Cache-Control": "no-store"},
    )
    r.raise_for_status()
    j = r.json()
    last = (
        (j.get("editingInfo") or {}).get("lastEditDate")
        or (j.get("editorTrackingInfo") or {}).get("lastEditDate")
        or j.get("serviceItemIdLastModified")
    )
    return {"lastUpdated": last, "source": layer_url}
