"""Toronto Safety Backend — FastAPI Routes"""

import math
import logging
from typing import Optional

from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import (
    APP_VERSION, DEFAULT_DAYS, DEFAULT_RADIUS_KM,
    api_prefix, cors_origins, get_incident_sources, mci_feature_url,
)
from data_fetchers import fetch_incidents, fetch_layer_metadata
from geocoding import GeocodeNotFound, GeocodeUpstreamError, resolve_postal_code
from models import GeocodeResponse, IncidentsResponse, MetaResponse

logger = logging.getLogger("safety")


# ─────────────────────────── App Setup ──────────────────────────

app = FastAPI(title="Toronto Safety API", version=APP_VERSION)

_origins = cors_origins()
if _origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_origins,
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )
else:
    # Dev default: any localhost port
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$",
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

router = APIRouter()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _parse_float(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def _flag(raw: Optional[str]) -> bool:
    return raw == "1"


# ─────────────────────────── Geocode ────────────────────────────

@router.get("/geocode", response_model=GeocodeResponse)
async def geocode(postal: Optional[str] = None):
    postal = (postal or "").strip()
    if not postal:
        return _error(400, "postal is required")

    try:
        return await resolve_postal_code(postal)
    except GeocodeNotFound:
        return _error(404, "no results")
    except GeocodeUpstreamError as e:
        logger.warning(f"Geocode upstream failure for {postal!r}: {e}")
        return _error(500, str(e))
    except Exception as e:
        logger.exception(f"Geocode error for {postal!r}")
        return _error(500, str(e) or "unknown error")


# ─────────────────────────── Incidents ──────────────────────────

@router.get("/incidents", response_model=IncidentsResponse, response_model_exclude_none=True)
async def incidents(
    lat: Optional[str] = None,
    lng: Optional[str] = None,
    radiusKm: Optional[str] = None,
    days: Optional[str] = None,
    strict: Optional[str] = None,
    debug: Optional[str] = None,
    mock: Optional[str] = None,
):
    lat_f = _parse_float(lat)
    lng_f = _parse_float(lng)
    if lat_f is None or lng_f is None:
        return _error(400, "lat and lng are required")

    radius_km = DEFAULT_RADIUS_KM if radiusKm is None else _parse_float(radiusKm)
    if radius_km is None or radius_km <= 0:
        return _error(400, "radiusKm must be a positive number")

    window = DEFAULT_DAYS if days is None else _parse_float(days)
    if window is None or window < 0:
        return _error(400, "days must be a non-negative number")
    window = int(window)

    try:
        sources = get_incident_sources()
        attempts: list[dict] = []
        result = await fetch_incidents(
            lat_f, lng_f, radius_km, window,
            strict=_flag(strict), mock=_flag(mock),
            sources=sources, attempts=attempts,
        )

        payload = {
            "radiusKm": radius_km,
            "days": window,
            "count": len(result["incidents"]),
            "incidents": result["incidents"],
            "notice": result["notice"],
        }
        if _flag(debug):
            payload["debug"] = {
                "lat": lat_f,
                "lng": lng_f,
                "attempts": attempts,
                "preFilterCount": result["preFilterCount"],
                "filterFallback": result["filterFallback"],
                "env": {
                    "hasTorontoMciUrl": bool(mci_feature_url()),
                    "sourceCount": len(sources),
                },
            }
        logger.info(
            f"Incidents request ({lat_f:.4f}, {lng_f:.4f}) r={radius_km}km days={window}: "
            f"{payload['count']} returned, {result['preFilterCount']} before window"
        )
        return payload
    except Exception as e:
        logger.exception("Incidents error")
        return _error(500, str(e) or "unknown error")


# ─────────────────────────── Dataset Metadata ───────────────────

@router.get("/meta", response_model=MetaResponse)
async def meta():
    url = mci_feature_url()
    if not url:
        return _error(500, "missing TORONTO_MCI_FEATURE_URL")
    try:
        return await fetch_layer_metadata(url)
    except Exception as e:
        logger.warning(f"Layer metadata error: {e}")
        return _error(500, str(e) or "failed")


# ─────────────────────────── Utility Endpoints ──────────────────

@router.get("/health")
async def health():
    return {"status": "ok", "version": APP_VERSION}


app.include_router(router, prefix=api_prefix())
