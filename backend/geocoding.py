"""Toronto Safety Backend — Postal-code geocoding (Nominatim)

Nominatim's coverage of Canadian postal codes is patchy, so resolution walks
a ranked list of query strategies and stops at the first one that returns
anything. Its usage policy requires an identifying User-Agent and forbids
caching responses, so every request carries both.
"""

import logging
import re
from typing import Callable, Optional

import httpx

from config import geocode_settings, upstream_timeout

logger = logging.getLogger("safety.geocode")

# Shared async HTTP client (timeouts are passed per request)
client = httpx.AsyncClient()

# Forward sortation area: letter, digit, letter (no D, F, I, O, Q, U; no W/Z first)
_FSA_RE = re.compile(r"^[ABCEGHJ-NPRSTVXY]\d[ABCEGHJ-NPRSTV-Z]$")


class GeocodeError(Exception):
    pass


class GeocodeNotFound(GeocodeError):
    """Every strategy came back empty."""


class GeocodeUpstreamError(GeocodeError):
    """Every attempted request failed at the transport or parse level."""


def compact_postal(text: str) -> str:
    return re.sub(r"\s+", "", (text or "").upper())


# ── Strategies ───────────────────────────────────────────────────
# Each takes (compact postal code, settings) and returns the query params
# specific to that attempt, or None when it does not apply.

def _structured_postal(code: str, s: dict) -> Optional[dict]:
    return {"postalcode": code}


def _free_text_code(code: str, s: dict) -> Optional[dict]:
    return {"q": code}


def _free_text_region(code: str, s: dict) -> Optional[dict]:
    return {"q": f"{code}, {s['region_name']}, {s['country_name']}"}


def _free_text_country(code: str, s: dict) -> Optional[dict]:
    return {"q": f"{code}, {s['country_name']}"}


def _fsa_centroid(code: str, s: dict) -> Optional[dict]:
    fsa = code[:3]
    if not _FSA_RE.match(fsa):
        return None
    return {"q": f"{fsa}, {s['region_name']}, {s['country_name']}"}


GEOCODE_STRATEGIES: list[tuple[str, Callable[[str, dict], Optional[dict]]]] = [
    ("postalcode", _structured_postal),
    ("q-compact", _free_text_code),
    ("q-region", _free_text_region),
    ("q-country", _free_text_country),
    ("q-fsa", _fsa_centroid),
]


def _request_headers(s: dict) -> dict:
    return {
        "User-Agent": s["user_agent"],
        "Referer": s["referer"],
        "Cache-Control": "no-store",
        "Pragma": "no-cache",
    }


def _base_params(s: dict) -> dict:
    return {
        "format": "json",
        "limit": s["limit"],
        "countrycodes": s["country_code"],
        "addressdetails": 1,
    }


# ── Candidate selection ──────────────────────────────────────────

def _in_region(candidate: dict, s: dict) -> bool:
    address = candidate.get("address") or {}
    region_name = s["region_name"]
    iso_code = f"{s['country_code'].upper()}-{s['region_code']}"
    if address.get("state") == region_name:
        return True
    if str(address.get("state_code", "")).upper() == s["region_code"]:
        return True
    if iso_code in str(address.get("ISO3166-2-lvl4", "")):
        return True
    return (
        isinstance(candidate.get("addresstype"), str)
        and region_name.lower() in str(candidate.get("display_name", "")).lower()
    )


def _in_country(candidate: dict, s: dict) -> bool:
    address = candidate.get("address") or {}
    return str(address.get("country_code", "")).lower() == s["country_code"]


def prefer_region_match(candidates: list, settings: Optional[dict] = None) -> Optional[dict]:
    """First candidate in the target region, else first in the target country, else None."""
    s = settings or geocode_settings()
    rows = [c for c in candidates if isinstance(c, dict)]
    for c in rows:
        if _in_region(c, s):
            return c
    for c in rows:
        if _in_country(c, s):
            return c
    return None


# ── Resolver ─────────────────────────────────────────────────────

async def resolve_postal_code(postal: str, http: Optional[httpx.AsyncClient] = None,
                              attempts: Optional[list] = None) -> dict:
    """Resolve free-text postal input to ``{"lat", "lng", "raw"}``.

    Raises GeocodeNotFound when every strategy returns nothing, and
    GeocodeUpstreamError when every request that was made failed.
    """
    s = geocode_settings()
    http = http or client
    code = compact_postal(postal)
    headers = _request_headers(s)

    data: list = []
    tried = failed = 0
    last_error = ""
    for name, strategy in GEOCODE_STRATEGIES:
        extra = strategy(code, s)
        if extra is None:
            continue
        params = {**_base_params(s), **extra}
        tried += 1
        try:
            r = await http.get(s["url"], params=params, headers=headers, timeout=upstream_timeout())
            if attempts is not None:
                attempts.append({"strategy": name, "url": str(r.request.url), "status": r.status_code})
            if r.status_code != 200:
                failed += 1
                last_error = f"HTTP {r.status_code}"
                logger.warning(f"Geocode attempt {name} for {code}: HTTP {r.status_code}")
                continue
            body = r.json()
            if not isinstance(body, list):
                failed += 1
                last_error = "unexpected response body"
                logger.warning(f"Geocode attempt {name} for {code}: unexpected body {type(body).__name__}")
                continue
        except (httpx.HTTPError, ValueError) as e:
            failed += 1
            last_error = str(e) or type(e).__name__
            logger.warning(f"Geocode attempt {name} for {code} error: {last_error}")
            if attempts is not None:
                attempts.append({"strategy": name, "error": last_error})
            continue

        if body:
            data = body
            logger.info(f"Geocode {code}: {len(body)} candidate(s) via {name}")
            break

    if not data:
        if tried and failed == tried:
            raise GeocodeUpstreamError(f"geocoding service unavailable: {last_error}")
        raise GeocodeNotFound("no results")

    pick = prefer_region_match(data, s) or data[0]
    try:
        lat = float(pick["lat"])
        lng = float(pick["lon"])
    except (KeyError, TypeError, ValueError) as e:
        raise GeocodeUpstreamError(f"malformed geocoder record: {e}") from e
    return {"lat": lat, "lng": lng, "raw": pick}
