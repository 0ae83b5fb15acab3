"""Toronto Safety Backend — Configuration & Constants"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load .env from project root (one level up from backend/)
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path)

APP_VERSION = "0.1.0"

# ── Upstream defaults ──
DEFAULT_GEOCODE_URL = "https://nominatim.openstreetmap.org/search"
DEFAULT_USER_AGENT = "toronto-safety-app/0.1 (contact: please-set-GEOCODE_USER_AGENT)"
DEFAULT_REFERER = "http://localhost:3000"

MCI_SOURCE_TAG = "toronto-mci"

# ── Query defaults ──
DEFAULT_RADIUS_KM = 2.0
DEFAULT_DAYS = 7


# Everything below is read at call time (not import time) so tests and
# deployments can point the service at substitute endpoints.

def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, "") or default)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, "") or default)
    except ValueError:
        return default


def upstream_timeout() -> float:
    return _env_float("UPSTREAM_TIMEOUT_SECONDS", 8.0)


def feature_result_limit() -> int:
    return _env_int("FEATURE_RESULT_LIMIT", 1000)


def mci_feature_url() -> str:
    return os.environ.get("TORONTO_MCI_FEATURE_URL", "").strip()


def get_incident_sources() -> list[dict]:
    """Configured upstream feeds, in query order.

    The MCI layer exposes flat LAT_WGS84/LONG_WGS84 columns and gets the
    attribute-filtered query. Anything listed in INCIDENT_FEATURE_URLS
    (``url`` or ``tag=url``, comma-separated) gets the spatial-buffer query.
    """
    sources = []
    mci_url = mci_feature_url()
    if mci_url:
        sources.append({"tag": MCI_SOURCE_TAG, "url": mci_url, "strategy": "attribute"})

    extra = os.environ.get("INCIDENT_FEATURE_URLS", "")
    for idx, item in enumerate(p.strip() for p in extra.split(",")):
        if not item:
            continue
        tag, sep, url = item.partition("=")
        if not sep or "://" in tag:
            tag, url = f"arcgis-{idx + 1}", item
        sources.append({"tag": tag.strip(), "url": url.strip(), "strategy": "spatial"})
    return sources


def geocode_settings() -> dict:
    return {
        "url": os.environ.get("GEOCODE_URL", DEFAULT_GEOCODE_URL),
        "user_agent": os.environ.get("GEOCODE_USER_AGENT") or DEFAULT_USER_AGENT,
        "referer": os.environ.get("GEOCODE_REFERER") or DEFAULT_REFERER,
        "country_code": os.environ.get("GEOCODE_COUNTRY_CODE", "ca").lower(),
        "country_name": os.environ.get("GEOCODE_COUNTRY_NAME", "Canada"),
        "region_name": os.environ.get("GEOCODE_REGION_NAME", "Ontario"),
        "region_code": os.environ.get("GEOCODE_REGION_CODE", "ON").upper(),
        "limit": _env_int("GEOCODE_RESULT_LIMIT", 5),
    }


def api_prefix() -> str:
    prefix = os.environ.get("API_PREFIX", "").strip()
    if prefix and not prefix.startswith("/"):
        prefix = "/" + prefix
    return prefix.rstrip("/")


def cors_origins() -> list[str]:
    raw = os.environ.get("CORS_ORIGINS", "")
    return [o.strip() for o in raw.split(",") if o.strip()]
