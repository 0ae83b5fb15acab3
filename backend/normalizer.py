"""Toronto Safety Backend — Feature-service attribute normalisation

ArcGIS layers published by different municipalities (and by different
departments of the same one) name the same concept differently. Each
canonical incident field is resolved from a ranked list of candidate keys;
the first non-empty value wins.
"""

import math
import uuid
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

from config import MCI_SOURCE_TAG

# ── Candidate keys (ranked) ──────────────────────────────────────

ID_FIELDS = ["OBJECTID", "ObjectID", "objectid", "ObjectId", "FID"]
EVENT_ID_FIELDS = [
    "EVENT_UNIQUE_ID", "event_unique_id", "EVENT_ID", "event_id",
    "INCIDENT_ID", "incident_id", "INCIDENT_NUMBER", "CASE_NUMBER",
    "SERVICE_REQUEST_ID", "service_request_id", "SR_NUMBER", "REQUEST_ID",
]
TYPE_FIELDS = [
    "OFFENCE", "OFFENSE", "offence", "offense", "MCI_CATEGORY", "CATEGORY",
    "Category", "category", "CRIME_TYPE", "INCIDENT_TYPE", "REQUEST_TYPE",
    "ServiceRequestType", "SERVICE_REQUEST_TYPE", "TYPE", "Type", "type",
    "DESCRIPTION", "Description",
]
ADDRESS_FIELDS = [
    "ADDRESS", "Address", "address", "LOCATION", "Location", "location",
    "INTERSECTION", "STREET", "NEIGHBOURHOOD_140", "NEIGHBOURHOOD_158",
    "HOOD_158", "HOOD_140", "WARD", "Ward",
]
DATE_FIELDS = [
    "OCC_DATE", "OCCURRENCE_DATE", "OCCURRED_ON_DATE", "OccurrenceDate",
    "occurrence_date", "REPORT_DATE", "REPORTED_DATE", "ReportDate",
    "report_date", "CREATION_DATE", "CreationDate", "CREATED_DATE",
    "CreatedDate", "created_date", "DATE", "Date", "EditDate",
    "last_edited_date", "EDIT_DATE",
]
LAT_FIELDS = ["LAT_WGS84", "LATITUDE", "Latitude", "latitude", "LAT", "Lat", "lat", "Y", "y"]
LNG_FIELDS = [
    "LONG_WGS84", "LONGITUDE", "Longitude", "longitude", "LONG", "LNG",
    "LON", "Long", "Lng", "lng", "lon", "X", "x",
]

DEFAULT_TYPE = "Incident"

_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S.%f",
    "%Y/%m/%d",
    "%Y/%m/%d %H:%M:%S",
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %I:%M:%S %p",
    "%d-%b-%y",
    "%d-%b-%Y",
    "%d-%b-%Y %H:%M:%S",
    "%b %d, %Y",
    "%B %d, %Y",
)


# ── Helpers ──────────────────────────────────────────────────────

def random_id() -> str:
    return uuid.uuid4().hex


def to_iso(dt: datetime) -> str:
    """UTC instant as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _first_present(attrs: dict, keys: list[str]) -> Any:
    for key in keys:
        value = attrs.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        f = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _parse_date_string(raw: str) -> Optional[datetime]:
    raw = raw.strip().strip('"')
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt)
        except ValueError:
            continue
    try:
        return parsedate_to_datetime(raw)
    except (TypeError, ValueError, IndexError):
        return None


def _epoch_ms_to_datetime(value: float) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def normalize_arcgis_date(value: Any) -> Optional[str]:
    """ISO timestamp from an ArcGIS date value, or None.

    Numbers are always epoch milliseconds (the ArcGIS date type); strings are
    parsed as calendar dates. Naive values are taken as UTC.
    """
    if value is None:
        return None
    if _is_number(value):
        dt = _epoch_ms_to_datetime(value)
        return to_iso(dt) if dt else None
    if isinstance(value, str):
        dt = _parse_date_string(value)
        return to_iso(dt) if dt else None
    return None


def _resolve_coordinates(attrs: dict, geometry: Optional[dict]) -> tuple[Optional[float], Optional[float]]:
    if geometry:
        gx = _to_float(geometry.get("x", geometry.get("longitude")))
        gy = _to_float(geometry.get("y", geometry.get("latitude")))
        if gx is not None and gy is not None:
            return gy, gx

    lat = _to_float(_first_present(attrs, LAT_FIELDS))
    lng = _to_float(_first_present(attrs, LNG_FIELDS))
    if lat is None or lng is None:
        return None, None
    return lat, lng


def _resolve_id(attrs: dict) -> str:
    value = _first_present(attrs, ID_FIELDS)
    if value is None:
        value = _first_present(attrs, EVENT_ID_FIELDS)
    return str(value) if value is not None else random_id()


def _resolve_timestamp(attrs: dict) -> str:
    for key in DATE_FIELDS:
        ts = normalize_arcgis_date(attrs.get(key))
        if ts:
            return ts
    return now_iso()


# ── Public API ───────────────────────────────────────────────────

def normalize_attributes(attributes: Optional[dict], geometry: Optional[dict] = None,
                         source: Optional[str] = None) -> dict:
    """Map one feature's attribute bag (+ optional geometry) to an incident dict.

    Never fails: a record without a usable timestamp is stamped with the
    current time, and one without coordinates comes back with lat/lng None
    for the caller to drop.
    """
    attrs = attributes or {}
    lat, lng = _resolve_coordinates(attrs, geometry)
    address = _first_present(attrs, ADDRESS_FIELDS)
    return {
        "id": _resolve_id(attrs),
        "type": str(_first_present(attrs, TYPE_FIELDS) or DEFAULT_TYPE),
        "timestamp": _resolve_timestamp(attrs),
        "address": str(address) if address is not None else None,
        "lat": lat,
        "lng": lng,
        "source": source,
    }


def _parse_hour(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        hour = float(str(value).strip())
    except ValueError:
        return None
    return int(hour) if math.isfinite(hour) else None


def compose_date_hour(epoch_ms: Any, hour: Any) -> Optional[str]:
    """Calendar day of ``epoch_ms`` (UTC) at ``hour``:00, as ISO. Hour defaults to 0."""
    if not _is_number(epoch_ms):
        return None
    day = _epoch_ms_to_datetime(epoch_ms)
    if day is None:
        return None
    midnight = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
    try:
        return to_iso(midnight + timedelta(hours=_parse_hour(hour) or 0))
    except OverflowError:
        return None


def normalize_mci_attributes(attributes: Optional[dict], source: str = MCI_SOURCE_TAG) -> dict:
    """Major Crime Indicators variant.

    The MCI layer splits occurrence/report time into a date column (epoch ms,
    midnight) and an hour column; occurrence wins over report, and either
    composed value wins over the plain date columns.
    """
    a = attributes or {}
    incident = normalize_attributes(a, source=source)

    incident["type"] = str(a.get("OFFENCE") or a.get("MCI_CATEGORY") or DEFAULT_TYPE)
    address = a.get("NEIGHBOURHOOD_140") or a.get("NEIGHBOURHOOD_158")
    incident["address"] = str(address) if address else None
    incident["timestamp"] = (
        compose_date_hour(a.get("OCC_DATE"), a.get("OCC_HOUR"))
        or compose_date_hour(a.get("REPORT_DATE"), a.get("REPORT_HOUR"))
        or normalize_arcgis_date(a.get("OCC_DATE"))
        or normalize_arcgis_date(a.get("REPORT_DATE"))
        or now_iso()
    )
    return incident
