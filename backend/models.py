"""Toronto Safety Backend — Pydantic Models"""

from typing import Any, Optional
from pydantic import BaseModel


class Incident(BaseModel):
    id: str
    type: str
    timestamp: str  # ISO-8601, UTC
    address: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    source: Optional[str] = None


class GeocodeResponse(BaseModel):
    lat: float
    lng: float
    raw: dict[str, Any]


class IncidentsResponse(BaseModel):
    radiusKm: float
    days: int
    count: int
    incidents: list[Incident]
    notice: Optional[str] = None
    debug: Optional[dict[str, Any]] = None


class MetaResponse(BaseModel):
    lastUpdated: Optional[Any] = None  # epoch ms as published by the layer
    source: str
