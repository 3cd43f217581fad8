from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────
# Shared
# ──────────────────────────────────────────────────────────────

class GeoPoint(BaseModel):
    lat: float
    lng: float


# ──────────────────────────────────────────────────────────────
# Geocoding
# ──────────────────────────────────────────────────────────────

GeocodeTier = Literal["dataset", "exact", "relaxed", "region", "region_table"]


class GeocodeResult(BaseModel):
    lat: float
    lng: float
    source: str                         # tier tag, e.g. "exact", "region_table"
    query: Optional[str] = None
    municipality: Optional[str] = None  # as reported by the provider
    region: Optional[str] = None
    display_name: Optional[str] = None

    def point(self) -> GeoPoint:
        return GeoPoint(lat=self.lat, lng=self.lng)


class GeocodeCacheEntry(BaseModel):
    query: str
    result: Optional[GeocodeResult] = None  # None = cached miss
    tier: GeocodeTier
    cached_at: float


# ──────────────────────────────────────────────────────────────
# Incidents
# ──────────────────────────────────────────────────────────────

IncidentCategory = Literal["forest-fire", "urban-fire", "assistance"]
IncidentStatus = Literal["ongoing", "partial-control", "full-control"]


class Incident(BaseModel):
    id: str
    category: IncidentCategory
    status: IncidentStatus
    region: Optional[str] = None
    municipality: Optional[str] = None
    location: Optional[str] = None
    start_date: Optional[str] = None   # UTC ISO, or raw text if unparseable
    last_update: Optional[str] = None
    coordinates: Optional[GeoPoint] = None
    geocode_source: Optional[str] = None
    first_seen_at: Optional[str] = None

    @property
    def full_address(self) -> str:
        parts = [p for p in (self.location, self.municipality, self.region) if p]
        parts.append("Greece")
        return ", ".join(parts)


class IncidentList(BaseModel):
    updated_at: Optional[str] = None
    cycle: int = 0
    items: List[Incident] = Field(default_factory=list)


# ──────────────────────────────────────────────────────────────
# 112 warnings
# ──────────────────────────────────────────────────────────────

LocationRole = Literal["fire", "danger", "safe", "mention"]
WarningTier = Literal["immediate", "older"]
IconType = Literal["red", "yellow"]


class WarningLocation(BaseModel):
    name: str
    role: LocationRole = "mention"
    coordinates: Optional[GeoPoint] = None
    geocoded: bool = False
    geocode_source: Optional[str] = None
    municipality: Optional[str] = None
    region: Optional[str] = None


class Warning112(BaseModel):
    id: str
    warning_type: str = "General Warning"
    english_content: str = ""
    greek_content: str = ""
    published_at: str
    source_url: Optional[str] = None
    source_ids: List[str] = Field(default_factory=list)
    regional_unit: Optional[str] = None
    locations: List[WarningLocation] = Field(default_factory=list)
    first_seen_at: Optional[str] = None

    @property
    def primary_location(self) -> Optional[WarningLocation]:
        for loc in self.locations:
            if loc.geocoded and loc.role != "safe":
                return loc
        for loc in self.locations:
            if loc.geocoded:
                return loc
        return self.locations[0] if self.locations else None


class WarningView(Warning112):
    tier: WarningTier
    icon: IconType
    active: bool
    age_s: float


class WarningList(BaseModel):
    updated_at: Optional[str] = None
    cycle: int = 0
    items: List[WarningView] = Field(default_factory=list)


# ──────────────────────────────────────────────────────────────
# Change detection + notifications
# ──────────────────────────────────────────────────────────────

ChangeKind = Literal["created", "updated", "resolved"]
RecordType = Literal["incident", "warning"]


class ChangeEvent(BaseModel):
    kind: ChangeKind
    record_type: RecordType
    key: str
    record: Union[Incident, Warning112]
    previous: Optional[Union[Incident, Warning112]] = None
    notify: bool = False

    @property
    def record_timestamp(self) -> Optional[str]:
        return self.record.first_seen_at

    @property
    def source_timestamp(self) -> Optional[str]:
        if isinstance(self.record, Incident):
            return self.record.start_date
        return self.record.published_at


class CycleReport(BaseModel):
    source: RecordType
    ok: bool
    skipped: bool = False
    count: int = 0
    created: int = 0
    updated: int = 0
    resolved: int = 0
    error: Optional[str] = None
    started_at: str
    duration_s: float = 0.0


class NotificationPayload(BaseModel):
    type: str
    id: str
    title: str
    message: str
    location: Optional[GeoPoint] = None
    timestamp: str
    category: Optional[str] = None
    status: Optional[str] = None
    icon_type: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
