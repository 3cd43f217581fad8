# app/services/geocoding.py
"""
Free-text Greek location → coordinates.

Resolution is an ordered chain of strategies, first in-envelope hit wins:

  dataset       local Greek settlements file (optional, no network)
  exact         "{location}, {municipality}, Greece"     (Nominatim)
  relaxed       "{municipality}, Greece"                 (Nominatim)
  region        "{region}, Greece"                       (Nominatim)
  region_table  fixed capital coordinates per region     (optional, no network)

Anything else is NotFound (None). Callers render the record without a pin.

Nominatim usage policy: one request at a time, >= 1s between requests,
identifying User-Agent. Every provider query string is cached for the life of
the process, so incidents that share a municipality cost one call.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx
import orjson

from app.core.contracts import GeocodeCacheEntry, GeocodeResult, GeocodeTier, GeoPoint
from app.core.errors import GeocodeError
from app.core.keying import geocode_query_key, normalize_greek
from app.core.settings import settings

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════
# Coordinate helpers
# ══════════════════════════════════════════════════════════════

def _safe_float(x: Any) -> Optional[float]:
    try:
        if isinstance(x, str):
            x = x.strip().replace(",", ".")
        f = float(x)
        if math.isfinite(f):
            return f
    except Exception:
        return None
    return None


def normalize_coordinate(value: Any, limit: float) -> Optional[float]:
    """
    Bring a degree value into [-limit, limit].

    Some sources drop the decimal separator and ship e.g. 370551454 for
    37.0551454. Such values are divided by 10 until they fit.
    """
    f = _safe_float(value)
    if f is None:
        return None
    steps = 0
    while abs(f) > limit and steps < 20:
        f /= 10.0
        steps += 1
    if abs(f) > limit:
        return None
    return round(f, 7)


def normalize_pair(lat: Any, lon: Any) -> Optional[Tuple[float, float]]:
    nlat = normalize_coordinate(lat, 90.0)
    nlon = normalize_coordinate(lon, 180.0)
    if nlat is None or nlon is None:
        return None
    return nlat, nlon


def in_greece(lat: float, lon: float) -> bool:
    return (
        settings.greece_min_lat <= lat <= settings.greece_max_lat
        and settings.greece_min_lon <= lon <= settings.greece_max_lon
    )


def _offset_within_envelope(p: GeoPoint, n: int) -> GeoPoint:
    dist = 0.01 * n
    for step in range(8):
        angle = math.pi * 2 * (n + step) / 8
        lat = p.lat + dist * math.sin(angle)
        lng = p.lng + dist * math.cos(angle)
        if in_greece(lat, lng):
            return GeoPoint(lat=lat, lng=lng)
    return p


def spread_duplicates(points: Sequence[Optional[GeoPoint]]) -> List[Optional[GeoPoint]]:
    """
    Nudge repeated coordinates apart so map markers do not stack.

    The n-th repeat of a point moves 0.01*n degrees (~1km per step) at angle
    2*pi*n/8. The first occurrence keeps its position. When the offset would
    leave the Greece envelope the angle is rotated in 45 degree steps; if no
    direction fits the repeat keeps the original point.
    """
    seen: Dict[Tuple[float, float], int] = {}
    out: List[Optional[GeoPoint]] = []
    for p in points:
        if p is None:
            out.append(None)
            continue
        k = (round(p.lat, 6), round(p.lng, 6))
        n = seen.get(k, 0)
        seen[k] = n + 1
        if n == 0:
            out.append(p)
            continue
        out.append(_offset_within_envelope(p, n))
    return out


# ══════════════════════════════════════════════════════════════
# Greek name normalisation
# ══════════════════════════════════════════════════════════════

_MUNICIPALITY_PREFIXES = ("ΔΗΜΟΣ ", "Δ. ", "Δ.")
_REGION_PREFIXES = ("ΠΕΡΙΦΕΡΕΙΑ ", "ΠΕΡΙΦΕΡΕΙΑΚΗ ΕΝΟΤΗΤΑ ", "Π.Ε. ")


def normalize_municipality(name: Optional[str]) -> str:
    n = normalize_greek(name)
    for prefix in _MUNICIPALITY_PREFIXES:
        if n.startswith(prefix):
            return n[len(prefix):].strip()
    return n


def normalize_region(name: Optional[str]) -> str:
    n = normalize_greek(name)
    for prefix in _REGION_PREFIXES:
        if n.startswith(prefix):
            return n[len(prefix):].strip()
    return n


def municipality_parts(name: Optional[str]) -> List[str]:
    """'Δ. ΣΠΑΡΤΗΣ - ΜΥΣΤΡΑ' → ['ΣΠΑΡΤΗΣ', 'ΜΥΣΤΡΑ']"""
    base = normalize_municipality(name)
    if not base:
        return []
    return [p.strip() for p in base.split(" - ") if p.strip()]


def clean_municipality_for_query(name: Optional[str]) -> str:
    s = unicodedata.normalize("NFC", " ".join(str(name or "").split()))
    up = normalize_greek(s)
    for prefix in _MUNICIPALITY_PREFIXES:
        if up.startswith(prefix):
            return s[len(prefix):].strip()
    return s


def name_variations(name: str) -> List[str]:
    """
    Inflected forms of a Greek place name (accent-free, upper case).

    The same village shows up as ΚΑΛΑΜΟΣ, ΚΑΛΑΜΟΥ or ΚΑΛΑΜΟ depending on the
    sentence it was lifted from.
    """
    n = normalize_greek(name)
    if not n:
        return []
    out = [n]

    def add(v: str) -> None:
        if v and v not in out:
            out.append(v)

    if n.endswith("ΟΥ"):
        add(n[:-2] + "ΟΣ")
        add(n[:-2] + "Ο")
    elif n.endswith("ΟΣ"):
        add(n[:-1])
        add(n[:-1] + "Ν")
    elif n.endswith("ΟΝ"):
        add(n[:-1])
        add(n[:-1] + "Σ")
    elif n.endswith("Ο"):
        add(n + "Σ")
        add(n + "Ν")
        if n.endswith("ΙΟ"):
            add(n[:-1])
    elif n.endswith("ΑΣ") or n.endswith("ΗΣ"):
        add(n[:-1])
    elif n.endswith("Α") or n.endswith("Η"):
        add(n + "Σ")
    elif n.endswith("Ι"):
        add(n + "Ο")
    return out


# ══════════════════════════════════════════════════════════════
# Region capitals (last-resort pin for incidents with a known region)
# ══════════════════════════════════════════════════════════════

_REGION_CENTERS: Dict[str, Tuple[float, float]] = {
    "ΑΤΤΙΚΗΣ": (37.9838, 23.7275),
    "ΚΕΝΤΡΙΚΗΣ ΜΑΚΕΔΟΝΙΑΣ": (40.6401, 22.9444),
    "ΔΥΤΙΚΗΣ ΕΛΛΑΔΑΣ": (38.2466, 21.7359),
    "ΘΕΣΣΑΛΙΑΣ": (39.6383, 22.4179),
    "ΚΡΗΤΗΣ": (35.3387, 25.1442),
    "ΑΝΑΤΟΛΙΚΗΣ ΜΑΚΕΔΟΝΙΑΣ ΚΑΙ ΘΡΑΚΗΣ": (41.1169, 25.4045),
    "ΗΠΕΙΡΟΥ": (39.6675, 20.8511),
    "ΠΕΛΟΠΟΝΝΗΣΟΥ": (37.5047, 22.3742),
    "ΔΥΤΙΚΗΣ ΜΑΚΕΔΟΝΙΑΣ": (40.3007, 21.7887),
    "ΣΤΕΡΕΑΣ ΕΛΛΑΔΑΣ": (38.9000, 22.4331),
    "ΒΟΡΕΙΟΥ ΑΙΓΑΙΟΥ": (39.1000, 26.5547),
    "ΝΟΤΙΟΥ ΑΙΓΑΙΟΥ": (36.4335, 28.2183),
    "ΙΟΝΙΩΝ ΝΗΣΩΝ": (39.6243, 19.9217),
}


def region_center(region: Optional[str]) -> Optional[Tuple[float, float]]:
    key = normalize_region(region)
    if not key:
        return None
    if key in _REGION_CENTERS:
        return _REGION_CENTERS[key]
    for name, center in _REGION_CENTERS.items():
        if name in key or key in name:
            return center
    return None


# ══════════════════════════════════════════════════════════════
# Local dataset of Greek settlements
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SettlementEntry:
    name: str
    municipality: str
    region: str
    lat: float
    lng: float
    population: int = 0


class GreekPlacesDataset:
    """
    In-memory index over a JSON list of settlements:

        [{"region": ..., "municipality": ..., "city": ...,
          "population": ..., "latitude": ..., "longitude": ...}, ...]

    Keys are matched case-insensitively. Coordinates may be large-integer
    encoded and are normalised on load.
    """

    def __init__(self, entries: Sequence[SettlementEntry]):
        self._by_name: Dict[str, List[SettlementEntry]] = {}
        for e in entries:
            self._by_name.setdefault(normalize_greek(e.name), []).append(e)
        self.size = len(entries)

    @classmethod
    def from_records(cls, records: Sequence[Dict[str, Any]]) -> "GreekPlacesDataset":
        entries: List[SettlementEntry] = []
        skipped = 0
        for raw in records:
            rec = {str(k).lower(): v for k, v in (raw or {}).items()}
            name = str(rec.get("city") or rec.get("name") or "").strip()
            pair = normalize_pair(rec.get("latitude"), rec.get("longitude"))
            if not name or pair is None or not in_greece(*pair):
                skipped += 1
                continue
            try:
                population = int(rec.get("population") or 0)
            except (TypeError, ValueError):
                population = 0
            entries.append(
                SettlementEntry(
                    name=name,
                    municipality=str(rec.get("municipality") or ""),
                    region=str(rec.get("region") or ""),
                    lat=pair[0],
                    lng=pair[1],
                    population=population,
                )
            )
        if skipped:
            logger.info("geocode_dataset skipped=%d (no name or coordinates)", skipped)
        return cls(entries)

    @classmethod
    def load(cls, path: str | Path) -> "GreekPlacesDataset":
        data = orjson.loads(Path(path).read_bytes())
        if not isinstance(data, list) or not data:
            raise ValueError(f"settlement dataset at {path} is empty or not a list")
        ds = cls.from_records(data)
        logger.info("geocode_dataset loaded=%d path=%s", ds.size, path)
        return ds

    def lookup(
        self,
        name: Optional[str],
        *,
        municipality: Optional[str] = None,
        region: Optional[str] = None,
    ) -> Optional[SettlementEntry]:
        if not name:
            return None

        candidates: List[SettlementEntry] = []
        for variant in name_variations(name):
            candidates.extend(self._by_name.get(variant, []))
        if not candidates:
            return None

        region_key = normalize_region(region)
        if region_key:
            candidates = [
                c for c in candidates
                if region_key in normalize_region(c.region) or normalize_region(c.region) in region_key
            ]
            if not candidates:
                return None

        wanted = municipality_parts(municipality)
        if wanted:
            local = [
                c for c in candidates
                if any(w in municipality_parts(c.municipality) for w in wanted)
            ]
            if local:
                candidates = local

        return max(candidates, key=lambda c: c.population)


# ══════════════════════════════════════════════════════════════
# Strategy chain
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ResolveContext:
    location: str
    municipality: str
    region: str


def _q_exact(ctx: ResolveContext) -> Optional[str]:
    if not ctx.location:
        return None
    parts = [ctx.location]
    if ctx.municipality:
        parts.append(ctx.municipality)
    parts.append("Greece")
    return ", ".join(parts)


def _q_relaxed(ctx: ResolveContext) -> Optional[str]:
    if not ctx.municipality:
        return None
    return f"{ctx.municipality}, Greece"


def _q_region(ctx: ResolveContext) -> Optional[str]:
    if not ctx.region:
        return None
    return f"{ctx.region}, Greece"


# (tier, query builder). Order is resolution order.
PROVIDER_STRATEGIES: List[Tuple[GeocodeTier, Callable[[ResolveContext], Optional[str]]]] = [
    ("exact", _q_exact),
    ("relaxed", _q_relaxed),
    ("region", _q_region),
]


def _is_retryable_status(code: int) -> bool:
    return code == 429 or code >= 500


class GeocodingResolver:
    """Resolve(location, municipality, region) → GeocodeResult | None."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        dataset: GreekPlacesDataset | None = None,
        min_interval_s: float | None = None,
        region_fallback: bool | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._owns_client = client is None
        self.dataset = dataset
        self.min_interval_s = float(
            settings.geocoder_min_interval_s if min_interval_s is None else min_interval_s
        )
        self.region_fallback = (
            settings.geocoder_region_fallback if region_fallback is None else region_fallback
        )
        self._sleep = sleep
        self._clock = clock

        self._cache: Dict[str, GeocodeCacheEntry] = {}
        self._lock = asyncio.Lock()
        self._last_request_at: Optional[float] = None

        self.hits = 0
        self.misses = 0
        self.provider_calls = 0

    @classmethod
    def from_settings(cls) -> "GeocodingResolver":
        dataset = None
        if settings.geocoder_dataset_path:
            try:
                dataset = GreekPlacesDataset.load(settings.geocoder_dataset_path)
            except Exception as e:
                logger.warning("geocode_dataset unavailable path=%s err=%s", settings.geocoder_dataset_path, e)
        return cls(dataset=dataset)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            transport = httpx.AsyncHTTPTransport(retries=1)
            self._client = httpx.AsyncClient(
                timeout=settings.geocoder_timeout_s,
                follow_redirects=True,
                transport=transport,
                headers={"User-Agent": settings.geocoder_user_agent},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # ── public API ──

    async def resolve(
        self,
        location_text: Optional[str],
        municipality_hint: Optional[str],
        region: Optional[str] = None,
    ) -> Optional[GeocodeResult]:
        ctx = ResolveContext(
            location=" ".join(str(location_text or "").split()),
            municipality=clean_municipality_for_query(municipality_hint),
            region=" ".join(str(region or "").split()),
        )
        if not (ctx.location or ctx.municipality or ctx.region):
            return None

        if self.dataset is not None and ctx.location:
            entry = self.dataset.lookup(ctx.location, municipality=ctx.municipality, region=ctx.region)
            if entry is not None:
                return GeocodeResult(
                    lat=entry.lat,
                    lng=entry.lng,
                    source="dataset",
                    municipality=entry.municipality or None,
                    region=entry.region or None,
                    display_name=entry.name,
                )

        tried: set[str] = set()
        for tier, build in PROVIDER_STRATEGIES:
            query = build(ctx)
            if not query:
                continue
            key = geocode_query_key(query)
            if key in tried:
                continue
            tried.add(key)
            result = await self.lookup(query, tier)
            if result is not None:
                return result

        if self.region_fallback:
            center = region_center(ctx.region)
            if center is not None:
                return GeocodeResult(lat=center[0], lng=center[1], source="region_table", region=ctx.region)

        logger.info("geocode_not_found location=%r municipality=%r region=%r", ctx.location, ctx.municipality, ctx.region)
        return None

    async def lookup(self, query: str, tier: GeocodeTier) -> Optional[GeocodeResult]:
        """One provider query, cached by its normalised text."""
        key = geocode_query_key(query)
        cached = self._cache.get(key)
        if cached is not None:
            self.hits += 1
            return cached.result

        async with self._lock:
            # another coroutine may have filled it while we waited
            cached = self._cache.get(key)
            if cached is not None:
                self.hits += 1
                return cached.result
            self.misses += 1
            try:
                result = await self._fetch_with_retry(query, tier)
            except GeocodeError as e:
                logger.warning("geocode_failed tier=%s err=%s", tier, e)
                return None
            self._cache[key] = GeocodeCacheEntry(
                query=query,
                result=result,
                tier=tier,
                cached_at=time.time(),
            )
            return result

    def cached(self, query: str) -> Optional[GeocodeCacheEntry]:
        return self._cache.get(geocode_query_key(query))

    def stats(self) -> Dict[str, Any]:
        return {
            "cache_size": len(self._cache),
            "hits": self.hits,
            "misses": self.misses,
            "provider_calls": self.provider_calls,
            "dataset_size": self.dataset.size if self.dataset else 0,
        }

    # ── provider ──

    async def _fetch_with_retry(self, query: str, tier: GeocodeTier) -> Optional[GeocodeResult]:
        # caller holds self._lock
        for attempt in range(2):
            try:
                return await self._fetch_once(query, tier)
            except GeocodeError as e:
                if not e.retryable or attempt == 1:
                    raise
                logger.info("geocode_retry tier=%s query=%r err=%s", tier, query, e)
        return None

    async def _wait_for_slot(self) -> None:
        if self._last_request_at is not None:
            wait = self.min_interval_s - (self._clock() - self._last_request_at)
            if wait > 0:
                await self._sleep(wait)
        self._last_request_at = self._clock()

    async def _fetch_once(self, query: str, tier: GeocodeTier) -> Optional[GeocodeResult]:
        await self._wait_for_slot()
        self.provider_calls += 1

        params = {
            "q": query,
            "format": "json",
            "addressdetails": "1",
            "limit": "3",
            "countrycodes": settings.geocoder_country,
            "accept-language": settings.geocoder_language,
        }
        logger.debug("nominatim_query tier=%s query=%r", tier, query)

        try:
            r = await self._get_client().get(
                settings.nominatim_url,
                params=params,
                headers={"User-Agent": settings.geocoder_user_agent},
            )
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise GeocodeError(query, f"transport: {e!r}", retryable=True) from e

        if _is_retryable_status(r.status_code):
            raise GeocodeError(query, f"HTTP {r.status_code}", retryable=True)
        if r.status_code >= 400:
            raise GeocodeError(query, f"HTTP {r.status_code}")

        try:
            data = r.json()
        except ValueError as e:
            raise GeocodeError(query, "malformed response body") from e
        if not isinstance(data, list):
            raise GeocodeError(query, f"unexpected payload type {type(data).__name__}")

        for item in data:
            if not isinstance(item, dict):
                continue
            pair = normalize_pair(item.get("lat"), item.get("lon"))
            if pair is None:
                continue
            if not in_greece(*pair):
                logger.info("geocode_out_of_envelope query=%r lat=%s lon=%s", query, pair[0], pair[1])
                continue
            addr = item.get("address") or {}
            return GeocodeResult(
                lat=pair[0],
                lng=pair[1],
                source=tier,
                query=query,
                municipality=(
                    addr.get("municipality") or addr.get("city") or addr.get("town") or addr.get("village")
                ),
                region=addr.get("state"),
                display_name=item.get("display_name"),
            )
        return None
