# app/services/incidents.py
"""
Hellenic Fire Service incident listing → Incident records.

The listing is a server-rendered page with one tab per category. Inside a
tab, plain text markers ("ΣΕ ΕΞΕΛΙΞΗ (3)", "ΜΕΡΙΚΟΣ ΕΛΕΓΧΟΣ (1)", ...) open
a status group and each incident is a coloured bootstrap panel whose
heading holds a small table:

  <div class="panel panel-red">
    <div class="panel-heading"><table><tr>
      <td>ΠΕΡΙΦΕΡΕΙΑ ΑΤΤΙΚΗΣ<br>ΔΗΜΟΣ ΜΑΡΑΘΩΝΟΣ<br><b>ΚΑΛΕΝΤΖΙ</b></td>
      <td>ΕΝΑΡΞΗ <b>21/07/2025 14:05:00</b></td>
    </tr></table> Τελευταία Ενημέρωση 21/07/2025 15:10:00</div>
  </div>

Fields are found by their labels, not their position, so a reordered or
extra cell does not break extraction. Ended incidents ("ΛΗΞΗ") are skipped.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx
from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from app.core.contracts import Incident, IncidentCategory, IncidentStatus
from app.core.errors import FetchError, ParseError
from app.core.keying import incident_key, normalize_greek
from app.core.settings import settings
from app.core.time import parse_local_datetime
from app.services.geocoding import GeocodingResolver, spread_duplicates

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════
# Labels
# ══════════════════════════════════════════════════════════════

# (tab label, fallback tab id, category)
_CATEGORY_TABS: List[Tuple[str, str, IncidentCategory]] = [
    ("ΔΑΣΙΚΕΣ ΠΥΡΚΑΓΙΕΣ", "L1", "forest-fire"),
    ("ΑΣΤΙΚΕΣ ΠΥΡΚΑΓΙΕΣ", "P1", "urban-fire"),
    ("ΠΑΡΟΧΕΣ ΒΟΗΘΕΙΑΣ", "Q1", "assistance"),
]

_STATUS_MARKERS: List[Tuple[str, IncidentStatus]] = [
    ("ΣΕ ΕΞΕΛΙΞΗ", "ongoing"),
    ("ΜΕΡΙΚΟΣ ΕΛΕΓΧΟΣ", "partial-control"),
    ("ΠΛΗΡΗΣ ΕΛΕΓΧΟΣ", "full-control"),
]
_ENDED_MARKER = "ΛΗΞΗ"

_PANEL_COLOUR_STATUS: Dict[str, IncidentStatus] = {
    "panel-red": "ongoing",
    "panel-yellow": "partial-control",
    "panel-green": "full-control",
}

_REGION_LABEL = "ΠΕΡΙΦΕΡΕΙΑ"
_MUNICIPALITY_LABELS = ("ΔΗΜΟΣ", "Δ.")
_START_LABEL = "ΕΝΑΡΞΗ"
_LAST_UPDATE_RE = re.compile(r"ΤΕΛΕΥΤΑΙΑ\s+ΕΝΗΜΕΡΩΣΗ\s*:?\s*(.+)")

# mojibake typical of UTF-8 bytes read as a single-byte codepage
_MOJIBAKE_HINTS = ("Î", "Ï", "�")


def _clean(s: Optional[str]) -> str:
    return " ".join(str(s or "").split())


# ══════════════════════════════════════════════════════════════
# Decoding
# ══════════════════════════════════════════════════════════════

def _looks_greek(text: str) -> bool:
    if _REGION_LABEL not in text:
        return False
    return not any(h in text for h in _MOJIBAKE_HINTS)


def decode_listing(content: bytes, declared: Optional[str] = None) -> str:
    """
    Decode the listing page, trying Greek codepages when the declared charset
    produces mojibake or loses the region labels.
    """
    tried: List[str] = []
    for enc in (declared, "utf-8", "windows-1253", "iso-8859-7"):
        if not enc or enc.lower() in tried:
            continue
        tried.append(enc.lower())
        try:
            text = content.decode(enc)
        except (LookupError, UnicodeDecodeError):
            continue
        if _looks_greek(text):
            if enc != declared:
                logger.info("incidents_decode fallback=%s declared=%s", enc, declared)
            return text
    return content.decode(declared or "utf-8", errors="replace")


# ══════════════════════════════════════════════════════════════
# DOM walking
# ══════════════════════════════════════════════════════════════

def _find_category_sections(soup: BeautifulSoup) -> List[Tuple[IncidentCategory, Tag]]:
    out: List[Tuple[IncidentCategory, Tag]] = []
    for label, fallback_id, category in _CATEGORY_TABS:
        section: Optional[Tag] = None

        # tab link "<a href="#L1">ΔΑΣΙΚΕΣ ΠΥΡΚΑΓΙΕΣ</a>" → pane id
        for a in soup.find_all("a", href=True):
            href = str(a.get("href") or "")
            if href.startswith("#") and label in normalize_greek(a.get_text(" ")):
                section = soup.find(id=href[1:])
                if section is not None:
                    break

        if section is None:
            section = soup.find(id=fallback_id)
        if section is None:
            logger.warning("incidents_section_missing category=%s label=%r", category, label)
            continue
        out.append((category, section))
    return out


def _classes(tag: Tag) -> List[str]:
    c = tag.get("class") or []
    return list(c) if isinstance(c, list) else str(c).split()


def _is_incident_panel(tag: Tag) -> bool:
    if tag.name != "div":
        return False
    cls = _classes(tag)
    if any(c in _PANEL_COLOUR_STATUS for c in cls):
        return True
    return "panel" in cls and tag.find(class_="panel-heading") is not None


def _status_marker(text: str) -> Tuple[bool, Optional[IncidentStatus]]:
    """(is_marker, status). ΛΗΞΗ is a marker with no status."""
    t = normalize_greek(text)
    if not t:
        return False, None
    for marker, status in _STATUS_MARKERS:
        if t.startswith(marker):
            return True, status
    if t.startswith(_ENDED_MARKER):
        return True, None
    return False, None


def _collect_panels(section: Tag) -> List[Tuple[Optional[IncidentStatus], bool, Tag]]:
    """
    Walk a category pane in document order.

    Returns (status, marker_seen, panel). status is the group the panel sits
    in; marker_seen tells whether any status marker preceded it.
    """
    found: List[Tuple[Optional[IncidentStatus], bool, Tag]] = []
    state: Dict[str, Any] = {"status": None, "seen": False}

    def walk(node: Tag) -> None:
        for child in node.children:
            if isinstance(child, Comment):
                continue
            if isinstance(child, NavigableString):
                is_marker, status = _status_marker(str(child))
                if is_marker:
                    state["status"] = status
                    state["seen"] = True
                continue
            if not isinstance(child, Tag):
                continue
            if _is_incident_panel(child):
                found.append((state["status"], state["seen"], child))
                continue
            walk(child)

    walk(section)
    return found


# ══════════════════════════════════════════════════════════════
# Field extraction
# ══════════════════════════════════════════════════════════════

def _lines(cell: Tag) -> List[Tuple[str, bool]]:
    """Split a cell on <br>, returning (text, is_bold) per line."""
    lines: List[Tuple[str, bool]] = []
    buf: List[str] = []
    bold = False

    def flush() -> None:
        nonlocal buf, bold
        text = _clean("".join(buf))
        if text:
            lines.append((text, bold))
        buf = []
        bold = False

    for node in cell.descendants:
        if isinstance(node, Tag):
            if node.name == "br":
                flush()
            continue
        if isinstance(node, Comment) or not isinstance(node, NavigableString):
            continue
        buf.append(str(node))
        if node.parent is not None and node.parent.name in ("b", "strong") and _clean(str(node)):
            bold = True
    flush()
    return lines


def _after_label(text: str, label: str) -> Optional[str]:
    norm = normalize_greek(text)
    idx = norm.find(label)
    if idx < 0:
        return None
    # accent stripping keeps character count for NFC input
    rest = _clean(text[idx + len(label):]).lstrip(":").strip()
    return rest or None


def extract_panel_fields(panel: Tag) -> Dict[str, Optional[str]]:
    heading = panel.find(class_="panel-heading") or panel
    cells = heading.find_all("td") or [heading]

    region: Optional[str] = None
    municipality: Optional[str] = None
    location: Optional[str] = None
    start_raw: Optional[str] = None
    location_candidates: List[Tuple[str, bool]] = []

    for cell in cells:
        for text, is_bold in _lines(cell):
            norm = normalize_greek(text)
            if _START_LABEL in norm:
                if start_raw is None:
                    start_raw = _after_label(text, _START_LABEL)
            elif "ΕΝΗΜΕΡΩΣΗ" in norm:
                continue
            elif region is None and _REGION_LABEL in norm:
                region = text
            elif municipality is None and norm.startswith(_MUNICIPALITY_LABELS):
                municipality = text
            else:
                location_candidates.append((text, is_bold))

    bolds = [t for t, b in location_candidates if b]
    if bolds:
        location = bolds[0]
    elif location_candidates:
        location = location_candidates[0][0]

    last_update_raw: Optional[str] = None
    m = _LAST_UPDATE_RE.search(normalize_greek(heading.get_text(" ")))
    if m:
        last_update_raw = _clean(m.group(1))

    return {
        "region": region,
        "municipality": municipality,
        "location": location,
        "start_raw": start_raw,
        "last_update_raw": last_update_raw,
    }


def _date_field(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    dt = parse_local_datetime(raw)
    return dt.isoformat() if dt else raw


# ══════════════════════════════════════════════════════════════
# Parsing
# ══════════════════════════════════════════════════════════════

def parse_incidents(html: str) -> List[Incident]:
    """
    Parse the listing page. Raises ParseError if none of the category panes
    can be located (markup changed beyond recognition); a bad panel is
    logged and skipped.
    """
    soup = BeautifulSoup(html, "html.parser")
    sections = _find_category_sections(soup)
    if not sections:
        raise ParseError("no incident category sections found in listing")

    out: List[Incident] = []
    seen: set = set()
    skipped = 0

    for category, section in sections:
        for status, marker_seen, panel in _collect_panels(section):
            if status is None and not marker_seen:
                status = next(
                    (s for c, s in _PANEL_COLOUR_STATUS.items() if c in _classes(panel)),
                    None,
                )
            if status is None:
                # ended group
                continue

            try:
                fields = extract_panel_fields(panel)
            except Exception as e:
                skipped += 1
                logger.warning("incidents_panel_unparseable category=%s err=%r", category, e)
                continue

            if not (fields["region"] or fields["municipality"] or fields["location"]):
                skipped += 1
                logger.warning("incidents_panel_skipped category=%s status=%s reason=no_location", category, status)
                continue

            key = incident_key(
                category=category,
                region=fields["region"],
                municipality=fields["municipality"],
                location=fields["location"],
                start_date=fields["start_raw"],
            )
            if key in seen:
                continue
            seen.add(key)

            out.append(
                Incident(
                    id=key,
                    category=category,
                    status=status,
                    region=fields["region"],
                    municipality=fields["municipality"],
                    location=fields["location"],
                    start_date=_date_field(fields["start_raw"]),
                    last_update=_date_field(fields["last_update_raw"]),
                )
            )

    logger.info("incidents_parsed count=%d skipped=%d sections=%d", len(out), skipped, len(sections))
    return out


# ══════════════════════════════════════════════════════════════
# Scraper
# ══════════════════════════════════════════════════════════════

class IncidentScraper:
    source = "incidents"

    def __init__(
        self,
        *,
        resolver: GeocodingResolver,
        client: httpx.AsyncClient | None = None,
        url: str | None = None,
    ) -> None:
        self.resolver = resolver
        self.client = client
        self.url = url or settings.incidents_url

    def _headers(self) -> Dict[str, str]:
        return {
            "User-Agent": settings.incidents_user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "el-GR,el;q=0.9,en-US;q=0.8,en;q=0.7",
        }

    async def _get(self, client: httpx.AsyncClient) -> str:
        try:
            r = await client.get(self.url, headers=self._headers())
            r.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise FetchError(self.source, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise FetchError(self.source, repr(e)) from e
        return decode_listing(r.content, r.charset_encoding)

    async def fetch_html(self) -> str:
        if self.client is not None:
            return await self._get(self.client)
        transport = httpx.AsyncHTTPTransport(retries=1)
        async with httpx.AsyncClient(
            timeout=settings.incidents_timeout_s,
            follow_redirects=True,
            transport=transport,
        ) as client:
            return await self._get(client)

    async def geocode(self, incidents: List[Incident]) -> List[Incident]:
        results = await asyncio.gather(
            *(self.resolver.resolve(i.location, i.municipality, i.region) for i in incidents)
        )
        points = spread_duplicates([r.point() if r else None for r in results])

        out: List[Incident] = []
        for inc, res, pt in zip(incidents, results, points):
            out.append(
                inc.model_copy(
                    update={
                        "coordinates": pt,
                        "geocode_source": res.source if res else None,
                    }
                )
            )
        located = sum(1 for p in points if p is not None)
        logger.info("incidents_geocoded total=%d located=%d", len(out), located)
        return out

    async def fetch_incidents(self) -> List[Incident]:
        html = await self.fetch_html()
        incidents = parse_incidents(html)
        return await self.geocode(incidents)
