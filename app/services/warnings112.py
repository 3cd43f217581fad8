# app/services/warnings112.py
"""
112 Greece emergency activations → Warning112 records.

The feed is an embedded social widget that only fills in after its scripts
run, so the page goes through a headless browser first (PlaywrightRenderer)
and the resulting DOM is parsed with BeautifulSoup.

Posts look like:

  ⚠️ Activation 1⃣1⃣2⃣ ⚠️
  🆘 Wildfire in #Kalamos of the regional unit of #Attica
  ‼️ If you are in the area move away to #Marathonas
  ‼️ Follow the instructions of the Authorities

The Greek version is a separate post published within a few minutes; the two
are merged into one warning. Locations only exist as hashtags inside
sentences, so they are lifted with phrase patterns (fire / danger / safe
roles) and each is geocoded with the regional unit as context.

A warning is active for 24h after publication: "immediate" (red) for the
first 12h, "older" (yellow) afterwards. The tier is never stored; it is
derived from (published_at, now) whenever a warning is read.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from bs4 import BeautifulSoup, Tag
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from app.core.contracts import (
    IconType,
    LocationRole,
    Warning112,
    WarningLocation,
    WarningTier,
    WarningView,
)
from app.core.errors import ParseError, RenderError
from app.core.keying import strip_accents, warning_key
from app.core.settings import settings
from app.core.time import age_seconds, local_tz, parse_iso, utc_now

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════
# Rendering
# ══════════════════════════════════════════════════════════════

class Renderer(Protocol):
    async def render(self, url: str) -> str: ...

    async def aclose(self) -> None: ...


class PlaywrightRenderer:
    """
    Headless Chromium, launched lazily and reused across polls.

    One page at a time: the lock also guards browser (re)creation.
    """

    _LAUNCH_ARGS = [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-gpu",
        "--no-first-run",
        "--no-zygote",
    ]

    def __init__(
        self,
        *,
        timeout_s: float | None = None,
        wait_selector: str | None = None,
        settle_s: float | None = None,
    ) -> None:
        self.timeout_s = float(timeout_s or settings.warnings_render_timeout_s)
        self.wait_selector = wait_selector or settings.warnings_post_selector
        self.settle_s = float(settings.warnings_settle_s if settle_s is None else settle_s)
        self._lock = asyncio.Lock()
        self._playwright = None
        self._browser = None

    async def _ensure_browser(self):
        if self._browser is not None and self._browser.is_connected():
            return self._browser
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        logger.info("renderer_launch engine=chromium")
        self._browser = await self._playwright.chromium.launch(headless=True, args=self._LAUNCH_ARGS)
        return self._browser

    async def render(self, url: str) -> str:
        timeout_ms = int(self.timeout_s * 1000)
        async with self._lock:
            try:
                browser = await self._ensure_browser()
                page = await browser.new_page()
            except PlaywrightError as e:
                raise RenderError("warnings", f"browser unavailable: {e}") from e

            try:
                await page.goto(url, wait_until="networkidle", timeout=timeout_ms)
                try:
                    await page.wait_for_selector(self.wait_selector, timeout=timeout_ms)
                except PlaywrightTimeoutError:
                    logger.warning("renderer_selector_timeout selector=%s url=%s", self.wait_selector, url)
                if self.settle_s > 0:
                    await asyncio.sleep(self.settle_s)
                html = await page.content()
            except PlaywrightTimeoutError as e:
                raise RenderError("warnings", f"navigation timeout: {url}") from e
            except PlaywrightError as e:
                raise RenderError("warnings", f"render failed: {e}") from e
            finally:
                await page.close()

        logger.info("renderer_ok url=%s chars=%d", url, len(html))
        return html

    async def aclose(self) -> None:
        async with self._lock:
            if self._browser is not None:
                await self._browser.close()
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None


# ══════════════════════════════════════════════════════════════
# Text helpers
# ══════════════════════════════════════════════════════════════

def _fold(text: str) -> str:
    """Lower-case, accent-free copy of text with the same length (spans line up)."""
    out = []
    for ch in text:
        f = strip_accents(ch).lower()
        out.append(f if len(f) == 1 else ch)
    return "".join(out)


def _tag_key(s: str) -> str:
    return _fold(s).replace("ς", "σ").replace("_", "").replace("-", "").replace(" ", "")


_GREEK_CHAR_RE = re.compile(r"[Ͱ-Ͽἀ-῿]")
_LATIN_CHAR_RE = re.compile(r"[A-Za-z]")
_HASHTAG_RE = re.compile(r"#(\w+)")


def split_languages(text: str) -> Tuple[str, str]:
    """Split a post into (english, greek) by the script each line is written in."""
    en: List[str] = []
    el: List[str] = []
    for raw in (text or "").splitlines():
        line = " ".join(raw.split())
        if not line:
            continue
        greek = len(_GREEK_CHAR_RE.findall(line))
        latin = len(_LATIN_CHAR_RE.findall(line))
        if greek == 0 and latin == 0:
            continue
        (el if greek > latin else en).append(line)
    return "\n".join(en), "\n".join(el)


def is_112_activation(text: str) -> bool:
    # keycap digits arrive as "1️⃣"; drop the modifiers so they read as 112
    f = _fold(text or "").replace("\ufe0f", "").replace("\u20e3", "")
    has_112 = "112" in f
    return has_112 and ("activation" in f or "ενεργοποιηση" in f)


_TYPE_KEYWORDS: List[Tuple[str, Tuple[str, ...]]] = [
    ("Wildfire Warning", ("wildfire", "wild fire", "πυρκαγια", "φωτια")),
    ("Evacuation Warning", ("evacuation", "evacuate", "εκκενωση", "απομακρυνση")),
    ("Flood Warning", ("flood", "πλημμυρα")),
    ("Smoke Warning", ("smoke", "καπνοσ", "καπνου")),
]


def classify_warning_type(english: str, greek: str) -> str:
    content = _fold(f"{english}\n{greek}").replace("ς", "σ").strip()
    if not content:
        return "General Warning"
    for label, words in _TYPE_KEYWORDS:
        if any(w in content for w in words):
            return label
    return "Emergency Warning"


# ══════════════════════════════════════════════════════════════
# Regional units
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RegionalUnit:
    name: str       # English, used as geocoding context
    name_el: str
    region: str     # administrative region, as the fire service spells it
    variants: Tuple[str, ...] = ()


_RU = RegionalUnit
_REGIONAL_UNITS: List[RegionalUnit] = [
    _RU("Evros", "Έβρου", "Περιφέρεια Ανατολικής Μακεδονίας και Θράκης", ("Έβρος",)),
    _RU("Rhodope", "Ροδόπης", "Περιφέρεια Ανατολικής Μακεδονίας και Θράκης", ("Rodopi", "Ροδόπη")),
    _RU("Xanthi", "Ξάνθης", "Περιφέρεια Ανατολικής Μακεδονίας και Θράκης", ("Ξάνθη",)),
    _RU("Drama", "Δράμας", "Περιφέρεια Ανατολικής Μακεδονίας και Θράκης", ("Δράμα",)),
    _RU("Kavala", "Καβάλας", "Περιφέρεια Ανατολικής Μακεδονίας και Θράκης", ()),
    _RU("Thasos", "Θάσου", "Περιφέρεια Ανατολικής Μακεδονίας και Θράκης", ("Thassos", "Θάσος")),
    _RU("Thessaloniki", "Θεσσαλονίκης", "Περιφέρεια Κεντρικής Μακεδονίας", ("Salonika", "Θεσσαλονίκη")),
    _RU("Imathia", "Ημαθίας", "Περιφέρεια Κεντρικής Μακεδονίας", ()),
    _RU("Pella", "Πέλλας", "Περιφέρεια Κεντρικής Μακεδονίας", ()),
    _RU("Kilkis", "Κιλκίς", "Περιφέρεια Κεντρικής Μακεδονίας", ()),
    _RU("Pieria", "Πιερίας", "Περιφέρεια Κεντρικής Μακεδονίας", ()),
    _RU("Serres", "Σερρών", "Περιφέρεια Κεντρικής Μακεδονίας", ()),
    _RU("Chalkidiki", "Χαλκιδικής", "Περιφέρεια Κεντρικής Μακεδονίας", ("Halkidiki",)),
    _RU("Kozani", "Κοζάνης", "Περιφέρεια Δυτικής Μακεδονίας", ()),
    _RU("Grevena", "Γρεβενών", "Περιφέρεια Δυτικής Μακεδονίας", ()),
    _RU("Kastoria", "Καστοριάς", "Περιφέρεια Δυτικής Μακεδονίας", ()),
    _RU("Florina", "Φλώρινας", "Περιφέρεια Δυτικής Μακεδονίας", ()),
    _RU("Ioannina", "Ιωαννίνων", "Περιφέρεια Ηπείρου", ("Γιάννενα",)),
    _RU("Thesprotia", "Θεσπρωτίας", "Περιφέρεια Ηπείρου", ()),
    _RU("Preveza", "Πρέβεζας", "Περιφέρεια Ηπείρου", ("Πρεβέζης", "Prevezza")),
    _RU("Arta", "Άρτας", "Περιφέρεια Ηπείρου", ()),
    _RU("Larissa", "Λάρισας", "Περιφέρεια Θεσσαλίας", ("Larisa",)),
    _RU("Trikala", "Τρικάλων", "Περιφέρεια Θεσσαλίας", ()),
    _RU("Karditsa", "Καρδίτσας", "Περιφέρεια Θεσσαλίας", ()),
    _RU("Magnesia", "Μαγνησίας", "Περιφέρεια Θεσσαλίας", ("Magnisia",)),
    _RU("Corfu", "Κέρκυρας", "Περιφέρεια Ιονίων Νήσων", ("Kerkyra",)),
    _RU("Zakynthos", "Ζακύνθου", "Περιφέρεια Ιονίων Νήσων", ("Zakinthos", "Zante")),
    _RU("Kefalonia", "Κεφαλονιάς", "Περιφέρεια Ιονίων Νήσων", ("Kefallonia", "Cephalonia", "Κεφαλληνίας")),
    _RU("Lefkada", "Λευκάδας", "Περιφέρεια Ιονίων Νήσων", ("Lefkas",)),
    _RU("Aetolia-Acarnania", "Αιτωλοακαρνανίας", "Περιφέρεια Δυτικής Ελλάδας", ("Aitoloakarnania", "Etoloakarnania")),
    _RU("Achaia", "Αχαΐας", "Περιφέρεια Δυτικής Ελλάδας", ("Achaea", "Αχαίας")),
    _RU("Ilia", "Ηλείας", "Περιφέρεια Δυτικής Ελλάδας", ("Elis", "Eleia", "Ήλιδα")),
    _RU("Phthiotis", "Φθιώτιδας", "Περιφέρεια Στερεάς Ελλάδας", ("Fthiotida",)),
    _RU("Evrytania", "Ευρυτανίας", "Περιφέρεια Στερεάς Ελλάδας", ()),
    _RU("Phocis", "Φωκίδας", "Περιφέρεια Στερεάς Ελλάδας", ("Fokida",)),
    _RU("Boeotia", "Βοιωτίας", "Περιφέρεια Στερεάς Ελλάδας", ("Viotia",)),
    _RU("Euboea", "Εύβοιας", "Περιφέρεια Στερεάς Ελλάδας", ("Evia",)),
    _RU("Attica", "Αττικής", "Περιφέρεια Αττικής", ("Attiki",)),
    _RU("Argolis", "Αργολίδας", "Περιφέρεια Πελοποννήσου", ("Argolida",)),
    _RU("Arcadia", "Αρκαδίας", "Περιφέρεια Πελοποννήσου", ("Arkadia",)),
    _RU("Corinthia", "Κορινθίας", "Περιφέρεια Πελοποννήσου", ("Korinthia",)),
    _RU("Laconia", "Λακωνίας", "Περιφέρεια Πελοποννήσου", ("Lakonia",)),
    _RU("Messenia", "Μεσσηνίας", "Περιφέρεια Πελοποννήσου", ("Messinia",)),
    _RU("Lesbos", "Λέσβου", "Περιφέρεια Βορείου Αιγαίου", ("Lesvos",)),
    _RU("Chios", "Χίου", "Περιφέρεια Βορείου Αιγαίου", ("Khios",)),
    _RU("Samos", "Σάμου", "Περιφέρεια Βορείου Αιγαίου", ()),
    _RU("Rhodes", "Ρόδου", "Περιφέρεια Νοτίου Αιγαίου", ("Rodos",)),
    _RU("Chania", "Χανίων", "Περιφέρεια Κρήτης", ("Hania",)),
    _RU("Rethymno", "Ρεθύμνου", "Περιφέρεια Κρήτης", ("Rethymnon",)),
    _RU("Heraklion", "Ηρακλείου", "Περιφέρεια Κρήτης", ("Iraklion", "Iraklio")),
    _RU("Lasithi", "Λασιθίου", "Περιφέρεια Κρήτης", ("Lassithi",)),
]
del _RU

_UNIT_INDEX: Dict[str, RegionalUnit] = {}
for _unit in _REGIONAL_UNITS:
    for _name in (_unit.name, _unit.name_el, *_unit.variants):
        _UNIT_INDEX[_tag_key(_name)] = _unit
del _unit, _name


def regional_unit_of(name: Optional[str]) -> Optional[RegionalUnit]:
    if not name:
        return None
    return _UNIT_INDEX.get(_tag_key(name))


# ══════════════════════════════════════════════════════════════
# Location extraction
# ══════════════════════════════════════════════════════════════

_NON_LOCATION_TAGS = {
    _tag_key(t)
    for t in (
        "112", "Fire", "Wildfire", "Emergency", "Evacuation", "Alert", "Warning",
        "Φωτιά", "Εκκένωση", "Κίνδυνος", "Προειδοποίηση", "Δασική", "Πυρκαγιά",
        "112Greece", "Activation", "Ενεργοποίηση",
    )
}

_END = r"(?:‼|⚠|🆘|$)"
_FLAGS = re.IGNORECASE | re.MULTILINE

# patterns run on _fold(text): lower case, no accents, final sigma kept
_FIRE_PATTERNS = [
    re.compile(r"(?:wild)?fire\s+in\s+(.*?)(?:\s+of\s+the\s+regional|" + _END + r")", _FLAGS),
    re.compile(r"πυρκαγια\s+(?:σε\s+|στην?\s+|στον?\s+)?(?:περιοχη\s+)?(.*?)(?:\s+τη[σς]\s+περιφερειακη[σς]|" + _END + r")", _FLAGS),
]
_EVAC_PATTERNS = [
    re.compile(
        r"if\s+you\s+are\s+in\s+(?:the\s+)?(?:area\s*)?(.*?)\s*move\s+away\s+(?:via\s+(.*?)\s+)?to\s+(.*?)(?:\.|" + _END + r")",
        _FLAGS,
    ),
    re.compile(
        r"αν\s+βρισκεστε\s+στ\w*\s+(?:περιοχ\w*\s*)?(.*?)\s*απομακρυνθειτε\s+(?:μεσω\s+(.*?)\s+)?προ[σς]\s+(.*?)(?:\.|" + _END + r")",
        _FLAGS,
    ),
]
_REGIONAL_CONTEXT_PATTERNS = [
    re.compile(r"regional\s+unit\s+of\s+#(\w+)", _FLAGS),
    re.compile(r"περιφερειακη[σς]\s+ενοτητα[σς]\s+#(\w+)", _FLAGS),
]


def extract_hashtags(text: str) -> List[str]:
    """Location-looking hashtags in order of appearance, deduplicated."""
    out: List[str] = []
    seen = set()
    for tag in _HASHTAG_RE.findall(text or ""):
        key = _tag_key(tag)
        if len(key) <= 1 or key in _NON_LOCATION_TAGS or key.isdigit() or key in seen:
            continue
        seen.add(key)
        out.append(tag)
    return out


def extract_regional_context(text: str) -> Optional[RegionalUnit]:
    folded = _fold(text or "")
    for rx in _REGIONAL_CONTEXT_PATTERNS:
        m = rx.search(folded)
        if m:
            unit = regional_unit_of(text[m.start(1):m.end(1)])
            if unit:
                return unit
    # any hashtag that names a regional unit
    for tag in _HASHTAG_RE.findall(text or ""):
        unit = regional_unit_of(tag)
        if unit:
            return unit
    return None


@dataclass
class ExtractedLocations:
    fire: List[str] = field(default_factory=list)
    danger: List[str] = field(default_factory=list)
    safe: List[str] = field(default_factory=list)
    regional_unit: Optional[RegionalUnit] = None

    def roles(self) -> List[Tuple[str, LocationRole]]:
        out: List[Tuple[str, LocationRole]] = []
        seen = set()
        for role, names in (("fire", self.fire), ("danger", self.danger), ("safe", self.safe)):
            for n in names:
                k = _tag_key(n)
                if k in seen:
                    continue
                seen.add(k)
                out.append((n, role))  # type: ignore[arg-type]
        return out


def _span(text: str, m: re.Match, group: int) -> str:
    if m.group(group) is None:
        return ""
    return text[m.start(group):m.end(group)]


def _drop_units(names: Sequence[str]) -> List[str]:
    return [n for n in names if regional_unit_of(n) is None]


def extract_locations(text: str) -> ExtractedLocations:
    info = ExtractedLocations(regional_unit=extract_regional_context(text))
    if not text:
        return info
    folded = _fold(text)

    has_fire = False
    for rx in _FIRE_PATTERNS:
        m = rx.search(folded)
        if m:
            has_fire = True
            info.fire = extract_hashtags(_span(text, m, 1))
            break

    has_evac = False
    in_the_area = False
    for rx in _EVAC_PATTERNS:
        m = rx.search(folded)
        if m:
            has_evac = True
            info.danger = extract_hashtags(_span(text, m, 1))
            info.safe = extract_hashtags(_span(text, m, 3))
            in_the_area = "area" in folded[m.start():m.start(1) + 1] or "περιοχ" in folded[m.start():m.start(1) + 1]
            break

    # "If you are in the area move away to X": the area is the fire location
    if has_evac and not info.danger and info.fire and in_the_area:
        info.danger = list(info.fire)
        info.fire = []

    if not has_fire and not has_evac:
        info.danger = extract_hashtags(text)

    info.fire = _drop_units(info.fire)
    info.danger = _drop_units(info.danger)
    info.safe = _drop_units(info.safe)
    return info


def _display_name(tag: str) -> str:
    return tag.replace("_", " ").strip()


# ══════════════════════════════════════════════════════════════
# Post parsing
# ══════════════════════════════════════════════════════════════

@dataclass
class RawPost:
    source_id: Optional[str]
    text: str
    published_at: datetime
    url: Optional[str] = None
    english: str = ""
    greek: str = ""
    # published_at was derived from an "N hours ago" label and shifts with `now`
    relative_time: bool = False


_POST_SELECTORS = (".sk-post-item", ".sk-ww-twitter-feed-item", "article", "[data-testid=tweet]")
_BODY_SELECTORS = (
    ".sk-post-body",
    ".sk-ww-twitter-feed-item-text",
    "[data-testid=tweetText]",
    ".tweet-text",
    ".sk-post-text",
)
_STATUS_ID_RE = re.compile(r"/status(?:es)?/(\d+)")
_RELATIVE_RE = re.compile(
    r"\b(\d+)\s*(s|sec|secs|second|seconds|m|min|mins|minute|minutes|h|hr|hrs|hour|hours|d|day|days)\b(?:\s+ago)?",
    re.IGNORECASE,
)
_ABSOLUTE_FORMATS = (
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
    "%Y-%m-%d %H:%M:%S",
)


def _text_with_breaks(node: Tag) -> str:
    for br in node.find_all("br"):
        br.replace_with("\n")
    for block in node.find_all(["p", "div", "li"]):
        block.append("\n")
    text = node.get_text()
    return "\n".join(" ".join(line.split()) for line in text.splitlines() if line.strip())


def _parse_relative(text: str, now: datetime) -> Optional[datetime]:
    m = _RELATIVE_RE.search(text)
    if not m:
        return None
    n = int(m.group(1))
    unit = m.group(2).lower()
    if unit.startswith("s"):
        delta = timedelta(seconds=n)
    elif unit.startswith("m"):
        delta = timedelta(minutes=n)
    elif unit.startswith("h"):
        delta = timedelta(hours=n)
    else:
        delta = timedelta(days=n)
    return now - delta


def _parse_epoch(value: str) -> Optional[datetime]:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    if f > 1e12:
        f /= 1000.0
    try:
        return datetime.fromtimestamp(f, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_post_time(node: Tag, now: datetime) -> Tuple[Optional[datetime], bool]:
    """Post timestamp in UTC, plus whether it came from a relative label."""
    t = node.select_one("time[datetime]")
    if t is not None:
        dt = parse_iso(str(t.get("datetime")))
        if dt:
            return dt, False

    for attr in ("data-time", "data-timestamp", "data-date", "data-created-at"):
        holder = node if node.has_attr(attr) else node.find(attrs={attr: True})
        if holder is None:
            continue
        raw = str(holder.get(attr) or "")
        dt = parse_iso(raw) or _parse_epoch(raw)
        if dt:
            return dt, False

    for el in node.select("time, [class*=date], [class*=time]"):
        text = " ".join(el.get_text(" ").split())
        if not text:
            continue
        dt = parse_iso(text)
        if dt:
            return dt, False
        for fmt in _ABSOLUTE_FORMATS:
            try:
                # source prints Athens wall-clock time
                local = datetime.strptime(text, fmt).replace(tzinfo=local_tz())
                return local.astimezone(timezone.utc), False
            except ValueError:
                continue
        dt = _parse_relative(text, now)
        if dt:
            return dt, True
    return None, False


def _post_identity(node: Tag) -> Tuple[Optional[str], Optional[str]]:
    for a in node.find_all("a", href=True):
        href = str(a.get("href") or "")
        m = _STATUS_ID_RE.search(href)
        if m:
            return m.group(1), href
    for attr in ("data-id", "data-post-id", "data-tweet-id"):
        if node.has_attr(attr):
            return str(node.get(attr)), None
    return None, None


def parse_posts(html: str, now: datetime) -> List[RawPost]:
    """
    Pull 112 activation posts out of a rendered feed.

    Raises ParseError when the page has no post containers at all (the
    widget did not render). Individual unusable posts are logged and skipped.
    """
    soup = BeautifulSoup(html, "html.parser")
    nodes: List[Tag] = []
    for sel in _POST_SELECTORS:
        nodes = soup.select(sel)
        if nodes:
            break
    if not nodes:
        raise ParseError("no post containers in rendered feed")

    posts: List[RawPost] = []
    for node in nodes:
        source_id, url = _post_identity(node)
        published, relative = parse_post_time(node, now)

        body = None
        for sel in _BODY_SELECTORS:
            body = node.select_one(sel)
            if body is not None and body.get_text(strip=True):
                break
            body = None
        text = _text_with_breaks(body if body is not None else node)

        if not text or not is_112_activation(text):
            continue
        if published is None:
            logger.warning("warnings_post_skipped id=%s reason=no_timestamp", source_id)
            continue

        english, greek = split_languages(text)
        posts.append(
            RawPost(
                source_id=source_id,
                text=text,
                published_at=published,
                url=url,
                english=english,
                greek=greek,
                relative_time=relative,
            )
        )
    logger.info("warnings_posts nodes=%d activations=%d", len(nodes), len(posts))
    return posts


# ══════════════════════════════════════════════════════════════
# Pairing + drafting
# ══════════════════════════════════════════════════════════════

def _location_count(text: str) -> int:
    return len(extract_locations(text).roles())


def pair_posts(posts: Sequence[RawPost], *, window_s: float | None = None) -> List[List[RawPost]]:
    """
    Group an English-only post with the Greek-only post published closest
    to it within the window. Posts carrying both languages stand alone.
    Order follows the input.
    """
    window = float(settings.warnings_pair_window_s if window_s is None else window_s)
    used: set = set()
    groups: List[List[RawPost]] = []

    for i, p in enumerate(posts):
        if i in used:
            continue
        used.add(i)
        group = [p]
        english_only = bool(p.english) and not p.greek
        greek_only = bool(p.greek) and not p.english
        if english_only or greek_only:
            best: Optional[int] = None
            best_gap = window + 1.0
            for j, q in enumerate(posts):
                if j in used:
                    continue
                other_ok = (bool(q.greek) and not q.english) if english_only else (bool(q.english) and not q.greek)
                if not other_ok:
                    continue
                gap = abs((q.published_at - p.published_at).total_seconds())
                if gap > window or gap >= best_gap:
                    continue
                if abs(_location_count(p.text) - _location_count(q.text)) > 3:
                    continue
                best, best_gap = j, gap
            if best is not None:
                used.add(best)
                group.append(posts[best])
        groups.append(group)
    return groups


def draft_warning(group: Sequence[RawPost]) -> Warning112:
    english = "\n".join(p.english for p in group if p.english)
    greek = "\n".join(p.greek for p in group if p.greek)

    # the English post is canonical when present
    lead = next((p for p in group if p.english and not p.greek), group[0])
    published = lead.published_at.astimezone(timezone.utc).isoformat()

    info = extract_locations(english) if english else ExtractedLocations()
    if not info.roles():
        info = extract_locations(greek)
    if info.regional_unit is None:
        info.regional_unit = extract_regional_context(greek) or extract_regional_context(english)

    locations = [WarningLocation(name=_display_name(n), role=role) for n, role in info.roles()]

    # a relative stamp moves every poll, so only the text keys such posts
    key_time = None if lead.relative_time else published

    return Warning112(
        id=warning_key(source_id=lead.source_id, text=lead.text, published_at=key_time),
        warning_type=classify_warning_type(english, greek),
        english_content=english,
        greek_content=greek,
        published_at=published,
        source_url=lead.url,
        source_ids=[p.source_id for p in group if p.source_id],
        regional_unit=info.regional_unit.name if info.regional_unit else None,
        locations=locations,
    )


def parse_warnings(html: str, now: datetime) -> List[Warning112]:
    """Rendered feed → ungeocoded warnings within the retention horizon."""
    retention_s = settings.warnings_retention_h * 3600.0
    out: List[Warning112] = []
    seen: set = set()
    dropped = 0
    for group in pair_posts(parse_posts(html, now)):
        w = draft_warning(group)
        age = age_seconds(w.published_at, now)
        if age is None or age > retention_s:
            dropped += 1
            continue
        if w.id in seen:
            continue
        seen.add(w.id)
        out.append(w)
    logger.info("warnings_parsed count=%d expired=%d", len(out), dropped)
    return out


# ══════════════════════════════════════════════════════════════
# Tier (always computed on read)
# ══════════════════════════════════════════════════════════════

def warning_tier(published_at: str, now: Optional[datetime] = None) -> Optional[Tuple[WarningTier, IconType]]:
    """None once the warning is past the retention horizon."""
    age = age_seconds(published_at, now)
    if age is None:
        return None
    age = max(age, 0.0)
    if age <= settings.warnings_immediate_h * 3600.0:
        return "immediate", "red"
    if age <= settings.warnings_retention_h * 3600.0:
        return "older", "yellow"
    return None


def to_view(w: Warning112, now: Optional[datetime] = None) -> WarningView:
    ref = now or utc_now()
    tier = warning_tier(w.published_at, ref)
    age = max(age_seconds(w.published_at, ref) or 0.0, 0.0)
    return WarningView(
        **w.model_dump(),
        tier=tier[0] if tier else "older",
        icon=tier[1] if tier else "yellow",
        active=tier is not None,
        age_s=age,
    )


# ══════════════════════════════════════════════════════════════
# Scraper
# ══════════════════════════════════════════════════════════════

class WarningScraper:
    source = "warnings"

    def __init__(self, *, resolver, renderer: Renderer | None = None, url: str | None = None) -> None:
        self.resolver = resolver
        self.renderer: Renderer = renderer or PlaywrightRenderer()
        self.url = url or settings.warnings_url

    async def fetch_html(self) -> str:
        try:
            return await self.renderer.render(self.url)
        except RenderError:
            raise
        except Exception as e:
            raise RenderError(self.source, repr(e)) from e

    async def _geocode_one(self, name: str, unit: Optional[RegionalUnit]) -> WarningLocation:
        res = await self.resolver.resolve(name, unit.name if unit else None, unit.region if unit else None)
        if res is None:
            return WarningLocation(name=name, geocoded=False)
        return WarningLocation(
            name=name,
            coordinates=res.point(),
            geocoded=True,
            geocode_source=res.source,
            municipality=res.municipality,
            region=res.region or (unit.region if unit else None),
        )

    async def geocode(self, w: Warning112) -> Warning112:
        unit = regional_unit_of(w.regional_unit)
        primary = [loc for loc in w.locations if loc.role != "safe"]
        safe = [loc for loc in w.locations if loc.role == "safe"]

        resolved = await asyncio.gather(*(self._geocode_one(loc.name, unit) for loc in primary))
        by_name: Dict[str, WarningLocation] = {
            loc.name: r.model_copy(update={"role": loc.role}) for loc, r in zip(primary, resolved)
        }

        # safe zones only matter for the map when nothing else could be placed
        if safe and not any(r.geocoded for r in resolved):
            safe_resolved = await asyncio.gather(*(self._geocode_one(loc.name, unit) for loc in safe))
            for loc, r in zip(safe, safe_resolved):
                by_name[loc.name] = r.model_copy(update={"role": "safe"})

        locations = [by_name.get(loc.name, loc) for loc in w.locations]
        return w.model_copy(update={"locations": locations})

    async def fetch_warnings(self, now: Optional[datetime] = None) -> List[Warning112]:
        ref = now or utc_now()
        html = await self.fetch_html()
        drafts = parse_warnings(html, ref)
        out = list(await asyncio.gather(*(self.geocode(w) for w in drafts)))
        located = sum(1 for w in out if any(loc.geocoded for loc in w.locations))
        logger.info("warnings_geocoded total=%d located=%d", len(out), located)
        return out

    async def aclose(self) -> None:
        await self.renderer.aclose()
