from __future__ import annotations

import hashlib
import re
import unicodedata
from typing import Any, Optional

import orjson


def _orjson_dumps(obj: Any) -> bytes:
    return orjson.dumps(
        obj,
        option=orjson.OPT_SORT_KEYS | orjson.OPT_NON_STR_KEYS,
    )


def sha256_hex24(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()[:24]


def _norm_part(s: Optional[str]) -> str:
    return " ".join(str(s or "").split()).upper()


def incident_key(
    *,
    category: str,
    region: Optional[str],
    municipality: Optional[str],
    location: Optional[str],
    start_date: Optional[str],
) -> str:
    """
    Identity of a fire-service incident.

    The source publishes no ids, so the key is a hash of the fields that stay
    fixed for the lifetime of an incident. Status and last-update are not part
    of it since they change from poll to poll.
    """
    payload = {
        "category": category,
        "region": _norm_part(region),
        "municipality": _norm_part(municipality),
        "location": _norm_part(location),
        "start": _norm_part(start_date),
    }
    return sha256_hex24(_orjson_dumps(payload))


def warning_key(*, source_id: Optional[str], text: str, published_at: Optional[str]) -> str:
    if source_id:
        return f"112:{source_id}"
    payload = {"text": " ".join((text or "").split()), "published_at": published_at or ""}
    return "112:" + sha256_hex24(_orjson_dumps(payload))


def strip_accents(s: str) -> str:
    decomposed = unicodedata.normalize("NFD", s)
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def normalize_greek(s: Optional[str]) -> str:
    """Accent-free, upper-cased, whitespace-collapsed form used for name matching."""
    return " ".join(strip_accents(str(s or "")).upper().split())


_WS_RE = re.compile(r"\s+")
_COMMA_RE = re.compile(r"\s*,\s*")


def geocode_query_key(query: str) -> str:
    q = _WS_RE.sub(" ", (query or "").strip())
    q = _COMMA_RE.sub(", ", q)
    return q.lower()
