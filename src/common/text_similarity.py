from __future__ import annotations

import hashlib
import math
import re
from typing import Sequence
from urllib.parse import parse_qsl, urlencode, urlparse

_WHITESPACE_RE = re.compile(r"\s+")
_HOST_FALLBACK_RE = re.compile(r"https?://(?:www\.)?([^/]+)", re.IGNORECASE)
_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://")

# Weights of the combined fuzzy score.
CHARACTER_WEIGHT = 0.6
JACCARD_WEIGHT = 0.4


def normalize_text(value: str | None) -> str:
    """Lower-case, trim and collapse runs of whitespace to a single space."""
    if not value:
        return ""
    return _WHITESPACE_RE.sub(" ", str(value)).strip().lower()


def content_hash(value: str | None) -> str:
    """Stable hash of the normalized text (case and whitespace insensitive)."""
    return hashlib.sha256(normalize_text(value).encode("utf-8")).hexdigest()[:16]


def lcs_length(a: str, b: str) -> int:
    """Length of the longest common subsequence of two strings.

    Bit-parallel formulation: one bit per character of the shorter string,
    one big-int update per character of the longer one.
    """
    if not a or not b:
        return 0
    if len(b) > len(a):
        a, b = b, a

    masks: dict[str, int] = {}
    for i, ch in enumerate(b):
        masks[ch] = masks.get(ch, 0) | (1 << i)

    width = len(b)
    full = (1 << width) - 1
    row = full
    for ch in a:
        matched = row & masks.get(ch, 0)
        row = ((row + matched) | (row - matched)) & full

    return width - bin(row).count("1")


def character_similarity(a: str | None, b: str | None) -> float:
    """LCS length divided by the longer normalized string."""
    s1 = normalize_text(a)
    s2 = normalize_text(b)
    if not s1 and not s2:
        return 1.0
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    return lcs_length(s1, s2) / max(len(s1), len(s2))


def word_set(value: str | None) -> set[str]:
    """Lower-cased whitespace tokens."""
    if not value:
        return set()
    return {tok for tok in str(value).lower().split() if tok}


def jaccard_similarity(a: str | None, b: str | None) -> float:
    """|intersection| / |union| of the two word sets."""
    w1 = word_set(a)
    w2 = word_set(b)
    if not w1 and not w2:
        return 1.0
    if not w1 or not w2:
        return 0.0
    return len(w1 & w2) / len(w1 | w2)


def fuzzy_similarity(a: str | None, b: str | None) -> float:
    """Weighted blend: 0.6 * character similarity + 0.4 * word Jaccard."""
    return CHARACTER_WEIGHT * character_similarity(a, b) + JACCARD_WEIGHT * jaccard_similarity(a, b)


def cosine_similarity(u: Sequence[float] | None, v: Sequence[float] | None) -> float:
    """Cosine similarity of two vectors; 0.0 for empty, mismatched or zero vectors."""
    if not u or not v or len(u) != len(v):
        return 0.0
    dot = sum(float(x) * float(y) for x, y in zip(u, v))
    nu = math.sqrt(sum(float(x) * float(x) for x in u))
    nv = math.sqrt(sum(float(y) * float(y) for y in v))
    if nu == 0.0 or nv == 0.0:
        return 0.0
    return dot / (nu * nv)


def extract_domain(url: str | None) -> str:
    """Hostname of a URL, lower-cased, without a leading 'www.'. Empty if unparseable."""
    if not url:
        return ""
    try:
        host = urlparse(str(url)).hostname or ""
    except ValueError:
        host = ""
    if not host:
        match = _HOST_FALLBACK_RE.search(str(url))
        host = match.group(1) if match else ""
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


# Query parameters that identify a campaign or click, not a page.
TRACKING_PARAMS = frozenset({"fbclid", "gclid", "msclkid", "mc_cid", "mc_eid", "ref_src"})


def normalize_url(url: str | None) -> str:
    """Comparison form of a URL: host without 'www.', path and query, lower-cased.

    Scheme, fragment and trailing slash are dropped, as are tracking
    parameters such as utm_* or gclid. Other query parameters keep their order.
    """
    if not url:
        return ""
    raw = str(url).strip()
    try:
        parsed = urlparse(raw)
        host = (parsed.hostname or "").lower()
        port = parsed.port
    except ValueError:
        host, port = "", None
    if not host:
        fallback = _SCHEME_RE.sub("", raw.lower()).split("#", 1)[0]
        fallback = fallback[4:] if fallback.startswith("www.") else fallback
        return fallback.rstrip("/")

    if host.startswith("www."):
        host = host[4:]
    if port:
        host = f"{host}:{port}"
    path = parsed.path.rstrip("/")
    params = [
        (k, v)
        for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if not k.lower().startswith("utm_") and k.lower() not in TRACKING_PARAMS
    ]
    query = f"?{urlencode(params)}" if params else ""
    return f"{host}{path}{query}".lower()


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, float(value)))
