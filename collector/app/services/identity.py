"""Stable listing identity derived from marketplace URLs."""

from __future__ import annotations

import hashlib
import re
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

ID_MAX_LENGTH = 200
HASH_LENGTH = 32

TRACKING_PARAMS = {"ref", "fbclid", "gclid", "msclkid", "mc_cid", "mc_eid", "_ga"}

SLUG_PATTERNS = {
    "BaT": (re.compile(r"/listing/([^/?#]+)"), "bat-"),
    "CarsAndBids": (re.compile(r"/auctions/([^/?#]+)"), "cab-"),
    "CollectingCars": (re.compile(r"/(?:cars|lots)/([^/?#]+)"), "cc-"),
}


def _is_tracking_param(key: str) -> bool:
    lowered = key.lower()
    return lowered.startswith("utm_") or lowered in TRACKING_PARAMS


def _without_trailing_slash(url: str) -> str:
    try:
        parts = urlsplit(url)
    except ValueError:
        return url.rstrip("/")
    return urlunsplit(parts._replace(path=parts.path.rstrip("/"))).rstrip("/")


def canonicalize_url(url: str) -> str:
    """Drop the fragment and tracking parameters; keep every other query param in order."""
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if not _is_tracking_param(k)]
    return urlunsplit((parts.scheme, parts.netloc.lower(), parts.path, urlencode(query), ""))


def derive_source_id(source: str, canonical_url: str, explicit_id: Optional[str] = None) -> str:
    if explicit_id and explicit_id.strip():
        return explicit_id.strip()[:ID_MAX_LENGTH]

    url = canonicalize_url(canonical_url)
    try:
        path = urlsplit(url).path.lower()
    except ValueError:
        path = url.lower()

    pattern = SLUG_PATTERNS.get(source)
    if pattern:
        regex, prefix = pattern
        match = regex.search(path)
        if match:
            return f"{prefix}{match.group(1)}"[:ID_MAX_LENGTH]

    stable = _without_trailing_slash(url)
    digest = hashlib.sha256(stable.encode("utf-8")).hexdigest()[:HASH_LENGTH]
    return f"{source.lower()}-{digest}"[:ID_MAX_LENGTH]
