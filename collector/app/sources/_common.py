"""Shared pieces for marketplace adapters: raw field container, HTML helpers, base adapter."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup, Tag

from collector.app.services.identity import canonicalize_url
from collector.app.services.page_client import PageClient, PageFetchError

logger = logging.getLogger(__name__)

MONTHS = {
    "january": 1,
    "february": 2,
    "march": 3,
    "april": 4,
    "may": 5,
    "june": 6,
    "july": 7,
    "august": 8,
    "september": 9,
    "sept": 9,
    "october": 10,
    "november": 11,
    "december": 12,
}
ENDED_ON_RE = re.compile(
    r"auction\s+(?:ended|ends|ended\s+on|ends\s+on|closes|closed)\s+([A-Za-z]+\s+\d{1,2},\s+\d{4})",
    re.IGNORECASE,
)
MILEAGE_RE = re.compile(r"([\d,]+)\s*(miles?|mi|km|kilometres?|kilometers?)\b", re.IGNORECASE)
END_TIME_ATTRS = ("data-end-time", "data-endtime", "data-auction-end", "datetime")
KNOWN_MAKES = (
    "Alfa Romeo", "Aston Martin", "Audi", "Bentley", "BMW", "Chevrolet", "De Tomaso", "Ferrari", "Ford",
    "Jaguar", "Lamborghini", "Lancia", "Land Rover", "Lotus", "Maserati", "McLaren", "Mercedes-Benz",
    "Mercedes", "Porsche", "Rolls-Royce", "Toyota", "Nissan", "Honda", "Volkswagen",
)
YEAR_PREFIX_RE = re.compile(r"\b((?:19|20)\d{2})\b")


@dataclass
class RawFields:
    """Best-effort observations from one marketplace page. Every field may be missing."""

    url: Optional[str] = None
    title: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    raw_price_text: Optional[str] = None
    current_bid: Optional[float] = None
    bid_count: Optional[int] = None
    status: Optional[str] = None  # ACTIVE|ENDED|SOLD|NO_SALE
    end_time: Optional[datetime] = None
    mileage: Optional[float] = None
    mileage_unit: Optional[str] = None
    transmission: Optional[str] = None
    engine: Optional[str] = None
    exterior_color: Optional[str] = None
    interior_color: Optional[str] = None
    vin: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    seller_notes: Optional[str] = None
    images: List[str] = field(default_factory=list)
    reserve_status: Optional[str] = None
    body_style: Optional[str] = None

    def has_any_data(self) -> bool:
        return any(
            value is not None
            for value in (self.title, self.current_bid, self.bid_count, self.status, self.end_time)
        )


def parse_price(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    match = re.search(r"\d[\d,]*(?:\.\d+)?", text)
    if not match:
        return None
    try:
        return float(match.group(0).replace(",", ""))
    except ValueError:
        return None


def parse_bid_count(text: Optional[str]) -> Optional[int]:
    if not text:
        return None
    match = re.search(r"(\d+)", text.replace(",", ""))
    return int(match.group(1)) if match else None


def parse_mileage_text(text: Optional[str]) -> tuple[Optional[float], Optional[str]]:
    if not text:
        return None, None
    match = MILEAGE_RE.search(text)
    if not match:
        return None, None
    digits = match.group(1).replace(",", "")
    if not digits:
        return None, None
    unit = "km" if match.group(2).lower().startswith("k") else "miles"
    return float(digits), unit


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = value.strip()
    if re.fullmatch(r"\d{10,13}", text):
        seconds = int(text) / (1000 if len(text) == 13 else 1)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_month_name_date(text: str) -> Optional[datetime]:
    """Parse "March 3, 2024" as noon UTC on that day."""
    match = re.match(r"^([A-Za-z]+)\s+(\d{1,2}),\s+(\d{4})$", text.strip())
    if not match:
        return None
    month = MONTHS.get(match.group(1).lower())
    if month is None:
        return None
    try:
        return datetime(int(match.group(3)), month, int(match.group(2)), 12, tzinfo=timezone.utc)
    except ValueError:
        return None


def end_date_from_json_ld(soup: BeautifulSoup) -> Optional[datetime]:
    for script in soup.select("script[type='application/ld+json']"):
        raw = script.string or script.get_text()
        if not raw:
            continue
        try:
            parsed = json.loads(raw)
        except ValueError:
            continue
        candidates = parsed if isinstance(parsed, list) else [parsed]
        for obj in candidates:
            if not isinstance(obj, dict):
                continue
            end_date = obj.get("endDate")
            for nested in ("auction", "offers"):
                if end_date is None and isinstance(obj.get(nested), dict):
                    end_date = obj[nested].get("endDate")
            if isinstance(end_date, str):
                found = parse_datetime(end_date)
                if found:
                    return found
    return None


def parse_end_time(soup: BeautifulSoup, selector: str, *, text_fallback: bool = False) -> Optional[datetime]:
    element = soup.select_one(selector)
    if element is not None:
        value = next((element.get(attr) for attr in END_TIME_ATTRS if element.get(attr)), None)
        found = parse_datetime(value or element.get_text(strip=True))
        if found:
            return found
    found = end_date_from_json_ld(soup)
    if found or not text_fallback:
        return found
    match = ENDED_ON_RE.search(soup.get_text(" "))
    return parse_month_name_date(match.group(1)) if match else None


def first_text(root: BeautifulSoup | Tag, selectors: Iterable[str]) -> Optional[str]:
    for selector in selectors:
        element = root.select_one(selector)
        if element is not None:
            text = element.get_text(" ", strip=True)
            if text:
                return text
    return None


def first_price(soup: BeautifulSoup, selectors: Sequence[str]) -> tuple[Optional[str], Optional[float]]:
    """First selector yielding a positive price wins; the last seen text is kept otherwise."""
    raw_text: Optional[str] = None
    for selector in selectors:
        element = soup.select_one(selector)
        if element is None:
            continue
        raw_text = element.get_text(" ", strip=True)
        amount = parse_price(raw_text)
        if amount:
            return raw_text, amount
    return raw_text, None


def image_source(element: Tag) -> Optional[str]:
    return element.get("src") or element.get("data-src") or None


def collect_images(soup: BeautifulSoup, selector: str, base_url: str) -> List[str]:
    images: List[str] = []
    for element in soup.select(selector):
        src = image_source(element)
        if not src or src.startswith("data:"):
            continue
        absolute = urljoin(base_url, src)
        if absolute not in images:
            images.append(absolute)
    return images


def extract_listing_links(html: str, origin: str, path_markers: Sequence[str]) -> List[str]:
    """Absolute, canonicalized listing links in page order, first occurrence only."""
    soup = BeautifulSoup(html, "html.parser")
    links: List[str] = []
    seen = set()
    for anchor in soup.select("a[href]"):
        href = anchor.get("href", "").strip()
        if not href or href.startswith(("mailto:", "tel:", "javascript:")):
            continue
        absolute = urljoin(origin, href)
        path = urlsplit(absolute).path
        if not any(path.startswith(marker) and len(path) > len(marker) for marker in path_markers):
            continue
        canonical = canonicalize_url(absolute)
        if canonical in seen:
            continue
        seen.add(canonical)
        links.append(canonical)
    return links


def with_page_param(base_url: str, page: int, param: str = "page") -> str:
    if page <= 1:
        return base_url
    parts = urlsplit(base_url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != param]
    query.append((param, str(page)))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def keyed_specs(soup: BeautifulSoup, selector: str) -> Dict[str, str]:
    """Spec pairs under ``selector`` from table rows, dt/dd pairs or ``Label: value`` items."""
    specs: Dict[str, str] = {}
    for item in soup.select(selector):
        if item.name == "tr":
            cells = item.find_all(["td", "th"])
            if len(cells) < 2:
                continue
            key = cells[0].get_text(" ", strip=True)
            text = cells[-1].get_text(" ", strip=True)
        elif item.name == "dt":
            sibling = item.find_next_sibling("dd")
            key = item.get_text(" ", strip=True)
            text = sibling.get_text(" ", strip=True) if sibling is not None else ""
        else:
            key, _, text = item.get_text(" ", strip=True).partition(":")
        key = key.strip().rstrip(":").lower()
        text = text.strip()
        if key and text and key not in specs:
            specs[key] = text
    return specs


class SourceAdapter:
    """One marketplace: discovery, summary and detail extraction.

    Subclasses provide the site constants and the pure ``parse_*`` functions.
    Only transport failures escape these methods.
    """

    source: str = ""
    platform: str = ""
    auction_house: str = ""
    origin: str = ""
    path_markers: Sequence[str] = ()

    def __init__(self, client: PageClient):
        self.client = client
        self._search_base: Dict[str, Optional[str]] = {}

    def search_urls(self, query: str) -> List[str]:
        raise NotImplementedError

    def active_url(self, page: int) -> str:
        raise NotImplementedError

    def parse_summary(self, html: str) -> RawFields:
        raise NotImplementedError

    def parse_detail(self, html: str, base_url: str) -> RawFields:
        raise NotImplementedError

    def parse_active_cards(self, html: str) -> List[RawFields]:
        raise NotImplementedError

    async def resolve_search_base(self, query: str) -> Optional[str]:
        """First candidate search URL that fetches cleanly; remembered per query."""
        if query in self._search_base:
            return self._search_base[query]
        chosen: Optional[str] = None
        for candidate in self.search_urls(query):
            try:
                await self.client.fetch_html(candidate)
            except PageFetchError as exc:
                logger.debug("search base rejected", extra={"source": self.source, "url": candidate, "error": str(exc)})
                continue
            chosen = candidate
            break
        self._search_base[query] = chosen
        return chosen

    async def discover_candidate_urls(self, page: int, query: str) -> List[str]:
        base = await self.resolve_search_base(query)
        if base is None:
            return []
        html = await self.client.fetch_html(with_page_param(base, page))
        return extract_listing_links(html, self.origin, self.path_markers)

    async def list_active(self, page: int) -> List[RawFields]:
        html = await self.client.fetch_html(self.active_url(page))
        return self.parse_active_cards(html)

    async def fetch_summary(self, url: str, *, force_refresh: bool = False) -> RawFields:
        html = await self.client.fetch_html(url, force_refresh=force_refresh)
        summary = self.parse_summary(html)
        summary.url = url
        return summary

    async def fetch_detail(self, url: str) -> RawFields:
        html = await self.client.fetch_html(url)
        detail = self.parse_detail(html, url)
        detail.url = url
        return detail


def title_year_and_make(title: Optional[str]) -> tuple[Optional[int], Optional[str]]:
    """Year token and a known make following it, e.g. "19k-Mile 2001 Ferrari 360" -> (2001, "Ferrari")."""
    if not title:
        return None, None
    match = YEAR_PREFIX_RE.search(title)
    year = int(match.group(1)) if match else None
    rest = title[match.end():].strip() if match else title.strip()
    lowered = rest.lower()
    make = next((known for known in KNOWN_MAKES if lowered.startswith(known.lower())), None)
    return year, make
