"""Turns best-effort adapter output into canonical listing records.

Everything in here is pure: the same raw observations and scrape stamp always
produce the same record, which keeps the orchestrator and writer easy to test.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

from collector.app.core.run_config import ScrapeMeta
from collector.app.services.identity import canonicalize_url, derive_source_id
from collector.app.sources._common import RawFields

logger = logging.getLogger(__name__)

KM_PER_MILE = 1.609344
END_TIME_GRACE = timedelta(seconds=60)
TERMINAL_STATUSES = {"sold", "unsold", "delisted"}

DISALLOWED_TITLE_PATTERNS = (
    r"\breplica\b",
    r"\btribute\b",
    r"\bkit\b",
    r"\brebody\b",
    r"\bposter\b",
    r"\bmodel\s*car\b",
    r"\btoy\b",
    r"\bwheel\b",
    r"\bengine\b",
    r"\bluggage\b",
    r"\bscale\s*model\b",
    r"\bmemorabilia\b",
    r"\bparts[\s-]+only\b",
)
SOLD_HINT_RE = re.compile(r"\bsold\b", re.IGNORECASE)
DELISTED_HINT_RE = re.compile(r"\b(withdrawn|cancelled|canceled|removed|delisted)\b", re.IGNORECASE)
YEAR_RE = re.compile(r"\b(19\d{2}|20\d{2})\b")
MODEL_SEPARATOR_RE = re.compile(r"\s+[-|–—]\s+")
POSTAL_RE = re.compile(r"\b(\d{5})(?:-\d{4})?\b")
US_SHORT_RE = re.compile(r"^\s*([^,]+),\s*([A-Z]{2})\s*(?:\d{5}(?:-\d{4})?)?\s*$")
US_LONG_RE = re.compile(r"^\s*([^,]+),\s*([A-Za-z ]+?)\s+\d{5}(?:-\d{4})?\s*$")
UK_RE = re.compile(r"\b(uk|united kingdom|england|scotland|wales|northern ireland)\b", re.IGNORECASE)

US_STATE_CODES = {
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA", "HI", "ID", "IL", "IN", "IA", "KS", "KY",
    "LA", "ME", "MD", "MA", "MI", "MN", "MS", "MO", "MT", "NE", "NV", "NH", "NJ", "NM", "NY", "NC", "ND",
    "OH", "OK", "OR", "PA", "RI", "SC", "SD", "TN", "TX", "UT", "VT", "VA", "WA", "WV", "WI", "WY", "DC",
}
COUNTRY_ALIASES = {
    "usa": "USA",
    "us": "USA",
    "united states": "USA",
    "united states of america": "USA",
    "uk": "UK",
    "united kingdom": "UK",
    "great britain": "UK",
    "uae": "UAE",
    "united arab emirates": "UAE",
}
KNOWN_COUNTRIES = (
    "Germany", "France", "Italy", "Spain", "Portugal", "Netherlands", "Belgium", "Switzerland", "Austria",
    "Ireland", "Sweden", "Norway", "Denmark", "Finland", "Poland", "Czechia", "Czech Republic", "Hungary",
    "Romania", "Bulgaria", "Greece", "Turkey", "Canada", "Australia", "Japan",
)

PLATFORMS = {"BaT": "BRING_A_TRAILER", "CarsAndBids": "CARS_AND_BIDS", "CollectingCars": "COLLECTING_CARS"}
AUCTION_HOUSES = {"BaT": "Bring a Trailer", "CarsAndBids": "Cars & Bids", "CollectingCars": "Collecting Cars"}


@dataclass
class Location:
    location_raw: Optional[str] = None
    country: str = "Unknown"
    region: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None


@dataclass
class CanonicalListing:
    source: str
    source_id: str
    source_url: str
    title: str
    platform: str
    year: int
    make: str
    model: str
    status: str
    sale_date: date
    scrape_timestamp: datetime
    trim: Optional[str] = None
    body_style: Optional[str] = None
    mileage_km: Optional[int] = None
    mileage_unit: str = "km"
    vin: Optional[str] = None
    exterior_color: Optional[str] = None
    interior_color: Optional[str] = None
    engine: Optional[str] = None
    transmission: Optional[str] = None
    current_bid: Optional[float] = None
    bid_count: Optional[int] = None
    final_price: Optional[float] = None
    original_currency: Optional[str] = None
    raw_price_text: Optional[str] = None
    reserve_status: Optional[str] = None
    list_date: Optional[date] = None
    auction_date: Optional[date] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    location: Location = field(default_factory=Location)
    location_string: Optional[str] = None
    description_text: Optional[str] = None
    seller_notes: Optional[str] = None
    photos: List[str] = field(default_factory=list)
    auction_house: Optional[str] = None
    data_quality_score: int = 0

    @property
    def photos_count(self) -> int:
        return len(self.photos)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def is_target_listing(make: Optional[str], title: Optional[str], target_make: str) -> bool:
    """Population filter: the make matches AND the title is not a replica, part or collectible."""
    title = (title or "").strip()
    make = (make or "").strip()
    target = re.escape(target_make.strip())

    make_matches = bool(make) and make.lower() == target_make.strip().lower()
    title_matches = re.search(rf"\b{target}\b", title, re.IGNORECASE) is not None
    if not make_matches and not title_matches:
        return False

    patterns = DISALLOWED_TITLE_PATTERNS + (
        rf"\b{target}-powered\b",
        rf"\b{target}\s+(?:movie|film|documentary)\b",
    )
    return not any(re.search(pattern, title, re.IGNORECASE) for pattern in patterns)


def _year_in_range(year: int, now: Optional[datetime] = None) -> bool:
    current = (now or datetime.now(timezone.utc)).year
    return 1900 <= year <= current + 1


def parse_year_from_title(title: Optional[str], now: Optional[datetime] = None) -> Optional[int]:
    if not title:
        return None
    match = YEAR_RE.search(title)
    if not match:
        return None
    year = int(match.group(1))
    return year if _year_in_range(year, now) else None


def resolve_year(structured: Optional[int], title: Optional[str], now: Optional[datetime] = None) -> Optional[int]:
    if structured and _year_in_range(structured, now):
        return structured
    return parse_year_from_title(title, now)


def parse_model_trim(title: str, make: str) -> tuple[Optional[str], Optional[str]]:
    """Model is the first token after the make, the rest up to a spaced separator is the trim."""
    index = title.lower().find(make.lower())
    if index == -1:
        return None, None
    after = title[index + len(make):].strip()
    if not after:
        return make, None
    head = MODEL_SEPARATOR_RE.split(after, maxsplit=1)[0]
    tokens = head.split()
    if not tokens:
        return after, None
    return tokens[0], " ".join(tokens[1:]) or None


def normalize_mileage_to_km(value: Optional[float], unit: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    unit = (unit or "").strip().lower()
    if "km" in unit or unit.startswith("kilomet"):
        return int(round(value))
    if "mile" in unit or unit == "mi":
        return int(round(value * KM_PER_MILE))
    return None


def parse_currency_from_text(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    if "$" in text or re.search(r"\bUSD\b", text, re.IGNORECASE):
        return "USD"
    if "£" in text or re.search(r"\bGBP\b", text, re.IGNORECASE):
        return "GBP"
    if "€" in text or re.search(r"\bEUR\b", text, re.IGNORECASE):
        return "EUR"
    if "¥" in text or re.search(r"\bJPY\b", text, re.IGNORECASE):
        return "JPY"
    if re.search(r"\bCHF\b", text, re.IGNORECASE):
        return "CHF"
    return None


def _ended_outcome(raw_price_text: Optional[str], current_bid: Optional[float]) -> str:
    if SOLD_HINT_RE.search(raw_price_text or "") or (current_bid is not None and current_bid > 0):
        return "sold"
    return "unsold"


def map_auction_status(
    source_status: Optional[str],
    raw_price_text: Optional[str] = None,
    current_bid: Optional[float] = None,
    end_time: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> str:
    status = (source_status or "").strip().upper()
    if status == "ACTIVE":
        return "active"
    if status == "SOLD":
        return "sold"
    if status == "NO_SALE":
        return "unsold"
    if status == "ENDED":
        return _ended_outcome(raw_price_text, current_bid)

    if DELISTED_HINT_RE.search(raw_price_text or ""):
        return "delisted"

    now = now or datetime.now(timezone.utc)
    if end_time is not None and end_time < now - END_TIME_GRACE:
        return _ended_outcome(raw_price_text, current_bid)

    # No signal either way: only a live bid makes it active. Unknowns stay unsold.
    if current_bid is not None and current_bid > 0:
        return "active"
    return "unsold"


def _normalize_country(token: str) -> Optional[str]:
    lowered = token.strip().lower()
    if not lowered:
        return None
    if lowered in COUNTRY_ALIASES:
        return COUNTRY_ALIASES[lowered]
    return next((known for known in KNOWN_COUNTRIES if known.lower() == lowered), None)


def parse_location(raw: Optional[str]) -> Location:
    raw = (raw or "").strip()
    if not raw:
        return Location()

    postal = POSTAL_RE.search(raw)
    postal_code = postal.group(1) if postal else None

    us_short = US_SHORT_RE.match(raw)
    if us_short and us_short.group(2) in US_STATE_CODES:
        return Location(raw, "USA", us_short.group(2), us_short.group(1).strip(), postal_code)

    us_long = US_LONG_RE.match(raw)
    if us_long and postal_code:
        return Location(raw, "USA", us_long.group(2).strip(), us_long.group(1).strip(), postal_code)

    if UK_RE.search(raw):
        city = raw.split(",")[0].strip() or None
        return Location(raw, "UK", None, city, postal_code)

    parts = [part.strip() for part in raw.split(",") if part.strip()]
    if len(parts) >= 2:
        return Location(
            raw,
            _normalize_country(parts[-1]) or "Unknown",
            parts[1] if len(parts) == 3 else None,
            parts[0],
            postal_code,
        )

    return Location(raw, _normalize_country(raw) or "Unknown", None, None, postal_code)


def build_location_string(location: Location) -> Optional[str]:
    parts = [part for part in (location.city, location.region, location.country) if part and part != "Unknown"]
    return ", ".join(parts) if parts else None


def to_utc_date(value: datetime) -> date:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).date()


def map_reserve_status(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    token = re.sub(r"[\s-]+", "_", text.strip().upper())
    return token if token in {"NO_RESERVE", "RESERVE_MET", "RESERVE_NOT_MET"} else None


def score_data_quality(
    year: Optional[int],
    model: Optional[str],
    sale_date: Optional[date],
    country: Optional[str],
    photos_count: int,
    has_price: bool,
) -> int:
    score = 0
    if year and year >= 1900:
        score += 25
    if model and model.strip():
        score += 15
    if sale_date:
        score += 25
    if country and country != "Unknown":
        score += 15
    if photos_count > 0:
        score += 10
    if has_price:
        score += 10
    return max(0, min(100, score))


def platform_for(source: str) -> str:
    return PLATFORMS.get(source, source.upper())


def auction_house_for(source: str) -> str:
    return AUCTION_HOUSES.get(source, source)


def build_canonical_listing(
    source: str,
    url: str,
    summary: RawFields,
    base: Optional[RawFields],
    detail: Optional[RawFields],
    target_make: str,
    meta: ScrapeMeta,
) -> Optional[CanonicalListing]:
    """Combine summary, index-card and detail observations into one record.

    Returns ``None`` when title, year or model cannot be resolved, or when the
    listing falls outside the target population.
    """
    url = canonicalize_url(url)
    now = meta.scrape_timestamp

    title = (summary.title or (base.title if base else None) or "").strip()
    if not title:
        return None
    if not is_target_listing(base.make if base else summary.make, title, target_make):
        return None

    year = resolve_year(base.year if base else None, title, now)
    if not year:
        return None
    model, trim = parse_model_trim(title, target_make)
    if not model:
        return None

    end_time = (base.end_time if base else None) or summary.end_time
    sale_date = to_utc_date(end_time or now)
    status = map_auction_status(summary.status, summary.raw_price_text, summary.current_bid, end_time, now)

    raw_price_text = summary.raw_price_text
    currency = parse_currency_from_text(raw_price_text)
    current_bid = summary.current_bid
    bid_count = summary.bid_count

    if detail is not None and detail.current_bid is not None and detail.current_bid > 0:
        current_bid = detail.current_bid
        if currency is None and source == "BaT":
            currency = "USD"
    if detail is not None and detail.bid_count:
        bid_count = detail.bid_count

    final_price = current_bid if status == "sold" else None
    if detail is not None and detail.mileage is not None:
        mileage_km = normalize_mileage_to_km(detail.mileage, detail.mileage_unit or (base.mileage_unit if base else None))
    else:
        mileage_km = normalize_mileage_to_km(base.mileage if base else None, base.mileage_unit if base else None)
    location = parse_location((detail.location if detail else None) or (base.location if base else None))
    photos = [photo for photo in (detail.images if detail else []) if photo]
    list_date = to_utc_date(now) if status == "active" else None
    has_price = (current_bid if status == "active" else (final_price if final_price is not None else current_bid)) is not None

    record = CanonicalListing(
        source=source,
        source_id=derive_source_id(source, url),
        source_url=url,
        title=title,
        platform=platform_for(source),
        year=year,
        make=target_make,
        model=model,
        trim=trim,
        status=status,
        sale_date=sale_date,
        auction_date=sale_date,
        list_date=list_date,
        start_time=datetime(list_date.year, list_date.month, list_date.day, tzinfo=timezone.utc) if list_date else None,
        end_time=end_time,
        scrape_timestamp=now,
        body_style=detail.body_style if detail else None,
        mileage_km=mileage_km,
        vin=detail.vin if detail else None,
        exterior_color=detail.exterior_color if detail else None,
        interior_color=detail.interior_color if detail else None,
        engine=detail.engine if detail else None,
        transmission=detail.transmission if detail else None,
        current_bid=current_bid,
        bid_count=bid_count,
        final_price=final_price,
        original_currency=currency,
        raw_price_text=raw_price_text,
        reserve_status=map_reserve_status(detail.reserve_status if detail else None),
        location=location,
        location_string=build_location_string(location),
        description_text=detail.description if detail else None,
        seller_notes=detail.seller_notes if detail else None,
        photos=photos,
        auction_house=auction_house_for(source),
    )
    record.data_quality_score = score_data_quality(
        year, model, sale_date, location.country, record.photos_count, has_price
    )
    logger.info(
        "collector.normalized",
        extra={
            "run_id": meta.run_id,
            "source": source,
            "url": url,
            "source_id": record.source_id,
            "status": status,
            "sale_date": sale_date.isoformat(),
            "currency": currency,
            "current_bid": current_bid,
            "photos_count": record.photos_count,
            "data_quality_score": record.data_quality_score,
        },
    )
    return record
