"""Bring a Trailer adapter."""

from __future__ import annotations

import re
from typing import Dict, List, Optional
from urllib.parse import quote_plus, urljoin

from bs4 import BeautifulSoup, Tag

from ._common import (
    RawFields,
    SourceAdapter,
    first_price,
    first_text,
    image_source,
    parse_bid_count,
    parse_datetime,
    parse_end_time,
    parse_price,
    title_year_and_make,
    with_page_param,
)

ORIGIN = "https://bringatrailer.com"

PRICE_SELECTORS = (
    ".listing-bid-value",
    ".listing-available-info .listing-bid-value",
    ".listing-post-close-value",
    ".post-sold-value",
    ".current-bid .amount",
    '[data-testid="current-bid"]',
    ".auction-bid-amount",
)
BID_COUNT_SELECTORS = (
    ".listing-stats .number-bids-value",
    ".listing-bid-count",
    ".comments-bid-count",
    '[data-testid="bid-count"]',
)
SOLD_SELECTORS = (".sold", ".listing-ended", ".auction-ended", ".result-sold")
ACTIVE_SELECTORS = (".listing-available", ".auction-active", ".time-remaining")
END_TIME_SELECTOR = (
    ".listing-available-info-time, .auction-end-time, time[datetime], [data-end-time], [data-endtime], "
    "[data-auction-end]"
)

MILEAGE_RE = re.compile(r"^~?\s*(?:showing\s+|indicated\s+)?([\d,.]+k?)\s*(miles?|kilometers?|km)\b", re.IGNORECASE)
ENGINE_RE = re.compile(
    r"\d[\d.]*[\s-]?liter|[vV]\d{1,2}\b|flat[\s-]?\d|inline[\s-]?\d|twin[\s-]?turbo|turbo(charged)?|supercharged|boxer|rotary",
    re.IGNORECASE,
)
TRANSMISSION_RE = re.compile(
    r"speed|manual|automatic|dual[\s-]?clutch|transaxle|\bPDK\b|tiptronic|sequential|\bF1\b|SMG|gearbox|CVT",
    re.IGNORECASE,
)
INTERIOR_RE = re.compile(r"\b(leather|upholstery|alcantara|interior|cloth|suede|nappa)\b", re.IGNORECASE)
MECHANICAL_RE = re.compile(r"liter|[vV]\d|turbo|speed|manual|automatic|clutch|transaxle|PDK|miles?|km", re.IGNORECASE)
ITALIAN_COLOR_RE = re.compile(
    r"\b(rosso|nero|grigio|bianco|giallo|blu|azzurro|argento|verde|marrone|avorio|crema|nocciola)\b", re.IGNORECASE
)
BODY_RE = re.compile(
    r"\b(coupe|coupé|spider|spyder|convertible|berlinetta|targa|roadster|cabriolet|sedan|wagon|hatchback|SUV)\b",
    re.IGNORECASE,
)
SELLER_RE = re.compile(r"\bseller\b", re.IGNORECASE)


def parse_summary(html: str) -> RawFields:
    soup = BeautifulSoup(html, "html.parser")
    raw_price_text, current_bid = first_price(soup, PRICE_SELECTORS)

    bid_count = None
    for selector in BID_COUNT_SELECTORS:
        element = soup.select_one(selector)
        if element is not None:
            bid_count = parse_bid_count(element.get_text())
            if bid_count is not None:
                break

    status = None
    if any(soup.select_one(selector) is not None for selector in SOLD_SELECTORS):
        status = "SOLD"
    elif any(soup.select_one(selector) is not None for selector in ACTIVE_SELECTORS):
        status = "ACTIVE"

    title = first_text(soup, ("h1.post-title", ".listing-title", "h1.listing-post-title"))
    year, make = title_year_and_make(title)
    return RawFields(
        title=title,
        year=year,
        make=make,
        raw_price_text=raw_price_text,
        current_bid=current_bid,
        bid_count=bid_count,
        status=status,
        end_time=parse_end_time(soup, END_TIME_SELECTOR, text_fallback=True),
    )


def _essentials(soup: BeautifulSoup) -> tuple[List[str], Dict[str, str]]:
    """Plain essentials items ("33k Miles") and keyed ones ("Chassis: ZFF...")."""
    texts: List[str] = []
    keyed: Dict[str, str] = {}
    for item in soup.select(".essentials li"):
        text = item.get_text(" ", strip=True)
        if not text:
            continue
        colon = text.find(":")
        if 0 < colon < 30:
            value = text[colon + 1:].strip()
            keyed[text[:colon].strip().lower()] = value
            if value:
                texts.append(value)
        else:
            texts.append(text)
    for row in soup.select("table.essentials tr, .essentials table tr"):
        cells = row.find_all("td")
        if len(cells) >= 2:
            key = cells[0].get_text(" ", strip=True).lower()
            value = cells[1].get_text(" ", strip=True)
            if key and value:
                keyed[key] = value
                texts.append(value)
    return texts, keyed


def _mileage(texts: List[str], keyed: Dict[str, str]) -> tuple[Optional[float], Optional[str]]:
    for text in texts:
        match = MILEAGE_RE.match(text)
        if not match:
            continue
        raw = match.group(1).replace(",", "")
        unit = "km" if re.match(r"k", match.group(2), re.IGNORECASE) else "miles"
        try:
            value = float(raw[:-1]) * 1000 if raw.lower().endswith("k") else float(raw)
        except ValueError:
            continue
        return value, unit
    keyed_miles = keyed.get("miles") or keyed.get("mileage")
    keyed_km = keyed.get("kilometers") or keyed.get("km")
    digits = re.sub(r"[^0-9]", "", keyed_miles or keyed_km or "")
    if digits:
        return float(digits), "km" if keyed_km and not keyed_miles else "miles"
    return None, None


def _first_matching(texts: List[str], pattern: re.Pattern[str]) -> Optional[str]:
    return next((text for text in texts if pattern.search(text)), None)


def _exterior_color(texts: List[str]) -> Optional[str]:
    for text in texts:
        if INTERIOR_RE.search(text):
            continue
        if re.search(r"paint$", text, re.IGNORECASE) or re.search(r"\b(metallic|micalizzato|pearl)\b", text, re.IGNORECASE):
            return re.sub(r"\s*paint$", "", text, flags=re.IGNORECASE).strip()
        if ITALIAN_COLOR_RE.search(text) and not MECHANICAL_RE.search(text):
            return text.strip()
    return None


def _interior_color(texts: List[str]) -> Optional[str]:
    for text in texts:
        if INTERIOR_RE.search(text) and not MECHANICAL_RE.search(text):
            return re.sub(r"\s*upholstery$", "", text, flags=re.IGNORECASE).strip()
    return None


def _seller_notes(soup: BeautifulSoup) -> Optional[str]:
    for heading in soup.select(".post-content h3, .post-content strong, .post-content h2"):
        if not SELLER_RE.search(heading.get_text(" ", strip=True)):
            continue
        following = heading.find_next("p")
        if following is not None and following.get_text(strip=True):
            return following.get_text(" ", strip=True)
    return first_text(
        soup, ('[class*="seller-note"]', '[class*="seller_note"]', ".seller-description", ".seller-story")
    )


def _location(soup: BeautifulSoup, keyed: Dict[str, str]) -> Optional[str]:
    for label in soup.select(".essentials strong"):
        if label.get_text(strip=True).lower() == "location":
            link = label.find_next_sibling("a")
            if link is not None and link.get_text(strip=True):
                return link.get_text(" ", strip=True)
    return keyed.get("location")


def _gallery_images(soup: BeautifulSoup, base_url: str) -> List[str]:
    images: List[str] = []
    for element in soup.find_all("img"):
        src = image_source(element) or ""
        content = "wp-content/uploads" in src or "cdn.bringatrailer.com" in src
        in_gallery = element.find_parent(class_=re.compile("gallery|carousel")) is not None
        if not (content or in_gallery) or not re.search(r"\.(jpg|jpeg|png|webp)", src, re.IGNORECASE):
            continue
        if "resize=235" in src or "resize=144" in src or "icon" in src:
            continue
        if element.find_parent(class_=re.compile("related|recent-listings|sidebar|footer")) is not None:
            continue
        width = element.get("width")
        if width and width.isdigit() and int(width) < 300:
            continue
        absolute = urljoin(base_url, src)
        if absolute not in images:
            images.append(absolute)
    return images


def _reserve_status(soup: BeautifulSoup, texts: List[str]) -> Optional[str]:
    if any(re.fullmatch(r"no\s+reserve", text, re.IGNORECASE) for text in texts):
        return "NO_RESERVE"
    badge = first_text(soup, (".no-reserve", '[class*="reserve"]')) or ""
    if re.search(r"no\s+reserve", badge, re.IGNORECASE):
        return "NO_RESERVE"
    info = " ".join(
        element.get_text(" ", strip=True)
        for element in soup.select('.listing-available-info, .auction-status, [class*="reserve-status"]')
    )
    if re.search(r"reserve\s+not\s+met", info, re.IGNORECASE):
        return "RESERVE_NOT_MET"
    if re.search(r"reserve\s+met", info, re.IGNORECASE):
        return "RESERVE_MET"
    return None


def _body_style(texts: List[str]) -> Optional[str]:
    for text in texts:
        match = BODY_RE.search(text)
        if match and not MECHANICAL_RE.search(text):
            return match.group(1)
    return None


def parse_detail(html: str, base_url: str = ORIGIN) -> RawFields:
    soup = BeautifulSoup(html, "html.parser")
    texts, keyed = _essentials(soup)
    mileage, mileage_unit = _mileage(texts, keyed)

    detail_bid = None
    bid_text = first_text(soup, (".current-bid-value", ".current-bid"))
    if bid_text:
        dollars = re.search(r"\$[\d,]+", bid_text)
        if dollars:
            detail_bid = parse_price(dollars.group(0))

    return RawFields(
        description=first_text(
            soup, (".post-excerpt", ".listing-description", ".post-content", "article .entry-content")
        ),
        seller_notes=_seller_notes(soup),
        vin=keyed.get("chassis") or keyed.get("vin"),
        mileage=mileage,
        mileage_unit=mileage_unit,
        engine=_first_matching(texts, ENGINE_RE) or keyed.get("engine"),
        transmission=_first_matching(texts, TRANSMISSION_RE) or keyed.get("transmission"),
        exterior_color=_exterior_color(texts) or keyed.get("exterior color") or keyed.get("color"),
        interior_color=_interior_color(texts) or keyed.get("interior color") or keyed.get("interior"),
        location=_location(soup, keyed),
        images=_gallery_images(soup, base_url),
        reserve_status=_reserve_status(soup, texts),
        body_style=_body_style(texts),
        current_bid=detail_bid,
        raw_price_text=bid_text if detail_bid else None,
        bid_count=parse_bid_count(first_text(soup, (".number-bids-value", ".bid-count"))),
    )


def _parse_card(card: Tag) -> Optional[RawFields]:
    link = card.select_one('a[href*="/listing/"]') or card.find("a", href=True)
    if link is None or not link.get("href"):
        return None
    title = first_text(card, (".auction-title", ".listing-title", "h3", "h2")) or link.get_text(" ", strip=True)
    if not title:
        return None
    year, make = title_year_and_make(title)
    image = card.find("img")
    bid_text = first_text(card, (".auction-bid", ".current-bid", ".bid-value", '[class*="bid"]'))
    time_el = card.select_one('.auction-end, .time-left, time, [class*="time"]')
    end_time = None
    if time_el is not None:
        end_time = parse_datetime(time_el.get("datetime") or time_el.get_text(strip=True))
    return RawFields(
        url=urljoin(ORIGIN, link["href"]),
        title=title,
        year=year,
        make=make,
        raw_price_text=bid_text,
        current_bid=parse_price(bid_text),
        bid_count=parse_bid_count(first_text(card, (".bid-count", ".bids", '[class*="bid-count"]'))),
        end_time=end_time,
        status="ACTIVE",
        images=[src for src in [image_source(image) if image is not None else None] if src],
    )


def parse_active_cards(html: str) -> List[RawFields]:
    soup = BeautifulSoup(html, "html.parser")
    cards = soup.select(".auction-item, .listing-card, [data-auction]")
    if not cards:
        cards = []
        for anchor in soup.select('a[href*="/listing/"]'):
            container = anchor.find_parent(["li", "article"]) or anchor.find_parent(class_="auction-card")
            if container is not None and container not in cards:
                cards.append(container)
    results: List[RawFields] = []
    for card in cards:
        parsed = _parse_card(card)
        if parsed is not None:
            results.append(parsed)
    return results


class BringATrailerAdapter(SourceAdapter):
    source = "BaT"
    platform = "BRING_A_TRAILER"
    auction_house = "Bring a Trailer"
    origin = ORIGIN
    path_markers = ("/listing/",)

    def search_urls(self, query: str) -> List[str]:
        q = quote_plus(query)
        slug = re.sub(r"\s+", "-", query.strip().lower()) or "ferrari"
        return [
            f"{ORIGIN}/{slug}/",
            f"{ORIGIN}/auctions/results/?search={q}",
            f"{ORIGIN}/auctions/?search={q}",
        ]

    def active_url(self, page: int) -> str:
        return with_page_param(f"{ORIGIN}/auctions/", page)

    def parse_summary(self, html: str) -> RawFields:
        return parse_summary(html)

    def parse_detail(self, html: str, base_url: str) -> RawFields:
        return parse_detail(html, base_url)

    def parse_active_cards(self, html: str) -> List[RawFields]:
        return parse_active_cards(html)
