"""Collecting Cars adapter."""

from __future__ import annotations

import re
from typing import List, Optional
from urllib.parse import quote_plus, urljoin

from bs4 import BeautifulSoup, Tag

from ._common import (
    RawFields,
    SourceAdapter,
    collect_images,
    first_price,
    first_text,
    image_source,
    keyed_specs,
    parse_bid_count,
    parse_datetime,
    parse_end_time,
    parse_mileage_text,
    parse_price,
    title_year_and_make,
    with_page_param,
)

ORIGIN = "https://collectingcars.com"

PRICE_SELECTORS = (".current-bid", ".auction-price", ".price-value", "[data-current-bid]")
END_TIME_SELECTOR = (
    "time[datetime], .auction-end-time, .countdown time, .countdown, [data-end-time], [data-endtime], "
    "[data-auction-end]"
)
SPEC_SELECTOR = ".lot-details li, .specifications li, .vehicle-specs li, .key-facts li, dl dt, .specs-table tr"
GALLERY_SELECTOR = '.gallery img, .carousel img, .lot-gallery img, [class*="gallery"] img, .photo-slider img'
LOT_PATH_RE = re.compile(r"/(?:cars|lots)/[a-z0-9][a-z0-9-]*", re.IGNORECASE)
TRAILING_YEAR_RE = re.compile(r"[-\s]+((?:19|20)\d{2})$")
SOLD_CARD_RE = re.compile(r"sold\s+for|winning\s+bid|final\s+price|auction\s+ended|completed", re.IGNORECASE)


def _title_year_and_make(title: Optional[str]) -> tuple[Optional[int], Optional[str]]:
    # Collecting Cars also titles lots "Ferrari 355 - 1996".
    year, make = title_year_and_make(title)
    if title and not title[:4].isdigit():
        trailing = TRAILING_YEAR_RE.search(title)
        if trailing:
            _, make = title_year_and_make(title[: trailing.start()])
            year = int(trailing.group(1))
    return year, make


def parse_summary(html: str) -> RawFields:
    soup = BeautifulSoup(html, "html.parser")
    raw_price_text, current_bid = first_price(soup, PRICE_SELECTORS)

    status = None
    if soup.select_one(".sold, .auction-complete") is not None:
        status = "SOLD"
    elif soup.select_one(".live, .active") is not None:
        status = "ACTIVE"

    title = first_text(soup, ("h1.lot-title", "h1.vehicle-name", "h1"))
    year, make = _title_year_and_make(title)
    return RawFields(
        title=title,
        year=year,
        make=make,
        raw_price_text=raw_price_text,
        current_bid=current_bid,
        bid_count=parse_bid_count(first_text(soup, (".bid-count", ".total-bids", '[class*="bid-count"]'))),
        status=status,
        end_time=parse_end_time(soup, END_TIME_SELECTOR),
    )


def parse_detail(html: str, base_url: str = ORIGIN) -> RawFields:
    soup = BeautifulSoup(html, "html.parser")
    specs = keyed_specs(soup, SPEC_SELECTOR)

    mileage_text = (
        specs.get("mileage") or specs.get("odometer") or specs.get("miles") or specs.get("kilometres") or specs.get("km")
    )
    mileage = None
    mileage_unit = None
    if mileage_text:
        digits = re.sub(r"[^0-9]", "", mileage_text)
        if digits:
            mileage = float(digits)
            mileage_unit = "km" if re.search(r"km|kilomet", mileage_text, re.IGNORECASE) else "miles"

    bid_text = first_text(soup, (".current-bid", ".high-bid", '[class*="current-bid"]', '[class*="high-bid"]'))
    return RawFields(
        description=first_text(
            soup, (".lot-description", ".vehicle-description", ".listing-description", '[class*="description"]')
        ),
        seller_notes=first_text(soup, ('[class*="seller-note"]', '[class*="seller_note"]')),
        mileage=mileage,
        mileage_unit=mileage_unit,
        transmission=specs.get("transmission") or specs.get("gearbox"),
        engine=specs.get("engine") or specs.get("engine size") or specs.get("motor"),
        exterior_color=(
            specs.get("exterior colour") or specs.get("exterior color") or specs.get("colour") or specs.get("color")
        ),
        interior_color=specs.get("interior colour") or specs.get("interior color") or specs.get("interior"),
        location=specs.get("location") or specs.get("country"),
        vin=specs.get("vin") or specs.get("chassis number") or specs.get("chassis"),
        body_style=specs.get("body style") or specs.get("body type"),
        images=collect_images(soup, GALLERY_SELECTOR, base_url),
        current_bid=parse_price(bid_text),
        raw_price_text=bid_text,
        bid_count=parse_bid_count(first_text(soup, (".bid-count", ".total-bids", '[class*="bid-count"]'))),
    )


def _parse_card(card: Tag) -> Optional[RawFields]:
    link = card.select_one('a[href*="/cars/"], a[href*="/lots/"]') or card.find("a", href=True)
    if link is None or not link.get("href"):
        return None
    url = urljoin(ORIGIN, link["href"])
    if not LOT_PATH_RE.search(url):
        return None
    title = first_text(card, (".lot-title", ".card-title", "h3", "h2", '[class*="title"]')) or link.get_text(
        " ", strip=True
    )
    if not title:
        return None
    year, make = _title_year_and_make(title)
    bid_text = first_text(card, (".current-bid", ".bid-amount", '[class*="bid"]', '[class*="price"]'))
    time_el = card.select_one('time, [datetime], [class*="time"], [class*="countdown"]')
    mileage, mileage_unit = parse_mileage_text(card.get_text(" ", strip=True))
    image = card.find("img")
    return RawFields(
        url=url,
        title=title,
        year=year,
        make=make,
        raw_price_text=bid_text,
        current_bid=parse_price(bid_text),
        bid_count=parse_bid_count(first_text(card, (".bid-count", '[class*="bid-count"]', '[class*="bids"]'))),
        end_time=parse_datetime(time_el.get("datetime") or time_el.get_text(strip=True)) if time_el is not None else None,
        mileage=mileage,
        mileage_unit=mileage_unit,
        location=first_text(card, ('[class*="location"]', ".lot-location")),
        status="SOLD" if SOLD_CARD_RE.search(card.get_text(" ", strip=True)) else "ACTIVE",
        images=[src for src in [image_source(image) if image is not None else None] if src],
    )


def parse_active_cards(html: str) -> List[RawFields]:
    soup = BeautifulSoup(html, "html.parser")
    cards = soup.select('.lot-card, .search-result, .auction-card, [class*="lot-card"], [class*="search-result"]')
    if not cards:
        cards = []
        for anchor in soup.select('a[href*="/cars/"], a[href*="/lots/"]'):
            if not LOT_PATH_RE.search(anchor.get("href", "")):
                continue
            container = anchor.find_parent(["li", "article"])
            if container is not None and container not in cards:
                cards.append(container)
    results: List[RawFields] = []
    for card in cards:
        parsed = _parse_card(card)
        if parsed is not None:
            results.append(parsed)
    return results


class CollectingCarsAdapter(SourceAdapter):
    source = "CollectingCars"
    platform = "COLLECTING_CARS"
    auction_house = "Collecting Cars"
    origin = ORIGIN
    path_markers = ("/cars/", "/lots/")

    def search_urls(self, query: str) -> List[str]:
        q = quote_plus(query)
        return [
            f"{ORIGIN}/search?q={q}",
            f"{ORIGIN}/search?query={q}",
            f"{ORIGIN}/search?search={q}",
        ]

    def active_url(self, page: int) -> str:
        return with_page_param(f"{ORIGIN}/search", page)

    def parse_summary(self, html: str) -> RawFields:
        return parse_summary(html)

    def parse_detail(self, html: str, base_url: str) -> RawFields:
        return parse_detail(html, base_url)

    def parse_active_cards(self, html: str) -> List[RawFields]:
        return parse_active_cards(html)
