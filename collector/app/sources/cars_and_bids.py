"""Cars & Bids adapter."""

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

ORIGIN = "https://carsandbids.com"

PRICE_SELECTORS = (".auction-price", ".current-bid-amount", ".bid-amount", ".sold-price", "[data-bid-amount]")
END_TIME_SELECTOR = (
    "time[datetime], .auction-end-time, .time-left time, .time-left, [data-end-time], [data-endtime], "
    "[data-auction-end]"
)
SPEC_SELECTOR = ".quick-facts li, .vehicle-specs li, .specs-table tr, .details-table tr, dl dt"
GALLERY_SELECTOR = '.gallery img, .carousel img, .auction-photos img, [class*="gallery"] img, .photo-gallery img'
AUCTION_PATH_RE = re.compile(r"/auctions/[a-z0-9][a-z0-9-]*", re.IGNORECASE)
NAV_TITLE_RE = re.compile(r"^(past|current|featured)", re.IGNORECASE)


def parse_summary(html: str) -> RawFields:
    soup = BeautifulSoup(html, "html.parser")
    raw_price_text, current_bid = first_price(soup, PRICE_SELECTORS)

    status = None
    if soup.select_one(".auction-ended, .sold") is not None:
        status = "SOLD"
    elif soup.select_one(".auction-active, .bidding") is not None:
        status = "ACTIVE"

    title = first_text(soup, ("h1.auction-title", ".vehicle-title", "h1"))
    year, make = title_year_and_make(title)
    return RawFields(
        title=title,
        year=year,
        make=make,
        raw_price_text=raw_price_text,
        current_bid=current_bid,
        bid_count=parse_bid_count(first_text(soup, (".bid-count", ".num-bids", "[data-bid-count]"))),
        status=status,
        end_time=parse_end_time(soup, END_TIME_SELECTOR),
    )


def parse_detail(html: str, base_url: str = ORIGIN) -> RawFields:
    soup = BeautifulSoup(html, "html.parser")
    specs = keyed_specs(soup, SPEC_SELECTOR)

    mileage_text = specs.get("mileage") or specs.get("miles") or specs.get("odometer")
    mileage = None
    mileage_unit = None
    if mileage_text:
        digits = re.sub(r"[^0-9]", "", mileage_text)
        if digits:
            mileage = float(digits)
            mileage_unit = "km" if re.search(r"km|kilometer", mileage_text, re.IGNORECASE) else "miles"

    bid_text = first_text(soup, (".current-bid", ".high-bid", '[class*="current-bid"]'))
    return RawFields(
        description=first_text(
            soup, (".auction-description", ".listing-description", ".vehicle-description", '[class*="description"]')
        ),
        seller_notes=first_text(soup, ('[class*="seller"]', ".seller-notes")),
        mileage=mileage,
        mileage_unit=mileage_unit,
        transmission=specs.get("transmission") or specs.get("gearbox"),
        engine=specs.get("engine") or specs.get("powertrain"),
        exterior_color=specs.get("exterior color") or specs.get("exterior"),
        interior_color=specs.get("interior color") or specs.get("interior"),
        location=specs.get("location") or specs.get("seller location"),
        vin=specs.get("vin") or specs.get("chassis"),
        body_style=specs.get("body style"),
        images=collect_images(soup, GALLERY_SELECTOR, base_url),
        current_bid=parse_price(bid_text),
        raw_price_text=bid_text,
        bid_count=parse_bid_count(first_text(soup, (".bid-count", ".total-bids", '[class*="bid-count"]'))),
    )


def _parse_card(card: Tag) -> Optional[RawFields]:
    link = card.select_one('a[href*="/auctions/"]') or card.find("a", href=True)
    if link is None or not link.get("href"):
        return None
    url = urljoin(ORIGIN, link["href"])
    if not AUCTION_PATH_RE.search(url):
        return None
    title = first_text(card, (".auction-title", ".card-title", "h3", "h2")) or link.get_text(" ", strip=True)
    if not title or NAV_TITLE_RE.match(title):
        return None
    year, make = title_year_and_make(title)
    bid_text = first_text(card, (".current-bid", ".bid-amount", '[class*="bid"]', '[class*="price"]'))
    time_el = card.select_one('time, [datetime], [class*="time"], [class*="countdown"]')
    stats = " ".join(el.get_text(" ", strip=True) for el in card.select('[class*="stats"], [class*="details"], .subtitle'))
    mileage, mileage_unit = parse_mileage_text(stats)
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
        status="ACTIVE",
        images=[src for src in [image_source(image) if image is not None else None] if src],
    )


def parse_active_cards(html: str) -> List[RawFields]:
    soup = BeautifulSoup(html, "html.parser")
    cards = soup.select('.auction-card, .auction-item, [class*="auction-card"], [class*="listing-item"]')
    if not cards:
        cards = []
        for anchor in soup.select('a[href*="/auctions/"]'):
            href = anchor.get("href", "")
            if not AUCTION_PATH_RE.search(href) or "?page=" in href:
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


class CarsAndBidsAdapter(SourceAdapter):
    source = "CarsAndBids"
    platform = "CARS_AND_BIDS"
    auction_house = "Cars & Bids"
    origin = ORIGIN
    path_markers = ("/auctions/",)

    def search_urls(self, query: str) -> List[str]:
        q = quote_plus(query)
        return [
            f"{ORIGIN}/auctions/past/?q={q}",
            f"{ORIGIN}/auctions/past?q={q}",
            f"{ORIGIN}/auctions/?q={q}",
            f"{ORIGIN}/auctions?q={q}",
        ]

    def active_url(self, page: int) -> str:
        return with_page_param(f"{ORIGIN}/auctions", page)

    def parse_summary(self, html: str) -> RawFields:
        return parse_summary(html)

    def parse_detail(self, html: str, base_url: str) -> RawFields:
        return parse_detail(html, base_url)

    def parse_active_cards(self, html: str) -> List[RawFields]:
        return parse_active_cards(html)
