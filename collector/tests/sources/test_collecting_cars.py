from datetime import datetime, timezone
from pathlib import Path

from collector.app.sources.collecting_cars import (
    CollectingCarsAdapter,
    parse_active_cards,
    parse_detail,
    parse_summary,
)

FIXTURE_DIR = Path(__file__).parent / "fixtures" / "collecting_cars"
LISTING_URL = "https://collectingcars.com/cars/1996-ferrari-355-berlinetta"


def _fixture(name: str) -> str:
    return (FIXTURE_DIR / name).read_text(encoding="utf-8")


def test_sold_summary_with_trailing_year_title():
    summary = parse_summary(_fixture("summary_sold.html"))
    assert summary.title == "Ferrari 355 Berlinetta - 1996"
    assert (summary.year, summary.make) == (1996, "Ferrari")
    assert summary.status == "SOLD"
    assert summary.raw_price_text == "Sold for £74,500"
    assert summary.current_bid == 74500.0
    assert summary.bid_count == 29
    assert summary.end_time == datetime(2024, 2, 11, 19, 0, tzinfo=timezone.utc)


def test_active_summary():
    summary = parse_summary(_fixture("summary_active.html"))
    assert summary.status == "ACTIVE"
    assert summary.current_bid == 152000.0
    assert summary.bid_count == 23
    assert summary.end_time == datetime(2024, 6, 20, 18, 0, tzinfo=timezone.utc)


def test_detail_uses_british_spec_labels():
    detail = parse_detail(_fixture("detail.html"), LISTING_URL)
    assert (detail.mileage, detail.mileage_unit) == (41000.0, "km")
    assert detail.transmission == "Manual"
    assert detail.engine == "3.5L V8"
    assert detail.exterior_color == "Giallo Modena"
    assert detail.interior_color == "Black Leather"
    assert detail.location == "London, United Kingdom"
    assert detail.vin == "ZFFPA41B000101234"
    assert detail.body_style == "Coupe"
    assert detail.images == [
        "https://images.collectingcars.com/355/front.jpg",
        "https://images.collectingcars.com/355/rear.jpg",
    ]
    assert detail.current_bid is None


def test_search_cards_carry_status_location_and_mileage():
    cards = parse_active_cards(_fixture("active_index.html"))
    assert [card.url for card in cards] == [
        "https://collectingcars.com/cars/2002-ferrari-575m-maranello-3",
        "https://collectingcars.com/lots/ferrari-f355-spider-1997",
    ]
    live, sold = cards
    assert live.status == "ACTIVE"
    assert live.location == "London, United Kingdom"
    assert (live.mileage, live.mileage_unit) == (18400.0, "miles")
    assert live.current_bid == 152000.0
    assert sold.status == "SOLD"
    assert (sold.year, sold.make) == (1997, "Ferrari")
    assert sold.current_bid == 68000.0


def test_site_urls():
    adapter = CollectingCarsAdapter(client=None)
    assert adapter.search_urls("ferrari") == [
        "https://collectingcars.com/search?q=ferrari",
        "https://collectingcars.com/search?query=ferrari",
        "https://collectingcars.com/search?search=ferrari",
    ]
    assert adapter.active_url(2) == "https://collectingcars.com/search?page=2"
