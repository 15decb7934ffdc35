from datetime import date, datetime, timedelta, timezone

import pytest

from collector.app.core.run_config import ScrapeMeta
from collector.app.services.normalize import (
    build_canonical_listing,
    build_location_string,
    is_target_listing,
    map_auction_status,
    map_reserve_status,
    normalize_mileage_to_km,
    parse_currency_from_text,
    parse_location,
    parse_model_trim,
    parse_year_from_title,
    score_data_quality,
)
from collector.app.sources._common import RawFields

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
META = ScrapeMeta(run_id="run-normalize", scrape_timestamp=NOW)


@pytest.mark.parametrize(
    "make,title,expected",
    [
        ("Ferrari", "1999 Ferrari 355 Spider", True),
        ("ferrari", "Dino 246 GT", True),
        (None, "2004 Ferrari 360 Modena 6-Speed", True),
        (None, "1999 Porsche 911 Carrera", False),
        (None, "Ferrari 308 Steering Wheel", False),
        (None, "2001 Ferrari 360 Modena on BBS Wheels", True),
        ("Ferrari", "Ferrari 250 GTO Replica", False),
        (None, "Ferrari-Powered 1978 Lancia Stratos", False),
        (None, "Ferrari Movie Poster Collection", False),
        (None, "1990 Ferrari Testarossa Parts Only", False),
    ],
)
def test_population_filter(make, title, expected):
    assert is_target_listing(make, title, "Ferrari") is expected


@pytest.mark.parametrize(
    "source_status,price_text,bid,end_time,expected",
    [
        ("ACTIVE", None, None, None, "active"),
        ("SOLD", None, None, None, "sold"),
        ("NO_SALE", "Bid to $90,000", 90000, None, "unsold"),
        ("ENDED", None, None, None, "unsold"),
        ("ENDED", None, 100, None, "sold"),
        ("ENDED", "Sold for $120,000", None, None, "sold"),
        (None, "Withdrawn", 5000, NOW - timedelta(days=1), "delisted"),
        (None, None, 50000, NOW - timedelta(days=1), "sold"),
        (None, None, None, NOW - timedelta(days=1), "unsold"),
        (None, None, 50000, NOW - timedelta(seconds=30), "active"),
        (None, None, 50000, NOW + timedelta(days=2), "active"),
        (None, None, None, NOW + timedelta(days=2), "unsold"),
        (None, None, None, None, "unsold"),
    ],
)
def test_status_inference(source_status, price_text, bid, end_time, expected):
    assert map_auction_status(source_status, price_text, bid, end_time, NOW) == expected


def test_year_from_title_rejects_out_of_range():
    assert parse_year_from_title("1967 Ferrari 275 GTB/4", NOW) == 1967
    assert parse_year_from_title("Ferrari 2099 Concept", NOW) is None
    assert parse_year_from_title("Ferrari Testarossa", NOW) is None


def test_model_and_trim_follow_make():
    assert parse_model_trim("1999 Ferrari 355 F1 Spider", "Ferrari") == ("355", "F1 Spider")
    assert parse_model_trim("2004 Ferrari 360 Modena - 6-Speed", "Ferrari") == ("360", "Modena")
    assert parse_model_trim("2010 Porsche 911", "Ferrari") == (None, None)


def test_mileage_conversion():
    assert normalize_mileage_to_km(10000, "miles") == 16093
    assert normalize_mileage_to_km(5000, "km") == 5000
    assert normalize_mileage_to_km(None, "km") is None
    assert normalize_mileage_to_km(-5, "km") is None
    assert normalize_mileage_to_km(100, "furlongs") is None


def test_currency_detection():
    assert parse_currency_from_text("Sold for $125,000") == "USD"
    assert parse_currency_from_text("£80,000") == "GBP"
    assert parse_currency_from_text("Current bid €45.000") == "EUR"
    assert parse_currency_from_text("Bid 100") is None


@pytest.mark.parametrize(
    "raw,country,region,city,postal",
    [
        ("Austin, TX 78701", "USA", "TX", "Austin", "78701"),
        ("Beverly Hills, California 90210", "USA", "California", "Beverly Hills", "90210"),
        ("London, United Kingdom", "UK", None, "London", None),
        ("Maranello, Modena, Italy", "Italy", "Modena", "Maranello", None),
        ("Paris, France", "France", None, "Paris", None),
        ("Germany", "Germany", None, None, None),
        ("Somewhere", "Unknown", None, None, None),
    ],
)
def test_location_parsing(raw, country, region, city, postal):
    location = parse_location(raw)
    assert (location.country, location.region, location.city, location.postal_code) == (country, region, city, postal)
    assert location.location_raw == raw


def test_location_string_skips_unknown_country():
    assert build_location_string(parse_location("Austin, TX")) == "Austin, TX, USA"
    assert build_location_string(parse_location("")) is None


def test_reserve_status_mapping():
    assert map_reserve_status("No Reserve") == "NO_RESERVE"
    assert map_reserve_status("reserve-not-met") == "RESERVE_NOT_MET"
    assert map_reserve_status("maybe") is None


def test_data_quality_score_bounds():
    assert score_data_quality(2001, "360", date(2024, 1, 1), "USA", 3, True) == 100
    assert score_data_quality(None, None, None, "Unknown", 0, False) == 0
    assert score_data_quality(2001, "360", date(2024, 1, 1), "Unknown", 0, False) == 65


def _sold_summary() -> RawFields:
    return RawFields(
        title="2001 Ferrari 360 Modena F1",
        status="SOLD",
        raw_price_text="Sold for $120,000",
        current_bid=120000.0,
        bid_count=42,
        end_time=datetime(2024, 5, 1, 18, 0, tzinfo=timezone.utc),
    )


def test_build_sold_listing_from_summary_and_detail():
    detail = RawFields(
        mileage=12000,
        mileage_unit="miles",
        location="Austin, TX 78701",
        vin="ZFFYR51B000123456",
        images=["https://cdn.test/1.jpg", "https://cdn.test/2.jpg"],
        reserve_status="No Reserve",
    )
    record = build_canonical_listing(
        "BaT",
        "https://bringatrailer.com/listing/2001-ferrari-360-modena/?utm_source=mail",
        _sold_summary(),
        None,
        detail,
        "Ferrari",
        META,
    )
    assert record is not None
    assert record.source_id == "bat-2001-ferrari-360-modena"
    assert record.source_url == "https://bringatrailer.com/listing/2001-ferrari-360-modena/"
    assert record.status == "sold"
    assert record.final_price == 120000.0
    assert record.original_currency == "USD"
    assert record.sale_date == date(2024, 5, 1)
    assert record.list_date is None
    assert (record.year, record.make, record.model, record.trim) == (2001, "Ferrari", "360", "Modena F1")
    assert record.mileage_km == 19312
    assert record.mileage_unit == "km"
    assert record.location.country == "USA"
    assert record.reserve_status == "NO_RESERVE"
    assert record.photos_count == 2
    assert record.data_quality_score == 100
    assert record.platform == "BRING_A_TRAILER"
    assert record.auction_house == "Bring a Trailer"


def test_build_active_listing_has_no_final_price():
    summary = RawFields(
        title="1989 Ferrari Testarossa",
        status="ACTIVE",
        raw_price_text="Current Bid: $95,000",
        current_bid=95000.0,
        end_time=NOW + timedelta(days=3),
    )
    record = build_canonical_listing("BaT", "https://bringatrailer.com/listing/1989-ferrari-testarossa/", summary, None, None, "Ferrari", META)
    assert record.status == "active"
    assert record.final_price is None
    assert record.current_bid == 95000.0
    assert record.list_date == date(2024, 6, 15)
    assert record.sale_date == date(2024, 6, 18)


def test_detail_bid_overrides_summary_and_defaults_bat_currency():
    summary = RawFields(title="1989 Ferrari Testarossa", status="ACTIVE")
    detail = RawFields(current_bid=101000.0)
    record = build_canonical_listing("BaT", "https://bringatrailer.com/listing/1989-ferrari-testarossa/", summary, None, detail, "Ferrari", META)
    assert record.current_bid == 101000.0
    assert record.original_currency == "USD"


def test_card_fields_fill_gaps_in_summary():
    base = RawFields(
        title="2002 Ferrari 575M Maranello",
        year=2002,
        end_time=datetime(2024, 6, 20, tzinfo=timezone.utc),
        location="London, United Kingdom",
    )
    summary = RawFields(status="ACTIVE", raw_price_text="£150,000", current_bid=150000.0)
    record = build_canonical_listing("CollectingCars", "https://collectingcars.com/cars/2002-ferrari-575m", summary, base, None, "Ferrari", META)
    assert record.title == "2002 Ferrari 575M Maranello"
    assert record.source_id == "cc-2002-ferrari-575m"
    assert record.original_currency == "GBP"
    assert record.location.country == "UK"
    assert record.sale_date == date(2024, 6, 20)


@pytest.mark.parametrize(
    "title",
    ["Ferrari 360 Modena", "2001 Porsche 911 Turbo", ""],
)
def test_missing_required_fields_yield_none(title):
    summary = RawFields(title=title, status="SOLD", current_bid=1.0)
    assert build_canonical_listing("BaT", "https://bringatrailer.com/listing/x/", summary, None, None, "Ferrari", META) is None
