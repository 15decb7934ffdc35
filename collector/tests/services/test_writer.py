import logging
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from collector.app.core.run_config import ScrapeMeta
from collector.app.db import models
from collector.app.db.session import session_scope
from collector.app.services.normalize import CanonicalListing, Location
from collector.app.services.writer import DryRunWriter, SqlListingWriter, WriterError, photo_hash, truncate_to_hour


def make_record(**overrides) -> CanonicalListing:
    values = dict(
        source="BaT",
        source_id="bat-2001-ferrari-360-modena",
        source_url="https://bringatrailer.com/listing/2001-ferrari-360-modena/",
        title="2001 Ferrari 360 Modena",
        platform="BRING_A_TRAILER",
        year=2001,
        make="Ferrari",
        model="360",
        trim="Modena",
        status="active",
        sale_date=date(2024, 6, 18),
        scrape_timestamp=datetime(2024, 6, 15, 12, 30, tzinfo=timezone.utc),
        current_bid=95000.0,
        bid_count=12,
        original_currency="USD",
        raw_price_text="Current Bid: $95,000",
        location=Location("Austin, TX 78701", "USA", "TX", "Austin", "78701"),
        location_string="Austin, TX, USA",
        photos=["https://cdn.test/1.jpg", "https://cdn.test/2.jpg"],
        auction_house="Bring a Trailer",
        data_quality_score=100,
    )
    values.update(overrides)
    return CanonicalListing(**values)


def _all(session_factory, model):
    with session_scope(session_factory) as session:
        return list(session.execute(select(model)).scalars())


def test_upsert_writes_every_table(session_factory, meta):
    writer = SqlListingWriter(session_factory)
    result = writer.upsert_all(make_record(), meta)

    assert result.wrote
    assert not result.skipped_terminal
    listing = _all(session_factory, models.Listing)[0]
    assert listing.id == result.listing_id
    assert listing.status == "active"
    assert listing.country == "USA"
    assert listing.run_id == "run-1"
    assert float(listing.current_bid) == 95000.0
    assert listing.images == ["https://cdn.test/1.jpg", "https://cdn.test/2.jpg"]

    assert float(_all(session_factory, models.Pricing)[0].current_bid) == 95000.0
    assert _all(session_factory, models.AuctionInfo)[0].lot_number == "bat-2001-ferrari-360-modena"
    assert _all(session_factory, models.LocationData)[0].postal_code == "78701"
    assert _all(session_factory, models.VehicleSpecs)[0].listing_id == result.listing_id
    provenance = _all(session_factory, models.ProvenanceData)[0]
    assert provenance.first_run_id == provenance.last_run_id == "run-1"
    photos = sorted(_all(session_factory, models.PhotoMedia), key=lambda p: p.photo_order)
    assert [(p.photo_order, p.photo_hash) for p in photos] == [
        (0, photo_hash("https://cdn.test/1.jpg")),
        (1, photo_hash("https://cdn.test/2.jpg")),
    ]
    history = _all(session_factory, models.PriceHistory)
    assert len(history) == 1
    assert history[0].currency == "USD"
    assert float(history[0].amount) == 95000.0


def test_second_upsert_updates_in_place(session_factory, meta):
    writer = SqlListingWriter(session_factory)
    first = writer.upsert_all(make_record(), meta)
    later = ScrapeMeta(run_id="run-2", scrape_timestamp=meta.scrape_timestamp + timedelta(hours=3))
    second = writer.upsert_all(
        make_record(current_bid=110000.0, photos=["https://cdn.test/2.jpg", "https://cdn.test/3.jpg"]), later
    )

    assert first.listing_id == second.listing_id
    listings = _all(session_factory, models.Listing)
    assert len(listings) == 1
    assert float(listings[0].current_bid) == 110000.0
    assert listings[0].run_id == "run-2"

    photos = sorted(_all(session_factory, models.PhotoMedia), key=lambda p: p.photo_order)
    assert [(p.photo_url, p.photo_order) for p in photos] == [
        ("https://cdn.test/1.jpg", 0),
        ("https://cdn.test/2.jpg", 1),
        ("https://cdn.test/3.jpg", 2),
    ]

    provenance = _all(session_factory, models.ProvenanceData)[0]
    assert provenance.first_run_id == "run-1"
    assert provenance.last_run_id == "run-2"
    assert provenance.last_seen_at.replace(tzinfo=timezone.utc) > provenance.first_seen_at.replace(tzinfo=timezone.utc)
    assert len(_all(session_factory, models.PriceHistory)) == 2


def test_price_snapshot_is_once_per_hour(session_factory, meta):
    writer = SqlListingWriter(session_factory)
    writer.upsert_all(make_record(), meta)
    same_hour = ScrapeMeta(run_id="run-2", scrape_timestamp=meta.scrape_timestamp + timedelta(minutes=20))
    writer.upsert_all(make_record(current_bid=99000.0), same_hour)

    history = _all(session_factory, models.PriceHistory)
    assert len(history) == 1
    assert float(history[0].amount) == 95000.0


def test_no_snapshot_without_amount_or_currency(session_factory, meta):
    writer = SqlListingWriter(session_factory)
    writer.upsert_all(make_record(current_bid=None), meta)
    writer.upsert_all(make_record(source_id="bat-other", original_currency=None), meta)
    assert _all(session_factory, models.PriceHistory) == []


def test_terminal_listing_is_never_reverted_to_active(session_factory, meta):
    writer = SqlListingWriter(session_factory)
    sold = make_record(status="sold", final_price=120000.0, current_bid=120000.0)
    writer.upsert_all(sold, meta)
    assert writer.has_terminal_status("BaT", "bat-2001-ferrari-360-modena")

    result = writer.upsert_all(make_record(status="active", current_bid=1000.0), meta)
    assert result.skipped_terminal
    assert not result.wrote
    listing = _all(session_factory, models.Listing)[0]
    assert listing.status == "sold"
    assert float(listing.final_price) == 120000.0


def test_terminal_listing_accepts_terminal_updates(session_factory, meta):
    writer = SqlListingWriter(session_factory)
    writer.upsert_all(make_record(status="unsold", current_bid=None), meta)
    result = writer.upsert_all(make_record(status="sold", final_price=130000.0, current_bid=130000.0), meta)
    assert result.wrote
    assert _all(session_factory, models.Listing)[0].status == "sold"
    assert _all(session_factory, models.AuctionInfo)[0].status == "sold"


def test_guard_is_keyed_by_source(session_factory, meta):
    writer = SqlListingWriter(session_factory)
    writer.upsert_all(make_record(status="sold", final_price=1.0), meta)
    assert not writer.has_terminal_status("CarsAndBids", "bat-2001-ferrari-360-modena")
    assert not writer.has_terminal_status("BaT", "bat-unknown")


def test_delisted_maps_to_withdrawn_auction_status(session_factory, meta):
    writer = SqlListingWriter(session_factory)
    writer.upsert_all(make_record(status="delisted"), meta)
    assert _all(session_factory, models.AuctionInfo)[0].status == "withdrawn"


def test_dry_run_touches_nothing(session_factory, meta):
    writer = SqlListingWriter(session_factory)
    result = writer.upsert_all(make_record(), meta, dry_run=True)
    assert not result.wrote
    assert result.listing_id is None
    assert _all(session_factory, models.Listing) == []

    assert not DryRunWriter().upsert_all(make_record(), meta).wrote


def test_truncate_to_hour_normalizes_naive_values():
    assert truncate_to_hour(datetime(2024, 6, 15, 12, 59, 59)) == datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def _db_down(*args, **kwargs):
    raise OperationalError("INSERT", {}, Exception("database is locked"))


def test_failing_facet_is_logged_and_listing_still_written(session_factory, meta, monkeypatch, caplog):
    monkeypatch.setattr(SqlListingWriter, "_upsert_pricing", staticmethod(_db_down))
    writer = SqlListingWriter(session_factory)

    with caplog.at_level(logging.WARNING, logger="collector.app.services.writer"):
        result = writer.upsert_all(make_record(), meta)

    assert result.wrote
    assert result.listing_id is not None
    assert _all(session_factory, models.Pricing) == []
    assert len(_all(session_factory, models.AuctionInfo)) == 1
    assert len(_all(session_factory, models.PriceHistory)) == 1
    failures = [record for record in caplog.records if record.getMessage() == "writer.facet_failed"]
    assert [record.facet for record in failures] == ["pricing"]
    assert failures[0].run_id == "run-1"


def test_core_row_failure_raises_writer_error(session_factory, meta, monkeypatch):
    monkeypatch.setattr(SqlListingWriter, "_save_listing", _db_down)
    writer = SqlListingWriter(session_factory)

    with pytest.raises(WriterError, match="bat-2001-ferrari-360-modena"):
        writer.upsert_all(make_record(), meta)
    assert _all(session_factory, models.Listing) == []
