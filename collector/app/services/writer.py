from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from collector.app.core.run_config import ScrapeMeta
from collector.app.db import models
from collector.app.db.session import session_scope
from collector.app.services.normalize import TERMINAL_STATUSES, CanonicalListing

logger = logging.getLogger(__name__)

AUCTION_INFO_STATUS = {"sold": "sold", "unsold": "unsold", "delisted": "withdrawn"}


class WriterError(Exception):
    """Raised when the core listing row cannot be written."""


@dataclass
class WriteResult:
    listing_id: Optional[int]
    wrote: bool
    skipped_terminal: bool = False


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _as_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (TypeError, ValueError, ArithmeticError):
        return None


def truncate_to_hour(value: datetime) -> datetime:
    return _ensure_utc(value).replace(minute=0, second=0, microsecond=0)


def photo_hash(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


def snapshot_amount(record: CanonicalListing) -> Optional[float]:
    if record.status == "active":
        return record.current_bid
    return record.final_price if record.final_price is not None else record.current_bid


def _apply_listing_fields(listing: models.Listing, record: CanonicalListing, meta: ScrapeMeta) -> None:
    listing.source_url = record.source_url
    listing.title = record.title
    listing.platform = record.platform
    listing.year = record.year
    listing.make = record.make
    listing.model = record.model
    listing.trim = record.trim
    listing.body_style = record.body_style
    listing.color_exterior = record.exterior_color
    listing.color_interior = record.interior_color
    listing.engine = record.engine
    listing.transmission = record.transmission
    listing.mileage = record.mileage_km
    listing.mileage_unit = record.mileage_unit
    listing.vin = record.vin
    listing.status = record.status
    listing.reserve_status = record.reserve_status
    listing.current_bid = _as_decimal(record.current_bid)
    listing.bid_count = record.bid_count
    listing.final_price = _as_decimal(record.final_price)
    listing.hammer_price = _as_decimal(record.final_price)
    listing.original_currency = record.original_currency
    listing.raw_price_text = record.raw_price_text
    listing.location = record.location_string
    listing.country = record.location.country
    listing.region = record.location.region
    listing.city = record.location.city
    listing.auction_house = record.auction_house
    listing.auction_date = record.auction_date
    listing.sale_date = record.sale_date
    listing.list_date = record.list_date
    listing.start_time = record.start_time
    listing.end_time = record.end_time
    listing.description_text = record.description_text
    listing.seller_notes = record.seller_notes
    listing.images = list(record.photos)
    listing.photos_count = record.photos_count
    listing.data_quality_score = record.data_quality_score
    listing.run_id = meta.run_id
    listing.scrape_timestamp = meta.scrape_timestamp
    listing.updated_at = meta.scrape_timestamp


class DryRunWriter:
    """Same surface as ``SqlListingWriter`` without touching storage."""

    def has_terminal_status(self, source: str, source_id: str) -> bool:
        return False

    def upsert_all(self, record: CanonicalListing, meta: ScrapeMeta, dry_run: bool = True) -> WriteResult:
        return WriteResult(listing_id=None, wrote=False)


class SqlListingWriter:
    """Persists canonical listings across the listing tables.

    The core ``listings`` row is the source of truth: its failure raises
    ``WriterError``. Facet tables, photos and the hourly price snapshot are
    written in their own transactions and only logged when they fail.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def has_terminal_status(self, source: str, source_id: str) -> bool:
        with session_scope(self.session_factory) as session:
            status = session.execute(
                select(models.Listing.status).where(
                    models.Listing.source == source,
                    models.Listing.source_id == source_id,
                )
            ).scalar_one_or_none()
        return status in TERMINAL_STATUSES

    def upsert_all(self, record: CanonicalListing, meta: ScrapeMeta, dry_run: bool = False) -> WriteResult:
        if dry_run:
            return WriteResult(listing_id=None, wrote=False)

        if record.status == "active" and self.has_terminal_status(record.source, record.source_id):
            return WriteResult(listing_id=None, wrote=False, skipped_terminal=True)

        listing_id = self._upsert_listing(record, meta)

        for name, write in (
            ("pricing", self._upsert_pricing),
            ("auction_info", self._upsert_auction_info),
            ("location_data", self._upsert_location),
            ("vehicle_specs", self._upsert_specs),
            ("provenance_data", self._upsert_provenance),
            ("photos_media", self._append_photos),
            ("price_history", self._insert_price_snapshot),
        ):
            self._write_facet(name, write, listing_id, record, meta)

        return WriteResult(listing_id=listing_id, wrote=True)

    def _upsert_listing(self, record: CanonicalListing, meta: ScrapeMeta) -> int:
        try:
            return self._save_listing(record, meta)
        except IntegrityError:
            # Another writer inserted the same key between select and insert.
            try:
                return self._save_listing(record, meta)
            except SQLAlchemyError as exc:
                raise WriterError(f"listings upsert failed for {record.source}/{record.source_id}: {exc}") from exc
        except SQLAlchemyError as exc:
            raise WriterError(f"listings upsert failed for {record.source}/{record.source_id}: {exc}") from exc

    def _save_listing(self, record: CanonicalListing, meta: ScrapeMeta) -> int:
        with session_scope(self.session_factory) as session:
            listing = session.execute(
                select(models.Listing).where(
                    models.Listing.source == record.source,
                    models.Listing.source_id == record.source_id,
                )
            ).scalar_one_or_none()
            if listing is None:
                listing = models.Listing(source=record.source, source_id=record.source_id)
                session.add(listing)
            _apply_listing_fields(listing, record, meta)
            session.flush()
            return listing.id

    def _write_facet(
        self,
        name: str,
        write: Callable[[Session, int, CanonicalListing, ScrapeMeta], None],
        listing_id: int,
        record: CanonicalListing,
        meta: ScrapeMeta,
    ) -> None:
        try:
            with session_scope(self.session_factory) as session:
                write(session, listing_id, record, meta)
        except SQLAlchemyError as exc:
            logger.warning(
                "writer.facet_failed",
                extra={
                    "run_id": meta.run_id,
                    "facet": name,
                    "listing_id": listing_id,
                    "source_id": record.source_id,
                    "error": str(exc),
                },
            )

    @staticmethod
    def _upsert_pricing(session: Session, listing_id: int, record: CanonicalListing, meta: ScrapeMeta) -> None:
        pricing = session.get(models.Pricing, listing_id) or models.Pricing(listing_id=listing_id)
        pricing.hammer_price_original = _as_decimal(record.final_price)
        pricing.current_bid = _as_decimal(record.current_bid)
        pricing.bid_count = record.bid_count
        pricing.original_currency = record.original_currency
        pricing.raw_price_text = record.raw_price_text
        pricing.updated_at = meta.scrape_timestamp
        session.add(pricing)

    @staticmethod
    def _upsert_auction_info(session: Session, listing_id: int, record: CanonicalListing, meta: ScrapeMeta) -> None:
        info = session.get(models.AuctionInfo, listing_id) or models.AuctionInfo(listing_id=listing_id)
        info.auction_house = record.auction_house
        info.auction_date = record.auction_date
        info.lot_number = record.source_id
        info.reserve_status = record.reserve_status
        info.hammer_price = _as_decimal(record.final_price)
        info.status = AUCTION_INFO_STATUS.get(record.status)
        info.number_of_bids = record.bid_count
        info.end_time = record.end_time
        session.add(info)

    @staticmethod
    def _upsert_location(session: Session, listing_id: int, record: CanonicalListing, meta: ScrapeMeta) -> None:
        location = session.get(models.LocationData, listing_id) or models.LocationData(listing_id=listing_id)
        location.location_raw = record.location.location_raw
        location.country = record.location.country
        location.region = record.location.region
        location.city = record.location.city
        location.postal_code = record.location.postal_code
        session.add(location)

    @staticmethod
    def _upsert_specs(session: Session, listing_id: int, record: CanonicalListing, meta: ScrapeMeta) -> None:
        specs = session.get(models.VehicleSpecs, listing_id) or models.VehicleSpecs(listing_id=listing_id)
        specs.engine = record.engine
        specs.transmission = record.transmission
        specs.body_style = record.body_style
        specs.vin = record.vin
        specs.mileage_km = record.mileage_km
        session.add(specs)

    @staticmethod
    def _upsert_provenance(session: Session, listing_id: int, record: CanonicalListing, meta: ScrapeMeta) -> None:
        seen_at = _ensure_utc(meta.scrape_timestamp)
        provenance = session.get(models.ProvenanceData, listing_id)
        if provenance is None:
            provenance = models.ProvenanceData(
                listing_id=listing_id,
                source=record.source,
                first_seen_at=seen_at,
                last_seen_at=seen_at,
                first_run_id=meta.run_id,
            )
        else:
            provenance.first_seen_at = min(_ensure_utc(provenance.first_seen_at), seen_at)
            provenance.last_seen_at = max(_ensure_utc(provenance.last_seen_at), seen_at)
        provenance.source_url = record.source_url
        provenance.last_run_id = meta.run_id
        session.add(provenance)

    @staticmethod
    def _append_photos(session: Session, listing_id: int, record: CanonicalListing, meta: ScrapeMeta) -> None:
        if not record.photos:
            return
        existing = set(
            session.execute(
                select(models.PhotoMedia.photo_url).where(models.PhotoMedia.listing_id == listing_id)
            ).scalars()
        )
        next_order = session.execute(
            select(func.count(models.PhotoMedia.id)).where(models.PhotoMedia.listing_id == listing_id)
        ).scalar_one()
        for url in record.photos:
            if not url or url in existing:
                continue
            existing.add(url)
            session.add(
                models.PhotoMedia(
                    listing_id=listing_id,
                    photo_url=url,
                    photo_order=next_order,
                    photo_hash=photo_hash(url),
                )
            )
            next_order += 1

    @staticmethod
    def _insert_price_snapshot(session: Session, listing_id: int, record: CanonicalListing, meta: ScrapeMeta) -> None:
        amount = snapshot_amount(record)
        if amount is None or amount <= 0 or not record.original_currency:
            return
        bucket = truncate_to_hour(meta.scrape_timestamp)
        exists = session.execute(
            select(models.PriceHistory.id).where(
                models.PriceHistory.listing_id == listing_id,
                models.PriceHistory.time == bucket,
            )
        ).first()
        if exists is not None:
            return
        session.add(
            models.PriceHistory(
                listing_id=listing_id,
                time=bucket,
                status=record.status,
                amount=_as_decimal(amount),
                currency=record.original_currency,
            )
        )
