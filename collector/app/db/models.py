from sqlalchemy import (
    JSON, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint, text
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

class Listing(Base):
    __tablename__ = "listings"
    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(Text, nullable=False)  # BaT|CarsAndBids|CollectingCars
    source_id = Column(String(200), nullable=False)
    source_url = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    platform = Column(Text)
    year = Column(Integer, nullable=False)
    make = Column(Text, nullable=False)
    model = Column(Text, nullable=False)
    trim = Column(Text)
    body_style = Column(Text)
    color_exterior = Column(Text)
    color_interior = Column(Text)
    engine = Column(Text)
    transmission = Column(Text)
    mileage = Column(Integer)
    mileage_unit = Column(Text)
    vin = Column(Text)
    status = Column(Text, nullable=False)  # active|sold|unsold|delisted
    reserve_status = Column(Text)
    current_bid = Column(Numeric(12, 2))
    bid_count = Column(Integer)
    final_price = Column(Numeric(12, 2))
    hammer_price = Column(Numeric(12, 2))
    original_currency = Column(String(3))
    raw_price_text = Column(Text)
    location = Column(Text)
    country = Column(Text, nullable=False)
    region = Column(Text)
    city = Column(Text)
    auction_house = Column(Text)
    auction_date = Column(Date)
    sale_date = Column(Date, nullable=False)
    list_date = Column(Date)
    start_time = Column(DateTime(timezone=True))
    end_time = Column(DateTime(timezone=True))
    description_text = Column(Text)
    seller_notes = Column(Text)
    images = Column(JSON)
    photos_count = Column(Integer, default=0)
    data_quality_score = Column(Integer)
    run_id = Column(Text)
    scrape_timestamp = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=text("CURRENT_TIMESTAMP"))
    updated_at = Column(DateTime(timezone=True))
    __table_args__ = (UniqueConstraint("source", "source_id"),)

class Pricing(Base):
    __tablename__ = "pricing"
    listing_id = Column(Integer, ForeignKey("listings.id", ondelete="CASCADE"), primary_key=True)
    hammer_price_original = Column(Numeric(12, 2))
    current_bid = Column(Numeric(12, 2))
    bid_count = Column(Integer)
    original_currency = Column(String(3))
    raw_price_text = Column(Text)
    updated_at = Column(DateTime(timezone=True))

class AuctionInfo(Base):
    __tablename__ = "auction_info"
    listing_id = Column(Integer, ForeignKey("listings.id", ondelete="CASCADE"), primary_key=True)
    auction_house = Column(Text)
    auction_date = Column(Date)
    lot_number = Column(Text)
    reserve_status = Column(Text)
    hammer_price = Column(Numeric(12, 2))
    status = Column(Text)  # sold|unsold|withdrawn, null while live
    number_of_bids = Column(Integer)
    end_time = Column(DateTime(timezone=True))

class LocationData(Base):
    __tablename__ = "location_data"
    listing_id = Column(Integer, ForeignKey("listings.id", ondelete="CASCADE"), primary_key=True)
    location_raw = Column(Text)
    country = Column(Text, nullable=False)
    region = Column(Text)
    city = Column(Text)
    postal_code = Column(Text)

class VehicleSpecs(Base):
    __tablename__ = "vehicle_specs"
    listing_id = Column(Integer, ForeignKey("listings.id", ondelete="CASCADE"), primary_key=True)
    engine = Column(Text)
    transmission = Column(Text)
    body_style = Column(Text)
    vin = Column(Text)
    mileage_km = Column(Integer)

class ProvenanceData(Base):
    __tablename__ = "provenance_data"
    listing_id = Column(Integer, ForeignKey("listings.id", ondelete="CASCADE"), primary_key=True)
    source = Column(Text, nullable=False)
    source_url = Column(Text)
    first_seen_at = Column(DateTime(timezone=True), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=False)
    first_run_id = Column(Text)
    last_run_id = Column(Text)

class PhotoMedia(Base):
    __tablename__ = "photos_media"
    id = Column(Integer, primary_key=True, autoincrement=True)
    listing_id = Column(Integer, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False)
    photo_url = Column(Text, nullable=False)
    photo_order = Column(Integer, nullable=False)
    photo_hash = Column(String(64), nullable=False)
    __table_args__ = (UniqueConstraint("listing_id", "photo_url"),)

class PriceHistory(Base):
    __tablename__ = "price_history"
    id = Column(Integer, primary_key=True, autoincrement=True)
    listing_id = Column(Integer, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False)
    time = Column(DateTime(timezone=True), nullable=False)  # truncated to the hour
    status = Column(Text, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    __table_args__ = (UniqueConstraint("listing_id", "time"),)
