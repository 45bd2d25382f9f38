"""
Marketplace records the overstay engine reads.

These tables are owned by the booking/listing CRUD layer; the engine only queries
them (and never writes to them).
"""

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    role = Column(String(20), nullable=False, default="chef")  # chef, manager, admin
    # Stripe linkage (non-PCI metadata only)
    stripe_customer_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    managed_locations = relationship("Location", back_populates="manager")
    storage_bookings = relationship("StorageBooking", back_populates="chef")


class Location(Base):
    __tablename__ = "locations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    manager_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    # Location-level overstay defaults; null means "use platform default"
    overstay_grace_period_days = Column(Integer, nullable=True)
    overstay_penalty_rate = Column(Numeric(5, 4), nullable=True)  # 0.1000 = 10%
    overstay_max_penalty_days = Column(Integer, nullable=True)
    overstay_policy_text = Column(Text, nullable=True)

    manager = relationship("User", back_populates="managed_locations")
    kitchens = relationship("Kitchen", back_populates="location")


class Kitchen(Base):
    __tablename__ = "kitchens"

    id = Column(Integer, primary_key=True, index=True)
    location_id = Column(Integer, ForeignKey("locations.id"), nullable=False)
    name = Column(String(255), nullable=False)
    tax_rate_percent = Column(Numeric(6, 3), nullable=True)  # 13.000 = 13%

    location = relationship("Location", back_populates="kitchens")
    storage_listings = relationship("StorageListing", back_populates="kitchen")


class StorageListing(Base):
    __tablename__ = "storage_listings"

    id = Column(Integer, primary_key=True, index=True)
    kitchen_id = Column(Integer, ForeignKey("kitchens.id"), nullable=False)
    name = Column(String(255), nullable=False)
    storage_type = Column(String(50), nullable=True, default="dry")  # dry, cold, freezer
    daily_rate_cents = Column(Integer, nullable=False, default=0)
    # Listing-level overrides; null means "use location or platform default"
    overstay_grace_period_days = Column(Integer, nullable=True)
    overstay_penalty_rate = Column(Numeric(5, 4), nullable=True)
    overstay_max_penalty_days = Column(Integer, nullable=True)

    kitchen = relationship("Kitchen", back_populates="storage_listings")
    bookings = relationship("StorageBooking", back_populates="storage_listing")


class StorageBooking(Base):
    __tablename__ = "storage_bookings"

    id = Column(Integer, primary_key=True, index=True)
    storage_listing_id = Column(Integer, ForeignKey("storage_listings.id"), nullable=False)
    chef_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False, index=True)
    status = Column(String(50), default="pending")  # pending, confirmed, cancelled, completed
    # none, checkout_requested, checkout_approved, checkout_claim_filed, completed
    checkout_status = Column(String(50), nullable=True)
    # Saved payment method captured at booking checkout, used for off-session charges
    stripe_customer_id = Column(String(255), nullable=True)
    stripe_payment_method_id = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    storage_listing = relationship("StorageListing", back_populates="bookings")
    chef = relationship("User", back_populates="storage_bookings")
    overstay_records = relationship("OverstayRecord", back_populates="storage_booking")


class PlatformSetting(Base):
    """Key/value platform settings editable by admins"""

    __tablename__ = "platform_settings"

    id = Column(Integer, primary_key=True, index=True)
    key = Column(String(100), unique=True, nullable=False, index=True)
    value = Column(String(500), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
