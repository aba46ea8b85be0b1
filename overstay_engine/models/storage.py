# ================================
# STORAGE DOMAIN MODELS (models/storage.py)
# ================================

"""
Read-only mappings of the booking and settings domain.

These tables are owned by the storage/booking service. The overstay engine
reads them to find overdue bookings, resolve penalty configuration and look
up stored payment methods; it never writes to them.
"""

from sqlalchemy import Column, String, Text, Integer, Numeric, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from overstay_engine.models.base import Base, OverstayConfigMixin

class BookingStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"

class PaymentStatus:
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    FAILED = "failed"

# Checkout states in which the chef has already started moving out
CHECKOUT_IN_PROGRESS_STATUSES = (
    "checkout_requested",
    "checkout_approved",
    "completed",
    "checkout_claim_filed",
)

class User(Base):
    """Platform user (chefs and managers)"""
    __tablename__ = "users"

    username = Column(String(255), nullable=False)  # email address
    role = Column(String(50), nullable=True)
    full_name = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True)

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}')>"

class Location(Base, OverstayConfigMixin):
    """Kitchen location with location-level overstay defaults"""
    __tablename__ = "locations"

    name = Column(String(255), nullable=False)
    manager_id = Column(Integer, ForeignKey('users.id'), nullable=True)
    overstay_policy_text = Column(Text, nullable=True)

    kitchens = relationship("Kitchen", back_populates="location")
    manager = relationship("User")

    def __repr__(self):
        return f"<Location(id={self.id}, name='{self.name}')>"

class Kitchen(Base):
    """Kitchen offering storage listings"""
    __tablename__ = "kitchens"

    location_id = Column(Integer, ForeignKey('locations.id'), nullable=False)
    name = Column(String(255), nullable=False)

    location = relationship("Location", back_populates="kitchens")
    storage_listings = relationship("StorageListing", back_populates="kitchen")

    def __repr__(self):
        return f"<Kitchen(id={self.id}, name='{self.name}')>"

class StorageListing(Base, OverstayConfigMixin):
    """Rentable storage space with listing-level overstay overrides"""
    __tablename__ = "storage_listings"

    kitchen_id = Column(Integer, ForeignKey('kitchens.id'), nullable=False)
    name = Column(String(255), nullable=False)
    storage_type = Column(String(50), nullable=True)  # 'dry', 'cold', 'freezer'
    pricing_model = Column(String(50), nullable=True)  # 'daily', 'monthly-flat', ...
    base_price = Column(Numeric(10, 2), nullable=True)  # daily rate in cents

    kitchen = relationship("Kitchen", back_populates="storage_listings")
    bookings = relationship("StorageBooking", back_populates="storage_listing")

    def __repr__(self):
        return f"<StorageListing(id={self.id}, name='{self.name}')>"

class StorageBooking(Base):
    """A chef's paid storage rental"""
    __tablename__ = "storage_bookings"

    storage_listing_id = Column(Integer, ForeignKey('storage_listings.id'), nullable=False)
    chef_id = Column(Integer, ForeignKey('users.id'), nullable=True)

    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    total_price = Column(Numeric(10, 2), nullable=True)  # cents

    status = Column(String(50), nullable=False, default=BookingStatus.PENDING)
    payment_status = Column(String(50), nullable=True, default=PaymentStatus.PENDING)
    checkout_status = Column(String(50), nullable=True)

    # Stored for off-session charges
    stripe_customer_id = Column(String(255), nullable=True)
    stripe_payment_method_id = Column(String(255), nullable=True)

    storage_listing = relationship("StorageListing", back_populates="bookings")
    chef = relationship("User")

    __table_args__ = (
        Index('idx_storage_bookings_end_date', 'end_date'),
        Index('idx_storage_bookings_status', 'status'),
    )

    def __repr__(self):
        return f"<StorageBooking(id={self.id}, status='{self.status}', end_date='{self.end_date}')>"

class PlatformSetting(Base):
    """Key/value platform settings"""
    __tablename__ = "platform_settings"

    key = Column(String(255), nullable=False, unique=True)
    value = Column(Text, nullable=False)
    description = Column(Text, nullable=True)

    def __repr__(self):
        return f"<PlatformSetting(key='{self.key}', value='{self.value}')>"
