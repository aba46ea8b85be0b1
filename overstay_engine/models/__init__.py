# ================================
# DATABASE INITIALIZATION (models/__init__.py)
# ================================

"""
Database Models Package

Imports every model so that metadata (and Alembic) sees all tables
"""

from overstay_engine.models.base import Base

from overstay_engine.models.storage import (
    User, Location, Kitchen, StorageListing, StorageBooking, PlatformSetting
)
from overstay_engine.models.overstay import (
    OverstayRecord, OverstayHistory,
    OverstayStatus, OverstayEventType, OverstayEventSource
)

__all__ = [
    "Base",
    "User",
    "Location",
    "Kitchen",
    "StorageListing",
    "StorageBooking",
    "PlatformSetting",
    "OverstayRecord",
    "OverstayHistory",
    "OverstayStatus",
    "OverstayEventType",
    "OverstayEventSource",
]
