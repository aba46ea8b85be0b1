"""
Overstay Configuration Service

Resolves the effective grace period, penalty rate and penalty cap for a
booking. Hierarchy, highest priority first:

1. Storage listing override
2. Location override
3. Platform setting
4. Hardcoded fallback

Resolution runs on every call; nothing is cached between calls. Each lookup
runs in its own savepoint so a failed read does not abort the caller's
transaction.
"""

from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from overstay_engine.models.storage import StorageBooking, StorageListing, Kitchen, Location, PlatformSetting
from overstay_engine.schemas.overstay import EffectivePenaltyConfig

logger = logging.getLogger(__name__)

FIELDS = ("grace_period_days", "penalty_rate", "max_penalty_days")


class OverstayConfigService:
    """Listing -> location -> platform -> fallback resolution"""

    DEFAULT_GRACE_PERIOD_DAYS = 3
    DEFAULT_PENALTY_RATE = Decimal('0.10')
    DEFAULT_MAX_PENALTY_DAYS = 30

    PLATFORM_SETTING_KEYS = {
        "grace_period_days": "overstay_grace_period_days",
        "penalty_rate": "overstay_penalty_rate",
        "max_penalty_days": "overstay_max_penalty_days",
    }

    @classmethod
    def defaults(cls) -> EffectivePenaltyConfig:
        return EffectivePenaltyConfig(
            grace_period_days=cls.DEFAULT_GRACE_PERIOD_DAYS,
            penalty_rate=cls.DEFAULT_PENALTY_RATE,
            max_penalty_days=cls.DEFAULT_MAX_PENALTY_DAYS
        )

    @classmethod
    def resolve(cls, db: Session, booking: StorageBooking) -> EffectivePenaltyConfig:
        """Effective configuration for a booking. Never raises."""
        try:
            listing_values = cls._listing_overrides(db, booking)
            location_values = cls._location_overrides(db, booking)
            platform_values = cls.get_platform_defaults(db)

            effective = {}
            for field in FIELDS:
                effective[field] = _coalesce(
                    listing_values.get(field),
                    location_values.get(field),
                    platform_values.get(field),
                    getattr(cls.defaults(), field)
                )

            return EffectivePenaltyConfig(
                **effective,
                policy_text=location_values.get("policy_text")
            )
        except Exception as e:
            logger.error(
                f"Failed to resolve overstay config for booking {getattr(booking, 'id', None)}, "
                f"using hardcoded defaults: {e}",
                exc_info=True
            )
            return cls.defaults()

    @classmethod
    def get_platform_defaults(cls, db: Session) -> Dict[str, Any]:
        """Platform-wide values; unset, invalid or unreadable settings are omitted"""
        try:
            with db.begin_nested():
                rows = db.execute(
                    select(PlatformSetting.key, PlatformSetting.value).where(
                        PlatformSetting.key.in_(list(cls.PLATFORM_SETTING_KEYS.values()))
                    )
                ).all()
        except SQLAlchemyError as e:
            logger.error(f"Error fetching platform overstay defaults: {e}")
            return {}

        raw_by_key = {key: value for key, value in rows}
        values = {}
        for field, key in cls.PLATFORM_SETTING_KEYS.items():
            if key in raw_by_key:
                values[field] = _validated(field, raw_by_key[key], source=f"platform setting '{key}'")
        return {field: value for field, value in values.items() if value is not None}

    @classmethod
    def _listing_overrides(cls, db: Session, booking: StorageBooking) -> Dict[str, Any]:
        try:
            with db.begin_nested():
                listing = db.get(StorageListing, booking.storage_listing_id)
        except SQLAlchemyError as e:
            logger.error(f"Error fetching listing overrides for booking {booking.id}: {e}")
            return {}
        if not listing:
            return {}
        return _override_values(listing, source=f"storage listing {listing.id}")

    @classmethod
    def _location_overrides(cls, db: Session, booking: StorageBooking) -> Dict[str, Any]:
        try:
            with db.begin_nested():
                location = db.execute(
                    select(Location)
                    .join(Kitchen, Kitchen.location_id == Location.id)
                    .join(StorageListing, StorageListing.kitchen_id == Kitchen.id)
                    .where(StorageListing.id == booking.storage_listing_id)
                ).scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error fetching location overrides for booking {booking.id}: {e}")
            return {}
        if not location:
            return {}

        values = _override_values(location, source=f"location {location.id}")
        values["policy_text"] = location.overstay_policy_text
        return values


def _override_values(entity, source: str) -> Dict[str, Any]:
    values = {
        "grace_period_days": _validated("grace_period_days", entity.overstay_grace_period_days, source),
        "penalty_rate": _validated("penalty_rate", entity.overstay_penalty_rate, source),
        "max_penalty_days": _validated("max_penalty_days", entity.overstay_max_penalty_days, source),
    }
    return {field: value for field, value in values.items() if value is not None}


def _validated(field: str, raw, source: str):
    """Parse one configured value; None if unset or misconfigured"""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    try:
        if field == "penalty_rate":
            value = Decimal(str(raw).strip())
            if not value.is_finite() or value < 0 or value > 1:
                raise ValueError("rate must be between 0 and 1")
        else:
            value = int(str(raw).strip())
            if value < 0:
                raise ValueError("days must not be negative")
    except (ValueError, InvalidOperation) as e:
        logger.warning(f"Ignoring misconfigured {field}={raw!r} on {source}: {e}")
        return None
    return value


def _coalesce(*values):
    for value in values:
        if value is not None:
            return value
    return None
