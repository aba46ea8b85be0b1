# ================================
# OVERSTAY CONFIGURATION TESTS (test_config_service.py)
# ================================

from decimal import Decimal

from sqlalchemy.exc import OperationalError

from conftest import detect_record
from overstay_engine.models.storage import StorageListing
from overstay_engine.services.overstay_config_service import OverstayConfigService


class TestConfigResolution:
    """Listing -> location -> platform -> fallback"""

    def test_hardcoded_defaults(self, db, factory):
        booking = factory.booking()

        config = OverstayConfigService.resolve(db, booking)

        assert config.grace_period_days == 3
        assert config.penalty_rate == Decimal("0.10")
        assert config.max_penalty_days == 30
        assert config.policy_text is None

    def test_platform_settings_override_defaults(self, db, factory):
        factory.platform_setting("overstay_grace_period_days", "5")
        factory.platform_setting("overstay_penalty_rate", "0.2")
        factory.platform_setting("overstay_max_penalty_days", "10")
        booking = factory.booking()

        config = OverstayConfigService.resolve(db, booking)

        assert config.grace_period_days == 5
        assert config.penalty_rate == Decimal("0.2")
        assert config.max_penalty_days == 10

    def test_each_field_resolves_independently(self, db, factory):
        factory.platform_setting("overstay_max_penalty_days", "20")
        factory.platform_setting("overstay_penalty_rate", "0.5")
        location = factory.location(
            overstay_penalty_rate=Decimal("0.15"),
            overstay_policy_text="Items left after the grace period are charged daily."
        )
        listing = factory.listing(kitchen=factory.kitchen(location=location), overstay_grace_period_days=1)
        booking = factory.booking(listing=listing)

        config = OverstayConfigService.resolve(db, booking)

        assert config.grace_period_days == 1          # listing
        assert config.penalty_rate == Decimal("0.15")  # location
        assert config.max_penalty_days == 20          # platform
        assert config.policy_text == "Items left after the grace period are charged daily."

    def test_listing_wins_over_location(self, db, factory):
        location = factory.location(overstay_grace_period_days=7, overstay_max_penalty_days=14)
        listing = factory.listing(
            kitchen=factory.kitchen(location=location),
            overstay_grace_period_days=2
        )
        booking = factory.booking(listing=listing)

        config = OverstayConfigService.resolve(db, booking)

        assert config.grace_period_days == 2
        assert config.max_penalty_days == 14

    def test_zero_override_is_respected(self, db, factory):
        listing = factory.listing(overstay_grace_period_days=0)
        booking = factory.booking(listing=listing)

        config = OverstayConfigService.resolve(db, booking)

        assert config.grace_period_days == 0

    def test_misconfigured_platform_values_are_ignored(self, db, factory):
        factory.platform_setting("overstay_grace_period_days", "-2")
        factory.platform_setting("overstay_penalty_rate", "ten percent")
        factory.platform_setting("overstay_max_penalty_days", "")
        booking = factory.booking()

        config = OverstayConfigService.resolve(db, booking)

        assert config == OverstayConfigService.defaults()

    def test_out_of_range_rate_falls_through(self, db, factory):
        location = factory.location(overstay_penalty_rate=Decimal("0.25"))
        listing = factory.listing(kitchen=factory.kitchen(location=location), overstay_penalty_rate=Decimal("1.5"))
        booking = factory.booking(listing=listing)

        config = OverstayConfigService.resolve(db, booking)

        assert config.penalty_rate == Decimal("0.25")

    def test_platform_defaults_only_contain_valid_settings(self, db, factory):
        factory.platform_setting("overstay_grace_period_days", "4")
        factory.platform_setting("overstay_penalty_rate", "abc")

        assert OverstayConfigService.get_platform_defaults(db) == {"grace_period_days": 4}


class TestUnreachableSettingsStore:
    """Lookup failures fall back to the hardcoded defaults"""

    def test_failed_lookups_use_defaults_and_record_is_created(self, db, factory, monkeypatch):
        location = factory.location(overstay_grace_period_days=7)
        listing = factory.listing(kitchen=factory.kitchen(location=location), overstay_max_penalty_days=10)
        factory.platform_setting("overstay_penalty_rate", "0.5")
        booking = factory.booking(listing=listing, days_overdue=5)

        unreachable = OperationalError("SELECT", {}, Exception("settings store unreachable"))
        real_get, real_execute = db.get, db.execute

        def get(entity, ident, **kwargs):
            if entity is StorageListing:
                raise unreachable
            return real_get(entity, ident, **kwargs)

        def execute(statement, *args, **kwargs):
            sql = str(statement)
            if "platform_settings" in sql or "FROM locations" in sql:
                raise unreachable
            return real_execute(statement, *args, **kwargs)

        monkeypatch.setattr(db, "get", get)
        monkeypatch.setattr(db, "execute", execute)

        assert OverstayConfigService.resolve(db, booking) == OverstayConfigService.defaults()

        record = detect_record(db, booking)
        assert record.status == "pending_review"
        assert record.grace_period_days == 3
        assert record.penalty_rate == Decimal("0.10")
        assert record.max_penalty_days == 30
