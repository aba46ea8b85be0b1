# ================================
# DEPENDENCIES (dependencies.py)
# ================================

from overstay_engine.core.database import get_db
from overstay_engine.services.stripe_service import StripePaymentService, get_payment_service

__all__ = [
    "get_db",
    "get_payment_service",
    "StripePaymentService",
]
