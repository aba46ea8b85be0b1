# ================================
# BASE MODEL (models/base.py)
# ================================

from sqlalchemy import Column, DateTime, Integer, Numeric, func
from sqlalchemy.orm import as_declarative, declared_attr
from datetime import datetime, timezone

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

@as_declarative()
class Base:
    """Base model with shared columns"""

    # Table names derived from the class name unless overridden
    @declared_attr
    def __tablename__(cls) -> str:
        return cls.__name__.lower() + "s"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False
    )

class OverstayConfigMixin:
    """Nullable overstay penalty overrides carried by listings and locations"""

    @declared_attr
    def overstay_grace_period_days(cls):
        return Column(Integer, nullable=True)

    @declared_attr
    def overstay_penalty_rate(cls):
        return Column(Numeric(5, 4), nullable=True)  # decimal, e.g. 0.1000 for 10%

    @declared_attr
    def overstay_max_penalty_days(cls):
        return Column(Integer, nullable=True)
