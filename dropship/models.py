from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, String
from dropship.database import Base

SINGLETON_TOKEN_ID = 1


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SupplierToken(Base):
    __tablename__ = "supplier_tokens"

    id = Column(Integer, primary_key=True, default=SINGLETON_TOKEN_ID)
    access_token = Column(String, nullable=False)
    refresh_token = Column(String, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class FulfillmentClaim(Base):
    __tablename__ = "fulfillment_claims"

    intent_id = Column(String, primary_key=True)   # Stripe PaymentIntent ID
    source = Column(String)                        # webhook event type that claimed it
    order_id = Column(String, nullable=True)       # set once the supplier order exists
    claimed_at = Column(DateTime(timezone=True), default=utcnow)
