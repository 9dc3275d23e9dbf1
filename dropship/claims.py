"""Per-intent lease guarding supplier order placement.

Stripe metadata has no conditional write, so the ``ali_order_id`` check alone
races when two deliveries for one intent run at the same time. Whoever inserts
the ``fulfillment_claims`` row first owns placement; the primary key makes the
insert atomic. A claim without an order id that is older than the lease TTL is
assumed abandoned and can be taken over.
"""

from dataclasses import dataclass
from datetime import timedelta

import structlog
from sqlalchemy import and_, update
from sqlalchemy.exc import IntegrityError

from dropship.database import SessionLocal
from dropship.models import FulfillmentClaim, as_utc, utcnow

logger = structlog.get_logger(__name__)

LEASE_TTL = timedelta(minutes=15)


@dataclass(frozen=True)
class Claim:
    intent_id: str
    acquired: bool
    order_id: str | None = None


class ClaimRegistry:
    def __init__(self, session_factory=None, lease_ttl: timedelta = LEASE_TTL, clock=utcnow):
        self._session_factory = session_factory
        self.lease_ttl = lease_ttl
        self._clock = clock

    def _session(self):
        return (self._session_factory or SessionLocal)()

    def claim(self, intent_id: str, source: str) -> Claim:
        now = self._clock()
        with self._session() as db:
            db.add(FulfillmentClaim(intent_id=intent_id, source=source, claimed_at=now))
            try:
                db.commit()
                return Claim(intent_id, acquired=True)
            except IntegrityError:
                db.rollback()

            existing = db.get(FulfillmentClaim, intent_id)
            if existing is None:
                # released between our insert and read; next delivery retries
                return Claim(intent_id, acquired=False)
            if existing.order_id:
                return Claim(intent_id, acquired=False, order_id=existing.order_id)
            if now - as_utc(existing.claimed_at) < self.lease_ttl:
                return Claim(intent_id, acquired=False)

            # stale lease: take it over only if nobody else did first
            result = db.execute(
                update(FulfillmentClaim)
                .where(and_(
                    FulfillmentClaim.intent_id == intent_id,
                    FulfillmentClaim.order_id.is_(None),
                    FulfillmentClaim.claimed_at == existing.claimed_at,
                ))
                .values(source=source, claimed_at=now)
            )
            db.commit()
            acquired = result.rowcount == 1
            if acquired:
                logger.warning("fulfillment_claim_taken_over", intent_id=intent_id, source=source)
            return Claim(intent_id, acquired=acquired)

    def complete(self, intent_id: str, order_id: str) -> None:
        with self._session() as db:
            db.execute(
                update(FulfillmentClaim)
                .where(FulfillmentClaim.intent_id == intent_id)
                .values(order_id=order_id)
            )
            db.commit()

    def release(self, intent_id: str) -> None:
        with self._session() as db:
            claim = db.get(FulfillmentClaim, intent_id)
            if claim is not None and not claim.order_id:
                db.delete(claim)
                db.commit()

    def get(self, intent_id: str) -> FulfillmentClaim | None:
        with self._session() as db:
            claim = db.get(FulfillmentClaim, intent_id)
            if claim is not None:
                db.expunge(claim)
            return claim
