"""
provisioning/sessions.py

Payment session store.

One row per user in payment_sessions. A new provisioning attempt
overwrites the row in place; a finished one is retired with is_used.

Operations:
    - get_session_row(db, user_id) -> PaymentSession | None
    - get_active_session(db, user_id, now) -> PaymentSession | None
    - save_session(db, user_id, customer_id, provisioned, now) -> PaymentSession
    - record_discount(db, session, pricing, provisioned, now)
    - mark_confirmation_pending(db, session, now)
    - mark_used(db, session, now)
    - purge_stale_sessions(db, now) -> int

Design principles:
    1. Functions take an open session and never commit (caller owns the unit of work)
    2. Overwrite resets every coupon column: a new pair starts undiscounted
    3. The version column makes a concurrent overwrite a StaleDataError

Version History:
    2026-10-18: Initial implementation
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from provisioning.config import SESSION_TTL_HOURS, STALE_SESSION_RETENTION_DAYS
from provisioning.gateway.base import ProvisionedSubscription
from provisioning.models import PaymentSession, ConfirmationState


@dataclass(frozen=True)
class ProvisionedPair:
    """The monthly and annual subscriptions created for one attempt."""
    monthly: ProvisionedSubscription
    annual: ProvisionedSubscription

    @property
    def total_amount(self) -> int:
        """Amount due now: both prorated first invoices."""
        return self.monthly.amount_due + self.annual.amount_due


# =============================================================================
# READS
# =============================================================================

def get_session_row(db: Session, user_id: str) -> Optional[PaymentSession]:
    """The user's row regardless of state."""
    return db.query(PaymentSession).filter(
        PaymentSession.user_id == user_id
    ).first()


def get_active_session(db: Session, user_id: str, now: datetime) -> Optional[PaymentSession]:
    """The user's session if it is unexpired and unused."""
    return db.query(PaymentSession).filter(
        PaymentSession.user_id == user_id,
        PaymentSession.is_used.is_(False),
        PaymentSession.expires_at > now
    ).first()


# =============================================================================
# WRITES
# =============================================================================

def save_session(
    db: Session,
    user_id: str,
    customer_id: str,
    provisioned: ProvisionedPair,
    now: datetime,
) -> PaymentSession:
    """
    Persist a freshly provisioned pair with overwrite semantics.

    Updates the user's row in place when one exists, otherwise inserts.
    """
    session = get_session_row(db, user_id)
    if session is None:
        session = PaymentSession(user_id=user_id)
        db.add(session)

    # An overwrite starts a new session lifetime
    session.created_at = now
    session.customer_id = customer_id
    session.monthly_subscription_id = provisioned.monthly.subscription_id
    session.annual_subscription_id = provisioned.annual.subscription_id
    session.monthly_payment_intent_id = provisioned.monthly.payment_intent_id
    session.annual_payment_intent_id = provisioned.annual.payment_intent_id

    session.monthly_amount = provisioned.monthly.plan_amount
    session.annual_amount = provisioned.annual.plan_amount
    session.total_amount = provisioned.total_amount

    session.discounted_monthly_amount = None
    session.discounted_annual_amount = None
    session.discount_percentage = None
    session.coupon_id = None

    session.confirmation_state = ConfirmationState.NONE
    session.is_used = False
    session.expires_at = now + timedelta(hours=SESSION_TTL_HOURS)
    session.updated_at = now

    db.flush()
    return session


def record_discount(
    db: Session,
    session: PaymentSession,
    pricing,
    provisioned: ProvisionedPair,
    now: datetime,
) -> PaymentSession:
    """
    Store an applied coupon on the session.

    The plan amounts (monthly_amount / annual_amount) keep the undiscounted
    prices; the intents and total_amount follow the discounted first invoices.
    """
    session.coupon_id = pricing.coupon_id
    session.discount_percentage = pricing.discount_percentage
    session.discounted_monthly_amount = pricing.discounted_monthly_fee
    session.discounted_annual_amount = pricing.discounted_annual_fee

    session.monthly_payment_intent_id = provisioned.monthly.payment_intent_id
    session.annual_payment_intent_id = provisioned.annual.payment_intent_id
    session.total_amount = provisioned.total_amount
    session.updated_at = now

    db.flush()
    return session


def mark_confirmation_pending(db: Session, session: PaymentSession, now: datetime) -> None:
    """Record that a finalize attempt is about to reach the gateway."""
    session.confirmation_state = ConfirmationState.PENDING
    session.updated_at = now
    db.flush()


def mark_used(db: Session, session: PaymentSession, now: datetime) -> None:
    session.is_used = True
    session.confirmation_state = ConfirmationState.CONFIRMED
    session.updated_at = now
    db.flush()


# =============================================================================
# CLEANUP
# =============================================================================

def purge_stale_sessions(db: Session, now: datetime) -> int:
    """
    Delete abandoned sessions.

    Removes unused sessions past their expiry, and expired sessions (used or
    not) created before the retention window. An unexpired, unused session
    is never deleted. Returns the number of rows deleted.
    """
    cutoff = now - timedelta(days=STALE_SESSION_RETENTION_DAYS)

    deleted = db.query(PaymentSession).filter(
        or_(
            (PaymentSession.is_used.is_(False)) & (PaymentSession.expires_at < now),
            (PaymentSession.created_at < cutoff) & (PaymentSession.expires_at < now),
        )
    ).delete(synchronize_session=False)

    if deleted:
        print(f"[Sessions] Purged {deleted} stale payment session(s)")

    return deleted
