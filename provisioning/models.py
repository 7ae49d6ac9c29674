"""
provisioning/models.py

SQLAlchemy models for signup provisioning.

Tables:
    - payment_sessions: One in-progress provisioning attempt per user
    - user_profiles: Member profile, including the Stripe customer id
    - invitations: Time-boxed offers to complete signup
    - waitlist: Intake queue the invitations are issued from
    - provider_price_map: Cached provider price ids per plan

Design principles:
    1. One payment session row per user: overwritten, never appended
    2. Sessions are retired with is_used, not deleted
    3. Amounts are integer cents
    4. Timestamps are naive UTC

Version History:
    2026-10-18: Initial implementation
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func


Base = declarative_base()


def utcnow() -> datetime:
    """Current time as naive UTC, the representation stored in every table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# PAYMENT SESSION MODEL
# =============================================================================

class ConfirmationState:
    """Where a finalize attempt got to on the gateway side."""
    NONE = 'none'            # No confirmation attempted yet
    PENDING = 'pending'      # Confirmation may have reached the gateway
    CONFIRMED = 'confirmed'  # Both intents confirmed, registration finalized


class PaymentSession(Base):
    """
    Persisted provisioning attempt.

    Key design:
    - user_id is unique: a new attempt overwrites the row in place
    - total_amount is what is due NOW (sum of the two prorated invoices)
    - monthly_amount / annual_amount are the steady-state plan prices
    - discount columns are only set while a coupon is applied
    - version guards overwrites against a concurrent writer
    """
    __tablename__ = 'payment_sessions'

    id = Column(Integer, primary_key=True)

    # Owner
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    customer_id = Column(String(200))

    # Gateway references
    monthly_subscription_id = Column(String(200), nullable=False)
    annual_subscription_id = Column(String(200), nullable=False)
    monthly_payment_intent_id = Column(String(200), nullable=False)
    annual_payment_intent_id = Column(String(200), nullable=False)

    # Money
    monthly_amount = Column(Integer, nullable=False)
    annual_amount = Column(Integer, nullable=False)
    total_amount = Column(Integer, nullable=False)

    # Coupon (all null unless a coupon was applied)
    discounted_monthly_amount = Column(Integer)
    discounted_annual_amount = Column(Integer)
    discount_percentage = Column(Integer)
    coupon_id = Column(String(200))

    # Status
    confirmation_state = Column(String(20), nullable=False, default=ConfirmationState.NONE)
    is_used = Column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime)
    expires_at = Column(DateTime, nullable=False)

    # Optimistic concurrency
    version = Column(Integer, nullable=False)

    __mapper_args__ = {'version_id_col': version}

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_active(self, now: datetime) -> bool:
        """Unexpired and unused: the only state in which a session may be reused."""
        return not self.is_used and not self.is_expired(now)

    def __repr__(self):
        return f'<PaymentSession user={self.user_id} used={self.is_used}>'


# Index for cleanup queries
Index('idx_payment_sessions_expires', PaymentSession.expires_at)


# =============================================================================
# MEMBER MODELS
# =============================================================================

class UserProfile(Base):
    """Member profile; active once registration is complete."""
    __tablename__ = 'user_profiles'

    user_id = Column(String(64), primary_key=True)
    customer_id = Column(String(200), index=True)

    first_name = Column(String(200))
    last_name = Column(String(200))
    email = Column(String(500), index=True)

    # Collected at registration
    next_of_kin_name = Column(String(200))
    next_of_kin_phone = Column(String(50))
    insurance_form_submitted = Column(Boolean, default=False)

    is_active = Column(Boolean, default=False)
    registered_at = Column(DateTime)

    def __repr__(self):
        return f'<UserProfile {self.user_id}>'


class InvitationStatus:
    """Invitation status constants."""
    PENDING = 'pending'
    ACCEPTED = 'accepted'
    EXPIRED = 'expired'
    REVOKED = 'revoked'


class Invitation(Base):
    __tablename__ = 'invitations'

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), ForeignKey('user_profiles.user_id'), nullable=False, index=True)
    email = Column(String(500), nullable=False)
    status = Column(String(20), nullable=False, default=InvitationStatus.PENDING, index=True)

    created_at = Column(DateTime, server_default=func.now())
    expires_at = Column(DateTime)

    def __repr__(self):
        return f'<Invitation {self.id} {self.status}>'


class WaitlistStatus:
    WAITING = 'waiting'
    INVITED = 'invited'
    JOINED = 'joined'


class WaitlistEntry(Base):
    __tablename__ = 'waitlist'

    id = Column(Integer, primary_key=True)
    email = Column(String(500), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=WaitlistStatus.WAITING)

    created_at = Column(DateTime, server_default=func.now())

    def __repr__(self):
        return f'<WaitlistEntry {self.email} {self.status}>'


# =============================================================================
# PROVIDER PRICE MAP MODEL
# =============================================================================

class ProviderPriceMap(Base):
    """
    Maps our plan codes to provider-specific price ids.

    Example:
        provider='stripe', plan_code='monthly', provider_price_id='price_abc123'

    Rows double as a cache: they are refreshed from the provider's lookup
    keys once updated_at is older than PRICE_CACHE_HOURS.
    """
    __tablename__ = 'provider_price_map'

    id = Column(Integer, primary_key=True)

    provider = Column(String(50), nullable=False)
    plan_code = Column(String(50), nullable=False)
    provider_price_id = Column(String(200), nullable=False)

    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('provider', 'plan_code', name='uq_provider_price_map'),
    )

    def __repr__(self):
        return f'<ProviderPriceMap {self.provider}:{self.plan_code}>'
