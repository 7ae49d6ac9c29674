"""
provisioning/config.py

Provisioning configuration and plan definitions.

Design principles:
    1. Plans defined HERE, prices live in Stripe (resolved by lookup key)
    2. Amounts in cents (avoid floating point)
    3. Every member holds two subscriptions: monthly dues + annual fee
    4. Billing anchors are fixed: 1st of the month, 7th of January

Plan lineup:
    - monthly: billed on the 1st of every month
    - annual:  billed every year on January 7th

Version History:
    2026-10-18: Initial implementation
"""

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict


# =============================================================================
# STRIPE CONFIGURATION
# =============================================================================

STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY', '')
STRIPE_PUBLISHABLE_KEY = os.environ.get('STRIPE_PUBLISHABLE_KEY', '')

# Stripe mode detection
STRIPE_TEST_MODE = STRIPE_SECRET_KEY.startswith('sk_test_')

if not STRIPE_SECRET_KEY:
    print("[Provisioning] WARNING: STRIPE_SECRET_KEY not set")
elif STRIPE_TEST_MODE:
    print("[Provisioning] Stripe running in TEST mode")
else:
    print("[Provisioning] Stripe running in LIVE mode")

# Outbound call policy (applied by the gateway client)
GATEWAY_TIMEOUT_SECONDS = int(os.environ.get('GATEWAY_TIMEOUT_SECONDS', '30'))
GATEWAY_MAX_RETRIES = int(os.environ.get('GATEWAY_MAX_RETRIES', '2'))


# =============================================================================
# SIGNING
# =============================================================================

SIGNUP_SECRET_KEY = os.environ.get('SIGNUP_SECRET_KEY', '')

if not SIGNUP_SECRET_KEY:
    print("[Provisioning] WARNING: SIGNUP_SECRET_KEY not set, signup cookies cannot be verified")


# =============================================================================
# PLAN DEFINITIONS
# =============================================================================

MONTHLY_FEE_LOOKUP_KEY = os.environ.get('MONTHLY_FEE_LOOKUP_KEY', 'standard_membership_fee')
ANNUAL_FEE_LOOKUP_KEY = os.environ.get('ANNUAL_FEE_LOOKUP_KEY', 'annual_membership_fee_revised')


class PlanCode(str, Enum):
    """The two plans every member subscribes to."""
    MONTHLY = 'monthly'
    ANNUAL = 'annual'


def next_month_start(now: datetime) -> datetime:
    """00:00 on the 1st of the month after `now`."""
    if now.month == 12:
        return datetime(now.year + 1, 1, 1)
    return datetime(now.year, now.month + 1, 1)


def next_january_seventh(now: datetime) -> datetime:
    """00:00 on the first January 7th strictly after `now`."""
    anchor = datetime(now.year, 1, 7)
    if now < anchor:
        return anchor
    return datetime(now.year + 1, 1, 7)


@dataclass(frozen=True)
class Plan:
    """Plan definition."""
    code: str
    name: str
    lookup_key: str
    # Passed to Stripe as billing_cycle_anchor_config
    anchor_config: Dict[str, int] = field(default_factory=dict)

    def next_anchor(self, now: datetime) -> datetime:
        """Next billing-cycle boundary, used to build invoice previews."""
        if self.code == PlanCode.ANNUAL:
            return next_january_seventh(now)
        return next_month_start(now)


PLANS: Dict[str, Plan] = {
    PlanCode.MONTHLY: Plan(
        code=PlanCode.MONTHLY,
        name='Monthly membership',
        lookup_key=MONTHLY_FEE_LOOKUP_KEY,
        anchor_config={'day_of_month': 1},
    ),
    PlanCode.ANNUAL: Plan(
        code=PlanCode.ANNUAL,
        name='Annual membership fee',
        lookup_key=ANNUAL_FEE_LOOKUP_KEY,
        anchor_config={'month': 1, 'day_of_month': 7},
    ),
}


def get_plan(code: str) -> Plan:
    """Get plan by code."""
    return PLANS[code]


# =============================================================================
# BUSINESS RULES
# =============================================================================

CURRENCY = 'eur'

# Subscriptions are restricted to a single payment method type
PAYMENT_METHOD_TYPE = 'sepa_debit'

# Entering this code at signup waives the first payment for migrated members
MIGRATION_CODE = os.environ.get('DASHBOARD_MIGRATION_CODE', 'DHCDASHBOARD')

# Payment session lifetime
SESSION_TTL_HOURS = 24

# Price ids resolved by lookup key are cached this long
PRICE_CACHE_HOURS = 24

# Sessions older than this are purged regardless of state
STALE_SESSION_RETENTION_DAYS = 30

# Signed cookies
ACCESS_TOKEN_MAX_AGE_SECONDS = int(os.environ.get('ACCESS_TOKEN_MAX_AGE_SECONDS', str(7 * 24 * 3600)))
PAYMENT_COOKIE_MAX_AGE_SECONDS = SESSION_TTL_HOURS * 3600

ACCESS_TOKEN_COOKIE = 'access-token'
PAYMENT_SESSION_COOKIE = 'payment-session'


def is_migration_code(code: str) -> bool:
    """Migration code comparison is case-insensitive and ignores whitespace."""
    return code.strip().lower() == MIGRATION_CODE.strip().lower()
