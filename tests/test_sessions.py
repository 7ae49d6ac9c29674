"""Payment session store: overwrite semantics, activity checks, purge."""

from datetime import timedelta

from provisioning import sessions
from provisioning.db import transaction
from provisioning.gateway.base import ProvisionedSubscription
from provisioning.models import ConfirmationState, PaymentSession
from provisioning.pricing import PlanPricing
from tests.conftest import FIXED_NOW


def _pair(suffix='1', monthly_due=667, annual_due=6575):
    return sessions.ProvisionedPair(
        monthly=ProvisionedSubscription(f'sub_m{suffix}', f'pi_m{suffix}', monthly_due, 2000),
        annual=ProvisionedSubscription(f'sub_a{suffix}', f'pi_a{suffix}', annual_due, 12000),
    )


def test_save_session_inserts_row(factory):
    with transaction(factory) as db:
        row = sessions.save_session(db, 'user-1', 'cus_1', _pair(), FIXED_NOW)

    assert row.total_amount == 667 + 6575
    assert row.monthly_amount == 2000
    assert row.annual_amount == 12000
    assert row.expires_at == FIXED_NOW + timedelta(hours=24)
    assert row.confirmation_state == ConfirmationState.NONE
    assert row.is_used is False


def test_save_session_overwrites_and_clears_discount(factory):
    pricing = PlanPricing(
        prorated_monthly_price=333, prorated_annual_price=3288, prorated_price=3621,
        monthly_fee=2000, annual_fee=12000, discount_percentage=50,
        discounted_monthly_fee=0, discounted_annual_fee=0, coupon_id='co_half',
    )
    with transaction(factory) as db:
        row = sessions.save_session(db, 'user-1', 'cus_1', _pair(), FIXED_NOW)
        sessions.record_discount(db, row, pricing, _pair('1', 333, 3288), FIXED_NOW)
        assert row.coupon_id == 'co_half'
        assert row.total_amount == 3621

    later = FIXED_NOW + timedelta(hours=1)
    with transaction(factory) as db:
        sessions.save_session(db, 'user-1', 'cus_1', _pair('2'), later)

    with transaction(factory) as db:
        rows = db.query(PaymentSession).all()
        assert len(rows) == 1
        row = rows[0]
        assert row.monthly_subscription_id == 'sub_m2'
        assert row.coupon_id is None
        assert row.discount_percentage is None
        assert row.discounted_monthly_amount is None
        assert row.expires_at == later + timedelta(hours=24)
        assert row.created_at == later


def test_get_active_session_ignores_expired_and_used(factory):
    with transaction(factory) as db:
        row = sessions.save_session(db, 'user-1', 'cus_1', _pair(), FIXED_NOW)

    with transaction(factory) as db:
        assert sessions.get_active_session(db, 'user-1', FIXED_NOW) is not None
        assert sessions.get_active_session(db, 'user-1', FIXED_NOW + timedelta(hours=24)) is None

    with transaction(factory) as db:
        row = sessions.get_session_row(db, 'user-1')
        sessions.mark_used(db, row, FIXED_NOW)

    with transaction(factory) as db:
        assert sessions.get_active_session(db, 'user-1', FIXED_NOW) is None
        row = sessions.get_session_row(db, 'user-1')
        assert row.confirmation_state == ConfirmationState.CONFIRMED


def test_purge_removes_expired_unused_sessions(factory):
    with transaction(factory) as db:
        sessions.save_session(db, 'expired', 'cus_1', _pair('1'), FIXED_NOW - timedelta(days=2))
        sessions.save_session(db, 'active', 'cus_2', _pair('2'), FIXED_NOW)
        used = sessions.save_session(db, 'used', 'cus_3', _pair('3'), FIXED_NOW - timedelta(days=2))
        sessions.mark_used(db, used, FIXED_NOW)
        sessions.save_session(db, 'ancient', 'cus_4', _pair('4'), FIXED_NOW - timedelta(days=40))

    with transaction(factory) as db:
        ancient = sessions.get_session_row(db, 'ancient')
        sessions.mark_used(db, ancient, FIXED_NOW - timedelta(days=39))

    with transaction(factory) as db:
        purged = sessions.purge_stale_sessions(db, FIXED_NOW)

    assert purged == 2
    with transaction(factory) as db:
        remaining = sorted(row.user_id for row in db.query(PaymentSession).all())
    assert remaining == ['active', 'used']


def test_purge_keeps_active_session_on_old_row(factory):
    month_ago = FIXED_NOW - timedelta(days=31)
    with transaction(factory) as db:
        sessions.save_session(db, 'user-1', 'cus_1', _pair('1'), month_ago)

    with transaction(factory) as db:
        sessions.save_session(db, 'user-1', 'cus_1', _pair('2'), FIXED_NOW)

    with transaction(factory) as db:
        assert sessions.purge_stale_sessions(db, FIXED_NOW) == 0
        assert sessions.get_active_session(db, 'user-1', FIXED_NOW).monthly_subscription_id == 'sub_m2'
