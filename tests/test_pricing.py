"""
Pricing engine, coupon policy and price catalog.

Clock: 2026-06-21 00:00. Monthly 2000 prorated over 10 of 30 days -> 667;
annual 12000 prorated over 200 of 365 days -> 6575.
"""

from itertools import product

import pytest

from provisioning.audit_log import AuditEvent
from provisioning.config import MIGRATION_CODE
from provisioning.errors import CouponRejected, GatewayError, PricesUnavailable, PricingFailed
from provisioning.gateway.base import Coupon, InvoicePreview
from provisioning.pricing import (
    COUPON_POLICY, CouponDuration, CouponTreatment, DiscountKind,
    classify_coupon, discount_percentage
)


# =============================================================================
# POLICY
# =============================================================================

def test_policy_covers_every_combination():
    assert set(COUPON_POLICY) == set(product(CouponDuration, DiscountKind))


@pytest.mark.parametrize('duration,percent_off,amount_off,expected', [
    ('once', 50, None, CouponTreatment.FIRST_INVOICE_ONLY),
    ('once', None, 500, CouponTreatment.STANDARD),
    ('repeating', 10, None, CouponTreatment.STANDARD),
    ('forever', 20, None, CouponTreatment.STANDARD),
    ('forever', None, 500, CouponTreatment.REJECT),
    ('sometimes', 20, None, CouponTreatment.REJECT),
    ('once', None, None, CouponTreatment.REJECT),
])
def test_classify_coupon(duration, percent_off, amount_off, expected):
    coupon = Coupon(id='co_1', duration=duration, percent_off=percent_off, amount_off=amount_off)
    assert classify_coupon(coupon) is expected


def test_discount_percentage_prefers_first_invoice():
    first = InvoicePreview(amount_due=500, subtotal=1000, total_discount=500)
    steady = InvoicePreview(amount_due=1800, subtotal=2000, total_discount=200)
    assert discount_percentage(first, steady) == 50


def test_discount_percentage_falls_back_to_steady_invoice():
    first = InvoicePreview(amount_due=1000, subtotal=1000)
    steady = InvoicePreview(amount_due=1500, subtotal=2000, total_discount=500)
    assert discount_percentage(first, steady) == 25


def test_discount_percentage_uses_pretax_subtotal():
    first = InvoicePreview(amount_due=900, subtotal=1200, total_discount=300,
                           subtotal_excluding_tax=1000)
    assert discount_percentage(first, InvoicePreview(amount_due=0, subtotal=0)) == 30


def test_discount_percentage_without_discount():
    preview = InvoicePreview(amount_due=1000, subtotal=1000)
    assert discount_percentage(preview, preview) == 0


# =============================================================================
# COMPUTE
# =============================================================================

def test_compute_without_coupon(services):
    pricing = services.pricing.compute('user-1', 'cus_1')

    assert pricing.prorated_monthly_price == 667
    assert pricing.prorated_annual_price == 6575
    assert pricing.prorated_price == 667 + 6575
    assert pricing.monthly_fee == 2000
    assert pricing.annual_fee == 12000
    assert pricing.discount_percentage == 0
    assert pricing.discounted_monthly_fee is None

    data = pricing.to_dict()
    assert data['nextMonthlyBillingDate'] == '2026-07-01'
    assert data['nextAnnualBillingDate'] == '2027-01-07'
    assert 'discountedMonthlyFee' not in data


def test_compute_issues_four_previews(services, gateway):
    services.pricing.compute('user-1', 'cus_1')
    assert gateway.count('preview_invoice') == 4


def test_once_percent_coupon_discounts_first_invoice_only(services, gateway):
    gateway.add_coupon('SPRING50', 'once', percent_off=50)

    pricing = services.pricing.compute('user-1', 'cus_1', code='SPRING50')

    assert pricing.discount_percentage == 50
    assert pricing.prorated_monthly_price < 667
    assert pricing.prorated_price == pricing.prorated_monthly_price + pricing.prorated_annual_price
    assert pricing.monthly_fee == 2000
    assert pricing.discounted_monthly_fee == 0
    assert pricing.discounted_annual_fee == 0
    assert pricing.coupon_id == 'co_spring50'
    assert pricing.to_dict()['coupon'] == 'SPRING50'


def test_forever_percent_coupon_discounts_recurring_fees(services, gateway):
    gateway.add_coupon('MEMBER20', 'forever', percent_off=20)

    pricing = services.pricing.compute('user-1', 'cus_1', code='MEMBER20')

    assert pricing.discount_percentage == 20
    assert pricing.discounted_monthly_fee == 1600
    assert pricing.discounted_annual_fee == 9600
    assert pricing.promotion_code_id == 'promo_member20'


def test_forever_amount_coupon_rejected_before_any_preview(services, gateway, audit):
    gateway.add_coupon('TENOFF', 'forever', amount_off=1000)

    with pytest.raises(CouponRejected) as excinfo:
        services.pricing.compute('user-1', 'cus_1', code='TENOFF')

    assert 'percentage-based' in excinfo.value.message
    assert gateway.count('preview_invoice') == 0
    assert audit.get_recent_events(event_type=AuditEvent.COUPON_REJECTED)


def test_unknown_code_rejected(services):
    with pytest.raises(CouponRejected) as excinfo:
        services.pricing.compute('user-1', 'cus_1', code='NOPE')
    assert excinfo.value.message == 'Invalid or inactive promotion code'


def test_inactive_code_rejected(services, gateway):
    gateway.add_coupon('OLD', 'once', percent_off=10, active=False)
    with pytest.raises(CouponRejected):
        services.pricing.compute('user-1', 'cus_1', code='OLD')


def test_migration_code_zeroes_amount_due(services, gateway):
    pricing = services.pricing.compute('user-1', 'cus_1', code=MIGRATION_CODE.lower())

    assert pricing.is_migration
    assert pricing.prorated_price == 0
    assert pricing.discount_percentage == 100
    assert pricing.discounted_monthly_fee == 0
    assert pricing.discounted_annual_fee == 0
    assert pricing.prorated_monthly_price == 667
    assert gateway.count('find_promotion_code') == 0


def test_preview_failure_fails_whole_computation(services, gateway, audit):
    gateway.fail('preview_invoice', GatewayError('boom', gateway_code='api_error'), after=2)

    with pytest.raises(PricingFailed) as excinfo:
        services.pricing.compute('user-1', 'cus_1')

    assert excinfo.value.message == 'Failed to get pricing details'
    assert audit.get_recent_events(event_type=AuditEvent.PRICING_FAILED)


# =============================================================================
# PRICE CATALOG
# =============================================================================

def test_catalog_caches_price_ids(services, gateway, clock):
    first = services.catalog.resolve('user-1')
    second = services.catalog.resolve('user-1')

    assert first == second
    assert gateway.count('find_price_id') == 2

    clock.advance(hours=25)
    services.catalog.resolve('user-1')
    assert gateway.count('find_price_id') == 4


def test_catalog_missing_price(services, gateway):
    gateway.lookup_keys.clear()
    with pytest.raises(PricesUnavailable):
        services.catalog.resolve('user-1')


def test_catalog_lookup_failure(services, gateway):
    gateway.fail('find_price_id', GatewayError('down'))
    with pytest.raises(PricesUnavailable):
        services.catalog.resolve('user-1')
