"""
provisioning/pricing.py

Pricing engine for the monthly + annual membership pair.

Computes what a new member pays now (the two prorated first invoices) and
what they pay per cycle afterwards, optionally under a promotion code.

Algorithm:
    Four non-mutating invoice previews, run in parallel:
        1. monthly, billed now and prorated to the 1st of next month
        2. annual, billed now and prorated to the next January 7th
        3. monthly, full cycle starting on the 1st of next month
        4. annual, full cycle starting on the next January 7th
    (1)+(2) is the amount due now; (3) and (4) are the recurring fees.

Design principles:
    1. Coupon policy is checked BEFORE any preview is issued
    2. No partial pricing: any preview failure fails the whole computation
    3. Amounts are never logged, only the user id and operation

Usage:
    engine = PricingEngine(gateway, PriceCatalog(gateway))
    pricing = engine.compute(user_id, customer_id, code='SPRING50')
    return jsonify({'success': True, 'pricing': pricing.to_dict()})

Version History:
    2026-10-18: Initial implementation
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from itertools import product
from typing import Any, Callable, Dict, Optional

from provisioning.audit_log import AuditEvent, AuditLogger, get_audit_logger
from provisioning.config import (
    PLANS, PlanCode, PRICE_CACHE_HOURS, is_migration_code
)
from provisioning.db import SessionFactory, transaction
from provisioning.errors import (
    CouponRejected, GatewayError, PricesUnavailable, PricingFailed
)
from provisioning.gateway.base import (
    Coupon, InvoicePreview, PaymentGateway, PromotionCode
)
from provisioning.models import ProviderPriceMap, utcnow


# =============================================================================
# COUPON POLICY
# =============================================================================

class CouponDuration(str, Enum):
    ONCE = 'once'
    REPEATING = 'repeating'
    FOREVER = 'forever'


class DiscountKind(str, Enum):
    PERCENT = 'percent_off'
    AMOUNT = 'amount_off'


class CouponTreatment(Enum):
    """How a coupon combination is priced."""
    STANDARD = 'standard'                      # Preview-derived amounts stand
    FIRST_INVOICE_ONLY = 'first_invoice_only'  # Recurring fees unaffected
    REJECT = 'reject'


COUPON_POLICY: Dict[tuple, CouponTreatment] = {
    (CouponDuration.ONCE, DiscountKind.PERCENT): CouponTreatment.FIRST_INVOICE_ONLY,
    (CouponDuration.ONCE, DiscountKind.AMOUNT): CouponTreatment.STANDARD,
    (CouponDuration.REPEATING, DiscountKind.PERCENT): CouponTreatment.STANDARD,
    (CouponDuration.REPEATING, DiscountKind.AMOUNT): CouponTreatment.STANDARD,
    (CouponDuration.FOREVER, DiscountKind.PERCENT): CouponTreatment.STANDARD,
    # An absolute amount off every future invoice has no stable percentage
    (CouponDuration.FOREVER, DiscountKind.AMOUNT): CouponTreatment.REJECT,
}

_uncovered = set(product(CouponDuration, DiscountKind)) - set(COUPON_POLICY)
if _uncovered:
    raise RuntimeError(f"Coupon policy has no entry for: {sorted(_uncovered)}")


def classify_coupon(coupon: Coupon) -> CouponTreatment:
    """Look up the treatment for a coupon; unknown shapes are rejected."""
    try:
        duration = CouponDuration(coupon.duration)
    except ValueError:
        return CouponTreatment.REJECT

    if coupon.percent_off:
        kind = DiscountKind.PERCENT
    elif coupon.amount_off:
        kind = DiscountKind.AMOUNT
    else:
        return CouponTreatment.REJECT

    return COUPON_POLICY[(duration, kind)]


@dataclass(frozen=True)
class CouponDecision:
    """Outcome of the coupon policy check for one code."""
    code: str
    treatment: CouponTreatment
    promotion_code: Optional[PromotionCode] = None
    coupon: Optional[Coupon] = None
    is_migration: bool = False


# =============================================================================
# RESULT
# =============================================================================

@dataclass(frozen=True)
class PlanPricing:
    """Pricing for the monthly + annual pair. Amounts in cents."""
    prorated_monthly_price: int
    prorated_annual_price: int
    prorated_price: int
    monthly_fee: int
    annual_fee: int
    discount_percentage: int = 0
    discounted_monthly_fee: Optional[int] = None
    discounted_annual_fee: Optional[int] = None
    coupon: Optional[str] = None             # Code as entered
    coupon_id: Optional[str] = None          # Gateway coupon id (migration: the code)
    promotion_code_id: Optional[str] = None
    is_migration: bool = False
    next_monthly_billing: Optional[datetime] = None
    next_annual_billing: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'proratedMonthlyPrice': self.prorated_monthly_price,
            'proratedAnnualPrice': self.prorated_annual_price,
            'proratedPrice': self.prorated_price,
            'monthlyFee': self.monthly_fee,
            'annualFee': self.annual_fee,
            'discountPercentage': self.discount_percentage,
        }
        if self.discounted_monthly_fee is not None:
            result['discountedMonthlyFee'] = self.discounted_monthly_fee
        if self.discounted_annual_fee is not None:
            result['discountedAnnualFee'] = self.discounted_annual_fee
        if self.coupon:
            result['coupon'] = self.coupon
        if self.next_monthly_billing:
            result['nextMonthlyBillingDate'] = self.next_monthly_billing.date().isoformat()
        if self.next_annual_billing:
            result['nextAnnualBillingDate'] = self.next_annual_billing.date().isoformat()
        return result


# =============================================================================
# PRICE CATALOG
# =============================================================================

class PriceCatalog:
    """
    Resolves the base price id of each plan.

    Rows in provider_price_map younger than PRICE_CACHE_HOURS are used as-is;
    anything missing or stale is looked up by lookup key and written back.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        session_factory: Optional[SessionFactory] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._gateway = gateway
        self._session_factory = session_factory
        self._clock = clock

    def resolve(self, user_id: Optional[str] = None) -> Dict[str, str]:
        """
        Returns:
            {PlanCode.MONTHLY: price_id, PlanCode.ANNUAL: price_id}

        Raises:
            PricesUnavailable: if either price id cannot be resolved
        """
        now = self._clock()
        max_age = timedelta(hours=PRICE_CACHE_HOURS)
        provider = self._gateway.name

        with transaction(self._session_factory) as db:
            rows = db.query(ProviderPriceMap).filter(
                ProviderPriceMap.provider == provider
            ).all()
            prices = {
                PlanCode(row.plan_code): row.provider_price_id
                for row in rows
                if now - row.updated_at < max_age
            }

        missing = [code for code in PlanCode if code not in prices]
        if not missing:
            return prices

        fetched = {}
        for code in missing:
            try:
                price_id = self._gateway.find_price_id(PLANS[code].lookup_key)
            except GatewayError as e:
                print(f"[Pricing] Price lookup failed for user {user_id}: {e.code}")
                raise PricesUnavailable('Failed to get price IDs') from e
            if price_id:
                fetched[code] = price_id

        if fetched:
            self._store(provider, fetched, now)
            prices.update(fetched)

        if any(code not in prices for code in PlanCode):
            print(f"[Pricing] Base prices unavailable for user {user_id}")
            raise PricesUnavailable('Failed to get price IDs')

        return prices

    def _store(self, provider: str, fetched: Dict[PlanCode, str], now: datetime) -> None:
        with transaction(self._session_factory) as db:
            for code, price_id in fetched.items():
                row = db.query(ProviderPriceMap).filter(
                    ProviderPriceMap.provider == provider,
                    ProviderPriceMap.plan_code == code.value
                ).first()
                if row is None:
                    row = ProviderPriceMap(provider=provider, plan_code=code.value)
                    db.add(row)
                row.provider_price_id = price_id
                row.updated_at = now


# =============================================================================
# PRICING ENGINE
# =============================================================================

class PricingEngine:
    """Computes PlanPricing from gateway invoice previews."""

    PREVIEW_WORKERS = 4

    def __init__(
        self,
        gateway: PaymentGateway,
        catalog: PriceCatalog,
        clock: Callable[[], datetime] = utcnow,
        audit: Optional[AuditLogger] = None,
    ):
        self._gateway = gateway
        self._catalog = catalog
        self._clock = clock
        self._audit = audit

    @property
    def audit(self) -> AuditLogger:
        if self._audit is None:
            self._audit = get_audit_logger()
        return self._audit

    # =========================================================================
    # COUPONS
    # =========================================================================

    def check_coupon(self, user_id: str, code: str) -> CouponDecision:
        """
        Evaluate a promotion code against the coupon policy.

        Raises:
            CouponRejected: unknown/inactive code, or a rejected combination
        """
        code = code.strip()
        if is_migration_code(code):
            return CouponDecision(code=code, treatment=CouponTreatment.STANDARD, is_migration=True)

        promotion_code = self._gateway.find_promotion_code(code)
        if promotion_code is None or not promotion_code.active or not promotion_code.coupon_id:
            self._reject(user_id, 'not_found_or_inactive')
            raise CouponRejected('Invalid or inactive promotion code')

        coupon = self._gateway.retrieve_coupon(promotion_code.coupon_id)
        if not coupon.valid:
            self._reject(user_id, 'coupon_invalid', coupon.id)
            raise CouponRejected('Invalid or inactive promotion code')

        treatment = classify_coupon(coupon)
        if treatment is CouponTreatment.REJECT:
            self._reject(user_id, 'forever_amount_off', coupon.id)
            raise CouponRejected('Forever coupons can only be percentage-based, not amount-based')

        return CouponDecision(
            code=code,
            treatment=treatment,
            promotion_code=promotion_code,
            coupon=coupon,
        )

    def _reject(self, user_id: str, reason: str, coupon_id: Optional[str] = None) -> None:
        print(f"[Pricing] Coupon rejected for user {user_id}: {reason}")
        self.audit.log_event(
            AuditEvent.COUPON_REJECTED,
            user_id=user_id,
            details={'reason': reason, 'coupon_id': coupon_id},
        )

    # =========================================================================
    # PRICING
    # =========================================================================

    def compute(
        self,
        user_id: str,
        customer_id: str,
        code: Optional[str] = None,
        decision: Optional[CouponDecision] = None,
    ) -> PlanPricing:
        """
        Price the monthly + annual pair for a customer.

        Args:
            user_id: Subject id (logged on failure)
            customer_id: Gateway customer id the previews are issued for
            code: Optional promotion code; checked against policy first
            decision: Already evaluated coupon decision (skips the check)

        Raises:
            CouponRejected, PricesUnavailable, PricingFailed
        """
        if decision is None and code and code.strip():
            decision = self.check_coupon(user_id, code)

        prices = self._catalog.resolve(user_id)
        now = self._clock()
        monthly_anchor = PLANS[PlanCode.MONTHLY].next_anchor(now)
        annual_anchor = PLANS[PlanCode.ANNUAL].next_anchor(now)

        promotion_code_id = None
        if decision is not None and decision.promotion_code is not None:
            promotion_code_id = decision.promotion_code.id

        previews = self._run_previews(
            user_id, customer_id, prices, monthly_anchor, annual_anchor, promotion_code_id
        )
        first_monthly = previews['first_monthly']
        first_annual = previews['first_annual']
        next_monthly = previews['next_monthly']
        next_annual = previews['next_annual']

        pricing = PlanPricing(
            prorated_monthly_price=first_monthly.amount_due,
            prorated_annual_price=first_annual.amount_due,
            prorated_price=first_monthly.amount_due + first_annual.amount_due,
            monthly_fee=next_monthly.subtotal,
            annual_fee=next_annual.subtotal,
            discount_percentage=discount_percentage(first_monthly, next_monthly),
            next_monthly_billing=monthly_anchor,
            next_annual_billing=annual_anchor,
        )

        if decision is None:
            return pricing

        return self._apply_decision(user_id, pricing, decision, next_monthly, next_annual)

    def _apply_decision(
        self,
        user_id: str,
        pricing: PlanPricing,
        decision: CouponDecision,
        next_monthly: InvoicePreview,
        next_annual: InvoicePreview,
    ) -> PlanPricing:
        fields: Dict[str, Any] = {'coupon': decision.code}

        if decision.is_migration:
            fields.update(
                prorated_price=0,
                discount_percentage=100,
                discounted_monthly_fee=0,
                discounted_annual_fee=0,
                coupon_id=decision.code,
                is_migration=True,
            )
        elif decision.treatment is CouponTreatment.FIRST_INVOICE_ONLY:
            fields.update(
                discount_percentage=int(round(decision.coupon.percent_off)),
                discounted_monthly_fee=0,
                discounted_annual_fee=0,
                coupon_id=decision.coupon.id,
                promotion_code_id=decision.promotion_code.id,
            )
        else:
            fields.update(
                discounted_monthly_fee=(
                    next_monthly.amount_due if next_monthly.total_discount > 0 else 0
                ),
                discounted_annual_fee=(
                    next_annual.amount_due if next_annual.total_discount > 0 else 0
                ),
                coupon_id=decision.coupon.id,
                promotion_code_id=decision.promotion_code.id,
            )

        result = replace(pricing, **fields)
        print(f"[Pricing] Coupon priced for user {user_id} ({decision.treatment.value})")
        return result

    def _run_previews(
        self,
        user_id: str,
        customer_id: str,
        prices: Dict[str, str],
        monthly_anchor: datetime,
        annual_anchor: datetime,
        promotion_code_id: Optional[str],
    ) -> Dict[str, InvoicePreview]:
        monthly_price = prices[PlanCode.MONTHLY]
        annual_price = prices[PlanCode.ANNUAL]
        preview = self._gateway.preview_invoice

        results: Dict[str, InvoicePreview] = {}
        try:
            with ThreadPoolExecutor(max_workers=self.PREVIEW_WORKERS) as executor:
                futures = {
                    executor.submit(
                        preview, customer_id, monthly_price,
                        billing_cycle_anchor=monthly_anchor,
                        promotion_code_id=promotion_code_id,
                    ): 'first_monthly',
                    executor.submit(
                        preview, customer_id, annual_price,
                        billing_cycle_anchor=annual_anchor,
                        promotion_code_id=promotion_code_id,
                    ): 'first_annual',
                    executor.submit(
                        preview, customer_id, monthly_price,
                        start_date=monthly_anchor,
                        promotion_code_id=promotion_code_id,
                    ): 'next_monthly',
                    executor.submit(
                        preview, customer_id, annual_price,
                        start_date=annual_anchor,
                        promotion_code_id=promotion_code_id,
                    ): 'next_annual',
                }
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
        except GatewayError as e:
            print(f"[Pricing] Failed to get pricing details for user {user_id}: {e.code}")
            self.audit.log_event(
                AuditEvent.PRICING_FAILED,
                user_id=user_id,
                details={'operation': 'preview_invoice', 'gateway_code': e.gateway_code},
            )
            raise PricingFailed('Failed to get pricing details') from e

        return results


def discount_percentage(first: InvoicePreview, steady: InvoicePreview) -> int:
    """
    Percentage discount shown to the member.

    A once-coupon only shows on the first invoice; repeating and forever
    coupons show on the steady-state one. The first invoice wins.
    """
    for invoice in (first, steady):
        if invoice.total_discount > 0 and invoice.pretax_subtotal > 0:
            return int(round(invoice.total_discount / invoice.pretax_subtotal * 100))
    return 0
