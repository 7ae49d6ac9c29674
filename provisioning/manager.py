"""
provisioning/manager.py

SessionManager - produces a usable payment session for an invitee.

Per call:
    1. Lookup: the user's unexpired, unused session
    2. Validate: re-fetch both payment intents from the gateway
    3. Reuse the session when both intents can still be paid
    4. Otherwise Recreate: two new subscriptions, row overwritten in place

Design principles:
    1. The intent re-fetch completes before reuse-vs-recreate is decided
    2. Gateway trouble during validation means "recreate", never an error
    3. The row write is retried once on a concurrent writer, then SessionConflict
    4. Coupons are checked against policy before any subscription is touched

Usage:
    manager = SessionManager(gateway, catalog, pricing)
    result = manager.provision(user_id, customer_id)
    response.set_cookie('payment-session', dump_payment_cookie(result.cookie_payload()))

Version History:
    2026-10-18: Initial implementation
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from provisioning.audit_log import AuditEvent, AuditLogger, get_audit_logger
from provisioning.config import PLANS, PlanCode
from provisioning.db import SessionFactory, transaction
from provisioning.errors import (
    CouponRejected, GatewayError, GatewayUnavailable, InvitationNotPending,
    PaymentSessionMismatch, PaymentSessionNotFound, SessionConflict
)
from provisioning.gateway.base import IntentStatus, PaymentGateway
from provisioning.models import ConfirmationState, PaymentSession, utcnow
from provisioning.pricing import PlanPricing, PriceCatalog, PricingEngine
from provisioning.sessions import (
    ProvisionedPair, get_active_session, get_session_row,
    record_discount, save_session
)


# A session whose confirmation may already have reached the gateway is
# resumed while its intents are in any of these states
RESUMABLE_STATUSES = {
    IntentStatus.REQUIRES_PAYMENT_METHOD,
    IntentStatus.PROCESSING,
    IntentStatus.SUCCEEDED,
}


@dataclass(frozen=True)
class ProvisioningResult:
    """What the signup page needs to collect payment for a session."""
    session_id: int
    user_id: str
    monthly_subscription_id: str
    annual_subscription_id: str
    monthly_payment_intent_id: str
    annual_payment_intent_id: str
    monthly_amount: int
    annual_amount: int
    total_amount: int
    expires_at: datetime
    reused: bool = False
    discounted_monthly_amount: Optional[int] = None
    discounted_annual_amount: Optional[int] = None
    discount_percentage: Optional[int] = None
    coupon_id: Optional[str] = None

    @classmethod
    def from_session(cls, session: PaymentSession, reused: bool = False) -> 'ProvisioningResult':
        return cls(
            session_id=session.id,
            user_id=session.user_id,
            monthly_subscription_id=session.monthly_subscription_id,
            annual_subscription_id=session.annual_subscription_id,
            monthly_payment_intent_id=session.monthly_payment_intent_id,
            annual_payment_intent_id=session.annual_payment_intent_id,
            monthly_amount=session.monthly_amount,
            annual_amount=session.annual_amount,
            total_amount=session.total_amount,
            expires_at=session.expires_at,
            reused=reused,
            discounted_monthly_amount=session.discounted_monthly_amount,
            discounted_annual_amount=session.discounted_annual_amount,
            discount_percentage=session.discount_percentage,
            coupon_id=session.coupon_id,
        )

    def cookie_payload(self) -> Dict[str, Any]:
        """Identifiers carried by the signed payment-session cookie."""
        return {
            'session_id': self.session_id,
            'monthly_subscription_id': self.monthly_subscription_id,
            'annual_subscription_id': self.annual_subscription_id,
            'monthly_payment_intent_id': self.monthly_payment_intent_id,
            'annual_payment_intent_id': self.annual_payment_intent_id,
        }

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'monthlyAmount': self.monthly_amount,
            'annualAmount': self.annual_amount,
            'totalAmount': self.total_amount,
            'expiresAt': self.expires_at.isoformat(),
            'reused': self.reused,
        }
        if self.coupon_id:
            result.update({
                'coupon': self.coupon_id,
                'discountPercentage': self.discount_percentage,
                'discountedMonthlyAmount': self.discounted_monthly_amount,
                'discountedAnnualAmount': self.discounted_annual_amount,
            })
        return result


class SessionManager:
    """Reuse-or-recreate orchestration over pricing, gateway and session store."""

    def __init__(
        self,
        gateway: PaymentGateway,
        catalog: PriceCatalog,
        pricing: PricingEngine,
        session_factory: Optional[SessionFactory] = None,
        clock: Callable[[], datetime] = utcnow,
        audit: Optional[AuditLogger] = None,
    ):
        self._gateway = gateway
        self._catalog = catalog
        self._pricing = pricing
        self._session_factory = session_factory
        self._clock = clock
        self._audit = audit

    @property
    def audit(self) -> AuditLogger:
        if self._audit is None:
            self._audit = get_audit_logger()
        return self._audit

    @property
    def gateway(self) -> PaymentGateway:
        return self._gateway

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # PROVISION
    # =========================================================================

    def provision(self, user_id: str, customer_id: str) -> ProvisioningResult:
        """
        Return a payable session for the user, reusing the current one if safe.

        Raises:
            InvitationNotPending: the user's session was already used
            PricesUnavailable, GatewayError: subscriptions could not be created
            SessionConflict: the row kept changing under us
        """
        now = self._clock()

        with transaction(self._session_factory) as db:
            row = get_session_row(db, user_id)
            if row is not None and row.is_used:
                raise InvitationNotPending('Registration has already been completed')
            active = row if row is not None and row.is_active(now) else None

        if active is not None:
            valid, reason = self._validate(user_id, active)
            if valid:
                self.audit.log_event(
                    AuditEvent.SESSION_REUSED,
                    user_id=user_id,
                    details={'session_id': active.id},
                )
                return ProvisioningResult.from_session(active, reused=True)

            print(f"[Sessions] Session for user {user_id} unusable ({reason}), recreating")
            self.audit.log_event(
                AuditEvent.SESSION_INVALIDATED,
                user_id=user_id,
                details={'session_id': active.id, 'reason': reason},
            )

        return self._recreate(user_id, customer_id, replaced=row is not None)

    def _validate(self, user_id: str, session: PaymentSession) -> Tuple[bool, str]:
        """Re-fetch both intents; (valid, reason)."""
        try:
            monthly, annual = self._in_parallel(
                partial(self._gateway.retrieve_payment_intent, session.monthly_payment_intent_id),
                partial(self._gateway.retrieve_payment_intent, session.annual_payment_intent_id),
            )
        except GatewayError as e:
            print(f"[Sessions] Intent re-fetch failed for user {user_id}: {e.code}")
            return False, 'gateway_error'

        if session.confirmation_state == ConfirmationState.PENDING:
            allowed = RESUMABLE_STATUSES
        else:
            allowed = {IntentStatus.REQUIRES_PAYMENT_METHOD}

        if monthly.status in allowed and annual.status in allowed:
            return True, 'payable'
        return False, f"intents_{monthly.status}_{annual.status}"

    def _recreate(self, user_id: str, customer_id: str, replaced: bool) -> ProvisioningResult:
        prices = self._catalog.resolve(user_id)
        monthly_plan = PLANS[PlanCode.MONTHLY]
        annual_plan = PLANS[PlanCode.ANNUAL]

        try:
            monthly, annual = self._in_parallel(
                partial(self._gateway.create_subscription, customer_id,
                        prices[PlanCode.MONTHLY], monthly_plan.anchor_config),
                partial(self._gateway.create_subscription, customer_id,
                        prices[PlanCode.ANNUAL], annual_plan.anchor_config),
            )
        except GatewayError as e:
            print(f"[Sessions] Subscription creation failed for user {user_id}: {e.code}")
            raise

        pair = ProvisionedPair(monthly=monthly, annual=annual)
        now = self._clock()

        def write(db):
            return save_session(db, user_id, customer_id, pair, now)

        session = self._write_with_retry(user_id, 'save_session', write)

        self.audit.log_event(
            AuditEvent.SESSION_RECREATED if replaced else AuditEvent.SESSION_CREATED,
            user_id=user_id,
            details={'session_id': session.id},
        )
        print(f"[Sessions] {'Recreated' if replaced else 'Created'} payment session for user {user_id}")
        return ProvisioningResult.from_session(session)

    # =========================================================================
    # COUPONS
    # =========================================================================

    def apply_coupon(self, user_id: str, customer_id: str, code: str) -> PlanPricing:
        """
        Apply a promotion code to the user's active session.

        The code is checked against policy before either subscription is
        touched. The migration code waives both first invoices instead.

        Raises:
            PaymentSessionNotFound: no active session to discount
            CouponRejected: policy rejection, or the gateway refused the code
        """
        now = self._clock()
        with transaction(self._session_factory) as db:
            session = get_active_session(db, user_id, now)
            if session is None:
                raise PaymentSessionNotFound('No payment session found for this user.')

        decision = self._pricing.check_coupon(user_id, code)
        pricing = self._pricing.compute(user_id, customer_id, decision=decision)

        try:
            if decision.is_migration:
                monthly, annual = self._in_parallel(
                    partial(self._gateway.waive_latest_invoice, session.monthly_subscription_id),
                    partial(self._gateway.waive_latest_invoice, session.annual_subscription_id),
                )
            else:
                promotion_code_id = decision.promotion_code.id
                monthly, annual = self._in_parallel(
                    partial(self._gateway.apply_promotion_code,
                            session.monthly_subscription_id, promotion_code_id),
                    partial(self._gateway.apply_promotion_code,
                            session.annual_subscription_id, promotion_code_id),
                )
        except GatewayUnavailable:
            raise
        except GatewayError as e:
            print(f"[Sessions] Gateway refused coupon for user {user_id}: {e.code}")
            self.audit.log_event(
                AuditEvent.COUPON_REJECTED,
                user_id=user_id,
                details={'reason': 'gateway_refused', 'gateway_code': e.gateway_code},
            )
            raise CouponRejected('Coupon code not valid.') from e

        pair = ProvisionedPair(monthly=monthly, annual=annual)

        def write(db):
            row = get_active_session(db, user_id, now)
            if row is None or row.monthly_subscription_id != session.monthly_subscription_id:
                raise PaymentSessionMismatch('Payment session changed while applying the coupon')
            return record_discount(db, row, pricing, pair, self._clock())

        self._write_with_retry(user_id, 'record_discount', write)

        self.audit.log_event(
            AuditEvent.COUPON_APPLIED,
            user_id=user_id,
            details={
                'session_id': session.id,
                'coupon_id': pricing.coupon_id,
                'discount_percentage': pricing.discount_percentage,
            },
        )
        return pricing

    def get_active_result(self, user_id: str) -> Optional[ProvisioningResult]:
        """Current session as a result (no gateway calls)."""
        with transaction(self._session_factory) as db:
            session = get_active_session(db, user_id, self._clock())
        if session is None:
            return None
        return ProvisioningResult.from_session(session, reused=True)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _write_with_retry(self, user_id: str, operation: str, write):
        """Run write(db) in a transaction; one retry on a concurrent writer."""
        for attempt in (1, 2):
            try:
                with transaction(self._session_factory) as db:
                    return write(db)
            except (IntegrityError, StaleDataError) as e:
                print(f"[Sessions] Concurrent write on session for user {user_id} (attempt {attempt})")
                self.audit.log_event(
                    AuditEvent.SESSION_CONFLICT,
                    user_id=user_id,
                    details={'operation': operation, 'attempt': attempt,
                             'error_type': type(e).__name__},
                )
                if attempt == 2:
                    raise SessionConflict(
                        'The payment session was modified concurrently, please retry'
                    ) from e

    @staticmethod
    def _in_parallel(monthly_call, annual_call):
        """Run the monthly and annual calls side by side; (monthly, annual)."""
        with ThreadPoolExecutor(max_workers=2) as executor:
            monthly_future = executor.submit(monthly_call)
            annual_future = executor.submit(annual_call)
            return monthly_future.result(), annual_future.result()
