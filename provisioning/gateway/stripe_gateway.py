"""
provisioning/gateway/stripe_gateway.py

Stripe implementation of PaymentGateway.

This is the ONLY file that imports the stripe library.
All Stripe-specific logic is contained here.

Call policy:
    - Explicit StripeClient per gateway instance (no global api_key)
    - Request timeout carried by stripe.RequestsClient
    - Stripe's own network retries disabled; tenacity retries transient
      connection failures only, never declines or validation errors
    - Every mutating call carries one idempotency key shared by its retries

Response shapes:
    - First payment intent: latest_invoice.payments.data[0].payment.payment_intent
      (current API), or latest_invoice.payment_intent (legacy API)
    - Promotion code coupon: promotion.coupon (current) or coupon (legacy)

Version History:
    2026-10-18: Initial implementation
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from provisioning.config import (
    STRIPE_SECRET_KEY,
    GATEWAY_TIMEOUT_SECONDS,
    GATEWAY_MAX_RETRIES,
    PAYMENT_METHOD_TYPE,
)
from provisioning.errors import GatewayError, GatewayUnavailable, PaymentDeclined
from provisioning.gateway.base import (
    PaymentGateway,
    InvoicePreview,
    ProvisionedSubscription,
    SubscriptionState,
    PaymentIntentState,
    PromotionCode,
    Coupon,
    MandateEvidence,
)


# Error codes that mean "the payment itself was refused", even when Stripe
# reports them outside a CardError (SEPA debits, intent-level failures)
DECLINE_CODES = {
    'card_declined',
    'charge_exceeds_source_limit',
    'charge_exceeds_transaction_limit',
    'charge_exceeds_weekly_limit',
    'payment_intent_authentication_failure',
    'payment_intent_payment_attempt_failed',
    'payment_method_unactivated',
    'insufficient_funds',
}


# =============================================================================
# RESPONSE HELPERS
# =============================================================================

def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a key from a Stripe object (or an unexpanded id string)."""
    if obj is None or isinstance(obj, str):
        return default
    try:
        value = obj[name]
    except KeyError:
        return default
    except TypeError:
        return getattr(obj, name, default)
    return default if value is None else value


def _object_id(value: Any) -> Optional[str]:
    """Expanded object or bare id -> id."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _field(value, 'id')


def _timestamp(moment: datetime) -> int:
    """Naive UTC datetime -> unix seconds."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


def _first_invoice_intent(invoice: Any) -> Optional[str]:
    payments = _field(_field(invoice, 'payments'), 'data') or []
    if payments:
        payment = _field(payments[0], 'payment')
        intent = _object_id(_field(payment, 'payment_intent'))
        if intent:
            return intent
    return _object_id(_field(invoice, 'payment_intent'))


def _plan_amount(subscription: Any) -> int:
    items = _field(_field(subscription, 'items'), 'data') or []
    if items:
        price = _field(items[0], 'price')
        amount = _field(price, 'unit_amount')
        if amount is not None:
            return int(amount)
    return int(_field(_field(subscription, 'plan'), 'amount', 0))


class StripeGateway(PaymentGateway):
    """Stripe payment gateway implementation."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout: int = GATEWAY_TIMEOUT_SECONDS,
        max_retries: int = GATEWAY_MAX_RETRIES,
        backoff_seconds: float = 0.5,
        client: Optional[stripe.StripeClient] = None,
    ):
        """
        Args:
            api_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            timeout: Per-request timeout in seconds
            max_retries: Extra attempts after a connection failure
            backoff_seconds: Base of the exponential wait between attempts
            client: Pre-built StripeClient (tests)
        """
        if client is None:
            client = stripe.StripeClient(
                api_key or STRIPE_SECRET_KEY,
                http_client=stripe.RequestsClient(timeout=timeout),
                max_network_retries=0,
            )
        self._client = client
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds

    @property
    def name(self) -> str:
        return 'stripe'

    # =========================================================================
    # CALL POLICY
    # =========================================================================

    def _call(self, operation: str, fn, *args, **kwargs):
        """Run one Stripe call under the retry policy and translate its errors."""
        retryer = Retrying(
            retry=retry_if_exception_type(stripe.APIConnectionError),
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=self._backoff_seconds, max=8),
            reraise=True,
        )
        try:
            return retryer(fn, *args, **kwargs)
        except stripe.APIConnectionError as e:
            print(f"[Gateway] {operation} unreachable after {self._max_retries + 1} attempts: {e}")
            raise GatewayUnavailable(
                'The payment processor could not be reached',
                gateway_code='api_connection_error',
            ) from e
        except stripe.CardError as e:
            raise PaymentDeclined(
                e.user_message or 'The payment was declined',
                gateway_code=e.code,
                decline_code=self._decline_code(e),
                http_status=e.http_status,
            ) from e
        except stripe.StripeError as e:
            print(f"[Gateway] {operation} failed: {type(e).__name__} code={e.code}")
            error_class = PaymentDeclined if e.code in DECLINE_CODES else GatewayError
            raise error_class(
                e.user_message or 'An error occurred with the payment processor',
                gateway_code=e.code,
                decline_code=self._decline_code(e),
                http_status=e.http_status,
            ) from e

    @staticmethod
    def _decline_code(error: stripe.StripeError) -> Optional[str]:
        return _field(error.error, 'decline_code')

    @staticmethod
    def _options(operation: str) -> Dict[str, str]:
        """Request options with a fresh idempotency key for one logical call."""
        return {'idempotency_key': f"{operation}-{uuid.uuid4()}"}

    # =========================================================================
    # PRICES AND PREVIEWS
    # =========================================================================

    def find_price_id(self, lookup_key: str) -> Optional[str]:
        prices = self._call(
            'prices.list',
            self._client.v1.prices.list,
            {'lookup_keys': [lookup_key], 'active': True, 'limit': 1},
        )
        data = _field(prices, 'data') or []
        return _object_id(data[0]) if data else None

    def preview_invoice(
        self,
        customer_id: str,
        price_id: str,
        billing_cycle_anchor: Optional[datetime] = None,
        start_date: Optional[datetime] = None,
        promotion_code_id: Optional[str] = None,
    ) -> InvoicePreview:
        details: Dict[str, Any] = {'items': [{'price': price_id}]}
        if billing_cycle_anchor is not None:
            details['billing_cycle_anchor'] = _timestamp(billing_cycle_anchor)
            details['proration_behavior'] = 'create_prorations'
        if start_date is not None:
            details['start_date'] = _timestamp(start_date)

        params: Dict[str, Any] = {
            'customer': customer_id,
            'subscription_details': details,
        }
        if promotion_code_id:
            params['discounts'] = [{'promotion_code': promotion_code_id}]

        invoice = self._call('invoices.create_preview', self._client.v1.invoices.create_preview, params)

        discounts = _field(invoice, 'total_discount_amounts') or []
        subtotal_excluding_tax = _field(invoice, 'subtotal_excluding_tax')
        return InvoicePreview(
            amount_due=int(_field(invoice, 'amount_due', 0)),
            subtotal=int(_field(invoice, 'subtotal', 0)),
            total_discount=sum(int(_field(d, 'amount', 0)) for d in discounts),
            subtotal_excluding_tax=(
                int(subtotal_excluding_tax) if subtotal_excluding_tax is not None else None
            ),
        )

    # =========================================================================
    # SUBSCRIPTIONS
    # =========================================================================

    def _provisioned(self, subscription: Any) -> ProvisionedSubscription:
        invoice = _field(subscription, 'latest_invoice')
        intent_id = _first_invoice_intent(invoice)
        if not intent_id:
            raise GatewayError(
                'Subscription has no payment intent on its first invoice',
                gateway_code='missing_payment_intent',
            )
        return ProvisionedSubscription(
            subscription_id=_object_id(subscription),
            payment_intent_id=intent_id,
            amount_due=int(_field(invoice, 'amount_due', 0)),
            plan_amount=_plan_amount(subscription),
            status=_field(subscription, 'status', 'incomplete'),
        )

    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        anchor_config: Dict[str, int],
    ) -> ProvisionedSubscription:
        params = {
            'customer': customer_id,
            'items': [{'price': price_id}],
            'billing_cycle_anchor_config': dict(anchor_config),
            'payment_behavior': 'default_incomplete',
            'payment_settings': {'payment_method_types': [PAYMENT_METHOD_TYPE]},
            'collection_method': 'charge_automatically',
            'expand': ['latest_invoice.payments'],
        }
        subscription = self._call(
            'subscriptions.create',
            self._client.v1.subscriptions.create,
            params,
            self._options('subscriptions.create'),
        )
        return self._provisioned(subscription)

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionState:
        subscription = self._call(
            'subscriptions.retrieve',
            self._client.v1.subscriptions.retrieve,
            subscription_id,
        )
        return SubscriptionState(
            id=_object_id(subscription),
            status=_field(subscription, 'status', 'unknown'),
            customer_id=_object_id(_field(subscription, 'customer')),
        )

    def apply_promotion_code(
        self,
        subscription_id: str,
        promotion_code_id: str,
    ) -> ProvisionedSubscription:
        subscription = self._call(
            'subscriptions.update',
            self._client.v1.subscriptions.update,
            subscription_id,
            {
                'discounts': [{'promotion_code': promotion_code_id}],
                'expand': ['latest_invoice.payments'],
            },
            self._options('subscriptions.update'),
        )
        return self._provisioned(subscription)

    def waive_latest_invoice(self, subscription_id: str) -> ProvisionedSubscription:
        subscription = self._call(
            'subscriptions.retrieve',
            self._client.v1.subscriptions.retrieve,
            subscription_id,
            {'expand': ['latest_invoice.payments']},
        )
        provisioned = self._provisioned(subscription)
        invoice = _field(subscription, 'latest_invoice')

        if provisioned.amount_due > 0:
            self._call(
                'credit_notes.create',
                self._client.v1.credit_notes.create,
                {
                    'invoice': _object_id(invoice),
                    'amount': provisioned.amount_due,
                    'reason': 'order_change',
                    'memo': 'Migration discount applied for existing customer',
                },
                self._options('credit_notes.create'),
            )

        return ProvisionedSubscription(
            subscription_id=provisioned.subscription_id,
            payment_intent_id=provisioned.payment_intent_id,
            amount_due=0,
            plan_amount=provisioned.plan_amount,
            status=provisioned.status,
        )

    # =========================================================================
    # PAYMENT AND SETUP INTENTS
    # =========================================================================

    def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentState:
        intent = self._call(
            'payment_intents.retrieve',
            self._client.v1.payment_intents.retrieve,
            intent_id,
        )
        return PaymentIntentState(
            id=_object_id(intent),
            status=_field(intent, 'status', 'unknown'),
            amount=int(_field(intent, 'amount', 0)),
        )

    def confirm_payment_intent(
        self,
        intent_id: str,
        payment_method_id: str,
        mandate: MandateEvidence,
    ) -> PaymentIntentState:
        intent = self._call(
            'payment_intents.confirm',
            self._client.v1.payment_intents.confirm,
            intent_id,
            {
                'payment_method': payment_method_id,
                'mandate_data': mandate.to_mandate_data(),
            },
            self._options('payment_intents.confirm'),
        )
        return PaymentIntentState(
            id=_object_id(intent),
            status=_field(intent, 'status', 'unknown'),
            amount=int(_field(intent, 'amount', 0)),
        )

    def confirm_setup_intent(
        self,
        customer_id: str,
        confirmation_token_id: str,
        mandate: Optional[MandateEvidence] = None,
    ) -> str:
        params: Dict[str, Any] = {
            'customer': customer_id,
            'confirm': True,
            'confirmation_token': confirmation_token_id,
            'payment_method_types': [PAYMENT_METHOD_TYPE],
        }
        if mandate is not None:
            params['mandate_data'] = mandate.to_mandate_data()

        setup_intent = self._call(
            'setup_intents.create',
            self._client.v1.setup_intents.create,
            params,
            self._options('setup_intents.create'),
        )
        payment_method_id = _object_id(_field(setup_intent, 'payment_method'))
        if not payment_method_id:
            raise GatewayError(
                'Setup intent did not produce a payment method',
                gateway_code='missing_payment_method',
            )
        return payment_method_id

    # =========================================================================
    # PROMOTION CODES AND COUPONS
    # =========================================================================

    def find_promotion_code(self, code: str) -> Optional[PromotionCode]:
        codes = self._call(
            'promotion_codes.list',
            self._client.v1.promotion_codes.list,
            {'code': code, 'limit': 1},
        )
        data = _field(codes, 'data') or []
        if not data:
            return None

        promo = data[0]
        coupon = _field(_field(promo, 'promotion'), 'coupon') or _field(promo, 'coupon')
        return PromotionCode(
            id=_object_id(promo),
            code=_field(promo, 'code', code),
            active=bool(_field(promo, 'active', False)),
            coupon_id=_object_id(coupon),
        )

    def retrieve_coupon(self, coupon_id: str) -> Coupon:
        coupon = self._call('coupons.retrieve', self._client.v1.coupons.retrieve, coupon_id)
        return Coupon(
            id=_object_id(coupon),
            duration=_field(coupon, 'duration', 'once'),
            percent_off=_field(coupon, 'percent_off'),
            amount_off=_field(coupon, 'amount_off'),
            duration_in_months=_field(coupon, 'duration_in_months'),
            valid=bool(_field(coupon, 'valid', True)),
        )


def build_stripe_gateway() -> StripeGateway:
    """Gateway configured from the environment; called once at app startup."""
    return StripeGateway(
        api_key=STRIPE_SECRET_KEY,
        timeout=GATEWAY_TIMEOUT_SECONDS,
        max_retries=GATEWAY_MAX_RETRIES,
    )
