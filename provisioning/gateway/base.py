"""
provisioning/gateway/base.py

Abstract base class for the payment gateway client.

Everything the provisioning core needs from the payment provider goes
through this interface. Services receive a PaymentGateway instance at
construction time, so tests substitute a fake without network access.

Methods to implement:
    - find_price_id(lookup_key) -> price id
    - preview_invoice(customer_id, price_id, ...) -> InvoicePreview
    - create_subscription(customer_id, price_id, anchor_config) -> ProvisionedSubscription
    - retrieve_subscription(subscription_id) -> SubscriptionState
    - retrieve_payment_intent(intent_id) -> PaymentIntentState
    - confirm_payment_intent(intent_id, payment_method_id, mandate) -> PaymentIntentState
    - confirm_setup_intent(customer_id, confirmation_token_id, mandate) -> payment method id
    - find_promotion_code(code) -> PromotionCode
    - retrieve_coupon(coupon_id) -> Coupon
    - apply_promotion_code(subscription_id, promotion_code_id) -> ProvisionedSubscription
    - waive_latest_invoice(subscription_id) -> ProvisionedSubscription

Errors: implementations raise only the gateway family from
provisioning.errors (GatewayError, PaymentDeclined, GatewayUnavailable).

Version History:
    2026-10-18: Initial implementation
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional


class IntentStatus:
    """Payment intent status constants (provider vocabulary)."""
    REQUIRES_PAYMENT_METHOD = 'requires_payment_method'
    REQUIRES_CONFIRMATION = 'requires_confirmation'
    REQUIRES_ACTION = 'requires_action'
    PROCESSING = 'processing'
    SUCCEEDED = 'succeeded'
    CANCELED = 'canceled'


@dataclass(frozen=True)
class InvoicePreview:
    """Non-mutating preview of the next invoice for one plan."""
    amount_due: int
    subtotal: int
    total_discount: int = 0
    subtotal_excluding_tax: Optional[int] = None

    @property
    def pretax_subtotal(self) -> int:
        if self.subtotal_excluding_tax is not None:
            return self.subtotal_excluding_tax
        return self.subtotal


@dataclass(frozen=True)
class ProvisionedSubscription:
    """A subscription together with the payment intent of its first invoice."""
    subscription_id: str
    payment_intent_id: str
    amount_due: int       # First (prorated) invoice
    plan_amount: int      # Steady-state price per cycle
    status: str = 'incomplete'


@dataclass(frozen=True)
class SubscriptionState:
    id: str
    status: str
    customer_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentIntentState:
    id: str
    status: str
    amount: int = 0

    @property
    def needs_payment_method(self) -> bool:
        return self.status == IntentStatus.REQUIRES_PAYMENT_METHOD


@dataclass(frozen=True)
class PromotionCode:
    id: str
    code: str
    active: bool
    coupon_id: Optional[str]


@dataclass(frozen=True)
class Coupon:
    """
    Discount definition behind a promotion code.

    Exactly one of percent_off / amount_off is set.
    """
    id: str
    duration: str                      # once | repeating | forever
    percent_off: Optional[float] = None
    amount_off: Optional[int] = None
    duration_in_months: Optional[int] = None
    valid: bool = True


@dataclass(frozen=True)
class MandateEvidence:
    """Online acceptance evidence required for SEPA debit mandates."""
    ip_address: str
    user_agent: str

    def to_mandate_data(self) -> Dict:
        return {
            'customer_acceptance': {
                'type': 'online',
                'online': {
                    'ip_address': self.ip_address,
                    'user_agent': self.user_agent,
                },
            },
        }


class PaymentGateway(ABC):
    """
    Abstract base class for payment gateways.

    Implement this for each provider:
        - StripeGateway
        - FakeGateway (tests)
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name (e.g., 'stripe'), used as the price map key."""
        pass

    @abstractmethod
    def find_price_id(self, lookup_key: str) -> Optional[str]:
        """Resolve an active price id by its lookup key, or None."""
        pass

    @abstractmethod
    def preview_invoice(
        self,
        customer_id: str,
        price_id: str,
        billing_cycle_anchor: Optional[datetime] = None,
        start_date: Optional[datetime] = None,
        promotion_code_id: Optional[str] = None,
    ) -> InvoicePreview:
        """
        Preview the invoice a subscription to price_id would produce.

        Args:
            customer_id: Provider customer id
            price_id: Plan price id
            billing_cycle_anchor: Bill now, prorated up to this boundary
            start_date: Start the subscription at this date (full cycle)
            promotion_code_id: Discount to apply to the preview
        """
        pass

    @abstractmethod
    def create_subscription(
        self,
        customer_id: str,
        price_id: str,
        anchor_config: Dict[str, int],
    ) -> ProvisionedSubscription:
        """Create an incomplete subscription awaiting its first payment."""
        pass

    @abstractmethod
    def retrieve_subscription(self, subscription_id: str) -> SubscriptionState:
        pass

    @abstractmethod
    def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentState:
        pass

    @abstractmethod
    def confirm_payment_intent(
        self,
        intent_id: str,
        payment_method_id: str,
        mandate: MandateEvidence,
    ) -> PaymentIntentState:
        pass

    @abstractmethod
    def confirm_setup_intent(
        self,
        customer_id: str,
        confirmation_token_id: str,
        mandate: Optional[MandateEvidence] = None,
    ) -> str:
        """
        Confirm a setup intent from a client confirmation token.

        Returns:
            The reusable payment method id
        """
        pass

    @abstractmethod
    def find_promotion_code(self, code: str) -> Optional[PromotionCode]:
        """Look up a customer-facing promotion code, or None when unknown."""
        pass

    @abstractmethod
    def retrieve_coupon(self, coupon_id: str) -> Coupon:
        pass

    @abstractmethod
    def apply_promotion_code(
        self,
        subscription_id: str,
        promotion_code_id: str,
    ) -> ProvisionedSubscription:
        """Attach a discount to a live subscription; returns the refreshed first invoice."""
        pass

    @abstractmethod
    def waive_latest_invoice(self, subscription_id: str) -> ProvisionedSubscription:
        """Credit the full amount due on the subscription's latest invoice."""
        pass
