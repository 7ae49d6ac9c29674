"""
provisioning/gateway/__init__.py

Payment gateway exports.
"""

from provisioning.gateway.base import (
    PaymentGateway,
    IntentStatus,
    InvoicePreview,
    ProvisionedSubscription,
    SubscriptionState,
    PaymentIntentState,
    PromotionCode,
    Coupon,
    MandateEvidence,
)
from provisioning.gateway.stripe_gateway import StripeGateway, build_stripe_gateway

__all__ = [
    'PaymentGateway',
    'IntentStatus',
    'InvoicePreview',
    'ProvisionedSubscription',
    'SubscriptionState',
    'PaymentIntentState',
    'PromotionCode',
    'Coupon',
    'MandateEvidence',
    'StripeGateway',
    'build_stripe_gateway',
]
