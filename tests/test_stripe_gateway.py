"""StripeGateway against a mocked StripeClient: request shapes, retries, error mapping."""

from datetime import datetime
from unittest.mock import MagicMock

import pytest
import stripe

from provisioning.errors import GatewayError, GatewayUnavailable, PaymentDeclined
from provisioning.gateway.base import MandateEvidence
from provisioning.gateway.stripe_gateway import StripeGateway


SUBSCRIPTION = {
    'id': 'sub_1',
    'status': 'incomplete',
    'latest_invoice': {
        'id': 'in_1',
        'amount_due': 667,
        'payments': {'data': [{'payment': {'payment_intent': 'pi_1'}}]},
    },
    'items': {'data': [{'price': {'unit_amount': 2000}}]},
}


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def gateway(client):
    return StripeGateway(client=client, max_retries=2, backoff_seconds=0)


# =============================================================================
# SUBSCRIPTIONS
# =============================================================================

def test_create_subscription(gateway, client):
    client.v1.subscriptions.create.return_value = SUBSCRIPTION

    result = gateway.create_subscription('cus_1', 'price_monthly', {'day_of_month': 1})

    assert result.subscription_id == 'sub_1'
    assert result.payment_intent_id == 'pi_1'
    assert result.amount_due == 667
    assert result.plan_amount == 2000

    params, options = client.v1.subscriptions.create.call_args.args
    assert params['payment_behavior'] == 'default_incomplete'
    assert params['billing_cycle_anchor_config'] == {'day_of_month': 1}
    assert params['payment_settings'] == {'payment_method_types': ['sepa_debit']}
    assert options['idempotency_key'].startswith('subscriptions.create-')


def test_create_subscription_legacy_invoice_shape(gateway, client):
    client.v1.subscriptions.create.return_value = {
        'id': 'sub_2',
        'status': 'incomplete',
        'latest_invoice': {'id': 'in_2', 'amount_due': 6575, 'payment_intent': {'id': 'pi_legacy'}},
        'plan': {'amount': 12000},
    }

    result = gateway.create_subscription('cus_1', 'price_annual', {'month': 1, 'day_of_month': 7})

    assert result.payment_intent_id == 'pi_legacy'
    assert result.plan_amount == 12000


def test_subscription_without_intent_is_an_error(gateway, client):
    client.v1.subscriptions.create.return_value = {
        'id': 'sub_3', 'latest_invoice': {'amount_due': 0},
    }
    with pytest.raises(GatewayError):
        gateway.create_subscription('cus_1', 'price_monthly', {'day_of_month': 1})


def test_waive_latest_invoice_issues_credit_note(gateway, client):
    client.v1.subscriptions.retrieve.return_value = SUBSCRIPTION

    result = gateway.waive_latest_invoice('sub_1')

    assert result.amount_due == 0
    params = client.v1.credit_notes.create.call_args.args[0]
    assert params['invoice'] == 'in_1'
    assert params['amount'] == 667


# =============================================================================
# PREVIEWS AND COUPONS
# =============================================================================

def test_preview_invoice(gateway, client):
    client.v1.invoices.create_preview.return_value = {
        'amount_due': 333,
        'subtotal': 667,
        'subtotal_excluding_tax': 667,
        'total_discount_amounts': [{'amount': 334}],
    }

    preview = gateway.preview_invoice(
        'cus_1', 'price_monthly',
        billing_cycle_anchor=datetime(2026, 7, 1),
        promotion_code_id='promo_1',
    )

    assert preview.amount_due == 333
    assert preview.total_discount == 334
    params = client.v1.invoices.create_preview.call_args.args[0]
    assert params['discounts'] == [{'promotion_code': 'promo_1'}]
    assert params['subscription_details']['billing_cycle_anchor'] == 1782864000
    assert params['subscription_details']['proration_behavior'] == 'create_prorations'


@pytest.mark.parametrize('promo', [
    {'id': 'promo_1', 'code': 'SPRING', 'active': True, 'promotion': {'coupon': 'co_1'}},
    {'id': 'promo_1', 'code': 'SPRING', 'active': True, 'coupon': {'id': 'co_1'}},
])
def test_find_promotion_code(gateway, client, promo):
    client.v1.promotion_codes.list.return_value = {'data': [promo]}

    result = gateway.find_promotion_code('SPRING')

    assert result.id == 'promo_1'
    assert result.active is True
    assert result.coupon_id == 'co_1'


def test_find_promotion_code_missing(gateway, client):
    client.v1.promotion_codes.list.return_value = {'data': []}
    assert gateway.find_promotion_code('NOPE') is None


def test_find_price_id(gateway, client):
    client.v1.prices.list.return_value = {'data': [{'id': 'price_123'}]}
    assert gateway.find_price_id('standard_membership_fee') == 'price_123'

    client.v1.prices.list.return_value = {'data': []}
    assert gateway.find_price_id('standard_membership_fee') is None


# =============================================================================
# INTENTS
# =============================================================================

def test_confirm_payment_intent_sends_mandate(gateway, client):
    client.v1.payment_intents.confirm.return_value = {'id': 'pi_1', 'status': 'processing', 'amount': 667}

    state = gateway.confirm_payment_intent('pi_1', 'pm_1', MandateEvidence('203.0.113.9', 'pytest'))

    assert state.status == 'processing'
    intent_id, params, _ = client.v1.payment_intents.confirm.call_args.args
    assert intent_id == 'pi_1'
    assert params['mandate_data']['customer_acceptance']['online'] == {
        'ip_address': '203.0.113.9',
        'user_agent': 'pytest',
    }


def test_confirm_setup_intent_returns_payment_method(gateway, client):
    client.v1.setup_intents.create.return_value = {'id': 'seti_1', 'payment_method': 'pm_1'}
    assert gateway.confirm_setup_intent('cus_1', 'ctoken_1') == 'pm_1'


# =============================================================================
# RETRIES AND ERRORS
# =============================================================================

def test_connection_error_retried(gateway, client):
    client.v1.payment_intents.retrieve.side_effect = [
        stripe.APIConnectionError('connection reset'),
        {'id': 'pi_1', 'status': 'requires_payment_method', 'amount': 667},
    ]

    state = gateway.retrieve_payment_intent('pi_1')

    assert state.status == 'requires_payment_method'
    assert client.v1.payment_intents.retrieve.call_count == 2


def test_connection_error_exhausts_retries(gateway, client):
    client.v1.payment_intents.retrieve.side_effect = stripe.APIConnectionError('down')

    with pytest.raises(GatewayUnavailable) as excinfo:
        gateway.retrieve_payment_intent('pi_1')

    assert excinfo.value.status_code == 500
    assert client.v1.payment_intents.retrieve.call_count == 3


def test_card_error_is_a_decline_and_not_retried(gateway, client):
    client.v1.payment_intents.confirm.side_effect = stripe.CardError(
        'Your card was declined.', None, 'card_declined'
    )

    with pytest.raises(PaymentDeclined) as excinfo:
        gateway.confirm_payment_intent('pi_1', 'pm_1', MandateEvidence('1.2.3.4', 'ua'))

    assert excinfo.value.gateway_code == 'card_declined'
    assert client.v1.payment_intents.confirm.call_count == 1


def test_sepa_limit_error_is_a_decline(gateway, client):
    client.v1.payment_intents.confirm.side_effect = stripe.InvalidRequestError(
        'Limit exceeded', None, code='charge_exceeds_weekly_limit'
    )

    with pytest.raises(PaymentDeclined) as excinfo:
        gateway.confirm_payment_intent('pi_1', 'pm_1', MandateEvidence('1.2.3.4', 'ua'))

    assert excinfo.value.gateway_code == 'charge_exceeds_weekly_limit'


def test_other_stripe_errors_are_gateway_errors(gateway, client):
    client.v1.subscriptions.retrieve.side_effect = stripe.InvalidRequestError(
        'No such subscription', 'id', code='resource_missing'
    )

    with pytest.raises(GatewayError) as excinfo:
        gateway.retrieve_subscription('sub_missing')

    assert not isinstance(excinfo.value, PaymentDeclined)
    assert excinfo.value.gateway_code == 'resource_missing'
