"""
provisioning/routes.py

Flask Blueprint for the member signup flow.

Endpoints:
    GET  /signup/pricing[?code=]  - Plan pricing for the invitee
    POST /signup/session          - Create or reuse the payment session
    POST /signup/coupon           - Apply a promotion code to the session
    POST /signup/complete         - Confirm payment and finish registration
    GET  /signup/health           - Database connectivity

All endpoints except /health require the access-token cookie.

Version History:
    2026-10-18: Initial implementation
"""

from flask import Blueprint, current_app, g, jsonify, request

from provisioning.config import (
    ACCESS_TOKEN_COOKIE,
    PAYMENT_SESSION_COOKIE,
    PAYMENT_COOKIE_MAX_AGE_SECONDS,
)
from provisioning.db import check_connection, transaction
from provisioning.decorators import requires_access_token
from provisioning.directory import InvitationInfo, get_invitation_info
from provisioning.errors import (
    CustomerNotFound, InvitationNotFound, InvitationNotPending, ProvisioningError
)
from provisioning.finalizer import RegistrationRequest
from provisioning.manager import ProvisioningResult
from provisioning.models import utcnow
from provisioning.services import ProvisioningServices
from provisioning.tokens import dump_payment_cookie, load_payment_cookie


signup_bp = Blueprint('signup_bp', __name__, url_prefix='/signup')


# =============================================================================
# HELPERS
# =============================================================================

def _services() -> ProvisioningServices:
    return current_app.extensions['provisioning']


def _pending_invitee(services: ProvisioningServices, user_id: str) -> InvitationInfo:
    """The invitee's pending, unexpired invitation with a known customer id."""
    with transaction(services.session_factory) as db:
        info = get_invitation_info(db, user_id)

    if info is None:
        raise InvitationNotFound('Invitation not found')
    if not info.is_pending:
        raise InvitationNotPending('Invitation not found')
    if info.expires_at is not None and info.expires_at <= services.clock():
        raise InvitationNotPending('This invitation has expired')
    if not info.customer_id:
        print(f"[Signup] No customer id for user {user_id}")
        raise CustomerNotFound('Customer not found')
    return info


def _client_ip() -> str:
    ip = request.headers.get('X-Forwarded-For', request.remote_addr)
    if ip and ',' in ip:
        ip = ip.split(',')[0].strip()
    return ip or 'unknown'


def _set_payment_cookie(response, result: ProvisioningResult):
    response.set_cookie(
        PAYMENT_SESSION_COOKIE,
        dump_payment_cookie(result.cookie_payload()),
        max_age=PAYMENT_COOKIE_MAX_AGE_SECONDS,
        httponly=True,
        secure=current_app.config.get('SIGNUP_COOKIE_SECURE', True),
        samesite='Strict',
    )
    return response


@signup_bp.errorhandler(ProvisioningError)
def handle_provisioning_error(error: ProvisioningError):
    return jsonify(error.to_dict()), error.status_code


# =============================================================================
# PRICING
# =============================================================================

@signup_bp.route('/pricing', methods=['GET'])
@requires_access_token
def get_pricing():
    """
    Pricing for the monthly + annual pair.

    Query:
        code: optional promotion code

    Response:
        {
            "success": true,
            "pricing": {
                "proratedMonthlyPrice": 667,
                "proratedAnnualPrice": 5820,
                "proratedPrice": 6487,
                "monthlyFee": 2000,
                "annualFee": 12000,
                "discountPercentage": 0,
                ...
            }
        }
    """
    services = _services()
    info = _pending_invitee(services, g.signup_user_id)

    code = (request.args.get('code') or '').strip() or None
    pricing = services.pricing.compute(g.signup_user_id, info.customer_id, code=code)

    return jsonify({
        'success': True,
        'pricing': pricing.to_dict()
    })


# =============================================================================
# PAYMENT SESSION
# =============================================================================

@signup_bp.route('/session', methods=['POST'])
@requires_access_token
def create_session():
    """
    Create or reuse the invitee's payment session.

    Sets the signed payment-session cookie the completion step checks.
    """
    services = _services()
    info = _pending_invitee(services, g.signup_user_id)

    result = services.manager.provision(g.signup_user_id, info.customer_id)

    response = jsonify({
        'success': True,
        'session': result.to_dict()
    })
    return _set_payment_cookie(response, result)


@signup_bp.route('/coupon', methods=['POST'])
@requires_access_token
def apply_coupon():
    """
    Apply a promotion code to the active payment session.

    Request:
        {"code": "SPRING50"}
    """
    data = request.get_json(silent=True) or {}
    code = str(data.get('code') or '').strip()
    if not code:
        return jsonify({
            'success': False,
            'error': 'Invalid request'
        }), 400

    services = _services()
    info = _pending_invitee(services, g.signup_user_id)

    pricing = services.manager.apply_coupon(g.signup_user_id, info.customer_id, code)
    result = services.manager.get_active_result(g.signup_user_id)

    response = jsonify({
        'success': True,
        'message': 'Coupon applied',
        'pricing': pricing.to_dict()
    })
    if result is not None:
        _set_payment_cookie(response, result)
    return response


# =============================================================================
# COMPLETION
# =============================================================================

@signup_bp.route('/complete', methods=['POST'])
@requires_access_token
def complete_signup():
    """
    Confirm both payments and finish registration.

    Request:
        {
            "confirmationToken": "{\"id\": \"ctoken_...\"}",
            "nextOfKinName": "Jane Doe",
            "nextOfKinPhone": "+353 1 234 5678",
            "insuranceFormSubmitted": true
        }

    Response:
        200 {"success": true, "message": "..."}
        400 {"success": false, "paymentFailed": true, "error": "..."}
        400 {"success": false, "paymentFailed": true, "requiresAction": true, "error": "..."}
    """
    data = request.get_json(silent=True) or {}

    next_of_kin_name = str(data.get('nextOfKinName') or '').strip()
    next_of_kin_phone = str(data.get('nextOfKinPhone') or '').strip()
    if not next_of_kin_name or not next_of_kin_phone:
        return jsonify({
            'success': False,
            'error': 'Next of kin name and phone are required'
        }), 400

    registration = RegistrationRequest(
        user_id=g.signup_user_id,
        cookie=load_payment_cookie(request.cookies.get(PAYMENT_SESSION_COOKIE)),
        confirmation_token=data.get('confirmationToken'),
        next_of_kin_name=next_of_kin_name,
        next_of_kin_phone=next_of_kin_phone,
        insurance_form_submitted=bool(data.get('insuranceFormSubmitted', False)),
        ip_address=_client_ip(),
        user_agent=request.headers.get('User-Agent', 'unknown')[:500],
    )

    result = _services().finalizer.finalize(registration)

    if result.payment_failed:
        return jsonify(result.to_dict()), 400

    response = jsonify(result.to_dict())
    if result.clear_credential:
        response.delete_cookie(ACCESS_TOKEN_COOKIE)
        response.delete_cookie(PAYMENT_SESSION_COOKIE)
    return response


# =============================================================================
# HEALTH
# =============================================================================

@signup_bp.route('/health', methods=['GET'])
def health():
    healthy = check_connection(_services().session_factory)
    return jsonify({
        'success': healthy,
        'database': 'ok' if healthy else 'unreachable',
        'timestamp': utcnow().isoformat()
    }), 200 if healthy else 503
