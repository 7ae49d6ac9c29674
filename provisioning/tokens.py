"""
provisioning/tokens.py

Signed values carried by the signup cookies.

    access-token     identifies the invitee (issued with the invitation link)
    payment-session  the gateway ids of the session the page was rendered with

Both are itsdangerous URLSafeTimedSerializer payloads, salted per purpose so
one can never be replayed as the other.

Version History:
    2026-10-18: Initial implementation
"""

from typing import Any, Dict, Optional

from flask import current_app, has_app_context
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from provisioning.config import (
    SIGNUP_SECRET_KEY,
    ACCESS_TOKEN_MAX_AGE_SECONDS,
    PAYMENT_COOKIE_MAX_AGE_SECONDS,
)
from provisioning.errors import CredentialError


ACCESS_TOKEN_SALT = 'signup-access-token'
PAYMENT_COOKIE_SALT = 'signup-payment-session'


def _serializer(salt: str, secret_key: Optional[str] = None) -> URLSafeTimedSerializer:
    if secret_key is None and has_app_context():
        secret_key = current_app.config.get('SIGNUP_SECRET_KEY')
    secret_key = secret_key or SIGNUP_SECRET_KEY
    if not secret_key:
        raise RuntimeError('SIGNUP_SECRET_KEY is not configured')
    return URLSafeTimedSerializer(secret_key, salt=salt)


# =============================================================================
# ACCESS CREDENTIAL
# =============================================================================

def issue_access_token(user_id: str, secret_key: Optional[str] = None) -> str:
    return _serializer(ACCESS_TOKEN_SALT, secret_key).dumps({'sub': user_id})


def load_access_token(
    token: str,
    secret_key: Optional[str] = None,
    max_age: int = ACCESS_TOKEN_MAX_AGE_SECONDS,
) -> str:
    """
    Verify the access credential.

    Returns:
        The invitee's user id

    Raises:
        CredentialError: tampered with, malformed or expired
    """
    try:
        claims = _serializer(ACCESS_TOKEN_SALT, secret_key).loads(token, max_age=max_age)
    except SignatureExpired as e:
        raise CredentialError('This invitation has expired') from e
    except BadSignature as e:
        raise CredentialError('There has been an error with your signup.') from e

    user_id = claims.get('sub') if isinstance(claims, dict) else None
    if not user_id:
        raise CredentialError('There has been an error with your signup.')
    return user_id


# =============================================================================
# PAYMENT SESSION COOKIE
# =============================================================================

def dump_payment_cookie(payload: Dict[str, Any], secret_key: Optional[str] = None) -> str:
    return _serializer(PAYMENT_COOKIE_SALT, secret_key).dumps(payload)


def load_payment_cookie(
    value: Optional[str],
    secret_key: Optional[str] = None,
    max_age: int = PAYMENT_COOKIE_MAX_AGE_SECONDS,
) -> Optional[Dict[str, Any]]:
    """Decoded cookie payload, or None when absent, tampered with or expired."""
    if not value:
        return None
    try:
        payload = _serializer(PAYMENT_COOKIE_SALT, secret_key).loads(value, max_age=max_age)
    except BadSignature:
        print("[Signup] Ignoring invalid payment-session cookie")
        return None
    return payload if isinstance(payload, dict) else None
