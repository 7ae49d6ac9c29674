"""
provisioning/decorators.py

Decorators for signup route protection.

Usage:
    from provisioning.decorators import requires_access_token

    @signup_bp.route('/session', methods=['POST'])
    @requires_access_token
    def create_session():
        user_id = g.signup_user_id

Version History:
    2026-10-18: Initial implementation
"""

from functools import wraps
from flask import g, jsonify, request

from provisioning.config import ACCESS_TOKEN_COOKIE
from provisioning.errors import CredentialError
from provisioning.tokens import load_access_token


def requires_access_token(f):
    """
    Decorator that requires a valid invitee access credential.

    Reads the access-token cookie and exposes the user id as g.signup_user_id.
    Returns 401 if the cookie is missing, tampered with or expired.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        token = request.cookies.get(ACCESS_TOKEN_COOKIE)
        if not token:
            return jsonify({
                'success': False,
                'error': 'Authentication required',
                'code': 'AUTH_REQUIRED'
            }), 401

        try:
            g.signup_user_id = load_access_token(token)
        except CredentialError as e:
            return jsonify(e.to_dict()), e.status_code

        return f(*args, **kwargs)
    return decorated_function
