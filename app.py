"""
app.py

Flask application for member signup provisioning.

Exposes the /signup blueprint and the `flask sessions` maintenance
commands. Run with:
    flask --app app run
    flask --app app sessions reconcile

Version History:
    2026-10-18: Initial implementation
"""

import os

from flask import Flask, jsonify

from provisioning import init_provisioning


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(gateway=None, session_factory=None, audit=None, clock=None, config=None):
    """
    Build the Flask app.

    Args:
        gateway: PaymentGateway to use instead of Stripe (tests)
        session_factory: SQLAlchemy session factory instead of DATABASE_URL (tests)
        audit: AuditLogger instead of the file-backed singleton
        clock: Callable returning naive UTC now
        config: Extra Flask config values
    """
    app = Flask(__name__)
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-key-change-in-prod')
    app.config['SIGNUP_COOKIE_SECURE'] = os.environ.get('SIGNUP_COOKIE_SECURE', 'true').lower() == 'true'
    if config:
        app.config.update(config)

    options = {'gateway': gateway, 'session_factory': session_factory, 'audit': audit}
    if clock is not None:
        options['clock'] = clock
    init_provisioning(app, **options)

    @app.route('/health')
    def health():
        """Health check endpoint."""
        return jsonify({
            'status': 'healthy',
            'service': 'membership-provisioning',
        })

    return app


# =============================================================================
# MAIN
# =============================================================================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', 'false').lower() == 'true'
    create_app().run(host='0.0.0.0', port=port, debug=debug)
