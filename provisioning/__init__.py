"""
provisioning/__init__.py

Subscription provisioning for member signup.

Turns a pending invitation into two payment-pending Stripe subscriptions
(monthly dues + annual fee), keeps one reusable payment session per
invitee, applies promotion codes, and finalizes registration once the
first payments are confirmed.

Quick Start:
    from provisioning import init_provisioning

    app = Flask(__name__)
    init_provisioning(app)

    # Tests: inject a fake gateway and an in-memory database
    init_provisioning(app, gateway=FakeGateway(), session_factory=factory)

Version History:
    2026-10-18: Initial implementation
"""

from datetime import datetime
from typing import Callable, Optional

from provisioning.audit_log import AuditLogger
from provisioning.config import SIGNUP_SECRET_KEY, PLANS, PlanCode, get_plan
from provisioning.db import (
    SessionFactory, init_db, get_session_factory, create_all_tables, check_connection
)
from provisioning.errors import ProvisioningError
from provisioning.gateway import PaymentGateway, StripeGateway, build_stripe_gateway
from provisioning.manager import SessionManager, ProvisioningResult
from provisioning.finalizer import RegistrationFinalizer, RegistrationRequest, FinalizeResult
from provisioning.models import utcnow
from provisioning.pricing import PricingEngine, PriceCatalog, PlanPricing
from provisioning.reconcile import recreate_missing_sessions, purge_stale_sessions, sessions_cli
from provisioning.routes import signup_bp
from provisioning.services import ProvisioningServices, build_services
from provisioning.tokens import issue_access_token


def init_provisioning(
    app,
    gateway: Optional[PaymentGateway] = None,
    session_factory: Optional[SessionFactory] = None,
    audit: Optional[AuditLogger] = None,
    clock: Callable[[], datetime] = utcnow,
) -> ProvisioningServices:
    """
    Initialize subscription provisioning for a Flask app.

    This initializes:
        - Database connection and tables (unless a session factory is given)
        - The Stripe gateway (unless one is given)
        - app.extensions['provisioning'] with every service
        - The /signup blueprint and the `flask sessions` CLI group
    """
    if session_factory is None:
        init_db(app)
        session_factory = get_session_factory()

    if gateway is None:
        gateway = build_stripe_gateway()

    app.config.setdefault('SIGNUP_SECRET_KEY', SIGNUP_SECRET_KEY)
    app.config.setdefault('SIGNUP_COOKIE_SECURE', True)

    services = build_services(gateway, session_factory=session_factory, clock=clock, audit=audit)
    app.extensions['provisioning'] = services

    app.register_blueprint(signup_bp)
    app.cli.add_command(sessions_cli)

    print("[Provisioning] Provisioning system initialized")
    return services


__all__ = [
    # Initialization
    'init_provisioning',
    'init_db',
    'create_all_tables',
    'check_connection',

    # Services
    'ProvisioningServices',
    'build_services',
    'SessionManager',
    'ProvisioningResult',
    'RegistrationFinalizer',
    'RegistrationRequest',
    'FinalizeResult',
    'PricingEngine',
    'PriceCatalog',
    'PlanPricing',

    # Gateway
    'PaymentGateway',
    'StripeGateway',

    # Repair jobs
    'recreate_missing_sessions',
    'purge_stale_sessions',

    # Routes
    'signup_bp',
    'issue_access_token',

    # Config
    'PLANS',
    'PlanCode',
    'get_plan',

    'ProvisioningError',
]
