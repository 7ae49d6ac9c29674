"""
provisioning/services.py

Wiring for the provisioning services.

One ProvisioningServices bundle is built per Flask app and stored in
app.extensions['provisioning']. Every service receives the same gateway,
session factory, clock and audit logger, so tests swap all of them at once.

Usage:
    services = build_services(gateway=FakeGateway(), session_factory=factory)
    result = services.manager.provision(user_id, customer_id)

Version History:
    2026-10-18: Initial implementation
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from provisioning.audit_log import AuditLogger, get_audit_logger
from provisioning.db import SessionFactory
from provisioning.finalizer import RegistrationFinalizer
from provisioning.gateway.base import PaymentGateway
from provisioning.manager import SessionManager
from provisioning.models import utcnow
from provisioning.pricing import PriceCatalog, PricingEngine


@dataclass
class ProvisioningServices:
    gateway: PaymentGateway
    catalog: PriceCatalog
    pricing: PricingEngine
    manager: SessionManager
    finalizer: RegistrationFinalizer
    session_factory: Optional[SessionFactory]
    clock: Callable[[], datetime]
    audit: AuditLogger


def build_services(
    gateway: PaymentGateway,
    session_factory: Optional[SessionFactory] = None,
    clock: Callable[[], datetime] = utcnow,
    audit: Optional[AuditLogger] = None,
) -> ProvisioningServices:
    """Construct every provisioning service around one gateway instance."""
    audit = audit or get_audit_logger()

    catalog = PriceCatalog(gateway, session_factory=session_factory, clock=clock)
    pricing = PricingEngine(gateway, catalog, clock=clock, audit=audit)
    manager = SessionManager(
        gateway, catalog, pricing,
        session_factory=session_factory, clock=clock, audit=audit,
    )
    finalizer = RegistrationFinalizer(
        gateway, session_factory=session_factory, clock=clock, audit=audit,
    )

    print(f"[Provisioning] Services ready (gateway: {gateway.name})")
    return ProvisioningServices(
        gateway=gateway,
        catalog=catalog,
        pricing=pricing,
        manager=manager,
        finalizer=finalizer,
        session_factory=session_factory,
        clock=clock,
        audit=audit,
    )
