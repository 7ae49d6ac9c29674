"""
provisioning/reconcile.py

Repair jobs for payment sessions.

Jobs:
    - recreate_missing_sessions: every pending invitee without a usable
      session gets a fresh subscription pair through the SessionManager
    - purge_stale_sessions: delete abandoned and long-expired sessions

CLI:
    flask sessions reconcile
    flask sessions purge

Duplicate subscriptions:
    When a stale row is replaced, the subscriptions it pointed at are
    looked up and reported as possible duplicates. They are NOT canceled;
    cancellation is left to an operator reading the report.

Version History:
    2026-10-18: Initial implementation
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import click
from flask import current_app
from flask.cli import AppGroup

from provisioning import sessions
from provisioning.audit_log import AuditEvent, AuditLogger, get_audit_logger
from provisioning.db import SessionFactory, transaction
from provisioning.directory import list_pending_invitees
from provisioning.errors import GatewayError, ProvisioningError
from provisioning.manager import SessionManager
from provisioning.models import utcnow


# Subscription states that cannot charge the customer again
INERT_SUBSCRIPTION_STATUSES = {'canceled', 'incomplete_expired'}


@dataclass
class ReconcileReport:
    """Outcome of one recreate_missing_sessions run."""
    repaired: List[str] = field(default_factory=list)
    already_valid: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)
    possible_duplicates: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'repaired': self.repaired,
            'already_valid': self.already_valid,
            'skipped': self.skipped,
            'failed': self.failed,
            'possible_duplicates': self.possible_duplicates,
        }


def recreate_missing_sessions(
    manager: SessionManager,
    factory: Optional[SessionFactory] = None,
) -> ReconcileReport:
    """
    Provision a session for every pending invitee that lacks a usable one.

    Idempotent: invitees with an active session are left alone, so running
    the job twice in a row repairs nothing the second time.
    """
    report = ReconcileReport()
    now = manager.now()

    with transaction(factory) as db:
        invitees = list_pending_invitees(db)
        rows = {}
        for info in invitees:
            row = sessions.get_session_row(db, info.user_id)
            if row is not None:
                rows[info.user_id] = row

    seen = set()
    for info in invitees:
        user_id = info.user_id
        if user_id in seen:
            continue
        seen.add(user_id)

        if not info.customer_id:
            _skip(manager.audit, report, user_id, 'no_customer_id')
            continue

        row = rows.get(user_id)
        if row is not None and row.is_used:
            _skip(manager.audit, report, user_id, 'session_already_used')
            continue
        if row is not None and row.is_active(now):
            report.already_valid.append(user_id)
            continue

        if row is not None:
            duplicates = _live_subscriptions(
                manager, [row.monthly_subscription_id, row.annual_subscription_id]
            )
            if duplicates:
                report.possible_duplicates[user_id] = duplicates

        try:
            manager.provision(user_id, info.customer_id)
        except ProvisioningError as e:
            print(f"[Reconcile] Failed to recreate session for user {user_id}: {e.code}")
            report.failed[user_id] = e.code
            continue

        report.repaired.append(user_id)
        manager.audit.log_event(
            AuditEvent.RECONCILE_REPAIRED,
            user_id=user_id,
            details={'duplicate_subscriptions': len(report.possible_duplicates.get(user_id, []))},
        )

    print(
        f"[Reconcile] repaired={len(report.repaired)} valid={len(report.already_valid)} "
        f"skipped={len(report.skipped)} failed={len(report.failed)}"
    )
    return report


def _skip(audit: AuditLogger, report: ReconcileReport, user_id: str, reason: str) -> None:
    report.skipped[user_id] = reason
    audit.log_event(AuditEvent.RECONCILE_SKIPPED, user_id=user_id, details={'reason': reason})


def _live_subscriptions(manager: SessionManager, subscription_ids: List[str]) -> List[str]:
    """'<id>:<status>' for each old subscription that may still bill the customer."""
    live = []
    for subscription_id in subscription_ids:
        if not subscription_id:
            continue
        try:
            state = manager.gateway.retrieve_subscription(subscription_id)
        except GatewayError as e:
            live.append(f"{subscription_id}:unknown")
            print(f"[Reconcile] Could not retrieve subscription {subscription_id}: {e.code}")
            continue
        if state.status not in INERT_SUBSCRIPTION_STATUSES:
            live.append(f"{subscription_id}:{state.status}")
    return live


def purge_stale_sessions(
    factory: Optional[SessionFactory] = None,
    clock: Callable[[], datetime] = utcnow,
    audit: Optional[AuditLogger] = None,
) -> int:
    """Delete abandoned sessions. Returns the number of rows removed."""
    with transaction(factory) as db:
        purged = sessions.purge_stale_sessions(db, clock())

    (audit or get_audit_logger()).log_event(
        AuditEvent.RECONCILE_PURGED,
        details={'purged': purged},
    )
    return purged


# =============================================================================
# CLI
# =============================================================================

sessions_cli = AppGroup('sessions', help='Payment session maintenance.')


@sessions_cli.command('reconcile')
def reconcile_command():
    """Recreate missing payment sessions for pending invitees."""
    services = current_app.extensions['provisioning']
    report = recreate_missing_sessions(services.manager, services.session_factory)
    click.echo(json.dumps(report.to_dict(), indent=2))


@sessions_cli.command('purge')
def purge_command():
    """Delete expired and abandoned payment sessions."""
    services = current_app.extensions['provisioning']
    purged = purge_stale_sessions(services.session_factory, services.clock, services.audit)
    click.echo(f"Purged {purged} payment session(s)")
