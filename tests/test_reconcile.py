"""Repair jobs and the `flask sessions` commands."""

import json
from datetime import timedelta

from provisioning import sessions
from provisioning.audit_log import AuditEvent
from provisioning.db import transaction
from provisioning.models import PaymentSession
from provisioning.reconcile import purge_stale_sessions, recreate_missing_sessions
from tests.conftest import FIXED_NOW, seed_invitee


def _seed_three(factory):
    seed_invitee(factory, user_id='user-1', email='one@example.com', customer_id='cus_1')
    seed_invitee(factory, user_id='user-2', email='two@example.com', customer_id='cus_2')
    seed_invitee(factory, user_id='user-3', email='three@example.com', customer_id=None)


def test_recreate_missing_sessions(services, factory, audit):
    _seed_three(factory)

    report = recreate_missing_sessions(services.manager, factory)

    assert sorted(report.repaired) == ['user-1', 'user-2']
    assert report.skipped == {'user-3': 'no_customer_id'}
    assert report.failed == {}
    assert len(audit.get_recent_events(event_type=AuditEvent.RECONCILE_REPAIRED)) == 2

    with transaction(factory) as db:
        assert db.query(PaymentSession).count() == 2


def test_recreate_is_idempotent(services, factory, gateway):
    _seed_three(factory)
    recreate_missing_sessions(services.manager, factory)

    report = recreate_missing_sessions(services.manager, factory)

    assert report.repaired == []
    assert sorted(report.already_valid) == ['user-1', 'user-2']
    assert gateway.count('create_subscription') == 4


def test_expired_session_reported_as_possible_duplicate(services, factory, gateway, clock):
    seed_invitee(factory)
    old = services.manager.provision('user-1', 'cus_1')
    clock.advance(hours=25)

    report = recreate_missing_sessions(services.manager, factory)

    assert report.repaired == ['user-1']
    assert report.possible_duplicates == {
        'user-1': [
            f'{old.monthly_subscription_id}:incomplete',
            f'{old.annual_subscription_id}:incomplete',
        ]
    }
    with transaction(factory) as db:
        row = sessions.get_session_row(db, 'user-1')
        assert row.monthly_subscription_id != old.monthly_subscription_id


def test_used_session_skipped(services, factory, clock):
    seed_invitee(factory)
    services.manager.provision('user-1', 'cus_1')
    with transaction(factory) as db:
        sessions.mark_used(db, sessions.get_session_row(db, 'user-1'), clock())

    report = recreate_missing_sessions(services.manager, factory)

    assert report.skipped == {'user-1': 'session_already_used'}


def test_gateway_failure_recorded(services, factory, gateway):
    seed_invitee(factory)
    gateway.lookup_keys.clear()

    report = recreate_missing_sessions(services.manager, factory)

    assert report.failed == {'user-1': 'PricesUnavailable'}


def test_purge_stale_sessions(services, factory, clock, audit):
    seed_invitee(factory)
    services.manager.provision('user-1', 'cus_1')
    clock.advance(hours=25)

    assert purge_stale_sessions(factory, clock, audit) == 1
    assert audit.get_recent_events(event_type=AuditEvent.RECONCILE_PURGED)


# =============================================================================
# CLI
# =============================================================================

def test_reconcile_command(app, factory):
    seed_invitee(factory)

    result = app.test_cli_runner().invoke(args=['sessions', 'reconcile'])

    assert result.exit_code == 0
    report = json.loads(result.output[result.output.index('{'):])
    assert report['repaired'] == ['user-1']


def test_purge_command(app, factory, clock):
    seed_invitee(factory)
    app.extensions['provisioning'].manager.provision('user-1', 'cus_1')
    clock.advance(days=2)

    result = app.test_cli_runner().invoke(args=['sessions', 'purge'])

    assert result.exit_code == 0
    assert 'Purged 1 payment session(s)' in result.output


def test_purge_keeps_session_recreated_on_month_old_row(services, factory, clock, audit):
    seed_invitee(factory, expires_at=FIXED_NOW + timedelta(days=60))
    services.manager.provision('user-1', 'cus_1')
    clock.advance(days=31)
    fresh = services.manager.provision('user-1', 'cus_1')

    assert purge_stale_sessions(factory, clock, audit) == 0
    with transaction(factory) as db:
        row = sessions.get_active_session(db, 'user-1', clock())
        assert row.monthly_payment_intent_id == fresh.monthly_payment_intent_id
