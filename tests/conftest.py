"""
Shared fixtures: in-memory database, fixed clock, fake gateway, app client.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app import create_app
from provisioning.audit_log import AuditLogger
from provisioning.db import transaction
from provisioning.models import (
    Base, Invitation, InvitationStatus, UserProfile, WaitlistEntry
)
from provisioning.services import build_services
from provisioning.tokens import issue_access_token
from tests.fakes import FakeGateway


FIXED_NOW = datetime(2026, 6, 21, 0, 0, 0)
SECRET = 'test-secret'


class FixedClock:
    """Callable clock the tests can move forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock(FIXED_NOW)


@pytest.fixture
def engine():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def audit(tmp_path):
    return AuditLogger(log_path=tmp_path / 'audit.log')


@pytest.fixture
def gateway(clock):
    return FakeGateway(clock)


@pytest.fixture
def services(gateway, factory, clock, audit):
    return build_services(gateway, session_factory=factory, clock=clock, audit=audit)


def seed_invitee(
    factory,
    user_id='user-1',
    email='member@example.com',
    customer_id='cus_1',
    status=InvitationStatus.PENDING,
    expires_at=FIXED_NOW + timedelta(days=7),
    waitlist=True,
):
    """Profile + invitation (+ waitlist entry) for one invitee."""
    with transaction(factory) as db:
        db.add(UserProfile(
            user_id=user_id,
            customer_id=customer_id,
            email=email,
            first_name='Ada',
            last_name='Byrne',
        ))
        db.flush()
        invitation = Invitation(
            user_id=user_id,
            email=email,
            status=status,
            expires_at=expires_at,
        )
        db.add(invitation)
        if waitlist:
            db.add(WaitlistEntry(email=email))
        db.flush()
        return invitation.id


@pytest.fixture
def invitee(factory):
    """A pending invitee with a gateway customer."""
    seed_invitee(factory)
    return 'user-1'


@pytest.fixture
def app(gateway, factory, audit, clock):
    return create_app(
        gateway=gateway,
        session_factory=factory,
        audit=audit,
        clock=clock,
        config={
            'TESTING': True,
            'SIGNUP_SECRET_KEY': SECRET,
            'SIGNUP_COOKIE_SECURE': False,
        },
    )


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def signed_in(client, invitee):
    """Test client carrying the invitee's access-token cookie."""
    client.set_cookie('access-token', issue_access_token(invitee, secret_key=SECRET))
    return client
