"""
provisioning/directory.py

Member directory lookups used by the provisioning core.

These are thin wrappers over the member tables. Every function takes an
open SQLAlchemy session so it joins the caller's transaction; none of them
commits.

Operations:
    - get_invitation_info(db, user_id) -> InvitationInfo | None
    - update_invitation_status(db, invitation_id, status)
    - complete_member_registration(db, user_id, ...)
    - mark_waitlist_joined(db, email) -> int
    - list_pending_invitees(db) -> list[InvitationInfo]

Version History:
    2026-10-18: Initial implementation
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from provisioning.models import (
    Invitation, InvitationStatus, UserProfile,
    WaitlistEntry, WaitlistStatus, utcnow
)


@dataclass(frozen=True)
class InvitationInfo:
    """Latest invitation for a user, joined with the profile."""
    invitation_id: str
    status: str
    user_id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    customer_id: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == InvitationStatus.PENDING


def _to_info(invitation: Invitation, profile: Optional[UserProfile]) -> InvitationInfo:
    return InvitationInfo(
        invitation_id=invitation.id,
        status=invitation.status,
        user_id=invitation.user_id,
        email=invitation.email,
        first_name=profile.first_name if profile else None,
        last_name=profile.last_name if profile else None,
        customer_id=profile.customer_id if profile else None,
        expires_at=invitation.expires_at,
    )


def get_invitation_info(db: Session, user_id: str) -> Optional[InvitationInfo]:
    """
    Get the user's most recent invitation.

    Returns:
        InvitationInfo, or None if the user was never invited
    """
    row = db.query(Invitation, UserProfile).outerjoin(
        UserProfile, UserProfile.user_id == Invitation.user_id
    ).filter(
        Invitation.user_id == user_id
    ).order_by(Invitation.created_at.desc()).first()

    if row is None:
        return None

    invitation, profile = row
    return _to_info(invitation, profile)


def update_invitation_status(db: Session, invitation_id: str, status: str) -> None:
    invitation = db.get(Invitation, invitation_id)
    if invitation is None:
        raise LookupError(f"Invitation {invitation_id} not found")
    invitation.status = status
    db.flush()


def complete_member_registration(
    db: Session,
    user_id: str,
    next_of_kin_name: str,
    next_of_kin_phone: str,
    insurance_form_submitted: bool,
) -> UserProfile:
    """
    Activate the member profile and record registration-time fields.

    Creates the profile if the invitation was issued before one existed.
    """
    profile = db.get(UserProfile, user_id)
    if profile is None:
        profile = UserProfile(user_id=user_id)
        db.add(profile)

    profile.next_of_kin_name = next_of_kin_name
    profile.next_of_kin_phone = next_of_kin_phone
    profile.insurance_form_submitted = insurance_form_submitted
    profile.is_active = True
    profile.registered_at = utcnow()

    db.flush()
    return profile


def mark_waitlist_joined(db: Session, email: str) -> int:
    """Move every waitlist entry for this email to 'joined'. Returns rows updated."""
    entries = db.query(WaitlistEntry).filter(
        WaitlistEntry.email == email,
        WaitlistEntry.status != WaitlistStatus.JOINED
    ).all()

    for entry in entries:
        entry.status = WaitlistStatus.JOINED

    db.flush()
    return len(entries)


def list_pending_invitees(db: Session) -> List[InvitationInfo]:
    """All pending invitations with their profiles (repair job input)."""
    rows = db.query(Invitation, UserProfile).outerjoin(
        UserProfile, UserProfile.user_id == Invitation.user_id
    ).filter(
        Invitation.status == InvitationStatus.PENDING
    ).order_by(Invitation.created_at).all()

    return [_to_info(invitation, profile) for invitation, profile in rows]
