"""
provisioning/finalizer.py

RegistrationFinalizer - turns a confirmed payment method into a member.

Sequence:
    Preconditions (no mutation): invitation pending, session active and
    matching the payment cookie, customer id known.

    Saga marker (own committed transaction): session.confirmation_state = 'pending'

    Transaction (all-or-nothing against our database):
        1. Re-read invitation and session
        2. Invitation -> accepted
        3. Member registration completed, waitlist entry -> joined
        4. Re-fetch both intents; skip any already succeeded/processing
        5. Setup intent confirmed from the client token (only if needed)
        6. Remaining intents confirmed, one after the other, with mandate evidence
        7. Session -> is_used

    The credential is cleared by the caller (FinalizeResult.clear_credential).

Failure handling:
    - Gateway error inside the transaction: rollback, mapped message returned
    - Intent left needing customer authentication: rollback, requires_action
      result returned and the session stays unused
    - Any other error: rollback, re-raised
    - Confirmations already accepted by the gateway cannot be rolled back;
      the pending marker makes the next attempt resume instead of re-confirming

Version History:
    2026-10-18: Initial implementation
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from provisioning.audit_log import AuditEvent, AuditLogger, get_audit_logger
from provisioning.db import SessionFactory, transaction
from provisioning.directory import (
    complete_member_registration, get_invitation_info,
    mark_waitlist_joined, update_invitation_status
)
from provisioning.errors import (
    CustomerNotFound, GatewayError, InvitationNotFound, InvitationNotPending,
    PaymentDeclined, PaymentRequiresAction, PaymentSessionMismatch, PaymentSessionNotFound,
    ProvisioningError
)
from provisioning.gateway.base import IntentStatus, MandateEvidence, PaymentGateway
from provisioning import sessions
from provisioning.models import ConfirmationState, InvitationStatus, PaymentSession, utcnow


# =============================================================================
# DECLINE MESSAGES
# =============================================================================

DEFAULT_DECLINE_MESSAGE = 'An error occurred with the payment processor'

DECLINE_MESSAGES = {
    'charge_exceeds_source_limit': 'The payment amount exceeds the account payment volume limit',
    'charge_exceeds_transaction_limit': 'The payment amount exceeds the transaction limit',
    'charge_exceeds_weekly_limit': 'The payment amount exceeds the weekly transaction limit',
    'payment_intent_authentication_failure': 'The payment authentication failed',
    'payment_method_unactivated': 'The payment method is not activated',
    'payment_intent_payment_attempt_failed': 'The payment attempt failed',
}


def decline_message(error: GatewayError) -> str:
    """Map a gateway error to one of the fixed user-facing messages."""
    for code in (error.gateway_code, error.decline_code):
        if code in DECLINE_MESSAGES:
            return DECLINE_MESSAGES[code]
    return DEFAULT_DECLINE_MESSAGE


# Intents in these states are paid (or paying) and are not confirmed again
SETTLED_STATUSES = {IntentStatus.SUCCEEDED, IntentStatus.PROCESSING}

REQUIRES_ACTION_MESSAGE = 'The payment needs additional authentication before it can be completed'

COOKIE_KEYS = ('monthly_payment_intent_id', 'annual_payment_intent_id')


# =============================================================================
# REQUEST / RESULT
# =============================================================================

@dataclass(frozen=True)
class RegistrationRequest:
    """Everything the signup form submits to complete registration."""
    user_id: str
    cookie: Optional[Dict[str, Any]]
    confirmation_token: str
    next_of_kin_name: str
    next_of_kin_phone: str
    insurance_form_submitted: bool
    ip_address: str
    user_agent: str


@dataclass(frozen=True)
class FinalizeResult:
    success: bool
    message: Optional[str] = None
    payment_failed: bool = False
    requires_action: bool = False
    error: Optional[str] = None
    clear_credential: bool = False
    confirmed_intents: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        if self.requires_action:
            return {'success': False, 'paymentFailed': True, 'requiresAction': True, 'error': self.error}
        if self.payment_failed:
            return {'success': False, 'paymentFailed': True, 'error': self.error}
        return {'success': self.success, 'message': self.message}


def parse_confirmation_token(raw: Any) -> str:
    """
    Extract the confirmation token id from the client payload.

    Accepts the token object as JSON text, an already decoded dict, or a bare id.
    """
    token = raw
    if isinstance(raw, str):
        try:
            token = json.loads(raw)
        except json.JSONDecodeError:
            token = raw

    if isinstance(token, dict):
        token = token.get('id')

    if not isinstance(token, str) or not token.strip():
        raise ProvisioningError(
            'Invalid payment confirmation',
            status_code=400,
            code='InvalidConfirmationToken',
        )
    return token.strip()


# =============================================================================
# FINALIZER
# =============================================================================

class RegistrationFinalizer:
    """Runs the accept / confirm / mark-used sequence."""

    def __init__(
        self,
        gateway: PaymentGateway,
        session_factory: Optional[SessionFactory] = None,
        clock: Callable[[], datetime] = utcnow,
        audit: Optional[AuditLogger] = None,
    ):
        self._gateway = gateway
        self._session_factory = session_factory
        self._clock = clock
        self._audit = audit

    @property
    def audit(self) -> AuditLogger:
        if self._audit is None:
            self._audit = get_audit_logger()
        return self._audit

    def finalize(self, request: RegistrationRequest) -> FinalizeResult:
        """
        Complete registration for the invitee.

        Returns:
            FinalizeResult; payment_failed=True with a mapped message on decline

        Raises:
            Precondition errors (InvitationNotFound, InvitationNotPending,
            PaymentSessionNotFound, PaymentSessionMismatch, CustomerNotFound),
            or whatever non-gateway error broke the transaction
        """
        user_id = request.user_id
        token_id = parse_confirmation_token(request.confirmation_token)
        mandate = MandateEvidence(ip_address=request.ip_address, user_agent=request.user_agent)

        resumed = self._begin(request)
        self.audit.log_event(
            AuditEvent.FINALIZE_RESUMED if resumed else AuditEvent.FINALIZE_STARTED,
            user_id=user_id,
        )

        confirmed: List[str] = []
        try:
            with transaction(self._session_factory) as db:
                now = self._clock()
                info = get_invitation_info(db, user_id)
                if info is None or not info.is_pending:
                    raise InvitationNotPending('This invitation is no longer valid')

                session = sessions.get_active_session(db, user_id, now)
                if session is None:
                    raise PaymentSessionNotFound('Payment session not found')

                update_invitation_status(db, info.invitation_id, InvitationStatus.ACCEPTED)
                complete_member_registration(
                    db,
                    user_id,
                    next_of_kin_name=request.next_of_kin_name,
                    next_of_kin_phone=request.next_of_kin_phone,
                    insurance_form_submitted=request.insurance_form_submitted,
                )
                mark_waitlist_joined(db, info.email)

                self._confirm_payments(user_id, session, info.customer_id, token_id, mandate, confirmed)

                sessions.mark_used(db, session, self._clock())

        except PaymentRequiresAction as e:
            print(f"[Finalize] Payment for user {user_id} needs customer action")
            self.audit.log_event(
                AuditEvent.FINALIZE_DECLINED,
                user_id=user_id,
                details={'gateway_code': e.gateway_code, 'confirmed_intents': len(confirmed)},
            )
            return FinalizeResult(
                success=False, payment_failed=True, requires_action=True, error=e.message
            )

        except GatewayError as e:
            message = decline_message(e)
            print(f"[Finalize] Payment failed for user {user_id}: {e.gateway_code or e.code}")
            self.audit.log_event(
                AuditEvent.FINALIZE_DECLINED,
                user_id=user_id,
                details={
                    'gateway_code': e.gateway_code,
                    'decline_code': e.decline_code,
                    'confirmed_intents': len(confirmed),
                },
            )
            return FinalizeResult(success=False, payment_failed=True, error=message)

        except Exception as e:
            print(f"[Finalize] Registration failed for user {user_id}: {type(e).__name__}")
            self.audit.log_event(
                AuditEvent.FINALIZE_FAILED,
                user_id=user_id,
                details={'error_type': type(e).__name__},
            )
            raise

        self.audit.log_event(
            AuditEvent.FINALIZE_SUCCEEDED,
            user_id=user_id,
            details={'confirmed_intents': len(confirmed)},
        )
        print(f"[Finalize] Registration completed for user {user_id}")
        return FinalizeResult(
            success=True,
            message='Registration completed successfully',
            clear_credential=True,
            confirmed_intents=confirmed,
        )

    # =========================================================================
    # STEPS
    # =========================================================================

    def _begin(self, request: RegistrationRequest) -> bool:
        """
        Check preconditions and commit the saga marker.

        Returns:
            True if an earlier attempt already reached the gateway
        """
        user_id = request.user_id
        with transaction(self._session_factory) as db:
            now = self._clock()
            info = get_invitation_info(db, user_id)
            if info is None:
                raise InvitationNotFound('Invitation not found')
            if not info.is_pending:
                raise InvitationNotPending('This invitation is no longer valid')

            session = sessions.get_active_session(db, user_id, now)
            if session is None:
                raise PaymentSessionNotFound('Payment session not found')
            self._check_cookie(request.cookie, session)

            if not info.customer_id:
                print(f"[Finalize] No customer id for user {user_id}")
                raise CustomerNotFound('Customer not found')

            resumed = session.confirmation_state == ConfirmationState.PENDING
            sessions.mark_confirmation_pending(db, session, now)

        return resumed

    @staticmethod
    def _check_cookie(cookie: Optional[Dict[str, Any]], session: PaymentSession) -> None:
        if not cookie:
            raise PaymentSessionNotFound('Payment session not found')
        for key in COOKIE_KEYS:
            if cookie.get(key) != getattr(session, key):
                raise PaymentSessionMismatch(
                    'Your payment session has changed, please reload the page'
                )

    def _confirm_payments(
        self,
        user_id: str,
        session: PaymentSession,
        customer_id: str,
        token_id: str,
        mandate: MandateEvidence,
        confirmed: List[str],
    ) -> None:
        """Confirm whichever intents still need paying, appending each confirmed id."""
        intents = [
            self._gateway.retrieve_payment_intent(session.monthly_payment_intent_id),
            self._gateway.retrieve_payment_intent(session.annual_payment_intent_id),
        ]
        pending = [intent for intent in intents if intent.status not in SETTLED_STATUSES]

        if len(pending) < len(intents):
            print(f"[Finalize] Resuming user {user_id}: {len(intents) - len(pending)} intent(s) already settled")

        if not pending:
            return

        payment_method_id = self._gateway.confirm_setup_intent(customer_id, token_id, mandate)

        # Sequential: mandate evidence is recorded in order
        for intent in pending:
            result = self._gateway.confirm_payment_intent(intent.id, payment_method_id, mandate)
            if result.status == IntentStatus.REQUIRES_ACTION:
                raise PaymentRequiresAction(
                    REQUIRES_ACTION_MESSAGE,
                    gateway_code='payment_intent_requires_action',
                )
            if result.status not in SETTLED_STATUSES:
                raise PaymentDeclined(
                    'The payment attempt failed',
                    gateway_code='payment_intent_payment_attempt_failed',
                )
            confirmed.append(intent.id)
