"""
provisioning/errors.py

Domain exceptions for subscription provisioning.

Every error carries the HTTP status the signup routes answer with, so the
blueprint error handler can render any of them without a lookup table.

Families:
    - Precondition: bad credential, invitation/session missing or stale
    - Coupon: promotion code rejected by policy
    - Pricing: invoice previews failed
    - Gateway: raised by the gateway client (see gateway/); the finalizer
      adds PaymentRequiresAction for intents awaiting authentication
    - Conflict: concurrent overwrite of the same payment session

Version History:
    2026-10-18: Initial implementation
"""

from http import HTTPStatus
from typing import Any, Dict, Optional


class ProvisioningError(Exception):
    """
    Base exception for all provisioning errors.

    Attributes:
        message: User-facing error message
        status_code: HTTP status code
        code: Application error code
        details: Additional error details (never raw amounts)
    """

    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to the JSON envelope used by the signup routes."""
        return {
            'success': False,
            'error': self.message,
            'code': self.code,
        }

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


# =============================================================================
# PRECONDITIONS
# =============================================================================

class CredentialError(ProvisioningError):
    """Access credential missing, tampered with or expired."""
    status_code = HTTPStatus.UNAUTHORIZED


class InvitationNotFound(ProvisioningError):
    status_code = HTTPStatus.NOT_FOUND


class InvitationNotPending(ProvisioningError):
    status_code = HTTPStatus.NOT_FOUND


class PaymentSessionNotFound(ProvisioningError):
    status_code = HTTPStatus.NOT_FOUND


class PaymentSessionMismatch(ProvisioningError):
    """The payment cookie refers to a session that has since been replaced."""
    status_code = HTTPStatus.CONFLICT


class CustomerNotFound(ProvisioningError):
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR


class PricesUnavailable(ProvisioningError):
    """Base price ids for the membership plans could not be resolved."""
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR


# =============================================================================
# PRICING
# =============================================================================

class CouponRejected(ProvisioningError):
    status_code = HTTPStatus.BAD_REQUEST


class PricingFailed(ProvisioningError):
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR


# =============================================================================
# GATEWAY
# =============================================================================

class GatewayError(ProvisioningError):
    """
    Error returned by the payment gateway.

    Attributes:
        gateway_code: Provider error code (e.g. 'charge_exceeds_weekly_limit')
        decline_code: Provider decline code, when the error is a decline
        http_status: Provider HTTP status, when known
    """

    def __init__(
        self,
        message: str,
        gateway_code: Optional[str] = None,
        decline_code: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message, details={'gateway_code': gateway_code})
        self.gateway_code = gateway_code
        self.decline_code = decline_code
        self.http_status = http_status


class PaymentDeclined(GatewayError):
    status_code = HTTPStatus.BAD_REQUEST


class PaymentRequiresAction(GatewayError):
    """Confirmation accepted but the customer must still authenticate the payment."""
    status_code = HTTPStatus.BAD_REQUEST


class GatewayUnavailable(GatewayError):
    """Network failure that persisted through every retry. Answered as a plain 500."""


# =============================================================================
# CONCURRENCY
# =============================================================================

class SessionConflict(ProvisioningError):
    status_code = HTTPStatus.CONFLICT
