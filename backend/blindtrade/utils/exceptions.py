"""
Business exceptions for the negotiation core.

WHAT: Domain-specific exceptions that map to stable error codes
WHY: Callers must tell "not now" from "try again" from "bad input"
HOW: Exception classes carrying a code, message, details and retry hint
"""

from typing import Optional, List, Dict, Any


class BusinessException(Exception):
    """Base class for business logic exceptions."""

    retryable: bool = False

    def __init__(self, message: str, code: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details


class ValidationError(BusinessException):
    """Raised for malformed input (quote fields, offers, message text)."""

    def __init__(self, message: str, field_errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details={"field_errors": field_errors} if field_errors else None
        )
        self.field_errors = field_errors or []


class InvalidStateError(BusinessException):
    """Raised when an operation is not permitted in the current status."""

    def __init__(self, negotiation_id: str, current_status: str, operation: str, reason: str = ""):
        message = f"Cannot {operation} negotiation {negotiation_id} in status {current_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message=message,
            code="INVALID_STATE",
            details={
                "negotiation_id": negotiation_id,
                "current_status": current_status,
                "operation": operation
            }
        )
        self.current_status = current_status
        self.operation = operation


class NotAParticipantError(BusinessException):
    """Raised when the acting user is neither buyer nor seller."""

    def __init__(self, negotiation_id: str, user_id: str):
        super().__init__(
            message=f"User {user_id} is not a participant of negotiation {negotiation_id}",
            code="NOT_A_PARTICIPANT",
            details={"negotiation_id": negotiation_id, "user_id": user_id}
        )


class NegotiationNotFoundError(BusinessException):
    """Raised when a negotiation id is unknown."""

    def __init__(self, negotiation_id: str):
        super().__init__(
            message=f"Negotiation not found: {negotiation_id}",
            code="NEGOTIATION_NOT_FOUND",
            details={"negotiation_id": negotiation_id}
        )


class ConflictError(BusinessException):
    """Raised when optimistic-concurrency retries are exhausted."""

    retryable = True

    def __init__(self, negotiation_id: str, attempts: int):
        super().__init__(
            message=f"Concurrent update conflict on negotiation {negotiation_id} after {attempts} attempts",
            code="CONFLICT",
            details={"negotiation_id": negotiation_id, "attempts": attempts}
        )


class CollaboratorUnavailableError(BusinessException):
    """Raised when persistence, payment, directory or catalog fails or times out."""

    retryable = True

    def __init__(self, collaborator: str, reason: str):
        super().__init__(
            message=f"{collaborator} unavailable: {reason}",
            code="COLLABORATOR_UNAVAILABLE",
            details={"collaborator": collaborator}
        )
        self.collaborator = collaborator


class PaymentNotConfirmedError(BusinessException):
    """Raised when the payment gateway declines a governance fee."""

    def __init__(self, negotiation_id: str, payer_id: str, reason: str):
        super().__init__(
            message=f"Governance fee payment not confirmed for {payer_id}: {reason}",
            code="PAYMENT_NOT_CONFIRMED",
            details={"negotiation_id": negotiation_id, "payer_id": payer_id}
        )
