"""
Error taxonomy for the escrow workflow.

Every error carries a stable machine-readable ``kind``, the HTTP status the
API maps it to, and whether the caller may retry the same request.
"""

from typing import Any, Dict, Optional


class EscrowError(Exception):
    """Base class for all workflow errors"""

    kind = "escrow_error"
    status_code = 400
    retryable = False

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.field:
            body["field"] = self.field
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(EscrowError):
    """Missing or malformed required field"""

    kind = "validation_error"
    status_code = 422


class NotFound(EscrowError):
    kind = "not_found"
    status_code = 404

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} with identifier '{identifier}' not found")
        self.resource = resource
        self.identifier = identifier


class InvalidTransition(EscrowError):
    """Operation attempted outside the legal order state"""

    kind = "invalid_transition"
    status_code = 409


class NotFullyPaid(InvalidTransition):
    kind = "not_fully_paid"


class AlreadyExists(EscrowError):
    kind = "already_exists"
    status_code = 409


class AlreadyConfirmed(AlreadyExists):
    kind = "already_confirmed"


class AlreadyRemitted(AlreadyExists):
    kind = "already_remitted"


class AlreadySettled(EscrowError):
    kind = "already_settled"
    status_code = 409


class MissingBankDetails(EscrowError):
    kind = "missing_bank_details"
    status_code = 409


class OverpaymentError(EscrowError):
    kind = "overpayment"
    status_code = 409


class ConcurrentUpdate(EscrowError):
    """Another request changed the order first"""

    kind = "concurrent_update"
    status_code = 409
    retryable = True


class UpstreamUnavailable(EscrowError):
    """Gateway, storage or notification failure"""

    kind = "upstream_unavailable"
    status_code = 503
    retryable = True

    def __init__(self, service: str, message: Optional[str] = None):
        super().__init__(message or f"{service} is temporarily unavailable")
        self.service = service


class GatewayRejected(EscrowError):
    """The gateway refused the request; repeating it will not help"""

    kind = "gateway_rejected"
    status_code = 502

    def __init__(self, service: str, message: Optional[str] = None):
        super().__init__(message or f"{service} rejected the request")
        self.service = service
