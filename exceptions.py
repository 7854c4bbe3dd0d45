"""
Error taxonomy for DoseLedger

Every domain failure raised out of the services derives from DoseLedgerError
so the API layer can map it onto a response in one place.
"""

from typing import Any, Dict, List, Optional


class DoseLedgerError(Exception):
    """Base class for domain errors"""

    status_code: int = 400
    error_code: str = "dose_ledger_error"

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "detail": self.message,
            "details": self.details,
        }


class ValidationError(DoseLedgerError):
    """Malformed input, rejected before any write"""

    status_code = 422
    error_code = "validation_error"

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(f"{field}: {message}", details=[{"field": field, "message": message}])


class NotFoundError(DoseLedgerError):
    status_code = 404
    error_code = "not_found"


class AuthorizationError(DoseLedgerError):
    """Missing permission or inactive family link"""

    status_code = 403
    error_code = "authorization_error"


class ConflictError(DoseLedgerError):
    """Concurrent modification that survived the bounded internal retries"""

    status_code = 409
    error_code = "conflict"


class GatewayError(DoseLedgerError):
    """
    Delivery gateway failure.

    transient=True means the send may succeed if retried later
    (timeouts, 5xx, rate limiting); transient=False is terminal.
    """

    status_code = 502
    error_code = "gateway_error"

    def __init__(self, message: str, transient: bool = True, channel: Optional[str] = None):
        super().__init__(message)
        self.transient = transient
        self.channel = channel


class DataIntegrityWarning(UserWarning):
    """
    Non-blocking data problem (out-of-range default time, dose count
    that does not match the frequency). Logged and stored, never raised.
    """

    def __init__(self, code: str, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        data = {"code": self.code, "message": self.message}
        if self.field:
            data["field"] = self.field
        return data


__all__ = [
    "DoseLedgerError",
    "ValidationError",
    "NotFoundError",
    "AuthorizationError",
    "ConflictError",
    "GatewayError",
    "DataIntegrityWarning",
]
