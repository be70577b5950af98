"""Error types and HTTP mapping helpers for the payments service."""
from typing import Any, Dict, Optional
import logging

logger = logging.getLogger(__name__)


class PaymentError(Exception):
    def __init__(self, message: str, *, payload: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.payload = payload or {}


class ValidationError(PaymentError):
    """Malformed input: phone format, amount range, missing id, bad callback envelope."""


class NotFoundError(PaymentError):
    """Unknown payment id or correlation key."""


class AuthError(PaymentError):
    """The gateway token exchange failed."""


class GatewayError(PaymentError):
    """A push or query call failed, returned non-2xx, or returned an unparsable body."""


_STATUS_CODES = {
    ValidationError: 400,
    NotFoundError: 404,
    AuthError: 502,
    GatewayError: 502,
}


class ErrorHandler:
    def status_code_for(self, exc: Exception) -> int:
        for exc_type, status_code in _STATUS_CODES.items():
            if isinstance(exc, exc_type):
                return status_code
        return 500

    def handle_exception(self, exc: Exception, context: Dict[str, Any] = None) -> Dict[str, Any]:
        status_code = self.status_code_for(exc)
        if status_code >= 500 and not isinstance(exc, PaymentError):
            logger.error("Unhandled exception in payments API: %s", exc, exc_info=True, extra={"context": context or {}})
            return {"success": False, "error": "Internal server error"}
        if status_code >= 500:
            logger.error("Gateway failure (%s): %s", type(exc).__name__, exc)
        return {"success": False, "error": str(exc)}
