from __future__ import annotations

from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base class for errors surfaced to API callers.

    ``status_code`` is the HTTP status the Flask error handler answers with;
    ``details`` is merged into the JSON body.
    """

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"ok": False, "error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class AuthenticationError(ReconciliationError):
    status_code = 401


class AuthorizationError(ReconciliationError):
    status_code = 403


class ValidationError(ReconciliationError):
    status_code = 400


class NotFoundError(ReconciliationError):
    status_code = 404


class ConflictError(ReconciliationError):
    status_code = 409


class PaymentStateError(ConflictError):
    pass


class GatewayError(ReconciliationError):
    status_code = 502


class GatewayConfigError(GatewayError):
    # Missing or unusable credentials; retrying will not help.
    status_code = 500


class GatewaySessionError(GatewayError):
    pass


class GatewayRequestError(GatewayError):
    pass
