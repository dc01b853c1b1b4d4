"""Error taxonomy shared by the realtime handlers and the HTTP routes."""

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for errors surfaced to a client.

    ``code`` is the short machine-readable tag sent in ``error`` events and
    HTTP bodies; ``status_code`` is used by the HTTP exception handler.
    """

    code = "error"
    status_code = 400

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"message": self.message, "code": self.code}
        if self.details:
            data["details"] = self.details
        return data


class AuthenticationError(ServiceError):
    """Missing, malformed, expired or badly signed credential."""

    code = "authentication_error"
    status_code = 401


class AuthorizationError(ServiceError):
    code = "authorization_error"
    status_code = 403


class ValidationError(ServiceError):
    code = "validation_error"
    status_code = 422


class NotFoundError(ServiceError):
    code = "not_found"
    status_code = 404


class DependencyError(ServiceError):
    """Durable store or attachment store unavailable."""

    code = "dependency_error"
    status_code = 503
