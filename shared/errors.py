"""
Shared error handling for the webplow gateway.

Every client-visible failure maps to exactly one exception class carrying a
fixed HTTP status and message. Internal detail goes into ``details`` and is
only ever logged.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: str


class GatewayException(Exception):
    """Base exception for gateway services."""

    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, code: str, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(error=self.message)


class AuthenticationError(GatewayException):
    """Missing or unknown API key."""

    status_code = 401
    default_message = "Unauthorized"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class ValidationError(GatewayException):
    """Malformed request or missing upload."""

    status_code = 400
    default_message = "Bad request"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class PayloadTooLargeError(ValidationError):
    """Request body exceeded the configured upload limit."""

    status_code = 413
    default_message = "File too large"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        GatewayException.__init__(self, "PAYLOAD_TOO_LARGE", message, details)


class StorageError(GatewayException):
    """Local staging failure."""

    status_code = 500
    default_message = "Failed to save file"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__("STORAGE_ERROR", message, details)


class BackendUnreachableError(GatewayException):
    """Network-level failure talking to the backend."""

    status_code = 502
    default_message = "Backend unreachable"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__("BACKEND_UNREACHABLE", message, details)


class BackendError(GatewayException):
    """Backend answered, but not with a usable image."""

    status_code = 500
    default_message = "Conversion failed"

    def __init__(self, status: int, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.backend_status = status
        details = dict(details or {})
        details.setdefault("backend_status", status)
        super().__init__("BACKEND_ERROR", message, details)


class BackendUnhealthyError(GatewayException):
    """Backend health probe failed."""

    status_code = 503
    default_message = "Backend unhealthy"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__("BACKEND_UNHEALTHY", message, details)


class CredentialStoreError(GatewayException):
    """Base class for credential store failures."""


class CredentialParseError(CredentialStoreError):
    """Credential file exists but cannot be parsed."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__("CREDENTIAL_PARSE_ERROR", f"parse {path}: {reason}", {"path": path})


class CredentialPersistError(CredentialStoreError):
    """Credential table could not be written to disk."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__("CREDENTIAL_PERSIST_ERROR", f"write {path}: {reason}", {"path": path})
