# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/errors.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Error taxonomy shared by the interface registry and the OAuth engine.

Every error carries a stable ``error_type`` label and a ``retryable`` flag so it
can be rendered as a structured result. Messages never contain secret material;
the original cause is chained internally with ``raise ... from``.

Examples:
    >>> err = InterfaceValidationError("Invalid parameters", violations=[{"path": "query", "message": "123 is not of type 'string'"}])
    >>> err.error_type, err.retryable
    ('ValidationError', False)
    >>> info = err.to_error_info()
    >>> info.type, info.details["violations"][0]["path"]
    ('ValidationError', 'query')
    >>> RequestTimeoutError("timed out").retryable
    True
    >>> isinstance(RequestTimeoutError("x"), NetworkError)
    True
"""

# Standard
from typing import Any, Dict, List, Optional

# First-Party
from mcpfixed.schemas import ErrorInfo, ManualInterventionState


class FixedToolError(Exception):
    """Base class for mcpfixed errors."""

    error_type = "UnknownError"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """Create the error.

        Args:
            message: Human readable, secret-free message.
            details: Optional structured details.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_error_info(self) -> ErrorInfo:
        """Convert to the structured error representation.

        Returns:
            ErrorInfo: Typed error with message, retryable flag and details.
        """
        return ErrorInfo(type=self.error_type, message=self.message, retryable=self.retryable, details=self.details)


class InterfaceValidationError(FixedToolError):
    """Schema or parameter mismatch; lists every violation."""

    error_type = "ValidationError"

    def __init__(self, message: str, violations: Optional[List[Dict[str, Any]]] = None):
        """Create the error.

        Args:
            message: Summary message.
            violations: One entry per violated constraint (``path`` and ``message``).
        """
        self.violations = violations or []
        super().__init__(message, {"violations": self.violations} if self.violations else None)


class ConflictError(FixedToolError):
    """Unique constraint violation."""

    error_type = "Conflict"


class NotFoundError(FixedToolError):
    """Unknown tool, interface, configuration or authorization state."""

    error_type = "NotFound"


class AuthRequiredError(FixedToolError):
    """No valid token; carries the manual intervention payload when applicable."""

    error_type = "AuthRequired"

    def __init__(self, message: str, manual_intervention: Optional[ManualInterventionState] = None):
        """Create the error.

        Args:
            message: Summary message.
            manual_intervention: Browser authorization instructions, if a flow was started.
        """
        self.manual_intervention = manual_intervention
        details = {"manual_intervention": manual_intervention.model_dump(mode="json")} if manual_intervention else None
        super().__init__(message, details)


class AuthExpiredError(FixedToolError):
    """Refresh failed; the operator has to log in again."""

    error_type = "AuthExpired"


class NetworkError(FixedToolError):
    """Transport level failure; retried with backoff before surfacing."""

    error_type = "NetworkError"
    retryable = True


class RequestTimeoutError(NetworkError):
    """A remote call exceeded its timeout."""

    error_type = "Timeout"


class UpstreamError(FixedToolError):
    """Structured failure reported by the remote endpoint."""

    error_type = "UpstreamError"

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None, retryable: bool = False):
        """Create the error.

        Args:
            message: Summary message.
            status: Remote status code, if any.
            body: Remote error payload, if any.
            retryable: Whether the failure is transient (e.g. HTTP 5xx).
        """
        self.status = status
        self.body = body
        self.retryable = retryable
        details: Dict[str, Any] = {}
        if status is not None:
            details["status"] = status
        if body is not None:
            details["body"] = body
        super().__init__(message, details)


class DecryptionError(FixedToolError):
    """Ciphertext could not be authenticated with the current master key."""

    error_type = "SecurityError"
