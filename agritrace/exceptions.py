"""AgriTrace Custom Exception Hierarchy.

This module provides the exception hierarchy for AgriTrace with rich error
context for debugging, monitoring, and API responses.

Exception Hierarchy:
    AgriTraceException (base)
    └── TraceabilityException
        ├── ValidationError
        ├── NotFoundError
        │   └── ReferentialIntegrityError
        ├── PartialFailureError
        ├── DownstreamFailureError
        ├── IdentifierCollisionError
        ├── LineageCycleError
        ├── AuthenticationError
        └── AuthorizationError

All exceptions include rich context:
- error_code: Unique error identifier
- component: Name of the ledger component that raised the error
- context: Dictionary with error-specific details
- timestamp: When the error occurred
- traceback: Stack at the point of construction

Example:
    >>> from agritrace.exceptions import ValidationError
    >>> raise ValidationError(
    ...     message="actor_ref is required",
    ...     component="EventLedger",
    ...     invalid_fields={"actor_ref": "missing"},
    ... )

Author: AgriTrace Platform Team
Status: Production Ready
"""

import json
import re
import traceback as tb
from datetime import datetime
from typing import Any, Dict, Optional


# ==============================================================================
# Base Exception
# ==============================================================================

class AgriTraceException(Exception):
    """Base exception for all AgriTrace errors.

    Attributes:
        message: Human-readable error message
        error_code: Unique error identifier (e.g., "AT_LEDGER_NOT_FOUND_ERROR")
        component: Name of the component that raised the error (optional)
        context: Dictionary with error-specific details
        timestamp: When the error occurred
        traceback_str: Stack trace for debugging
    """

    ERROR_PREFIX = "AT"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        component: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        """Initialize AgriTrace exception with rich context.

        Args:
            message: Human-readable error message
            error_code: Unique error identifier (auto-generated if not provided)
            component: Name of the component that raised the error
            context: Dictionary with error-specific details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self._generate_error_code()
        self.component = component
        self.context = context or {}
        self.timestamp = datetime.now()
        self.traceback_str = "".join(tb.format_stack()[:-1])

    def _generate_error_code(self) -> str:
        """Generate error code based on exception class.

        Returns:
            Error code like "AT_LEDGER_VALIDATION_ERROR"
        """
        class_name = self.__class__.__name__
        error_type = re.sub(r'(?<!^)(?=[A-Z])', '_', class_name).upper()
        return f"{self.ERROR_PREFIX}_{error_type}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for serialization.

        Returns:
            Dictionary with all error details
        """
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "component": self.component,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "traceback": self.traceback_str,
        }

    def to_json(self) -> str:
        """Convert exception to JSON string.

        Returns:
            JSON string representation
        """
        return json.dumps(self.to_dict(), indent=2, default=str)

    def __str__(self) -> str:
        """String representation with error code and message."""
        parts = [f"[{self.error_code}]"]
        if self.component:
            parts.append(f"Component: {self.component}")
        parts.append(self.message)
        return " - ".join(parts)

    def __repr__(self) -> str:
        """Detailed representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message='{self.message}', "
            f"error_code='{self.error_code}', "
            f"component='{self.component}')"
        )


# ==============================================================================
# Traceability Ledger Exceptions
# ==============================================================================

class TraceabilityException(AgriTraceException):
    """Base exception for Traceability Ledger errors."""
    ERROR_PREFIX = "AT_LEDGER"


class ValidationError(TraceabilityException):
    """Missing or malformed required fields.

    Fails fast and is visible to the caller. Never retried.

    Example:
        >>> raise ValidationError(
        ...     message="geo_location coordinates must be numeric",
        ...     component="EventLedger",
        ...     invalid_fields={"geo_location.lat": "not a number"},
        ... )
    """

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        invalid_fields: Optional[Dict[str, str]] = None,
    ):
        """Initialize validation error.

        Args:
            message: Error message
            component: Name of component
            context: Error context
            invalid_fields: Dictionary of field_name -> reason
        """
        if invalid_fields:
            context = context or {}
            context["invalid_fields"] = invalid_fields
        super().__init__(message, component=component, context=context)


class NotFoundError(TraceabilityException):
    """Unknown identifier, event, or field-plot reference.

    Example:
        >>> raise NotFoundError(
        ...     message="Identifier abc not found",
        ...     resource_type="identifier",
        ...     resource_id="abc",
        ... )
    """

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ):
        """Initialize not-found error.

        Args:
            message: Error message
            component: Name of component
            context: Error context
            resource_type: Kind of resource that was looked up
            resource_id: Identifier that could not be found
        """
        context = context or {}
        if resource_type:
            context["resource_type"] = resource_type
        if resource_id:
            context["resource_id"] = resource_id
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(message, component=component, context=context)


class ReferentialIntegrityError(NotFoundError):
    """An event references an identifier that does not exist.

    Raised by the pre-write existence check on append.
    """


class PartialFailureError(TraceabilityException):
    """The second write of a harvest transition failed after the first succeeded.

    The registry is left holding ``identifier_id`` with no HARVESTED event.
    The caller decides whether to retry; the transition journal keeps the
    intent so that a reconciliation sweep can complete it later.
    """

    def __init__(
        self,
        message: str,
        identifier_id: str,
        component: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        intent_id: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        """Initialize partial failure error.

        Args:
            message: Error message
            identifier_id: Identifier left without its first event
            component: Name of component
            context: Error context
            intent_id: Transition journal entry tracking the failed transition
            cause: Original exception raised by the failed write
        """
        context = context or {}
        context["identifier_id"] = identifier_id
        if intent_id:
            context["intent_id"] = intent_id
        if cause:
            context["cause"] = str(cause)
            context["cause_type"] = type(cause).__name__
        self.identifier_id = identifier_id
        self.intent_id = intent_id
        super().__init__(message, component=component, context=context)


class DownstreamFailureError(TraceabilityException):
    """An external collaborator (anomaly scorer, notifier) failed.

    Logged and swallowed; never propagates to the caller of the write
    that triggered the downstream call.
    """

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        collaborator: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        """Initialize downstream failure error.

        Args:
            message: Error message
            component: Name of component
            context: Error context
            collaborator: Name of the external collaborator that failed
            cause: Original exception
        """
        context = context or {}
        if collaborator:
            context["collaborator"] = collaborator
        if cause:
            context["cause"] = str(cause)
            context["cause_type"] = type(cause).__name__
        super().__init__(message, component=component, context=context)


class IdentifierCollisionError(TraceabilityException):
    """No unused identifier could be generated within the attempt budget."""


class LineageCycleError(TraceabilityException):
    """Adding a lineage link would create a cycle.

    Example:
        >>> raise LineageCycleError(
        ...     message="Linking a -> b would create a cycle",
        ...     context={"cycle": ["a", "b", "a"]},
        ... )
    """


class AuthenticationError(TraceabilityException):
    """A protected operation was invoked without a caller identity."""


class AuthorizationError(TraceabilityException):
    """The caller identity lacks a role required by the operation."""

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        required_roles: Optional[list] = None,
    ):
        """Initialize authorization error.

        Args:
            message: Error message
            component: Name of component
            context: Error context
            required_roles: Roles that would have been accepted
        """
        context = context or {}
        if required_roles:
            context["required_roles"] = list(required_roles)
        super().__init__(message, component=component, context=context)


# ==============================================================================
# Exception Utilities
# ==============================================================================

def format_exception_chain(exc: Exception) -> str:
    """Format exception chain for logging/display.

    Args:
        exc: Exception to format

    Returns:
        Formatted string with full exception chain
    """
    lines = []
    current = exc

    while current is not None:
        if isinstance(current, AgriTraceException):
            lines.append(str(current))
            lines.append(f"  Context: {current.context}")
        else:
            lines.append(f"{type(current).__name__}: {current}")

        current = getattr(current, "__cause__", None)

    return "\n".join(lines)


def is_retriable(exc: Exception) -> bool:
    """Check if a caller may safely repeat the failed operation as-is.

    The ledger itself never retries. A PartialFailureError is not
    retriable: repeating the transition would mint a second identifier,
    so it must go through reconciliation instead.

    Args:
        exc: Exception to check

    Returns:
        True if repeating the same call can succeed without side effects
    """
    retriable_types = (DownstreamFailureError, IdentifierCollisionError)

    non_retriable_types = (
        ValidationError,
        NotFoundError,
        PartialFailureError,
        LineageCycleError,
        AuthenticationError,
        AuthorizationError,
    )

    if isinstance(exc, non_retriable_types):
        return False
    if isinstance(exc, retriable_types):
        return True

    return False


__all__ = [
    "AgriTraceException",
    "TraceabilityException",
    "ValidationError",
    "NotFoundError",
    "ReferentialIntegrityError",
    "PartialFailureError",
    "DownstreamFailureError",
    "IdentifierCollisionError",
    "LineageCycleError",
    "AuthenticationError",
    "AuthorizationError",
    "format_exception_chain",
    "is_retriable",
]
