"""Errors raised by the subscription lifecycle engine."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class SubscriptionError(Exception):
    """Base exception for subscription errors."""


class ValidationError(SubscriptionError, ValueError):
    """A subscription or request failed validation."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class NotFoundError(SubscriptionError, LookupError):
    """A referenced subscription or agreement does not exist."""


class InvalidTransitionError(SubscriptionError):
    """The requested transition is not allowed from the current status."""

    def __init__(self, action: str, status: str) -> None:
        super().__init__(f"Cannot {action} a subscription with status '{status}'")
        self.action = action
        self.status = status


class MissingAgreementError(SubscriptionError):
    """No 'paid' history event carries a billing agreement id."""


class ExternalCallError(SubscriptionError):
    """A call to the order or billing agreement service failed."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation


class PermissionDeniedError(SubscriptionError):
    """The caller is not allowed to perform an administrative operation."""


class ConflictError(SubscriptionError):
    """A conditional update found the stored record in a different state."""
