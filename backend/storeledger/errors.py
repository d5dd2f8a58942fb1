# Overview: Service error taxonomy shared by the ledger, order, purchase and allocation services.

"""
Error taxonomy

- Validation (ValidationError, ActorRequiredError): rejected before any ledger access.
- Business rule (BusinessRuleError and subclasses): carry machine-readable `details`
  so callers can branch (e.g. prompt for a transfer/purchase stock decision).
- Concurrency (VersionConflictError): a versioned record changed underneath us and
  retries were exhausted. The caller may retry the whole operation.
- Fatal (StoreNotConfiguredError): configuration problem; never retried.
"""

from __future__ import annotations

from .validation import ValidationError


class ActorRequiredError(ValidationError):
    """Raised when a mutating or ledger call has no authenticated actor."""

    def __init__(self, operation: str | None = None):
        message = "unauthenticated: an actor identity is required"
        if operation:
            message = f"{message} for {operation}"
        super().__init__(message)
        self.operation = operation


class ServiceError(Exception):
    """Base for service-layer failures that carry structured context."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class BusinessRuleError(ServiceError):
    """A request that is well-formed but violates a business rule."""


class NotFoundError(BusinessRuleError):
    """Raised when a referenced entity does not exist."""


class InsufficientStockError(BusinessRuleError):
    """
    Raised when requested quantities exceed available stock.

    shortfalls: [{"product_variant_id", "store_id", "requested", "available"}]
    """

    def __init__(self, shortfalls: list[dict], message: str = "Insufficient stock"):
        super().__init__(message, details={"shortfalls": shortfalls})
        self.shortfalls = shortfalls


class IllegalStatusTransitionError(BusinessRuleError):
    """Raised when a status change is not in the transition table."""

    def __init__(self, current: str, target: str, allowed: list[str] | tuple[str, ...]):
        allowed = sorted(allowed)
        allowed_text = ", ".join(allowed) if allowed else "none (terminal state)"
        super().__init__(
            f"Illegal status transition: {current} -> {target}. Allowed next states: {allowed_text}",
            details={"current": current, "target": target, "allowed": allowed},
        )


class RefundQuantityError(BusinessRuleError):
    """Raised when a refund exceeds the remaining refundable quantity of a line."""


class VersionConflictError(ServiceError):
    """Raised when an optimistic version check fails and retries are exhausted."""


class StoreNotConfiguredError(ServiceError):
    """Raised when no store exists at all; the operation cannot proceed."""
