"""
Error taxonomy for catalog and quotation operations.

An unpriced item is not an error: resolvers return None and previews omit
the item. These exceptions cover the cases the caller must act on.
"""
from typing import Optional


class PricingError(Exception):
    """Base class for all pricing service failures."""


class ValidationError(PricingError, ValueError):
    """Input rejected before any write took place."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class NotFoundError(PricingError, LookupError):
    """No entity with the given key exists."""

    def __init__(self, entity: str, key: str):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} '{key}' not found")


class ConflictError(PricingError):
    """Operation refused because of live dependents. Not retryable."""

    def __init__(self, message: str, dependents: Optional[list[str]] = None):
        self.dependents = dependents or []
        super().__init__(message)


class InvalidTransitionError(ConflictError):
    """Quotation request is not in a status that allows the action."""

    def __init__(self, action: str, status: str):
        self.action = action
        self.status = status
        super().__init__(f"Cannot {action} a quotation request with status '{status}'")
