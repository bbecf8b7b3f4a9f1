"""
Error taxonomy for the printflow core.

Validation and throttling errors are raised synchronously to the caller.
Illegal state-machine transitions are returned as values (see
``printflow.core.orders.IllegalTransition``) and recorded, not raised.
"""
from enum import Enum
from typing import Any, Optional, Type, TypeVar

E = TypeVar("E", bound=Enum)


class PrintflowError(Exception):
    """Base exception for printflow errors."""

    pass


class ValidationError(PrintflowError):
    """Raised when input is malformed. Nothing has been mutated."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InvalidParams(ValidationError):
    """Raised when design params violate the template's parameter schema."""

    pass


class NotFoundError(PrintflowError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class WebhookSignatureError(PrintflowError):
    """Raised when a signed webhook fails verification."""

    pass


class ExhaustedRetries(PrintflowError):
    """Raised when a design has used up its automatic render attempts."""

    def __init__(self, design_id: Any, attempts: int):
        super().__init__(
            f"Design {design_id} failed after {attempts} render attempts; "
            "operator resubmission required"
        )
        self.design_id = design_id
        self.attempts = attempts


class Throttled(PrintflowError):
    """Raised when a rate limit is exceeded. Callers should back off."""

    def __init__(self, identifier: str, action: str, limit: int, retry_after: int):
        super().__init__(
            f"Rate limit exceeded for {action} ({limit} per window); "
            f"retry after {retry_after}s"
        )
        self.identifier = identifier
        self.action = action
        self.limit = limit
        self.retry_after = retry_after


class StaleOrderState(PrintflowError):
    """Raised when an order kept changing underneath a compare-and-set. Retryable."""

    def __init__(self, order_id: Any, attempts: int):
        super().__init__(f"Order {order_id} changed concurrently {attempts} times")
        self.order_id = order_id
        self.attempts = attempts


def parse_enum(enum_cls: Type[E], value: Any, field: Optional[str] = None) -> E:
    """
    Parse a closed enumeration value.

    Unknown values raise ValidationError instead of being coerced.
    """
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            f"Invalid {field or enum_cls.__name__}: {value!r} (expected one of: {allowed})",
            field=field,
        )
