"""Database package for printflow."""
from .connection import (
    close_db,
    create_engine_from_settings,
    create_session_factory,
    get_session_factory,
    init_db,
)
from .models import (
    Base,
    Design,
    DesignStatus,
    Order,
    OrderStatus,
    PaymentEvent,
    PaymentStatus,
    RateLimitCounter,
    RenderJob,
    RenderJobStatus,
    Template,
    User,
    UserStatus,
    utc_now,
)

__all__ = [
    "Base",
    "User",
    "UserStatus",
    "Template",
    "Design",
    "DesignStatus",
    "RenderJob",
    "RenderJobStatus",
    "Order",
    "OrderStatus",
    "PaymentStatus",
    "PaymentEvent",
    "RateLimitCounter",
    "utc_now",
    "close_db",
    "create_engine_from_settings",
    "create_session_factory",
    "get_session_factory",
    "init_db",
]
