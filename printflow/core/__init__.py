"""Consistency core: pricing, designs, render jobs, orders, webhooks, rate limits."""
from .designs import DesignStore
from .orders import OrderEvent, OrderService, apply_order_event
from .pricing import DiscountRule, ShippingRules, compute_price
from .rate_limiter import RateLimiter, RedisRateLimitStore, SqlRateLimitStore
from .render_jobs import RenderOrchestrator
from .users import UserDirectory
from .webhooks import PaymentWebhookProcessor

__all__ = [
    "DesignStore",
    "DiscountRule",
    "OrderEvent",
    "OrderService",
    "PaymentWebhookProcessor",
    "RateLimiter",
    "RedisRateLimitStore",
    "RenderOrchestrator",
    "ShippingRules",
    "SqlRateLimitStore",
    "UserDirectory",
    "apply_order_event",
    "compute_price",
]
