"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    CreateDesignRequest,
    CreateOrderRequest,
    DesignResponse,
    OrderResponse,
    RenderJobResponse,
    WebhookEventRequest,
    WebhookResponse,
)

__all__ = [
    "app",
    "create_app",
    "CreateDesignRequest",
    "CreateOrderRequest",
    "DesignResponse",
    "OrderResponse",
    "RenderJobResponse",
    "WebhookEventRequest",
    "WebhookResponse",
]
