"""Service wiring shared by the API routes."""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from printflow.config import Settings, get_settings
from printflow.core.designs import DesignStore
from printflow.core.orders import OrderService
from printflow.core.rate_limiter import RateLimiter, create_rate_limit_store
from printflow.core.render_jobs import RenderOrchestrator
from printflow.core.users import UserDirectory
from printflow.core.webhooks import PaymentWebhookProcessor
from printflow.database.connection import get_session_factory
from printflow.monitoring.health import HealthCheck


@dataclass
class Services:
    settings: Settings
    users: UserDirectory
    designs: DesignStore
    renders: RenderOrchestrator
    orders: OrderService
    webhooks: PaymentWebhookProcessor
    rate_limiter: RateLimiter
    health: HealthCheck

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> "Services":
        settings = settings or get_settings()
        session_factory = session_factory or get_session_factory()
        orders = OrderService(session_factory, settings=settings)
        return cls(
            settings=settings,
            users=UserDirectory(session_factory),
            designs=DesignStore(session_factory),
            renders=RenderOrchestrator(session_factory, settings=settings),
            orders=orders,
            webhooks=PaymentWebhookProcessor(
                session_factory,
                order_service=orders,
                settings=settings,
            ),
            rate_limiter=RateLimiter(
                create_rate_limit_store(settings, session_factory),
                window_seconds=settings.rate_limit_window_seconds,
            ),
            health=HealthCheck(settings, session_factory),
        )


def get_services(request: Request) -> Services:
    return request.app.state.services


def client_identifier(request: Request) -> str:
    return request.client.host if request.client else "unknown"
