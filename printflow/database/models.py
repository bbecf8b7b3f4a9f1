"""SQLAlchemy database models for the print-on-demand core."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Type

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JsonDocument = JSON().with_variant(JSONB(), "postgresql")


def utc_now() -> datetime:
    """Naive UTC timestamp; every write path stamps rows with this."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class DesignStatus(str, Enum):
    """
    Design lifecycle.

    draft → queued → rendering → ready
                  ↘            ↘ failed
    """

    DRAFT = "draft"
    QUEUED = "queued"
    RENDERING = "rendering"
    READY = "ready"
    FAILED = "failed"


class RenderJobStatus(str, Enum):
    """
    Render job lifecycle.

    pending → processing → completed | failed
    pending | processing → cancelled
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (RenderJobStatus.PENDING, RenderJobStatus.PROCESSING)


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


def _enum_type(enum_cls: Type[Enum], name: str) -> SAEnum:
    # Stored as VARCHAR + CHECK so the same schema works on SQLite and PostgreSQL
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=20,
        validate_strings=True,
        values_callable=lambda members: [member.value for member in members],
    )


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class User(Base):
    """
    Customer identity and shipping profile.

    Identity (id, email) is immutable; the profile fields are not.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    postal_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    pref_code: Mapped[str | None] = mapped_column(String(2), nullable=True)
    prefecture_name: Mapped[str | None] = mapped_column(String(20), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    address_line: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    status: Mapped[UserStatus] = mapped_column(
        _enum_type(UserStatus, "user_status"), nullable=False, default=UserStatus.ACTIVE
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, status={self.status})>"


class Template(Base):
    """
    Catalog template. Written by the catalog service, read-only here.

    template_data holds the parameter schema:
        {"canvas": {...}, "safe_area": {...}, "params": {name: rule}}
    """

    __tablename__ = "templates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    base_unit_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    template_data: Mapped[Dict[str, Any]] = mapped_column(JsonDocument, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("base_unit_price >= 0", name="check_base_unit_price_positive"),
    )

    def __repr__(self) -> str:
        return f"<Template(id={self.id}, name={self.name}, price={self.base_unit_price})>"


class Design(Base):
    """
    A versioned customization of a template.

    original_design_id points at the parent version (always a lower version),
    so lineage chains cannot cycle.
    """

    __tablename__ = "designs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    template_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("templates.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    original_design_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("designs.id", ondelete="SET NULL"), nullable=True, index=True
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    params: Mapped[Dict[str, Any]] = mapped_column(JsonDocument, nullable=False, default=dict)
    params_crc32: Mapped[str] = mapped_column(String(8), nullable=False)
    preview_image_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    final_image_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    safe_area_warning: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[DesignStatus] = mapped_column(
        _enum_type(DesignStatus, "design_status"),
        nullable=False,
        default=DesignStatus.DRAFT,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("version > 0", name="check_design_version_positive"),
        Index("idx_designs_dedup", "user_id", "template_id", "params_crc32", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Design(id={self.id}, version={self.version}, "
            f"crc32={self.params_crc32}, status={self.status})>"
        )


class RenderJob(Base):
    """
    One attempt to render a design.

    (idempotency_key, attempt) is unique, and the partial index allows at
    most one pending/processing job per idempotency key.
    """

    __tablename__ = "render_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    design_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("designs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[RenderJobStatus] = mapped_column(
        _enum_type(RenderJobStatus, "render_job_status"),
        nullable=False,
        default=RenderJobStatus.PENDING,
        index=True,
    )
    worker_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    render_params: Mapped[Dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    result_image_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("attempt > 0", name="check_attempt_positive"),
        UniqueConstraint("idempotency_key", "attempt", name="unique_render_job_attempt"),
        Index(
            "unique_render_job_active_key",
            "idempotency_key",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
        Index("idx_render_jobs_claim", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<RenderJob(id={self.id}, design_id={self.design_id}, "
            f"attempt={self.attempt}, status={self.status})>"
        )


class Order(Base):
    """
    A purchase of one design.

    Pricing columns are frozen at creation and never recomputed.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    design_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("designs.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    order_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)

    # Pricing breakdown
    base_unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    subtotal: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    subtotal_after_discount: Mapped[int] = mapped_column(Integer, nullable=False)
    shipping_fee: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_breakdown: Mapped[Dict[str, Any]] = mapped_column(
        JsonDocument, nullable=False, default=dict
    )

    # Shipping snapshot
    shipping_name: Mapped[str] = mapped_column(String(255), nullable=False)
    shipping_postal_code: Mapped[str] = mapped_column(String(8), nullable=False)
    shipping_pref_code: Mapped[str | None] = mapped_column(String(2), nullable=True)
    shipping_pref_name: Mapped[str] = mapped_column(String(20), nullable=False)
    shipping_city: Mapped[str] = mapped_column(String(100), nullable=False)
    shipping_address_line: Mapped[str] = mapped_column(String(255), nullable=False)
    shipping_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    shipping_method: Mapped[str] = mapped_column(String(100), nullable=False, default="standard")
    shipping_info: Mapped[Dict[str, Any]] = mapped_column(JsonDocument, nullable=False, default=dict)

    # Status and payment
    status: Mapped[OrderStatus] = mapped_column(
        _enum_type(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
        index=True,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum_type(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
        index=True,
    )
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(
        String(255), nullable=True, index=True
    )

    ordered_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            "base_unit_price >= 0 AND subtotal >= 0 AND discount_total >= 0 "
            "AND subtotal_after_discount >= 0 AND shipping_fee >= 0 AND amount >= 0",
            name="check_amounts_positive",
        ),
        CheckConstraint(
            "amount = subtotal_after_discount + shipping_fee", name="check_amount_calculation"
        ),
        CheckConstraint(
            "subtotal_after_discount = subtotal - discount_total",
            name="check_subtotal_after_discount",
        ),
        CheckConstraint("quantity > 0", name="check_quantity_positive"),
    )

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, number={self.order_number}, amount={self.amount}, "
            f"status={self.status}, payment_status={self.payment_status})>"
        )


class PaymentEvent(Base):
    """
    Payment gateway event log.

    One row per gateway event id. Append-only: the processing result is
    written in the same transaction that inserts the row.
    """

    __tablename__ = "payment_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    payload: Mapped[Any] = mapped_column(JsonDocument, nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    processing_result: Mapped[Dict[str, Any] | None] = mapped_column(JsonDocument, nullable=True)
    order_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True
    )
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return (
            f"<PaymentEvent(event_id={self.event_id}, type={self.event_type}, "
            f"outcome={self.outcome})>"
        )


class RateLimitCounter(Base):
    """Fixed-window request counter. Rows past expires_at are garbage."""

    __tablename__ = "rate_limit_counters"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    identifier: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    counter: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    window_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint(
            "identifier", "action", "window_start", name="unique_rate_limit_window"
        ),
        Index("idx_rate_limit_identifier_action", "identifier", "action"),
    )

    def __repr__(self) -> str:
        return (
            f"<RateLimitCounter(identifier={self.identifier}, action={self.action}, "
            f"window_start={self.window_start}, counter={self.counter})>"
        )
