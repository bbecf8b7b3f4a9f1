"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from printflow.database.models import DesignStatus, OrderStatus, PaymentStatus, RenderJobStatus


class CreateDesignRequest(BaseModel):
    """Request schema for creating a design version."""

    user_id: UUID = Field(..., description="Owning user")
    template_id: UUID = Field(..., description="Template being customized")
    params: Dict[str, Any] = Field(..., description="Customization parameters")
    parent_design_id: Optional[UUID] = Field(
        default=None, description="Previous version when creating a new version"
    )
    name: Optional[str] = Field(default=None, max_length=255, description="Display name")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user_id": "123e4567-e89b-12d3-a456-426614174000",
                    "template_id": "8d1f4b9c-3a1e-4c5d-9f2b-7e6a5d4c3b2a",
                    "params": {"color": "red", "text": "Hello"},
                }
            ]
        }
    }


class DesignResponse(BaseModel):
    """Response schema for a design."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    template_id: UUID
    original_design_id: Optional[UUID] = None
    name: Optional[str] = None
    version: int
    params: Dict[str, Any]
    params_crc32: str = Field(..., description="8-char hex CRC32 of the canonical params")
    status: DesignStatus
    safe_area_warning: bool
    preview_image_url: Optional[str] = None
    final_image_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class CreateDesignResponse(DesignResponse):
    created: bool = Field(..., description="False when an identical ready design was reused")


class LineageResponse(BaseModel):
    design_id: UUID
    versions: List[DesignResponse] = Field(..., description="Version chain, oldest first")


class RenderJobResponse(BaseModel):
    """Response schema for a render job."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    design_id: UUID
    idempotency_key: str
    attempt: int
    status: RenderJobStatus
    worker_id: Optional[str] = None
    result_image_url: Optional[str] = None
    failure_reason: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime


class SubmitRenderRequest(BaseModel):
    operator: bool = Field(
        default=False, description="Operator resubmission; ignores the attempt cap"
    )


class SubmitRenderResponse(BaseModel):
    job: RenderJobResponse
    created: bool


class ClaimRenderJobRequest(BaseModel):
    worker_id: Optional[str] = Field(default=None, max_length=255)


class ClaimRenderJobResponse(BaseModel):
    job: Optional[RenderJobResponse] = Field(default=None, description="Null when nothing is pending")
    params: Optional[Dict[str, Any]] = Field(default=None, description="Params to render")


class RenderResultRequest(BaseModel):
    """Outcome reported by a render worker."""

    success: bool
    artifact_url: Optional[str] = Field(default=None, max_length=512)
    failure_reason: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"success": True, "artifact_url": "https://cdn.example.com/renders/abc.png"},
                {"success": False, "failure_reason": "font not found"},
            ]
        }
    }


class RenderResultResponse(BaseModel):
    job: RenderJobResponse
    applied: bool
    exhausted: bool = False
    retry_job: Optional[RenderJobResponse] = None


class CancelRenderJobResponse(BaseModel):
    job: RenderJobResponse
    cancelled: bool
    already_completed: bool


class CreateOrderRequest(BaseModel):
    """Request schema for creating an order."""

    user_id: UUID
    design_id: UUID
    quantity: int = Field(..., description="Number of units (at least 1)")
    shipping_address: Dict[str, Any] = Field(..., description="Shipping address snapshot")
    discount_rules: List[Dict[str, Any]] = Field(default_factory=list)
    shipping_method: str = Field(default="standard", max_length=100)
    payment_intent_id: Optional[str] = Field(default=None, max_length=255)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "user_id": "123e4567-e89b-12d3-a456-426614174000",
                    "design_id": "2b3c4d5e-6f70-4812-9a3b-4c5d6e7f8091",
                    "quantity": 3,
                    "shipping_address": {
                        "name": "Taro Yamada",
                        "postal_code": "150-0001",
                        "prefecture_name": "Tokyo",
                        "city": "Shibuya-ku",
                        "address_line": "1-2-3 Jingumae",
                    },
                    "discount_rules": [{"code": "SUMMER10", "kind": "percent", "value": 10}],
                }
            ]
        }
    }


class OrderResponse(BaseModel):
    """Response schema for an order."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    design_id: UUID
    order_number: str
    quantity: int
    base_unit_price: int
    subtotal: int
    discount_total: int
    subtotal_after_discount: int
    shipping_fee: int
    amount: int
    amount_breakdown: Dict[str, Any]
    shipping_method: str
    shipping_info: Dict[str, Any]
    status: OrderStatus
    payment_status: PaymentStatus
    stripe_payment_intent_id: Optional[str] = None
    ordered_at: datetime
    confirmed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class OrderEventRequest(BaseModel):
    event: str = Field(..., description="Order event, e.g. ship or deliver")


class OrderTransitionResponse(BaseModel):
    order: OrderResponse
    applied: bool
    reason: Optional[str] = Field(default=None, description="Why the event was rejected")


class WebhookEventRequest(BaseModel):
    """Generic payment gateway event."""

    event_id: str = Field(..., description="Gateway event ID")
    event_type: str = Field(..., description="Gateway event type")
    payload: Any = Field(default=None, description="Event document")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    event_id: str = Field(..., description="Gateway event ID")
    event_type: str
    outcome: str = Field(..., description="Recorded processing outcome")
    order_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    replayed: bool = Field(default=False, description="True when this event id was already processed")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class ErrorResponse(BaseModel):
    error: str
    message: str
    field: Optional[str] = None
