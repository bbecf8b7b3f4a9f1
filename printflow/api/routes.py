"""
API routes for designs, render jobs, orders and payment webhooks.
"""
import time
import uuid
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from printflow.core.errors import (
    ExhaustedRetries,
    NotFoundError,
    PrintflowError,
    StaleOrderState,
    Throttled,
    ValidationError,
    WebhookSignatureError,
    parse_enum,
)
from printflow.core.orders import IllegalTransition, OrderEvent
from printflow.core.render_jobs import RenderJobDescriptor, RenderOutcome
from printflow.monitoring.metrics import metrics

from .dependencies import Services, client_identifier, get_services
from .schemas import (
    CancelRenderJobResponse,
    ClaimRenderJobRequest,
    ClaimRenderJobResponse,
    CreateDesignRequest,
    CreateDesignResponse,
    CreateOrderRequest,
    DesignResponse,
    HealthCheckResponse,
    LineageResponse,
    OrderEventRequest,
    OrderResponse,
    OrderTransitionResponse,
    RenderJobResponse,
    RenderResultRequest,
    RenderResultResponse,
    SubmitRenderRequest,
    SubmitRenderResponse,
    WebhookEventRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
design_router = APIRouter(prefix="/designs", tags=["designs"])
render_router = APIRouter(prefix="/render-jobs", tags=["render-jobs"])
order_router = APIRouter(prefix="/orders", tags=["orders"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])

_STATUS_BY_ERROR = (
    (Throttled, status.HTTP_429_TOO_MANY_REQUESTS),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (WebhookSignatureError, status.HTTP_400_BAD_REQUEST),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ExhaustedRetries, status.HTTP_409_CONFLICT),
    (StaleOrderState, status.HTTP_409_CONFLICT),
)


def http_error(e: PrintflowError) -> HTTPException:
    """Translate a domain error into the matching HTTP error."""
    status_code = next(
        (code for error_cls, code in _STATUS_BY_ERROR if isinstance(e, error_cls)),
        status.HTTP_400_BAD_REQUEST,
    )
    detail: Dict[str, Any] = {"error": type(e).__name__, "message": str(e)}
    if isinstance(e, ValidationError) and e.field:
        detail["field"] = e.field
    headers = {"Retry-After": str(e.retry_after)} if isinstance(e, Throttled) else None
    return HTTPException(status_code=status_code, detail=detail, headers=headers)


async def enforce_rate_limit(services: Services, identifier: str, action: str, limit: int) -> None:
    try:
        await services.rate_limiter.enforce(identifier, action, limit)
    except Throttled:
        metrics.record_rate_limit(action, allowed=False)
        raise
    metrics.record_rate_limit(action, allowed=True)


def _unexpected(event: str, e: Exception, **context: Any) -> HTTPException:
    logger.error(event, error=str(e), error_type=type(e).__name__, **context)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An unexpected error occurred",
    )


@design_router.post(
    "",
    response_model=CreateDesignResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a design",
    description="Create a design version, reusing an identical ready design when one exists",
)
async def create_design(
    request: CreateDesignRequest,
    response: Response,
    services: Services = Depends(get_services),
) -> CreateDesignResponse:
    try:
        await enforce_rate_limit(
            services,
            str(request.user_id),
            "design_create",
            services.settings.rate_limit_design_create,
        )
        result = await services.designs.create_design(
            user_id=request.user_id,
            template_id=request.template_id,
            params=request.params,
            parent_design_id=request.parent_design_id,
            name=request.name,
        )
        metrics.record_design_created(result.created)
        if not result.created:
            response.status_code = status.HTTP_200_OK

        logger.info(
            "api_create_design_success",
            design_id=str(result.design.id),
            created=result.created,
        )
        return CreateDesignResponse(
            **DesignResponse.model_validate(result.design).model_dump(),
            created=result.created,
        )

    except PrintflowError as e:
        logger.warning("api_create_design_rejected", error=str(e))
        raise http_error(e)

    except Exception as e:
        raise _unexpected("api_create_design_unexpected_error", e)


@design_router.get(
    "/{design_id}",
    response_model=DesignResponse,
    summary="Get a design",
)
async def get_design(
    design_id: uuid.UUID,
    services: Services = Depends(get_services),
) -> DesignResponse:
    try:
        design = await services.designs.get_design(design_id)
        return DesignResponse.model_validate(design)
    except PrintflowError as e:
        raise http_error(e)


@design_router.get(
    "/{design_id}/lineage",
    response_model=LineageResponse,
    summary="Get a design's version chain",
)
async def get_design_lineage(
    design_id: uuid.UUID,
    services: Services = Depends(get_services),
) -> LineageResponse:
    try:
        chain = await services.designs.lineage(design_id)
        return LineageResponse(
            design_id=design_id,
            versions=[DesignResponse.model_validate(design) for design in chain],
        )
    except PrintflowError as e:
        raise http_error(e)


@design_router.post(
    "/{design_id}/render",
    response_model=SubmitRenderResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a design for rendering",
    description="Idempotent: resubmitting returns the existing job while it is active or completed",
)
async def submit_render(
    design_id: uuid.UUID,
    http_request: Request,
    request: Optional[SubmitRenderRequest] = None,
    services: Services = Depends(get_services),
) -> SubmitRenderResponse:
    operator = bool(request and request.operator)
    try:
        await enforce_rate_limit(
            services,
            client_identifier(http_request),
            "render_submit",
            services.settings.rate_limit_render_submit,
        )
        if operator:
            result = await services.renders.resubmit(design_id)
        else:
            result = await services.renders.submit(design_id)
        metrics.record_render_submission("created" if result.created else "deduplicated")

        logger.info(
            "api_submit_render_success",
            design_id=str(design_id),
            job_id=str(result.job.id),
            created=result.created,
            operator=operator,
        )
        return SubmitRenderResponse(
            job=RenderJobResponse.model_validate(result.job), created=result.created
        )

    except ExhaustedRetries as e:
        metrics.record_render_submission("exhausted")
        logger.warning("api_submit_render_exhausted", design_id=str(design_id), attempts=e.attempts)
        raise http_error(e)

    except PrintflowError as e:
        logger.warning("api_submit_render_rejected", design_id=str(design_id), error=str(e))
        raise http_error(e)

    except Exception as e:
        raise _unexpected("api_submit_render_unexpected_error", e, design_id=str(design_id))


@render_router.post(
    "/claim",
    response_model=ClaimRenderJobResponse,
    summary="Claim the next pending render job",
)
async def claim_render_job(
    request: Optional[ClaimRenderJobRequest] = None,
    services: Services = Depends(get_services),
) -> ClaimRenderJobResponse:
    worker_id = request.worker_id if request else None
    job = await services.renders.claim(worker_id)
    if job is None:
        return ClaimRenderJobResponse()

    metrics.record_render_claimed()
    descriptor = RenderJobDescriptor.from_job(job)
    return ClaimRenderJobResponse(
        job=RenderJobResponse.model_validate(job), params=descriptor.params
    )


@render_router.post(
    "/{job_id}/result",
    response_model=RenderResultResponse,
    summary="Report a render outcome",
)
async def report_render_result(
    job_id: uuid.UUID,
    request: RenderResultRequest,
    services: Services = Depends(get_services),
) -> RenderResultResponse:
    try:
        result = await services.renders.report(
            RenderOutcome(
                job_id=job_id,
                success=request.success,
                artifact_url=request.artifact_url,
                failure_reason=request.failure_reason,
            )
        )
        if result.applied:
            metrics.record_render_finished(result.job.status.value, exhausted=result.exhausted)

        return RenderResultResponse(
            job=RenderJobResponse.model_validate(result.job),
            applied=result.applied,
            exhausted=result.exhausted,
            retry_job=(
                RenderJobResponse.model_validate(result.retry_job) if result.retry_job else None
            ),
        )

    except PrintflowError as e:
        logger.warning("api_render_result_rejected", job_id=str(job_id), error=str(e))
        raise http_error(e)


@render_router.post(
    "/{job_id}/cancel",
    response_model=CancelRenderJobResponse,
    summary="Cancel a render job",
)
async def cancel_render_job(
    job_id: uuid.UUID,
    services: Services = Depends(get_services),
) -> CancelRenderJobResponse:
    try:
        result = await services.renders.cancel(job_id)
        if result.cancelled:
            metrics.record_render_finished("cancelled")
        return CancelRenderJobResponse(
            job=RenderJobResponse.model_validate(result.job),
            cancelled=result.cancelled,
            already_completed=result.already_completed,
        )
    except PrintflowError as e:
        raise http_error(e)


@order_router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an order",
    description="Price is computed from the template and frozen onto the order",
)
async def create_order(
    request: CreateOrderRequest,
    services: Services = Depends(get_services),
) -> OrderResponse:
    try:
        await enforce_rate_limit(
            services,
            str(request.user_id),
            "order_create",
            services.settings.rate_limit_order_create,
        )
        order = await services.orders.create_order(
            user_id=request.user_id,
            design_id=request.design_id,
            quantity=request.quantity,
            shipping_address=request.shipping_address,
            discount_rules=request.discount_rules,
            shipping_method=request.shipping_method,
            payment_intent_id=request.payment_intent_id,
        )
        metrics.record_order_created(order.amount)

        logger.info(
            "api_create_order_success",
            order_id=str(order.id),
            order_number=order.order_number,
            amount=order.amount,
        )
        return OrderResponse.model_validate(order)

    except PrintflowError as e:
        logger.warning("api_create_order_rejected", error=str(e))
        raise http_error(e)

    except Exception as e:
        raise _unexpected("api_create_order_unexpected_error", e)


@order_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get an order",
)
async def get_order(
    order_id: uuid.UUID,
    services: Services = Depends(get_services),
) -> OrderResponse:
    try:
        return OrderResponse.model_validate(await services.orders.get_order(order_id))
    except PrintflowError as e:
        raise http_error(e)


@order_router.post(
    "/{order_id}/events",
    response_model=OrderTransitionResponse,
    summary="Apply an order event",
    description="Rejected transitions leave the order unchanged and report the reason",
)
async def apply_order_event(
    order_id: uuid.UUID,
    request: OrderEventRequest,
    services: Services = Depends(get_services),
) -> OrderTransitionResponse:
    try:
        event = parse_enum(OrderEvent, request.event, "event")
        result = await services.orders.apply_event(order_id, event)
        metrics.record_order_transition(event.value, result.applied)

        reason = result.outcome.reason if isinstance(result.outcome, IllegalTransition) else None
        return OrderTransitionResponse(
            order=OrderResponse.model_validate(result.order),
            applied=result.applied,
            reason=reason,
        )

    except PrintflowError as e:
        logger.warning("api_order_event_rejected", order_id=str(order_id), error=str(e))
        raise http_error(e)


@webhook_router.post(
    "/payments",
    response_model=WebhookResponse,
    summary="Payment gateway event",
    description="Acknowledged with 200 once the event is recorded, whatever its outcome",
)
async def payment_webhook(
    request: WebhookEventRequest,
    http_request: Request,
    services: Services = Depends(get_services),
) -> WebhookResponse:
    return await _ingest(
        services,
        client_identifier(http_request),
        request.event_id,
        request.event_type,
        request.payload,
    )


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Verifies the Stripe signature when a signing secret is configured",
)
async def stripe_webhook(
    http_request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    services: Services = Depends(get_services),
) -> WebhookResponse:
    body = await http_request.body()
    try:
        event_id, event_type, document = services.webhooks.parse_stripe_event(
            body, stripe_signature
        )
    except PrintflowError as e:
        logger.error("api_webhook_error", error=str(e))
        raise http_error(e)

    return await _ingest(
        services, client_identifier(http_request), event_id, event_type, document
    )


async def _ingest(
    services: Services, identifier: str, event_id: str, event_type: str, payload: Any
) -> WebhookResponse:
    start_time = time.time()
    try:
        await enforce_rate_limit(
            services, identifier, "webhook", services.settings.rate_limit_webhook
        )
        logger.info("api_webhook_received", event_id=event_id, event_type=event_type)

        result = await services.webhooks.ingest(event_id, event_type, payload)

        duration = time.time() - start_time
        metrics.record_webhook_event(event_type, result.outcome.value, duration)
        return WebhookResponse(**result.as_dict(), replayed=result.replayed)

    except PrintflowError as e:
        logger.warning("api_webhook_rejected", event_id=event_id, error=str(e))
        raise http_error(e)

    except Exception as e:
        raise _unexpected("api_webhook_unexpected_error", e, event_id=event_id)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await services.health.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness check",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Readiness check endpoint."""
    try:
        result = await services.health.readiness()
        if result["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
        return result
    except HTTPException:
        raise
    except Exception as e:
        logger.error("readiness_check_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "unhealthy", "error": str(e)},
        )


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
