"""
Payment webhook processor.

Gateway events are delivered at least once and in any order. Each event id
is recorded exactly once in ``payment_events`` together with the outcome of
processing it, in a single transaction, so a redelivery gets the stored
result back and never mutates the order a second time.
"""
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import stripe
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from printflow.config import Settings, get_settings
from printflow.core.errors import ValidationError, WebhookSignatureError
from printflow.core.orders import (
    IllegalTransition,
    OrderEvent,
    OrderService,
    OrderTransitionResult,
)
from printflow.database.connection import get_session_factory
from printflow.database.models import Order, OrderStatus, PaymentEvent, PaymentStatus, utc_now
from printflow.database.upsert import insert_if_absent

logger = structlog.get_logger(__name__)

EVENT_TYPE_MAP: Dict[str, OrderEvent] = {
    "payment_intent.processing": OrderEvent.PAYMENT_PROCESSING,
    "payment_intent.succeeded": OrderEvent.PAYMENT_SUCCEEDED,
    "checkout.session.completed": OrderEvent.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": OrderEvent.PAYMENT_FAILED,
    "payment_intent.canceled": OrderEvent.PAYMENT_CANCELED,
    "charge.refunded": OrderEvent.REFUND,
}

_REFUND_EVENTS = (OrderEvent.REFUND, OrderEvent.PARTIAL_REFUND)

# Widths of the columns these identifiers are stored in
EVENT_ID_MAX_LENGTH = 255
EVENT_TYPE_MAX_LENGTH = 100
PAYMENT_INTENT_MAX_LENGTH = 255


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    APPLIED_OUT_OF_ORDER = "applied_out_of_order"
    IGNORED_DUPLICATE = "ignored_duplicate"
    IGNORED_ILLEGAL_TRANSITION = "ignored_illegal_transition"
    IGNORED_UNHANDLED_TYPE = "ignored_unhandled_type"
    ORDER_NOT_FOUND = "order_not_found"
    MALFORMED_PAYLOAD = "malformed_payload"


class MalformedPayload(Exception):
    """Payload is unusable; recorded as an outcome, never raised to callers."""

    pass


@dataclass(frozen=True)
class ProcessingResult:
    event_id: str
    event_type: str
    outcome: WebhookOutcome
    order_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    replayed: bool = False

    def as_dict(self) -> Dict[str, Any]:
        """Document stored as PaymentEvent.processing_result."""
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "outcome": self.outcome.value,
            "order_id": self.order_id,
            "details": self.details,
        }

    @classmethod
    def from_record(cls, record: PaymentEvent) -> "ProcessingResult":
        stored = record.processing_result or {}
        return cls(
            event_id=record.event_id,
            event_type=record.event_type,
            outcome=WebhookOutcome(stored.get("outcome", record.outcome)),
            order_id=stored.get("order_id"),
            details=stored.get("details", {}),
            replayed=True,
        )


def _unwrap_object(payload: Any) -> Dict[str, Any]:
    """Accept either the bare data object or a full ``{"data": {"object": ...}}`` event."""
    if not isinstance(payload, dict):
        raise MalformedPayload("payload must be an object")
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("object"), dict):
        return data["object"]
    return payload


def _payment_intent_id(event_type: str, obj: Dict[str, Any]) -> Optional[str]:
    if event_type.startswith("payment_intent."):
        intent = obj.get("id")
    else:
        intent = obj.get("payment_intent")
        if isinstance(intent, dict):
            intent = intent.get("id")
    if intent is None:
        return None
    if not isinstance(intent, str) or len(intent) > PAYMENT_INTENT_MAX_LENGTH:
        raise MalformedPayload("payment intent id must be a string of at most 255 characters")
    return intent


def _order_references(obj: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    metadata = obj.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise MalformedPayload("metadata must be an object")
    return metadata.get("order_id"), metadata.get("order_number")


def _refund_event(obj: Dict[str, Any], order: Order) -> OrderEvent:
    if obj.get("refunded") is True:
        return OrderEvent.REFUND
    refunded = obj.get("amount_refunded")
    if isinstance(refunded, bool) or not isinstance(refunded, int) or refunded < 0:
        raise MalformedPayload("charge.refunded requires a non-negative integer amount_refunded")
    total = obj.get("amount", order.amount)
    if isinstance(total, bool) or not isinstance(total, int):
        raise MalformedPayload("amount must be an integer")
    return OrderEvent.REFUND if refunded >= total else OrderEvent.PARTIAL_REFUND


def _transition_details(result: OrderTransitionResult) -> Dict[str, Any]:
    outcome = result.outcome
    if isinstance(outcome, IllegalTransition):
        return {
            "order_event": outcome.event.value,
            "status": outcome.status.value,
            "payment_status": outcome.payment_status.value,
            "reason": outcome.reason,
        }
    return {
        "order_event": outcome.event.value,
        "from_status": outcome.from_status.value,
        "to_status": outcome.to_status.value,
        "from_payment_status": outcome.from_payment_status.value,
        "to_payment_status": outcome.to_payment_status.value,
    }


class PaymentWebhookProcessor:
    """Records gateway events and drives orders through the state machine."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        order_service: Optional[OrderService] = None,
        webhook_secret: Optional[str] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.order_service = order_service or OrderService(
            self.session_factory, settings=self.settings
        )
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else self.settings.stripe_webhook_secret
        )

    def parse_stripe_event(
        self, payload: bytes, signature: Optional[str]
    ) -> Tuple[str, str, Dict[str, Any]]:
        """
        Verify (when a signing secret is configured) and decode a Stripe event.

        Returns:
            Tuple of (event_id, event_type, event document)

        Raises:
            WebhookSignatureError: Missing or invalid signature
            ValidationError: Body is not a Stripe event document
        """
        if self.webhook_secret:
            if not signature:
                raise WebhookSignatureError("Missing Stripe-Signature header")
            try:
                stripe.Webhook.construct_event(
                    payload=payload, sig_header=signature, secret=self.webhook_secret
                )
            except stripe.SignatureVerificationError as e:
                logger.error("webhook_signature_verification_failed", error=str(e))
                raise WebhookSignatureError(f"Invalid webhook signature: {e}")
            except ValueError as e:
                raise ValidationError(f"Invalid webhook body: {e}")

        try:
            document = json.loads(payload)
        except ValueError as e:
            raise ValidationError(f"Invalid webhook body: {e}")
        if not isinstance(document, dict):
            raise ValidationError("Webhook body must be an object")
        return document.get("id", ""), document.get("type", ""), document

    async def ingest(self, event_id: str, event_type: str, payload: Any) -> ProcessingResult:
        """
        Record and process one gateway event.

        Args:
            event_id: Gateway event id; the deduplication key
            event_type: Gateway event type, e.g. ``payment_intent.succeeded``
            payload: Event document

        Returns:
            ProcessingResult: Outcome of this event. ``replayed`` is True when
            the event id had already been processed.

        Raises:
            ValidationError: Blank or oversized event id or type; nothing is recorded
        """
        if not isinstance(event_id, str) or not event_id.strip():
            raise ValidationError("event_id is required", field="event_id")
        if not isinstance(event_type, str) or not event_type.strip():
            raise ValidationError("event_type is required", field="event_type")
        if len(event_id) > EVENT_ID_MAX_LENGTH:
            raise ValidationError(
                f"event_id must be at most {EVENT_ID_MAX_LENGTH} characters", field="event_id"
            )
        if len(event_type) > EVENT_TYPE_MAX_LENGTH:
            raise ValidationError(
                f"event_type must be at most {EVENT_TYPE_MAX_LENGTH} characters", field="event_type"
            )

        async with self.session_factory() as session, session.begin():
            created = await insert_if_absent(
                session,
                PaymentEvent,
                {
                    "id": uuid.uuid4(),
                    "event_id": event_id,
                    "event_type": event_type,
                    "payload": payload,
                    "processed": False,
                    "created_at": utc_now(),
                },
            )
            record = (
                await session.execute(
                    select(PaymentEvent)
                    .where(PaymentEvent.event_id == event_id)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()

            if not created and record.processed:
                logger.info(
                    "webhook_event_replayed",
                    event_id=event_id,
                    outcome=record.outcome,
                )
                return ProcessingResult.from_record(record)

            result = await self._process(session, event_id, event_type, payload)

            record.outcome = result.outcome.value
            record.processing_result = result.as_dict()
            record.order_id = uuid.UUID(result.order_id) if result.order_id else None
            record.processed = True
            record.processed_at = utc_now()

        log = logger.warning if result.outcome in (
            WebhookOutcome.APPLIED_OUT_OF_ORDER,
            WebhookOutcome.ORDER_NOT_FOUND,
            WebhookOutcome.MALFORMED_PAYLOAD,
        ) else logger.info
        log(
            "webhook_event_recorded",
            event_id=event_id,
            event_type=event_type,
            outcome=result.outcome.value,
            order_id=result.order_id,
        )
        return result

    async def _process(
        self, session: AsyncSession, event_id: str, event_type: str, payload: Any
    ) -> ProcessingResult:
        def result(outcome: WebhookOutcome, order_id=None, **details: Any) -> ProcessingResult:
            return ProcessingResult(
                event_id=event_id,
                event_type=event_type,
                outcome=outcome,
                order_id=str(order_id) if order_id else None,
                details=details,
            )

        event = EVENT_TYPE_MAP.get(event_type)
        if event is None:
            return result(WebhookOutcome.IGNORED_UNHANDLED_TYPE)

        try:
            obj = _unwrap_object(payload)
            order_id, order_number = _order_references(obj)
            intent_id = _payment_intent_id(event_type, obj)
            order = await OrderService.resolve_order(session, order_id, order_number, intent_id)
            if order is None:
                return result(
                    WebhookOutcome.ORDER_NOT_FOUND,
                    order_ref=order_id or order_number,
                    payment_intent_id=intent_id,
                )
            if event_type == "checkout.session.completed" and obj.get("payment_status") == "unpaid":
                # Delayed payment methods complete checkout before funds arrive
                event = OrderEvent.PAYMENT_PROCESSING
            elif event in _REFUND_EVENTS:
                event = _refund_event(obj, order)
        except MalformedPayload as e:
            return result(WebhookOutcome.MALFORMED_PAYLOAD, error=str(e))

        target_id = order.id
        applied = await self.order_service.apply_event_in_session(session, target_id, event)
        outcome = applied.outcome

        if (
            isinstance(outcome, IllegalTransition)
            and event in _REFUND_EVENTS
            and not outcome.already_applied
            and outcome.status == OrderStatus.PENDING
            and outcome.payment_status
            in (PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.FAILED)
        ):
            # Refund overtook the payment event: the payment must have succeeded
            implied = await self.order_service.apply_event_in_session(
                session, target_id, OrderEvent.PAYMENT_SUCCEEDED
            )
            refund = await self.order_service.apply_event_in_session(session, target_id, event)
            await self._attach_payment_intent(session, target_id, intent_id)
            return result(
                WebhookOutcome.APPLIED_OUT_OF_ORDER,
                target_id,
                implied=_transition_details(implied),
                **_transition_details(refund),
            )

        if isinstance(outcome, IllegalTransition):
            kind = (
                WebhookOutcome.IGNORED_DUPLICATE
                if outcome.already_applied
                else WebhookOutcome.IGNORED_ILLEGAL_TRANSITION
            )
            return result(kind, target_id, **_transition_details(applied))

        await self._attach_payment_intent(session, target_id, intent_id)
        return result(WebhookOutcome.APPLIED, target_id, **_transition_details(applied))

    @staticmethod
    async def _attach_payment_intent(
        session: AsyncSession, order_id: uuid.UUID, intent_id: Optional[str]
    ) -> None:
        if not intent_id:
            return
        await session.execute(
            update(Order)
            .where(Order.id == order_id, Order.stripe_payment_intent_id.is_(None))
            .values(stripe_payment_intent_id=intent_id)
            .execution_options(synchronize_session=False)
        )

    async def get_event(self, event_id: str) -> Optional[ProcessingResult]:
        async with self.session_factory() as session:
            stmt = select(PaymentEvent).where(PaymentEvent.event_id == event_id)
            record = (await session.execute(stmt)).scalar_one_or_none()
        if record is None or not record.processed:
            return None
        return ProcessingResult.from_record(record)
