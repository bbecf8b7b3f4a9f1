"""
Order state machine.

Orders carry two axes of state, the fulfillment ``status`` and the
``payment_status``. Every event is resolved against an explicit transition
table; events that the table does not allow come back as an
``IllegalTransition`` value and leave the order untouched.

Writes are compare-and-set on ``(status, payment_status)`` so concurrent
webhook deliveries for one order serialize instead of overwriting each other.
"""
import secrets
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple, Union

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from printflow.config import Settings, get_settings
from printflow.core.errors import NotFoundError, StaleOrderState, ValidationError
from printflow.core.pricing import DiscountRule, ShippingRules, check_invariants, compute_price
from printflow.core.users import parse_shipping_address
from printflow.database.connection import get_session_factory
from printflow.database.models import (
    Design,
    DesignStatus,
    Order,
    OrderStatus,
    PaymentStatus,
    Template,
    User,
    utc_now,
)
from printflow.database.upsert import insert_if_absent

logger = structlog.get_logger(__name__)

ORDER_NUMBER_PREFIX = "PF"
ORDER_NUMBER_ATTEMPTS = 5


class OrderEvent(str, Enum):
    PAYMENT_PROCESSING = "payment_processing"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELED = "payment_canceled"
    CANCEL = "cancel"
    START_PROCESSING = "start_processing"
    SHIP = "ship"
    DELIVER = "deliver"
    REFUND = "refund"
    PARTIAL_REFUND = "partial_refund"


@dataclass(frozen=True)
class _Rule:
    from_statuses: FrozenSet[OrderStatus]
    from_payment: FrozenSet[PaymentStatus]
    to_status: Optional[OrderStatus] = None
    to_payment: Optional[PaymentStatus] = None


@dataclass(frozen=True)
class _EventTable:
    rules: Tuple[_Rule, ...]
    # States in which the event has already taken effect
    settled_statuses: FrozenSet[OrderStatus] = frozenset()
    settled_payment: FrozenSet[PaymentStatus] = frozenset()


_ANY_PAYMENT = frozenset(PaymentStatus)
_UNPAID = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.FAILED})
_PAID = frozenset({PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED})
_POST_PAYMENT = frozenset(
    {
        OrderStatus.CONFIRMED,
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    }
)

ORDER_TRANSITIONS: Dict[OrderEvent, _EventTable] = {
    OrderEvent.PAYMENT_PROCESSING: _EventTable(
        rules=(
            _Rule(
                frozenset({OrderStatus.PENDING}),
                frozenset({PaymentStatus.PENDING}),
                to_payment=PaymentStatus.PROCESSING,
            ),
        ),
        settled_payment=frozenset({PaymentStatus.PROCESSING}),
    ),
    OrderEvent.PAYMENT_SUCCEEDED: _EventTable(
        rules=(
            _Rule(
                frozenset({OrderStatus.PENDING}),
                _UNPAID,
                to_status=OrderStatus.CONFIRMED,
                to_payment=PaymentStatus.PAID,
            ),
        ),
        settled_payment=frozenset(
            {PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED}
        ),
    ),
    OrderEvent.PAYMENT_FAILED: _EventTable(
        rules=(
            _Rule(
                frozenset({OrderStatus.PENDING}),
                frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING}),
                to_payment=PaymentStatus.FAILED,
            ),
        ),
        settled_payment=frozenset({PaymentStatus.FAILED}),
    ),
    OrderEvent.PAYMENT_CANCELED: _EventTable(
        rules=(
            _Rule(
                frozenset({OrderStatus.PENDING}),
                _UNPAID,
                to_status=OrderStatus.CANCELLED,
                to_payment=PaymentStatus.FAILED,
            ),
        ),
        settled_statuses=frozenset({OrderStatus.CANCELLED}),
    ),
    OrderEvent.CANCEL: _EventTable(
        rules=(
            _Rule(
                frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING}),
                _ANY_PAYMENT,
                to_status=OrderStatus.CANCELLED,
            ),
        ),
        settled_statuses=frozenset({OrderStatus.CANCELLED}),
    ),
    OrderEvent.START_PROCESSING: _EventTable(
        rules=(_Rule(frozenset({OrderStatus.CONFIRMED}), _PAID, to_status=OrderStatus.PROCESSING),),
        settled_statuses=frozenset({OrderStatus.PROCESSING}),
    ),
    OrderEvent.SHIP: _EventTable(
        rules=(_Rule(frozenset({OrderStatus.PROCESSING}), _PAID, to_status=OrderStatus.SHIPPED),),
        settled_statuses=frozenset({OrderStatus.SHIPPED}),
    ),
    OrderEvent.DELIVER: _EventTable(
        rules=(_Rule(frozenset({OrderStatus.SHIPPED}), _PAID, to_status=OrderStatus.DELIVERED),),
        settled_statuses=frozenset({OrderStatus.DELIVERED}),
    ),
    OrderEvent.REFUND: _EventTable(
        rules=(
            _Rule(
                _POST_PAYMENT,
                _PAID,
                to_status=OrderStatus.REFUNDED,
                to_payment=PaymentStatus.REFUNDED,
            ),
        ),
        settled_payment=frozenset({PaymentStatus.REFUNDED}),
    ),
    OrderEvent.PARTIAL_REFUND: _EventTable(
        rules=(_Rule(_POST_PAYMENT, _PAID, to_payment=PaymentStatus.PARTIALLY_REFUNDED),),
        settled_payment=frozenset({PaymentStatus.REFUNDED}),
    ),
}

_STATUS_TIMESTAMPS = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


@dataclass(frozen=True)
class Transition:
    event: OrderEvent
    from_status: OrderStatus
    from_payment_status: PaymentStatus
    to_status: OrderStatus
    to_payment_status: PaymentStatus

    @property
    def changed(self) -> bool:
        return (self.from_status, self.from_payment_status) != (
            self.to_status,
            self.to_payment_status,
        )


@dataclass(frozen=True)
class IllegalTransition:
    """
    An event the transition table does not allow from the current state.

    ``already_applied`` marks events whose effect is already present, which
    is how redelivered or superseded signals show up.
    """

    event: OrderEvent
    status: OrderStatus
    payment_status: PaymentStatus
    already_applied: bool = False

    @property
    def reason(self) -> str:
        if self.already_applied:
            return f"{self.event.value} already applied"
        return (
            f"{self.event.value} not allowed from "
            f"({self.status.value}, {self.payment_status.value})"
        )


TransitionOutcome = Union[Transition, IllegalTransition]


def apply_order_event(
    status: OrderStatus, payment_status: PaymentStatus, event: OrderEvent
) -> TransitionOutcome:
    """Resolve ``event`` against the transition table. Pure; never raises."""
    table = ORDER_TRANSITIONS[event]
    for rule in table.rules:
        if status in rule.from_statuses and payment_status in rule.from_payment:
            return Transition(
                event=event,
                from_status=status,
                from_payment_status=payment_status,
                to_status=rule.to_status or status,
                to_payment_status=rule.to_payment or payment_status,
            )
    already = status in table.settled_statuses or payment_status in table.settled_payment
    return IllegalTransition(
        event=event, status=status, payment_status=payment_status, already_applied=already
    )


@dataclass(frozen=True)
class OrderTransitionResult:
    order: Order
    outcome: TransitionOutcome
    applied: bool
    attempts: int = 1


def generate_order_number(now=None) -> str:
    """PF-YYYYMMDD-XXXXXXXX with eight random hex digits."""
    now = now or utc_now()
    return f"{ORDER_NUMBER_PREFIX}-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


def _parse_discount_rules(rules: Iterable[Any]) -> Tuple[DiscountRule, ...]:
    parsed = []
    for rule in rules or ():
        if isinstance(rule, DiscountRule):
            parsed.append(rule)
        elif isinstance(rule, dict):
            parsed.append(DiscountRule.from_dict(rule))
        else:
            raise ValidationError(f"Invalid discount rule: {rule!r}", field="discount_rules")
    return tuple(parsed)


class OrderService:
    """Creates orders and drives them through the transition table."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        shipping_rules: Optional[ShippingRules] = None,
        cas_retries: Optional[int] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.shipping_rules = shipping_rules or ShippingRules(
            flat_fee=settings.shipping_flat_fee,
            free_shipping_threshold=settings.free_shipping_threshold,
        )
        self.cas_retries = cas_retries or settings.order_cas_retries

    async def create_order(
        self,
        user_id: uuid.UUID,
        design_id: uuid.UUID,
        quantity: int,
        shipping_address: Any,
        discount_rules: Iterable[Any] = (),
        shipping_method: str = "standard",
        payment_intent_id: Optional[str] = None,
    ) -> Order:
        """
        Create an order for a ready design.

        Price is computed from the template's base price and frozen onto the
        order; later catalog changes never touch it.

        Raises:
            ValidationError: Bad quantity, address or discount, or a design
                that is not ready or not owned by the user
            NotFoundError: Unknown user or design
        """
        address = parse_shipping_address(shipping_address)
        rules = _parse_discount_rules(discount_rules)
        if not shipping_method:
            raise ValidationError("shipping_method is required", field="shipping_method")

        async with self.session_factory() as session, session.begin():
            if await session.get(User, user_id) is None:
                raise NotFoundError("User", user_id)
            design = await session.get(Design, design_id)
            if design is None:
                raise NotFoundError("Design", design_id)
            if design.user_id != user_id:
                raise ValidationError("Design belongs to another user", field="design_id")
            if design.status != DesignStatus.READY:
                raise ValidationError(
                    f"Design {design_id} is {design.status.value}, not ready", field="design_id"
                )
            template = await session.get(Template, design.template_id)
            if template is None:
                raise NotFoundError("Template", design.template_id)

            breakdown = compute_price(template.base_unit_price, quantity, rules, self.shipping_rules)
            violations = check_invariants(breakdown, self.shipping_rules)
            if violations:
                raise ValidationError(f"Price breakdown rejected: {violations}")

            now = utc_now()
            order_id = uuid.uuid4()
            values: Dict[str, Any] = {
                "id": order_id,
                "user_id": user_id,
                "design_id": design_id,
                "quantity": breakdown.quantity,
                "base_unit_price": breakdown.base_unit_price,
                "subtotal": breakdown.subtotal,
                "discount_total": breakdown.discount_total,
                "subtotal_after_discount": breakdown.subtotal_after_discount,
                "shipping_fee": breakdown.shipping_fee,
                "amount": breakdown.amount,
                "amount_breakdown": breakdown.as_dict(),
                "shipping_name": address.name,
                "shipping_postal_code": address.postal_code,
                "shipping_pref_code": address.pref_code,
                "shipping_pref_name": address.prefecture_name,
                "shipping_city": address.city,
                "shipping_address_line": address.address_line,
                "shipping_phone": address.phone,
                "shipping_method": shipping_method,
                "shipping_info": address.model_dump(),
                "status": OrderStatus.PENDING,
                "payment_status": PaymentStatus.PENDING,
                "stripe_payment_intent_id": payment_intent_id,
                "ordered_at": now,
                "created_at": now,
                "updated_at": now,
            }
            for _ in range(ORDER_NUMBER_ATTEMPTS):
                values["order_number"] = generate_order_number(now)
                if await insert_if_absent(session, Order, values):
                    break
                logger.warning("order_number_collision", order_number=values["order_number"])
            else:
                raise RuntimeError("Could not allocate a unique order number")

            order = await session.get(Order, order_id)

        logger.info(
            "order_created",
            order_id=str(order_id),
            order_number=order.order_number,
            amount=order.amount,
            applied_rules=list(breakdown.applied_rules),
        )
        return order

    async def get_order(self, order_id: uuid.UUID) -> Order:
        async with self.session_factory() as session:
            order = await session.get(Order, order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def apply_event(self, order_id: uuid.UUID, event: OrderEvent) -> OrderTransitionResult:
        """
        Apply ``event`` to an order with compare-and-set.

        Raises:
            NotFoundError: Unknown order
            StaleOrderState: State kept changing across every retry
        """
        async with self.session_factory() as session, session.begin():
            result = await self.apply_event_in_session(session, order_id, event)
        return result

    async def apply_event_in_session(
        self, session: AsyncSession, order_id: uuid.UUID, event: OrderEvent
    ) -> OrderTransitionResult:
        """Same as apply_event, inside a transaction the caller owns."""
        for attempt in range(1, self.cas_retries + 1):
            order = await session.get(Order, order_id, populate_existing=True)
            if order is None:
                raise NotFoundError("Order", order_id)

            outcome = apply_order_event(order.status, order.payment_status, event)
            if isinstance(outcome, IllegalTransition):
                logger.info(
                    "order_transition_rejected",
                    order_id=str(order_id),
                    order_event=event.value,
                    reason=outcome.reason,
                )
                return OrderTransitionResult(order, outcome, applied=False, attempts=attempt)

            now = utc_now()
            values: Dict[str, Any] = {
                "status": outcome.to_status,
                "payment_status": outcome.to_payment_status,
                "updated_at": now,
            }
            if outcome.to_status != outcome.from_status and outcome.to_status in _STATUS_TIMESTAMPS:
                values[_STATUS_TIMESTAMPS[outcome.to_status]] = now

            cas = await session.execute(
                update(Order)
                .where(
                    Order.id == order_id,
                    Order.status == outcome.from_status,
                    Order.payment_status == outcome.from_payment_status,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if cas.rowcount == 1:
                order = await session.get(Order, order_id, populate_existing=True)
                logger.info(
                    "order_transition_applied",
                    order_id=str(order_id),
                    order_event=event.value,
                    from_status=outcome.from_status.value,
                    to_status=outcome.to_status.value,
                    from_payment_status=outcome.from_payment_status.value,
                    to_payment_status=outcome.to_payment_status.value,
                )
                return OrderTransitionResult(order, outcome, applied=True, attempts=attempt)

            logger.warning("order_state_stale", order_id=str(order_id), attempt=attempt)

        raise StaleOrderState(order_id, self.cas_retries)

    async def find_order_for_payment(
        self,
        order_id: Optional[str] = None,
        order_number: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
    ) -> Optional[Order]:
        async with self.session_factory() as session:
            return await self.resolve_order(session, order_id, order_number, payment_intent_id)

    @staticmethod
    async def resolve_order(
        session: AsyncSession,
        order_id: Optional[str] = None,
        order_number: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
    ) -> Optional[Order]:
        """
        Find the order a payment refers to.

        Tried in order: explicit order id, order number, then the stored
        payment intent id. A malformed order id is skipped, not raised.
        """
        if order_id:
            try:
                order = await session.get(Order, uuid.UUID(str(order_id)))
            except ValueError:
                order = None
            if order is not None:
                return order
        if order_number:
            stmt = select(Order).where(Order.order_number == order_number)
            order = (await session.execute(stmt)).scalar_one_or_none()
            if order is not None:
                return order
        if payment_intent_id:
            stmt = (
                select(Order)
                .where(Order.stripe_payment_intent_id == payment_intent_id)
                .order_by(Order.created_at.desc())
                .limit(1)
            )
            return (await session.execute(stmt)).scalar_one_or_none()
        return None
