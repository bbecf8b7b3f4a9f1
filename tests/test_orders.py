"""
Tests for order creation and the order state machine.
"""
import asyncio
import re
import uuid
from datetime import datetime
from itertools import product

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from printflow.core import orders as orders_module
from printflow.core.errors import NotFoundError, StaleOrderState, ValidationError
from printflow.core.orders import (
    IllegalTransition,
    OrderEvent,
    OrderService,
    Transition,
    apply_order_event,
    generate_order_number,
)
from printflow.core.users import UserDirectory
from printflow.database.models import Design, Order, OrderStatus, PaymentStatus, Template, User

from .conftest import SHIPPING_ADDRESS


class TestTransitionTable:
    """The pure transition function."""

    @pytest.mark.unit
    def test_payment_succeeded_confirms(self) -> None:
        outcome = apply_order_event(
            OrderStatus.PENDING, PaymentStatus.PENDING, OrderEvent.PAYMENT_SUCCEEDED
        )

        assert isinstance(outcome, Transition)
        assert outcome.to_status == OrderStatus.CONFIRMED
        assert outcome.to_payment_status == PaymentStatus.PAID
        assert outcome.changed is True

    @pytest.mark.unit
    def test_payment_succeeded_after_failed_attempt(self) -> None:
        outcome = apply_order_event(
            OrderStatus.PENDING, PaymentStatus.FAILED, OrderEvent.PAYMENT_SUCCEEDED
        )

        assert isinstance(outcome, Transition)
        assert outcome.to_payment_status == PaymentStatus.PAID

    @pytest.mark.unit
    def test_redelivered_payment_is_already_applied(self) -> None:
        outcome = apply_order_event(
            OrderStatus.CONFIRMED, PaymentStatus.PAID, OrderEvent.PAYMENT_SUCCEEDED
        )

        assert isinstance(outcome, IllegalTransition)
        assert outcome.already_applied is True
        assert outcome.reason == "payment_succeeded already applied"

    @pytest.mark.unit
    def test_ship_before_processing_is_illegal(self) -> None:
        outcome = apply_order_event(OrderStatus.PENDING, PaymentStatus.PENDING, OrderEvent.SHIP)

        assert isinstance(outcome, IllegalTransition)
        assert outcome.already_applied is False
        assert outcome.reason == "ship not allowed from (pending, pending)"

    @pytest.mark.unit
    def test_cancel_after_shipping_is_illegal(self) -> None:
        outcome = apply_order_event(OrderStatus.SHIPPED, PaymentStatus.PAID, OrderEvent.CANCEL)

        assert isinstance(outcome, IllegalTransition)

    @pytest.mark.unit
    def test_partial_refund_keeps_status(self) -> None:
        outcome = apply_order_event(
            OrderStatus.DELIVERED, PaymentStatus.PAID, OrderEvent.PARTIAL_REFUND
        )

        assert isinstance(outcome, Transition)
        assert outcome.to_status == OrderStatus.DELIVERED
        assert outcome.to_payment_status == PaymentStatus.PARTIALLY_REFUNDED

    @pytest.mark.unit
    def test_full_refund_after_partial(self) -> None:
        outcome = apply_order_event(
            OrderStatus.DELIVERED, PaymentStatus.PARTIALLY_REFUNDED, OrderEvent.REFUND
        )

        assert isinstance(outcome, Transition)
        assert outcome.to_status == OrderStatus.REFUNDED
        assert outcome.to_payment_status == PaymentStatus.REFUNDED

    @pytest.mark.unit
    def test_refund_of_unpaid_order_is_illegal(self) -> None:
        outcome = apply_order_event(OrderStatus.PENDING, PaymentStatus.PENDING, OrderEvent.REFUND)

        assert isinstance(outcome, IllegalTransition)
        assert outcome.already_applied is False

    @pytest.mark.unit
    def test_fulfillment_requires_payment(self) -> None:
        outcome = apply_order_event(
            OrderStatus.CONFIRMED, PaymentStatus.REFUNDED, OrderEvent.START_PROCESSING
        )

        assert isinstance(outcome, IllegalTransition)

    @pytest.mark.unit
    def test_every_combination_resolves(self) -> None:
        """The table is total: every (state, event) yields a value, never an exception."""
        for status, payment_status, event in product(OrderStatus, PaymentStatus, OrderEvent):
            outcome = apply_order_event(status, payment_status, event)

            assert isinstance(outcome, (Transition, IllegalTransition))
            if isinstance(outcome, Transition):
                assert outcome.from_status == status
                assert outcome.from_payment_status == payment_status

    @pytest.mark.unit
    def test_terminal_states_reject_fulfillment(self) -> None:
        for status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
            for event in (OrderEvent.START_PROCESSING, OrderEvent.SHIP, OrderEvent.DELIVER):
                outcome = apply_order_event(status, PaymentStatus.PAID, event)
                assert isinstance(outcome, IllegalTransition)


class TestOrderNumber:

    @pytest.mark.unit
    def test_format(self) -> None:
        number = generate_order_number(datetime(2025, 3, 9, 12, 0, 0))

        assert re.fullmatch(r"PF-20250309-[0-9A-F]{8}", number)

    @pytest.mark.unit
    def test_unique(self) -> None:
        numbers = {generate_order_number() for _ in range(100)}

        assert len(numbers) == 100


class TestCreateOrder:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_order_freezes_price(
        self, orders: OrderService, user: User, ready_design: Design
    ) -> None:
        order = await orders.create_order(user.id, ready_design.id, 3, SHIPPING_ADDRESS)

        assert re.fullmatch(r"PF-\d{8}-[0-9A-F]{8}", order.order_number)
        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert order.base_unit_price == 3000
        assert order.subtotal == 9000
        assert order.shipping_fee == 0
        assert order.amount == 9000
        assert order.amount_breakdown["applied_rules"] == ["free_shipping_threshold"]
        assert order.shipping_name == "Taro Yamada"
        assert order.shipping_postal_code == "150-0001"
        assert order.shipping_info["city"] == "Shibuya-ku"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_order_with_discount(
        self, orders: OrderService, user: User, ready_design: Design
    ) -> None:
        order = await orders.create_order(
            user.id,
            ready_design.id,
            2,
            SHIPPING_ADDRESS,
            discount_rules=[{"code": "WELCOME", "kind": "fixed", "value": 500}],
        )

        assert order.subtotal == 6000
        assert order.discount_total == 500
        assert order.subtotal_after_discount == 5500
        assert order.shipping_fee == 800
        assert order.amount == 6300

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_price_not_recomputed_after_catalog_change(
        self,
        orders: OrderService,
        session_factory: async_sessionmaker[AsyncSession],
        user: User,
        template: Template,
        ready_design: Design,
    ) -> None:
        order = await orders.create_order(user.id, ready_design.id, 1, SHIPPING_ADDRESS)
        async with session_factory() as session, session.begin():
            stored = await session.get(Template, template.id)
            stored.base_unit_price = 9999

        reloaded = await orders.get_order(order.id)

        assert reloaded.base_unit_price == 3000
        assert reloaded.amount == 3800

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_draft_design_rejected(
        self, orders: OrderService, user: User, draft_design: Design
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await orders.create_order(user.id, draft_design.id, 1, SHIPPING_ADDRESS)

        assert exc_info.value.field == "design_id"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_design_of_other_user_rejected(
        self, orders: OrderService, users: UserDirectory, ready_design: Design
    ) -> None:
        other = (await users.register_user("hanako@example.com", "Hanako")).user

        with pytest.raises(ValidationError):
            await orders.create_order(other.id, ready_design.id, 1, SHIPPING_ADDRESS)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_input_persists_nothing(
        self,
        orders: OrderService,
        session_factory: async_sessionmaker[AsyncSession],
        user: User,
        ready_design: Design,
    ) -> None:
        bad_address = {**SHIPPING_ADDRESS, "postal_code": "12-34"}
        with pytest.raises(ValidationError):
            await orders.create_order(user.id, ready_design.id, 1, bad_address)
        with pytest.raises(ValidationError):
            await orders.create_order(user.id, ready_design.id, 0, SHIPPING_ADDRESS)
        with pytest.raises(ValidationError):
            await orders.create_order(
                user.id, ready_design.id, 1, SHIPPING_ADDRESS, discount_rules=["10%"]
            )

        async with session_factory() as session:
            count = (await session.execute(select(func.count()).select_from(Order))).scalar_one()
        assert count == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_references(
        self, orders: OrderService, user: User, ready_design: Design
    ) -> None:
        with pytest.raises(NotFoundError):
            await orders.create_order(uuid.uuid4(), ready_design.id, 1, SHIPPING_ADDRESS)
        with pytest.raises(NotFoundError):
            await orders.create_order(user.id, uuid.uuid4(), 1, SHIPPING_ADDRESS)
        with pytest.raises(NotFoundError):
            await orders.get_order(uuid.uuid4())


class TestApplyEvent:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_lifecycle(
        self, orders: OrderService, user: User, ready_design: Design
    ) -> None:
        order = await orders.create_order(user.id, ready_design.id, 1, SHIPPING_ADDRESS)

        for event in (
            OrderEvent.PAYMENT_SUCCEEDED,
            OrderEvent.START_PROCESSING,
            OrderEvent.SHIP,
            OrderEvent.DELIVER,
        ):
            result = await orders.apply_event(order.id, event)
            assert result.applied is True

        delivered = result.order
        assert delivered.status == OrderStatus.DELIVERED
        assert delivered.payment_status == PaymentStatus.PAID
        assert delivered.confirmed_at is not None
        assert delivered.shipped_at is not None
        assert delivered.delivered_at is not None
        assert delivered.cancelled_at is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_illegal_event_leaves_order_unchanged(
        self, orders: OrderService, user: User, ready_design: Design
    ) -> None:
        order = await orders.create_order(user.id, ready_design.id, 1, SHIPPING_ADDRESS)

        result = await orders.apply_event(order.id, OrderEvent.SHIP)

        assert result.applied is False
        assert isinstance(result.outcome, IllegalTransition)
        reloaded = await orders.get_order(order.id)
        assert reloaded.status == OrderStatus.PENDING
        assert reloaded.updated_at == order.updated_at

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_sets_timestamp(
        self, orders: OrderService, user: User, ready_design: Design
    ) -> None:
        order = await orders.create_order(user.id, ready_design.id, 1, SHIPPING_ADDRESS)

        result = await orders.apply_event(order.id, OrderEvent.CANCEL)

        assert result.order.status == OrderStatus.CANCELLED
        assert result.order.cancelled_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order(self, orders: OrderService) -> None:
        with pytest.raises(NotFoundError):
            await orders.apply_event(uuid.uuid4(), OrderEvent.CANCEL)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_state_after_retries(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        user: User,
        ready_design: Design,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """
        A compare-and-set that never matches (the order keeps moving) gives up
        with StaleOrderState instead of overwriting.
        """
        orders = OrderService(session_factory, cas_retries=2)
        order = await orders.create_order(user.id, ready_design.id, 1, SHIPPING_ADDRESS)

        def stale_view(status, payment_status, event):
            # Pretend the order was read in a state it is no longer in
            return Transition(
                event=event,
                from_status=OrderStatus.CONFIRMED,
                from_payment_status=PaymentStatus.PAID,
                to_status=OrderStatus.PROCESSING,
                to_payment_status=PaymentStatus.PAID,
            )

        monkeypatch.setattr(orders_module, "apply_order_event", stale_view)

        with pytest.raises(StaleOrderState) as exc_info:
            await orders.apply_event(order.id, OrderEvent.START_PROCESSING)

        assert exc_info.value.attempts == 2
        monkeypatch.undo()
        reloaded = await orders.get_order(order.id)
        assert reloaded.status == OrderStatus.PENDING

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_payment_events_apply_once(
        self, orders: OrderService, user: User, ready_design: Design
    ) -> None:
        order = await orders.create_order(user.id, ready_design.id, 1, SHIPPING_ADDRESS)

        results = await asyncio.gather(
            *(orders.apply_event(order.id, OrderEvent.PAYMENT_SUCCEEDED) for _ in range(4))
        )

        applied = [result for result in results if result.applied]
        assert len(applied) == 1
        for result in results:
            if not result.applied:
                assert result.outcome.already_applied is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_find_order_for_payment(
        self, orders: OrderService, user: User, ready_design: Design
    ) -> None:
        order = await orders.create_order(
            user.id, ready_design.id, 1, SHIPPING_ADDRESS, payment_intent_id="pi_123"
        )

        assert (await orders.find_order_for_payment(order_id=str(order.id))).id == order.id
        assert (await orders.find_order_for_payment(order_number=order.order_number)).id == order.id
        assert (await orders.find_order_for_payment(payment_intent_id="pi_123")).id == order.id
        assert (
            await orders.find_order_for_payment(order_id="not-a-uuid", payment_intent_id="pi_123")
        ).id == order.id
        assert await orders.find_order_for_payment(order_number="PF-00000000-00000000") is None
        assert await orders.find_order_for_payment() is None

