"""
Pricing engine.

Pure and deterministic: the same inputs always produce the same breakdown,
so a stored ``amount_breakdown`` can be replayed and audited later. All
amounts are integers in the minor currency unit.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from printflow.core.errors import ValidationError, parse_enum

FREE_SHIPPING_RULE = "free_shipping_threshold"
FLAT_SHIPPING_RULE = "flat_shipping_fee"


class DiscountKind(str, Enum):
    FIXED = "fixed"
    PERCENT = "percent"


@dataclass(frozen=True)
class DiscountRule:
    """
    A discount applied to the subtotal.

    ``value`` is an amount in the minor unit for FIXED, or a whole percent
    (0-100) for PERCENT. The rule only applies once the subtotal reaches
    ``min_subtotal``.
    """

    code: str
    kind: DiscountKind
    value: int
    min_subtotal: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> DiscountRule:
        try:
            code = str(data["code"])
            value = data["value"]
        except KeyError as e:
            raise ValidationError(f"Discount rule missing {e.args[0]!r}", field="discount_rules")
        kind = parse_enum(DiscountKind, data.get("kind", DiscountKind.FIXED), "discount kind")
        value = _require_money(value, "discount value")
        if kind == DiscountKind.PERCENT and value > 100:
            raise ValidationError("percent discount must be between 0 and 100", field="discount_rules")
        return cls(
            code=code,
            kind=kind,
            value=value,
            min_subtotal=_require_money(data.get("min_subtotal", 0), "min_subtotal"),
        )

    def amount_for(self, subtotal: int) -> int:
        if subtotal < self.min_subtotal:
            return 0
        if self.kind == DiscountKind.PERCENT:
            # Round down so a discount never exceeds the advertised percentage
            return subtotal * self.value // 100
        return self.value


@dataclass(frozen=True)
class ShippingRules:
    flat_fee: int = 800
    free_shipping_threshold: int = 8000


@dataclass(frozen=True)
class PriceBreakdown:
    base_unit_price: int
    quantity: int
    subtotal: int
    discount_total: int
    subtotal_after_discount: int
    shipping_fee: int
    amount: int
    applied_rules: Tuple[str, ...] = field(default_factory=tuple)

    def as_dict(self) -> Dict[str, Any]:
        """Document stored as Order.amount_breakdown."""
        return {
            "base_unit_price": self.base_unit_price,
            "quantity": self.quantity,
            "subtotal": self.subtotal,
            "discount_total": self.discount_total,
            "subtotal_after_discount": self.subtotal_after_discount,
            "shipping_fee": self.shipping_fee,
            "amount": self.amount,
            "applied_rules": list(self.applied_rules),
        }


def _require_money(value: Any, name: str) -> int:
    # bool is an int subclass; True must not price as 1
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}", field=name)
    if value < 0:
        raise ValidationError(f"{name} must not be negative", field=name)
    return value


def compute_price(
    base_price: int,
    quantity: int,
    discount_rules: Iterable[DiscountRule] = (),
    shipping_rules: Optional[ShippingRules] = None,
) -> PriceBreakdown:
    """
    Compute the full price breakdown for an order line.

    Args:
        base_price: Unit price in the minor currency unit
        quantity: Number of units (must be at least 1)
        discount_rules: Discounts to apply to the subtotal, in order
        shipping_rules: Flat fee and free-shipping threshold

    Returns:
        PriceBreakdown: Subtotal, discount, shipping and amount

    Raises:
        ValidationError: For negative or non-integer inputs
    """
    base_price = _require_money(base_price, "base_price")
    quantity = _require_money(quantity, "quantity")
    if quantity < 1:
        raise ValidationError("quantity must be at least 1", field="quantity")
    shipping_rules = shipping_rules or ShippingRules()

    subtotal = base_price * quantity
    applied: List[str] = []

    discount_total = 0
    for rule in discount_rules:
        amount = rule.amount_for(subtotal)
        if amount > 0:
            discount_total += amount
            applied.append(f"discount:{rule.code}")
    discount_total = min(discount_total, subtotal)

    subtotal_after_discount = subtotal - discount_total
    if subtotal_after_discount >= shipping_rules.free_shipping_threshold:
        shipping_fee = 0
        applied.append(FREE_SHIPPING_RULE)
    else:
        shipping_fee = shipping_rules.flat_fee
        applied.append(FLAT_SHIPPING_RULE)

    breakdown = PriceBreakdown(
        base_unit_price=base_price,
        quantity=quantity,
        subtotal=subtotal,
        discount_total=discount_total,
        subtotal_after_discount=subtotal_after_discount,
        shipping_fee=shipping_fee,
        amount=subtotal_after_discount + shipping_fee,
        applied_rules=tuple(applied),
    )
    violations = check_invariants(breakdown, shipping_rules)
    if violations:
        raise ValidationError(f"Price breakdown violates invariants: {violations}")
    return breakdown


def check_invariants(
    breakdown: PriceBreakdown, shipping_rules: Optional[ShippingRules] = None
) -> List[str]:
    """
    Validate the arithmetic invariants of a breakdown.

    Returns a list of violated invariants; empty means the breakdown may be
    persisted.
    """
    shipping_rules = shipping_rules or ShippingRules()
    b = breakdown
    violations: List[str] = []

    for name in (
        "base_unit_price",
        "subtotal",
        "discount_total",
        "subtotal_after_discount",
        "shipping_fee",
        "amount",
    ):
        if getattr(b, name) < 0:
            violations.append(f"{name} must be >= 0")

    if b.subtotal != b.base_unit_price * b.quantity:
        violations.append("subtotal != base_unit_price * quantity")
    if b.discount_total > b.subtotal:
        violations.append("discount_total > subtotal")
    if b.subtotal_after_discount != b.subtotal - b.discount_total:
        violations.append("subtotal_after_discount != subtotal - discount_total")
    if b.amount != b.subtotal_after_discount + b.shipping_fee:
        violations.append("amount != subtotal_after_discount + shipping_fee")

    free = b.subtotal_after_discount >= shipping_rules.free_shipping_threshold
    if free and b.shipping_fee != 0:
        violations.append("shipping_fee must be 0 at or above the free-shipping threshold")
    if not free and b.shipping_fee != shipping_rules.flat_fee:
        violations.append("shipping_fee must equal the flat fee below the threshold")

    return violations
