# jobmarket/line_items.py
"""Itemized charges attached to a job or a change order.

The ledger is the only place line items are built, so every item it hands
out already satisfies ``total_price == quantity * unit_price`` and the
container total is always the sum over its items.
"""
from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from .errors import NotFound, ValidationError
from .models import LineItem, LineItemCategory, LineItemIn


def to_cents(amount: Decimal) -> int:
    """Decimal major units -> integer cents, rounding half up."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _as_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def check_line_item(
    service_name: Any, quantity: Any, unit_price: Any, prefix: str = ""
) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    if not isinstance(service_name, str) or not service_name.strip():
        errors[f"{prefix}service_name"] = "Service name is required"

    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        errors[f"{prefix}quantity"] = "Valid quantity is required"

    price = _as_decimal(unit_price)
    if price is None or not price.is_finite() or price <= 0:
        errors[f"{prefix}unit_price"] = "Valid unit price is required"
    return errors


class LineItemLedger:
    def __init__(self, items: Optional[Iterable[LineItem]] = None):
        self._items: List[LineItem] = [item.model_copy() for item in (items or [])]

    @classmethod
    def from_inputs(cls, inputs: Iterable[LineItemIn], field: str = "line_items") -> "LineItemLedger":
        """Build a ledger from request bodies; all-or-nothing on validation."""
        inputs = list(inputs)
        errors: Dict[str, str] = {}
        for i, raw in enumerate(inputs):
            errors.update(check_line_item(raw.service_name, raw.quantity, raw.unit_price, f"{field}[{i}]."))
        if errors:
            raise ValidationError(errors)

        ledger = cls()
        for raw in inputs:
            ledger._items.append(LineItem(
                service_name=raw.service_name.strip(),
                description=raw.description,
                category=raw.category,
                quantity=raw.quantity,
                unit_price=Decimal(str(raw.unit_price)),
                is_required=raw.is_required,
            ))
        return ledger

    @property
    def items(self) -> List[LineItem]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def get(self, item_id: str) -> LineItem:
        for item in self._items:
            if item.id == item_id:
                return item
        raise NotFound("LineItem", item_id)

    def add(
        self,
        service_name: str,
        unit_price: Any,
        quantity: int = 1,
        category: LineItemCategory = LineItemCategory.LABOR,
        description: Optional[str] = None,
        is_required: bool = False,
    ) -> LineItem:
        errors = check_line_item(service_name, quantity, unit_price)
        if errors:
            raise ValidationError(errors)
        item = LineItem(
            service_name=service_name.strip(),
            description=description,
            category=category,
            quantity=quantity,
            unit_price=Decimal(str(unit_price)),
            is_required=is_required,
        )
        self._items.append(item)
        return item

    def update(self, item_id: str, **changes: Any) -> LineItem:
        current = self.get(item_id)
        merged = current.model_dump(exclude={"total_price"})
        merged.update(changes)
        errors = check_line_item(merged["service_name"], merged["quantity"], merged["unit_price"])
        if errors:
            raise ValidationError(errors)
        merged["service_name"] = merged["service_name"].strip()
        merged["unit_price"] = Decimal(str(merged["unit_price"]))
        updated = LineItem(**merged)
        self._items = [updated if item.id == item_id else item for item in self._items]
        return updated

    def remove(self, item_id: str) -> LineItem:
        item = self.get(item_id)
        self._items = [i for i in self._items if i.id != item_id]
        return item

    def total(self) -> Decimal:
        return sum((item.total_price for item in self._items), Decimal("0"))

    def required_total(self) -> Decimal:
        return sum((item.total_price for item in self._items if item.is_required), Decimal("0"))

    def by_category(self) -> Dict[LineItemCategory, Decimal]:
        totals: Dict[LineItemCategory, Decimal] = {}
        for item in self._items:
            totals[item.category] = totals.get(item.category, Decimal("0")) + item.total_price
        return totals

    def total_cents(self) -> int:
        return to_cents(self.total())
