from __future__ import annotations
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Mapping, NamedTuple, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from billing.errors import ValidationError
from .common import round_money

TAX_RATES = (0, 7, 19)


class LineItem(BaseModel):
    """A billable position. Ranges are checked by `validate_line_items`."""

    name: str
    description: Optional[str] = None
    quantity: Decimal
    unit_name: str = "Stück"
    unit_price: Decimal
    tax_rate: int = 19

    # helpers
    def line_net(self) -> Decimal:
        return round_money(self.quantity * self.unit_price)

    def line_tax(self) -> Decimal:
        return round_money(self.quantity * self.unit_price * Decimal(self.tax_rate) / 100)

    def line_total(self) -> Decimal:
        return self.line_net() + self.line_tax()


class Totals(NamedTuple):
    net: Decimal
    tax: Decimal
    total: Decimal


def _coerce(item: Union[LineItem, Mapping[str, Any]], idx: int) -> LineItem:
    if isinstance(item, LineItem):
        return item
    try:
        return LineItem.model_validate(item)
    except PydanticValidationError as e:
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        raise ValidationError(f"line item {idx}: {errors[0]['msg']}",
                              details={"index": idx, "errors": errors}) from e
    except (InvalidOperation, TypeError) as e:
        raise ValidationError(f"line item {idx}: {e}", details={"index": idx}) from e


def validate_line_items(items: Iterable[Union[LineItem, Mapping[str, Any]]]) -> List[LineItem]:
    out: List[LineItem] = []
    for idx, raw in enumerate(items):
        it = _coerce(raw, idx)
        if not it.name or not it.name.strip():
            raise ValidationError(f"line item {idx}: name is required", details={"index": idx})
        if not it.quantity.is_finite() or it.quantity <= 0:
            raise ValidationError(f"line item {idx}: quantity must be > 0", details={"index": idx})
        if not it.unit_price.is_finite() or it.unit_price < 0:
            raise ValidationError(f"line item {idx}: unit_price must be >= 0", details={"index": idx})
        if it.tax_rate not in TAX_RATES:
            raise ValidationError(f"line item {idx}: tax_rate must be one of {TAX_RATES}",
                                  details={"index": idx})
        out.append(it)
    return out


def compute_totals(items: Iterable[Union[LineItem, Mapping[str, Any]]]) -> Totals:
    """
    Net, tax and gross sums of the items.
    Each item is rounded half-to-even to cents, then the sums are quantized once more.
    """
    net = tax = Decimal("0")
    for it in validate_line_items(items):
        net += it.line_net()
        tax += it.line_tax()
    net, tax = round_money(net), round_money(tax)
    return Totals(net=net, tax=tax, total=round_money(net + tax))
