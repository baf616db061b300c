from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Mapping, Union

REVENUE_TYPES = frozenset({"POS_SALE", "WALK_IN", "MEMBERSHIP", "REGISTRATION_FEE", "COUPON_SALE"})

CENT = Decimal("0.01")


@dataclass(frozen=True)
class CashReconciliation:
    total_revenue: Decimal
    system_calculated_cash: Decimal
    cash_discrepancy: Decimal

    @property
    def is_balanced(self) -> bool:
        return self.cash_discrepancy == 0


def _field(transaction: Union[Mapping[str, Any], Any], name: str) -> Any:
    if isinstance(transaction, Mapping):
        return transaction[name]
    return getattr(transaction, name)


def _money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT)


def total_revenue(transactions: Iterable[Any]) -> Decimal:
    """Sum the amounts of revenue-type transactions (rows or dicts)."""
    total = Decimal("0.00")
    for transaction in transactions:
        if _field(transaction, "type") in REVENUE_TYPES:
            total += _money(_field(transaction, "amount"))
    return total


def reconcile_shift(
    starting_cash_float: Any,
    transactions: Iterable[Any],
    actual_counted_cash: Any,
) -> CashReconciliation:
    revenue = total_revenue(transactions)
    expected = _money(starting_cash_float) + revenue
    return CashReconciliation(
        total_revenue=revenue,
        system_calculated_cash=expected,
        cash_discrepancy=_money(actual_counted_cash) - expected,
    )


def discrepancy_message(discrepancy: Decimal) -> str:
    if discrepancy == 0:
        return "Cash reconciliation perfect!"
    sign = "+" if discrepancy > 0 else "-"
    return f"Cash discrepancy: {sign}RM{abs(discrepancy):.2f}"
