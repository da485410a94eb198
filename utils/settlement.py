"""utils/settlement.py

Money helpers for B2B settlement and payments.

All amounts are Decimal values quantized to two places. Nothing in here
touches the database; the caller owns the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable, List, Optional, Tuple


CENT = Decimal("0.01")
ZERO = Decimal("0.00")

WAIVER_MARKER = "| Waiver:"
DEFAULT_WAIVER_REASON = "Discount/Waiver"


def to_money(value: Any) -> Decimal:
    """Coerce a DB/JSON value to a 2-place Decimal. None counts as zero."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value: Any, *, allow_zero: bool = False) -> Tuple[Optional[Decimal], Optional[str]]:
    """Parse a user-supplied amount. Returns (amount, error)."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None, "Amount is required"
    if isinstance(value, bool):
        return None, "Invalid amount"
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError):
        return None, "Invalid amount"
    if not amount.is_finite():
        return None, "Invalid amount"
    amount = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    if amount < 0 or (amount == 0 and not allow_zero):
        return None, "Amount must be positive" if not allow_zero else "Amount must be non-negative"
    return amount, None


def parse_waiver_reason(description: Optional[str]) -> str:
    """Extract the waiver reason from "payment desc | Waiver: reason"."""
    text = (description or "").strip()
    if WAIVER_MARKER in text:
        reason = text.split(WAIVER_MARKER, 1)[1].strip()
        if reason:
            return reason
    return DEFAULT_WAIVER_REASON


def payment_description(payment_mode: str, description: str) -> str:
    return f"{payment_mode} - {description.strip()} - Payment received"


def waiver_description(reason: str) -> str:
    return f"Waiver/Discount - {reason}"


@dataclass(frozen=True)
class SettlementPlan:
    previous_balance: Decimal
    amount_received: Decimal
    waiver_amount: Decimal

    @property
    def has_waiver(self) -> bool:
        return self.waiver_amount >= CENT


def plan_settlement(balance: Any, received_amount: Any = None) -> SettlementPlan:
    """Work out how a balance splits into received money and waiver.

    received_amount defaults to the full balance. Raises ValueError with a
    user-facing message when the amount is unusable.
    """
    previous = to_money(balance)
    if previous <= 0:
        raise ValueError("Client has no outstanding balance to settle")

    if received_amount is None or (isinstance(received_amount, str) and not received_amount.strip()):
        received = previous
    else:
        # An explicit 0 is rejected, not read as "settle the full balance".
        received, err = parse_amount(received_amount)
        if err:
            raise ValueError("Invalid received amount")

    if received > previous:
        raise ValueError("Received amount cannot exceed outstanding balance")

    return SettlementPlan(
        previous_balance=previous,
        amount_received=received,
        waiver_amount=previous - received,
    )


def allocate_payment(amount: Decimal, dues: Iterable[Tuple[Any, Decimal]]) -> List[Tuple[Any, Decimal]]:
    """Spread a payment over (key, due) pairs in the given order.

    Returns (key, applied) for every due that receives money. Any remainder
    beyond the total due is left unallocated.
    """
    remaining = to_money(amount)
    applied: List[Tuple[Any, Decimal]] = []
    for key, due in dues:
        if remaining <= 0:
            break
        due = to_money(due)
        if due <= 0:
            continue
        portion = min(due, remaining)
        applied.append((key, portion))
        remaining -= portion
    return applied
