from decimal import Decimal

import pytest

from utils.settlement import (
    allocate_payment,
    parse_amount,
    parse_waiver_reason,
    payment_description,
    plan_settlement,
    to_money,
    waiver_description,
)


def test_to_money_quantizes_and_treats_none_as_zero():
    assert to_money(None) == Decimal("0.00")
    assert to_money("12.345") == Decimal("12.35")
    assert to_money(0.1 + 0.2) == Decimal("0.30")
    assert str(to_money(625)) == "625.00"


@pytest.mark.parametrize("raw, expected_error", [
    (None, "Amount is required"),
    ("   ", "Amount is required"),
    ("abc", "Invalid amount"),
    ("NaN", "Invalid amount"),
    (True, "Invalid amount"),
    ("0", "Amount must be positive"),
    (-5, "Amount must be positive"),
])
def test_parse_amount_rejects_bad_input(raw, expected_error):
    amount, err = parse_amount(raw)
    assert amount is None
    assert err == expected_error


def test_parse_amount_allow_zero():
    assert parse_amount("0", allow_zero=True) == (Decimal("0.00"), None)
    assert parse_amount("-1", allow_zero=True) == (None, "Amount must be non-negative")
    assert parse_amount("150.5") == (Decimal("150.50"), None)


def test_parse_waiver_reason_reads_text_after_marker():
    assert parse_waiver_reason("Cheque 4411 | Waiver: Loyalty discount") == "Loyalty discount"
    assert parse_waiver_reason("March dues") == "Discount/Waiver"
    assert parse_waiver_reason("Paid | Waiver:   ") == "Discount/Waiver"
    assert parse_waiver_reason(None) == "Discount/Waiver"


def test_ledger_descriptions():
    assert payment_description("UPI", " March dues ") == "UPI - March dues - Payment received"
    assert waiver_description("Loyalty discount") == "Waiver/Discount - Loyalty discount"


def test_plan_settlement_defaults_to_full_balance():
    plan = plan_settlement(Decimal("1000.00"))
    assert plan.amount_received == Decimal("1000.00")
    assert plan.waiver_amount == Decimal("0.00")
    assert not plan.has_waiver


def test_plan_settlement_partial_payment_creates_waiver():
    plan = plan_settlement("1000", "850")
    assert plan.previous_balance == Decimal("1000.00")
    assert plan.amount_received == Decimal("850.00")
    assert plan.waiver_amount == Decimal("150.00")
    assert plan.has_waiver


def test_plan_settlement_one_cent_shortfall_is_a_waiver():
    plan = plan_settlement("100.00", "99.99")
    assert plan.waiver_amount == Decimal("0.01")
    assert plan.has_waiver


@pytest.mark.parametrize("balance, received, message", [
    ("0", None, "Client has no outstanding balance to settle"),
    ("-20", None, "Client has no outstanding balance to settle"),
    ("100", "0", "Invalid received amount"),
    ("100", "-3", "Invalid received amount"),
    ("100", "oops", "Invalid received amount"),
    ("100", "100.01", "Received amount cannot exceed outstanding balance"),
])
def test_plan_settlement_errors(balance, received, message):
    with pytest.raises(ValueError) as exc:
        plan_settlement(balance, received)
    assert str(exc.value) == message


def test_allocate_payment_oldest_first_and_partial():
    dues = [("v1", Decimal("300")), ("v2", Decimal("0")), ("v3", Decimal("500")), ("v4", Decimal("200"))]
    applied = allocate_payment(Decimal("600"), dues)
    assert applied == [("v1", Decimal("300.00")), ("v3", Decimal("300.00"))]


def test_allocate_payment_leaves_surplus_unallocated():
    applied = allocate_payment(Decimal("900"), [("v1", Decimal("100"))])
    assert applied == [("v1", Decimal("100.00"))]
