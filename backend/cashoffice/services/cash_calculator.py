# Overview: Pure expected-amount calculation, money rounding and variance classification.

"""
Expected-Amount Calculator

Pure functions over a LedgerSnapshot. No database access, no clock.

FORMULAS:
- cash_in           = sum(cash payments)
- cash_refunds      = sum(refunds whose original payment was cash)
- pay_ins_total     = sum(cash movements IN)
- payouts_total     = sum(cash movements OUT)
- expected_cash     = cash_in - cash_refunds + pay_ins_total - payouts_total
- expected_non_cash = sum(non-cash payments) - sum(non-cash refunds)
- expected_total    = expected_cash + expected_non_cash

Payments count in the window of paid_at and refunds in the window of
refunded_at. A fully refunded payment therefore nets to zero when both
land in the same window, and a late refund reduces the window it was
paid out in, never an already closed one.

A refund is netted against the tender of the original payment. Money
never moves between tender buckets.

ROUNDING: intermediate sums keep full Decimal precision; results are
rounded half-up to 0.01 at the boundary (round_money). Inputs above
MAX_MONEY are rejected. Equality of money is never tested directly, see
classify_variance.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any

from ..errors import ValidationError
from ..models.ledger import METHOD_CASH, METHOD_CARD, METHOD_TRANSFER, METHOD_OTHER, MOVEMENT_IN, MOVEMENT_OUT
from .ledger_reader import LedgerSnapshot


MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")

# Largest amount a Numeric(12,2) column holds
MAX_MONEY = Decimal("9999999999.99")

# Declared and expected amounts within this band are considered equal
BALANCE_TOLERANCE = Decimal("0.01")

# Expected drawer cash of a custody session (shift) = opening float + net
# cash of its ledger rows. Cash closings are time windows, not custody
# sessions, and reconcile ledger cash only: they never carry a float.
OPENING_FLOAT_IN_EXPECTED_CASH = True

STATUS_BALANCED = "balanced"
STATUS_OVERAGE = "overage"
STATUS_SHORTAGE = "shortage"


def round_money(value: Any) -> Decimal:
    """Round to 2 decimals, half-up."""
    return Decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def parse_money(value: Any, field: str, *, allow_negative: bool = False) -> Decimal:
    """
    Validate and normalize a money input.

    Accepts Decimal, int, or numeric strings. Floats are converted through
    their string form so 0.1 stays 0.1. Booleans, NaN, infinity and
    amounts above MAX_MONEY are rejected.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required and must be a number", field=field)
    if isinstance(value, float):
        value = repr(value)
    if isinstance(value, str):
        value = value.strip()
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", field=field)
    if not amount.is_finite():
        raise ValidationError(f"{field} must be a finite number", field=field)
    if amount < 0 and not allow_negative:
        raise ValidationError(f"{field} cannot be negative", field=field)
    try:
        amount = round_money(amount)
    except InvalidOperation:
        raise ValidationError(f"{field} is out of range", field=field)
    if abs(amount) > MAX_MONEY:
        raise ValidationError(f"{field} cannot exceed {MAX_MONEY}", field=field)
    return amount


def display_amount(value: Decimal) -> Decimal:
    """UI rendition of an expected amount: never shown below zero."""
    return max(ZERO, round_money(value))


def classify_variance(declared: Decimal, expected: Decimal) -> str:
    """
    Classify declared vs expected with the BALANCE_TOLERANCE band.

    |d - e| <= tol -> balanced; d - e > tol -> overage; else shortage.
    """
    difference = Decimal(declared) - Decimal(expected)
    if abs(difference) <= BALANCE_TOLERANCE:
        return STATUS_BALANCED
    if difference > BALANCE_TOLERANCE:
        return STATUS_OVERAGE
    return STATUS_SHORTAGE


@dataclass(frozen=True)
class ExpectedAmounts:
    cash_in: Decimal
    cash_refunds: Decimal
    pay_ins_total: Decimal
    payouts_total: Decimal
    expected_cash: Decimal
    expected_non_cash: Decimal
    expected_total: Decimal
    card_total: Decimal
    transfer_total: Decimal
    other_total: Decimal
    non_cash_refunds: Decimal
    payment_count: int
    refund_count: int
    movement_count: int

    @property
    def activity_count(self) -> int:
        return self.payment_count + self.refund_count + self.movement_count

    def to_dict(self) -> dict:
        return {
            "cash_in": str(self.cash_in),
            "cash_refunds": str(self.cash_refunds),
            "pay_ins_total": str(self.pay_ins_total),
            "payouts_total": str(self.payouts_total),
            "expected_cash_amount": str(self.expected_cash),
            "expected_cash_display": str(display_amount(self.expected_cash)),
            "expected_non_cash_amount": str(self.expected_non_cash),
            "expected_total_amount": str(self.expected_total),
            "card_total": str(self.card_total),
            "transfer_total": str(self.transfer_total),
            "other_total": str(self.other_total),
            "non_cash_refunds": str(self.non_cash_refunds),
            "payment_count": self.payment_count,
            "refund_count": self.refund_count,
            "movement_count": self.movement_count,
        }


def _bucket(method: str) -> str:
    if method == METHOD_CASH:
        return METHOD_CASH
    if METHOD_CARD in method:
        return METHOD_CARD
    if METHOD_TRANSFER in method:
        return METHOD_TRANSFER
    return METHOD_OTHER


def calculate_expected(snapshot: LedgerSnapshot) -> ExpectedAmounts:
    """Turn a ledger snapshot into expected cash / non-cash figures."""
    gross = {METHOD_CASH: Decimal(0), METHOD_CARD: Decimal(0), METHOD_TRANSFER: Decimal(0), METHOD_OTHER: Decimal(0)}
    refunded = dict.fromkeys(gross, Decimal(0))

    for payment in snapshot.payments:
        gross[_bucket(payment.method)] += payment.amount

    for refund in snapshot.refunds:
        refunded[_bucket(refund.method)] += refund.amount

    pay_ins = sum((m.amount for m in snapshot.cash_movements if m.type == MOVEMENT_IN), Decimal(0))
    payouts = sum((m.amount for m in snapshot.cash_movements if m.type == MOVEMENT_OUT), Decimal(0))

    expected_cash = gross[METHOD_CASH] - refunded[METHOD_CASH] + pay_ins - payouts

    card = gross[METHOD_CARD] - refunded[METHOD_CARD]
    transfer = gross[METHOD_TRANSFER] - refunded[METHOD_TRANSFER]
    other = gross[METHOD_OTHER] - refunded[METHOD_OTHER]
    expected_non_cash = card + transfer + other

    expected_cash = round_money(expected_cash)
    expected_non_cash = round_money(expected_non_cash)

    return ExpectedAmounts(
        cash_in=round_money(gross[METHOD_CASH]),
        cash_refunds=round_money(refunded[METHOD_CASH]),
        pay_ins_total=round_money(pay_ins),
        payouts_total=round_money(payouts),
        expected_cash=expected_cash,
        expected_non_cash=expected_non_cash,
        # Sum of the rounded parts so total == cash + non-cash exactly
        expected_total=expected_cash + expected_non_cash,
        card_total=round_money(card),
        transfer_total=round_money(transfer),
        other_total=round_money(other),
        non_cash_refunds=round_money(refunded[METHOD_CARD] + refunded[METHOD_TRANSFER] + refunded[METHOD_OTHER]),
        payment_count=len(snapshot.payments),
        refund_count=len(snapshot.refunds),
        movement_count=len(snapshot.cash_movements),
    )


def expected_drawer_cash(amounts: ExpectedAmounts, opening_cash: Decimal) -> Decimal:
    """Expected physical cash of a custody session, see OPENING_FLOAT_IN_EXPECTED_CASH."""
    if OPENING_FLOAT_IN_EXPECTED_CASH:
        return round_money(Decimal(opening_cash) + amounts.expected_cash)
    return amounts.expected_cash
