# Overview: Service-layer operations for cash closings; open period, preview, commit, adjustments, monthly summaries and export.

"""
Cash Closing Service

WHY: A cash closing reconciles what the ledger says should be in the
drawer (and on the card terminal / bank) against what staff counted,
and locks that comparison in as an immutable snapshot.

DESIGN PRINCIPLES:
- Closings of one scope partition time: each new closing starts exactly
  where the previous one of the same scope ended. A scope is one
  employee, or everyone (employee_id NULL).
- Preview never writes and is safe to call repeatedly.
- Commit never trusts a preview: expected figures are recomputed inside
  the commit transaction.
- Committed closings are never updated. Corrections are ClosingAdjustment
  rows; final balance = declared cash + sum(ADD) - sum(SUBTRACT).
- Variance status (balanced / overage / shortage) is derived, not stored.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal

from flask import current_app
from openpyxl import Workbook
from openpyxl.styles import Font
from sqlalchemy import desc, func
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from ..extensions import db
from ..models import CashClosing, ClosingAdjustment, User
from ..models.closings import (
    ALL_EMPLOYEES_SCOPE,
    ADJUSTMENT_ADD,
    VALID_ADJUSTMENT_TYPES,
    VALID_PERIOD_TYPES,
)
from cashoffice.time_utils import utcnow, normalize_utc, parse_iso_datetime, to_utc_z
from .audit_service import append_audit_event
from .cash_calculator import (
    BALANCE_TOLERANCE,
    ExpectedAmounts,
    STATUS_BALANCED,
    STATUS_OVERAGE,
    STATUS_SHORTAGE,
    calculate_expected,
    classify_variance,
    parse_money,
    round_money,
)
from .concurrency import storage_guard
from .ledger_reader import fetch_ledger


EXPORT_FORMATS = ("json", "csv", "xlsx")
EXPORT_VERSION = 1


@dataclass(frozen=True)
class ClosingWindow:
    """The open period of a scope: [start_at, end_at)."""
    start_at: datetime
    end_at: datetime
    employee_id: int | None

    def to_dict(self) -> dict:
        return {
            "start_at": to_utc_z(self.start_at),
            "end_at": to_utc_z(self.end_at),
            "employee_id": self.employee_id,
        }


def _scope_key(employee_id: int | None) -> int:
    return employee_id if employee_id is not None else ALL_EMPLOYEES_SCOPE


def closing_epoch() -> datetime:
    """Start of the very first open period (config CASH_CLOSING_EPOCH)."""
    value = current_app.config.get("CASH_CLOSING_EPOCH")
    if isinstance(value, datetime):
        return normalize_utc(value)
    epoch = parse_iso_datetime(value) if value else None
    return epoch or datetime(2000, 1, 1)


# =============================================================================
# OPEN PERIOD & PREVIEW
# =============================================================================

def get_last_closing_end(employee_id: int | None = None) -> datetime | None:
    """SELECT max(end_at) for the scope."""
    return (
        db.session.query(func.max(CashClosing.end_at))
        .filter(CashClosing.scope_key == _scope_key(employee_id))
        .scalar()
    )


def get_open_period(employee_id: int | None = None, now: datetime | None = None) -> ClosingWindow:
    """
    Current open period of a scope.

    Starts at the later of the scope's last closing end and the epoch;
    ends now.
    """
    end_at = normalize_utc(now) or utcnow()
    last_end = get_last_closing_end(employee_id)
    epoch = closing_epoch()

    start_at = epoch
    if last_end is not None and last_end > epoch:
        start_at = last_end

    return ClosingWindow(
        start_at=start_at,
        end_at=end_at,
        employee_id=employee_id,
    )


def calculate_expected_for_window(
    start_at: datetime,
    end_at: datetime,
    employee_id: int | None = None,
) -> ExpectedAmounts:
    """Expected figures for an arbitrary [start_at, end_at) window. Read only."""
    start_at = normalize_utc(start_at)
    end_at = normalize_utc(end_at)
    return calculate_expected(fetch_ledger(start_at, end_at, employee_id=employee_id))


def preview_closing(
    employee_id: int | None = None,
    *,
    declared_cash=None,
    declared_non_cash=None,
    now: datetime | None = None,
) -> dict:
    """
    Preview of the scope's open period. Persists nothing.

    When declared amounts are given the preview also carries the
    differences and the variance status they would produce.
    """
    window = get_open_period(employee_id, now=now)
    amounts = calculate_expected(fetch_ledger(window.start_at, window.end_at, employee_id=employee_id))

    preview = {
        "open_period": window.to_dict(),
        "range": {"start_at": to_utc_z(window.start_at), "end_at": to_utc_z(window.end_at)},
        "expected": {
            "cash": str(amounts.expected_cash),
            "non_cash": str(amounts.expected_non_cash),
            "total": str(amounts.expected_total),
            "card": str(amounts.card_total),
            "transfer": str(amounts.transfer_total),
            "other": str(amounts.other_total),
        },
        "summary": amounts.to_dict(),
    }

    if declared_cash is not None or declared_non_cash is not None:
        cash = parse_money(declared_cash if declared_cash is not None else 0, "declared_cash_amount")
        non_cash = parse_money(declared_non_cash if declared_non_cash is not None else 0, "declared_non_cash_amount")
        preview["declared"] = {"cash": str(cash), "non_cash": str(non_cash), "total": str(cash + non_cash)}
        preview["difference"] = {
            "cash": str(cash - amounts.expected_cash),
            "non_cash": str(non_cash - amounts.expected_non_cash),
            "total": str(cash + non_cash - amounts.expected_total),
        }
        preview["status"] = classify_variance(cash, amounts.expected_cash)

    return preview


# =============================================================================
# COMMIT
# =============================================================================

def _check_partition(scope_key: int, start_at: datetime, end_at: datetime) -> None:
    overlapping = (
        db.session.query(CashClosing)
        .filter(
            CashClosing.scope_key == scope_key,
            CashClosing.start_at < end_at,
            CashClosing.end_at > start_at,
        )
        .first()
    )
    if overlapping:
        raise ConflictError(
            "Closing period overlaps an existing closing",
            code="CLOSING_OVERLAP",
            closing_id=overlapping.id,
            start_at=to_utc_z(overlapping.start_at),
            end_at=to_utc_z(overlapping.end_at),
        )


def create_closing(
    period_type: str,
    declared_cash_amount,
    declared_non_cash_amount,
    *,
    created_by: int,
    end_at: datetime | None = None,
    start_at: datetime | None = None,
    notes: str | None = None,
    employee_id: int | None = None,
    now: datetime | None = None,
) -> CashClosing:
    """
    Commit the scope's open period as an immutable closing.

    Args:
        period_type: manual, daily, monthly, custom or shift (a label)
        declared_cash_amount: cash counted in the drawer (>= 0)
        declared_non_cash_amount: card/transfer/other total declared (>= 0)
        created_by: acting user id
        end_at: exclusive end of the period, defaults to now, never in the future
        start_at: optional; must equal the open period start when given
        employee_id: scope (None = all employees)

    Raises:
        ValidationError: malformed input
        ConflictError: start_at mismatch, overlap, or a concurrent commit
            already closed this period
        InvalidStateError: the period is empty
    """
    if period_type not in VALID_PERIOD_TYPES:
        raise ValidationError(
            f"period_type must be one of {', '.join(VALID_PERIOD_TYPES)}",
            field="period_type",
        )

    declared_cash = parse_money(declared_cash_amount, "declared_cash_amount")
    declared_non_cash = parse_money(declared_non_cash_amount, "declared_non_cash_amount")

    if employee_id is not None and db.session.get(User, employee_id) is None:
        raise NotFoundError("Employee not found", employee_id=employee_id)

    current = normalize_utc(now) or utcnow()
    end_at = normalize_utc(end_at) or current
    if end_at > current:
        raise ValidationError("end_at cannot be in the future", field="end_at")

    scope_key = _scope_key(employee_id)

    with storage_guard("create cash closing"):
        window = get_open_period(employee_id, now=end_at)

        if start_at is not None and normalize_utc(start_at) != window.start_at:
            raise ConflictError(
                "start_at does not match the open period; closings must be contiguous",
                code="CLOSING_PERIOD_MISMATCH",
                expected_start_at=to_utc_z(window.start_at),
                requested_start_at=to_utc_z(normalize_utc(start_at)),
            )

        if window.end_at <= window.start_at:
            raise InvalidStateError(
                "Closing period is empty",
                code="CLOSING_PERIOD_EMPTY",
                start_at=to_utc_z(window.start_at),
                end_at=to_utc_z(window.end_at),
            )

        _check_partition(scope_key, window.start_at, window.end_at)

        # Recomputed here, inside the commit transaction
        amounts = calculate_expected(fetch_ledger(window.start_at, window.end_at, employee_id=employee_id))

        declared_total = declared_cash + declared_non_cash
        closing = CashClosing(
            period_type=period_type,
            employee_id=employee_id,
            scope_key=scope_key,
            start_at=window.start_at,
            end_at=window.end_at,
            expected_cash_amount=amounts.expected_cash,
            expected_non_cash_amount=amounts.expected_non_cash,
            expected_card_amount=amounts.card_total,
            expected_transfer_amount=amounts.transfer_total,
            expected_other_amount=amounts.other_total,
            expected_total_amount=amounts.expected_total,
            cash_in_total=amounts.cash_in,
            cash_refunds_total=amounts.cash_refunds,
            pay_ins_total=amounts.pay_ins_total,
            payouts_total=amounts.payouts_total,
            payment_count=amounts.payment_count,
            refund_count=amounts.refund_count,
            declared_cash_amount=declared_cash,
            declared_non_cash_amount=declared_non_cash,
            declared_total_amount=declared_total,
            difference_cash=declared_cash - amounts.expected_cash,
            difference_non_cash=declared_non_cash - amounts.expected_non_cash,
            difference_total=declared_total - amounts.expected_total,
            notes=notes,
            created_by=created_by,
            created_at=current,
        )

        try:
            db.session.add(closing)
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            raise ConflictError(
                "This period was closed by a concurrent request",
                code="CLOSING_PERIOD_TAKEN",
                start_at=to_utc_z(window.start_at),
            )

        status = classify_variance(declared_cash, amounts.expected_cash)
        append_audit_event(
            event_type="cash_closing.created",
            entity_type="cash_closing",
            entity_id=closing.id,
            actor_user_id=created_by,
            closing_id=closing.id,
            occurred_at=current,
            payload={
                "period_type": period_type,
                "employee_id": employee_id,
                "status": status,
                "difference_total": closing.difference_total,
            },
        )
        db.session.commit()

    current_app.logger.info(
        "Cash closing %s committed by user %s for scope %s [%s, %s): %s (cash difference %s)",
        closing.id, created_by, scope_key, closing.start_at, closing.end_at, status, closing.difference_cash,
    )
    return closing


# =============================================================================
# ADJUSTMENTS
# =============================================================================

def add_adjustment(closing_id: int, type: str, amount, reason: str, *, created_by: int) -> ClosingAdjustment:
    """
    Attach a correction to a committed closing.

    The closing's own fields are untouched.
    """
    type = (type or "").upper()
    if type not in VALID_ADJUSTMENT_TYPES:
        raise ValidationError("type must be ADD or SUBTRACT", field="type")

    value = parse_money(amount, "amount")
    if value <= 0:
        raise ValidationError("amount must be greater than zero", field="amount")

    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("reason is required", field="reason")

    closing = get_closing(closing_id)

    adjustment = ClosingAdjustment(
        closing_id=closing.id,
        type=type,
        amount=value,
        reason=reason,
        created_by=created_by,
        created_at=utcnow(),
    )

    with storage_guard("add closing adjustment"):
        db.session.add(adjustment)
        db.session.flush()
        append_audit_event(
            event_type="cash_closing.adjustment_added",
            entity_type="cash_closing_adjustment",
            entity_id=adjustment.id,
            actor_user_id=created_by,
            closing_id=closing.id,
            occurred_at=adjustment.created_at,
            note=reason,
            payload={"type": type, "amount": value},
        )
        db.session.commit()

    return adjustment


def adjustment_total(adjustments: list[ClosingAdjustment]) -> Decimal:
    total = Decimal(0)
    for adj in adjustments:
        if adj.type == ADJUSTMENT_ADD:
            total += Decimal(adj.amount)
        else:
            total -= Decimal(adj.amount)
    return round_money(total)


def final_cash_balance(closing: CashClosing) -> Decimal:
    """Declared cash plus signed adjustments."""
    return round_money(Decimal(closing.declared_cash_amount) + adjustment_total(closing.adjustments))


# =============================================================================
# READS
# =============================================================================

def get_closing(closing_id: int) -> CashClosing:
    closing = db.session.get(CashClosing, closing_id)
    if not closing:
        raise NotFoundError("Cash closing not found", closing_id=closing_id)
    return closing


def closing_status(closing: CashClosing) -> str:
    return classify_variance(closing.declared_cash_amount, closing.expected_cash_amount)


def closing_detail(closing: CashClosing) -> dict:
    """Snapshot + adjustments + derived status and final balance."""
    data = closing.to_dict()
    data["status"] = closing_status(closing)
    data["adjustments"] = [adj.to_dict() for adj in closing.adjustments]
    data["computed"] = {
        "adjustment_total": str(adjustment_total(closing.adjustments)),
        "final_cash_balance": str(final_cash_balance(closing)),
    }
    return data


def _status_filter(query, status: str):
    diff = CashClosing.difference_cash
    if status == STATUS_BALANCED:
        return query.filter(diff >= -BALANCE_TOLERANCE, diff <= BALANCE_TOLERANCE)
    if status == STATUS_OVERAGE:
        return query.filter(diff > BALANCE_TOLERANCE)
    if status == STATUS_SHORTAGE:
        return query.filter(diff < -BALANCE_TOLERANCE)
    raise ValidationError("status must be balanced, overage or shortage", field="status")


def list_closings(
    *,
    employee_id: int | None = None,
    period_type: str | None = None,
    status: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    """Paged closings, newest first, with totals over the returned page."""
    page = max(page, 1)
    limit = min(max(limit, 1), 200)

    query = db.session.query(CashClosing)
    if employee_id is not None:
        query = query.filter(CashClosing.employee_id == employee_id)
    if period_type:
        query = query.filter(CashClosing.period_type == period_type)
    if status:
        query = _status_filter(query, status)
    if created_from:
        query = query.filter(CashClosing.created_at >= created_from)
    if created_to:
        query = query.filter(CashClosing.created_at <= created_to)

    total = query.count()
    closings = (
        query.order_by(desc(CashClosing.created_at), desc(CashClosing.id))
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    sums = {
        "total_expected_cash": Decimal(0),
        "total_expected_non_cash": Decimal(0),
        "total_expected": Decimal(0),
        "total_declared_cash": Decimal(0),
        "total_declared_non_cash": Decimal(0),
        "total_declared": Decimal(0),
        "total_difference_cash": Decimal(0),
        "total_difference_non_cash": Decimal(0),
        "total_difference": Decimal(0),
    }
    for c in closings:
        sums["total_expected_cash"] += c.expected_cash_amount
        sums["total_expected_non_cash"] += c.expected_non_cash_amount
        sums["total_expected"] += c.expected_total_amount
        sums["total_declared_cash"] += c.declared_cash_amount
        sums["total_declared_non_cash"] += c.declared_non_cash_amount
        sums["total_declared"] += c.declared_total_amount
        sums["total_difference_cash"] += c.difference_cash
        sums["total_difference_non_cash"] += c.difference_non_cash
        sums["total_difference"] += c.difference_total

    return {
        "closings": [dict(c.to_dict(), status=closing_status(c)) for c in closings],
        "summary": {k: str(round_money(v)) for k, v in sums.items()},
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": (total + limit - 1) // limit,
        },
    }


# =============================================================================
# RECONCILIATION READS
# =============================================================================

def _month_window(month: str) -> tuple[datetime, datetime]:
    """'YYYY-MM' -> [first instant of the month, first instant of the next)."""
    try:
        start_at = datetime.strptime((month or "").strip(), "%Y-%m")
    except ValueError:
        raise ValidationError("month is required (format: YYYY-MM)", field="month")
    if start_at.month == 12:
        return start_at, start_at.replace(year=start_at.year + 1, month=1)
    return start_at, start_at.replace(month=start_at.month + 1)


def monthly_summary(month: str) -> dict:
    """
    Per-employee collection totals for one calendar month (UTC).

    Uses the same ledger window and formulas as closings, so the grand
    total of a month equals the sum of closings that tile it. Rows with
    no operator count towards the grand total only. Nothing is persisted.
    """
    start_at, end_at = _month_window(month)
    snapshot = fetch_ledger(start_at, end_at)

    employee_ids = {row.operator_id for row in snapshot.payments}
    employee_ids.update(row.operator_id for row in snapshot.refunds)
    employee_ids.update(row.operator_id for row in snapshot.cash_movements)
    employee_ids.discard(None)

    names = {}
    if employee_ids:
        for user in db.session.query(User).filter(User.id.in_(employee_ids)).all():
            names[user.id] = user.display_name or user.username

    employees = []
    for employee_id in employee_ids:
        own = replace(
            snapshot,
            payments=[p for p in snapshot.payments if p.operator_id == employee_id],
            refunds=[r for r in snapshot.refunds if r.operator_id == employee_id],
            cash_movements=[m for m in snapshot.cash_movements if m.operator_id == employee_id],
        )
        amounts = calculate_expected(own)
        gross = round_money(sum((p.amount for p in own.payments), Decimal(0)))
        refunds_total = round_money(amounts.cash_refunds + amounts.non_cash_refunds)
        employees.append({
            "employee_id": employee_id,
            "employee_name": names.get(employee_id, "Unknown"),
            "payments_count": amounts.payment_count,
            "cash_total": str(amounts.cash_in),
            "non_cash_total": str(round_money(gross - amounts.cash_in)),
            "total": str(gross),
            "refunds_total": str(refunds_total),
            "net_total": str(gross - refunds_total),
            "expected_cash": str(amounts.expected_cash),
            "expected_non_cash": str(amounts.expected_non_cash),
        })

    employees.sort(key=lambda e: (-Decimal(e["total"]), e["employee_id"]))

    grand = calculate_expected(snapshot)
    grand_gross = round_money(sum((p.amount for p in snapshot.payments), Decimal(0)))
    grand_refunds = round_money(grand.cash_refunds + grand.non_cash_refunds)

    return {
        "month": start_at.strftime("%Y-%m"),
        "range": {"start_at": to_utc_z(start_at), "end_at": to_utc_z(end_at)},
        "employees": employees,
        "grand_total": {
            "payments_count": grand.payment_count,
            "cash_total": str(grand.cash_in),
            "non_cash_total": str(round_money(grand_gross - grand.cash_in)),
            "gross_total": str(grand_gross),
            "refunds_total": str(grand_refunds),
            "net_revenue": str(grand_gross - grand_refunds),
            "expected_cash": str(grand.expected_cash),
            "expected_non_cash": str(grand.expected_non_cash),
        },
    }


def employee_payments(employee_id: int, start_at: datetime, end_at: datetime) -> dict:
    """An employee's payments in [start_at, end_at), newest first."""
    if employee_id is None:
        raise ValidationError("employee_id is required", field="employee_id")

    snapshot = fetch_ledger(normalize_utc(start_at), normalize_utc(end_at), employee_id=employee_id)
    payments = sorted(snapshot.payments, key=lambda p: (p.paid_at, p.id), reverse=True)

    return {
        "employee_id": employee_id,
        "range": {"start_at": to_utc_z(snapshot.start_at), "end_at": to_utc_z(snapshot.end_at)},
        "payments": [
            {
                "id": p.id,
                "amount": str(p.amount),
                "method": p.method,
                "status": p.status,
                "paid_at": to_utc_z(p.paid_at),
                "shift_id": p.shift_id,
            }
            for p in payments
        ],
        "count": len(payments),
        "total": str(round_money(sum((p.amount for p in payments), Decimal(0)))),
    }


# =============================================================================
# EXPORT
# =============================================================================

def _export_payload(closing: CashClosing) -> dict:
    return {
        "export_version": EXPORT_VERSION,
        "id": closing.id,
        "period_type": closing.period_type,
        "employee_id": closing.employee_id,
        "range": {"start_at": to_utc_z(closing.start_at), "end_at": to_utc_z(closing.end_at)},
        "expected": {
            "cash": str(closing.expected_cash_amount),
            "non_cash": str(closing.expected_non_cash_amount),
            "card": str(closing.expected_card_amount),
            "transfer": str(closing.expected_transfer_amount),
            "other": str(closing.expected_other_amount),
            "total": str(closing.expected_total_amount),
        },
        "declared": {
            "cash": str(closing.declared_cash_amount),
            "non_cash": str(closing.declared_non_cash_amount),
            "total": str(closing.declared_total_amount),
        },
        "difference": {
            "cash": str(closing.difference_cash),
            "non_cash": str(closing.difference_non_cash),
            "total": str(closing.difference_total),
        },
        "status": closing_status(closing),
        "notes": closing.notes,
        "created_by": closing.created_by,
        "created_at": to_utc_z(closing.created_at),
        "adjustments": [adj.to_dict() for adj in closing.adjustments],
        "computed": {
            "adjustment_total": str(adjustment_total(closing.adjustments)),
            "final_cash_balance": str(final_cash_balance(closing)),
        },
    }


def _flatten(payload: dict) -> list[tuple[str, object]]:
    rows = []
    for key, value in payload.items():
        if key == "adjustments":
            continue
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                rows.append((f"{key}.{sub_key}", sub_value))
        else:
            rows.append((key, value))
    return rows


ADJUSTMENT_COLUMNS = ["id", "type", "amount", "reason", "created_by", "created_at"]


def _export_csv(payload: dict) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["field", "value"])
    for field, value in _flatten(payload):
        writer.writerow([field, "" if value is None else value])
    writer.writerow([])
    writer.writerow(["adjustments"])
    writer.writerow(ADJUSTMENT_COLUMNS)
    for adj in payload["adjustments"]:
        writer.writerow([adj[col] for col in ADJUSTMENT_COLUMNS])
    return buffer.getvalue()


def _export_xlsx(payload: dict) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Closing"
    ws.append(["Field", "Value"])
    for field, value in _flatten(payload):
        ws.append([field, value])

    adj_ws = wb.create_sheet("Adjustments")
    adj_ws.append(ADJUSTMENT_COLUMNS)
    for adj in payload["adjustments"]:
        adj_ws.append([adj[col] for col in ADJUSTMENT_COLUMNS])

    for sheet in (ws, adj_ws):
        for cell in sheet[1]:
            cell.font = Font(bold=True)

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def export_closing(closing_id: int, fmt: str = "json"):
    """
    Read-only projection of a closing and its adjustments.

    Returns a dict for json, a str for csv and bytes for xlsx.
    """
    fmt = (fmt or "json").lower()
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(f"format must be one of {', '.join(EXPORT_FORMATS)}", field="format")

    payload = _export_payload(get_closing(closing_id))
    if fmt == "csv":
        return _export_csv(payload)
    if fmt == "xlsx":
        return _export_xlsx(payload)
    return payload
