"""
Cash closing tests.

Verifies:
- Variance classification and unclamped differences
- Adjustments never touch the snapshot
- Consecutive closings of a scope tile time without gaps or overlaps
- Preview is read-only and repeatable
- Export reproduces the committed figures
"""

import csv
import io
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from openpyxl import load_workbook

from cashoffice.errors import ConflictError, InvalidStateError, ValidationError
from cashoffice.extensions import db
from cashoffice.models import AuditEvent, CashClosing
from cashoffice.services import closing_service


EPOCH = datetime(2026, 1, 1)
DAY1 = datetime(2026, 3, 1, 10, 0)
CLOSE1 = datetime(2026, 3, 1, 18, 0)
CLOSE2 = datetime(2026, 3, 2, 18, 0)
NOW = datetime(2026, 3, 5, 12, 0)


def _close(admin, declared_cash, declared_non_cash="0", **kwargs):
    kwargs.setdefault("now", NOW)
    return closing_service.create_closing(
        kwargs.pop("period_type", "daily"),
        declared_cash,
        declared_non_cash,
        created_by=admin.id,
        **kwargs,
    )


# =============================================================================
# COMMIT & VARIANCE
# =============================================================================


class TestCreateClosing:

    def test_shortage_is_reported_unclamped(self, admin_user, ledger):
        ledger.payment("500.00", at=DAY1)

        closing = _close(admin_user, "480.00", end_at=CLOSE1)

        assert closing.expected_cash_amount == Decimal("500.00")
        assert closing.difference_cash == Decimal("-20.00")
        assert closing_service.closing_status(closing) == "shortage"

    def test_first_period_starts_at_epoch(self, admin_user, ledger):
        ledger.payment("10.00", at=DAY1)
        closing = _close(admin_user, "10.00", end_at=CLOSE1)

        assert closing.start_at == EPOCH
        assert closing.end_at == CLOSE1
        assert closing_service.closing_status(closing) == "balanced"

    def test_totals_and_breakdown(self, admin_user, ledger):
        cash = ledger.payment("200.00", at=DAY1)
        ledger.payment("80.00", "card", at=DAY1)
        ledger.payment("40.00", "transfer", at=DAY1)
        ledger.refund(cash, "30.00", at=DAY1 + timedelta(hours=1))
        ledger.movement("IN", "15.00", at=DAY1)
        ledger.movement("OUT", "5.00", at=DAY1)

        closing = _close(admin_user, "180.00", "120.00", end_at=CLOSE1)

        assert closing.cash_in_total == Decimal("200.00")
        assert closing.cash_refunds_total == Decimal("30.00")
        assert closing.pay_ins_total == Decimal("15.00")
        assert closing.payouts_total == Decimal("5.00")
        assert closing.expected_cash_amount == Decimal("180.00")
        assert closing.expected_card_amount == Decimal("80.00")
        assert closing.expected_transfer_amount == Decimal("40.00")
        assert closing.expected_non_cash_amount == Decimal("120.00")
        assert closing.expected_total_amount == closing.expected_cash_amount + closing.expected_non_cash_amount
        assert closing.declared_total_amount == Decimal("300.00")
        assert closing.difference_total == Decimal("0.00")

    def test_commit_writes_audit_event(self, admin_user, ledger):
        closing = _close(admin_user, "0", end_at=CLOSE1)
        event = db.session.query(AuditEvent).filter_by(event_type="cash_closing.created").one()
        assert event.closing_id == closing.id

    def test_future_end_rejected(self, admin_user):
        with pytest.raises(ValidationError):
            _close(admin_user, "0", end_at=NOW + timedelta(minutes=1))

    def test_negative_declared_rejected(self, admin_user):
        with pytest.raises(ValidationError):
            _close(admin_user, "-1", end_at=CLOSE1)

    def test_unknown_period_type_rejected(self, admin_user):
        with pytest.raises(ValidationError):
            _close(admin_user, "0", end_at=CLOSE1, period_type="weekly")

    def test_empty_period_rejected(self, admin_user):
        _close(admin_user, "0", end_at=CLOSE1)
        with pytest.raises(InvalidStateError):
            _close(admin_user, "0", end_at=CLOSE1)

    def test_start_mismatch_conflicts(self, admin_user):
        _close(admin_user, "0", end_at=CLOSE1)
        with pytest.raises(ConflictError) as exc:
            _close(admin_user, "0", end_at=CLOSE2, start_at=CLOSE1 - timedelta(hours=1))
        assert exc.value.code == "CLOSING_PERIOD_MISMATCH"

    def test_matching_start_accepted(self, admin_user):
        _close(admin_user, "0", end_at=CLOSE1)
        closing = _close(admin_user, "0", end_at=CLOSE2, start_at=CLOSE1)
        assert closing.start_at == CLOSE1

    def test_concurrent_commit_loses_on_unique_start(self, admin_user, monkeypatch):
        stale = closing_service.get_open_period(None, now=CLOSE1)
        _close(admin_user, "0", end_at=CLOSE1)

        # Second writer computed its window before the first one committed
        monkeypatch.setattr(closing_service, "get_open_period", lambda *a, **kw: stale)
        monkeypatch.setattr(closing_service, "_check_partition", lambda *a, **kw: None)

        with pytest.raises(ConflictError) as exc:
            _close(admin_user, "0", end_at=CLOSE1)
        assert exc.value.code == "CLOSING_PERIOD_TAKEN"
        assert db.session.query(CashClosing).count() == 1

    def test_overlap_is_checked_before_insert(self, admin_user, monkeypatch):
        stale = closing_service.get_open_period(None, now=CLOSE2)
        _close(admin_user, "0", end_at=CLOSE1)

        monkeypatch.setattr(closing_service, "get_open_period", lambda *a, **kw: stale)

        with pytest.raises(ConflictError) as exc:
            _close(admin_user, "0", end_at=CLOSE2)
        assert exc.value.code == "CLOSING_OVERLAP"


# =============================================================================
# PARTITION
# =============================================================================


class TestPartition:

    def test_sequential_closings_are_contiguous(self, admin_user, ledger):
        ledger.payment("100.00", at=DAY1)
        ledger.payment("60.00", at=CLOSE1)  # belongs to the second window

        first = _close(admin_user, "100.00", end_at=CLOSE1)
        second = _close(admin_user, "60.00", end_at=CLOSE2)

        assert second.start_at == first.end_at
        assert first.expected_cash_amount == Decimal("100.00")
        assert second.expected_cash_amount == Decimal("60.00")

    def test_default_end_is_now(self, admin_user):
        first = _close(admin_user, "0", end_at=CLOSE1)
        second = _close(admin_user, "0")
        assert second.start_at == first.end_at
        assert second.end_at == NOW

    def test_late_refund_hits_open_period(self, admin_user, ledger):
        payment = ledger.payment("100.00", at=DAY1)
        first = _close(admin_user, "100.00", end_at=CLOSE1)

        ledger.refund(payment, "100.00", at=CLOSE1 + timedelta(hours=2))
        second = _close(admin_user, "0", end_at=CLOSE2)

        assert db.session.get(CashClosing, first.id).expected_cash_amount == Decimal("100.00")
        assert second.expected_cash_amount == Decimal("-100.00")

    def test_scopes_are_independent(self, admin_user, staff_user, other_staff_user, ledger):
        ledger.payment("30.00", at=DAY1, operator=staff_user)
        ledger.payment("70.00", at=DAY1, operator=other_staff_user)

        mine = _close(admin_user, "30.00", end_at=CLOSE1, employee_id=staff_user.id)
        everyone = _close(admin_user, "100.00", end_at=CLOSE1)

        assert mine.expected_cash_amount == Decimal("30.00")
        assert everyone.expected_cash_amount == Decimal("100.00")
        assert everyone.start_at == EPOCH
        assert closing_service.get_open_period(staff_user.id, now=NOW).start_at == CLOSE1
        assert closing_service.get_open_period(other_staff_user.id, now=NOW).start_at == EPOCH


# =============================================================================
# PREVIEW
# =============================================================================


class TestPreview:

    def test_preview_is_repeatable_and_persists_nothing(self, ledger):
        ledger.payment("42.00", at=DAY1)

        first = closing_service.preview_closing(now=NOW)
        second = closing_service.preview_closing(now=NOW)

        assert first == second
        assert first["expected"]["cash"] == "42.00"
        assert db.session.query(CashClosing).count() == 0

    def test_preview_with_declared(self, ledger):
        ledger.payment("500.00", at=DAY1)
        preview = closing_service.preview_closing(declared_cash="480", declared_non_cash="0", now=NOW)

        assert preview["difference"]["cash"] == "-20.00"
        assert preview["status"] == "shortage"

    def test_preview_matches_commit(self, admin_user, ledger):
        ledger.payment("12.34", at=DAY1)
        ledger.payment("5.00", "card", at=DAY1)

        preview = closing_service.preview_closing(now=CLOSE1)
        closing = _close(admin_user, "12.34", "5.00", end_at=CLOSE1)

        assert preview["expected"]["cash"] == str(closing.expected_cash_amount)
        assert preview["expected"]["non_cash"] == str(closing.expected_non_cash_amount)

    def test_calculate_expected_for_window(self, ledger):
        ledger.payment("10.00", at=DAY1)
        ledger.payment("20.00", at=CLOSE2)

        amounts = closing_service.calculate_expected_for_window(DAY1, CLOSE2)
        assert amounts.expected_cash == Decimal("10.00")


# =============================================================================
# ADJUSTMENTS & IMMUTABILITY
# =============================================================================


class TestAdjustments:

    def test_adjustment_leaves_snapshot_untouched(self, admin_user, ledger):
        ledger.payment("500.00", at=DAY1)
        closing = _close(admin_user, "480.00", end_at=CLOSE1)

        closing_service.add_adjustment(closing.id, "ADD", "20.00", "Found in safe", created_by=admin_user.id)

        reloaded = closing_service.get_closing(closing.id)
        assert reloaded.declared_cash_amount == Decimal("480.00")
        assert reloaded.difference_cash == Decimal("-20.00")
        assert closing_service.final_cash_balance(reloaded) == Decimal("500.00")

        detail = closing_service.closing_detail(reloaded)
        assert detail["computed"]["final_cash_balance"] == "500.00"
        assert detail["status"] == "shortage"
        assert len(detail["adjustments"]) == 1

    def test_subtract_adjustment(self, admin_user):
        closing = _close(admin_user, "100.00", end_at=CLOSE1)
        closing_service.add_adjustment(closing.id, "subtract", "7.50", "Counterfeit note", created_by=admin_user.id)
        assert closing_service.final_cash_balance(closing_service.get_closing(closing.id)) == Decimal("92.50")

    @pytest.mark.parametrize("type,amount,reason", [
        ("BONUS", "5", "x"),
        ("ADD", "0", "x"),
        ("ADD", "-5", "x"),
        ("ADD", "5", "  "),
    ])
    def test_invalid_adjustments(self, admin_user, type, amount, reason):
        closing = _close(admin_user, "0", end_at=CLOSE1)
        with pytest.raises(ValidationError):
            closing_service.add_adjustment(closing.id, type, amount, reason, created_by=admin_user.id)

    def test_closing_row_rejects_updates(self, admin_user):
        closing = _close(admin_user, "10.00", end_at=CLOSE1)

        closing.declared_cash_amount = Decimal("999.00")
        with pytest.raises(InvalidStateError):
            db.session.commit()
        db.session.rollback()

        assert closing_service.get_closing(closing.id).declared_cash_amount == Decimal("10.00")


# =============================================================================
# LIST & EXPORT
# =============================================================================


class TestListAndExport:

    def test_list_filters_by_status(self, admin_user, staff_user, ledger):
        ledger.payment("100.00", at=DAY1, operator=staff_user)
        _close(admin_user, "90.00", end_at=CLOSE1, employee_id=staff_user.id)
        _close(admin_user, "100.00", end_at=CLOSE1)

        shortages = closing_service.list_closings(status="shortage")
        balanced = closing_service.list_closings(status="balanced")

        assert [c["status"] for c in shortages["closings"]] == ["shortage"]
        assert [c["status"] for c in balanced["closings"]] == ["balanced"]

        everything = closing_service.list_closings()
        assert everything["pagination"]["total"] == 2
        assert everything["summary"]["total_expected_cash"] == "200.00"
        assert everything["summary"]["total_difference_cash"] == "-10.00"

    def test_json_export_reproduces_snapshot(self, admin_user, ledger):
        ledger.payment("500.00", at=DAY1)
        ledger.payment("25.00", "card", at=DAY1)
        closing = _close(admin_user, "480.00", "25.00", end_at=CLOSE1)
        closing_service.add_adjustment(closing.id, "ADD", "20.00", "Found in safe", created_by=admin_user.id)

        exported = closing_service.export_closing(closing.id, "json")

        assert exported["expected"]["cash"] == str(closing.expected_cash_amount)
        assert exported["expected"]["non_cash"] == str(closing.expected_non_cash_amount)
        assert exported["declared"]["cash"] == "480.00"
        assert exported["difference"]["cash"] == "-20.00"
        assert exported["range"] == {"start_at": "2026-01-01T00:00:00Z", "end_at": "2026-03-01T18:00:00Z"}
        assert exported["computed"]["final_cash_balance"] == "500.00"
        assert exported["adjustments"][0]["reason"] == "Found in safe"

    def test_csv_export(self, admin_user, ledger):
        ledger.payment("500.00", at=DAY1)
        closing = _close(admin_user, "480.00", end_at=CLOSE1)

        text = closing_service.export_closing(closing.id, "csv")
        rows = {row[0]: row[1] for row in csv.reader(io.StringIO(text)) if len(row) == 2}

        assert rows["declared.cash"] == "480.00"
        assert rows["expected.cash"] == "500.00"
        assert rows["status"] == "shortage"

    def test_xlsx_export(self, admin_user, ledger):
        ledger.payment("500.00", at=DAY1)
        closing = _close(admin_user, "480.00", end_at=CLOSE1)
        closing_service.add_adjustment(closing.id, "ADD", "20.00", "Found in safe", created_by=admin_user.id)

        data = closing_service.export_closing(closing.id, "xlsx")
        wb = load_workbook(io.BytesIO(data))

        values = {row[0]: row[1] for row in wb["Closing"].iter_rows(min_row=2, values_only=True)}
        assert values["difference.cash"] == "-20.00"
        assert wb["Adjustments"].max_row == 2

    def test_unknown_format(self, admin_user):
        closing = _close(admin_user, "0", end_at=CLOSE1)
        with pytest.raises(ValidationError):
            closing_service.export_closing(closing.id, "pdf")


# =============================================================================
# RECONCILIATION READS
# =============================================================================


class TestMonthlySummary:

    def test_per_employee_totals(self, staff_user, other_staff_user, ledger):
        cash = ledger.payment("100.00", at=datetime(2026, 3, 2, 9, 0), operator=staff_user)
        ledger.payment("40.00", "card", at=datetime(2026, 3, 3, 9, 0), operator=staff_user)
        ledger.payment("60.00", at=datetime(2026, 3, 4, 9, 0), operator=other_staff_user)
        ledger.refund(cash, "10.00", at=datetime(2026, 3, 5, 9, 0), operator=staff_user)
        # Outside the month on both sides
        ledger.payment("999.00", at=datetime(2026, 2, 28, 23, 59), operator=staff_user)
        ledger.payment("999.00", at=datetime(2026, 4, 1, 0, 0), operator=staff_user)

        summary = closing_service.monthly_summary("2026-03")

        assert summary["range"] == {"start_at": "2026-03-01T00:00:00Z", "end_at": "2026-04-01T00:00:00Z"}
        assert [e["employee_id"] for e in summary["employees"]] == [staff_user.id, other_staff_user.id]

        anna = summary["employees"][0]
        assert anna["employee_name"] == "Anna"
        assert anna["payments_count"] == 2
        assert anna["cash_total"] == "100.00"
        assert anna["non_cash_total"] == "40.00"
        assert anna["total"] == "140.00"
        assert anna["refunds_total"] == "10.00"
        assert anna["net_total"] == "130.00"
        assert anna["expected_cash"] == "90.00"

        grand = summary["grand_total"]
        assert grand["payments_count"] == 3
        assert grand["gross_total"] == "200.00"
        assert grand["refunds_total"] == "10.00"
        assert grand["net_revenue"] == "190.00"

    def test_december_rolls_into_next_year(self):
        summary = closing_service.monthly_summary("2026-12")
        assert summary["range"]["end_at"] == "2027-01-01T00:00:00Z"
        assert summary["employees"] == []

    @pytest.mark.parametrize("month", [None, "", "2026-13", "March", "2026/03"])
    def test_bad_month(self, month):
        with pytest.raises(ValidationError):
            closing_service.monthly_summary(month)


class TestEmployeePayments:

    def test_newest_first_and_scoped(self, staff_user, other_staff_user, ledger):
        first = ledger.payment("10.00", at=DAY1, operator=staff_user)
        second = ledger.payment("25.00", "card", at=DAY1 + timedelta(hours=1), operator=staff_user)
        ledger.payment("70.00", at=DAY1, operator=other_staff_user)
        ledger.payment("5.00", at=CLOSE1, operator=staff_user)

        result = closing_service.employee_payments(staff_user.id, DAY1, CLOSE1)

        assert [p["id"] for p in result["payments"]] == [second.id, first.id]
        assert result["payments"][0]["method"] == "card"
        assert result["count"] == 2
        assert result["total"] == "35.00"

    def test_employee_required(self):
        with pytest.raises(ValidationError):
            closing_service.employee_payments(None, DAY1, CLOSE1)
