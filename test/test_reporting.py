from datetime import date
from pathlib import Path

import pytest
from openpyxl import load_workbook

from conftest import admin_of, make_repo

from shopdesk.domain.models import Currency, ExchangeRate, PaymentMethod, Transaction, TransactionType
from shopdesk.services.account_service import AccountService
from shopdesk.services.fx_service import FxService
from shopdesk.services.reporting_service import (
    ReportingService,
    cash_summary,
    monthly_totals,
    summarize,
    trailing_months,
)
from shopdesk.services.transaction_service import TransactionService


def _tx(tid, kind, amount, currency="TRY", method="cash", day="2024-06-10"):
    return Transaction(
        id=tid,
        user_id=1,
        type=TransactionType(kind),
        amount=float(amount),
        currency=Currency(currency),
        payment_method=PaymentMethod(method),
        date=day,
        account_id=None,
        product_id=None,
        bank_account_id=None,
        quantity=None,
        description=None,
        fx_usd_try=None,
        created_at=f"{day} 10:00:00",
    )


def identity(amount, _currency):
    return float(amount)


def usd_at_30(amount, currency):
    return float(amount) * 30 if currency == Currency.USD else float(amount)


def test_summarize_partitions_income_and_expense():
    rows = [
        _tx(1, "sale", 1000),
        _tx(2, "income", 200),
        _tx(3, "expense", 150),
        _tx(4, "purchase", 400, method="bank"),
    ]

    totals = summarize(rows, identity)

    assert totals.income == 1200
    assert totals.expense == 550
    assert totals.net == 650


def test_summarize_converts_through_display_currency():
    totals = summarize([_tx(1, "sale", 10, "USD"), _tx(2, "expense", 100)], usd_at_30)
    assert totals.income == 300
    assert totals.net == 200


def test_cash_summary_ignores_bank_payments():
    rows = [_tx(1, "sale", 500), _tx(2, "sale", 700, method="bank"), _tx(3, "expense", 50)]
    totals = cash_summary(rows, identity)
    assert totals.income == 500
    assert totals.expense == 50


def test_trailing_months_cross_year_boundary():
    assert trailing_months(date(2024, 2, 15), 4) == [(2023, 11), (2023, 12), (2024, 1), (2024, 2)]


def test_monthly_totals_include_empty_months_oldest_first():
    rows = [
        _tx(1, "sale", 100, day="2024-01-05"),
        _tx(2, "expense", 40, day="2024-01-20"),
        _tx(3, "income", 70, day="2024-03-02"),
        _tx(4, "sale", 999, day="2023-06-01"),
    ]

    buckets = monthly_totals(rows, identity, months=3, today=date(2024, 3, 15))

    assert [b.label for b in buckets] == ["2024-01", "2024-02", "2024-03"]
    assert [(b.income, b.expense) for b in buckets] == [(100, 40), (0, 0), (70, 0)]
    assert buckets[0].net == 60


def test_reporting_service_reads_stored_transactions(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    repo.set_fx_rate(ExchangeRate(usd_to_try=30.0, try_to_usd=1 / 30.0, timestamp=0.0, fetched_at=0.0))
    fx = FxService(repo, clock=lambda: 0.0)
    bank = AccountService(repo).create_bank_account(admin, "Ana Hesap")
    txs = TransactionService(repo, fx=fx)
    txs.record(admin, "sale", 10, "USD", date="2024-05-02")
    txs.record(admin, "expense", 60, "TRY", "bank", bank_account_id=bank.id, date="2024-05-03")
    txs.record(admin, "income", 40, "TRY", date="2024-06-01")

    reporting = ReportingService(repo, fx, display_currency="TRY", months=2, today=lambda: date(2024, 6, 20))

    may = reporting.period_summary(admin, start="2024-05-01", end="2024-06-01")
    assert may.income == pytest.approx(300)
    assert may.expense == pytest.approx(60)

    assert reporting.cash_summary(admin).expense == 0
    in_usd = reporting.period_summary(admin, currency="USD")
    assert in_usd.income == pytest.approx(10 + 40 / 30)

    months = reporting.monthly_totals(admin)
    assert [m.label for m in months] == ["2024-05", "2024-06"]
    assert months[0].net == pytest.approx(240)
    assert months[1].income == pytest.approx(40)


def test_report_export_writes_summary_and_detail(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    fx = FxService(repo)
    txs = TransactionService(repo, fx=fx)
    txs.record(admin, "sale", 1000, date="2024-05-02", description="Kulaklık")
    txs.record(admin, "expense", 250, date="2024-05-09")

    out = tmp_path / "report.xlsx"
    ReportingService(repo, fx).export_report_excel(admin, str(out), "2024-05-01", "2024-06-01")

    wb = load_workbook(out)
    assert wb.sheetnames == ["Summary", "Transactions"]
    summary = wb["Summary"]
    assert summary["B5"].value == 2
    assert summary["B8"].value == pytest.approx(750)
    detail = wb["Transactions"]
    assert detail.max_row == 3
    assert detail["H3"].value == "Kulaklık"
