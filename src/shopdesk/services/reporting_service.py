from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Callable, Iterable, Optional

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo

from shopdesk.domain.models import (
    EXPENSE_TYPES,
    INCOME_TYPES,
    Currency,
    PaymentMethod,
    Transaction,
    User,
)
from shopdesk.services.auth_service import require_authenticated
from shopdesk.services.fx_service import parse_currency

Converter = Callable[[float, Currency], float]


@dataclass(frozen=True)
class PeriodTotals:
    income: float = 0.0
    expense: float = 0.0

    @property
    def net(self) -> float:
        return self.income - self.expense


@dataclass(frozen=True)
class MonthTotals:
    year: int
    month: int
    income: float
    expense: float

    @property
    def net(self) -> float:
        return self.income - self.expense

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


def summarize(transactions: Iterable[Transaction], convert: Converter) -> PeriodTotals:
    """Fold transactions into display-currency income and expense sums."""
    income = 0.0
    expense = 0.0
    for t in transactions:
        amount = convert(t.amount, t.currency)
        if t.type in INCOME_TYPES:
            income += amount
        elif t.type in EXPENSE_TYPES:
            expense += amount
    return PeriodTotals(income=income, expense=expense)


def cash_summary(transactions: Iterable[Transaction], convert: Converter) -> PeriodTotals:
    return summarize((t for t in transactions if t.payment_method == PaymentMethod.CASH), convert)


def trailing_months(today: date, months: int) -> list[tuple[int, int]]:
    """``(year, month)`` keys of the window ending at ``today``'s month, oldest first."""
    keys = []
    y, m = today.year, today.month
    for _ in range(max(0, int(months))):
        keys.append((y, m))
        y, m = (y - 1, 12) if m == 1 else (y, m - 1)
    return list(reversed(keys))


def monthly_totals(
    transactions: Iterable[Transaction],
    convert: Converter,
    months: int = 6,
    today: Optional[date] = None,
) -> list[MonthTotals]:
    keys = trailing_months(today or date.today(), months)
    buckets: dict[tuple[int, int], list[Transaction]] = {k: [] for k in keys}
    for t in transactions:
        key = (int(t.date[:4]), int(t.date[5:7]))
        if key in buckets:
            buckets[key].append(t)

    out = []
    for y, m in keys:
        totals = summarize(buckets[(y, m)], convert)
        out.append(MonthTotals(year=y, month=m, income=totals.income, expense=totals.expense))
    return out


class ReportingService:
    """Read-side folds over stored transactions. Nothing computed here is persisted."""

    def __init__(
        self,
        repo,
        fx,
        display_currency: Currency | str = Currency.TRY,
        months: int = 6,
        today: Callable[[], date] = date.today,
    ):
        self.repo = repo
        self.fx = fx
        self.display_currency = parse_currency(display_currency)
        self.months = int(months)
        self.today = today

    def _converter(self, currency: Currency | str | None) -> Converter:
        # every amount goes through the current rate, whatever its record date
        return self.fx.converter(currency or self.display_currency)

    def period_summary(
        self,
        actor: Optional[User],
        start: Optional[str] = None,
        end: Optional[str] = None,
        currency: Currency | str | None = None,
    ) -> PeriodTotals:
        user = require_authenticated(actor)
        return summarize(self.repo.list_transactions(user.id, start, end), self._converter(currency))

    def cash_summary(
        self,
        actor: Optional[User],
        start: Optional[str] = None,
        end: Optional[str] = None,
        currency: Currency | str | None = None,
    ) -> PeriodTotals:
        user = require_authenticated(actor)
        rows = self.repo.list_transactions(user.id, start, end, PaymentMethod.CASH)
        return cash_summary(rows, self._converter(currency))

    def monthly_totals(self, actor: Optional[User], currency: Currency | str | None = None) -> list[MonthTotals]:
        user = require_authenticated(actor)
        today = self.today()
        first = trailing_months(today, self.months)[0] if self.months > 0 else (today.year, today.month)
        start = f"{first[0]:04d}-{first[1]:02d}-01"
        rows = self.repo.list_transactions(user.id, start, None)
        return monthly_totals(rows, self._converter(currency), self.months, today)

    def export_report_excel(self, actor: Optional[User], path: str, start: str, end: str) -> None:
        user = require_authenticated(actor)
        convert = self._converter(None)
        rows = self.repo.list_transactions(user.id, start, end)
        totals = summarize(rows, convert)
        cash = cash_summary(rows, convert)
        ccy = self.display_currency.value

        wb = Workbook()

        def money(cell):
            cell.number_format = "#,##0.00"

        def bold_row(ws, r):
            for c in ws[r]:
                c.font = Font(bold=True)

        def set_widths(ws, widths: dict[str, int]):
            for col, w in widths.items():
                ws.column_dimensions[col].width = w

        # -------- 1) Summary --------
        ws = wb.active
        ws.title = "Summary"
        ws["A1"] = "Summary"
        ws["A1"].font = Font(bold=True, size=14)
        ws["A3"] = "Window"
        ws["B3"] = f"{start}  ->  {end}"

        lines = [
            ("Transactions", len(rows), "int"),
            (f"Income {ccy}", totals.income, "money"),
            (f"Expense {ccy}", totals.expense, "money"),
            (f"Net {ccy}", totals.net, "money"),
            (f"Cash net {ccy}", cash.net, "money"),
        ]
        for i, (label, val, kind) in enumerate(lines):
            r = 5 + i
            ws[f"A{r}"] = label
            ws[f"B{r}"] = val
            if kind == "money":
                money(ws[f"B{r}"])
        set_widths(ws, {"A": 22, "B": 34})

        # -------- 2) Detail --------
        ws2 = wb.create_sheet("Transactions")
        ws2.append(["ID", "Date", "Type", "Method", "Amount", "Currency", f"Amount {ccy}", "Description"])
        bold_row(ws2, 1)
        for r, t in enumerate(rows, start=2):
            ws2.append([
                t.id, t.date, t.type.value, t.payment_method.value,
                float(t.amount), t.currency.value, convert(t.amount, t.currency), t.description or "",
            ])
            money(ws2[f"E{r}"])
            money(ws2[f"G{r}"])
        ws2.freeze_panes = "A2"
        set_widths(ws2, {"A": 8, "B": 12, "C": 10, "D": 8, "E": 14, "F": 9, "G": 16, "H": 34})
        if ws2.max_row >= 2:
            ref = f"A1:{get_column_letter(8)}{ws2.max_row}"
            tab = Table(displayName="TransactionDetail", ref=ref)
            tab.tableStyleInfo = TableStyleInfo(name="TableStyleMedium9", showRowStripes=True, showColumnStripes=False)
            ws2.add_table(tab)

        wb.save(path)
