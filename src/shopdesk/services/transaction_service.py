from __future__ import annotations

import logging
from datetime import date as Date, datetime
from typing import Callable, Iterable, Optional

from shopdesk.domain.errors import NotFoundError, ValidationError
from shopdesk.domain.models import (
    Currency,
    MovementType,
    PaymentMethod,
    Transaction,
    TransactionType,
    User,
)
from shopdesk.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork
from shopdesk.services.auth_service import require_action, require_authenticated
from shopdesk.services.serial_service import SerialService
from shopdesk.services.stock_service import StockLedgerService

log = logging.getLogger("shopdesk.sales")


_DIRECTIONS = {
    TransactionType.SALE: MovementType.OUT,
    TransactionType.EXPENSE: MovementType.OUT,
    TransactionType.PURCHASE: MovementType.IN,
    TransactionType.INCOME: MovementType.IN,
}


def stock_direction(transaction_type: TransactionType | str) -> MovementType:
    """Sales and expenses take goods out; purchases and income bring them in."""
    return _DIRECTIONS[TransactionType(transaction_type)]


class TransactionService:
    def __init__(
        self,
        repo,
        stock: StockLedgerService | None = None,
        serials: SerialService | None = None,
        fx=None,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repo = repo
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))
        self.stock = stock or StockLedgerService(repo, self.uow_factory, clock=clock)
        self.serials = serials or SerialService(repo, self.uow_factory, clock)
        self.fx = fx
        self.clock = clock

    def record(
        self,
        actor: Optional[User],
        type: TransactionType | str,
        amount: float,
        currency: Currency | str = Currency.TRY,
        payment_method: PaymentMethod | str = PaymentMethod.CASH,
        date: Optional[str] = None,
        account_id: Optional[int] = None,
        product_id: Optional[int] = None,
        bank_account_id: Optional[int] = None,
        quantity: Optional[int] = None,
        description: Optional[str] = None,
        affects_stock: bool = False,
        serial_sales: Iterable[dict] = (),
    ) -> Transaction:
        """Append a financial event and, optionally, its stock and serial effects.

        Balances of accounts and bank accounts are never touched. The row, the
        stock movement and the serial updates commit together or not at all.
        """
        user = require_authenticated(actor)
        kind = self._enum(TransactionType, type, "transaction type")
        ccy = self._enum(Currency, currency.upper() if isinstance(currency, str) else currency, "currency")
        method = self._enum(PaymentMethod, payment_method, "payment method")

        try:
            value = float(amount)
        except (TypeError, ValueError):
            raise ValidationError("Amount must be a number.") from None
        if value <= 0:
            raise ValidationError("Amount must be > 0.")
        if method == PaymentMethod.BANK and bank_account_id is None:
            raise ValidationError("Bank payments require a bank account.")
        if quantity is not None and int(quantity) <= 0:
            raise ValidationError("Quantity must be > 0.")
        if affects_stock and (product_id is None or quantity is None):
            raise ValidationError("Stock-affecting transactions require a product and a quantity.")

        sales = [self._serial_sale(s) for s in serial_sales]
        if sales and kind != TransactionType.SALE:
            raise ValidationError("Serials can only be sold by a sale transaction.")
        if len({sid for sid, _price in sales}) != len(sales):
            raise ValidationError("Each serial can be sold once per transaction.")

        day = date or self.clock().date().isoformat()
        self._validate_date(day)
        rate = self.fx.cached_rate() if self.fx is not None else None

        with self.uow_factory() as uow:
            if product_id is not None and not uow.get_product(user.id, int(product_id)):
                raise NotFoundError("Product not found.")
            if account_id is not None and not uow.get_account(user.id, int(account_id)):
                raise NotFoundError("Account not found.")
            if bank_account_id is not None and not uow.get_bank_account(user.id, int(bank_account_id)):
                raise NotFoundError("Bank account not found.")
            for serial_id, _price in sales:
                serial = uow.get_serial(user.id, serial_id)
                if not serial:
                    raise NotFoundError("Serial not found.")
                if product_id is not None and serial.product_id != int(product_id):
                    raise ValidationError(f"Serial {serial.serial_number} belongs to another product.")
            tx =uow.insert_transaction(user.id, {
                "type": kind,
                "amount": value,
                "currency": ccy,
                "payment_method": method,
                "date": day,
                "account_id": account_id,
                "product_id": product_id,
                "bank_account_id": bank_account_id,
                "quantity": int(quantity) if quantity is not None else None,
                "description": description,
                "fx_usd_try": rate.usd_to_try if rate is not None else None,
                "created_at": self._now(),
            })
            if affects_stock:
                self.stock.apply_within(
                    uow, user, int(product_id), stock_direction(kind), int(quantity),
                    f"{kind.value} #{tx.id}", tx.id,
                )
            for serial_id, sale_price in sales:
                self.serials.sell_within(uow, user, serial_id, sale_price, account_id, tx.id)

        log.info(
            "transaction_recorded id=%s type=%s amount=%.2f currency=%s method=%s stock=%s serials=%s actor=%s",
            tx.id, kind.value, value, ccy.value, method.value, bool(affects_stock), len(sales), user.id,
        )
        return tx

    def cancel(self, actor: Optional[User], transaction_id: int) -> None:
        """Delete the row. Stock movements and serial sales it caused stay in place."""
        user = require_action(actor, "delete_transaction")
        if not self.repo.delete_transaction(user.id, int(transaction_id)):
            raise NotFoundError("Transaction not found.")
        log.info("transaction_cancelled id=%s actor=%s", transaction_id, user.id)

    def get_transaction(self, actor: Optional[User], transaction_id: int) -> Transaction:
        user = require_authenticated(actor)
        tx = self.repo.get_transaction(user.id, int(transaction_id))
        if not tx:
            raise NotFoundError("Transaction not found.")
        return tx

    def list_transactions(
        self,
        actor: Optional[User],
        start: Optional[str] = None,
        end: Optional[str] = None,
        payment_method: PaymentMethod | str | None = None,
    ) -> list[Transaction]:
        """Transactions with ``start <= date < end``, newest first."""
        user = require_authenticated(actor)
        method = self._enum(PaymentMethod, payment_method, "payment method") if payment_method else None
        return self.repo.list_transactions(user.id, start, end, method)

    def _serial_sale(self, item: dict) -> tuple[int, float]:
        try:
            return int(item["serial_id"]), float(item["sale_price"])
        except (KeyError, TypeError, ValueError):
            raise ValidationError("Serial sales need serial_id and sale_price.") from None

    def _validate_date(self, value: str) -> None:
        try:
            Date.fromisoformat(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid date: {value}. Use YYYY-MM-DD.") from None

    def _enum(self, enum_type, value, label: str):
        try:
            return enum_type(value)
        except ValueError:
            raise ValidationError(f"Unknown {label}: {value}") from None

    def _now(self) -> str:
        return self.clock().replace(microsecond=0).isoformat(sep=" ")
