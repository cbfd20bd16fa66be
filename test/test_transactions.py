from datetime import datetime
from pathlib import Path

import pytest

from conftest import FixedClock, admin_of, make_repo, make_user

from shopdesk.domain.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotAuthenticatedError,
    NotFoundError,
    ValidationError,
)
from shopdesk.domain.models import (
    Currency,
    ExchangeRate,
    MovementType,
    PaymentMethod,
    SerialStatus,
    TransactionType,
)
from shopdesk.repositories.unit_of_work import SqliteUnitOfWork
from shopdesk.services.account_service import AccountService
from shopdesk.services.fx_service import FxService
from shopdesk.services.inventory_service import InventoryService
from shopdesk.services.serial_service import SerialService
from shopdesk.services.transaction_service import TransactionService, stock_direction


class FailingSerialUnitOfWork(SqliteUnitOfWork):
    def transition_serial(self, user_id, serial_id, expected, values):
        raise RuntimeError("serial write failed")


def test_stock_direction_table():
    assert stock_direction("sale") == MovementType.OUT
    assert stock_direction(TransactionType.EXPENSE) == MovementType.OUT
    assert stock_direction("purchase") == MovementType.IN
    assert stock_direction("income") == MovementType.IN


def test_sale_with_stock_update_writes_one_out_movement(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    p = InventoryService(repo).add_product(admin, "Kulaklık", quantity=10, sale_price=1000)
    tx_service = TransactionService(repo)

    tx = tx_service.record(
        admin, "sale", 1000, "TRY", "cash", date="2024-03-05",
        product_id=p.id, quantity=1, affects_stock=True,
    )

    assert tx.type == TransactionType.SALE
    assert tx.amount == 1000
    assert tx.currency == Currency.TRY
    assert repo.get_product_by_id(admin.id, p.id).quantity == 9

    movements = repo.list_movements(admin.id, p.id)
    assert len(movements) == 1
    assert movements[0].type == MovementType.OUT
    assert movements[0].quantity == 1
    assert movements[0].reference_id == tx.id


def test_transaction_without_stock_flag_leaves_inventory_and_balances(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    p = InventoryService(repo).add_product(admin, "Kulaklık", quantity=10)
    accounts = AccountService(repo)
    customer = accounts.create_account(admin, "Ahmet Yılmaz", "customer", balance=250)
    bank = accounts.create_bank_account(admin, "Ana Hesap", bank_name="Ziraat", balance=5000)

    TransactionService(repo).record(
        admin, "sale", 400, "TRY", "bank", account_id=customer.id,
        bank_account_id=bank.id, product_id=p.id, quantity=2,
    )

    assert repo.get_product_by_id(admin.id, p.id).quantity == 10
    assert repo.list_movements(admin.id) == []
    assert accounts.get_account(admin, customer.id).balance == 250
    assert accounts.get_bank_account(admin, bank.id).balance == 5000


def test_purchase_with_stock_update_brings_goods_in(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    p = InventoryService(repo).add_product(admin, "Ekran", quantity=1)

    TransactionService(repo).record(
        admin, "purchase", 120, "USD", "cash", product_id=p.id, quantity=4, affects_stock=True,
    )

    assert repo.get_product_by_id(admin.id, p.id).quantity == 5
    assert repo.list_movements(admin.id, p.id)[0].type == MovementType.IN


def test_serial_sale_links_serial_to_transaction(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    inv = InventoryService(repo)
    inv.create_category(admin, "Telefon", requires_serial=True)
    p = inv.add_product(admin, "Telefon X", quantity=2, category="Telefon", serial_numbers=["S1", "S2"])
    serials = SerialService(repo)
    s1 = serials.find_by_serial(admin, "S1")
    buyer = AccountService(repo).create_account(admin, "Ayşe", "customer")

    tx = TransactionService(repo, serials=serials).record(
        admin, "sale", 20000, "TRY", "cash", account_id=buyer.id, product_id=p.id, quantity=1,
        affects_stock=True, serial_sales=[{"serial_id": s1.id, "sale_price": 20000}],
    )

    sold = serials.get_serial(admin, s1.id)
    assert sold.status == SerialStatus.SOLD
    assert sold.transaction_id == tx.id
    assert sold.sold_to_account_id == buyer.id
    assert serials.find_by_serial(admin, "S2").status == SerialStatus.IN_STOCK
    assert repo.get_product_by_id(admin.id, p.id).quantity == 1


def test_failed_serial_update_rolls_back_transaction_and_stock(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    inv = InventoryService(repo)
    inv.create_category(admin, "Telefon", requires_serial=True)
    p = inv.add_product(admin, "Telefon X", quantity=1, category="Telefon", serial_numbers=["S1"])
    s1 = SerialService(repo).find_by_serial(admin, "S1")
    tx_service = TransactionService(repo, uow_factory=lambda: FailingSerialUnitOfWork(repo))

    with pytest.raises(RuntimeError, match="serial write failed"):
        tx_service.record(
            admin, "sale", 100, "TRY", "cash", product_id=p.id, quantity=1,
            affects_stock=True, serial_sales=[{"serial_id": s1.id, "sale_price": 100}],
        )

    assert repo.list_transactions(admin.id) == []
    assert repo.list_movements(admin.id) == []
    assert repo.get_product_by_id(admin.id, p.id).quantity == 1
    assert repo.get_serial(admin.id, s1.id).status == SerialStatus.IN_STOCK


def test_selling_an_already_sold_serial_records_nothing(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    inv = InventoryService(repo)
    inv.create_category(admin, "Telefon", requires_serial=True)
    inv.add_product(admin, "Telefon X", quantity=1, category="Telefon", serial_numbers=["S1"])
    serials = SerialService(repo)
    s1 = serials.find_by_serial(admin, "S1")
    tx_service = TransactionService(repo, serials=serials)
    tx_service.record(admin, "sale", 100, serial_sales=[{"serial_id": s1.id, "sale_price": 100}])

    with pytest.raises(InvalidTransitionError):
        tx_service.record(admin, "sale", 100, serial_sales=[{"serial_id": s1.id, "sale_price": 100}])

    assert len(repo.list_transactions(admin.id)) == 1


def test_record_validation(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    txs = TransactionService(repo)

    with pytest.raises(ValidationError, match="Amount must be > 0"):
        txs.record(admin, "income", 0)
    with pytest.raises(ValidationError, match="bank account"):
        txs.record(admin, "income", 10, payment_method="bank")
    with pytest.raises(ValidationError, match="Unknown transaction type"):
        txs.record(admin, "refund", 10)
    with pytest.raises(ValidationError, match="Unknown currency"):
        txs.record(admin, "income", 10, currency="EUR")
    with pytest.raises(ValidationError, match="require a product"):
        txs.record(admin, "sale", 10, affects_stock=True)
    with pytest.raises(ValidationError, match="Invalid date"):
        txs.record(admin, "income", 10, date="05/03/2024")
    with pytest.raises(NotFoundError):
        txs.record(admin, "sale", 10, product_id=404, quantity=1)
    with pytest.raises(NotAuthenticatedError):
        txs.record(None, "income", 10)

    assert repo.list_transactions(admin.id) == []


def test_transaction_stores_cached_rate_and_defaults_date(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    repo.set_fx_rate(ExchangeRate(usd_to_try=32.0, try_to_usd=1 / 32.0, timestamp=0.0, fetched_at=0.0))
    clock = FixedClock(datetime(2024, 6, 15, 9, 0))
    txs = TransactionService(repo, fx=FxService(repo), clock=clock)

    tx = txs.record(admin, "income", 50, "USD")

    assert tx.date == "2024-06-15"
    assert tx.fx_usd_try == 32.0
    assert tx.created_at == "2024-06-15 09:00:00"


def test_cancel_is_admin_only_and_does_not_reverse_stock(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    clerk = make_user(repo)
    p = InventoryService(repo).add_product(admin, "Kulaklık", quantity=10)
    txs = TransactionService(repo)
    tx = txs.record(admin, "sale", 1000, product_id=p.id, quantity=1, affects_stock=True)

    with pytest.raises(AuthorizationError):
        txs.cancel(clerk, tx.id)

    txs.cancel(admin, tx.id)

    with pytest.raises(NotFoundError):
        txs.get_transaction(admin, tx.id)
    assert repo.get_product_by_id(admin.id, p.id).quantity == 9
    assert len(repo.list_movements(admin.id, p.id)) == 1


def test_list_transactions_filters_by_window_and_method(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    bank = AccountService(repo).create_bank_account(admin, "Ana Hesap")
    txs = TransactionService(repo)
    txs.record(admin, "income", 10, date="2024-01-31")
    txs.record(admin, "income", 20, date="2024-02-01")
    txs.record(admin, "expense", 30, payment_method="bank", bank_account_id=bank.id, date="2024-02-10")
    txs.record(admin, "income", 40, date="2024-03-01")

    feb = txs.list_transactions(admin, start="2024-02-01", end="2024-03-01")
    assert [t.amount for t in feb] == [30, 20]

    feb_cash = txs.list_transactions(admin, start="2024-02-01", end="2024-03-01", payment_method=PaymentMethod.CASH)
    assert [t.amount for t in feb_cash] == [20]


def test_serial_of_another_product_cannot_be_sold_with_this_one(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    inv = InventoryService(repo)
    inv.create_category(admin, "Telefon", requires_serial=True)
    phone_a = inv.add_product(admin, "Telefon A", quantity=1, category="Telefon", serial_numbers=["A1"])
    inv.add_product(admin, "Telefon B", quantity=1, category="Telefon", serial_numbers=["B1"])
    serials = SerialService(repo)
    b1 = serials.find_by_serial(admin, "B1")
    txs = TransactionService(repo, serials=serials)

    with pytest.raises(ValidationError, match="belongs to another product"):
        txs.record(
            admin, "sale", 500, product_id=phone_a.id, quantity=1, affects_stock=True,
            serial_sales=[{"serial_id": b1.id, "sale_price": 500}],
        )

    assert repo.list_transactions(admin.id) == []
    assert repo.get_product_by_id(admin.id, phone_a.id).quantity == 1
    assert serials.get_serial(admin, b1.id).status == SerialStatus.IN_STOCK


def test_linked_accounts_must_belong_to_the_same_user(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    clerk = make_user(repo)
    accounts = AccountService(repo)
    foreign_customer = accounts.create_account(admin, "Ahmet Yılmaz", "customer")
    foreign_bank = accounts.create_bank_account(admin, "Ana Hesap")
    txs = TransactionService(repo)

    with pytest.raises(NotFoundError, match="Account not found"):
        txs.record(clerk, "sale", 100, account_id=foreign_customer.id)
    with pytest.raises(NotFoundError, match="Bank account not found"):
        txs.record(clerk, "income", 100, payment_method="bank", bank_account_id=foreign_bank.id)

    assert repo.list_transactions(clerk.id) == []
    assert txs.record(admin, "sale", 100, account_id=foreign_customer.id).account_id == foreign_customer.id
