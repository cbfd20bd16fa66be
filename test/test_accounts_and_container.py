import json
import logging
from pathlib import Path

import pytest

from conftest import admin_of, make_repo, make_user

from shopdesk.application.container import build_container
from shopdesk.config import Settings, load_settings
from shopdesk.domain.errors import AuthorizationError, NotFoundError, ValidationError
from shopdesk.domain.models import AccountType, Currency
from shopdesk.logging_config import JsonFormatter
from shopdesk.main import daily_check
from shopdesk.services.account_service import AccountService


def test_accounts_crud_and_manual_balance(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    clerk = make_user(repo)
    accounts = AccountService(repo)

    supplier = accounts.create_account(clerk, "Toptancı A.Ş.", "supplier", currency="usd", tax_number="1234567890")
    accounts.create_account(clerk, "Zeynep", AccountType.CUSTOMER)
    assert supplier.currency == Currency.USD

    updated = accounts.update_account(clerk, supplier.id, balance=-1500, notes="vadeli")
    assert updated.balance == -1500
    assert [a.name for a in accounts.list_accounts(clerk, "customer")] == ["Zeynep"]

    with pytest.raises(ValidationError, match="Unknown account fields"):
        accounts.update_account(clerk, supplier.id, user_id=admin.id)
    with pytest.raises(ValidationError, match="Unknown account type"):
        accounts.create_account(clerk, "X", "partner")
    with pytest.raises(AuthorizationError):
        accounts.delete_account(clerk, supplier.id)
    with pytest.raises(NotFoundError):
        accounts.get_account(admin, supplier.id)


def test_bank_accounts(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    accounts = AccountService(repo)

    bank = accounts.create_bank_account(admin, "İş Bankası", iban="tr12 0006 4000 0011 2345 6789 01", balance=100)
    assert bank.iban == "TR120006400000112345678901"

    accounts.update_bank_account(admin, bank.id, balance=250.5)
    assert accounts.get_bank_account(admin, bank.id).balance == 250.5

    accounts.delete_bank_account(admin, bank.id)
    assert accounts.list_bank_accounts(admin) == []


def test_settings_from_environment():
    s = load_settings({
        "OPENEXCHANGE_API_KEY": "abc",
        "SHOPDESK_FX_TTL_SECONDS": "60",
        "SHOPDESK_DISPLAY_CURRENCY": "usd",
        "SHOPDESK_ALLOW_NEGATIVE_STOCK": "false",
    })

    assert s.fx_api_key == "abc"
    assert s.fx_ttl_seconds == 60
    assert s.display_currency == "USD"
    assert s.allow_negative_stock is False
    assert s.warranty_lookahead_days == 7
    assert load_settings({"SHOPDESK_FX_API_KEY": "own", "OPENEXCHANGE_API_KEY": "abc"}).fx_api_key == "own"


def test_json_formatter_emits_one_object_per_record():
    record = logging.LogRecord("shopdesk.stock", logging.INFO, __file__, 1, "movement_applied qty=%s", (3,), None)
    payload = json.loads(JsonFormatter().format(record))
    assert payload["logger"] == "shopdesk.stock"
    assert payload["message"] == "movement_applied qty=3"


def test_container_wires_services_and_daily_check(tmp_path: Path):
    c = build_container(tmp_path / "app.db", Settings(allow_negative_stock=False))
    admin = admin_of(c.repo)

    p = c.inventory.add_product(admin, "Pil", quantity=1, min_stock_level=2)
    assert c.stock.allow_negative_stock is False
    c.transactions.record(admin, "sale", 30, product_id=p.id, quantity=1, affects_stock=True)

    summary = daily_check(c)

    assert summary == {"low_stock": 1, "expiring_warranties": 0}
