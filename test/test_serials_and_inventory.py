from datetime import datetime
from pathlib import Path

import pytest

from conftest import FixedClock, admin_of, make_repo, make_user

from shopdesk.domain.errors import (
    AuthorizationError,
    DuplicateSerialError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from shopdesk.domain.models import SerialStatus
from shopdesk.services.inventory_service import InventoryService
from shopdesk.services.serial_service import SerialService


def _phone_category(inv, admin):
    return inv.create_category(admin, "Telefon", color="#10b981", requires_serial=True)


def test_serial_lifecycle(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    clock = FixedClock(datetime(2024, 5, 1, 10, 30))
    serials = SerialService(repo, clock=clock)
    inv = InventoryService(repo, serials)
    _phone_category(inv, admin)
    p = inv.add_product(admin, "Telefon X", quantity=1, category="Telefon", serial_numbers=["IMEI-1"])

    s = serials.find_by_serial(admin, "IMEI-1")
    assert s.status == SerialStatus.IN_STOCK
    assert s.product_id == p.id

    sold = serials.sell(admin, s.id, 15000.0, transaction_id=None)
    assert sold.status == SerialStatus.SOLD
    assert sold.sold_at == "2024-05-01 10:30:00"
    assert sold.sale_price == 15000.0

    returned = serials.return_serial(admin, s.id)
    assert returned.status == SerialStatus.RETURNED

    restocked = serials.restock(admin, s.id)
    assert restocked.status == SerialStatus.IN_STOCK
    assert restocked.sold_at is None


def test_selling_a_sold_serial_fails_fast(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    inv = InventoryService(repo)
    _phone_category(inv, admin)
    inv.add_product(admin, "Telefon X", quantity=1, category="Telefon", serial_numbers=["IMEI-1"])
    serials = SerialService(repo)
    s = serials.find_by_serial(admin, "IMEI-1")
    serials.sell(admin, s.id, 100.0)

    with pytest.raises(InvalidTransitionError, match="expected in_stock"):
        serials.sell(admin, s.id, 120.0)
    with pytest.raises(InvalidTransitionError):
        serials.restock(admin, s.id)

    assert serials.get_serial(admin, s.id).sale_price == 100.0


def test_duplicate_serial_is_a_distinct_error(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    inv = InventoryService(repo)
    _phone_category(inv, admin)
    p = inv.add_product(admin, "Telefon X", quantity=1, category="Telefon", serial_numbers=["IMEI-1"])

    with pytest.raises(DuplicateSerialError) as err:
        SerialService(repo).create(admin, p.id, "IMEI-1")
    assert err.value.serial_number == "IMEI-1"


def test_same_serial_is_allowed_for_another_tenant(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    clerk = make_user(repo)
    inv = InventoryService(repo)
    serials = SerialService(repo)
    p1 = inv.add_product(admin, "Telefon", quantity=0)
    p2 = inv.add_product(clerk, "Telefon", quantity=0)

    serials.create(admin, p1.id, "SN-9")
    serials.create(clerk, p2.id, "SN-9")

    assert serials.find_by_serial(admin, "SN-9").user_id == admin.id
    assert serials.find_by_serial(clerk, "SN-9").user_id == clerk.id


def test_serial_category_requires_serials_before_any_write(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    inv = InventoryService(repo)
    _phone_category(inv, admin)

    with pytest.raises(ValidationError, match="requires serial"):
        inv.add_product(admin, "Telefon X", quantity=1, category="Telefon")
    with pytest.raises(ValidationError, match="must match quantity"):
        inv.add_product(admin, "Telefon X", quantity=2, category="Telefon", serial_numbers=["A"])
    with pytest.raises(ValidationError, match="distinct"):
        inv.add_product(admin, "Telefon X", quantity=2, category="Telefon", serial_numbers=["A", "A"])

    assert inv.list_products(admin) == []


def test_duplicate_serial_rolls_back_the_new_product(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    inv = InventoryService(repo)
    _phone_category(inv, admin)
    inv.add_product(admin, "Telefon X", quantity=1, category="Telefon", serial_numbers=["IMEI-1"])

    with pytest.raises(DuplicateSerialError):
        inv.add_product(admin, "Telefon Y", quantity=2, category="Telefon", serial_numbers=["IMEI-2", "IMEI-1"])

    assert [p.name for p in inv.list_products(admin)] == ["Telefon X"]
    assert SerialService(repo).find_by_serial(admin, "IMEI-2") is None


def test_product_in_serial_category_gets_one_serial_per_unit(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    inv = InventoryService(repo)
    _phone_category(inv, admin)

    p = inv.add_product(admin, "Telefon X", quantity=3, category="Telefon", serial_numbers=["A", "B", "C"])

    rows = SerialService(repo).list_serials(admin, status="in_stock", product_id=p.id)
    assert sorted(s.serial_number for s in rows) == ["A", "B", "C"]
    assert p.quantity == 3


def test_product_validation_and_soft_delete(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    clerk = make_user(repo)
    inv = InventoryService(repo)

    with pytest.raises(ValidationError, match="Name is required"):
        inv.add_product(admin, "   ")
    with pytest.raises(ValidationError, match="Prices must be >= 0"):
        inv.add_product(admin, "Kablo", sale_price=-1)
    with pytest.raises(NotFoundError, match="Category not found"):
        inv.add_product(admin, "Kablo", category="Yok")

    p = inv.add_product(clerk, "Kablo", quantity=2, sale_price=50)
    updated = inv.update_product(clerk, p.id, sale_price=60, sku="KB-1")
    assert updated.sale_price == 60
    assert inv.get_product_by_sku(clerk, "KB-1").id == p.id

    with pytest.raises(AuthorizationError):
        inv.delete_product(clerk, p.id)

    admin_product = inv.add_product(admin, "Kablo", quantity=2)
    inv.delete_product(admin, admin_product.id)
    with pytest.raises(NotFoundError):
        inv.get_product(admin, admin_product.id)


def test_low_stock_lists_products_at_or_below_minimum(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    inv = InventoryService(repo)
    inv.add_product(admin, "Az", quantity=2, min_stock_level=5)
    inv.add_product(admin, "Sınırda", quantity=5, min_stock_level=5)
    inv.add_product(admin, "Bol", quantity=50, min_stock_level=5)

    names = {p.name for p in inv.low_stock(admin)}
    assert names == {"Az", "Sınırda"}


def test_categories_nest_one_level(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    inv = InventoryService(repo)

    seeded = inv.ensure_default_categories(admin)
    assert [c.name for c in seeded] == ["Elektronik", "Yedek Parça"]
    assert inv.ensure_default_categories(admin) == []

    parent = seeded[0]
    child = inv.create_category(admin, "Kulaklık", parent_id=parent.id)
    assert child.parent_id == parent.id

    with pytest.raises(ValidationError, match="single level"):
        inv.create_category(admin, "Kablosuz", parent_id=child.id)
    with pytest.raises(ValidationError, match="already exists"):
        inv.create_category(admin, "Elektronik")
    with pytest.raises(ValidationError, match="hex"):
        inv.create_category(admin, "Renk", color="blue")
    with pytest.raises(ValidationError, match="sub-categories"):
        inv.delete_category(admin, parent.id)

    inv.delete_category(admin, child.id)
    inv.delete_category(admin, parent.id)
    assert [c.name for c in inv.list_categories(admin)] == ["Yedek Parça"]
