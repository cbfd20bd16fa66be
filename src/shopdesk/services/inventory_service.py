from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Callable, Iterable, Optional

from shopdesk.domain.errors import NotFoundError, ValidationError
from shopdesk.domain.models import Category, Product, User
from shopdesk.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork
from shopdesk.services.auth_service import require_action, require_authenticated
from shopdesk.services.serial_service import SerialService

log = logging.getLogger(__name__)

DEFAULT_CATEGORIES = (
    {"name": "Elektronik", "color": "#3b82f6", "description": "Elektronik ürünler ve aksesuarlar"},
    {"name": "Yedek Parça", "color": "#f59e0b", "description": "Araç ve makine yedek parçaları"},
)

_COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")


class InventoryService:
    def __init__(
        self,
        repo,
        serials: SerialService | None = None,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repo = repo
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))
        self.serials = serials or SerialService(repo, self.uow_factory, clock)
        self.clock = clock

    # ---------- Products ----------
    def list_products(self, actor: Optional[User]) -> list[Product]:
        user = require_authenticated(actor)
        return self.repo.list_products(user.id)

    def get_product(self, actor: Optional[User], product_id: int) -> Product:
        user = require_authenticated(actor)
        p = self.repo.get_product_by_id(user.id, int(product_id))
        if not p:
            raise NotFoundError("Product not found.")
        return p

    def get_product_by_sku(self, actor: Optional[User], sku: str) -> Product:
        user = require_authenticated(actor)
        p = self.repo.get_product_by_sku(user.id, sku.strip())
        if not p:
            raise NotFoundError("Product not found.")
        return p

    def low_stock(self, actor: Optional[User], limit: int = 10) -> list[Product]:
        user = require_authenticated(actor)
        return self.repo.list_low_stock(user.id, limit)

    def add_product(
        self,
        actor: Optional[User],
        name: str,
        quantity: int = 0,
        purchase_price: float = 0.0,
        sale_price: float = 0.0,
        min_stock_level: int = 0,
        unit: str = "adet",
        sku: Optional[str] = None,
        barcode: Optional[str] = None,
        category: Optional[str] = None,
        serial_numbers: Iterable[str] = (),
    ) -> Product:
        """Create a product, and its serial rows when the category tracks serials.

        For a serial-tracked category at least one serial number is required
        and the count must equal ``quantity``. Product and serials are written
        in one transaction, so a duplicate serial leaves nothing behind.
        """
        user = require_authenticated(actor)
        name = (name or "").strip()
        if not name:
            raise ValidationError("Name is required.")
        if int(quantity) < 0 or int(min_stock_level) < 0:
            raise ValidationError("Stock values must be >= 0.")
        if float(purchase_price) < 0 or float(sale_price) < 0:
            raise ValidationError("Prices must be >= 0.")

        numbers = [str(s).strip() for s in serial_numbers if str(s).strip()]
        category_name = category.strip() if category else None

        with self.uow_factory() as uow:
            cat = uow.get_category_by_name(user.id, category_name) if category_name else None
            if category_name and not cat:
                raise NotFoundError(f"Category not found: {category_name}")
            if cat and cat.requires_serial:
                self._validate_serial_numbers(numbers, int(quantity))
            elif numbers:
                raise ValidationError("Serial numbers are only accepted for serial-tracked categories.")

            pid = uow.insert_product(user.id, {
                "name": name,
                "sku": (sku or "").strip() or None,
                "barcode": (barcode or "").strip() or None,
                "quantity": int(quantity),
                "unit": unit,
                "purchase_price": float(purchase_price),
                "sale_price": float(sale_price),
                "min_stock_level": int(min_stock_level),
                "category": category_name,
            })
            for number in numbers:
                self.serials.create_within(uow, user, pid, number, purchase_price, sale_price)
            product = uow.get_product(user.id, pid)

        log.info("product_created product_id=%s serials=%s actor=%s", pid, len(numbers), user.id)
        return product

    def _validate_serial_numbers(self, numbers: list[str], quantity: int) -> None:
        if not numbers:
            raise ValidationError("This category requires serial/IMEI numbers.")
        if len(set(numbers)) != len(numbers):
            raise ValidationError("Serial numbers must be distinct.")
        if len(numbers) != quantity:
            raise ValidationError(f"Serial count ({len(numbers)}) must match quantity ({quantity}).")

    def update_product(
        self,
        actor: Optional[User],
        product_id: int,
        name: Optional[str] = None,
        sku: Optional[str] = None,
        barcode: Optional[str] = None,
        unit: Optional[str] = None,
        purchase_price: Optional[float] = None,
        sale_price: Optional[float] = None,
        min_stock_level: Optional[int] = None,
        category: Optional[str] = None,
    ) -> Product:
        # quantity only changes through the stock ledger
        user = require_authenticated(actor)
        values: dict[str, object] = {}
        if name is not None:
            if not name.strip():
                raise ValidationError("Name is required.")
            values["name"] = name.strip()
        if sku is not None:
            values["sku"] = sku.strip() or None
        if barcode is not None:
            values["barcode"] = barcode.strip() or None
        if unit is not None:
            values["unit"] = unit
        if purchase_price is not None:
            if purchase_price < 0:
                raise ValidationError("Prices must be >= 0.")
            values["purchase_price"] = float(purchase_price)
        if sale_price is not None:
            if sale_price < 0:
                raise ValidationError("Prices must be >= 0.")
            values["sale_price"] = float(sale_price)
        if min_stock_level is not None:
            if min_stock_level < 0:
                raise ValidationError("Min stock must be >= 0.")
            values["min_stock_level"] = int(min_stock_level)
        if category is not None:
            if category and not self.repo.get_category_by_name(user.id, category):
                raise NotFoundError(f"Category not found: {category}")
            values["category"] = category or None

        if not self.repo.get_product_by_id(user.id, int(product_id)):
            raise NotFoundError("Product not found.")
        self.repo.update_product_fields(user.id, int(product_id), values)
        return self.get_product(user, product_id)

    def delete_product(self, actor: Optional[User], product_id: int) -> None:
        user = require_action(actor, "delete_product")
        if not self.repo.deactivate_product(user.id, int(product_id)):
            raise NotFoundError("Product not found.")
        log.info("product_deactivated product_id=%s actor=%s", product_id, user.id)

    # ---------- Categories ----------
    def list_categories(self, actor: Optional[User]) -> list[Category]:
        user = require_authenticated(actor)
        return self.repo.list_categories(user.id)

    def create_category(
        self,
        actor: Optional[User],
        name: str,
        color: str = "#6b7280",
        description: Optional[str] = None,
        parent_id: Optional[int] = None,
        requires_serial: bool = False,
    ) -> Category:
        user = require_authenticated(actor)
        name = (name or "").strip()
        if not name:
            raise ValidationError("Category name is required.")
        if not _COLOR_RE.match(color):
            raise ValidationError("Color must be a hex value like #3b82f6.")
        if parent_id is not None:
            self._validate_parent(user, int(parent_id))
        if self.repo.get_category_by_name(user.id, name):
            raise ValidationError(f"Category already exists: {name}")

        cid = self.repo.add_category(user.id, name, color, description, parent_id, requires_serial)
        return self.repo.get_category(user.id, cid)

    def update_category(
        self,
        actor: Optional[User],
        category_id: int,
        name: Optional[str] = None,
        color: Optional[str] = None,
        description: Optional[str] = None,
        requires_serial: Optional[bool] = None,
    ) -> Category:
        user = require_authenticated(actor)
        current = self.repo.get_category(user.id, int(category_id))
        if not current:
            raise NotFoundError("Category not found.")
        values: dict[str, object] = {}
        if name is not None:
            if not name.strip():
                raise ValidationError("Category name is required.")
            values["name"] = name.strip()
        if color is not None:
            if not _COLOR_RE.match(color):
                raise ValidationError("Color must be a hex value like #3b82f6.")
            values["color"] = color
        if description is not None:
            values["description"] = description
        if requires_serial is not None:
            values["requires_serial"] = bool(requires_serial)
        self.repo.update_category(user.id, current.id, values)
        return self.repo.get_category(user.id, current.id)

    def delete_category(self, actor: Optional[User], category_id: int) -> None:
        user = require_action(actor, "delete_category")
        if self.repo.count_subcategories(user.id, int(category_id)):
            raise ValidationError("Category has sub-categories.")
        if not self.repo.delete_category(user.id, int(category_id)):
            raise NotFoundError("Category not found.")

    def ensure_default_categories(self, actor: Optional[User]) -> list[Category]:
        user = require_authenticated(actor)
        if self.repo.list_categories(user.id):
            return []
        return [self.create_category(user, **defaults) for defaults in DEFAULT_CATEGORIES]

    def _validate_parent(self, user: User, parent_id: int) -> None:
        parent = self.repo.get_category(user.id, parent_id)
        if not parent:
            raise NotFoundError("Parent category not found.")
        if parent.parent_id is not None:
            raise ValidationError("Categories support a single level of nesting.")
