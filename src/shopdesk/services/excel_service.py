from __future__ import annotations

import logging
from typing import Optional

from openpyxl import load_workbook

from shopdesk.domain.errors import AppError, ValidationError
from shopdesk.domain.models import MovementType, User
from shopdesk.services.auth_service import require_authenticated

log = logging.getLogger(__name__)

REQUIRED_HEADERS = ("name", "sku", "quantity", "purchase_price", "sale_price")


class ExcelService:
    def __init__(self, repo, stock_service):
        self.repo = repo
        self.stock = stock_service

    def import_products_excel(self, actor: Optional[User], path: str) -> tuple[int, int]:
        """
        Sheet quantities are a restock (delta to add), never an absolute stock.
        Headers:
          name | sku | quantity | unit | purchase_price | sale_price | min_stock_level | category
        """
        user = require_authenticated(actor)
        wb = load_workbook(path, read_only=True, data_only=True)
        ws = wb.active

        rows = ws.iter_rows(values_only=True)
        header_row = next(rows, None) or ()
        headers = {
            str(v).strip().lower(): idx for idx, v in enumerate(header_row) if isinstance(v, str)
        }
        for h in REQUIRED_HEADERS:
            if h not in headers:
                wb.close()
                raise ValidationError(f"Missing column header: {h}")

        def cell(values: tuple, name: str):
            idx = headers.get(name)
            return values[idx] if idx is not None and idx < len(values) else None

        ok = 0
        skipped = 0
        try:
            for row_no, values in enumerate(rows, start=2):
                try:
                    if self._import_row(user, values, cell):
                        ok += 1
                    else:
                        skipped += 1
                except (AppError, ValueError, TypeError) as e:
                    log.warning("excel_row_skipped row=%s error=%s", row_no, e)
                    skipped += 1
        finally:
            wb.close()

        log.info("excel_import_done imported=%s skipped=%s actor=%s", ok, skipped, user.id)
        return ok, skipped

    def _import_row(self, user: User, values: tuple, cell) -> bool:
        name = cell(values, "name")
        sku = cell(values, "sku")
        qty = cell(values, "quantity")
        cost = cell(values, "purchase_price")
        price = cell(values, "sale_price")
        if not name or not sku or qty is None or cost is None or price is None:
            return False

        sku = str(sku).strip()
        name = str(name).strip()
        restock_qty = int(float(qty))
        cost = float(cost)
        price = float(price)
        min_stock = int(float(cell(values, "min_stock_level") or 0))
        unit = str(cell(values, "unit") or "adet").strip()
        category = str(cell(values, "category") or "").strip() or None
        if restock_qty < 0 or cost < 0 or price < 0 or min_stock < 0:
            return False

        with self.stock.uow_factory() as uow:
            existing = uow.get_product_by_sku(user.id, sku)
            if existing and category and category != existing.category:
                raise ValidationError(
                    f"Category {category} does not match {existing.category or 'none'} for {sku}."
                )
            if category:
                cat = uow.get_category_by_name(user.id, category)
                if cat is None:
                    return False
            elif existing and existing.category:
                cat = uow.get_category_by_name(user.id, existing.category)
            else:
                cat = None
            if cat is not None and cat.requires_serial:
                # serial-tracked stock needs one serial per unit
                return False

            if existing:
                uow.update_product(user.id, existing.id, {
                    "name": name,
                    "purchase_price": cost,
                    "sale_price": price,
                    "min_stock_level": min_stock,
                })
                pid = existing.id
                reason = f"Excel restock (+{restock_qty}) for {sku}"
            else:
                pid = uow.insert_product(user.id, {
                    "name": name,
                    "sku": sku,
                    "quantity": 0,
                    "unit": unit,
                    "purchase_price": cost,
                    "sale_price": price,
                    "min_stock_level": min_stock,
                    "category": category,
                })
                reason = f"Initial stock from Excel for {sku}"
            if restock_qty > 0:
                self.stock.apply_within(uow, user, pid, MovementType.IN, restock_qty, reason, None)
        return True
