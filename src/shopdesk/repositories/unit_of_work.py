from __future__ import annotations

import sqlite3
from typing import Any, Optional, Protocol

from shopdesk.domain.errors import DuplicateSerialError
from shopdesk.domain.models import (
    Account,
    BankAccount,
    Category,
    MovementType,
    Product,
    ProductSerial,
    QCCheckItem,
    QCCheckResult,
    QCCheckType,
    SerialStatus,
    ServiceHistory,
    ServiceRecord,
    ServiceStatus,
    StockMovement,
    Transaction,
)
from shopdesk.repositories.sqlite_repo import fetch_all, fetch_one, insert_row, update_row


class UnitOfWork(Protocol):
    def __enter__(self) -> "UnitOfWork": ...
    def __exit__(self, exc_type, exc, tb) -> None: ...
    def get_product(self, user_id: int, product_id: int) -> Optional[Product]: ...
    def set_product_quantity(self, user_id: int, product_id: int, quantity: int, at: str) -> bool: ...
    def insert_movement(self, user_id: int, values: dict[str, Any]) -> StockMovement: ...


class SqliteUnitOfWork:
    """Unit of Work over a single SQLite transaction.

    Business rules that touch several rows (ledger entry plus product
    quantity, transaction plus stock plus serials, status plus history) run
    all their reads and writes through one instance. A clean exit commits;
    any exception rolls every write back, so the rule applies fully or not
    at all. ``BEGIN IMMEDIATE`` takes the write lock up front, which keeps
    read-modify-write sequences on the same product serialized.
    """

    def __init__(self, repo):
        self.repo = repo
        self.conn: sqlite3.Connection | None = None
        self.cur: sqlite3.Cursor | None = None

    def __enter__(self) -> "SqliteUnitOfWork":
        self.conn = self.repo._conn()
        self.conn.execute("BEGIN IMMEDIATE")
        self.cur = self.conn.cursor()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                self.conn.commit()
            else:
                self.conn.rollback()
        finally:
            self.conn.close()
            self.conn = None
            self.cur = None
        return None

    # ---------- Products ----------
    def get_product(self, user_id: int, product_id: int) -> Optional[Product]:
        return fetch_one(self.cur, Product, "products", "id=? AND user_id=? AND active=1", (int(product_id), int(user_id)))

    def get_category_by_name(self, user_id: int, name: str) -> Optional[Category]:
        return fetch_one(self.cur, Category, "categories", "name=? AND user_id=?", (name, int(user_id)))

    def get_product_by_sku(self, user_id: int, sku: str) -> Optional[Product]:
        return fetch_one(self.cur, Product, "products", "sku=? AND user_id=? AND active=1", (sku, int(user_id)))

    def insert_product(self, user_id: int, values: dict[str, Any]) -> int:
        return insert_row(self.cur, "products", {"user_id": int(user_id), **values})

    def update_product(self, user_id: int, product_id: int, values: dict[str, Any]) -> bool:
        return update_row(self.cur, "products", user_id, product_id, values)

    def set_product_quantity(self, user_id: int, product_id: int, quantity: int, at: str) -> bool:
        return update_row(self.cur, "products", user_id, product_id, {"quantity": int(quantity), "updated_at": at})

    # ---------- Ledger ----------
    def insert_movement(self, user_id: int, values: dict[str, Any]) -> StockMovement:
        mid = insert_row(self.cur, "stock_movements", {"user_id": int(user_id), **values})
        return fetch_one(self.cur, StockMovement, "stock_movements", "id=?", (mid,))

    # ---------- Serials ----------
    def insert_serial(self, user_id: int, values: dict[str, Any]) -> ProductSerial:
        try:
            sid = insert_row(self.cur, "product_serials", {"user_id": int(user_id), **values})
        except sqlite3.IntegrityError as exc:
            if "product_serials.serial_number" in str(exc):
                raise DuplicateSerialError(str(values.get("serial_number"))) from exc
            raise
        return fetch_one(self.cur, ProductSerial, "product_serials", "id=?", (sid,))

    def get_serial(self, user_id: int, serial_id: int) -> Optional[ProductSerial]:
        return fetch_one(self.cur, ProductSerial, "product_serials", "id=? AND user_id=?", (int(serial_id), int(user_id)))

    def transition_serial(self, user_id: int, serial_id: int, expected: SerialStatus, values: dict[str, Any]) -> bool:
        """Conditional update: only applies while the serial is still in ``expected``."""
        assignments = ", ".join(f"{k}=?" for k in values)
        self.cur.execute(
            f"UPDATE product_serials SET {assignments} WHERE id=? AND user_id=? AND status=?",
            (*(_value(v) for v in values.values()), int(serial_id), int(user_id), expected.value),
        )
        return self.cur.rowcount > 0

    # ---------- Accounts ----------
    def get_account(self, user_id: int, account_id: int) -> Optional[Account]:
        return fetch_one(self.cur, Account, "accounts", "id=? AND user_id=?", (int(account_id), int(user_id)))

    def get_bank_account(self, user_id: int, bank_account_id: int) -> Optional[BankAccount]:
        return fetch_one(self.cur, BankAccount, "bank_accounts", "id=? AND user_id=?", (int(bank_account_id), int(user_id)))

    # ---------- Transactions ----------
    def insert_transaction(self, user_id: int, values: dict[str, Any]) -> Transaction:
        tid = insert_row(self.cur, "transactions", {"user_id": int(user_id), **values})
        return fetch_one(self.cur, Transaction, "transactions", "id=?", (tid,))

    # ---------- Technical service ----------
    def insert_service_record(self, user_id: int, values: dict[str, Any]) -> int:
        return insert_row(self.cur, "service_records", {"user_id": int(user_id), **values})

    def get_service_record(self, user_id: int, record_id: int) -> Optional[ServiceRecord]:
        return fetch_one(self.cur, ServiceRecord, "service_records", "id=? AND user_id=?", (int(record_id), int(user_id)))

    def update_service_record(self, user_id: int, record_id: int, values: dict[str, Any]) -> bool:
        return update_row(self.cur, "service_records", user_id, record_id, values)

    def insert_service_history(
        self,
        user_id: int,
        record_id: int,
        previous_status: Optional[ServiceStatus],
        new_status: ServiceStatus,
        changed_by: Optional[str],
        notes: Optional[str],
        at: str,
    ) -> ServiceHistory:
        hid = insert_row(self.cur, "service_history", {
            "user_id": int(user_id),
            "service_record_id": int(record_id),
            "previous_status": previous_status,
            "new_status": new_status,
            "changed_by": changed_by,
            "notes": notes,
            "created_at": at,
        })
        return fetch_one(self.cur, ServiceHistory, "service_history", "id=?", (hid,))

    # ---------- QC checklist ----------
    def get_qc_check_item(self, user_id: int, item_id: int) -> Optional[QCCheckItem]:
        return fetch_one(self.cur, QCCheckItem, "qc_check_items", "id=? AND user_id=?", (int(item_id), int(user_id)))

    def upsert_qc_check_result(self, user_id: int, values: dict[str, Any]) -> QCCheckResult:
        """One result per record, item and stage; a later save overwrites the earlier one."""
        row = {"user_id": int(user_id), **values}
        names = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        self.cur.execute(
            f"""
            INSERT INTO qc_check_results ({names}) VALUES ({marks})
            ON CONFLICT(service_record_id, qc_check_item_id, check_stage) DO UPDATE SET
                passed=excluded.passed, notes=excluded.notes,
                checked_by=excluded.checked_by, checked_at=excluded.checked_at
            """,
            tuple(_value(v) for v in row.values()),
        )
        return fetch_one(
            self.cur, QCCheckResult, "qc_check_results",
            "service_record_id=? AND qc_check_item_id=? AND check_stage=?",
            (int(values["service_record_id"]), int(values["qc_check_item_id"]), _value(values["check_stage"])),
        )

    def missing_required_qc_items(self, user_id: int, record_id: int, stage: QCCheckType) -> list[QCCheckItem]:
        """Active required items for ``stage`` without a passing result on the record."""
        return fetch_all(
            self.cur,
            QCCheckItem,
            "qc_check_items",
            """user_id=? AND is_active=1 AND is_required=1 AND check_type IN (?, 'both')
               AND NOT EXISTS (
                   SELECT 1 FROM qc_check_results r
                   WHERE r.qc_check_item_id = qc_check_items.id
                     AND r.service_record_id=? AND r.check_stage=? AND r.passed=1
               )""",
            (int(user_id), stage.value, int(record_id), stage.value),
            order_by="display_order ASC, id ASC",
        )


def _value(v: Any) -> Any:
    if isinstance(v, (SerialStatus, MovementType, QCCheckType)):
        return v.value
    if isinstance(v, bool):
        return int(v)
    return v
