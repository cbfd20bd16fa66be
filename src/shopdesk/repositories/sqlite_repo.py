from __future__ import annotations

import sqlite3
import hashlib
import hmac
import os
import secrets
import shutil
from dataclasses import fields
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from shopdesk.domain.models import (
    Account,
    AccountType,
    BankAccount,
    Category,
    Currency,
    DataPermission,
    ExchangeRate,
    MovementType,
    PaymentMethod,
    Product,
    ProductSerial,
    QCCheckItem,
    QCCheckResult,
    QCCheckType,
    Role,
    SerialStatus,
    ServiceAttachment,
    ServiceHistory,
    ServiceRecord,
    ServiceStatus,
    StockMovement,
    Transaction,
    TransactionType,
    User,
    WarrantyType,
)


_CASTS: dict[type, dict[str, Any]] = {
    Category: {"requires_serial": bool},
    StockMovement: {"type": MovementType},
    ProductSerial: {"status": SerialStatus},
    Account: {"type": AccountType, "currency": Currency},
    BankAccount: {"currency": Currency},
    Transaction: {"type": TransactionType, "currency": Currency, "payment_method": PaymentMethod},
    ServiceRecord: {
        "status": ServiceStatus,
        "warranty_type": WarrantyType,
        "price_approved": bool,
        "has_warranty": bool,
    },
    ServiceHistory: {"previous_status": ServiceStatus, "new_status": ServiceStatus},
    QCCheckItem: {"check_type": QCCheckType, "is_required": bool, "is_active": bool},
    QCCheckResult: {"check_stage": QCCheckType, "passed": bool},
    DataPermission: {
        "can_view_products": bool,
        "can_view_transactions": bool,
        "can_view_accounts": bool,
        "can_view_bank_accounts": bool,
        "can_view_stock_movements": bool,
        "can_view_categories": bool,
    },
}


def columns(model: type) -> str:
    return ", ".join(f.name for f in fields(model))


def row_to(model: type, row: Iterable[Any]):
    values = dict(zip((f.name for f in fields(model)), row))
    for name, cast in _CASTS.get(model, {}).items():
        if values.get(name) is not None:
            values[name] = cast(values[name])
    return model(**values)


def fetch_one(cur: sqlite3.Cursor, model: type, table: str, where: str, params: tuple = ()):
    cur.execute(f"SELECT {columns(model)} FROM {table} WHERE {where}", params)
    r = cur.fetchone()
    return row_to(model, r) if r else None


def fetch_all(cur: sqlite3.Cursor, model: type, table: str, where: str, params: tuple = (), order_by: str = "id") -> list:
    cur.execute(f"SELECT {columns(model)} FROM {table} WHERE {where} ORDER BY {order_by}", params)
    return [row_to(model, r) for r in cur.fetchall()]


def insert_row(cur: sqlite3.Cursor, table: str, values: dict[str, Any]) -> int:
    names = ", ".join(values)
    marks = ", ".join("?" for _ in values)
    cur.execute(f"INSERT INTO {table} ({names}) VALUES ({marks})", tuple(_plain(v) for v in values.values()))
    return int(cur.lastrowid)


def update_row(cur: sqlite3.Cursor, table: str, user_id: int, row_id: int, values: dict[str, Any]) -> bool:
    if not values:
        return True
    assignments = ", ".join(f"{k}=?" for k in values)
    cur.execute(
        f"UPDATE {table} SET {assignments} WHERE id=? AND user_id=?",
        (*(_plain(v) for v in values.values()), int(row_id), int(user_id)),
    )
    return cur.rowcount > 0


def _plain(value: Any) -> Any:
    # enums are stored by value, booleans as 0/1
    if isinstance(value, (MovementType, SerialStatus, TransactionType, PaymentMethod, AccountType,
                          Currency, ServiceStatus, WarrantyType, QCCheckType, Role)):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


class SqliteRepository:
    def __init__(self, db_path: Path | str):
        self.db_path = str(db_path)

    def _conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def init_db(self) -> None:
        self.run_migrations()
        self._ensure_bootstrap_admin()

    def run_migrations(self) -> None:
        conn = self._conn()
        backup_path = self._create_pre_migration_backup()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN")
            cur.execute("CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)")
            cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
            current_version = int(cur.fetchone()[0])

            migrations = [
                (1, self._migration_v1_inventory),
                (2, self._migration_v2_accounting),
                (3, self._migration_v3_technical_service),
                (4, self._migration_v4_qc_checklist),
            ]

            for version, migration in migrations:
                if version <= current_version:
                    continue
                migration(cur)
                cur.execute(
                    "INSERT INTO schema_migrations (version, applied_at) VALUES (?, datetime('now'))",
                    (version,),
                )
            conn.commit()
        except Exception as exc:
            conn.rollback()
            self._restore_pre_migration_backup(backup_path)
            raise RuntimeError(
                "Database migration failed. Original database restored from automatic backup."
            ) from exc
        finally:
            conn.close()

    def _create_pre_migration_backup(self) -> Path | None:
        db_file = Path(self.db_path)
        if not db_file.exists() or db_file.stat().st_size == 0:
            return None
        backup_file = db_file.with_name(f"{db_file.stem}.pre_migration_{datetime.now().strftime('%Y%m%d%H%M%S')}.bak")
        shutil.copy2(db_file, backup_file)
        return backup_file

    def _restore_pre_migration_backup(self, backup_path: Path | None) -> None:
        if backup_path is None or not backup_path.exists():
            return
        shutil.copy2(backup_path, self.db_path)

    def _migration_v1_inventory(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT NOT NULL UNIQUE,
                pin TEXT NOT NULL,
                role TEXT NOT NULL CHECK(role IN ('admin','user')),
                active INTEGER NOT NULL DEFAULT 1,
                failed_attempts INTEGER NOT NULL DEFAULT 0,
                locked_until TEXT,
                must_change_pin INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS data_permissions (
                user_id INTEGER PRIMARY KEY,
                can_view_products INTEGER NOT NULL DEFAULT 1,
                can_view_transactions INTEGER NOT NULL DEFAULT 1,
                can_view_accounts INTEGER NOT NULL DEFAULT 1,
                can_view_bank_accounts INTEGER NOT NULL DEFAULT 1,
                can_view_stock_movements INTEGER NOT NULL DEFAULT 1,
                can_view_categories INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL DEFAULT (datetime('now')),
                FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS categories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                color TEXT NOT NULL DEFAULT '#6b7280',
                description TEXT,
                parent_id INTEGER,
                requires_serial INTEGER NOT NULL DEFAULT 0 CHECK(requires_serial IN (0,1)),
                created_at TEXT NOT NULL DEFAULT (datetime('now')),
                FOREIGN KEY(parent_id) REFERENCES categories(id),
                UNIQUE(user_id, name)
            )
            """
        )

        # quantity has no floor: outbound movements may drive it negative
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS products (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                sku TEXT,
                barcode TEXT,
                quantity INTEGER NOT NULL DEFAULT 0,
                unit TEXT NOT NULL DEFAULT 'adet',
                purchase_price REAL NOT NULL DEFAULT 0 CHECK(purchase_price >= 0),
                sale_price REAL NOT NULL DEFAULT 0 CHECK(sale_price >= 0),
                min_stock_level INTEGER NOT NULL DEFAULT 0 CHECK(min_stock_level >= 0),
                category TEXT,
                active INTEGER NOT NULL DEFAULT 1 CHECK(active IN (0,1)),
                created_at TEXT NOT NULL DEFAULT (datetime('now')),
                updated_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS stock_movements (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                product_id INTEGER NOT NULL,
                type TEXT NOT NULL CHECK(type IN ('in','out','adjustment')),
                quantity INTEGER NOT NULL CHECK(quantity >= 0),
                previous_quantity INTEGER NOT NULL,
                new_quantity INTEGER NOT NULL,
                reason TEXT,
                reference_id INTEGER,
                created_at TEXT NOT NULL,
                FOREIGN KEY(product_id) REFERENCES products(id)
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_stock_movements_product ON stock_movements(product_id, id)")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS product_serials (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                product_id INTEGER NOT NULL,
                serial_number TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'in_stock' CHECK(status IN ('in_stock','sold','returned')),
                purchase_price REAL NOT NULL DEFAULT 0,
                sale_price REAL NOT NULL DEFAULT 0,
                sold_at TEXT,
                sold_to_account_id INTEGER,
                transaction_id INTEGER,
                notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(product_id) REFERENCES products(id),
                UNIQUE(user_id, serial_number)
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS fx_rates (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                usd_to_try REAL NOT NULL CHECK(usd_to_try > 0),
                try_to_usd REAL NOT NULL CHECK(try_to_usd > 0),
                timestamp REAL NOT NULL,
                fetched_at REAL NOT NULL
            )
            """
        )

    def _migration_v2_accounting(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS accounts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                type TEXT NOT NULL CHECK(type IN ('customer','supplier')),
                email TEXT,
                phone TEXT,
                address TEXT,
                tax_number TEXT,
                balance REAL NOT NULL DEFAULT 0,
                currency TEXT NOT NULL DEFAULT 'TRY' CHECK(currency IN ('TRY','USD')),
                notes TEXT,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS bank_accounts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                bank_name TEXT,
                account_number TEXT,
                iban TEXT,
                balance REAL NOT NULL DEFAULT 0,
                currency TEXT NOT NULL DEFAULT 'TRY' CHECK(currency IN ('TRY','USD')),
                notes TEXT,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                type TEXT NOT NULL CHECK(type IN ('income','expense','purchase','sale')),
                amount REAL NOT NULL CHECK(amount > 0),
                currency TEXT NOT NULL CHECK(currency IN ('TRY','USD')),
                payment_method TEXT NOT NULL CHECK(payment_method IN ('cash','bank')),
                date TEXT NOT NULL,
                account_id INTEGER,
                product_id INTEGER,
                bank_account_id INTEGER,
                quantity INTEGER,
                description TEXT,
                fx_usd_try REAL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(account_id) REFERENCES accounts(id) ON DELETE SET NULL,
                FOREIGN KEY(product_id) REFERENCES products(id),
                FOREIGN KEY(bank_account_id) REFERENCES bank_accounts(id) ON DELETE SET NULL
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_transactions_date ON transactions(user_id, date)")

    def _migration_v3_technical_service(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS service_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                device_brand TEXT NOT NULL,
                device_model TEXT NOT NULL,
                device_serial TEXT,
                device_imei TEXT,
                device_color TEXT,
                physical_condition TEXT,
                accessories_received TEXT,
                entry_notes TEXT,
                customer_name TEXT NOT NULL,
                customer_phone TEXT NOT NULL,
                customer_email TEXT,
                customer_address TEXT,
                reported_issue TEXT NOT NULL,
                diagnosis TEXT,
                repair_description TEXT,
                parts_used TEXT,
                estimated_cost REAL NOT NULL DEFAULT 0,
                final_cost REAL NOT NULL DEFAULT 0,
                price_approved INTEGER NOT NULL DEFAULT 0,
                price_approved_at TEXT,
                status TEXT NOT NULL DEFAULT 'pending_qc_entry' CHECK(status IN (
                    'pending_qc_entry','qc_entry_approved','assigned_technician','waiting_price_approval',
                    'repair_in_progress','pending_qc_exit','qc_exit_approved','completed','delivered','cancelled'
                )),
                assigned_technician_name TEXT,
                qc_entry_by TEXT,
                qc_entry_notes TEXT,
                qc_entry_at TEXT,
                qc_exit_by TEXT,
                qc_exit_notes TEXT,
                qc_exit_at TEXT,
                has_warranty INTEGER NOT NULL DEFAULT 0,
                warranty_type TEXT NOT NULL DEFAULT 'none' CHECK(warranty_type IN ('none','labor','parts','full')),
                warranty_duration_days INTEGER NOT NULL DEFAULT 0,
                warranty_start_date TEXT,
                warranty_end_date TEXT,
                warranty_terms TEXT,
                warranty_parts TEXT,
                received_at TEXT NOT NULL,
                completed_at TEXT,
                delivered_at TEXT
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_service_records_status ON service_records(user_id, status)")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS service_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                service_record_id INTEGER NOT NULL,
                previous_status TEXT,
                new_status TEXT NOT NULL,
                changed_by TEXT,
                notes TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY(service_record_id) REFERENCES service_records(id) ON DELETE CASCADE
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS service_attachments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                service_record_id INTEGER NOT NULL,
                file_name TEXT NOT NULL,
                file_path TEXT NOT NULL,
                file_type TEXT NOT NULL CHECK(file_type IN ('image','video')),
                file_size INTEGER,
                description TEXT,
                attachment_stage TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(service_record_id) REFERENCES service_records(id) ON DELETE CASCADE
            )
            """
        )

    def _migration_v4_qc_checklist(self, cur: sqlite3.Cursor) -> None:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS qc_check_items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                category TEXT NOT NULL DEFAULT 'genel',
                check_type TEXT NOT NULL CHECK(check_type IN ('entry','exit','both')),
                is_required INTEGER NOT NULL DEFAULT 0 CHECK(is_required IN (0,1)),
                display_order INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1 CHECK(is_active IN (0,1)),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS qc_check_results (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                service_record_id INTEGER NOT NULL,
                qc_check_item_id INTEGER NOT NULL,
                check_stage TEXT NOT NULL CHECK(check_stage IN ('entry','exit')),
                passed INTEGER CHECK(passed IN (0,1)),
                notes TEXT,
                checked_by TEXT,
                checked_at TEXT,
                UNIQUE(service_record_id, qc_check_item_id, check_stage),
                FOREIGN KEY(service_record_id) REFERENCES service_records(id) ON DELETE CASCADE,
                FOREIGN KEY(qc_check_item_id) REFERENCES qc_check_items(id) ON DELETE CASCADE
            )
            """
        )

    def _ensure_bootstrap_admin(self) -> None:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) FROM users WHERE active=1")
        active_users = int(cur.fetchone()[0])
        if active_users > 0:
            conn.close()
            return

        bootstrap_pin = os.environ.get("SHOPDESK_BOOTSTRAP_ADMIN_PIN", "").strip() or secrets.token_urlsafe(12)
        cur.execute(
            """
            INSERT INTO users (email, pin, role, active, must_change_pin)
            VALUES ('admin@localhost', ?, 'admin', 1, 1)
            """,
            (self._hash_pin(bootstrap_pin),),
        )
        conn.commit()
        conn.close()

        pin_file = Path(self.db_path).parent / ".admin_bootstrap_pin"
        pin_file.write_text(bootstrap_pin + "\n", encoding="utf-8")
        try:
            pin_file.chmod(0o600)
        except OSError:
            pass

    # ---------- Users ----------
    def list_users(self) -> list[User]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT id, email, role, active, must_change_pin FROM users WHERE active=1 ORDER BY email")
        rows = cur.fetchall()
        conn.close()
        return [User(id=int(r[0]), email=str(r[1]), role=Role(r[2]), active=int(r[3]), must_change_pin=int(r[4])) for r in rows]

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT id, email, role, active, must_change_pin FROM users WHERE active=1 AND id=?", (int(user_id),))
        r = cur.fetchone()
        conn.close()
        if not r:
            return None
        return User(id=int(r[0]), email=str(r[1]), role=Role(r[2]), active=int(r[3]), must_change_pin=int(r[4]))

    def _get_user_row(self, cur: sqlite3.Cursor, email: str):
        cur.execute(
            """
            SELECT id, email, role, active, pin, failed_attempts, locked_until, must_change_pin
            FROM users
            WHERE active=1 AND email=?
            """,
            (email,),
        )
        return cur.fetchone()

    def get_user_security_state(self, email: str) -> tuple[int, Optional[str]] | None:
        conn = self._conn()
        cur = conn.cursor()
        row = self._get_user_row(cur, email)
        conn.close()
        if not row:
            return None
        return int(row[5]), (str(row[6]) if row[6] is not None else None)

    def record_login_failure(self, email: str, max_attempts: int, lockout_seconds: int) -> tuple[int, Optional[str]]:
        conn = self._conn()
        cur = conn.cursor()
        row = self._get_user_row(cur, email)
        if not row:
            conn.close()
            return 0, None

        attempts = int(row[5]) + 1
        locked_until = None
        if attempts >= int(max_attempts):
            attempts = 0
            cur.execute(
                "UPDATE users SET failed_attempts=?, locked_until=datetime('now', ?) WHERE id=?",
                (attempts, f"+{int(lockout_seconds)} seconds", int(row[0])),
            )
            cur.execute("SELECT locked_until FROM users WHERE id=?", (int(row[0]),))
            locked_until = str(cur.fetchone()[0])
        else:
            cur.execute("UPDATE users SET failed_attempts=? WHERE id=?", (attempts, int(row[0])))
        conn.commit()
        conn.close()
        return attempts, locked_until

    def clear_login_guard(self, user_id: int) -> None:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("UPDATE users SET failed_attempts=0, locked_until=NULL WHERE id=?", (int(user_id),))
        conn.commit()
        conn.close()

    def authenticate_user(self, email: str, pin: str) -> Optional[User]:
        conn = self._conn()
        cur = conn.cursor()
        row = self._get_user_row(cur, email)
        if row and self._verify_pin(str(row[4]), pin):
            cur.execute("UPDATE users SET failed_attempts=0, locked_until=NULL WHERE id=?", (int(row[0]),))
            conn.commit()
            conn.close()
            return User(
                id=int(row[0]),
                email=str(row[1]),
                role=Role(row[2]),
                active=int(row[3]),
                must_change_pin=int(row[7]),
            )
        conn.close()
        return None

    def create_user(self, email: str, pin: str, role: str, must_change_pin: int = 0) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO users (email, pin, role, active, must_change_pin)
            VALUES (?, ?, ?, 1, ?)
            """,
            (email, self._hash_pin(pin), role, int(must_change_pin)),
        )
        uid = int(cur.lastrowid)
        conn.commit()
        conn.close()
        return uid

    def change_user_pin(self, user_id: int, current_pin: str, new_pin: str) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT pin FROM users WHERE id=? AND active=1", (int(user_id),))
        row = cur.fetchone()
        if not row or not self._verify_pin(str(row[0]), current_pin):
            conn.close()
            return False

        cur.execute(
            "UPDATE users SET pin=?, must_change_pin=0 WHERE id=?",
            (self._hash_pin(new_pin), int(user_id)),
        )
        conn.commit()
        conn.close()
        return True

    # ---------- Data permissions ----------
    def get_data_permission(self, user_id: int) -> Optional[DataPermission]:
        conn = self._conn()
        try:
            return fetch_one(conn.cursor(), DataPermission, "data_permissions", "user_id=?", (int(user_id),))
        finally:
            conn.close()

    def upsert_data_permission(self, permission: DataPermission) -> None:
        values = {f.name: _plain(getattr(permission, f.name)) for f in fields(DataPermission)}
        flags = [k for k in values if k != "user_id"]
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            f"""
            INSERT INTO data_permissions ({", ".join(values)}) VALUES ({", ".join("?" for _ in values)})
            ON CONFLICT(user_id) DO UPDATE SET {", ".join(f"{k}=excluded.{k}" for k in flags)},
                updated_at=datetime('now')
            """,
            tuple(values.values()),
        )
        conn.commit()
        conn.close()

    # ---------- Categories ----------
    def add_category(self, user_id: int, name: str, color: str, description: Optional[str],
                     parent_id: Optional[int], requires_serial: bool) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cid = insert_row(cur, "categories", {
            "user_id": int(user_id),
            "name": name,
            "color": color,
            "description": description,
            "parent_id": parent_id,
            "requires_serial": bool(requires_serial),
        })
        conn.commit()
        conn.close()
        return cid

    def update_category(self, user_id: int, category_id: int, values: dict[str, Any]) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        changed = update_row(cur, "categories", user_id, category_id, values)
        conn.commit()
        conn.close()
        return changed

    def delete_category(self, user_id: int, category_id: int) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("DELETE FROM categories WHERE id=? AND user_id=?", (int(category_id), int(user_id)))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return changed

    def get_category(self, user_id: int, category_id: int) -> Optional[Category]:
        conn = self._conn()
        try:
            return fetch_one(conn.cursor(), Category, "categories", "id=? AND user_id=?", (int(category_id), int(user_id)))
        finally:
            conn.close()

    def get_category_by_name(self, user_id: int, name: str) -> Optional[Category]:
        conn = self._conn()
        try:
            return fetch_one(conn.cursor(), Category, "categories", "name=? AND user_id=?", (name, int(user_id)))
        finally:
            conn.close()

    def list_categories(self, user_id: int) -> list[Category]:
        conn = self._conn()
        try:
            return fetch_all(conn.cursor(), Category, "categories", "user_id=?", (int(user_id),), order_by="name")
        finally:
            conn.close()

    def count_subcategories(self, user_id: int, category_id: int) -> int:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT COUNT(*) FROM categories WHERE user_id=? AND parent_id=?", (int(user_id), int(category_id)))
        n = int(cur.fetchone()[0])
        conn.close()
        return n

    # ---------- Products ----------
    def list_products(self, user_id: int) -> list[Product]:
        conn = self._conn()
        try:
            return fetch_all(conn.cursor(), Product, "products", "user_id=? AND active=1", (int(user_id),), order_by="name")
        finally:
            conn.close()

    def list_low_stock(self, user_id: int, limit: int = 10) -> list[Product]:
        conn = self._conn()
        try:
            return fetch_all(
                conn.cursor(),
                Product,
                "products",
                "user_id=? AND active=1 AND quantity <= min_stock_level",
                (int(user_id),),
                order_by=f"(quantity - min_stock_level) ASC, name ASC LIMIT {int(limit)}",
            )
        finally:
            conn.close()

    def get_product_by_id(self, user_id: int, product_id: int) -> Optional[Product]:
        conn = self._conn()
        try:
            return fetch_one(conn.cursor(), Product, "products", "id=? AND user_id=? AND active=1", (int(product_id), int(user_id)))
        finally:
            conn.close()

    def get_product_by_sku(self, user_id: int, sku: str) -> Optional[Product]:
        conn = self._conn()
        try:
            return fetch_one(conn.cursor(), Product, "products", "sku=? AND user_id=? AND active=1", (sku, int(user_id)))
        finally:
            conn.close()

    def update_product_fields(self, user_id: int, product_id: int, values: dict[str, Any]) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        changed = update_row(cur, "products", user_id, product_id, {**values, "updated_at": _now_iso()})
        conn.commit()
        conn.close()
        return changed

    def deactivate_product(self, user_id: int, product_id: int) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            UPDATE products
            SET active=0
            WHERE id=? AND user_id=? AND active=1
            """,
            (int(product_id), int(user_id)),
        )
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return bool(changed)

    # ---------- Stock movements ----------
    def list_movements(self, user_id: int, product_id: Optional[int] = None, newest_first: bool = True) -> list[StockMovement]:
        order = "id DESC" if newest_first else "id ASC"
        conn = self._conn()
        try:
            if product_id is None:
                return fetch_all(conn.cursor(), StockMovement, "stock_movements", "user_id=?", (int(user_id),), order_by=order)
            return fetch_all(
                conn.cursor(),
                StockMovement,
                "stock_movements",
                "user_id=? AND product_id=?",
                (int(user_id), int(product_id)),
                order_by=order,
            )
        finally:
            conn.close()

    # ---------- Serials ----------
    def get_serial(self, user_id: int, serial_id: int) -> Optional[ProductSerial]:
        conn = self._conn()
        try:
            return fetch_one(conn.cursor(), ProductSerial, "product_serials", "id=? AND user_id=?", (int(serial_id), int(user_id)))
        finally:
            conn.close()

    def find_serial(self, user_id: int, serial_number: str) -> Optional[ProductSerial]:
        conn = self._conn()
        try:
            return fetch_one(
                conn.cursor(), ProductSerial, "product_serials", "serial_number=? AND user_id=?", (serial_number, int(user_id))
            )
        finally:
            conn.close()

    def list_serials(self, user_id: int, status: Optional[str] = None, product_id: Optional[int] = None) -> list[ProductSerial]:
        where = ["user_id=?"]
        params: list[Any] = [int(user_id)]
        if status is not None:
            where.append("status=?")
            params.append(_plain(status))
        if product_id is not None:
            where.append("product_id=?")
            params.append(int(product_id))
        conn = self._conn()
        try:
            return fetch_all(conn.cursor(), ProductSerial, "product_serials", " AND ".join(where), tuple(params), order_by="id DESC")
        finally:
            conn.close()

    def update_serial_fields(self, user_id: int, serial_id: int, values: dict[str, Any]) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        changed = update_row(cur, "product_serials", user_id, serial_id, {**values, "updated_at": _now_iso()})
        conn.commit()
        conn.close()
        return changed

    def delete_serial(self, user_id: int, serial_id: int) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("DELETE FROM product_serials WHERE id=? AND user_id=?", (int(serial_id), int(user_id)))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return changed

    # ---------- Accounts ----------
    def add_account(self, user_id: int, values: dict[str, Any]) -> int:
        conn = self._conn()
        cur = conn.cursor()
        aid = insert_row(cur, "accounts", {"user_id": int(user_id), **values})
        conn.commit()
        conn.close()
        return aid

    def update_account(self, user_id: int, account_id: int, values: dict[str, Any]) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        changed = update_row(cur, "accounts", user_id, account_id, values)
        conn.commit()
        conn.close()
        return changed

    def get_account(self, user_id: int, account_id: int) -> Optional[Account]:
        conn = self._conn()
        try:
            return fetch_one(conn.cursor(), Account, "accounts", "id=? AND user_id=?", (int(account_id), int(user_id)))
        finally:
            conn.close()

    def list_accounts(self, user_id: int, account_type: Optional[str] = None) -> list[Account]:
        conn = self._conn()
        try:
            if account_type is None:
                return fetch_all(conn.cursor(), Account, "accounts", "user_id=?", (int(user_id),), order_by="name")
            return fetch_all(
                conn.cursor(), Account, "accounts", "user_id=? AND type=?", (int(user_id), _plain(account_type)), order_by="name"
            )
        finally:
            conn.close()

    def delete_account(self, user_id: int, account_id: int) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("DELETE FROM accounts WHERE id=? AND user_id=?", (int(account_id), int(user_id)))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return changed

    def add_bank_account(self, user_id: int, values: dict[str, Any]) -> int:
        conn = self._conn()
        cur = conn.cursor()
        bid = insert_row(cur, "bank_accounts", {"user_id": int(user_id), **values})
        conn.commit()
        conn.close()
        return bid

    def update_bank_account(self, user_id: int, bank_account_id: int, values: dict[str, Any]) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        changed = update_row(cur, "bank_accounts", user_id, bank_account_id, values)
        conn.commit()
        conn.close()
        return changed

    def get_bank_account(self, user_id: int, bank_account_id: int) -> Optional[BankAccount]:
        conn = self._conn()
        try:
            return fetch_one(conn.cursor(), BankAccount, "bank_accounts", "id=? AND user_id=?", (int(bank_account_id), int(user_id)))
        finally:
            conn.close()

    def list_bank_accounts(self, user_id: int) -> list[BankAccount]:
        conn = self._conn()
        try:
            return fetch_all(conn.cursor(), BankAccount, "bank_accounts", "user_id=?", (int(user_id),), order_by="name")
        finally:
            conn.close()

    def delete_bank_account(self, user_id: int, bank_account_id: int) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("DELETE FROM bank_accounts WHERE id=? AND user_id=?", (int(bank_account_id), int(user_id)))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return changed

    # ---------- Transactions ----------
    def get_transaction(self, user_id: int, transaction_id: int) -> Optional[Transaction]:
        conn = self._conn()
        try:
            return fetch_one(conn.cursor(), Transaction, "transactions", "id=? AND user_id=?", (int(transaction_id), int(user_id)))
        finally:
            conn.close()

    def list_transactions(
        self,
        user_id: int,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        payment_method: Optional[str] = None,
    ) -> list[Transaction]:
        where = ["user_id=?"]
        params: list[Any] = [int(user_id)]
        if start_date is not None:
            where.append("date >= ?")
            params.append(start_date)
        if end_date is not None:
            where.append("date < ?")
            params.append(end_date)
        if payment_method is not None:
            where.append("payment_method=?")
            params.append(_plain(payment_method))
        conn = self._conn()
        try:
            return fetch_all(
                conn.cursor(), Transaction, "transactions", " AND ".join(where), tuple(params), order_by="date DESC, id DESC"
            )
        finally:
            conn.close()

    def delete_transaction(self, user_id: int, transaction_id: int) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("DELETE FROM transactions WHERE id=? AND user_id=?", (int(transaction_id), int(user_id)))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return changed

    # ---------- FX ----------
    def get_latest_fx_rate(self) -> Optional[ExchangeRate]:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("SELECT usd_to_try, try_to_usd, timestamp, fetched_at FROM fx_rates ORDER BY fetched_at DESC, id DESC LIMIT 1")
        row = cur.fetchone()
        conn.close()
        if not row:
            return None
        return ExchangeRate(usd_to_try=float(row[0]), try_to_usd=float(row[1]), timestamp=float(row[2]), fetched_at=float(row[3]))

    def set_fx_rate(self, rate: ExchangeRate) -> None:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO fx_rates (usd_to_try, try_to_usd, timestamp, fetched_at) VALUES (?, ?, ?, ?)
        """,
            (float(rate.usd_to_try), float(rate.try_to_usd), float(rate.timestamp), float(rate.fetched_at)),
        )
        conn.commit()
        conn.close()

    # ---------- Technical service ----------
    def get_service_record(self, user_id: int, record_id: int) -> Optional[ServiceRecord]:
        conn = self._conn()
        try:
            return fetch_one(conn.cursor(), ServiceRecord, "service_records", "id=? AND user_id=?", (int(record_id), int(user_id)))
        finally:
            conn.close()

    def list_service_records(self, user_id: int, status: Optional[str] = None) -> list[ServiceRecord]:
        conn = self._conn()
        try:
            if status is None:
                return fetch_all(conn.cursor(), ServiceRecord, "service_records", "user_id=?", (int(user_id),), order_by="id DESC")
            return fetch_all(
                conn.cursor(),
                ServiceRecord,
                "service_records",
                "user_id=? AND status=?",
                (int(user_id), _plain(status)),
                order_by="id DESC",
            )
        finally:
            conn.close()

    def list_warranties_ending_between(self, user_id: int, start_date: str, end_date: str) -> list[ServiceRecord]:
        conn = self._conn()
        try:
            return fetch_all(
                conn.cursor(),
                ServiceRecord,
                "service_records",
                """user_id=? AND has_warranty=1 AND warranty_end_date IS NOT NULL
                   AND warranty_end_date >= ? AND warranty_end_date <= ?""",
                (int(user_id), start_date, end_date),
                order_by="warranty_end_date ASC, id ASC",
            )
        finally:
            conn.close()

    def update_service_record_fields(self, user_id: int, record_id: int, values: dict[str, Any]) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        changed = update_row(cur, "service_records", user_id, record_id, values)
        conn.commit()
        conn.close()
        return changed

    def delete_service_record(self, user_id: int, record_id: int) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("DELETE FROM service_records WHERE id=? AND user_id=?", (int(record_id), int(user_id)))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return changed

    def list_service_history(self, user_id: int, record_id: int) -> list[ServiceHistory]:
        conn = self._conn()
        try:
            return fetch_all(
                conn.cursor(),
                ServiceHistory,
                "service_history",
                "user_id=? AND service_record_id=?",
                (int(user_id), int(record_id)),
                order_by="id ASC",
            )
        finally:
            conn.close()

    def add_service_attachment(self, user_id: int, values: dict[str, Any]) -> int:
        conn = self._conn()
        cur = conn.cursor()
        aid = insert_row(cur, "service_attachments", {"user_id": int(user_id), **values})
        conn.commit()
        conn.close()
        return aid

    def list_service_attachments(self, user_id: int, record_id: int) -> list[ServiceAttachment]:
        conn = self._conn()
        try:
            return fetch_all(
                conn.cursor(),
                ServiceAttachment,
                "service_attachments",
                "user_id=? AND service_record_id=?",
                (int(user_id), int(record_id)),
                order_by="id DESC",
            )
        finally:
            conn.close()

    def delete_service_attachment(self, user_id: int, attachment_id: int) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("DELETE FROM service_attachments WHERE id=? AND user_id=?", (int(attachment_id), int(user_id)))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return changed

    # ---------- QC checklist ----------
    def add_qc_check_item(self, user_id: int, values: dict[str, Any]) -> int:
        conn = self._conn()
        cur = conn.cursor()
        iid = insert_row(cur, "qc_check_items", {"user_id": int(user_id), **values})
        conn.commit()
        conn.close()
        return iid

    def get_qc_check_item(self, user_id: int, item_id: int) -> Optional[QCCheckItem]:
        conn = self._conn()
        try:
            return fetch_one(conn.cursor(), QCCheckItem, "qc_check_items", "id=? AND user_id=?", (int(item_id), int(user_id)))
        finally:
            conn.close()

    def list_qc_check_items(self, user_id: int) -> list[QCCheckItem]:
        conn = self._conn()
        try:
            return fetch_all(
                conn.cursor(), QCCheckItem, "qc_check_items", "user_id=?", (int(user_id),), order_by="display_order ASC, id ASC"
            )
        finally:
            conn.close()

    def update_qc_check_item(self, user_id: int, item_id: int, values: dict[str, Any]) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        changed = update_row(cur, "qc_check_items", user_id, item_id, values)
        conn.commit()
        conn.close()
        return changed

    def delete_qc_check_item(self, user_id: int, item_id: int) -> bool:
        conn = self._conn()
        cur = conn.cursor()
        cur.execute("DELETE FROM qc_check_items WHERE id=? AND user_id=?", (int(item_id), int(user_id)))
        changed = cur.rowcount > 0
        conn.commit()
        conn.close()
        return changed

    def list_qc_check_results(self, user_id: int, record_id: int, stage: Optional[str] = None) -> list[QCCheckResult]:
        conn = self._conn()
        try:
            if stage is None:
                return fetch_all(
                    conn.cursor(), QCCheckResult, "qc_check_results",
                    "user_id=? AND service_record_id=?", (int(user_id), int(record_id)),
                )
            return fetch_all(
                conn.cursor(), QCCheckResult, "qc_check_results",
                "user_id=? AND service_record_id=? AND check_stage=?", (int(user_id), int(record_id), _plain(stage)),
            )
        finally:
            conn.close()

    @staticmethod
    def _hash_pin(pin: str, *, rounds: int = 200_000, salt: str | None = None) -> str:
        salt = salt or secrets.token_hex(16)
        digest = hashlib.pbkdf2_hmac("sha256", pin.encode("utf-8"), bytes.fromhex(salt), rounds).hex()
        return f"pbkdf2_sha256${rounds}${salt}${digest}"

    @staticmethod
    def _verify_pin(stored: str, provided: str) -> bool:
        if not stored.startswith("pbkdf2_sha256$"):
            return False
        try:
            _algo, rounds_s, salt, digest = stored.split("$", 3)
            rounds = int(rounds_s)
            candidate = hashlib.pbkdf2_hmac(
                "sha256",
                provided.encode("utf-8"),
                bytes.fromhex(salt),
                rounds,
            ).hex()
        except ValueError:
            return False
        return hmac.compare_digest(candidate, digest)


def _now_iso() -> str:
    return datetime.now().replace(microsecond=0).isoformat(sep=" ")
