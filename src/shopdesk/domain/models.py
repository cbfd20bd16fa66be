from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Currency(str, Enum):
    TRY = "TRY"
    USD = "USD"


class MovementType(str, Enum):
    IN = "in"
    OUT = "out"
    ADJUSTMENT = "adjustment"


class SerialStatus(str, Enum):
    IN_STOCK = "in_stock"
    SOLD = "sold"
    RETURNED = "returned"


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"
    PURCHASE = "purchase"
    SALE = "sale"


INCOME_TYPES = frozenset({TransactionType.INCOME, TransactionType.SALE})
EXPENSE_TYPES = frozenset({TransactionType.EXPENSE, TransactionType.PURCHASE})


class PaymentMethod(str, Enum):
    CASH = "cash"
    BANK = "bank"


class AccountType(str, Enum):
    CUSTOMER = "customer"
    SUPPLIER = "supplier"


class ServiceStatus(str, Enum):
    PENDING_QC_ENTRY = "pending_qc_entry"
    QC_ENTRY_APPROVED = "qc_entry_approved"
    ASSIGNED_TECHNICIAN = "assigned_technician"
    WAITING_PRICE_APPROVAL = "waiting_price_approval"
    REPAIR_IN_PROGRESS = "repair_in_progress"
    PENDING_QC_EXIT = "pending_qc_exit"
    QC_EXIT_APPROVED = "qc_exit_approved"
    COMPLETED = "completed"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({ServiceStatus.DELIVERED, ServiceStatus.CANCELLED})


class WarrantyType(str, Enum):
    NONE = "none"
    LABOR = "labor"
    PARTS = "parts"
    FULL = "full"


class QCCheckType(str, Enum):
    ENTRY = "entry"
    EXIT = "exit"
    BOTH = "both"


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"


@dataclass(frozen=True)
class User:
    id: int
    email: str
    role: Role
    active: int = 1
    must_change_pin: int = 0

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass(frozen=True)
class DataPermission:
    user_id: int
    can_view_products: bool = True
    can_view_transactions: bool = True
    can_view_accounts: bool = True
    can_view_bank_accounts: bool = True
    can_view_stock_movements: bool = True
    can_view_categories: bool = True


@dataclass(frozen=True)
class Category:
    id: int
    user_id: int
    name: str
    color: str
    description: Optional[str]
    parent_id: Optional[int]
    requires_serial: bool


@dataclass(frozen=True)
class Product:
    id: int
    user_id: int
    name: str
    sku: Optional[str]
    barcode: Optional[str]
    quantity: int
    unit: str
    purchase_price: float
    sale_price: float
    min_stock_level: int
    category: Optional[str]
    active: int = 1


@dataclass(frozen=True)
class StockMovement:
    id: int
    user_id: int
    product_id: int
    type: MovementType
    quantity: int
    previous_quantity: int
    new_quantity: int
    reason: Optional[str]
    reference_id: Optional[int]
    created_at: str


@dataclass(frozen=True)
class ProductSerial:
    id: int
    user_id: int
    product_id: int
    serial_number: str
    status: SerialStatus
    purchase_price: float
    sale_price: float
    sold_at: Optional[str]
    sold_to_account_id: Optional[int]
    transaction_id: Optional[int]
    notes: Optional[str]
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class Account:
    id: int
    user_id: int
    name: str
    type: AccountType
    email: Optional[str]
    phone: Optional[str]
    address: Optional[str]
    tax_number: Optional[str]
    balance: float
    currency: Currency
    notes: Optional[str]


@dataclass(frozen=True)
class BankAccount:
    id: int
    user_id: int
    name: str
    bank_name: Optional[str]
    account_number: Optional[str]
    iban: Optional[str]
    balance: float
    currency: Currency
    notes: Optional[str]


@dataclass(frozen=True)
class Transaction:
    id: int
    user_id: int
    type: TransactionType
    amount: float
    currency: Currency
    payment_method: PaymentMethod
    date: str
    account_id: Optional[int]
    product_id: Optional[int]
    bank_account_id: Optional[int]
    quantity: Optional[int]
    description: Optional[str]
    fx_usd_try: Optional[float]
    created_at: str


@dataclass(frozen=True)
class ExchangeRate:
    usd_to_try: float
    try_to_usd: float
    timestamp: float
    fetched_at: float


@dataclass(frozen=True)
class ServiceRecord:
    id: int
    user_id: int
    device_brand: str
    device_model: str
    device_serial: Optional[str]
    device_imei: Optional[str]
    device_color: Optional[str]
    physical_condition: Optional[str]
    accessories_received: Optional[str]
    entry_notes: Optional[str]
    customer_name: str
    customer_phone: str
    customer_email: Optional[str]
    customer_address: Optional[str]
    reported_issue: str
    diagnosis: Optional[str]
    repair_description: Optional[str]
    parts_used: Optional[str]
    estimated_cost: float
    final_cost: float
    price_approved: bool
    price_approved_at: Optional[str]
    status: ServiceStatus
    assigned_technician_name: Optional[str]
    qc_entry_by: Optional[str]
    qc_entry_notes: Optional[str]
    qc_entry_at: Optional[str]
    qc_exit_by: Optional[str]
    qc_exit_notes: Optional[str]
    qc_exit_at: Optional[str]
    has_warranty: bool
    warranty_type: WarrantyType
    warranty_duration_days: int
    warranty_start_date: Optional[str]
    warranty_end_date: Optional[str]
    warranty_terms: Optional[str]
    warranty_parts: Optional[str]
    received_at: str
    completed_at: Optional[str]
    delivered_at: Optional[str]


@dataclass(frozen=True)
class ServiceHistory:
    id: int
    user_id: int
    service_record_id: int
    previous_status: Optional[ServiceStatus]
    new_status: ServiceStatus
    changed_by: Optional[str]
    notes: Optional[str]
    created_at: str


@dataclass(frozen=True)
class ServiceAttachment:
    id: int
    user_id: int
    service_record_id: int
    file_name: str
    file_path: str
    file_type: str
    file_size: Optional[int]
    description: Optional[str]
    attachment_stage: str
    created_at: str


@dataclass(frozen=True)
class QCCheckItem:
    id: int
    user_id: int
    name: str
    description: Optional[str]
    category: str
    check_type: QCCheckType
    is_required: bool
    display_order: int
    is_active: bool
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class QCCheckResult:
    id: int
    user_id: int
    service_record_id: int
    qc_check_item_id: int
    check_stage: QCCheckType
    passed: Optional[bool]
    notes: Optional[str]
    checked_by: Optional[str]
    checked_at: Optional[str]
