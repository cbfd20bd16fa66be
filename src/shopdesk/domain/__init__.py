from .models import (
    Currency,
    MovementType,
    SerialStatus,
    TransactionType,
    PaymentMethod,
    ServiceStatus,
    WarrantyType,
    Role,
    Product,
    StockMovement,
    ProductSerial,
    Transaction,
    ServiceRecord,
    ServiceHistory,
    ExchangeRate,
    User,
)
from .errors import (
    AppError,
    ValidationError,
    NotFoundError,
    DuplicateSerialError,
    NotAuthenticatedError,
    AuthorizationError,
    InvalidTransitionError,
    FxUnavailableError,
)

__all__ = [
    "Currency",
    "MovementType",
    "SerialStatus",
    "TransactionType",
    "PaymentMethod",
    "ServiceStatus",
    "WarrantyType",
    "Role",
    "Product",
    "StockMovement",
    "ProductSerial",
    "Transaction",
    "ServiceRecord",
    "ServiceHistory",
    "ExchangeRate",
    "User",
    "AppError",
    "ValidationError",
    "NotFoundError",
    "DuplicateSerialError",
    "NotAuthenticatedError",
    "AuthorizationError",
    "InvalidTransitionError",
    "FxUnavailableError",
]
