from .auth_service import AuthService
from .fx_service import FxService
from .stock_service import StockLedgerService
from .serial_service import SerialService
from .inventory_service import InventoryService
from .excel_service import ExcelService
from .transaction_service import TransactionService
from .account_service import AccountService
from .service_ticket_service import ServiceTicketService
from .reporting_service import ReportingService

__all__ = [
    "AuthService",
    "FxService",
    "StockLedgerService",
    "SerialService",
    "InventoryService",
    "ExcelService",
    "TransactionService",
    "AccountService",
    "ServiceTicketService",
    "ReportingService",
]
