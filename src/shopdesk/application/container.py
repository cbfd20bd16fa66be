from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from shopdesk.config import Settings, load_settings
from shopdesk.repositories.sqlite_repo import SqliteRepository
from shopdesk.repositories.unit_of_work import SqliteUnitOfWork
from shopdesk.services.account_service import AccountService
from shopdesk.services.auth_service import AuthService
from shopdesk.services.excel_service import ExcelService
from shopdesk.services.fx_service import FxService
from shopdesk.services.inventory_service import InventoryService
from shopdesk.services.reporting_service import ReportingService
from shopdesk.services.serial_service import SerialService
from shopdesk.services.service_ticket_service import ServiceTicketService
from shopdesk.services.stock_service import StockLedgerService
from shopdesk.services.transaction_service import TransactionService


@dataclass(frozen=True)
class AppContainer:
    repo: SqliteRepository
    settings: Settings
    auth: AuthService
    fx: FxService
    stock: StockLedgerService
    serials: SerialService
    inventory: InventoryService
    excel: ExcelService
    transactions: TransactionService
    accounts: AccountService
    service: ServiceTicketService
    reporting: ReportingService


def build_container(db_path: Path | str, settings: Settings | None = None) -> AppContainer:
    settings = settings or load_settings()
    repo = SqliteRepository(db_path)
    repo.init_db()

    def uow_factory() -> SqliteUnitOfWork:
        return SqliteUnitOfWork(repo)

    fx = FxService(
        repo,
        api_key=settings.fx_api_key,
        ttl_seconds=settings.fx_ttl_seconds,
        retries=settings.fx_retries,
        backoff_seconds=settings.fx_backoff_seconds,
    )
    stock = StockLedgerService(repo, uow_factory, allow_negative_stock=settings.allow_negative_stock)
    serials = SerialService(repo, uow_factory)
    inventory = InventoryService(repo, serials, uow_factory)
    excel = ExcelService(repo, stock)
    transactions = TransactionService(repo, stock, serials, fx, uow_factory)
    accounts = AccountService(repo)
    service = ServiceTicketService(repo, uow_factory, warranty_lookahead_days=settings.warranty_lookahead_days)
    reporting = ReportingService(repo, fx, settings.display_currency, settings.report_months)
    auth = AuthService(repo)

    return AppContainer(
        repo=repo,
        settings=settings,
        auth=auth,
        fx=fx,
        stock=stock,
        serials=serials,
        inventory=inventory,
        excel=excel,
        transactions=transactions,
        accounts=accounts,
        service=service,
        reporting=reporting,
    )
