from pathlib import Path

import pytest

from conftest import admin_of, make_repo, make_user, set_admin_pin

from shopdesk.domain.errors import AuthorizationError, NotAuthenticatedError
from shopdesk.domain.models import Role, User
from shopdesk.repositories.sqlite_repo import SqliteRepository
from shopdesk.services.account_service import AccountService
from shopdesk.services.auth_service import AuthService, LoginPolicy, require_action, require_authenticated
from shopdesk.services.inventory_service import InventoryService
from shopdesk.services.serial_service import SerialService
from shopdesk.services.service_ticket_service import ServiceTicketService
from shopdesk.services.transaction_service import TransactionService


def test_migrations_create_schema_and_bootstrap_admin(tmp_path: Path):
    repo = make_repo(tmp_path)

    conn = repo._conn()
    cur = conn.cursor()
    cur.execute("SELECT version FROM schema_migrations ORDER BY version")
    versions = [int(r[0]) for r in cur.fetchall()]
    cur.execute("SELECT pin FROM users WHERE email='admin@localhost'")
    stored = str(cur.fetchone()[0])
    conn.close()

    assert versions == [1, 2, 3, 4]
    assert stored.startswith("pbkdf2_sha256$")
    assert (tmp_path / ".admin_bootstrap_pin").exists()
    assert admin_of(repo).role == Role.ADMIN


def test_init_db_is_idempotent(tmp_path: Path):
    repo = make_repo(tmp_path)
    repo.init_db()

    assert len(repo.list_users()) == 1


def test_migration_failure_restores_db(tmp_path: Path):
    class BrokenMigrationRepo(SqliteRepository):
        def _migration_v3_technical_service(self, cur):
            raise RuntimeError("forced migration failure")

    repo = make_repo(tmp_path, "broken.db")
    conn = repo._conn()
    cur = conn.cursor()
    cur.execute("DELETE FROM schema_migrations WHERE version >= 3")
    conn.commit()
    conn.close()

    with pytest.raises(RuntimeError, match="Original database restored"):
        BrokenMigrationRepo(tmp_path / "broken.db").run_migrations()

    conn = repo._conn()
    cur = conn.cursor()
    cur.execute("SELECT COALESCE(MAX(version), 0) FROM schema_migrations")
    after = int(cur.fetchone()[0])
    conn.close()
    assert after == 2


def test_login_and_lockout(tmp_path: Path):
    repo = make_repo(tmp_path)
    pin = set_admin_pin(repo)
    auth = AuthService(repo, policy=LoginPolicy(max_failed_attempts=2, lockout_seconds=30))

    assert auth.login("Admin@Localhost", pin).email == "admin@localhost"

    with pytest.raises(AuthorizationError, match="Invalid email or PIN"):
        auth.login("admin@localhost", "bad")
    with pytest.raises(AuthorizationError, match="locked"):
        auth.login("admin@localhost", "bad")
    with pytest.raises(AuthorizationError, match="locked"):
        AuthService(repo).login("admin@localhost", pin)


def test_admin_creates_users_and_users_cannot(tmp_path: Path):
    repo = make_repo(tmp_path)
    auth = AuthService(repo)
    admin = auth.login("admin@localhost", set_admin_pin(repo))

    auth.create_user(admin, "kasa@shop.local", "Kasa1234")
    clerk = auth.login("kasa@shop.local", "Kasa1234")
    assert clerk.role == Role.USER
    assert clerk.must_change_pin == 1

    with pytest.raises(AuthorizationError):
        auth.create_user(clerk, "x@shop.local", "Other1234")
    with pytest.raises(AuthorizationError, match="at least one number"):
        auth.create_user(admin, "y@shop.local", "onlyletters")
    with pytest.raises(AuthorizationError, match="Unknown role"):
        auth.create_user(admin, "z@shop.local", "Viewer1234", "viewer")


def test_change_pin(tmp_path: Path):
    repo = make_repo(tmp_path)
    auth = AuthService(repo)
    admin = auth.login("admin@localhost", set_admin_pin(repo))

    with pytest.raises(AuthorizationError, match="Current PIN is incorrect"):
        auth.change_my_pin(admin, "Wrong#1234", "NewPin#5678", "NewPin#5678")

    auth.change_my_pin(admin, "Admin#1234", "NewPin#5678", "NewPin#5678")
    assert auth.login("admin@localhost", "NewPin#5678").id == admin.id


def test_permission_matrix():
    admin = User(id=1, email="a@x", role=Role.ADMIN)
    user = User(id=2, email="u@x", role=Role.USER)

    assert require_action(admin, "delete_transaction") is admin
    assert require_action(user, "record_transaction") is user
    with pytest.raises(AuthorizationError):
        require_action(user, "delete_product")
    with pytest.raises(NotAuthenticatedError):
        require_authenticated(None)


class NoDatabase:
    def __getattr__(self, name):
        raise AssertionError(f"database touched: {name}")


def test_missing_identity_fails_before_touching_the_database():
    repo = NoDatabase()

    with pytest.raises(NotAuthenticatedError):
        InventoryService(repo).add_product(None, "Kablo")
    with pytest.raises(NotAuthenticatedError):
        SerialService(repo).create(None, 1, "SN")
    with pytest.raises(NotAuthenticatedError):
        TransactionService(repo).record(None, "sale", 10)
    with pytest.raises(NotAuthenticatedError):
        AccountService(repo).create_account(None, "Ali", "customer")
    with pytest.raises(NotAuthenticatedError):
        ServiceTicketService(repo).create_record(None, "Apple", "iPhone", "Ali", "555", "Bozuk")


def test_data_permissions_default_open_and_admin_sees_all(tmp_path: Path):
    repo = make_repo(tmp_path)
    admin = admin_of(repo)
    clerk = make_user(repo)
    auth = AuthService(repo)

    assert auth.can_view(clerk, "transactions") is True

    auth.set_data_permissions(admin, clerk.id, can_view_transactions=False)
    assert auth.can_view(clerk, "transactions") is False
    assert auth.can_view(clerk, "products") is True
    assert auth.can_view(admin, "transactions") is True

    with pytest.raises(AuthorizationError):
        auth.set_data_permissions(clerk, clerk.id, can_view_transactions=True)
    with pytest.raises(AuthorizationError, match="Unknown permission flags"):
        auth.set_data_permissions(admin, clerk.id, can_fly=True)
