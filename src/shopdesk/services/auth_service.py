from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
import re
from typing import Optional

from shopdesk.domain.errors import AuthorizationError, NotAuthenticatedError
from shopdesk.domain.models import DataPermission, Role, User


@dataclass(frozen=True)
class LoginPolicy:
    min_pin_length: int = 8
    max_failed_attempts: int = 5
    lockout_seconds: int = 60


def _validate_secret_strength(secret: str, *, min_len: int) -> None:
    if len(secret) < min_len:
        raise AuthorizationError(f"PIN must have at least {min_len} characters.")
    if not re.search(r"[A-Za-z]", secret):
        raise AuthorizationError("PIN must include at least one letter.")
    if not re.search(r"\d", secret):
        raise AuthorizationError("PIN must include at least one number.")


PERMISSIONS: dict[str, set[str]] = {
    "delete_product": {"admin"},
    "delete_category": {"admin"},
    "delete_serial": {"admin"},
    "delete_transaction": {"admin"},
    "delete_account": {"admin"},
    "delete_service_record": {"admin"},
    "delete_qc_item": {"admin"},
    "manage_users": {"admin"},
    "manage_permissions": {"admin"},
}

VIEW_RESOURCES = (
    "products",
    "transactions",
    "accounts",
    "bank_accounts",
    "stock_movements",
    "categories",
)


def require_authenticated(actor: Optional[User]) -> User:
    """Guard run before any database access by mutating entry points."""
    if actor is None:
        raise NotAuthenticatedError("User not authenticated.")
    return actor


def can(actor: User, action: str) -> bool:
    allowed_roles = PERMISSIONS.get(action)
    if allowed_roles is None:
        # actions without an entry are open to every signed-in user
        return True
    return actor.role.value in allowed_roles


def require_action(actor: Optional[User], action: str) -> User:
    user = require_authenticated(actor)
    if not can(user, action):
        raise AuthorizationError(f"Role '{user.role.value}' is not allowed to perform '{action}'.")
    return user


class AuthService:
    def __init__(self, repo, policy: LoginPolicy | None = None):
        self.repo = repo
        self.policy = policy or LoginPolicy()

    def list_users(self, actor: Optional[User]) -> list[User]:
        require_action(actor, "manage_users")
        return self.repo.list_users()

    def login(self, email: str, pin: str) -> User:
        email_clean = email.strip().lower()
        if not email_clean:
            raise AuthorizationError("Email is required.")

        state = self.repo.get_user_security_state(email_clean)
        if state:
            _attempts, locked_until = state
            if locked_until:
                until = datetime.fromisoformat(locked_until)
                now = datetime.now(timezone.utc).replace(tzinfo=None)
                if now < until:
                    remaining = int((until - now).total_seconds())
                    raise AuthorizationError(f"User is temporarily locked. Retry in {remaining}s.")

        user = self.repo.authenticate_user(email_clean, pin.strip())
        if not user:
            _attempts, locked_until = self.repo.record_login_failure(
                email_clean,
                self.policy.max_failed_attempts,
                self.policy.lockout_seconds,
            )
            if locked_until is not None:
                raise AuthorizationError("Too many failed attempts. User is temporarily locked.")
            raise AuthorizationError("Invalid email or PIN.")

        self.repo.clear_login_guard(user.id)
        return user

    def can(self, user: User, action: str) -> bool:
        return can(user, action)

    def require_action(self, user: Optional[User], action: str) -> User:
        return require_action(user, action)

    def create_user(self, actor: Optional[User], email: str, pin: str, role: str = "user") -> int:
        require_action(actor, "manage_users")

        address = email.strip().lower()
        secret = pin.strip()
        target_role = role.strip().lower()
        if not address or "@" not in address:
            raise AuthorizationError("A valid email is required.")
        _validate_secret_strength(secret, min_len=self.policy.min_pin_length)
        if target_role not in {r.value for r in Role}:
            raise AuthorizationError(f"Unknown role: {role}")

        return self.repo.create_user(address, secret, target_role, must_change_pin=1)

    def change_my_pin(self, actor: Optional[User], current_pin: str, new_pin: str, confirm_pin: str) -> None:
        user = require_authenticated(actor)
        current_secret = current_pin.strip()
        new_secret = new_pin.strip()
        confirm_secret = confirm_pin.strip()

        if not current_secret:
            raise AuthorizationError("Current PIN is required.")
        _validate_secret_strength(new_secret, min_len=self.policy.min_pin_length)
        if new_secret != confirm_secret:
            raise AuthorizationError("PIN confirmation does not match.")
        if new_secret == current_secret:
            raise AuthorizationError("New PIN must be different from the current PIN.")

        changed = self.repo.change_user_pin(user.id, current_secret, new_secret)
        if not changed:
            raise AuthorizationError("Current PIN is incorrect.")

    # ---------- Data permissions ----------
    def get_data_permissions(self, user: User) -> DataPermission:
        stored = self.repo.get_data_permission(user.id)
        return stored or DataPermission(user_id=user.id)

    def set_data_permissions(self, actor: Optional[User], user_id: int, **flags: bool) -> DataPermission:
        require_action(actor, "manage_permissions")
        unknown = set(flags) - {f"can_view_{r}" for r in VIEW_RESOURCES}
        if unknown:
            raise AuthorizationError(f"Unknown permission flags: {', '.join(sorted(unknown))}")
        current = self.repo.get_data_permission(int(user_id)) or DataPermission(user_id=int(user_id))
        updated = replace(current, **{k: bool(v) for k, v in flags.items()})
        self.repo.upsert_data_permission(updated)
        return updated

    def can_view(self, actor: Optional[User], resource: str) -> bool:
        user = require_authenticated(actor)
        if resource not in VIEW_RESOURCES:
            raise AuthorizationError(f"Unknown resource: {resource}")
        if user.is_admin:
            return True
        return bool(getattr(self.get_data_permissions(user), f"can_view_{resource}"))
