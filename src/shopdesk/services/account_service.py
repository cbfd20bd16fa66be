from __future__ import annotations

from typing import Optional

from shopdesk.domain.errors import NotFoundError, ValidationError
from shopdesk.domain.models import Account, AccountType, BankAccount, Currency, User
from shopdesk.services.auth_service import require_action, require_authenticated

_ACCOUNT_FIELDS = ("name", "email", "phone", "address", "tax_number", "balance", "currency", "notes")
_BANK_FIELDS = ("name", "bank_name", "account_number", "iban", "balance", "currency", "notes")


class AccountService:
    """Customer/supplier cards and bank accounts.

    Balances are plain stored numbers edited by hand; recording a transaction
    never changes them.
    """

    def __init__(self, repo):
        self.repo = repo

    # ---------- Customer / supplier accounts ----------
    def create_account(
        self,
        actor: Optional[User],
        name: str,
        type: AccountType | str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
        tax_number: Optional[str] = None,
        balance: float = 0.0,
        currency: Currency | str = Currency.TRY,
        notes: Optional[str] = None,
    ) -> Account:
        user = require_authenticated(actor)
        values = self._clean({
            "name": name,
            "type": self._enum(AccountType, type, "account type"),
            "email": email,
            "phone": phone,
            "address": address,
            "tax_number": tax_number,
            "balance": balance,
            "currency": currency,
            "notes": notes,
        })
        aid = self.repo.add_account(user.id, values)
        return self.repo.get_account(user.id, aid)

    def update_account(self, actor: Optional[User], account_id: int, **changes) -> Account:
        user = require_authenticated(actor)
        unknown = set(changes) - set(_ACCOUNT_FIELDS) - {"type"}
        if unknown:
            raise ValidationError(f"Unknown account fields: {', '.join(sorted(unknown))}")
        if "type" in changes:
            changes["type"] = self._enum(AccountType, changes["type"], "account type")
        if not self.repo.update_account(user.id, int(account_id), self._clean(changes)):
            raise NotFoundError("Account not found.")
        return self.get_account(user, account_id)

    def get_account(self, actor: Optional[User], account_id: int) -> Account:
        user = require_authenticated(actor)
        acc = self.repo.get_account(user.id, int(account_id))
        if not acc:
            raise NotFoundError("Account not found.")
        return acc

    def list_accounts(self, actor: Optional[User], account_type: AccountType | str | None = None) -> list[Account]:
        user = require_authenticated(actor)
        kind = self._enum(AccountType, account_type, "account type") if account_type else None
        return self.repo.list_accounts(user.id, kind)

    def delete_account(self, actor: Optional[User], account_id: int) -> None:
        user = require_action(actor, "delete_account")
        if not self.repo.delete_account(user.id, int(account_id)):
            raise NotFoundError("Account not found.")

    # ---------- Bank accounts ----------
    def create_bank_account(
        self,
        actor: Optional[User],
        name: str,
        bank_name: Optional[str] = None,
        account_number: Optional[str] = None,
        iban: Optional[str] = None,
        balance: float = 0.0,
        currency: Currency | str = Currency.TRY,
        notes: Optional[str] = None,
    ) -> BankAccount:
        user = require_authenticated(actor)
        values = self._clean({
            "name": name,
            "bank_name": bank_name,
            "account_number": account_number,
            "iban": iban.replace(" ", "").upper() if iban else None,
            "balance": balance,
            "currency": currency,
            "notes": notes,
        })
        bid = self.repo.add_bank_account(user.id, values)
        return self.repo.get_bank_account(user.id, bid)

    def update_bank_account(self, actor: Optional[User], bank_account_id: int, **changes) -> BankAccount:
        user = require_authenticated(actor)
        unknown = set(changes) - set(_BANK_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown bank account fields: {', '.join(sorted(unknown))}")
        if not self.repo.update_bank_account(user.id, int(bank_account_id), self._clean(changes)):
            raise NotFoundError("Bank account not found.")
        return self.get_bank_account(user, bank_account_id)

    def get_bank_account(self, actor: Optional[User], bank_account_id: int) -> BankAccount:
        user = require_authenticated(actor)
        bank = self.repo.get_bank_account(user.id, int(bank_account_id))
        if not bank:
            raise NotFoundError("Bank account not found.")
        return bank

    def list_bank_accounts(self, actor: Optional[User]) -> list[BankAccount]:
        user = require_authenticated(actor)
        return self.repo.list_bank_accounts(user.id)

    def delete_bank_account(self, actor: Optional[User], bank_account_id: int) -> None:
        user = require_action(actor, "delete_account")
        if not self.repo.delete_bank_account(user.id, int(bank_account_id)):
            raise NotFoundError("Bank account not found.")

    def _clean(self, values: dict) -> dict:
        out = dict(values)
        if "name" in out:
            out["name"] = (out["name"] or "").strip()
            if not out["name"]:
                raise ValidationError("Name is required.")
        if "balance" in out:
            try:
                out["balance"] = float(out["balance"])
            except (TypeError, ValueError):
                raise ValidationError("Balance must be a number.") from None
        if "currency" in out:
            raw = out["currency"]
            out["currency"] = self._enum(Currency, raw.upper() if isinstance(raw, str) else raw, "currency")
        return out

    def _enum(self, enum_type, value, label: str):
        try:
            return enum_type(value)
        except ValueError:
            raise ValidationError(f"Unknown {label}: {value}") from None
