from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from shopdesk.domain.errors import InvalidTransitionError, NotFoundError, ValidationError
from shopdesk.domain.models import ProductSerial, SerialStatus, User
from shopdesk.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork
from shopdesk.services.auth_service import require_action, require_authenticated

log = logging.getLogger("shopdesk.stock")


class SerialService:
    """Per-unit IMEI/serial tracking: in_stock -> sold -> returned -> in_stock."""

    def __init__(
        self,
        repo,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repo = repo
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))
        self.clock = clock

    def create(
        self,
        actor: Optional[User],
        product_id: int,
        serial_number: str,
        purchase_price: float = 0.0,
        sale_price: float = 0.0,
        notes: Optional[str] = None,
    ) -> ProductSerial:
        user = require_authenticated(actor)
        with self.uow_factory() as uow:
            if not uow.get_product(user.id, int(product_id)):
                raise NotFoundError("Product not found.")
            serial = self.create_within(uow, user, int(product_id), serial_number, purchase_price, sale_price, notes)
        log.info("serial_created serial=%s product_id=%s actor=%s", serial.serial_number, product_id, user.id)
        return serial

    def create_within(
        self,
        uow: UnitOfWork,
        user: User,
        product_id: int,
        serial_number: str,
        purchase_price: float,
        sale_price: float,
        notes: Optional[str] = None,
    ) -> ProductSerial:
        number = (serial_number or "").strip()
        if not number:
            raise ValidationError("Serial number is required.")
        if float(purchase_price) < 0 or float(sale_price) < 0:
            raise ValidationError("Prices must be >= 0.")
        at = self._now()
        return uow.insert_serial(user.id, {
            "product_id": int(product_id),
            "serial_number": number,
            "status": SerialStatus.IN_STOCK,
            "purchase_price": float(purchase_price),
            "sale_price": float(sale_price),
            "notes": notes,
            "created_at": at,
            "updated_at": at,
        })

    def sell(
        self,
        actor: Optional[User],
        serial_id: int,
        sale_price: float,
        buyer_account_id: Optional[int] = None,
        transaction_id: Optional[int] = None,
    ) -> ProductSerial:
        user = require_authenticated(actor)
        with self.uow_factory() as uow:
            serial = self.sell_within(uow, user, int(serial_id), sale_price, buyer_account_id, transaction_id)
        log.info("serial_sold serial=%s transaction_id=%s actor=%s", serial.serial_number, transaction_id, user.id)
        return serial

    def sell_within(
        self,
        uow: UnitOfWork,
        user: User,
        serial_id: int,
        sale_price: float,
        buyer_account_id: Optional[int],
        transaction_id: Optional[int],
    ) -> ProductSerial:
        if float(sale_price) < 0:
            raise ValidationError("Sale price must be >= 0.")
        at = self._now()
        return self._transition(uow, user, serial_id, SerialStatus.IN_STOCK, {
            "status": SerialStatus.SOLD,
            "sale_price": float(sale_price),
            "sold_at": at,
            "sold_to_account_id": buyer_account_id,
            "transaction_id": transaction_id,
            "updated_at": at,
        })

    def return_serial(self, actor: Optional[User], serial_id: int) -> ProductSerial:
        user = require_authenticated(actor)
        with self.uow_factory() as uow:
            serial = self._transition(uow, user, int(serial_id), SerialStatus.SOLD, {
                "status": SerialStatus.RETURNED,
                "updated_at": self._now(),
            })
        log.info("serial_returned serial=%s actor=%s", serial.serial_number, user.id)
        return serial

    def restock(self, actor: Optional[User], serial_id: int) -> ProductSerial:
        user = require_authenticated(actor)
        with self.uow_factory() as uow:
            serial = self._transition(uow, user, int(serial_id), SerialStatus.RETURNED, {
                "status": SerialStatus.IN_STOCK,
                "sold_at": None,
                "sold_to_account_id": None,
                "transaction_id": None,
                "updated_at": self._now(),
            })
        log.info("serial_restocked serial=%s actor=%s", serial.serial_number, user.id)
        return serial

    def find_by_serial(self, actor: Optional[User], serial_number: str) -> Optional[ProductSerial]:
        user = require_authenticated(actor)
        return self.repo.find_serial(user.id, (serial_number or "").strip())

    def get_serial(self, actor: Optional[User], serial_id: int) -> ProductSerial:
        user = require_authenticated(actor)
        serial = self.repo.get_serial(user.id, int(serial_id))
        if not serial:
            raise NotFoundError("Serial not found.")
        return serial

    def list_serials(
        self,
        actor: Optional[User],
        status: SerialStatus | str | None = None,
        product_id: Optional[int] = None,
    ) -> list[ProductSerial]:
        user = require_authenticated(actor)
        wanted = SerialStatus(status) if status is not None else None
        return self.repo.list_serials(user.id, wanted, product_id)

    def update_serial(
        self,
        actor: Optional[User],
        serial_id: int,
        purchase_price: Optional[float] = None,
        sale_price: Optional[float] = None,
        notes: Optional[str] = None,
    ) -> ProductSerial:
        user = require_authenticated(actor)
        values: dict[str, object] = {}
        if purchase_price is not None:
            values["purchase_price"] = float(purchase_price)
        if sale_price is not None:
            values["sale_price"] = float(sale_price)
        if notes is not None:
            values["notes"] = notes
        if any(float(v) < 0 for k, v in values.items() if k.endswith("_price")):
            raise ValidationError("Prices must be >= 0.")
        if not self.repo.update_serial_fields(user.id, int(serial_id), values):
            raise NotFoundError("Serial not found.")
        return self.get_serial(user, serial_id)

    def delete_serial(self, actor: Optional[User], serial_id: int) -> None:
        user = require_action(actor, "delete_serial")
        if not self.repo.delete_serial(user.id, int(serial_id)):
            raise NotFoundError("Serial not found.")

    def _transition(
        self,
        uow: UnitOfWork,
        user: User,
        serial_id: int,
        expected: SerialStatus,
        values: dict[str, object],
    ) -> ProductSerial:
        current = uow.get_serial(user.id, serial_id)
        if not current:
            raise NotFoundError("Serial not found.")
        if current.status != expected or not uow.transition_serial(user.id, serial_id, expected, values):
            raise InvalidTransitionError(
                f"Serial {current.serial_number} is {current.status.value}; expected {expected.value}."
            )
        return uow.get_serial(user.id, serial_id)

    def _now(self) -> str:
        return self.clock().replace(microsecond=0).isoformat(sep=" ")
