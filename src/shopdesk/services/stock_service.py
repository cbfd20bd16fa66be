from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from shopdesk.domain.errors import NotFoundError, ValidationError
from shopdesk.domain.models import MovementType, Product, StockMovement, User
from shopdesk.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork
from shopdesk.services.auth_service import require_authenticated

log = logging.getLogger("shopdesk.stock")


def next_quantity(previous: int, movement_type: MovementType, quantity: int) -> tuple[int, int]:
    """Return ``(logged_quantity, new_quantity)`` for a movement.

    ``in``/``out`` take a delta; ``adjustment`` takes the target quantity and
    logs the absolute difference.
    """
    if movement_type == MovementType.IN:
        return quantity, previous + quantity
    if movement_type == MovementType.OUT:
        return quantity, previous - quantity
    return abs(quantity - previous), quantity


class StockLedgerService:
    def __init__(
        self,
        repo,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        allow_negative_stock: bool = True,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repo = repo
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))
        self.allow_negative_stock = allow_negative_stock
        self.clock = clock

    def apply_movement(
        self,
        actor: Optional[User],
        product_id: int,
        movement_type: MovementType | str,
        quantity: int,
        reason: Optional[str] = None,
        reference_id: Optional[int] = None,
    ) -> tuple[StockMovement, Product]:
        user = require_authenticated(actor)
        kind = self._movement_type(movement_type)
        qty = self._validate_quantity(kind, quantity)

        with self.uow_factory() as uow:
            movement, product = self.apply_within(uow, user, int(product_id), kind, qty, reason, reference_id)

        log.info(
            "movement_applied product_id=%s type=%s qty=%s prev=%s new=%s actor=%s",
            product.id, kind.value, movement.quantity, movement.previous_quantity, movement.new_quantity, user.id,
        )
        return movement, product

    def apply_within(
        self,
        uow: UnitOfWork,
        user: User,
        product_id: int,
        movement_type: MovementType,
        quantity: int,
        reason: Optional[str],
        reference_id: Optional[int],
    ) -> tuple[StockMovement, Product]:
        """Ledger write plus quantity update inside a caller-owned unit of work."""
        product = uow.get_product(user.id, product_id)
        if not product:
            raise NotFoundError("Product not found.")

        previous = int(product.quantity)
        logged, new = next_quantity(previous, movement_type, quantity)
        if new < 0 and not self.allow_negative_stock:
            raise ValidationError(f"Not enough stock for {product.name}. Available: {previous}")

        at = self._now()
        movement = uow.insert_movement(user.id, {
            "product_id": product.id,
            "type": movement_type,
            "quantity": logged,
            "previous_quantity": previous,
            "new_quantity": new,
            "reason": reason,
            "reference_id": reference_id,
            "created_at": at,
        })
        if not uow.set_product_quantity(user.id, product.id, new, at):
            raise NotFoundError("Product not found.")

        updated = uow.get_product(user.id, product.id)
        return movement, updated

    def list_movements(self, actor: Optional[User], product_id: Optional[int] = None) -> list[StockMovement]:
        user = require_authenticated(actor)
        return self.repo.list_movements(user.id, product_id)

    def movement_history(self, actor: Optional[User], product_id: int) -> list[StockMovement]:
        """Movements of one product in the order they were applied."""
        user = require_authenticated(actor)
        return self.repo.list_movements(user.id, int(product_id), newest_first=False)

    def _movement_type(self, value: MovementType | str) -> MovementType:
        try:
            return MovementType(value)
        except ValueError:
            raise ValidationError(f"Unknown movement type: {value}") from None

    def _validate_quantity(self, kind: MovementType, quantity: int) -> int:
        qty = int(quantity)
        if kind == MovementType.ADJUSTMENT:
            if qty < 0:
                raise ValidationError("Adjustment target must be >= 0.")
        elif qty <= 0:
            raise ValidationError("Quantity must be > 0.")
        return qty

    def _now(self) -> str:
        return self.clock().replace(microsecond=0).isoformat(sep=" ")
