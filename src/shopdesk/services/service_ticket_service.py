from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Optional

from shopdesk.domain.errors import InvalidTransitionError, NotFoundError, ValidationError
from shopdesk.domain.models import (
    TERMINAL_STATUSES,
    QCCheckItem,
    QCCheckResult,
    QCCheckType,
    ServiceAttachment,
    ServiceHistory,
    ServiceRecord,
    ServiceStatus,
    User,
    WarrantyType,
)
from shopdesk.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork
from shopdesk.services.auth_service import require_action, require_authenticated

log = logging.getLogger("shopdesk.service")

S = ServiceStatus

NEXT_STATUS: dict[ServiceStatus, Optional[ServiceStatus]] = {
    S.PENDING_QC_ENTRY: S.QC_ENTRY_APPROVED,
    S.QC_ENTRY_APPROVED: S.ASSIGNED_TECHNICIAN,
    S.ASSIGNED_TECHNICIAN: S.WAITING_PRICE_APPROVAL,
    S.WAITING_PRICE_APPROVAL: S.REPAIR_IN_PROGRESS,
    S.REPAIR_IN_PROGRESS: S.PENDING_QC_EXIT,
    S.PENDING_QC_EXIT: S.QC_EXIT_APPROVED,
    S.QC_EXIT_APPROVED: S.COMPLETED,
    S.COMPLETED: S.DELIVERED,
    S.DELIVERED: None,
    S.CANCELLED: None,
}

_REQUIRED_FIELDS = ("device_brand", "device_model", "customer_name", "customer_phone", "reported_issue")

EDITABLE_FIELDS = frozenset({
    "device_brand", "device_model", "device_serial", "device_imei", "device_color",
    "physical_condition", "accessories_received", "entry_notes",
    "customer_name", "customer_phone", "customer_email", "customer_address",
    "reported_issue", "diagnosis", "repair_description", "parts_used",
    "estimated_cost", "final_cost", "assigned_technician_name",
})

ATTACHMENT_TYPES = {
    "image": {".jpg", ".jpeg", ".png", ".gif", ".webp", ".heic"},
    "video": {".mp4", ".mov", ".avi", ".mkv", ".webm"},
}

QC_ITEM_FIELDS = frozenset({"name", "description", "category", "check_type", "is_required", "display_order", "is_active"})

# QC approval steps and the checklist stage they close
_QC_GATES = {S.QC_ENTRY_APPROVED: QCCheckType.ENTRY, S.QC_EXIT_APPROVED: QCCheckType.EXIT}


def next_status(status: ServiceStatus | str) -> Optional[ServiceStatus]:
    """The single forward step of the repair flow, or None for a terminal status."""
    return NEXT_STATUS[ServiceStatus(status)]


class ServiceTicketService:
    def __init__(
        self,
        repo,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        warranty_lookahead_days: int = 7,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repo = repo
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))
        self.warranty_lookahead_days = int(warranty_lookahead_days)
        self.clock = clock

    # ---------- Records ----------
    def create_record(
        self,
        actor: Optional[User],
        device_brand: str,
        device_model: str,
        customer_name: str,
        customer_phone: str,
        reported_issue: str,
        **details,
    ) -> ServiceRecord:
        user = require_authenticated(actor)
        values = {
            "device_brand": device_brand,
            "device_model": device_model,
            "customer_name": customer_name,
            "customer_phone": customer_phone,
            "reported_issue": reported_issue,
            **self._editable(details),
        }
        for name in _REQUIRED_FIELDS:
            values[name] = (values[name] or "").strip()
            if not values[name]:
                raise ValidationError(f"{name} is required.")

        at = self._now()
        with self.uow_factory() as uow:
            rid = uow.insert_service_record(user.id, {
                **values,
                "status": S.PENDING_QC_ENTRY,
                "received_at": at,
            })
            uow.insert_service_history(user.id, rid, None, S.PENDING_QC_ENTRY, user.email, "Service record created", at)
            record = uow.get_service_record(user.id, rid)

        log.info("service_created id=%s device=%s/%s actor=%s", rid, record.device_brand, record.device_model, user.id)
        return record

    def get_record(self, actor: Optional[User], record_id: int) -> ServiceRecord:
        user = require_authenticated(actor)
        record = self.repo.get_service_record(user.id, int(record_id))
        if not record:
            raise NotFoundError("Service record not found.")
        return record

    def list_records(self, actor: Optional[User]) -> list[ServiceRecord]:
        user = require_authenticated(actor)
        return self.repo.list_service_records(user.id)

    def records_by_status(self, actor: Optional[User], status: ServiceStatus | str) -> list[ServiceRecord]:
        user = require_authenticated(actor)
        return self.repo.list_service_records(user.id, ServiceStatus(status))

    def update_record(self, actor: Optional[User], record_id: int, **changes) -> ServiceRecord:
        """Edit descriptive fields. Status and its stamps only move through transitions."""
        user = require_authenticated(actor)
        values = self._editable(changes)
        for name in _REQUIRED_FIELDS:
            if name in values:
                values[name] = (values[name] or "").strip()
                if not values[name]:
                    raise ValidationError(f"{name} is required.")
        if not self.repo.get_service_record(user.id, int(record_id)):
            raise NotFoundError("Service record not found.")
        self.repo.update_service_record_fields(user.id, int(record_id), values)
        return self.get_record(user, record_id)

    def delete_record(self, actor: Optional[User], record_id: int) -> None:
        user = require_action(actor, "delete_service_record")
        if not self.repo.delete_service_record(user.id, int(record_id)):
            raise NotFoundError("Service record not found.")
        log.info("service_deleted id=%s actor=%s", record_id, user.id)

    def history(self, actor: Optional[User], record_id: int) -> list[ServiceHistory]:
        user = require_authenticated(actor)
        return self.repo.list_service_history(user.id, int(record_id))

    # ---------- Transitions ----------
    def advance(
        self,
        actor: Optional[User],
        record_id: int,
        notes: Optional[str] = None,
        technician: Optional[str] = None,
    ) -> ServiceRecord:
        """Move the ticket one step along the flow.

        The price gate is not crossed here: a ticket waiting for price
        approval only moves through ``decide_price``.
        """
        user = require_authenticated(actor)
        with self.uow_factory() as uow:
            record = self._load(uow, user, record_id)
            if record.status == S.WAITING_PRICE_APPROVAL:
                raise InvalidTransitionError("Waiting for price approval; use decide_price.")
            target = next_status(record.status)
            if target is None:
                raise InvalidTransitionError(f"Service record is {record.status.value}; no further status.")

            extra: dict[str, object] = {}
            if target == S.ASSIGNED_TECHNICIAN and technician:
                extra["assigned_technician_name"] = technician.strip()
            updated = self._transition(uow, user, record, target, notes, extra)
        return updated

    def decide_price(
        self,
        actor: Optional[User],
        record_id: int,
        approve: bool,
        estimated_cost: Optional[float] = None,
        notes: Optional[str] = None,
    ) -> ServiceRecord:
        """Customer answer at the price gate.

        Approval stamps the decision and moves on to ``repair_in_progress``.
        Rejection records ``price_approved=False`` and leaves the ticket where
        it is; cancelling it is a separate call.
        """
        user = require_authenticated(actor)
        if estimated_cost is not None and float(estimated_cost) < 0:
            raise ValidationError("Estimated cost must be >= 0.")

        with self.uow_factory() as uow:
            record = self._load(uow, user, record_id)
            if record.status != S.WAITING_PRICE_APPROVAL:
                raise InvalidTransitionError(
                    f"Service record is {record.status.value}; price decisions need waiting_price_approval."
                )
            values: dict[str, object] = {"price_approved": bool(approve)}
            if estimated_cost is not None:
                values["estimated_cost"] = float(estimated_cost)
            if approve:
                values["price_approved_at"] = self._now()
                updated = self._transition(uow, user, record, S.REPAIR_IN_PROGRESS, notes, values)
            else:
                uow.update_service_record(user.id, record.id, values)
                updated = uow.get_service_record(user.id, record.id)

        log.info("service_price_decision id=%s approved=%s actor=%s", record_id, bool(approve), user.id)
        return updated

    def cancel(self, actor: Optional[User], record_id: int, notes: Optional[str] = None) -> ServiceRecord:
        user = require_authenticated(actor)
        with self.uow_factory() as uow:
            record = self._load(uow, user, record_id)
            if record.status in TERMINAL_STATUSES:
                raise InvalidTransitionError(f"Service record is already {record.status.value}.")
            return self._transition(uow, user, record, S.CANCELLED, notes, {})

    def _transition(
        self,
        uow: UnitOfWork,
        user: User,
        record: ServiceRecord,
        target: ServiceStatus,
        notes: Optional[str],
        extra: dict[str, object],
    ) -> ServiceRecord:
        stage = _QC_GATES.get(target)
        if stage is not None:
            missing = uow.missing_required_qc_items(user.id, record.id, stage)
            if missing:
                raise InvalidTransitionError(
                    f"Required {stage.value} checks not passed: {', '.join(i.name for i in missing)}"
                )

        at = self._now()
        values: dict[str, object] = {"status": target, **extra}
        if target == S.QC_ENTRY_APPROVED:
            values.update(qc_entry_at=at, qc_entry_by=user.email, qc_entry_notes=notes)
        elif target == S.QC_EXIT_APPROVED:
            values.update(qc_exit_at=at, qc_exit_by=user.email, qc_exit_notes=notes)
        elif target == S.COMPLETED:
            values["completed_at"] = at
        elif target == S.DELIVERED:
            values["delivered_at"] = at

        uow.update_service_record(user.id, record.id, values)
        uow.insert_service_history(user.id, record.id, record.status, target, user.email, notes, at)
        log.info(
            "service_status id=%s from=%s to=%s actor=%s", record.id, record.status.value, target.value, user.id
        )
        return uow.get_service_record(user.id, record.id)

    def _load(self, uow: UnitOfWork, user: User, record_id: int) -> ServiceRecord:
        record = uow.get_service_record(user.id, int(record_id))
        if not record:
            raise NotFoundError("Service record not found.")
        return record

    # ---------- Warranty ----------
    def activate_warranty(
        self,
        actor: Optional[User],
        record_id: int,
        warranty_type: WarrantyType | str,
        duration_days: int,
        terms: Optional[str] = None,
        parts: Optional[str] = None,
    ) -> ServiceRecord:
        user = require_authenticated(actor)
        try:
            kind = WarrantyType(warranty_type)
        except ValueError:
            raise ValidationError(f"Unknown warranty type: {warranty_type}") from None
        days = int(duration_days)
        if days < 0:
            raise ValidationError("Warranty duration must be >= 0 days.")

        start = self.clock().date()
        values = {
            "has_warranty": kind != WarrantyType.NONE,
            "warranty_type": kind,
            "warranty_duration_days": days,
            "warranty_start_date": start.isoformat(),
            "warranty_end_date": (start + timedelta(days=days)).isoformat(),
            "warranty_terms": terms,
            "warranty_parts": parts,
        }
        if not self.repo.update_service_record_fields(user.id, int(record_id), values):
            raise NotFoundError("Service record not found.")
        log.info("warranty_activated id=%s type=%s days=%s actor=%s", record_id, kind.value, days, user.id)
        return self.get_record(user, record_id)

    def expiring_warranties(self, actor: Optional[User], today: Optional[date] = None) -> list[ServiceRecord]:
        """Warranties ending within the lookahead window; already expired ones are left out."""
        user = require_authenticated(actor)
        start = today or self.clock().date()
        end = start + timedelta(days=self.warranty_lookahead_days)
        return self.repo.list_warranties_ending_between(user.id, start.isoformat(), end.isoformat())

    # ---------- Attachments ----------
    def add_attachment(
        self,
        actor: Optional[User],
        record_id: int,
        file_name: str,
        file_path: str,
        stage: str,
        file_type: Optional[str] = None,
        file_size: Optional[int] = None,
        description: Optional[str] = None,
    ) -> ServiceAttachment:
        """Register a photo or video taken at some stage of the repair. Only the path is kept."""
        user = require_authenticated(actor)
        kind = file_type or _attachment_type(file_name)
        if kind not in ATTACHMENT_TYPES:
            raise ValidationError(f"Unsupported attachment: {file_name}")
        if not (stage or "").strip():
            raise ValidationError("Attachment stage is required.")
        self.get_record(user, record_id)

        aid = self.repo.add_service_attachment(user.id, {
            "service_record_id": int(record_id),
            "file_name": file_name,
            "file_path": file_path,
            "file_type": kind,
            "file_size": file_size,
            "description": description,
            "attachment_stage": stage.strip(),
            "created_at": self._now(),
        })
        return next(a for a in self.repo.list_service_attachments(user.id, int(record_id)) if a.id == aid)

    def list_attachments(self, actor: Optional[User], record_id: int) -> list[ServiceAttachment]:
        user = require_authenticated(actor)
        return self.repo.list_service_attachments(user.id, int(record_id))

    def delete_attachment(self, actor: Optional[User], attachment_id: int) -> None:
        user = require_authenticated(actor)
        if not self.repo.delete_service_attachment(user.id, int(attachment_id)):
            raise NotFoundError("Attachment not found.")

    # ---------- QC checklist ----------
    def create_qc_item(
        self,
        actor: Optional[User],
        name: str,
        check_type: QCCheckType | str,
        description: Optional[str] = None,
        category: str = "genel",
        is_required: bool = False,
        display_order: int = 0,
    ) -> QCCheckItem:
        user = require_authenticated(actor)
        values = self._qc_item_values({
            "name": name,
            "description": description,
            "category": category,
            "check_type": check_type,
            "is_required": is_required,
            "display_order": display_order,
            "is_active": True,
        })
        at = self._now()
        iid = self.repo.add_qc_check_item(user.id, {**values, "created_at": at, "updated_at": at})
        return self.repo.get_qc_check_item(user.id, iid)

    def update_qc_item(self, actor: Optional[User], item_id: int, **changes) -> QCCheckItem:
        """Edit a checklist item; ``is_active=False`` hides it without losing past results."""
        user = require_authenticated(actor)
        unknown = set(changes) - QC_ITEM_FIELDS
        if unknown:
            raise ValidationError(f"Unknown QC item fields: {', '.join(sorted(unknown))}")
        values = self._qc_item_values(changes)
        values["updated_at"] = self._now()
        if not self.repo.update_qc_check_item(user.id, int(item_id), values):
            raise NotFoundError("QC item not found.")
        return self.repo.get_qc_check_item(user.id, int(item_id))

    def delete_qc_item(self, actor: Optional[User], item_id: int) -> None:
        user = require_action(actor, "delete_qc_item")
        if not self.repo.delete_qc_check_item(user.id, int(item_id)):
            raise NotFoundError("QC item not found.")

    def list_qc_items(self, actor: Optional[User], stage: QCCheckType | str | None = None) -> list[QCCheckItem]:
        """All items in display order, or the active ones that apply to ``stage``."""
        user = require_authenticated(actor)
        items = self.repo.list_qc_check_items(user.id)
        if stage is None:
            return items
        wanted = self._qc_stage(stage)
        return [i for i in items if i.is_active and i.check_type in (wanted, QCCheckType.BOTH)]

    def save_qc_results(
        self,
        actor: Optional[User],
        record_id: int,
        stage: QCCheckType | str,
        results: Iterable[dict],
    ) -> list[QCCheckResult]:
        """Record checklist outcomes for one stage of a ticket.

        Each entry carries ``item_id`` plus optional ``passed`` and ``notes``.
        Saving an item again replaces its earlier result. All entries are
        written together.
        """
        user = require_authenticated(actor)
        wanted = self._qc_stage(stage)
        entries = list(results)
        at = self._now()
        saved = []
        with self.uow_factory() as uow:
            self._load(uow, user, record_id)
            for entry in entries:
                try:
                    item_id = int(entry["item_id"])
                except (KeyError, TypeError, ValueError):
                    raise ValidationError("QC results need an item_id.") from None
                item = uow.get_qc_check_item(user.id, item_id)
                if not item:
                    raise NotFoundError("QC item not found.")
                if item.check_type not in (wanted, QCCheckType.BOTH):
                    raise ValidationError(f"{item.name} is not an {wanted.value} check.")
                passed = entry.get("passed")
                saved.append(uow.upsert_qc_check_result(user.id, {
                    "service_record_id": int(record_id),
                    "qc_check_item_id": item_id,
                    "check_stage": wanted,
                    "passed": None if passed is None else bool(passed),
                    "notes": entry.get("notes"),
                    "checked_by": user.email,
                    "checked_at": at,
                }))

        log.info("qc_results_saved id=%s stage=%s count=%s actor=%s", record_id, wanted.value, len(saved), user.id)
        return saved

    def qc_results(
        self, actor: Optional[User], record_id: int, stage: QCCheckType | str | None = None
    ) -> list[QCCheckResult]:
        user = require_authenticated(actor)
        wanted = self._qc_stage(stage) if stage is not None else None
        return self.repo.list_qc_check_results(user.id, int(record_id), wanted)

    def _qc_item_values(self, values: dict) -> dict:
        out = dict(values)
        if "name" in out:
            out["name"] = (out["name"] or "").strip()
            if not out["name"]:
                raise ValidationError("Name is required.")
        if "category" in out:
            out["category"] = (out["category"] or "").strip() or "genel"
        if "check_type" in out:
            try:
                out["check_type"] = QCCheckType(out["check_type"])
            except ValueError:
                raise ValidationError(f"Unknown check type: {out['check_type']}") from None
        for flag in ("is_required", "is_active"):
            if flag in out:
                out[flag] = bool(out[flag])
        if "display_order" in out:
            out["display_order"] = int(out["display_order"])
        return out

    def _qc_stage(self, stage: QCCheckType | str) -> QCCheckType:
        try:
            wanted = QCCheckType(stage)
        except ValueError:
            wanted = None
        if wanted not in (QCCheckType.ENTRY, QCCheckType.EXIT):
            raise ValidationError(f"Unknown QC stage: {stage}")
        return wanted

    def _editable(self, changes: dict) -> dict:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields not editable: {', '.join(sorted(unknown))}")
        for cost in ("estimated_cost", "final_cost"):
            if cost in changes and float(changes[cost]) < 0:
                raise ValidationError(f"{cost} must be >= 0.")
        return dict(changes)

    def _now(self) -> str:
        return self.clock().replace(microsecond=0).isoformat(sep=" ")


def _attachment_type(file_name: str) -> Optional[str]:
    suffix = Path(file_name).suffix.lower()
    for kind, suffixes in ATTACHMENT_TYPES.items():
        if suffix in suffixes:
            return kind
    return None
