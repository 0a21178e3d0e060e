"""Order creation wizard, atomic commit and status transitions."""

from __future__ import annotations

import enum
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator, Literal
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import audit, models
from ..filters import HierarchySelection, coerce_id
from ..permissions import can_manage, next_status

# purpose: drive the two-phase order creation flow and persist it in one transaction
# inputs: header selections, repeated line-item selections, an actor profile
# outputs: Order + OrderedPart rows + initial StatusTracker row, all or nothing
# status: active

logger = logging.getLogger(__name__)

OrderType = Literal["Machine", "Storage"]
ORDER_TYPES: tuple[str, ...] = ("Machine", "Storage")

DRAFT_TTL_MINUTES = int(os.getenv("DRAFT_TTL_MINUTES", "120"))


class OrderLifecycleError(RuntimeError):
    """Base error for order creation and transitions."""


class DraftStateError(OrderLifecycleError):
    """Raised when an operation is not allowed in the flow's current state."""


class DraftValidationError(OrderLifecycleError):
    """Raised when a guard rejects the current selections."""


class DraftNotFound(OrderLifecycleError):
    """Raised when a draft id is unknown or belongs to someone else."""


class DestinationMismatch(DraftValidationError):
    """Raised when a section or machine does not belong to its parent."""


class OrderStoreError(OrderLifecycleError):
    """Raised when the store fails; nothing was persisted."""


class OrderNotFound(OrderLifecycleError):
    """Raised when an order id does not exist."""


class TransitionForbidden(OrderLifecycleError):
    """Raised when the actor may not move the order out of its status."""


class DraftState(str, enum.Enum):
    IDLE = "idle"
    COLLECTING_HEADER = "collecting_header"
    AWAITING_PARTS = "awaiting_parts"
    COMMITTING = "committing"
    DONE = "done"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class OrderHeader:
    factory_id: int
    department_id: int
    order_type: OrderType
    description: str
    created_at: datetime


@dataclass(frozen=True)
class LineItem:
    part_id: int
    qty: int
    factory_id: int
    factory_section_id: int | None
    machine_id: int | None
    is_sample_sent_to_office: bool = False
    note: str | None = None


@dataclass
class LineSelector:
    """Selections for the line item currently being entered."""

    part_id: int | None = None
    qty: int | None = None
    factory_section_id: int | None = None
    machine_id: int | None = None
    is_sample_sent_to_office: bool | None = False
    note: str = ""


def _coerce_qty(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        qty = int(value)
    except (TypeError, ValueError):
        return None
    if isinstance(value, float) and not value.is_integer():
        return None
    return qty


class OrderCreationFlow:
    """State machine behind the create-order wizard.

    ``Idle → CollectingHeader → AwaitingParts → Committing → Done``, with
    ``Cancelled`` reachable from CollectingHeader and AwaitingParts. Nothing
    is persisted until :meth:`commit` hands the header and lines to a writer.
    """

    def __init__(self, actor_id: int | None = None) -> None:
        self.actor_id = actor_id
        self.state = DraftState.IDLE
        self.hierarchy = HierarchySelection()
        self.department_id: int | None = None
        self.order_type: str | None = None
        self.description = ""
        self.header: OrderHeader | None = None
        self.selector = LineSelector()
        self.lines: list[LineItem] = []
        self.order_id: int | None = None

    # -- header ---------------------------------------------------------

    def start(self) -> "OrderCreationFlow":
        self._require(DraftState.IDLE)
        self.state = DraftState.COLLECTING_HEADER
        return self

    def select_factory(self, value: Any) -> None:
        self._require(DraftState.COLLECTING_HEADER)
        self.hierarchy = self.hierarchy.select_factory(value)
        self.selector.factory_section_id = None
        self.selector.machine_id = None

    def select_department(self, value: Any) -> None:
        self._require(DraftState.COLLECTING_HEADER)
        self.department_id = coerce_id(value)

    def select_order_type(self, value: Any) -> None:
        self._require(DraftState.COLLECTING_HEADER)
        self.order_type = value if value in ORDER_TYPES else None

    def set_description(self, value: str | None) -> None:
        self._require(DraftState.COLLECTING_HEADER)
        self.description = value or ""

    @property
    def is_order_form_complete(self) -> bool:
        return (
            self.hierarchy.factory_id is not None
            and self.department_id is not None
            and self.order_type in ORDER_TYPES
            and bool(self.description.strip())
        )

    def submit_header(self, now: datetime | None = None) -> OrderHeader:
        self._require(DraftState.COLLECTING_HEADER)
        if not self.is_order_form_complete:
            raise DraftValidationError("Please fill out all required fields")
        self.header = OrderHeader(
            factory_id=self.hierarchy.factory_id,
            department_id=self.department_id,
            order_type=self.order_type,
            description=self.description.strip(),
            created_at=now or datetime.now(timezone.utc),
        )
        self.state = DraftState.AWAITING_PARTS
        return self.header

    # -- line items -----------------------------------------------------

    def select_part(self, value: Any) -> None:
        self._require(DraftState.AWAITING_PARTS)
        self.selector.part_id = coerce_id(value)

    def set_qty(self, value: Any) -> None:
        self._require(DraftState.AWAITING_PARTS)
        self.selector.qty = _coerce_qty(value)

    def select_section(self, value: Any) -> None:
        self._require(DraftState.AWAITING_PARTS)
        self.hierarchy = self.hierarchy.select_section(value)
        self.selector.factory_section_id = self.hierarchy.factory_section_id
        self.selector.machine_id = None

    def select_machine(self, value: Any) -> None:
        self._require(DraftState.AWAITING_PARTS)
        self.hierarchy = self.hierarchy.select_machine(value)
        self.selector.machine_id = self.hierarchy.machine_id

    def set_sample_sent(self, value: bool | None) -> None:
        self._require(DraftState.AWAITING_PARTS)
        self.selector.is_sample_sent_to_office = value

    def set_note(self, value: str | None) -> None:
        self._require(DraftState.AWAITING_PARTS)
        self.selector.note = value or ""

    @property
    def is_add_part_form_complete(self) -> bool:
        selector = self.selector
        if self.state != DraftState.AWAITING_PARTS or self.header is None:
            return False
        if selector.part_id is None or selector.qty is None or selector.qty <= 0:
            return False
        if selector.is_sample_sent_to_office is None:
            return False
        if self.header.order_type == "Machine":
            return selector.factory_section_id is not None and selector.machine_id is not None
        return True

    def add_part(self) -> LineItem:
        self._require(DraftState.AWAITING_PARTS)
        if not self.is_add_part_form_complete:
            raise DraftValidationError("Part, quantity and destination are required")
        selector = self.selector
        is_machine = self.header.order_type == "Machine"
        line = LineItem(
            part_id=selector.part_id,
            qty=selector.qty,
            factory_id=self.header.factory_id,
            factory_section_id=selector.factory_section_id if is_machine else None,
            machine_id=selector.machine_id if is_machine else None,
            is_sample_sent_to_office=bool(selector.is_sample_sent_to_office),
            note=selector.note.strip() or None,
        )
        self.lines.append(line)
        self._reset_selector()
        return line

    def remove_part(self, index: int) -> LineItem:
        self._require(DraftState.COLLECTING_HEADER, DraftState.AWAITING_PARTS)
        if index < 0 or index >= len(self.lines):
            raise DraftValidationError(f"No line item at index {index}")
        return self.lines.pop(index)

    def _reset_selector(self) -> None:
        self.selector = LineSelector()
        self.hierarchy = self.hierarchy.select_section(None)

    # -- terminal transitions -------------------------------------------

    def cancel(self) -> None:
        self._require(DraftState.COLLECTING_HEADER, DraftState.AWAITING_PARTS)
        self.hierarchy = HierarchySelection()
        self.department_id = None
        self.order_type = None
        self.description = ""
        self.header = None
        self.lines = []
        self.selector = LineSelector()
        self.state = DraftState.CANCELLED

    @property
    def can_commit(self) -> bool:
        return self.state == DraftState.AWAITING_PARTS and bool(self.lines)

    def commit(self, writer: Callable[[OrderHeader, list[LineItem]], int]) -> int:
        """Persist the draft through ``writer`` and return the new order id.

        On failure the flow returns to AwaitingParts with its lines intact
        so the user can retry.
        """

        self._require(DraftState.AWAITING_PARTS)
        if not self.lines:
            raise DraftValidationError("Add at least one part before creating the order")
        self.state = DraftState.COMMITTING
        try:
            order_id = writer(self.header, list(self.lines))
        except Exception:
            self.state = DraftState.AWAITING_PARTS
            raise
        self.order_id = order_id
        self.department_id = None
        self.order_type = None
        self.description = ""
        self.header = None
        self.lines = []
        self.selector = LineSelector()
        self.hierarchy = HierarchySelection()
        self.state = DraftState.DONE
        return order_id

    def _require(self, *states: DraftState) -> None:
        if self.state not in states:
            expected = ", ".join(s.value for s in states)
            raise DraftStateError(f"Draft is {self.state.value}, expected {expected}")

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "factory_id": self.hierarchy.factory_id,
            "department_id": self.department_id,
            "order_type": self.order_type,
            "description": self.description,
            "lines": [asdict(line) for line in self.lines],
            "is_order_form_complete": self.is_order_form_complete,
            "is_add_part_form_complete": self.is_add_part_form_complete,
            "can_commit": self.can_commit,
            "order_id": self.order_id,
        }


@dataclass
class _DraftEntry:
    owner_id: int
    flow: OrderCreationFlow
    touched_at: datetime


class DraftRegistry:
    """In-memory home of the drafts being edited, one namespace per profile.

    A draft untouched for longer than ``ttl`` is dropped on the next
    ``create`` or ``get``, as are drafts that already finished or were
    cancelled.
    """

    def __init__(
        self,
        ttl: timedelta | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._entries: dict[UUID, _DraftEntry] = {}
        self._lock = threading.Lock()
        self.ttl = ttl if ttl is not None else timedelta(minutes=DRAFT_TTL_MINUTES)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _sweep(self, now: datetime) -> None:
        expired = [
            draft_id
            for draft_id, entry in self._entries.items()
            if now - entry.touched_at > self.ttl
            or entry.flow.state in (DraftState.DONE, DraftState.CANCELLED)
        ]
        for draft_id in expired:
            del self._entries[draft_id]
        if expired:
            logger.debug("Dropped %s stale drafts", len(expired))

    def create(self, owner_id: int) -> tuple[UUID, OrderCreationFlow]:
        flow = OrderCreationFlow(actor_id=owner_id).start()
        draft_id = uuid4()
        now = self._clock()
        with self._lock:
            self._sweep(now)
            self._entries[draft_id] = _DraftEntry(owner_id=owner_id, flow=flow, touched_at=now)
        return draft_id, flow

    def get(self, draft_id: UUID, owner_id: int) -> OrderCreationFlow:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            entry = self._entries.get(draft_id)
            if entry is not None and entry.owner_id == owner_id:
                entry.touched_at = now
        if entry is None or entry.owner_id != owner_id:
            raise DraftNotFound("Draft not found")
        return entry.flow

    def discard(self, draft_id: UUID) -> None:
        with self._lock:
            self._entries.pop(draft_id, None)

    def __len__(self) -> int:
        return len(self._entries)


drafts = DraftRegistry()


# -- persistence -----------------------------------------------------------


@contextmanager
def store_reads(db: Session, message: str) -> Iterator[None]:
    """Turn a store failure while reading into OrderStoreError after a rollback."""

    try:
        yield
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception(message)
        raise OrderStoreError(message) from exc


def initial_status(db: Session) -> models.Status:
    status = db.query(models.Status).order_by(models.Status.sequence.asc(), models.Status.id.asc()).first()
    if status is None:
        raise DraftValidationError("No order statuses are configured")
    return status


def validate_destination(
    db: Session,
    factory_id: int | None,
    factory_section_id: int | None = None,
    machine_id: int | None = None,
) -> None:
    """Check that the section belongs to the factory and the machine to the section."""

    if factory_id is None or db.get(models.Factory, factory_id) is None:
        raise DestinationMismatch("Factory not found")
    if factory_section_id is not None:
        section = db.get(models.FactorySection, factory_section_id)
        if section is None or section.factory_id != factory_id:
            raise DestinationMismatch("Factory section does not belong to the factory")
    if machine_id is not None:
        if factory_section_id is None:
            raise DestinationMismatch("A machine needs a factory section")
        machine = db.get(models.Machine, machine_id)
        if machine is None or machine.factory_section_id != factory_section_id:
            raise DestinationMismatch("Machine does not belong to the factory section")


def validate_line(db: Session, line: LineItem, order_type: str) -> None:
    if db.get(models.Part, line.part_id) is None:
        raise DraftValidationError(f"Part {line.part_id} not found")
    if order_type == "Machine":
        if line.factory_section_id is None or line.machine_id is None:
            raise DestinationMismatch("Machine orders need a section and a machine per part")
    elif line.factory_section_id is not None or line.machine_id is not None:
        raise DestinationMismatch("Storage orders cannot target a machine")
    validate_destination(db, line.factory_id, line.factory_section_id, line.machine_id)


def commit_order(
    db: Session,
    header: OrderHeader,
    lines: list[LineItem],
    actor: models.Profile,
) -> models.Order:
    """Write the order, its parts and the first tracker row in one transaction."""

    if not lines:
        raise DraftValidationError("Add at least one part before creating the order")
    with store_reads(db, "An error occurred while creating the order"):
        if db.get(models.Department, header.department_id) is None:
            raise DraftValidationError("Department not found")
        validate_destination(db, header.factory_id)
        for line in lines:
            validate_line(db, line, header.order_type)
        status = initial_status(db)

    primary = lines[0] if header.order_type == "Machine" else None
    try:
        order = models.Order(
            created_at=header.created_at,
            order_note=header.description,
            order_type=header.order_type,
            created_by_user_id=actor.id,
            department_id=header.department_id,
            current_status_id=status.id,
            factory_id=header.factory_id,
            factory_section_id=primary.factory_section_id if primary else None,
            machine_id=primary.machine_id if primary else None,
        )
        db.add(order)
        db.flush()
        db.add_all(
            [
                models.OrderedPart(
                    order_id=order.id,
                    part_id=line.part_id,
                    qty=line.qty,
                    factory_id=line.factory_id,
                    factory_section_id=line.factory_section_id,
                    machine_id=line.machine_id,
                    is_sample_sent_to_office=line.is_sample_sent_to_office,
                    note=line.note,
                )
                for line in lines
            ]
        )
        db.add(
            models.StatusTracker(
                order_id=order.id,
                status_id=status.id,
                action_at=datetime.now(timezone.utc),
                action_by_user_id=actor.id,
            )
        )
        audit.log_action(
            db,
            actor.id,
            "create_order",
            "order",
            order.id,
            {"parts": len(lines), "order_type": header.order_type},
            commit=False,
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Order commit rolled back")
        raise OrderStoreError("An error occurred while creating the order") from exc
    db.refresh(order)
    logger.info("Order %s created by profile %s with %s parts", order.id, actor.id, len(lines))
    return order


def make_writer(db: Session, actor: models.Profile) -> Callable[[OrderHeader, list[LineItem]], int]:
    def writer(header: OrderHeader, lines: list[LineItem]) -> int:
        return commit_order(db, header, lines, actor).id

    return writer


def transition_order(
    db: Session,
    order_id: int,
    status_id: int,
    actor: models.Profile,
) -> models.Order:
    """Move an order to ``status_id`` and append the matching tracker row."""

    with store_reads(db, "Failed to update order status"):
        order = db.get(models.Order, order_id)
        if order is None:
            raise OrderNotFound("Order not found")
        current = order.status.name if order.status else None
        if not can_manage(current, actor.permission):
            raise TransitionForbidden(f"Not allowed to manage an order in status {current!r}")
        target = db.get(models.Status, status_id)
    if target is None:
        raise DraftValidationError("Status not found")
    if target.id == order.current_status_id:
        raise DraftValidationError("Order is already in that status")
    expected = next_status(current)
    if target.name != expected:
        raise DraftValidationError(f"An order in {current!r} can only move to {expected!r}")
    try:
        order.current_status_id = target.id
        db.add(
            models.StatusTracker(
                order_id=order.id,
                status_id=target.id,
                action_at=datetime.now(timezone.utc),
                action_by_user_id=actor.id,
            )
        )
        audit.log_action(
            db,
            actor.id,
            "transition_order",
            "order",
            order.id,
            {"from": current, "to": target.name},
            commit=False,
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Status transition of order %s rolled back", order_id)
        raise OrderStoreError("Failed to update order status") from exc
    db.refresh(order)
    return order


def delete_order(db: Session, order_id: int, actor: models.Profile) -> None:
    if not actor.is_admin:
        raise TransitionForbidden("Only admins may delete orders")
    with store_reads(db, "Failed to delete"):
        order = db.get(models.Order, order_id)
    if order is None:
        raise OrderNotFound("Order not found")
    try:
        db.delete(order)
        audit.log_action(db, actor.id, "delete_order", "order", order_id, commit=False)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Deleting order %s failed", order_id)
        raise OrderStoreError("Failed to delete") from exc


def submit_header(db: Session, flow: OrderCreationFlow) -> OrderHeader:
    """Check the header selections against the store, then close the header step."""

    if flow.is_order_form_complete:
        with store_reads(db, "Failed to check the order header"):
            if db.get(models.Department, flow.department_id) is None:
                raise DraftValidationError("Department not found")
            validate_destination(db, flow.hierarchy.factory_id)
    return flow.submit_header()


def add_line(db: Session, flow: OrderCreationFlow) -> LineItem:
    """Accept the selected line after checking its part and destination exist."""

    if flow.is_add_part_form_complete:
        selector = flow.selector
        with store_reads(db, "Failed to check the part"):
            if db.get(models.Part, selector.part_id) is None:
                raise DraftValidationError(f"Part {selector.part_id} not found")
            if flow.header.order_type == "Machine":
                validate_destination(
                    db, flow.header.factory_id, selector.factory_section_id, selector.machine_id
                )
    return flow.add_part()
