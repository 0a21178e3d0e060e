"""Factory → section → machine browsing and the machine parts inventory."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from .. import models
from ..filters import HierarchySelection
from .order_queries import list_running_orders

# purpose: list the hierarchy for cascading selectors and the parts kept on a machine
# inputs: SQLAlchemy session, HierarchySelection or explicit ids, pagination/sort options
# outputs: reference rows, enriched machine rows, machine parts, running-state updates
# status: active

logger = logging.getLogger(__name__)

SortOrder = Literal["asc", "desc"]


class MachineQueryError(RuntimeError):
    """Raised when the store cannot answer a machine browser read or update."""


@dataclass
class EnrichedMachine:
    id: int
    name: str
    is_running: bool
    factory_section_id: int
    factory_section_name: str
    factory_id: int | None
    factory: str


@dataclass
class BrowserState:
    """Candidate rows for each level of a hierarchy selection."""

    selection: HierarchySelection
    factories: list[models.Factory] = field(default_factory=list)
    sections: list[models.FactorySection] = field(default_factory=list)
    machines: list[models.Machine] = field(default_factory=list)
    parts: list[models.MachinePart] = field(default_factory=list)


def list_factories(db: Session) -> list[models.Factory]:
    return db.query(models.Factory).order_by(models.Factory.id.asc()).all()


def list_sections(db: Session, factory_id: int | None = None) -> list[models.FactorySection]:
    query = db.query(models.FactorySection)
    if factory_id is not None:
        query = query.filter(models.FactorySection.factory_id == factory_id)
    return query.order_by(models.FactorySection.id.asc()).all()


def _sorted(query, sort_order: SortOrder | None):
    if sort_order == "asc":
        query = query.order_by(models.Machine.is_running.asc())
    elif sort_order == "desc":
        query = query.order_by(models.Machine.is_running.desc())
    return query.order_by(models.Machine.id.asc())


def list_machines(
    db: Session,
    factory_section_id: int | None = None,
    page: int = 1,
    limit: int = 10,
    sort_order: SortOrder | None = None,
) -> tuple[list[models.Machine], int]:
    """One page of machines, optionally scoped to a section, with the total count."""

    page = max(int(page), 1)
    limit = max(int(limit), 1)
    try:
        query = db.query(models.Machine)
        if factory_section_id is not None:
            query = query.filter(models.Machine.factory_section_id == factory_section_id)
        total = query.count()
        rows = _sorted(query, sort_order).offset((page - 1) * limit).limit(limit).all()
    except SQLAlchemyError as exc:
        logger.exception("Machine listing failed")
        raise MachineQueryError("Failed to fetch machines") from exc
    return rows, total


def list_all_machines(db: Session, factory_section_id: int | None = None) -> list[models.Machine]:
    query = db.query(models.Machine)
    if factory_section_id is not None:
        query = query.filter(models.Machine.factory_section_id == factory_section_id)
    return query.order_by(models.Machine.id.asc()).all()


def list_enriched_machines(
    db: Session,
    factory_id: int | None = None,
    factory_section_id: int | None = None,
    page: int = 1,
    limit: int = 10,
    sort_order: SortOrder | None = None,
) -> tuple[list[EnrichedMachine], int]:
    """Machines with their section and factory names.

    A section scope wins over a factory scope; with neither, every machine
    is listed.
    """

    page = max(int(page), 1)
    limit = max(int(limit), 1)
    try:
        query = (
            db.query(models.Machine)
            .join(models.FactorySection, models.Machine.factory_section_id == models.FactorySection.id)
            .options(joinedload(models.Machine.factory_section).joinedload(models.FactorySection.factory))
        )
        if factory_section_id is not None:
            query = query.filter(models.Machine.factory_section_id == factory_section_id)
        elif factory_id is not None:
            query = query.filter(models.FactorySection.factory_id == factory_id)
        total = query.count()
        rows = _sorted(query, sort_order).offset((page - 1) * limit).limit(limit).all()
    except SQLAlchemyError as exc:
        logger.exception("Enriched machine listing failed")
        raise MachineQueryError("Failed to fetch machines") from exc
    return [_enrich(machine) for machine in rows], total


def _enrich(machine: models.Machine) -> EnrichedMachine:
    section = machine.factory_section
    factory = section.factory if section else None
    return EnrichedMachine(
        id=machine.id,
        name=machine.name,
        is_running=bool(machine.is_running),
        factory_section_id=machine.factory_section_id,
        factory_section_name=section.name if section else "Unknown Section",
        factory_id=factory.id if factory else None,
        factory=factory.name if factory else "Unknown Factory",
    )


def get_machine(db: Session, machine_id: int) -> models.Machine | None:
    return db.get(models.Machine, machine_id)


def set_machine_running(db: Session, machine_id: int, is_running: bool) -> models.Machine | None:
    machine = db.get(models.Machine, machine_id)
    if machine is None:
        return None
    try:
        machine.is_running = bool(is_running)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Updating running state of machine %s failed", machine_id)
        raise MachineQueryError("Failed to update machine status") from exc
    db.refresh(machine)
    return machine


def running_metrics(db: Session) -> dict[str, int]:
    running = db.query(models.Machine).filter(models.Machine.is_running.is_(True)).count()
    not_running = db.query(models.Machine).filter(models.Machine.is_running.is_(False)).count()
    return {"running": running, "not_running": not_running}


def list_machine_parts(
    db: Session,
    machine_id: int,
    part_id: int | None = None,
    part_name: str | None = None,
) -> list[models.MachinePart]:
    try:
        query = (
            db.query(models.MachinePart)
            .join(models.Part, models.MachinePart.part_id == models.Part.id)
            .options(joinedload(models.MachinePart.part))
            .filter(models.MachinePart.machine_id == machine_id)
        )
        if part_id is not None:
            query = query.filter(models.MachinePart.part_id == part_id)
        if part_name:
            query = query.filter(models.Part.name.ilike(f"%{part_name.strip()}%"))
        return query.order_by(models.MachinePart.id.asc()).all()
    except SQLAlchemyError as exc:
        logger.exception("Fetching parts of machine %s failed", machine_id)
        raise MachineQueryError("Failed to fetch machine parts") from exc


def select_machine(db: Session, machine_id: int) -> tuple[models.Machine | None, list[models.Order]]:
    """Open a machine in the browser.

    Returns the machine and its running orders. A machine with no running
    orders is marked running; nothing ever marks it not running again.
    """

    machine = get_machine(db, machine_id)
    if machine is None:
        return None, []
    running = list_running_orders(db, machine_id)
    if not running and not machine.is_running:
        logger.info("Machine %s has no running orders, marking it running", machine_id)
        machine = set_machine_running(db, machine_id, True)
    return machine, running


def browse(db: Session, selection: HierarchySelection) -> BrowserState:
    """Candidate sets for every level, each scoped to the level above it.

    A selected id that is not among its level's candidates is cleared along
    with everything below it, so a section from another factory never
    drives the machine or parts lists.
    """

    try:
        factories = list_factories(db)
        if selection.factory_id not in {factory.id for factory in factories}:
            selection = selection.select_factory(None)
        state = BrowserState(selection=selection, factories=factories)
        if selection.factory_id is not None:
            state.sections = list_sections(db, selection.factory_id)
        if selection.factory_section_id not in {section.id for section in state.sections}:
            selection = selection.select_section(None)
        if selection.factory_section_id is not None:
            state.machines = list_all_machines(db, selection.factory_section_id)
        if selection.machine_id not in {machine.id for machine in state.machines}:
            selection = selection.select_machine(None)
    except SQLAlchemyError as exc:
        logger.exception("Machine browser lookup failed")
        raise MachineQueryError("Failed to fetch machines") from exc
    state.selection = selection
    if selection.machine_id is not None:
        state.parts = list_machine_parts(db, selection.machine_id)
    return state


def parse_sort_order(value: object) -> SortOrder | None:
    return value if value in ("asc", "desc") else None


def parse_scope(factory_id: object, factory_section_id: object) -> HierarchySelection:
    return HierarchySelection().select_factory(factory_id).select_section(factory_section_id)
