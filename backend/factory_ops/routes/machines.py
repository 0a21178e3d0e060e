from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_user
from ..filters import HierarchySelection, coerce_id
from ..services import machines as machine_service
from ..services.machines import MachineQueryError
from ..services.order_queries import OrderQueryError
from .. import models, schemas

router = APIRouter(prefix="/api/machines", tags=["machines"])


@router.get("/", response_model=schemas.MachinePageOut)
async def list_machines(
    factory_id: str | None = None,
    factory_section_id: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_order: str | None = None,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    scope = machine_service.parse_scope(factory_id, factory_section_id)
    try:
        rows, total = machine_service.list_enriched_machines(
            db,
            scope.factory_id,
            scope.factory_section_id,
            page,
            limit,
            machine_service.parse_sort_order(sort_order),
        )
    except MachineQueryError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {"rows": [asdict(row) for row in rows], "total_count": total, "page": page, "limit": limit}


@router.get("/metrics", response_model=schemas.MachineMetrics)
async def machine_metrics(db: Session = Depends(get_db), user: models.Profile = Depends(get_current_user)):
    return machine_service.running_metrics(db)


@router.get("/browse", response_model=schemas.BrowserOut)
async def browse(
    factory_id: str | None = None,
    factory_section_id: str | None = None,
    machine_id: str | None = None,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    selection = (
        HierarchySelection()
        .select_factory(factory_id)
        .select_section(factory_section_id)
        .select_machine(machine_id)
    )
    try:
        state = machine_service.browse(db, selection)
    except MachineQueryError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {
        "factory_id": state.selection.factory_id,
        "factory_section_id": state.selection.factory_section_id,
        "machine_id": state.selection.machine_id,
        "factories": state.factories,
        "sections": state.sections,
        "machines": state.machines,
        "parts": state.parts,
    }


@router.get("/{machine_id}", response_model=schemas.MachineOut)
async def get_machine(
    machine_id: int,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    machine = machine_service.get_machine(db, machine_id)
    if not machine:
        raise HTTPException(status_code=404, detail="Machine not found")
    return machine


@router.put("/{machine_id}/running", response_model=schemas.MachineOut)
async def set_running(
    machine_id: int,
    data: schemas.MachineRunningUpdate,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    try:
        machine = machine_service.set_machine_running(db, machine_id, data.is_running)
    except MachineQueryError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    if not machine:
        raise HTTPException(status_code=404, detail="Machine not found")
    return machine


@router.post("/{machine_id}/select", response_model=schemas.MachineSelectionOut)
async def select_machine(
    machine_id: int,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    try:
        machine, running = machine_service.select_machine(db, machine_id)
    except (MachineQueryError, OrderQueryError) as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    if not machine:
        raise HTTPException(status_code=404, detail="Machine not found")
    return {"machine": machine, "running_orders": running}


@router.get("/{machine_id}/parts", response_model=list[schemas.MachinePartOut])
async def list_machine_parts(
    machine_id: int,
    part_id: str | None = None,
    part_name: str | None = None,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    if not machine_service.get_machine(db, machine_id):
        raise HTTPException(status_code=404, detail="Machine not found")
    try:
        return machine_service.list_machine_parts(db, machine_id, coerce_id(part_id), part_name)
    except MachineQueryError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


@router.post("/{machine_id}/parts", response_model=schemas.MachinePartOut)
async def add_machine_part(
    machine_id: int,
    data: schemas.MachinePartCreate,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin permission required")
    if not machine_service.get_machine(db, machine_id):
        raise HTTPException(status_code=404, detail="Machine not found")
    if not db.get(models.Part, data.part_id):
        raise HTTPException(status_code=404, detail="Part not found")
    existing = db.query(models.MachinePart).filter_by(machine_id=machine_id, part_id=data.part_id).first()
    if existing:
        raise HTTPException(status_code=400, detail="Part already tracked on this machine")
    row = models.MachinePart(machine_id=machine_id, **data.model_dump())
    db.add(row)
    db.commit()
    db.refresh(row)
    return row
