from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_user
from ..services import machines as machine_service
from .. import models, schemas

router = APIRouter(prefix="/api", tags=["reference"])


def _require_admin(user: models.Profile) -> None:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin permission required")


@router.get("/departments", response_model=list[schemas.DepartmentOut])
async def list_departments(db: Session = Depends(get_db), user: models.Profile = Depends(get_current_user)):
    return db.query(models.Department).order_by(models.Department.id.asc()).all()


@router.post("/departments", response_model=schemas.DepartmentOut)
async def create_department(
    data: schemas.DepartmentCreate,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    _require_admin(user)
    if db.query(models.Department).filter(models.Department.name == data.name).first():
        raise HTTPException(status_code=400, detail="Department already exists")
    department = models.Department(name=data.name)
    db.add(department)
    db.commit()
    db.refresh(department)
    return department


@router.get("/statuses", response_model=list[schemas.StatusOut])
async def list_statuses(db: Session = Depends(get_db), user: models.Profile = Depends(get_current_user)):
    return db.query(models.Status).order_by(models.Status.sequence.asc(), models.Status.id.asc()).all()


@router.get("/factories", response_model=list[schemas.FactoryOut])
async def list_factories(db: Session = Depends(get_db), user: models.Profile = Depends(get_current_user)):
    return machine_service.list_factories(db)


@router.post("/factories", response_model=schemas.FactoryOut)
async def create_factory(
    data: schemas.FactoryCreate,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    _require_admin(user)
    factory = models.Factory(**data.model_dump())
    db.add(factory)
    db.commit()
    db.refresh(factory)
    return factory


@router.get("/factories/{factory_id}/sections", response_model=list[schemas.FactorySectionOut])
async def list_sections(
    factory_id: int,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    return machine_service.list_sections(db, factory_id)


@router.post("/factories/{factory_id}/sections", response_model=schemas.FactorySectionOut)
async def create_section(
    factory_id: int,
    data: schemas.FactorySectionCreate,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    _require_admin(user)
    if not db.get(models.Factory, factory_id):
        raise HTTPException(status_code=404, detail="Factory not found")
    section = models.FactorySection(name=data.name, factory_id=factory_id)
    db.add(section)
    db.commit()
    db.refresh(section)
    return section


@router.get("/sections/{section_id}/machines", response_model=list[schemas.MachineOut])
async def list_section_machines(
    section_id: int,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    return machine_service.list_all_machines(db, section_id)


@router.post("/sections/{section_id}/machines", response_model=schemas.MachineOut)
async def create_machine(
    section_id: int,
    data: schemas.MachineCreate,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    _require_admin(user)
    if not db.get(models.FactorySection, section_id):
        raise HTTPException(status_code=404, detail="Factory section not found")
    machine = models.Machine(name=data.name, is_running=data.is_running, factory_section_id=section_id)
    db.add(machine)
    db.commit()
    db.refresh(machine)
    return machine


@router.get("/parts", response_model=list[schemas.PartOut])
async def list_parts(
    name: str | None = None,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    query = db.query(models.Part)
    if name:
        query = query.filter(models.Part.name.ilike(f"%{name.strip()}%"))
    return query.order_by(models.Part.id.asc()).all()


@router.post("/parts", response_model=schemas.PartOut)
async def create_part(
    data: schemas.PartCreate,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    _require_admin(user)
    part = models.Part(**data.model_dump())
    db.add(part)
    db.commit()
    db.refresh(part)
    return part


@router.get("/parts/{part_id}", response_model=schemas.PartOut)
async def get_part(
    part_id: int,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    part = db.get(models.Part, part_id)
    if not part:
        raise HTTPException(status_code=404, detail="Part not found")
    return part
