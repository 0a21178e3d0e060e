from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..database import get_db
from ..permissions import PERMISSIONS
from .. import models, schemas, auth, audit

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/me", response_model=schemas.UserOut)
async def read_profile(current_user: models.Profile = Depends(auth.get_current_user)):
    return current_user


@router.put("/me", response_model=schemas.UserOut)
async def update_profile(
    update: schemas.UserUpdate,
    db: Session = Depends(get_db),
    current_user: models.Profile = Depends(auth.get_current_user),
):
    if update.name is not None:
        current_user.name = update.name
    db.add(current_user)
    db.commit()
    db.refresh(current_user)
    return current_user


@router.get("/", response_model=list[schemas.UserOut])
async def list_profiles(
    db: Session = Depends(get_db),
    current_user: models.Profile = Depends(auth.get_current_user),
):
    if not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Admin permission required")
    return db.query(models.Profile).order_by(models.Profile.id.asc()).all()


@router.put("/{profile_id}/permission", response_model=schemas.UserOut)
async def set_permission(
    profile_id: int,
    data: schemas.PermissionUpdate,
    db: Session = Depends(get_db),
    current_user: models.Profile = Depends(auth.get_current_user),
):
    if not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Admin permission required")
    if data.permission not in PERMISSIONS:
        raise HTTPException(status_code=400, detail="Unknown permission")
    profile = db.get(models.Profile, profile_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Profile not found")
    profile.permission = data.permission
    db.commit()
    db.refresh(profile)
    audit.log_action(
        db, current_user.id, "set_permission", "profile", profile.id, {"permission": data.permission}
    )
    return profile
