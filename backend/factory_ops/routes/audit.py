from sqlalchemy.orm import Session
from fastapi import APIRouter, Depends, HTTPException
from ..database import get_db
from ..auth import get_current_user
from .. import models, schemas

router = APIRouter(prefix="/api/audit", tags=["audit"])


def _scope(user_id: int | None, current_user: models.Profile) -> int:
    if user_id is None:
        return current_user.id
    if user_id != current_user.id and not current_user.is_admin:
        raise HTTPException(status_code=403, detail="Admin permission required")
    return user_id


@router.get("/", response_model=list[schemas.AuditLogOut])
async def list_logs(
    user_id: int | None = None,
    db: Session = Depends(get_db),
    current_user: models.Profile = Depends(get_current_user),
):
    query = db.query(models.AuditLog).filter(models.AuditLog.user_id == _scope(user_id, current_user))
    return query.order_by(models.AuditLog.created_at.desc(), models.AuditLog.id.desc()).all()
