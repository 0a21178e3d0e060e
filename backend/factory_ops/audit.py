from datetime import datetime, timezone

from sqlalchemy.orm import Session

from . import models


def log_action(
    db: Session,
    user_id: int | None,
    action: str,
    target_type: str | None = None,
    target_id: int | None = None,
    details: dict | None = None,
    commit: bool = True,
):
    """Record an audit row; with ``commit=False`` it joins the caller's transaction."""

    log = models.AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        details=details or {},
        created_at=datetime.now(timezone.utc),
    )
    db.add(log)
    if commit:
        db.commit()
        db.refresh(log)
    return log
