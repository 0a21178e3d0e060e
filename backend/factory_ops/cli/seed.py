"""CLI utilities for bootstrapping a factory ops database."""

# purpose: give operators one command that prepares reference data and an admin login
# status: active
# depends_on: factory_ops.database, factory_ops.models

from __future__ import annotations

import json
import logging

import typer
from sqlalchemy.orm import Session

from .. import models
from ..auth import get_password_hash
from ..database import Base, SessionLocal, engine
from ..permissions import ORDER_STATUSES, PERMISSIONS

app = typer.Typer(help="Factory ops maintenance commands")

logger = logging.getLogger(__name__)

DEFAULT_DEPARTMENTS = ("Electrical", "Mechanical")


def seed_statuses(session: Session) -> int:
    """Insert missing workflow statuses, numbering them in workflow order."""

    created = 0
    for sequence, name in enumerate(ORDER_STATUSES, start=1):
        status = session.query(models.Status).filter(models.Status.name == name).first()
        if status is None:
            session.add(models.Status(name=name, sequence=sequence))
            created += 1
        elif status.sequence != sequence:
            status.sequence = sequence
    return created


def seed_departments(session: Session, names: tuple[str, ...] = DEFAULT_DEPARTMENTS) -> int:
    created = 0
    for name in names:
        if not session.query(models.Department).filter(models.Department.name == name).first():
            session.add(models.Department(name=name))
            created += 1
    return created


def ensure_profile(session: Session, email: str, password: str, permission: str = "admin") -> bool:
    if permission not in PERMISSIONS:
        raise ValueError(f"Unknown permission: {permission}")
    if session.query(models.Profile).filter(models.Profile.email == email).first():
        return False
    session.add(
        models.Profile(
            email=email,
            name=email.split("@")[0],
            hashed_password=get_password_hash(password),
            permission=permission,
        )
    )
    return True


def seed(admin_email: str | None = None, admin_password: str | None = None, create_tables: bool = True) -> dict[str, int | bool]:
    if create_tables:
        Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        summary: dict[str, int | bool] = {
            "statuses": seed_statuses(session),
            "departments": seed_departments(session),
            "admin_created": False,
        }
        if admin_email and admin_password:
            summary["admin_created"] = ensure_profile(session, admin_email, admin_password)
        session.commit()
        logger.info("Seed finished: %s", summary)
        return summary
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@app.command("seed")
def seed_command(
    admin_email: str = typer.Option(None, help="Email of the admin profile to create"),
    admin_password: str = typer.Option(None, help="Password of the admin profile"),
    create_tables: bool = typer.Option(True, help="Create missing tables before seeding"),
) -> None:
    """Seed statuses, departments and optionally an admin profile."""

    if bool(admin_email) != bool(admin_password):
        raise typer.BadParameter("--admin-email and --admin-password go together")
    summary = seed(admin_email, admin_password, create_tables)
    typer.echo(json.dumps(summary))


@app.command("grant")
def grant_command(
    email: str = typer.Argument(..., help="Profile email"),
    permission: str = typer.Argument(..., help=f"One of: {', '.join(PERMISSIONS)}"),
) -> None:
    """Change the permission of an existing profile."""

    if permission not in PERMISSIONS:
        raise typer.BadParameter(f"Unknown permission: {permission}")
    session = SessionLocal()
    try:
        profile = session.query(models.Profile).filter(models.Profile.email == email).first()
        if profile is None:
            raise typer.BadParameter(f"No profile with email {email}")
        profile.permission = permission
        session.commit()
    finally:
        session.close()
    typer.echo(json.dumps({"email": email, "permission": permission}))


if __name__ == "__main__":
    app()
