import os
os.environ["TESTING"] = "1"
os.environ.setdefault("SECRET_KEY", "test-secret")
import uuid
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from factory_ops.main import app
from factory_ops.database import Base, get_db
from factory_ops import models, pubsub
from factory_ops.auth import create_access_token, get_password_hash
from factory_ops.cli.seed import seed_departments, seed_statuses

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base.metadata.drop_all(bind=engine)
Base.metadata.create_all(bind=engine)

with TestingSessionLocal() as _session:
    seed_statuses(_session)
    seed_departments(_session)
    _session.commit()

PASSWORD = "secret"
PASSWORD_HASH = get_password_hash(PASSWORD)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def fresh_redis():
    # each TestClient / asyncio test runs its own event loop
    pubsub._redis = None
    yield
    pubsub._redis = None


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


def make_profile(permission: str = "department", *, email: str | None = None):
    """
    purpose: create a profile with a given permission and a bearer token for it
    outputs: tuple(profile id int, headers dict, token str)
    status: active
    """

    email = email or f"{permission}-{uuid.uuid4().hex[:10]}@example.com"
    with TestingSessionLocal() as session:
        profile = models.Profile(
            email=email,
            name=email.split("@")[0],
            hashed_password=PASSWORD_HASH,
            permission=permission,
        )
        session.add(profile)
        session.commit()
        profile_id = profile.id
    token = create_access_token({"sub": email})
    return profile_id, {"Authorization": f"Bearer {token}"}, token


def make_hierarchy():
    """
    purpose: build an isolated factory with two sections, a machine in each and two parts
    outputs: dict of ids keyed by role
    status: active
    """

    suffix = uuid.uuid4().hex[:6]
    with TestingSessionLocal() as session:
        factory = models.Factory(name=f"Factory {suffix}", abbreviation=f"F{suffix[:3].upper()}")
        session.add(factory)
        session.flush()
        section = models.FactorySection(name=f"Weaving {suffix}", factory_id=factory.id)
        other_section = models.FactorySection(name=f"Dyeing {suffix}", factory_id=factory.id)
        session.add_all([section, other_section])
        session.flush()
        machine = models.Machine(name=f"Loom {suffix}", factory_section_id=section.id)
        other_machine = models.Machine(name=f"Vat {suffix}", factory_section_id=other_section.id)
        part = models.Part(name=f"Bearing {suffix}", unit="pcs")
        other_part = models.Part(name=f"Belt {suffix}", unit="pcs")
        session.add_all([machine, other_machine, part, other_part])
        session.commit()
        return {
            "factory_id": factory.id,
            "factory_name": factory.name,
            "abbreviation": factory.abbreviation,
            "section_id": section.id,
            "section_name": section.name,
            "other_section_id": other_section.id,
            "machine_id": machine.id,
            "machine_name": machine.name,
            "other_machine_id": other_machine.id,
            "part_id": part.id,
            "part_name": part.name,
            "other_part_id": other_part.id,
        }


def status_id(name: str) -> int:
    with TestingSessionLocal() as session:
        return session.query(models.Status).filter(models.Status.name == name).one().id


def department_id(name: str = "Electrical") -> int:
    with TestingSessionLocal() as session:
        return session.query(models.Department).filter(models.Department.name == name).one().id


def insert_order(
    hierarchy: dict,
    profile_id: int,
    *,
    status: str = "Pending",
    created_at: datetime | None = None,
    note: str = "",
    department: str = "Electrical",
    order_type: str = "Machine",
    qty: int = 1,
) -> int:
    """Write an order row directly, bypassing the creation flow."""

    is_machine = order_type == "Machine"
    with TestingSessionLocal() as session:
        order = models.Order(
            created_at=created_at or datetime.now(timezone.utc),
            order_note=note,
            order_type=order_type,
            created_by_user_id=profile_id,
            department_id=department_id(department),
            current_status_id=status_id(status),
            factory_id=hierarchy["factory_id"],
            factory_section_id=hierarchy["section_id"] if is_machine else None,
            machine_id=hierarchy["machine_id"] if is_machine else None,
        )
        session.add(order)
        session.flush()
        session.add(
            models.OrderedPart(
                order_id=order.id,
                part_id=hierarchy["part_id"],
                qty=qty,
                factory_id=hierarchy["factory_id"],
                factory_section_id=hierarchy["section_id"] if is_machine else None,
                machine_id=hierarchy["machine_id"] if is_machine else None,
            )
        )
        session.commit()
        return order.id
