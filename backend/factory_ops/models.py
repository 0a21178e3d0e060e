from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Integer,
    Text,
    Float,
)
from sqlalchemy.orm import relationship

from .database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Profile(Base):
    __tablename__ = "profiles"
    id = Column(Integer, primary_key=True)
    email = Column(String, unique=True, nullable=False)
    name = Column(String, nullable=False, default="")
    hashed_password = Column(String, nullable=False)
    # purpose: single role string consumed by the manage-order permission gate
    permission = Column(String, nullable=False, default="department")
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    @property
    def is_admin(self) -> bool:
        return self.permission == "admin"


class Department(Base):
    __tablename__ = "departments"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)


class Status(Base):
    __tablename__ = "statuses"
    id = Column(Integer, primary_key=True)
    name = Column(String, unique=True, nullable=False)
    # workflow position; the lowest sequence is the initial status of new orders
    sequence = Column(Integer, nullable=False, default=0)
    comment = Column(Text)


class Factory(Base):
    __tablename__ = "factories"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    abbreviation = Column(String, nullable=False)

    sections = relationship(
        "FactorySection", back_populates="factory", order_by="FactorySection.id"
    )


class FactorySection(Base):
    __tablename__ = "factory_sections"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    factory_id = Column(Integer, ForeignKey("factories.id"), nullable=False)

    factory = relationship("Factory", back_populates="sections")
    machines = relationship(
        "Machine", back_populates="factory_section", order_by="Machine.id"
    )


class Machine(Base):
    __tablename__ = "machines"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    factory_section_id = Column(Integer, ForeignKey("factory_sections.id"), nullable=False)
    is_running = Column(Boolean, nullable=False, default=False)

    factory_section = relationship("FactorySection", back_populates="machines")
    parts = relationship("MachinePart", back_populates="machine")


class Part(Base):
    __tablename__ = "parts"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    unit = Column(String)
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class MachinePart(Base):
    """Stock of a part kept on a machine."""

    __tablename__ = "machine_parts"
    id = Column(Integer, primary_key=True)
    machine_id = Column(Integer, ForeignKey("machines.id"), nullable=False)
    part_id = Column(Integer, ForeignKey("parts.id"), nullable=False)
    qty = Column(Integer, nullable=False, default=0)
    req_qty = Column(Integer)

    machine = relationship("Machine", back_populates="parts")
    part = relationship("Part")

    __table_args__ = (sa.UniqueConstraint("machine_id", "part_id"),)


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    order_note = Column(Text, nullable=False, default="")
    order_type = Column(String, nullable=False, default="Machine")
    created_by_user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    department_id = Column(Integer, ForeignKey("departments.id"), nullable=False)
    current_status_id = Column(Integer, ForeignKey("statuses.id"), nullable=False)
    factory_id = Column(Integer, ForeignKey("factories.id"), nullable=False)
    # denormalized from the first line item of a Machine order, empty for Storage
    factory_section_id = Column(Integer, ForeignKey("factory_sections.id"))
    machine_id = Column(Integer, ForeignKey("machines.id"))

    profile = relationship("Profile")
    department = relationship("Department")
    status = relationship("Status")
    factory = relationship("Factory")
    factory_section = relationship("FactorySection")
    machine = relationship("Machine")
    ordered_parts = relationship(
        "OrderedPart",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderedPart.id",
    )
    status_trackers = relationship(
        "StatusTracker",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="StatusTracker.id",
    )

    @property
    def destination(self) -> str:
        abbreviation = self.factory.abbreviation if self.factory else ""
        if self.factory_section is not None and self.machine is not None:
            return f"{abbreviation} - {self.factory_section.name} - {self.machine.name}"
        return f"{abbreviation} - Storage"


class OrderedPart(Base):
    __tablename__ = "order_parts"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    part_id = Column(Integer, ForeignKey("parts.id"), nullable=False)
    qty = Column(Integer, nullable=False)
    factory_id = Column(Integer, ForeignKey("factories.id"), nullable=False)
    factory_section_id = Column(Integer, ForeignKey("factory_sections.id"))
    machine_id = Column(Integer, ForeignKey("machines.id"))
    is_sample_sent_to_office = Column(Boolean, nullable=False, default=False)
    note = Column(Text)
    # procurement details filled in while the order moves through its statuses
    unit_cost = Column(Float)
    vendor = Column(String)
    brand = Column(String)
    purchased_date = Column(DateTime(timezone=True))
    sent_to_factory_date = Column(DateTime(timezone=True))
    received_by_factory_date = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    order = relationship("Order", back_populates="ordered_parts")
    part = relationship("Part")
    factory_section = relationship("FactorySection")
    machine = relationship("Machine")

    __table_args__ = (sa.CheckConstraint("qty > 0", name="ck_order_parts_qty_positive"),)


class StatusTracker(Base):
    """Append-only history of the statuses an order went through."""

    __tablename__ = "status_tracker"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False)
    status_id = Column(Integer, ForeignKey("statuses.id"), nullable=False)
    action_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    action_by_user_id = Column(Integer, ForeignKey("profiles.id"), nullable=False)

    order = relationship("Order", back_populates="status_trackers")
    status = relationship("Status")
    profile = relationship("Profile")


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("profiles.id"))
    action = Column(String, nullable=False)
    target_type = Column(String)
    target_id = Column(Integer)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
