from datetime import datetime
from typing import Optional, Any, Dict, Literal, List
from pydantic import BaseModel, EmailStr, ConfigDict, Field


class UserCreate(BaseModel):
    email: EmailStr
    password: str
    name: Optional[str] = None


class UserOut(BaseModel):
    id: int
    email: EmailStr
    name: Optional[str] = None
    permission: str
    is_admin: bool = False
    model_config = ConfigDict(from_attributes=True)


class UserUpdate(BaseModel):
    name: Optional[str] = None


class PermissionUpdate(BaseModel):
    permission: str


class ProfileSummary(BaseModel):
    id: int
    name: Optional[str] = None
    email: EmailStr
    permission: str
    model_config = ConfigDict(from_attributes=True)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class DepartmentCreate(BaseModel):
    name: str


class DepartmentOut(BaseModel):
    id: int
    name: str
    model_config = ConfigDict(from_attributes=True)


class StatusOut(BaseModel):
    id: int
    name: str
    sequence: int
    comment: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class FactoryCreate(BaseModel):
    name: str
    abbreviation: str


class FactoryOut(BaseModel):
    id: int
    name: str
    abbreviation: str
    model_config = ConfigDict(from_attributes=True)


class FactorySectionCreate(BaseModel):
    name: str


class FactorySectionOut(BaseModel):
    id: int
    name: str
    factory_id: int
    model_config = ConfigDict(from_attributes=True)


class MachineCreate(BaseModel):
    name: str
    is_running: bool = False


class MachineOut(BaseModel):
    id: int
    name: str
    factory_section_id: int
    is_running: bool
    model_config = ConfigDict(from_attributes=True)


class EnrichedMachineOut(MachineOut):
    factory_section_name: str
    factory_id: Optional[int] = None
    factory: str


class MachinePageOut(BaseModel):
    rows: List[EnrichedMachineOut]
    total_count: int
    page: int
    limit: int


class MachineRunningUpdate(BaseModel):
    is_running: bool


class MachineMetrics(BaseModel):
    running: int
    not_running: int


class PartCreate(BaseModel):
    name: str
    unit: Optional[str] = None
    description: Optional[str] = None


class PartOut(BaseModel):
    id: int
    name: str
    unit: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class MachinePartCreate(BaseModel):
    part_id: int
    qty: int = Field(0, ge=0)
    req_qty: Optional[int] = Field(None, ge=0)


class MachinePartOut(BaseModel):
    id: int
    machine_id: int
    part_id: int
    qty: int
    req_qty: Optional[int] = None
    part: PartOut
    model_config = ConfigDict(from_attributes=True)


class OrderOut(BaseModel):
    id: int
    created_at: datetime
    order_note: str
    order_type: str
    created_by_user_id: int
    department_id: int
    current_status_id: int
    factory_id: int
    factory_section_id: Optional[int] = None
    machine_id: Optional[int] = None
    destination: str
    profile: Optional[ProfileSummary] = None
    department: Optional[DepartmentOut] = None
    status: Optional[StatusOut] = None
    factory: Optional[FactoryOut] = None
    factory_section: Optional[FactorySectionOut] = None
    machine: Optional[MachineOut] = None
    model_config = ConfigDict(from_attributes=True)


class OrderPageOut(BaseModel):
    rows: List[OrderOut]
    total_count: int
    page: int
    page_size: int
    page_count: int


class OrderedPartOut(BaseModel):
    id: int
    order_id: int
    part_id: int
    qty: int
    factory_id: int
    factory_section_id: Optional[int] = None
    machine_id: Optional[int] = None
    is_sample_sent_to_office: bool
    note: Optional[str] = None
    unit_cost: Optional[float] = None
    vendor: Optional[str] = None
    brand: Optional[str] = None
    purchased_date: Optional[datetime] = None
    sent_to_factory_date: Optional[datetime] = None
    received_by_factory_date: Optional[datetime] = None
    part: Optional[PartOut] = None
    factory_section: Optional[FactorySectionOut] = None
    machine: Optional[MachineOut] = None
    model_config = ConfigDict(from_attributes=True)


class OrderSummary(BaseModel):
    id: int
    created_at: datetime
    order_type: str
    current_status_id: int
    destination: str
    model_config = ConfigDict(from_attributes=True)


class LinkedOrderOut(OrderedPartOut):
    order: OrderSummary


class StatusTrackerOut(BaseModel):
    id: int
    order_id: int
    status_id: int
    action_at: datetime
    action_by_user_id: int
    status: Optional[StatusOut] = None
    profile: Optional[ProfileSummary] = None
    model_config = ConfigDict(from_attributes=True)


class ManageOut(BaseModel):
    order_id: int
    status: Optional[str] = None
    can_manage: bool
    decision: Literal["completed", "unauthorized", "allowed"]
    next_status: Optional[str] = None


class StatusTransition(BaseModel):
    status_id: int


class LineItemIn(BaseModel):
    part_id: Optional[int] = None
    qty: Optional[int] = None
    factory_section_id: Optional[int] = None
    machine_id: Optional[int] = None
    is_sample_sent_to_office: Optional[bool] = False
    note: Optional[str] = None


class OrderCreate(BaseModel):
    factory_id: int
    department_id: int
    order_type: Literal["Machine", "Storage"]
    description: str = Field(min_length=1)
    parts: List[LineItemIn] = Field(min_length=1)


class DraftHeaderUpdate(BaseModel):
    factory_id: Optional[int] = None
    department_id: Optional[int] = None
    order_type: Optional[str] = None
    description: Optional[str] = None


class LineItemOut(BaseModel):
    part_id: int
    qty: int
    factory_id: int
    factory_section_id: Optional[int] = None
    machine_id: Optional[int] = None
    is_sample_sent_to_office: bool
    note: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class DraftOut(BaseModel):
    id: str
    state: str
    factory_id: Optional[int] = None
    department_id: Optional[int] = None
    order_type: Optional[str] = None
    description: str = ""
    lines: List[LineItemOut] = []
    is_order_form_complete: bool
    is_add_part_form_complete: bool = False
    can_commit: bool
    order_id: Optional[int] = None


class AuditLogOut(BaseModel):
    id: int
    user_id: Optional[int] = None
    action: str
    target_type: Optional[str] = None
    target_id: Optional[int] = None
    details: Dict[str, Any] = {}
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class MachineSelectionOut(BaseModel):
    machine: MachineOut
    running_orders: List[OrderOut]


class BrowserOut(BaseModel):
    factory_id: Optional[int] = None
    factory_section_id: Optional[int] = None
    machine_id: Optional[int] = None
    factories: List[FactoryOut]
    sections: List[FactorySectionOut]
    machines: List[MachineOut]
    parts: List[MachinePartOut]
