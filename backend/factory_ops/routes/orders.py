
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_user
from ..filters import OrderFilter
from ..permissions import can_manage, manage_decision, next_status
from ..services import order_lifecycle as lifecycle
from ..services import order_queries
from ..services.order_queries import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, OrderQueryError
from .. import models, schemas, pubsub


router = APIRouter(prefix="/api/orders", tags=["orders"])
parts_router = APIRouter(prefix="/api/parts", tags=["orders"])

_ERROR_STATUS = (
    (lifecycle.OrderNotFound, 404),
    (lifecycle.DraftNotFound, 404),
    (lifecycle.TransitionForbidden, 403),
    (lifecycle.DraftStateError, 409),
    (lifecycle.DraftValidationError, 400),
    (lifecycle.OrderStoreError, 503),
)


def lifecycle_http_error(exc: lifecycle.OrderLifecycleError) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def order_filter_params(
    search_type: str | None = None,
    query: str | None = None,
    search_date: str | None = None,
    factory_id: str | None = None,
    factory_section_id: str | None = None,
    machine_id: str | None = None,
    department_id: str | None = None,
    status_id: str | None = None,
) -> OrderFilter:
    # ids arrive as strings so a malformed one means "no filter" instead of a 422
    return OrderFilter.from_params(
        search_type=search_type,
        query=query,
        search_date=search_date,
        factory_id=factory_id,
        factory_section_id=factory_section_id,
        machine_id=machine_id,
        department_id=department_id,
        status_id=status_id,
    )


def stage_line(flow: lifecycle.OrderCreationFlow, line: schemas.LineItemIn) -> None:
    flow.select_part(line.part_id)
    flow.set_qty(line.qty)
    flow.select_section(line.factory_section_id)
    flow.select_machine(line.machine_id)
    flow.set_sample_sent(line.is_sample_sent_to_office)
    flow.set_note(line.note)


@router.get("/", response_model=schemas.OrderPageOut)
async def list_orders(
    order_filter: OrderFilter = Depends(order_filter_params),
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    try:
        result = order_queries.query_orders(db, order_filter, page, page_size)
    except OrderQueryError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return order_queries.summarize_page(result)


def load_order(db: Session, order_id: int) -> models.Order:
    try:
        order = order_queries.fetch_order(db, order_id)
    except OrderQueryError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def require_order(db: Session, order_id: int) -> None:
    try:
        found = order_queries.order_exists(db, order_id)
    except OrderQueryError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    if not found:
        raise HTTPException(status_code=404, detail="Order not found")


@router.post("/", response_model=schemas.OrderOut)
async def create_order(
    data: schemas.OrderCreate,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    flow = lifecycle.OrderCreationFlow(actor_id=user.id).start()
    try:
        flow.select_factory(data.factory_id)
        flow.select_department(data.department_id)
        flow.select_order_type(data.order_type)
        flow.set_description(data.description)
        lifecycle.submit_header(db, flow)
        for line in data.parts:
            stage_line(flow, line)
            lifecycle.add_line(db, flow)
        order_id = flow.commit(lifecycle.make_writer(db, user))
    except lifecycle.OrderLifecycleError as exc:
        raise lifecycle_http_error(exc)
    await pubsub.publish_order_change("INSERT", order_id)
    return load_order(db, order_id)


@router.get("/{order_id}", response_model=schemas.OrderOut)
async def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    return load_order(db, order_id)


@router.get("/{order_id}/parts", response_model=list[schemas.OrderedPartOut])
async def get_order_parts(
    order_id: int,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    require_order(db, order_id)
    try:
        return order_queries.list_ordered_parts(db, order_id)
    except OrderQueryError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


@router.get("/{order_id}/history", response_model=list[schemas.StatusTrackerOut])
async def get_status_history(
    order_id: int,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    require_order(db, order_id)
    try:
        return order_queries.list_status_history(db, order_id)
    except OrderQueryError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


@router.get("/{order_id}/manage", response_model=schemas.ManageOut)
async def get_manage_decision(
    order_id: int,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    order = load_order(db, order_id)
    status_name = order.status.name if order.status else None
    return schemas.ManageOut(
        order_id=order.id,
        status=status_name,
        can_manage=can_manage(status_name, user.permission),
        decision=manage_decision(status_name, user.permission),
        next_status=next_status(status_name),
    )


@router.post("/{order_id}/status", response_model=schemas.OrderOut)
async def change_status(
    order_id: int,
    data: schemas.StatusTransition,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    try:
        lifecycle.transition_order(db, order_id, data.status_id, user)
    except lifecycle.OrderLifecycleError as exc:
        raise lifecycle_http_error(exc)
    await pubsub.publish_order_change("UPDATE", order_id)
    return load_order(db, order_id)


@router.delete("/{order_id}")
async def delete_order(
    order_id: int,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    try:
        lifecycle.delete_order(db, order_id, user)
    except lifecycle.OrderLifecycleError as exc:
        raise lifecycle_http_error(exc)
    await pubsub.publish_order_change("DELETE", order_id)
    return {"ok": True}


@parts_router.get("/{part_id}/linked-orders", response_model=list[schemas.LinkedOrderOut])
async def get_linked_orders(
    part_id: int,
    order_filter: OrderFilter = Depends(order_filter_params),
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    try:
        return order_queries.list_linked_orders(db, part_id, order_filter)
    except OrderQueryError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
