from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..database import get_db
from ..auth import get_current_user
from ..services import order_lifecycle as lifecycle
from ..services.order_lifecycle import drafts
from .. import models, schemas, pubsub
from .orders import lifecycle_http_error, stage_line

router = APIRouter(prefix="/api/order-drafts", tags=["order-drafts"])


def _draft_out(draft_id: UUID, flow: lifecycle.OrderCreationFlow) -> schemas.DraftOut:
    return schemas.DraftOut(id=str(draft_id), **flow.snapshot())


def _get_flow(draft_id: UUID, user: models.Profile) -> lifecycle.OrderCreationFlow:
    try:
        return drafts.get(draft_id, user.id)
    except lifecycle.DraftNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.post("/", response_model=schemas.DraftOut)
async def create_draft(user: models.Profile = Depends(get_current_user)):
    draft_id, flow = drafts.create(user.id)
    return _draft_out(draft_id, flow)


@router.get("/{draft_id}", response_model=schemas.DraftOut)
async def get_draft(draft_id: UUID, user: models.Profile = Depends(get_current_user)):
    return _draft_out(draft_id, _get_flow(draft_id, user))


@router.patch("/{draft_id}", response_model=schemas.DraftOut)
async def update_header(
    draft_id: UUID,
    data: schemas.DraftHeaderUpdate,
    user: models.Profile = Depends(get_current_user),
):
    flow = _get_flow(draft_id, user)
    changes = data.model_dump(exclude_unset=True)
    try:
        if "factory_id" in changes:
            flow.select_factory(changes["factory_id"])
        if "department_id" in changes:
            flow.select_department(changes["department_id"])
        if "order_type" in changes:
            flow.select_order_type(changes["order_type"])
        if "description" in changes:
            flow.set_description(changes["description"])
    except lifecycle.OrderLifecycleError as exc:
        raise lifecycle_http_error(exc)
    return _draft_out(draft_id, flow)


@router.post("/{draft_id}/submit-header", response_model=schemas.DraftOut)
async def submit_header(
    draft_id: UUID,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    flow = _get_flow(draft_id, user)
    try:
        lifecycle.submit_header(db, flow)
    except lifecycle.OrderLifecycleError as exc:
        raise lifecycle_http_error(exc)
    return _draft_out(draft_id, flow)


@router.post("/{draft_id}/parts", response_model=schemas.DraftOut)
async def add_part(
    draft_id: UUID,
    line: schemas.LineItemIn,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    flow = _get_flow(draft_id, user)
    try:
        stage_line(flow, line)
        lifecycle.add_line(db, flow)
    except lifecycle.OrderLifecycleError as exc:
        raise lifecycle_http_error(exc)
    return _draft_out(draft_id, flow)


@router.delete("/{draft_id}/parts/{index}", response_model=schemas.DraftOut)
async def remove_part(
    draft_id: UUID,
    index: int,
    user: models.Profile = Depends(get_current_user),
):
    flow = _get_flow(draft_id, user)
    try:
        flow.remove_part(index)
    except lifecycle.OrderLifecycleError as exc:
        raise lifecycle_http_error(exc)
    return _draft_out(draft_id, flow)


@router.post("/{draft_id}/commit", response_model=schemas.DraftOut)
async def commit_draft(
    draft_id: UUID,
    db: Session = Depends(get_db),
    user: models.Profile = Depends(get_current_user),
):
    flow = _get_flow(draft_id, user)
    try:
        order_id = flow.commit(lifecycle.make_writer(db, user))
    except lifecycle.OrderLifecycleError as exc:
        raise lifecycle_http_error(exc)
    drafts.discard(draft_id)
    await pubsub.publish_order_change("INSERT", order_id)
    return _draft_out(draft_id, flow)


@router.delete("/{draft_id}", response_model=schemas.DraftOut)
async def cancel_draft(draft_id: UUID, user: models.Profile = Depends(get_current_user)):
    flow = _get_flow(draft_id, user)
    try:
        flow.cancel()
    except lifecycle.OrderLifecycleError as exc:
        raise lifecycle_http_error(exc)
    drafts.discard(draft_id)
    return _draft_out(draft_id, flow)
