"""Read side of orders: filtered, paginated listings and single-order fetches."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session, joinedload

from .. import models
from ..filters import OrderFilter
from ..permissions import TERMINAL_STATUSES

# purpose: translate OrderFilter values into counted, paginated order queries
# inputs: SQLAlchemy session, OrderFilter, 1-indexed page and page size
# outputs: OrderPage rows with profile/department/status/hierarchy eagerly loaded
# status: active

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 5
MAX_PAGE_SIZE = 100


class OrderQueryError(RuntimeError):
    """Raised when the store cannot answer an order read."""


@dataclass
class OrderPage:
    rows: list[models.Order]
    total_count: int
    page: int
    page_size: int

    @property
    def page_count(self) -> int:
        if self.page_size <= 0:
            return 0
        return -(-self.total_count // self.page_size)


def _order_options():
    return (
        joinedload(models.Order.profile),
        joinedload(models.Order.department),
        joinedload(models.Order.status),
        joinedload(models.Order.factory),
        joinedload(models.Order.factory_section),
        joinedload(models.Order.machine),
    )


def _day_window(day) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def apply_order_filter(query: Query, order_filter: OrderFilter, order=models.Order) -> Query:
    """Constrain ``query`` (already selecting from orders) with ``order_filter``.

    Only one of the id search and the date search is honored, following the
    filter's search type; every other field is an equality constraint.
    """

    if order_filter.search_type == "id":
        if order_filter.search_query.strip():
            order_id = order_filter.order_id
            if order_id is not None:
                query = query.filter(order.id == order_id)
    elif order_filter.created_on is not None:
        start, end = _day_window(order_filter.created_on)
        query = query.filter(order.created_at >= start, order.created_at < end)

    if order_filter.status_id is not None:
        query = query.filter(order.current_status_id == order_filter.status_id)
    if order_filter.department_id is not None:
        query = query.filter(order.department_id == order_filter.department_id)
    if order_filter.factory_id is not None:
        query = query.filter(order.factory_id == order_filter.factory_id)
    if order_filter.factory_section_id is not None:
        query = query.filter(order.factory_section_id == order_filter.factory_section_id)
    if order_filter.machine_id is not None:
        query = query.filter(order.machine_id == order_filter.machine_id)
    return query


def query_orders(
    db: Session,
    order_filter: OrderFilter | None = None,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> OrderPage:
    """Return one page of orders matching ``order_filter``, newest first.

    Ordering is ``created_at`` descending with ``id`` descending as tie
    breaker, so identical calls always return identical pages.
    """

    order_filter = order_filter or OrderFilter()
    page = max(int(page), 1)
    page_size = min(max(int(page_size), 1), MAX_PAGE_SIZE)
    try:
        filtered = apply_order_filter(db.query(models.Order), order_filter)
        total = filtered.count()
        rows = (
            filtered.options(*_order_options())
            .order_by(models.Order.created_at.desc(), models.Order.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
    except SQLAlchemyError as exc:
        logger.exception("Order listing failed")
        raise OrderQueryError("Failed to fetch orders") from exc
    return OrderPage(rows=rows, total_count=total, page=page, page_size=page_size)


def fetch_order(db: Session, order_id: int) -> models.Order | None:
    try:
        return (
            db.query(models.Order)
            .options(*_order_options())
            .filter(models.Order.id == order_id)
            .first()
        )
    except SQLAlchemyError as exc:
        logger.exception("Fetching order %s failed", order_id)
        raise OrderQueryError("Failed to fetch order info") from exc


def order_exists(db: Session, order_id: int) -> bool:
    try:
        return db.query(models.Order.id).filter(models.Order.id == order_id).first() is not None
    except SQLAlchemyError as exc:
        logger.exception("Looking up order %s failed", order_id)
        raise OrderQueryError("Failed to fetch order info") from exc


def list_ordered_parts(db: Session, order_id: int) -> list[models.OrderedPart]:
    try:
        return (
            db.query(models.OrderedPart)
            .options(
                joinedload(models.OrderedPart.part),
                joinedload(models.OrderedPart.factory_section),
                joinedload(models.OrderedPart.machine),
            )
            .filter(models.OrderedPart.order_id == order_id)
            .order_by(models.OrderedPart.id.asc())
            .all()
        )
    except SQLAlchemyError as exc:
        logger.exception("Fetching parts of order %s failed", order_id)
        raise OrderQueryError("Failed to fetch ordered parts") from exc


def list_status_history(db: Session, order_id: int) -> list[models.StatusTracker]:
    try:
        return (
            db.query(models.StatusTracker)
            .options(
                joinedload(models.StatusTracker.status),
                joinedload(models.StatusTracker.profile),
            )
            .filter(models.StatusTracker.order_id == order_id)
            .order_by(models.StatusTracker.action_at.asc(), models.StatusTracker.id.asc())
            .all()
        )
    except SQLAlchemyError as exc:
        logger.exception("Fetching status history of order %s failed", order_id)
        raise OrderQueryError("Failed to fetch status history") from exc


def list_linked_orders(
    db: Session, part_id: int, order_filter: OrderFilter | None = None
) -> list[models.OrderedPart]:
    """Ordered-part rows requesting ``part_id``, filtered through their order."""

    order_filter = order_filter or OrderFilter()
    try:
        query = (
            db.query(models.OrderedPart)
            .join(models.Order, models.OrderedPart.order_id == models.Order.id)
            .options(
                joinedload(models.OrderedPart.order).joinedload(models.Order.factory),
                joinedload(models.OrderedPart.factory_section),
                joinedload(models.OrderedPart.machine),
            )
            .filter(models.OrderedPart.part_id == part_id)
        )
        query = apply_order_filter(query, order_filter)
        return query.order_by(models.Order.created_at.desc(), models.OrderedPart.id.desc()).all()
    except SQLAlchemyError as exc:
        logger.exception("Fetching linked orders of part %s failed", part_id)
        raise OrderQueryError("Failed to fetch linked orders") from exc


def list_running_orders(db: Session, machine_id: int) -> list[models.Order]:
    """Orders targeting ``machine_id`` that have not reached a terminal status."""

    try:
        return (
            db.query(models.Order)
            .join(models.Status, models.Order.current_status_id == models.Status.id)
            .options(joinedload(models.Order.status))
            .filter(
                models.Order.machine_id == machine_id,
                models.Status.name.notin_(list(TERMINAL_STATUSES)),
            )
            .order_by(models.Order.created_at.desc(), models.Order.id.desc())
            .all()
        )
    except SQLAlchemyError as exc:
        logger.exception("Fetching running orders of machine %s failed", machine_id)
        raise OrderQueryError("Failed to fetch running orders") from exc


def summarize_page(page: OrderPage) -> dict[str, Any]:
    return {
        "rows": page.rows,
        "total_count": page.total_count,
        "page": page.page,
        "page_size": page.page_size,
        "page_count": page.page_count,
    }
