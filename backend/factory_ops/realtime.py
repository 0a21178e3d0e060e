"""Refetch-on-change plumbing between the order change feed and open views."""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Awaitable, Callable, Generic, TypeVar

from .filters import OrderFilter
from .permissions import ManageDecision, can_manage, manage_decision
from .services.order_queries import OrderQueryError, OrderPage

# purpose: turn change notifications into full reloads of whatever a view shows
# inputs: an async stream of notifications, a refetch coroutine, a result sink
# outputs: fresh results delivered to the sink, stale ones dropped
# status: active

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _sink(accept: Callable[[T], None], on_update: Callable[[T], Any] | None) -> Callable[[T], Awaitable[None]]:
    async def deliver(result: T) -> None:
        accept(result)
        if on_update is not None:
            await _maybe_await(on_update(result))

    return deliver


class RefreshBridge(Generic[T]):
    """Re-run a query every time the change feed says something changed.

    Notifications are invalidation signals only: their payload is ignored.
    Every refresh is stamped with a generation number and a result is only
    delivered if no newer refresh has been issued meanwhile, so a slow
    response can never overwrite a fresher one.
    """

    def __init__(
        self,
        refetch: Callable[[], Awaitable[T]],
        deliver: Callable[[T], Any],
        *,
        notifications: AsyncIterable[Any] | None = None,
    ) -> None:
        self._refetch = refetch
        self._deliver = deliver
        self._notifications = notifications
        self._issued = 0
        self._delivered = 0
        self._pending: set[asyncio.Task] = set()
        self._closed = False

    @property
    def generation(self) -> int:
        return self._issued

    @property
    def delivered_generation(self) -> int:
        return self._delivered

    @property
    def closed(self) -> bool:
        return self._closed

    async def refresh(self) -> T | None:
        """Refetch now; return the result, or None if it went stale."""

        if self._closed:
            return None
        self._issued += 1
        generation = self._issued
        result = await self._refetch()
        if self._closed or generation < self._issued:
            logger.debug("Dropping stale refresh %s (latest %s)", generation, self._issued)
            return None
        self._delivered = generation
        await _maybe_await(self._deliver(result))
        return result

    def invalidate(self) -> asyncio.Task:
        """Schedule a refresh without waiting for it."""

        task = asyncio.ensure_future(self.refresh())
        self._pending.add(task)
        task.add_done_callback(self._finish)
        return task

    def _finish(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Realtime refresh failed: %s", exc)

    async def run(self) -> None:
        """Consume notifications until the feed ends or the bridge is closed."""

        if self._notifications is None:
            raise RuntimeError("RefreshBridge.run needs a notification stream")
        async for _ in self._notifications:
            if self._closed:
                break
            self.invalidate()
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        self._closed = True
        for task in list(self._pending):
            task.cancel()
        for task in list(self._pending):
            with suppress(asyncio.CancelledError):
                await task
        self._pending.clear()
        closer = getattr(self._notifications, "close", None) or getattr(
            self._notifications, "aclose", None
        )
        if closer is not None:
            await _maybe_await(closer())

    async def __aenter__(self) -> "RefreshBridge[T]":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


@dataclass
class OrderSnapshot:
    """What the view/manage screen needs after each (re)load of one order."""

    order_id: int
    found: bool
    order: Any = None
    status_name: str | None = None
    can_manage: bool = False
    decision: ManageDecision | None = None

    def as_dict(self, serialize: Callable[[Any], Any] | None = None) -> dict[str, Any]:
        body = serialize(self.order) if (serialize and self.order is not None) else self.order
        return {
            "order_id": self.order_id,
            "found": self.found,
            "order": body,
            "status": self.status_name,
            "can_manage": self.can_manage,
            "decision": self.decision,
        }


class OrderView:
    """Live view of one order for an actor with a given permission.

    ``can_manage`` is recomputed from the status of every freshly loaded
    order, since a concurrent transition may have changed it.
    """

    def __init__(
        self,
        order_id: int,
        permission: str,
        loader: Callable[[int], Awaitable[Any]],
    ) -> None:
        self.order_id = order_id
        self.permission = permission
        self._loader = loader
        self.snapshot: OrderSnapshot | None = None

    async def load(self) -> OrderSnapshot:
        order = await self._loader(self.order_id)
        if order is None:
            return OrderSnapshot(order_id=self.order_id, found=False)
        status_name = _status_name(order)
        return OrderSnapshot(
            order_id=self.order_id,
            found=True,
            order=order,
            status_name=status_name,
            can_manage=can_manage(status_name, self.permission),
            decision=manage_decision(status_name, self.permission),
        )

    def _accept(self, snapshot: OrderSnapshot) -> None:
        self.snapshot = snapshot

    def bridge(
        self,
        notifications: AsyncIterable[Any] | None = None,
        on_update: Callable[[OrderSnapshot], Any] | None = None,
    ) -> RefreshBridge[OrderSnapshot]:
        return RefreshBridge(self.load, _sink(self._accept, on_update), notifications=notifications)


def _status_name(order: Any) -> str | None:
    status = getattr(order, "status", None)
    if status is None and isinstance(order, dict):
        status = order.get("status")
    if isinstance(status, dict):
        return status.get("name")
    return getattr(status, "name", None)


@dataclass
class OrderListView:
    """Paginated order list that keeps its last good rows on failure."""

    query: Callable[[OrderFilter, int, int], Awaitable[OrderPage]]
    order_filter: OrderFilter = field(default_factory=OrderFilter)
    page: int = 1
    page_size: int = 5
    rows: list[Any] = field(default_factory=list)
    total_count: int = 0
    error: str | None = None

    async def load(self) -> OrderPage | None:
        try:
            return await self.query(self.order_filter, self.page, self.page_size)
        except OrderQueryError as exc:
            logger.warning("Order list reload failed: %s", exc)
            self.error = str(exc)
            return None

    def _accept(self, result: OrderPage | None) -> None:
        if result is None:
            return
        self.rows = list(result.rows)
        self.total_count = result.total_count
        self.error = None

    @property
    def page_count(self) -> int:
        return -(-self.total_count // self.page_size) if self.page_size else 0

    def bridge(
        self,
        notifications: AsyncIterable[Any] | None = None,
        on_update: Callable[["OrderListView"], Any] | None = None,
    ) -> RefreshBridge[OrderPage | None]:
        async def deliver(result: OrderPage | None) -> None:
            self._accept(result)
            if on_update is not None:
                await _maybe_await(on_update(self))

        return RefreshBridge(self.load, deliver, notifications=notifications)
