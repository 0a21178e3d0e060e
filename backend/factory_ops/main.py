from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect, Response, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.orm import Session
import asyncio
import logging
import os
import time
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from . import pubsub, schemas
from .auth import user_from_token
from .database import get_db
from .realtime import OrderListView, OrderSnapshot, OrderView
from .routes import (
    auth,
    users,
    reference,
    orders,
    order_drafts,
    machines,
    audit,
)
from .services import order_queries

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

dsn = os.getenv("SENTRY_DSN")
if dsn:
    sentry_sdk.init(dsn=dsn, integrations=[FastApiIntegration()])

REQUEST_COUNT = Counter("request_count", "Total requests", ["method", "endpoint"])
REQUEST_LATENCY = Histogram(
    "request_latency_seconds", "Request latency", ["endpoint"]
)

app = FastAPI(title="Factory Ops API")

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in cors_origins.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, lambda r, e: Response("Too Many Requests", status_code=429))
if os.getenv("TESTING") != "1":
    app.add_middleware(SlowAPIMiddleware)


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    endpoint = request.url.path
    REQUEST_COUNT.labels(request.method, endpoint).inc()
    REQUEST_LATENCY.labels(endpoint).observe(time.time() - start)
    return response

@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

app.include_router(auth.router)
app.include_router(users.router)
app.include_router(reference.router)
app.include_router(orders.router)
app.include_router(orders.parts_router)
app.include_router(order_drafts.router)
app.include_router(machines.router)
app.include_router(audit.router)


def audit_routes():
    from fastapi.routing import APIRoute
    from .auth import get_current_user

    public_paths = {
        "/api/auth/login",
        "/api/auth/register",
        "/metrics",
    }
    for route in app.routes:
        if isinstance(route, APIRoute) and route.path.startswith("/api") and route.path not in public_paths:
            calls = [dep.call for dep in route.dependant.dependencies]
            if get_current_user not in calls:
                raise RuntimeError(f"Route {route.path} missing authentication")


audit_routes()


async def _until_disconnect(websocket: WebSocket, listener: asyncio.Task) -> None:
    # purpose: keep the socket open until the client leaves, then stop the listener
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        listener.cancel()
        (outcome,) = await asyncio.gather(listener, return_exceptions=True)
        if isinstance(outcome, Exception):
            logger.warning("Realtime listener stopped with an error: %s", outcome)


@app.websocket("/ws/orders")
async def order_changes_socket(websocket: WebSocket, token: str | None = None, db: Session = Depends(get_db)):
    if user_from_token(db, token) is None:
        await websocket.close(code=1008)
        return

    async with pubsub.subscribe_order_changes() as changes:
        await websocket.accept()

        async def forward():
            async for message in changes:
                await websocket.send_text(message)

        await _until_disconnect(websocket, asyncio.ensure_future(forward()))


@app.websocket("/ws/orders/list")
async def order_list_socket(
    websocket: WebSocket,
    token: str | None = None,
    page: int = 1,
    page_size: int = order_queries.DEFAULT_PAGE_SIZE,
    order_filter=Depends(orders.order_filter_params),
    db: Session = Depends(get_db),
):
    if user_from_token(db, token) is None:
        await websocket.close(code=1008)
        return

    async def run_query(order_filter, page, page_size):
        try:
            result = order_queries.query_orders(db, order_filter, page, page_size)
            result.rows = [
                schemas.OrderOut.model_validate(row).model_dump(mode="json") for row in result.rows
            ]
            return result
        finally:
            db.rollback()

    async def send(view: OrderListView):
        await websocket.send_json(
            {
                "rows": view.rows,
                "total_count": view.total_count,
                "page": view.page,
                "page_size": view.page_size,
                "page_count": view.page_count,
                "error": view.error,
            }
        )

    view = OrderListView(
        query=run_query,
        order_filter=order_filter,
        page=max(page, 1),
        page_size=min(max(page_size, 1), order_queries.MAX_PAGE_SIZE),
    )
    async with pubsub.subscribe_order_changes() as changes:
        await websocket.accept()
        async with view.bridge(changes, on_update=send) as bridge:
            await bridge.refresh()
            await _until_disconnect(websocket, asyncio.ensure_future(bridge.run()))


@app.websocket("/ws/orders/{order_id}")
async def order_view_socket(
    websocket: WebSocket,
    order_id: int,
    token: str | None = None,
    db: Session = Depends(get_db),
):
    user = user_from_token(db, token)
    if user is None:
        await websocket.close(code=1008)
        return
    permission = user.permission

    async def load(order_id: int):
        try:
            order = order_queries.fetch_order(db, order_id)
            if order is None:
                return None
            return schemas.OrderOut.model_validate(order).model_dump(mode="json")
        finally:
            # end the read so the next reload sees committed changes
            db.rollback()

    async def send(snapshot: OrderSnapshot):
        await websocket.send_json(snapshot.as_dict())

    view = OrderView(order_id, permission, load)
    async with pubsub.subscribe_order_changes() as changes:
        await websocket.accept()
        async with view.bridge(changes, on_update=send) as bridge:
            await bridge.refresh()
            await _until_disconnect(websocket, asyncio.ensure_future(bridge.run()))
