import asyncio
import json
import logging

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from starlette.websockets import WebSocketDisconnect

from factory_ops import pubsub
from factory_ops.realtime import OrderListView, OrderView, RefreshBridge
from factory_ops.services.order_queries import OrderPage, OrderQueryError
from .conftest import client, department_id, insert_order, make_hierarchy, make_profile, status_id


class QueueFeed:
    """Notification stream driven by the test."""

    def __init__(self):
        self.queue = asyncio.Queue()
        self.closed = False

    def push(self, item="changed"):
        self.queue.put_nowait(item)

    def end(self):
        self.queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.queue.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_slow_stale_response_is_dropped():
    gates = []
    delivered = []

    async def refetch():
        gate = asyncio.Event()
        gates.append(gate)
        number = len(gates)
        await gate.wait()
        return number

    bridge = RefreshBridge(refetch, delivered.append)
    slow = asyncio.ensure_future(bridge.refresh())
    await asyncio.sleep(0)
    fast = asyncio.ensure_future(bridge.refresh())
    await asyncio.sleep(0)

    gates[1].set()
    assert await fast == 2
    gates[0].set()
    assert await slow is None
    assert delivered == [2]
    assert bridge.generation == 2
    assert bridge.delivered_generation == 2


@pytest.mark.asyncio
async def test_every_notification_triggers_a_refetch():
    calls = []

    async def refetch():
        calls.append(len(calls) + 1)
        return calls[-1]

    delivered = []
    feed = QueueFeed()
    bridge = RefreshBridge(refetch, delivered.append, notifications=feed)
    for _ in range(3):
        feed.push('{"table": "orders", "type": "UPDATE", "id": 1}')
    feed.end()
    await bridge.run()
    assert len(calls) == 3
    assert bridge.delivered_generation == 3
    assert delivered[-1] == 3


@pytest.mark.asyncio
async def test_close_cancels_pending_and_releases_feed():
    release = asyncio.Event()
    delivered = []

    async def refetch():
        await release.wait()
        return "late"

    feed = QueueFeed()
    async with RefreshBridge(refetch, delivered.append, notifications=feed) as bridge:
        task = bridge.invalidate()
        await asyncio.sleep(0)
    assert bridge.closed
    assert task.cancelled()
    assert feed.closed
    assert await bridge.refresh() is None
    release.set()
    assert delivered == []


@pytest.mark.asyncio
async def test_run_requires_a_feed():
    async def refetch():
        return None

    with pytest.raises(RuntimeError):
        await RefreshBridge(refetch, lambda result: None).run()


@pytest.mark.asyncio
async def test_order_view_reevaluates_permission_after_reload():
    current = {"status": "Pending"}

    async def loader(order_id):
        return {"id": order_id, "status": {"name": current["status"]}}

    view = OrderView(42, "department", loader)
    updates = []
    feed = QueueFeed()
    bridge = view.bridge(feed, on_update=updates.append)

    await bridge.refresh()
    assert view.snapshot.found
    assert view.snapshot.can_manage is True

    current["status"] = "Order Sent To Head Office"
    feed.push('{"table": "orders", "type": "UPDATE", "id": 42}')
    feed.end()
    await bridge.run()

    assert view.snapshot.status_name == "Order Sent To Head Office"
    assert view.snapshot.can_manage is False
    assert [snapshot.decision for snapshot in updates] == ["allowed", "unauthorized"]


@pytest.mark.asyncio
async def test_order_view_of_deleted_order():
    async def loader(order_id):
        return None

    view = OrderView(7, "admin", loader)
    await view.bridge().refresh()
    assert view.snapshot.found is False
    assert view.snapshot.can_manage is False
    assert view.snapshot.as_dict()["order"] is None


@pytest.mark.asyncio
async def test_order_list_keeps_last_rows_on_failure():
    state = {"fail": False}

    async def query(order_filter, page, page_size):
        if state["fail"]:
            raise OrderQueryError("Failed to fetch orders")
        return OrderPage(rows=["a", "b"], total_count=7, page=page, page_size=page_size)

    view = OrderListView(query=query)
    bridge = view.bridge()
    await bridge.refresh()
    assert view.rows == ["a", "b"]
    assert view.page_count == 2

    state["fail"] = True
    await bridge.refresh()
    assert view.rows == ["a", "b"]
    assert view.error == "Failed to fetch orders"

    state["fail"] = False
    await bridge.refresh()
    assert view.error is None


@pytest.mark.asyncio
async def test_order_changes_reach_subscribers():
    async with pubsub.subscribe_order_changes() as changes:
        await pubsub.publish_order_change("UPDATE", 42)
        message = await asyncio.wait_for(changes.__aiter__().__anext__(), timeout=2)
    event = json.loads(message)
    assert event["table"] == "orders"
    assert event["type"] == "UPDATE"
    assert event["id"] == 42
    assert "commit_timestamp" in event


@pytest.mark.asyncio
async def test_unknown_change_type_is_rejected():
    with pytest.raises(ValueError):
        await pubsub.publish_order_change("TRUNCATE", None)


@pytest.mark.asyncio
async def test_publish_failure_is_logged_not_raised(monkeypatch, caplog):
    class DownRedis:
        async def publish(self, channel, message):
            raise RedisConnectionError("connection refused")

    async def down_redis():
        return DownRedis()

    monkeypatch.setattr(pubsub, "get_redis", down_redis)
    with caplog.at_level(logging.WARNING, logger="factory_ops.pubsub"):
        await pubsub.publish_order_change("INSERT", 1)
    assert "Could not publish" in caplog.text


def test_order_socket_follows_status_changes(client):
    hierarchy = make_hierarchy()
    profile_id, _, token = make_profile("department")
    _, admin_headers, _ = make_profile("admin")
    order_id = insert_order(hierarchy, profile_id)

    with client.websocket_connect(f"/ws/orders/{order_id}?token={token}") as websocket:
        first = websocket.receive_json()
        assert first["found"] is True
        assert first["status"] == "Pending"
        assert first["can_manage"] is True
        assert first["order"]["id"] == order_id

        resp = client.post(
            f"/api/orders/{order_id}/status",
            json={"status_id": status_id("Order Sent To Head Office")},
            headers=admin_headers,
        )
        assert resp.status_code == 200

        second = websocket.receive_json()
        assert second["status"] == "Order Sent To Head Office"
        assert second["can_manage"] is False
        assert second["decision"] == "unauthorized"


def test_change_feed_socket_forwards_events(client):
    hierarchy = make_hierarchy()
    _, headers, token = make_profile("department")
    payload = {
        "factory_id": hierarchy["factory_id"],
        "department_id": department_id(),
        "order_type": "Storage",
        "description": "Spare belts",
        "parts": [{"part_id": hierarchy["other_part_id"], "qty": 2}],
    }
    with client.websocket_connect(f"/ws/orders?token={token}") as websocket:
        created = client.post("/api/orders/", json=payload, headers=headers)
        assert created.status_code == 200
        event = json.loads(websocket.receive_text())
        assert event["type"] == "INSERT"
        assert event["id"] == created.json()["id"]


def test_list_socket_reloads_on_change(client):
    hierarchy = make_hierarchy()
    profile_id, headers, token = make_profile("department")
    _, admin_headers, _ = make_profile("admin")
    order_id = insert_order(hierarchy, profile_id)

    url = f"/ws/orders/list?token={token}&factory_id={hierarchy['factory_id']}"
    with client.websocket_connect(url) as websocket:
        first = websocket.receive_json()
        assert first["total_count"] == 1
        assert first["rows"][0]["id"] == order_id

        assert client.delete(f"/api/orders/{order_id}", headers=admin_headers).status_code == 200
        second = websocket.receive_json()
        assert second["total_count"] == 0
        assert second["rows"] == []


def test_sockets_require_a_valid_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/orders/1") as websocket:
            websocket.receive_json()
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/orders?token=not-a-token") as websocket:
            websocket.receive_text()
