from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from factory_ops.services import order_lifecycle as lifecycle
from factory_ops.services import order_queries
from factory_ops.services.order_queries import OrderQueryError

from .conftest import client, department_id, insert_order, make_hierarchy, make_profile, status_id


def machine_order_payload(hierarchy, **overrides):
    payload = {
        "factory_id": hierarchy["factory_id"],
        "department_id": department_id("Electrical"),
        "order_type": "Machine",
        "description": "Bearings for the loom",
        "parts": [
            {
                "part_id": hierarchy["part_id"],
                "qty": 3,
                "factory_section_id": hierarchy["section_id"],
                "machine_id": hierarchy["machine_id"],
                "is_sample_sent_to_office": True,
                "note": "urgent",
            }
        ],
    }
    payload.update(overrides)
    return payload


def test_orders_require_authentication(client):
    assert client.get("/api/orders/").status_code == 401


def test_create_then_find_by_id(client):
    hierarchy = make_hierarchy()
    _, headers, _ = make_profile("department")
    resp = client.post("/api/orders/", json=machine_order_payload(hierarchy), headers=headers)
    assert resp.status_code == 200, resp.text
    created = resp.json()
    assert created["status"]["name"] == "Pending"
    assert created["order_note"] == "Bearings for the loom"
    assert created["machine_id"] == hierarchy["machine_id"]

    listing = client.get("/api/orders/", params={"query": str(created["id"])}, headers=headers)
    assert listing.status_code == 200
    body = listing.json()
    assert body["total_count"] == 1
    row = body["rows"][0]
    assert row["id"] == created["id"]
    assert row["department"]["name"] == "Electrical"
    assert row["factory"]["id"] == hierarchy["factory_id"]
    assert row["destination"].startswith(hierarchy["abbreviation"])

    parts = client.get(f"/api/orders/{created['id']}/parts", headers=headers).json()
    assert len(parts) == 1
    assert parts[0]["qty"] == 3
    assert parts[0]["is_sample_sent_to_office"] is True
    assert parts[0]["part"]["name"] == hierarchy["part_name"]

    history = client.get(f"/api/orders/{created['id']}/history", headers=headers).json()
    assert [entry["status"]["name"] for entry in history] == ["Pending"]


def test_storage_order_has_no_machine(client):
    hierarchy = make_hierarchy()
    _, headers, _ = make_profile("department")
    payload = machine_order_payload(
        hierarchy,
        order_type="Storage",
        parts=[{"part_id": hierarchy["part_id"], "qty": 3}],
    )
    resp = client.post("/api/orders/", json=payload, headers=headers)
    assert resp.status_code == 200, resp.text
    order = resp.json()
    assert order["factory_section_id"] is None
    assert order["machine_id"] is None
    assert order["destination"] == f"{hierarchy['abbreviation']} - Storage"


def test_machine_order_needs_a_section(client):
    hierarchy = make_hierarchy()
    _, headers, _ = make_profile("department")
    payload = machine_order_payload(hierarchy, parts=[{"part_id": hierarchy["part_id"], "qty": 1}])
    resp = client.post("/api/orders/", json=payload, headers=headers)
    assert resp.status_code == 400


def test_create_rejects_mismatched_machine(client):
    hierarchy = make_hierarchy()
    _, headers, _ = make_profile("department")
    payload = machine_order_payload(hierarchy)
    payload["parts"][0]["machine_id"] = hierarchy["other_machine_id"]
    resp = client.post("/api/orders/", json=payload, headers=headers)
    assert resp.status_code == 400


def test_create_without_parts_is_rejected(client):
    hierarchy = make_hierarchy()
    _, headers, _ = make_profile("department")
    resp = client.post("/api/orders/", json=machine_order_payload(hierarchy, parts=[]), headers=headers)
    assert resp.status_code == 422


def test_list_filters_and_pagination(client):
    hierarchy = make_hierarchy()
    profile_id, headers, _ = make_profile("office")
    for _ in range(6):
        insert_order(hierarchy, profile_id)
    insert_order(hierarchy, profile_id, status="Budget Released")

    params = {"factory_id": hierarchy["factory_id"], "page_size": 5}
    first = client.get("/api/orders/", params=params, headers=headers).json()
    assert first["total_count"] == 7
    assert first["page_count"] == 2
    assert len(first["rows"]) == 5
    second = client.get("/api/orders/", params={**params, "page": 2}, headers=headers).json()
    assert len(second["rows"]) == 2

    budget = client.get(
        "/api/orders/",
        params={"factory_id": hierarchy["factory_id"], "status_id": status_id("Budget Released")},
        headers=headers,
    ).json()
    assert budget["total_count"] == 1


def test_malformed_filter_ids_are_ignored(client):
    hierarchy = make_hierarchy()
    profile_id, headers, _ = make_profile()
    insert_order(hierarchy, profile_id)
    resp = client.get(
        "/api/orders/",
        params={"factory_id": hierarchy["factory_id"], "status_id": "abc", "department_id": "-1", "query": "x1"},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["total_count"] == 1


def test_page_must_be_positive(client):
    _, headers, _ = make_profile()
    assert client.get("/api/orders/", params={"page": 0}, headers=headers).status_code == 422


def test_missing_order_is_404(client):
    _, headers, _ = make_profile()
    assert client.get("/api/orders/10000000", headers=headers).status_code == 404
    assert client.get("/api/orders/10000000/manage", headers=headers).status_code == 404


def test_manage_decision_follows_status_and_permission(client):
    hierarchy = make_hierarchy()
    profile_id, department_headers, _ = make_profile("department")
    _, finance_headers, _ = make_profile("finance")
    pending = insert_order(hierarchy, profile_id)
    received = insert_order(hierarchy, profile_id, status="Parts Received")

    allowed = client.get(f"/api/orders/{pending}/manage", headers=department_headers).json()
    assert allowed == {
        "order_id": pending,
        "status": "Pending",
        "can_manage": True,
        "decision": "allowed",
        "next_status": "Order Sent To Head Office",
    }
    denied = client.get(f"/api/orders/{pending}/manage", headers=finance_headers).json()
    assert denied["decision"] == "unauthorized"
    done = client.get(f"/api/orders/{received}/manage", headers=department_headers).json()
    assert done["decision"] == "completed"
    assert done["can_manage"] is False


def test_status_transition(client):
    hierarchy = make_hierarchy()
    profile_id, department_headers, _ = make_profile("department")
    _, finance_headers, _ = make_profile("finance")
    order_id = insert_order(hierarchy, profile_id)
    target = {"status_id": status_id("Order Sent To Head Office")}

    forbidden = client.post(f"/api/orders/{order_id}/status", json=target, headers=finance_headers)
    assert forbidden.status_code == 403

    moved = client.post(f"/api/orders/{order_id}/status", json=target, headers=department_headers)
    assert moved.status_code == 200
    assert moved.json()["status"]["name"] == "Order Sent To Head Office"

    again = client.post(f"/api/orders/{order_id}/status", json=target, headers=department_headers)
    assert again.status_code == 403

    history = client.get(f"/api/orders/{order_id}/history", headers=department_headers).json()
    assert [entry["status"]["name"] for entry in history] == ["Order Sent To Head Office"]
    assert history[0]["profile"]["id"] == profile_id


def test_transition_cannot_skip_workflow_steps(client):
    hierarchy = make_hierarchy()
    profile_id, headers, _ = make_profile("department")
    _, admin_headers, _ = make_profile("admin")
    order_id = insert_order(hierarchy, profile_id)

    skip = client.post(
        f"/api/orders/{order_id}/status",
        json={"status_id": status_id("Parts Received")},
        headers=headers,
    )
    assert skip.status_code == 400
    assert client.get(f"/api/orders/{order_id}", headers=headers).json()["status"]["name"] == "Pending"

    shipped = insert_order(hierarchy, profile_id, status="Parts Sent To Factory")
    backwards = client.post(
        f"/api/orders/{shipped}/status",
        json={"status_id": status_id("Pending")},
        headers=admin_headers,
    )
    assert backwards.status_code == 400


def _store_down(*args, **kwargs):
    raise OperationalError("SELECT 1", {}, Exception("database is locked"))


def test_store_failure_while_creating_is_503(client, monkeypatch):
    hierarchy = make_hierarchy()
    _, headers, _ = make_profile()
    monkeypatch.setattr(lifecycle, "initial_status", _store_down)
    resp = client.post("/api/orders/", json=machine_order_payload(hierarchy), headers=headers)
    assert resp.status_code == 503


def test_store_failure_while_transitioning_is_503(client, monkeypatch):
    hierarchy = make_hierarchy()
    profile_id, headers, _ = make_profile("department")
    order_id = insert_order(hierarchy, profile_id)
    monkeypatch.setattr(Session, "get", _store_down)
    resp = client.post(
        f"/api/orders/{order_id}/status",
        json={"status_id": status_id("Order Sent To Head Office")},
        headers=headers,
    )
    assert resp.status_code == 503


def test_query_failure_on_order_reads_is_503(client, monkeypatch):
    hierarchy = make_hierarchy()
    profile_id, headers, _ = make_profile()
    order_id = insert_order(hierarchy, profile_id)

    def unavailable(*args, **kwargs):
        raise OrderQueryError("Failed to fetch order info")

    monkeypatch.setattr(order_queries, "fetch_order", unavailable)
    monkeypatch.setattr(order_queries, "order_exists", unavailable)
    assert client.get(f"/api/orders/{order_id}/manage", headers=headers).status_code == 503
    assert client.get(f"/api/orders/{order_id}/parts", headers=headers).status_code == 503
    assert client.get(f"/api/orders/{order_id}/history", headers=headers).status_code == 503


def test_transition_to_unknown_status(client):
    hierarchy = make_hierarchy()
    profile_id, headers, _ = make_profile("admin")
    order_id = insert_order(hierarchy, profile_id)
    resp = client.post(f"/api/orders/{order_id}/status", json={"status_id": 10_000_000}, headers=headers)
    assert resp.status_code == 400


def test_delete_is_admin_only(client):
    hierarchy = make_hierarchy()
    profile_id, department_headers, _ = make_profile("department")
    _, admin_headers, _ = make_profile("admin")
    order_id = insert_order(hierarchy, profile_id)

    assert client.delete(f"/api/orders/{order_id}", headers=department_headers).status_code == 403
    assert client.delete(f"/api/orders/{order_id}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/orders/{order_id}", headers=admin_headers).status_code == 404
    assert client.delete(f"/api/orders/{order_id}", headers=admin_headers).status_code == 404


def test_linked_orders_endpoint(client):
    hierarchy = make_hierarchy()
    profile_id, headers, _ = make_profile()
    order_id = insert_order(hierarchy, profile_id, qty=5)
    resp = client.get(
        f"/api/parts/{hierarchy['part_id']}/linked-orders",
        params={"factory_id": hierarchy["factory_id"]},
        headers=headers,
    )
    assert resp.status_code == 200
    rows = resp.json()
    assert [row["order_id"] for row in rows] == [order_id]
    assert rows[0]["qty"] == 5
    assert rows[0]["order"]["destination"].endswith(hierarchy["machine_name"])


def test_draft_flow_over_http(client):
    hierarchy = make_hierarchy()
    _, headers, _ = make_profile("department")

    draft = client.post("/api/order-drafts/", headers=headers).json()
    draft_id = draft["id"]
    assert draft["state"] == "collecting_header"

    # parts cannot be added while the header is open
    early = client.post(
        f"/api/order-drafts/{draft_id}/parts", json={"part_id": hierarchy["part_id"], "qty": 1}, headers=headers
    )
    assert early.status_code == 409

    incomplete = client.post(f"/api/order-drafts/{draft_id}/submit-header", headers=headers)
    assert incomplete.status_code == 400

    patched = client.patch(
        f"/api/order-drafts/{draft_id}",
        json={
            "factory_id": hierarchy["factory_id"],
            "department_id": department_id("Mechanical"),
            "order_type": "Machine",
            "description": "Loom service",
        },
        headers=headers,
    ).json()
    assert patched["is_order_form_complete"] is True

    submitted = client.post(f"/api/order-drafts/{draft_id}/submit-header", headers=headers).json()
    assert submitted["state"] == "awaiting_parts"

    empty_commit = client.post(f"/api/order-drafts/{draft_id}/commit", headers=headers)
    assert empty_commit.status_code == 400

    no_section = client.post(
        f"/api/order-drafts/{draft_id}/parts", json={"part_id": hierarchy["part_id"], "qty": 2}, headers=headers
    )
    assert no_section.status_code == 400

    line = {
        "part_id": hierarchy["part_id"],
        "qty": 2,
        "factory_section_id": hierarchy["section_id"],
        "machine_id": hierarchy["machine_id"],
    }
    added = client.post(f"/api/order-drafts/{draft_id}/parts", json=line, headers=headers).json()
    assert len(added["lines"]) == 1
    added = client.post(
        f"/api/order-drafts/{draft_id}/parts", json={**line, "part_id": hierarchy["other_part_id"]}, headers=headers
    ).json()
    assert len(added["lines"]) == 2
    removed = client.delete(f"/api/order-drafts/{draft_id}/parts/0", headers=headers).json()
    assert [entry["part_id"] for entry in removed["lines"]] == [hierarchy["other_part_id"]]

    committed = client.post(f"/api/order-drafts/{draft_id}/commit", headers=headers)
    assert committed.status_code == 200
    result = committed.json()
    assert result["state"] == "done"
    assert result["lines"] == []

    order = client.get(f"/api/orders/{result['order_id']}", headers=headers).json()
    assert order["department"]["name"] == "Mechanical"
    assert client.get(f"/api/order-drafts/{draft_id}", headers=headers).status_code == 404


def test_drafts_are_private(client):
    _, owner_headers, _ = make_profile()
    _, other_headers, _ = make_profile()
    draft_id = client.post("/api/order-drafts/", headers=owner_headers).json()["id"]
    assert client.get(f"/api/order-drafts/{draft_id}", headers=other_headers).status_code == 404
    cancelled = client.delete(f"/api/order-drafts/{draft_id}", headers=owner_headers).json()
    assert cancelled["state"] == "cancelled"
    assert client.get(f"/api/order-drafts/{draft_id}", headers=owner_headers).status_code == 404
