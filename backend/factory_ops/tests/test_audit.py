from .conftest import client, department_id, make_hierarchy, make_profile, status_id


def test_order_actions_are_audited(client):
    hierarchy = make_hierarchy()
    profile_id, headers, _ = make_profile("admin")
    created = client.post(
        "/api/orders/",
        json={
            "factory_id": hierarchy["factory_id"],
            "department_id": department_id(),
            "order_type": "Storage",
            "description": "Audit me",
            "parts": [{"part_id": hierarchy["part_id"], "qty": 1}],
        },
        headers=headers,
    ).json()
    client.post(
        f"/api/orders/{created['id']}/status",
        json={"status_id": status_id("Order Sent To Head Office")},
        headers=headers,
    )
    client.delete(f"/api/orders/{created['id']}", headers=headers)

    logs = client.get("/api/audit/", headers=headers).json()
    actions = [log["action"] for log in logs if log["target_id"] == created["id"]]
    assert sorted(actions) == ["create_order", "delete_order", "transition_order"]
    assert all(log["user_id"] == profile_id for log in logs)


def test_audit_of_other_profiles_is_admin_only(client):
    other_id, _, _ = make_profile()
    _, headers, _ = make_profile()
    assert client.get("/api/audit/", params={"user_id": other_id}, headers=headers).status_code == 403
