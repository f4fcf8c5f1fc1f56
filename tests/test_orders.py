"""
API tests for order and order group endpoints
"""

import pytest

from app.services.duplicate_detector import DuplicateDetector
from app.services.order_store import OrderStore
from app.utils.error_handler import PersistenceError


def patient_order_payload(**overrides):
    data = {
        "type": "patient",
        "wardId": 1,
        "urgency": "urgent",
        "medications": [{"name": "Amoxicillin", "form": "capsules", "strength": "500mg", "quantity": 21}],
        "requester": {"name": "Dr Patel", "role": "doctor"},
        "patient": {"name": "Jane Doe", "dob": "1980-01-15", "nhs": "9434765919", "hospitalId": "H1"},
        "notes": "Check renal function",
    }
    data.update(overrides)
    return data


def ward_order_payload(**overrides):
    data = {
        "type": "ward-stock",
        "wardId": 7,
        "medications": [{"name": "Saline 0.9%", "quantity": "10"}],
        "requester": {"name": "Nurse Jones", "role": "nurse"},
    }
    data.update(overrides)
    return data


def create(client, payload):
    response = client.post("/api/v1/orders/", json=payload)
    assert response.status_code == 201
    return response.json()["orderId"]


class TestOrderEndpoints:
    """Test cases for order management"""

    def test_create_order_success(self, client, wards):
        """Test successful order creation"""
        response = client.post("/api/v1/orders/", json=patient_order_payload())
        assert response.status_code == 201

        data = response.json()
        assert data["success"] is True
        assert data["orderId"]

        order = client.get(f"/api/v1/orders/{data['orderId']}").json()["order"]
        assert order["status"] == "pending"
        assert order["urgency"] == "urgent"
        assert order["patient"]["name"] == "Jane Doe"
        assert order["notes"] == "Check renal function"
        assert order["wardName"] == "Ward A"
        assert order["medications"][0]["quantity"] == "21"

    def test_create_duplicate_order_id_fails(self, client):
        """Test that a reused client order id is rejected"""
        create(client, ward_order_payload(id="ORD-1"))

        response = client.post("/api/v1/orders/", json=ward_order_payload(id="ORD-1"))
        assert response.status_code == 409
        assert "already exists" in response.json()["detail"]

    def test_invalid_order_data_fails(self, client):
        """Test that invalid order data is rejected"""
        invalid_orders = [
            ward_order_payload(type="outpatient"),
            ward_order_payload(wardId=0),
            ward_order_payload(medications=[]),
            ward_order_payload(urgency="whenever"),
            patient_order_payload(patient={"name": "Jane Doe"}),
            patient_order_payload(patient=None),
            patient_order_payload(patient={"name": "Jane Doe", "hospitalId": "H1", "dob": "15th Jan"}),
        ]

        for invalid_order in invalid_orders:
            response = client.post("/api/v1/orders/", json=invalid_order)
            assert response.status_code == 422

    def test_get_nonexistent_order_fails(self, client):
        response = client.get("/api/v1/orders/99999")
        assert response.status_code == 404
        assert "not found" in response.json()["detail"].lower()

    def test_list_orders_with_filters(self, client, wards):
        create(client, ward_order_payload(id="W7"))
        create(client, ward_order_payload(id="W2", wardId=2, urgency="emergency"))
        create(client, patient_order_payload(id="P1"))

        orders = client.get("/api/v1/orders/").json()["orders"]
        assert [o["id"] for o in orders] == ["W2", "P1", "W7"]

        response = client.get("/api/v1/orders/?type=ward-stock&hospital_id=1")
        assert [o["id"] for o in response.json()["orders"]] == ["W7"]

        response = client.get("/api/v1/orders/?status=all&ward_id=2")
        assert [o["id"] for o in response.json()["orders"]] == ["W2"]

    def test_update_order_status(self, client):
        order_id = create(client, ward_order_payload())

        response = client.put(f"/api/v1/orders/{order_id}", json={"status": "processing", "processedBy": "Pharm A"})
        assert response.status_code == 200

        data = response.json()
        assert data["success"] is True
        assert data["order"]["status"] == "processing"
        assert data["order"]["processedBy"] == "Pharm A"

    def test_invalid_transition_conflicts(self, client):
        order_id = create(client, ward_order_payload())
        client.put(f"/api/v1/orders/{order_id}", json={"status": "completed"})

        response = client.put(f"/api/v1/orders/{order_id}", json={"status": "cancelled"})
        assert response.status_code == 409
        assert "already completed" in response.json()["detail"]

    def test_update_missing_order(self, client):
        response = client.put("/api/v1/orders/missing", json={"status": "completed"})
        assert response.status_code == 404

    def test_update_with_unknown_status_fails(self, client):
        order_id = create(client, ward_order_payload())
        response = client.put(f"/api/v1/orders/{order_id}", json={"status": "shipped"})
        assert response.status_code == 422

    def test_cancel_order(self, client):
        order_id = create(client, ward_order_payload())

        response = client.put(f"/api/v1/orders/{order_id}/cancel", json={"reason": "Ordered in error"})
        assert response.status_code == 200
        order = response.json()["order"]
        assert order["status"] == "cancelled"
        assert order["cancelledBy"] == "admin.user"

        again = client.put(f"/api/v1/orders/{order_id}/cancel", json={"reason": "Twice"})
        assert again.status_code == 409

    def test_cancel_requires_reason(self, client):
        order_id = create(client, ward_order_payload())
        response = client.put(f"/api/v1/orders/{order_id}/cancel", json={})
        assert response.status_code == 422


class TestMedicationEndpoints:
    """Test cases for medication edits over the API"""

    def test_replace_add_remove(self, client):
        order_id = create(client, ward_order_payload())

        replaced = client.put(f"/api/v1/orders/{order_id}/medications", json={
            "medications": [{"name": "Saline 0.9%", "quantity": "20"}, {"name": "Glucose 5%", "quantity": "5"}],
            "reason": "Ward request changed",
        })
        assert replaced.status_code == 200
        assert [m["name"] for m in replaced.json()["order"]["medications"]] == ["Saline 0.9%", "Glucose 5%"]

        added = client.post(f"/api/v1/orders/{order_id}/medications", json={
            "medication": {"name": "Water for injection", "quantity": "10"},
            "reason": "Top up",
            "modifiedBy": "nurse.jones",
        })
        assert added.status_code == 201
        medication_id = added.json()["order"]["medications"][-1]["id"]

        removed = client.delete(
            f"/api/v1/orders/{order_id}/medications/{medication_id}",
            params={"reason": "Not needed", "modifiedBy": "nurse.jones"},
        )
        assert removed.status_code == 200
        assert len(removed.json()["order"]["medications"]) == 2

        history = client.get(f"/api/v1/orders/{order_id}/history", params={"sortOrder": "ASC"}).json()
        assert [h["actionType"] for h in history["history"]] == [
            "medications_update", "medication_add", "medication_remove"
        ]
        assert history["history"][0]["modifiedBy"] == "admin.user"
        assert history["history"][2]["modifiedBy"] == "nurse.jones"

    def test_remove_requires_reason(self, client):
        order_id = create(client, ward_order_payload())
        response = client.delete(f"/api/v1/orders/{order_id}/medications/1")
        assert response.status_code == 422

    def test_remove_unknown_medication(self, client):
        order_id = create(client, ward_order_payload())
        response = client.delete(f"/api/v1/orders/{order_id}/medications/999", params={"reason": "x"})
        assert response.status_code == 404


class TestHistoryEndpoint:
    """Test cases for order history"""

    def test_history_pagination(self, client):
        order_id = create(client, ward_order_payload())
        client.put(f"/api/v1/orders/{order_id}", json={"status": "processing"})
        client.put(f"/api/v1/orders/{order_id}", json={"status": "completed"})

        response = client.get(f"/api/v1/orders/{order_id}/history", params={"limit": 1})
        assert response.status_code == 200

        data = response.json()
        assert data["history"][0]["newData"] == {"status": "completed"}
        assert data["pagination"] == {"total": 2, "limit": 1, "offset": 0, "hasMore": True}

    def test_history_for_missing_order(self, client):
        response = client.get("/api/v1/orders/missing/history")
        assert response.status_code == 404

    def test_history_does_not_expand_the_order(self, client, monkeypatch):
        """Test that the existence check skips decrypting the order"""
        order_id = create(client, patient_order_payload())
        client.put(f"/api/v1/orders/{order_id}", json={"status": "processing"})

        def fail_expand(self, order):
            raise AssertionError("order should not be expanded")

        monkeypatch.setattr(OrderStore, "expand_order", fail_expand)
        response = client.get(f"/api/v1/orders/{order_id}/history")
        assert response.status_code == 200
        assert response.json()["pagination"]["total"] == 1


class TestSearchEndpoints:
    """Test cases for searching orders"""

    def test_search_by_medication(self, client):
        create(client, ward_order_payload(id="saline"))
        create(client, patient_order_payload(id="amox"))

        response = client.get("/api/v1/orders/search/by-medication", params={"q": "amox"})
        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["orders"][0]["id"] == "amox"

    def test_search_requires_term(self, client):
        response = client.get("/api/v1/orders/search/by-medication")
        assert response.status_code == 422

    def test_advanced_search(self, client):
        create(client, patient_order_payload(id="jane"))
        create(client, ward_order_payload(id="ward", wardId=1, medications=[{"name": "Amoxicillin", "quantity": "5"}]))

        response = client.get("/api/v1/orders/search/advanced", params={"q": "Jane Amoxicillin"})
        assert [o["id"] for o in response.json()["orders"]] == ["jane"]

        response = client.get("/api/v1/orders/search/advanced", params={"q": "amoxicillin", "wardId": 1})
        assert {o["id"] for o in response.json()["orders"]} == {"jane", "ward"}


class TestRecentCheckEndpoint:
    """Test cases for the duplicate order warning"""

    def test_recent_order_warns(self, client):
        create(client, patient_order_payload())

        response = client.post("/api/v1/orders/recent-check", json={
            "patient": {"name": "Jane Doe", "hospitalNumber": "H1"},
            "medications": [{"name": "Amoxicillin"}],
        })
        assert response.status_code == 200

        data = response.json()
        assert data["warning"] is True
        assert len(data["recentOrders"]) == 1
        assert "14 days" in data["warningMessage"]

    def test_ward_check_uses_short_window(self, client):
        create(client, ward_order_payload())

        data = client.post("/api/v1/orders/recent-check", json={
            "patient": {"wardId": 7, "type": "ward-stock"},
            "medications": [{"name": "Saline"}],
        }).json()
        assert data["warning"] is True
        assert "2 days" in data["warningMessage"]

    def test_no_match(self, client):
        data = client.post("/api/v1/orders/recent-check", json={
            "patient": {"hospitalNumber": "H1"},
            "medications": [{"name": "Paracetamol"}],
        }).json()
        assert data == {"success": True, "recentOrders": [], "warning": False}

    def test_numeric_medication_name_gives_no_warning(self, client):
        create(client, patient_order_payload())

        response = client.post("/api/v1/orders/recent-check", json={
            "patient": {"hospitalNumber": "H1"},
            "medications": [{"name": 123}],
        })
        assert response.status_code == 200
        assert response.json() == {"success": True, "recentOrders": [], "warning": False}

    def test_database_failure_degrades_to_no_warning(self, client, monkeypatch):
        async def failing_check(self, identity, medications, now=None):
            raise PersistenceError("database is locked")

        monkeypatch.setattr(DuplicateDetector, "check_recent_medication_orders", failing_check)

        response = client.post("/api/v1/orders/recent-check", json={
            "patient": {"hospitalNumber": "H1"},
            "medications": [{"name": "Amoxicillin"}],
        })
        assert response.status_code == 200
        assert response.json() == {"success": True, "recentOrders": [], "warning": False}


class TestOrderGroupEndpoints:
    """Test cases for order group management"""

    def test_create_get_delete_group(self, client):
        first = create(client, ward_order_payload())
        second = create(client, ward_order_payload())

        response = client.post("/api/v1/order-groups/", json={"orderIds": [first, second], "groupNumber": "G-100"})
        assert response.status_code == 201
        group = response.json()["group"]
        assert sorted(group["orderIds"]) == sorted([first, second])
        assert group["createdBy"] == "admin.user"

        assert client.get(f"/api/v1/orders/{first}").json()["order"]["status"] == "processing"
        assert client.get(f"/api/v1/order-groups/{group['id']}").status_code == 200
        assert len(client.get("/api/v1/order-groups/").json()["groups"]) == 1

        assert client.delete(f"/api/v1/order-groups/{group['id']}").status_code == 204
        assert client.get(f"/api/v1/order-groups/{group['id']}").status_code == 404
        assert client.delete(f"/api/v1/order-groups/{group['id']}").status_code == 404
        assert client.get(f"/api/v1/orders/{first}").json()["order"]["groupId"] is None

    def test_group_with_missing_order(self, client):
        order_id = create(client, ward_order_payload())

        response = client.post("/api/v1/order-groups/", json={"orderIds": [order_id, "missing"], "groupNumber": "G-101"})
        assert response.status_code == 404
        assert client.get(f"/api/v1/orders/{order_id}").json()["order"]["status"] == "pending"

    def test_duplicate_group_number(self, client):
        first = create(client, ward_order_payload())
        second = create(client, ward_order_payload())
        client.post("/api/v1/order-groups/", json={"orderIds": [first], "groupNumber": "G-102"})

        response = client.post("/api/v1/order-groups/", json={"orderIds": [second], "groupNumber": "G-102"})
        assert response.status_code == 409

    def test_terminal_group_status_is_rejected(self, client):
        order_id = create(client, ward_order_payload())

        for status in ("completed", "cancelled"):
            response = client.post("/api/v1/order-groups/", json={
                "orderIds": [order_id], "groupNumber": f"G-{status}", "status": status
            })
            assert response.status_code == 422

        order = client.get(f"/api/v1/orders/{order_id}").json()["order"]
        assert order["status"] == "pending"
        assert order["groupId"] is None


class TestAccessControl:
    """Test cases for role checks"""

    def test_ordering_role_cannot_process_orders(self, client, current_user):
        order_id = create(client, ward_order_payload())
        current_user["role"] = "ordering"

        response = client.put(f"/api/v1/orders/{order_id}", json={"status": "processing"})
        assert response.status_code == 403

        response = client.get(f"/api/v1/orders/{order_id}/history")
        assert response.status_code == 403

    def test_pharmacy_role_cannot_create_orders(self, client, current_user):
        current_user["role"] = "pharmacy"
        response = client.post("/api/v1/orders/", json=ward_order_payload())
        assert response.status_code == 403

    def test_unknown_role_is_rejected(self, client, current_user):
        current_user["role"] = "visitor"
        assert client.get("/api/v1/orders/").status_code == 403


class TestServiceEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


if __name__ == "__main__":
    pytest.main([__file__])
