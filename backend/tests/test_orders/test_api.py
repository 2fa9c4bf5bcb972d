"""
Test suite for the order lifecycle HTTP API.

Requests go through the full FastAPI application with the order service
dependency pointed at the in-memory test service.
"""

from typing import Iterator

import pytest
from fastapi import status
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from orderflow.api.deps import get_order_service
from orderflow.main import app
from orderflow.services.orders.enums import OrderCategory, OrderStatus, Phase, Table

API = "/api/v1/orders"


@pytest.fixture
def client(service) -> Iterator[TestClient]:
    """Test client bound to the in-memory order service."""
    app.dependency_overrides[get_order_service] = lambda: service
    app.state.order_service = service
    yield TestClient(app)
    app.dependency_overrides.clear()
    app.state.order_service = None


# ============================================================================
# Health Endpoint Tests
# ============================================================================


class TestHealthEndpoints:
    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "healthy"
        assert "X-Request-ID" in response.headers

    def test_request_id_is_echoed(self, client: TestClient) -> None:
        response = client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_ready_with_memory_backends(self, client: TestClient) -> None:
        response = client.get("/ready")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"ready": True, "checks": {"order_service": True}}

    def test_not_ready_without_service(self) -> None:
        app.state.order_service = None

        response = TestClient(app).get("/ready")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    def test_service_unavailable_before_startup(self, make_order) -> None:
        app.state.order_service = None
        order = make_order()

        response = TestClient(app).get(f"{API}/{order.id}")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE


# ============================================================================
# Order Creation and Read Tests
# ============================================================================


class TestCreateAndRead:
    def test_create_order(self, client: TestClient, store) -> None:
        payload = {
            "customer_name": "  Wayne Enterprises ",
            "items": [{"item_code": "BAT-1", "requested_quantity": 2}],
            "order_category": "stock",
        }

        response = client.post(API, json=payload, headers={"X-Actor-Id": "u-9"})

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["customer_name"] == "Wayne Enterprises"
        assert data["status"] == "almox_ssm_pending"
        assert data["status_label"] == "Almox SSM - Waiting"
        assert data["phase"] == "almox_ssm"
        assert data["items"][0]["item_code"] == "BAT-1"
        assert store.rows(Table.ORDER_HISTORY)[0]["user_id"] == "u-9"

    def test_create_without_items_is_rejected(self, client: TestClient) -> None:
        response = client.post(API, json={"customer_name": "Nobody", "items": []})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        body = response.json()
        assert body["error"] == "Validation Error"
        assert body["details"][0]["loc"][-1] == "items"

    def test_get_order(self, client: TestClient, make_order) -> None:
        order = make_order(items=[{"item_code": "A"}, {"item_code": "B", "is_removed": True}])

        response = client.get(f"{API}/{order.id}")

        assert response.status_code == status.HTTP_200_OK
        assert [item["item_code"] for item in response.json()["items"]] == ["A"]

    def test_get_missing_order(self, client: TestClient) -> None:
        response = client.get(f"{API}/3f1c9f7e-8d3a-4a61-9d55-0b7a0e6f2f10")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["detail"]["error"] == "OrderNotFoundError"

    def test_get_order_with_undeclared_status(self, client: TestClient, make_order, store) -> None:
        order = make_order()
        store.seed(Table.ORDERS, [{**order.to_row(), "status": "legacy_status"}])

        response = client.get(f"{API}/{order.id}")

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["detail"]["error"] == "UnreadableOrderError"
        assert response.json()["detail"]["fields"] == ["status"]


# ============================================================================
# Board Tests
# ============================================================================


class TestBoard:
    def test_phases_for_stock_orders(self, client: TestClient) -> None:
        response = client.get(f"{API}/phases", params={"order_category": "stock"})

        phases = [column["phase"] for column in response.json()]
        assert "production_stock" in phases
        assert "production_client" not in phases
        purchases = next(column for column in response.json() if column["phase"] == "purchases")
        assert purchases["default_status"] == "purchase_pending"

    def test_board_columns(self, client: TestClient, make_order) -> None:
        make_order(status=OrderStatus.IN_TRANSIT, category=OrderCategory.STOCK)
        make_order(status=OrderStatus.IN_PRODUCTION, category=OrderCategory.STOCK)
        make_order(status=OrderStatus.IN_PRODUCTION)

        response = client.get(f"{API}/board", params={"order_category": "stock"})

        data = response.json()
        assert data["total"] == 2
        columns = {column["phase"]: column["orders"] for column in data["columns"]}
        assert len(columns["in_transit"]) == 1
        assert columns["production_stock"][0]["status_label"] == "In Production"
        assert "production_client" not in columns

    def test_days_in_phase(self, client: TestClient, make_order) -> None:
        order = make_order()

        response = client.get(f"{API}/days-in-phase", params={"order_id": str(order.id)})

        assert response.json() == {"days": {str(order.id): 10}}


# ============================================================================
# Transition Tests
# ============================================================================


class TestStatusChanges:
    def test_change_status(self, client: TestClient, make_order) -> None:
        order = make_order()

        response = client.post(f"{API}/{order.id}/status", json={"status": "order_in_creation"})

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["changed"] is True
        assert data["origin"] == "explicit"
        assert data["new_status"] == "order_in_creation"
        assert data["delivery_date"] == "2026-03-12"
        assert data["order"]["phase"] == "order_generation"

    def test_unknown_status(self, client: TestClient, make_order) -> None:
        order = make_order()

        response = client.post(f"{API}/{order.id}/status", json={"status": "teleported"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["detail"]["error"] == "UnknownStatusError"

    def test_completion_requires_justification(self, client: TestClient, make_order) -> None:
        order = make_order(status=OrderStatus.DELIVERED)

        response = client.post(f"{API}/{order.id}/status", json={"status": "completed", "note": "   "})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        detail = response.json()["detail"]
        assert detail["error"] == "CompletionJustificationRequired"
        assert detail["pending_items"][0]["item_code"] == "MAT-001"

    def test_completion_with_note(self, client: TestClient, make_order, store) -> None:
        order = make_order(status=OrderStatus.DELIVERED)

        response = client.post(
            f"{API}/{order.id}/status",
            json={"status": "completed", "note": "Customer accepted the shortfall"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert store.rows(Table.ORDER_COMPLETION_NOTES)[0]["note"] == "Customer accepted the shortfall"

    def test_exception_requires_details(self, client: TestClient, make_order) -> None:
        order = make_order()

        response = client.post(f"{API}/{order.id}/status", json={"status": "exception"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["detail"]["missing"] == ["comment", "responsible"]

    def test_exception_comment_failure_is_a_warning(self, client: TestClient, make_order, store) -> None:
        order = make_order()
        store.fail_on("insert", Table.ORDER_COMMENTS)

        response = client.post(
            f"{API}/{order.id}/status",
            json={"status": "exception", "comment": "Damaged", "responsible": "QA"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["new_status"] == "exception"
        assert len(response.json()["warnings"]) == 1

    def test_forbidden_phase(self, client: TestClient, make_order) -> None:
        order = make_order()

        response = client.post(
            f"{API}/{order.id}/status",
            json={"status": "purchase_pending"},
            headers={"X-Allowed-Phases": "almox_ssm, order_generation"},
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_invalid_allowed_phases_header(self, client: TestClient, make_order) -> None:
        order = make_order()

        response = client.post(
            f"{API}/{order.id}/status",
            json={"status": "purchase_pending"},
            headers={"X-Allowed-Phases": "warp_drive"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_status_write_failure(self, client: TestClient, make_order, store) -> None:
        order = make_order()
        store.fail_on("update", Table.ORDERS)

        response = client.post(f"{API}/{order.id}/status", json={"status": "almox_ssm_received"})

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.json()["detail"]["error"] == "TransitionPersistenceError"

    def test_phase_drop(self, client: TestClient, make_order) -> None:
        order = make_order()

        response = client.post(f"{API}/{order.id}/phase", json={"phase": "laboratory"})

        data = response.json()
        assert data["origin"] == "phase_drop"
        assert data["new_status"] == "in_lab_analysis"

    def test_phase_drop_on_current_phase(self, client: TestClient, make_order) -> None:
        order = make_order(status=OrderStatus.ALMOX_SSM_APPROVED)

        response = client.post(f"{API}/{order.id}/phase", json={"phase": Phase.ALMOX_SSM.value})

        assert response.json()["changed"] is False

    def test_unknown_phase(self, client: TestClient, make_order) -> None:
        order = make_order()

        response = client.post(f"{API}/{order.id}/phase", json={"phase": "warp_drive"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    @pytest.mark.asyncio
    async def test_transition_in_flight_conflicts(self, service, make_order) -> None:
        app.dependency_overrides[get_order_service] = lambda: service
        order = make_order()
        try:
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as async_client:
                async with service.engine.gate.hold(order.id):
                    response = await async_client.post(
                        f"{API}/{order.id}/status", json={"status": "almox_ssm_received"}
                    )
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["detail"]["error"] == "TransitionInProgressError"


# ============================================================================
# Item Tests
# ============================================================================


class TestItems:
    def test_item_status_cascade(self, client: TestClient, make_order) -> None:
        order = make_order()
        item_id = order.items[0].id

        response = client.post(
            f"{API}/{order.id}/items/{item_id}/status",
            json={"item_status": "purchase_required"},
            headers={"X-Actor-Id": "buyer"},
        )

        data = response.json()
        assert data["item"]["item_status"] == "purchase_required"
        assert data["item"]["current_phase"] == "purchases"
        assert data["cascaded_status"] == "purchase_pending"
        assert data["order"]["status"] == "purchase_pending"
        assert data["warnings"] == []

    def test_invalid_item_status(self, client: TestClient, make_order) -> None:
        order = make_order()

        response = client.post(
            f"{API}/{order.id}/items/{order.items[0].id}/status",
            json={"item_status": "lost"},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_add_item(self, client: TestClient, make_order) -> None:
        order = make_order()

        response = client.post(f"{API}/{order.id}/items", json={"item_code": "EXTRA", "requested_quantity": 1})

        assert response.status_code == status.HTTP_201_CREATED
        assert response.json()["order_id"] == str(order.id)

    def test_items_locked(self, client: TestClient, make_order) -> None:
        order = make_order(status=OrderStatus.INVOICE_ISSUED)

        response = client.post(f"{API}/{order.id}/items", json={"item_code": "LATE"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["detail"]["error"] == "ItemsLockedError"

    def test_remove_item(self, client: TestClient, make_order) -> None:
        order = make_order()
        item_id = order.items[0].id

        response = client.delete(f"{API}/{order.id}/items/{item_id}")
        again = client.delete(f"{API}/{order.id}/items/{item_id}")

        assert response.json()["is_removed"] is True
        assert again.status_code == status.HTTP_404_NOT_FOUND
