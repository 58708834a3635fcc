"""HTTP tests for the canteen API."""

import pytest

from conftest import ADMIN_HEADERS, USER_HEADERS

OTHER_USER_HEADERS = {"X-User-Id": "user-2", "X-User-Name": "Ben"}


@pytest.fixture
def item(api_client):
    response = api_client.post(
        "/api/v1/menu/items",
        json={"name": "Burger", "description": "Veg burger", "price": 100, "category": "Lunch", "total_count": 5},
        headers=ADMIN_HEADERS,
    )
    assert response.status_code == 201
    return response.json()


def place(api_client, lines, headers=USER_HEADERS, **extra):
    body = {"items": [{"menu_item_id": item_id, "quantity": qty} for item_id, qty in lines], **extra}
    return api_client.post("/api/v1/orders", json=body, headers=headers)


class TestHealth:
    def test_root(self, api_client):
        response = api_client.get("/")
        assert response.status_code == 200
        assert response.json() == {"message": "Canteen service is running"}

    def test_health(self, api_client):
        assert api_client.get("/health").json()["status"] == "ok"


class TestMenu:
    def test_created_item_is_listed(self, api_client, item):
        assert item["remaining_count"] == 5
        assert item["is_available"] is True
        assert item["category"] == "lunch"

        listed = api_client.get("/api/v1/menu/items").json()
        assert [i["id"] for i in listed] == [item["id"]]
        assert api_client.get("/api/v1/menu/categories").json() == ["lunch"]

    def test_get_item(self, api_client, item):
        assert api_client.get(f"/api/v1/menu/items/{item['id']}").json()["name"] == "Burger"

    def test_missing_item(self, api_client):
        response = api_client.get("/api/v1/menu/items/nope")
        assert response.status_code == 404
        assert response.json()["code"] == "MENU_ITEM_NOT_FOUND"

    def test_filter_by_availability(self, api_client, item):
        api_client.patch(f"/api/v1/menu/items/{item['id']}", json={"remaining_count": 0}, headers=ADMIN_HEADERS)
        assert api_client.get("/api/v1/menu/items", params={"available": "true"}).json() == []
        assert len(api_client.get("/api/v1/menu/items", params={"available": "false"}).json()) == 1

    def test_patch_clamps_remaining(self, api_client, item):
        response = api_client.patch(
            f"/api/v1/menu/items/{item['id']}", json={"total_count": 3}, headers=ADMIN_HEADERS
        )
        assert response.status_code == 200
        assert response.json()["total_count"] == 3
        assert response.json()["remaining_count"] == 3

    def test_patch_cannot_set_availability(self, api_client, item):
        response = api_client.patch(
            f"/api/v1/menu/items/{item['id']}", json={"is_available": False}, headers=ADMIN_HEADERS
        )
        assert response.status_code == 422

    def test_invalid_price(self, api_client, item):
        response = api_client.patch(f"/api/v1/menu/items/{item['id']}", json={"price": -1}, headers=ADMIN_HEADERS)
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_MENU_ITEM"

    def test_delete(self, api_client, item):
        response = api_client.delete(f"/api/v1/menu/items/{item['id']}", headers=ADMIN_HEADERS)
        assert response.json() == {"status": "deleted", "id": item["id"]}
        assert api_client.get(f"/api/v1/menu/items/{item['id']}").status_code == 404

    def test_delete_ordered_item_is_refused(self, api_client, item):
        place(api_client, [(item["id"], 1)])
        response = api_client.delete(f"/api/v1/menu/items/{item['id']}", headers=ADMIN_HEADERS)
        assert response.status_code == 409

    @pytest.mark.parametrize(
        "method, path",
        [
            ("post", "/api/v1/menu/items"),
            ("patch", "/api/v1/menu/items/x"),
            ("delete", "/api/v1/menu/items/x"),
        ],
    )
    def test_admin_only(self, api_client, method, path):
        kwargs = {"json": {}} if method != "delete" else {}
        assert getattr(api_client, method)(path, headers=USER_HEADERS, **kwargs).status_code == 403
        assert getattr(api_client, method)(path, **kwargs).status_code == 401


class TestOrders:
    def test_place_order(self, api_client, item, notifier):
        response = place(api_client, [(item["id"], 2)])

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert body["total_amount"] == 200.0
        assert body["user_name"] == "Asha"
        assert body["items"] == [
            {"menu_item_id": item["id"], "item_name": "Burger", "quantity": 2, "price": 100.0, "total_price": 200.0}
        ]
        assert body["qr_code"].startswith(body["id"] + ":")
        assert notifier.of("new-order")[0]["id"] == body["id"]

    def test_requires_identity(self, api_client, item):
        assert place(api_client, [(item["id"], 1)], headers={}).status_code == 401

    def test_empty_order(self, api_client):
        response = place(api_client, [])
        assert response.status_code == 400
        assert response.json()["code"] == "EMPTY_ORDER"

    def test_invalid_quantity(self, api_client, item):
        response = place(api_client, [(item["id"], 0)])
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_QUANTITY"

    def test_unknown_items(self, api_client):
        response = place(api_client, [("ghost", 1)])
        assert response.status_code == 400
        assert response.json()["item_ids"] == ["ghost"]

    def test_insufficient_stock(self, api_client, item):
        response = place(api_client, [(item["id"], 6)])
        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "INSUFFICIENT_STOCK"
        assert body["items"] == ["Burger"]
        assert body["detail"] == "The following items are not available in sufficient quantity: Burger"

    def test_idempotent_placement(self, api_client, item):
        first = place(api_client, [(item["id"], 1)], idempotency_key="k-1").json()
        second = place(api_client, [(item["id"], 1)], idempotency_key="k-1").json()
        assert first["id"] == second["id"]
        assert api_client.get(f"/api/v1/menu/items/{item['id']}").json()["remaining_count"] == 4

    def test_users_only_see_their_orders(self, api_client, item):
        mine = place(api_client, [(item["id"], 1)]).json()
        theirs = place(api_client, [(item["id"], 1)], headers=OTHER_USER_HEADERS).json()

        listed = api_client.get("/api/v1/orders", params={"user_id": "user-2"}, headers=USER_HEADERS).json()
        assert [o["id"] for o in listed] == [mine["id"]]
        assert len(api_client.get("/api/v1/orders", headers=ADMIN_HEADERS).json()) == 2

        assert api_client.get(f"/api/v1/orders/{theirs['id']}", headers=USER_HEADERS).status_code == 403
        assert api_client.get(f"/api/v1/orders/{theirs['id']}", headers=ADMIN_HEADERS).status_code == 200

    def test_list_by_status(self, api_client, item):
        order = place(api_client, [(item["id"], 1)]).json()
        api_client.put(f"/api/v1/orders/{order['id']}/status", json={"status": "cancelled"}, headers=ADMIN_HEADERS)

        pending = api_client.get("/api/v1/orders", params={"status": "pending"}, headers=ADMIN_HEADERS).json()
        cancelled = api_client.get("/api/v1/orders", params={"status": "cancelled"}, headers=ADMIN_HEADERS).json()
        assert pending == []
        assert [o["id"] for o in cancelled] == [order["id"]]

    def test_missing_order(self, api_client):
        response = api_client.get("/api/v1/orders/nope", headers=ADMIN_HEADERS)
        assert response.status_code == 404
        assert response.json()["code"] == "ORDER_NOT_FOUND"


class TestStatusAndPickup:
    def test_cancel_returns_stock(self, api_client, item):
        order = place(api_client, [(item["id"], 2)]).json()
        response = api_client.put(
            f"/api/v1/orders/{order['id']}/status", json={"status": "cancelled"}, headers=ADMIN_HEADERS
        )
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert api_client.get(f"/api/v1/menu/items/{item['id']}").json()["remaining_count"] == 5

    def test_status_update_is_admin_only(self, api_client, item):
        order = place(api_client, [(item["id"], 1)]).json()
        response = api_client.put(
            f"/api/v1/orders/{order['id']}/status", json={"status": "cancelled"}, headers=USER_HEADERS
        )
        assert response.status_code == 403

    def test_terminal_order_conflict(self, api_client, item):
        order = place(api_client, [(item["id"], 1)]).json()
        url = f"/api/v1/orders/{order['id']}/status"
        api_client.put(url, json={"status": "fulfilled"}, headers=ADMIN_HEADERS)

        response = api_client.put(url, json={"status": "cancelled"}, headers=ADMIN_HEADERS)
        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"

    def test_unknown_status_is_rejected(self, api_client, item):
        order = place(api_client, [(item["id"], 1)]).json()
        response = api_client.put(
            f"/api/v1/orders/{order['id']}/status", json={"status": "shipped"}, headers=ADMIN_HEADERS
        )
        assert response.status_code == 422

    def test_verify_qr(self, api_client, item):
        order = place(api_client, [(item["id"], 2)]).json()

        response = api_client.post("/api/v1/orders/verify-qr", json={"qr_code": order["qr_code"]}, headers=ADMIN_HEADERS)
        assert response.status_code == 200
        assert response.json()["status"] == "fulfilled"
        assert response.json()["fulfilled_at"] is not None

        again = api_client.post("/api/v1/orders/verify-qr", json={"qr_code": order["qr_code"]}, headers=ADMIN_HEADERS)
        assert again.status_code == 409
        assert again.json() == {"detail": "Order has already been fulfilled", "code": "ALREADY_FULFILLED"}

    @pytest.mark.parametrize(
        "qr_code, code",
        [("garbage", "MALFORMED_TOKEN"), ("abc:123:0000", "SIGNATURE_MISMATCH")],
    )
    def test_bad_qr(self, api_client, qr_code, code):
        response = api_client.post("/api/v1/orders/verify-qr", json={"qr_code": qr_code}, headers=ADMIN_HEADERS)
        assert response.status_code == 400
        assert response.json()["code"] == code

    def test_verify_qr_is_admin_only(self, api_client):
        response = api_client.post("/api/v1/orders/verify-qr", json={"qr_code": "a:1:b"}, headers=USER_HEADERS)
        assert response.status_code == 403
