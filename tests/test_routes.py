"""
API tests for the sync, webhook and order endpoints.
"""
from factories import make_order


def webhook(client, payload, topic="orders/updated", webhook_id="wh-1"):
    return client.post(
        "/api/webhooks/shopify",
        json=payload,
        headers={"X-Shopify-Topic": topic, "X-Shopify-Webhook-Id": webhook_id},
    )


def first_order(client):
    body = client.get("/api/orders").json()
    return client.get(f"/api/orders/{body['orders'][0]['id']}").json()


# ============================================================================
# Sync endpoints
# ============================================================================

class TestSyncEndpoints:
    def test_full_sync(self, client):
        response = client.get("/api/shopify/sync")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["imported"] == 1

    def test_window_sync(self, client):
        response = client.get("/api/shopify/sync", params={"hours": 2})

        assert response.status_code == 200
        assert response.json()["total"] == 1

    def test_auth_failure_is_401_with_hints(self, client, fake_shopify):
        fake_shopify.auth_failure = True

        response = client.get("/api/shopify/sync")

        assert response.status_code == 401
        assert "token" in response.json()["detail"]

    def test_single_order(self, client):
        response = client.post("/api/shopify/sync-order/9001")

        assert response.status_code == 200
        assert response.json()["imported"] == 1

    def test_single_order_not_found(self, client):
        response = client.post("/api/shopify/sync-order/123456")

        assert response.status_code == 404

    def test_resync_all_is_tracked(self, client):
        client.get("/api/shopify/sync")

        response = client.post("/api/shopify/resync-all")

        assert response.status_code == 200
        task_id = response.json()["task_id"]
        tasks = client.get("/api/shopify/sync/status").json()["tasks"]
        assert [t["done"] for t in tasks if t["id"] == task_id] == [True]

    def test_resync_images(self, client):
        client.get("/api/shopify/sync")

        response = client.get("/api/shopify/resync-images")

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_health(self, client):
        body = client.get("/api/shopify/health").json()

        assert body["status"] == "ok"
        assert body["store_configured"] is True
        assert body["token"]["starts_with_shpat"] is True
        assert "shpat_" + "a" * 32 not in str(body)

    def test_connection_check(self, client):
        assert client.get("/api/shopify/test").json()["success"] is True


# ============================================================================
# Webhooks
# ============================================================================

class TestWebhookEndpoint:
    def test_order_webhook_is_processed(self, client):
        response = webhook(client, make_order())

        assert response.status_code == 200
        assert response.json()["imported"] == 1

    def test_redelivery_is_acknowledged(self, client):
        webhook(client, make_order())

        response = webhook(client, make_order())

        assert response.status_code == 200
        assert response.json()["duplicate"] is True

    def test_missing_order_is_404(self, client, fake_shopify):
        fake_shopify.missing_orders.add("9001")

        response = webhook(client, {"order_edit": {"order_id": 9001}}, topic="orders/edited")

        assert response.status_code == 404


# ============================================================================
# Orders
# ============================================================================

class TestOrderEndpoints:
    def test_list_and_detail(self, client):
        webhook(client, make_order())

        body = client.get("/api/orders", params={"status": "pending"}).json()
        assert body["total"] == 1
        assert body["orders"][0]["order_id"] == "#1001"

        detail = first_order(client)
        assert len(detail["items"]) == 2
        assert detail["order_tags"] == ["vip", "rush"]

    def test_unknown_order(self, client):
        assert client.get("/api/orders/4242").status_code == 404

    def test_total_override(self, client):
        webhook(client, make_order())
        pk = first_order(client)["id"]

        response = client.put(f"/api/orders/{pk}/total", json={"total_order_fees": 150})

        assert response.status_code == 200
        assert response.json()["total_order_fees"] == 150.0
        assert client.put(f"/api/orders/{pk}/total", json={"total_order_fees": -5}).status_code == 422

    def test_remove_and_restore_item(self, client):
        webhook(client, make_order())
        order = first_order(client)
        item_id = order["items"][1]["id"]

        removed = client.post(f"/api/orders/{order['id']}/items/{item_id}/remove").json()
        assert removed["items"][1]["is_removed"] is True
        assert removed["total_order_fees"] == 70.0

        restored = client.post(f"/api/orders/{order['id']}/items/{item_id}/restore").json()
        assert restored["items"][1]["is_removed"] is False

    def test_rejected_edit_returns_localized_message(self, client):
        webhook(client, make_order())
        webhook(client, make_order(line_items=[make_order()["line_items"][0]]), webhook_id="wh-2")
        order = first_order(client)
        gone = next(i for i in order["items"] if i["shopify_line_item_id"] == "502")

        response = client.post(f"/api/orders/{order['id']}/items/{gone['id']}/restore")

        assert response.status_code == 400
        assert response.json()["detail"]["message_ar"]

    def test_courier_assignment(self, client, courier_factory):
        webhook(client, make_order())
        pk = first_order(client)["id"]
        courier = courier_factory()

        assigned = client.put(f"/api/orders/{pk}/courier", json={"courier_id": courier.id}).json()
        assert assigned["status"] == "assigned"
        assert assigned["original_courier_id"] == courier.id

        unassigned = client.put(f"/api/orders/{pk}/courier", json={"courier_id": None}).json()
        assert unassigned["assigned_courier_id"] is None

        assert client.put(f"/api/orders/{pk}/courier", json={"courier_id": 999}).status_code == 404

    def test_archive_and_restore(self, client):
        webhook(client, make_order())
        pk = first_order(client)["id"]

        assert client.post(f"/api/orders/{pk}/archive").json()["archived"] is True
        assert client.get("/api/orders", params={"archived": True}).json()["total"] == 1
        assert client.post(f"/api/orders/{pk}/restore").json()["archived"] is False


def test_root_redirects_to_health(client):
    response = client.get("/", follow_redirects=False)

    assert response.status_code in (302, 307)
    assert response.headers["location"].endswith("/api/shopify/health")
