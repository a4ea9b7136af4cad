"""
Tests for the Shopify REST client: version fallback, retries, pagination and auth diagnostics.
"""
from unittest.mock import Mock

import pytest
import requests

from shopify_service import (
    ApiStatus,
    ShopifyAuthError,
    ShopifyService,
    ShopifyUnavailableError,
    next_page_info,
    token_hints,
)


def response(status=200, json_data=None, headers=None, text=""):
    resp = Mock()
    resp.status_code = status
    resp.json.return_value = json_data if json_data is not None else {}
    resp.headers = headers or {}
    resp.text = text
    return resp


def orders_page(*ids):
    return response(json_data={"orders": [{"id": i, "name": f"#{i}"} for i in ids]})


@pytest.fixture
def session():
    return Mock(spec=requests.Session)


@pytest.fixture
def service(session, sleeps):
    svc = ShopifyService(
        store_url="https://test-store.myshopify.com/",
        token="shpat_" + "b" * 32,
        api_versions=["2024-10", "2024-07"],
        session=session,
        timeout=12,
        max_retries=3,
        retry_base_delay=0,
        request_delay=0,
        sleep=sleeps.append,
    )
    return svc


def called_url(session, n):
    return session.get.call_args_list[n].args[0]


def called_params(session, n):
    return session.get.call_args_list[n].kwargs["params"]


# ============================================================================
# Transport
# ============================================================================

class TestTransport:
    def test_store_url_is_normalized(self, service):
        assert service.store_url == "test-store.myshopify.com"

    def test_timeout_and_token_sent(self, service, session):
        session.get.return_value = response(json_data={"order": {"id": 1}})

        service.get_order(1)

        kwargs = session.get.call_args.kwargs
        assert kwargs["timeout"] == 12
        assert kwargs["headers"]["X-Shopify-Access-Token"].startswith("shpat_")

    def test_404_falls_back_to_next_version(self, service, session):
        session.get.side_effect = [response(404), response(json_data={"order": {"id": 7}})]

        order = service.get_order(7)

        assert order == {"id": 7}
        assert "/admin/api/2024-10/" in called_url(session, 0)
        assert "/admin/api/2024-07/" in called_url(session, 1)

    def test_working_version_is_tried_first_next_time(self, service, session):
        session.get.side_effect = [
            response(404), response(json_data={"order": {"id": 7}}),
            response(json_data={"order": {"id": 8}}),
        ]

        service.get_order(7)
        service.get_order(8)

        assert "/admin/api/2024-07/orders/8.json" in called_url(session, 2)

    def test_all_versions_404_means_not_found(self, service, session):
        session.get.return_value = response(404)

        assert service.get_order(7) is None
        assert session.get.call_count == 2

    def test_retries_server_errors(self, service, session, sleeps):
        session.get.side_effect = [response(503), response(json_data={"order": {"id": 7}})]

        assert service.get_order(7) == {"id": 7}
        assert session.get.call_count == 2
        assert len(sleeps) == 1

    def test_retry_after_header_is_honoured(self, service, session, sleeps):
        session.get.side_effect = [
            response(429, headers={"Retry-After": "7"}),
            response(json_data={"order": {"id": 7}}),
        ]

        service.get_order(7)

        assert sleeps == [7.0]

    def test_timeouts_are_retried(self, service, session):
        session.get.side_effect = [requests.exceptions.Timeout("slow"), response(json_data={"order": {"id": 7}})]

        assert service.get_order(7) == {"id": 7}

    def test_retries_are_bounded(self, service, session):
        session.get.return_value = response(500, text="boom")

        result = service._get("orders/7.json")

        assert result.status is ApiStatus.TRANSIENT
        assert session.get.call_count == 3


# ============================================================================
# Auth failures
# ============================================================================

class TestAuth:
    def test_401_raises_without_trying_other_versions(self, service, session):
        session.get.return_value = response(401, text="Invalid API key or access token")

        with pytest.raises(ShopifyAuthError) as exc:
            service.get_order(7)

        assert exc.value.status_code == 401
        assert exc.value.hints["starts_with_shpat"] is True
        assert "b" * 10 not in str(exc.value)
        assert session.get.call_count == 1

    def test_403_on_product_lookup_raises(self, service, session):
        session.get.return_value = response(403)

        with pytest.raises(ShopifyAuthError):
            service.fetch_products(["111"])

    def test_token_hints(self):
        assert token_hints("")["token_present"] is False
        assert "shpat_" in token_hints("abc123")["hint"]
        assert token_hints("shpat_123")["hint"] == "Token looks truncated."
        assert token_hints("shpat_" + "x" * 40)["token_prefix"] == "shpat_..."


# ============================================================================
# Order listing
# ============================================================================

class TestListOrders:
    def test_since_id_pagination_stops_on_short_page(self, service, session):
        service.page_limit = 2
        session.get.side_effect = [orders_page(1, 2), orders_page(3)]

        listing = service.list_orders(updated_at_min="2024-05-01T00:00:00Z")

        assert [o["id"] for o in listing.orders] == [1, 2, 3]
        assert listing.pages_ok == 2
        assert "since_id" not in called_params(session, 0)
        assert called_params(session, 0)["status"] == "any"
        assert called_params(session, 0)["updated_at_min"] == "2024-05-01T00:00:00Z"
        assert called_params(session, 1)["since_id"] == "2"

    def test_cursor_from_link_header(self, service, session):
        service.page_limit = 2
        first = orders_page(1, 2)
        first.headers = {"link": '<https://test-store.myshopify.com/admin/api/2024-10/orders.json?limit=2&page_info=abc123>; rel="next"'}
        session.get.side_effect = [first, orders_page(3)]

        service.list_orders()

        params = called_params(session, 1)
        assert params["page_info"] == "abc123"
        assert "status" not in params

    def test_empty_pages_are_bounded(self, service, session):
        session.get.return_value = response(json_data={"orders": []})

        listing = service.list_orders()

        assert listing.orders == []
        assert session.get.call_count == service.max_empty_pages

    def test_failed_page_keeps_earlier_orders(self, service, session):
        service.page_limit = 2
        session.get.side_effect = [orders_page(1, 2)] + [response(500, text="down")] * 3

        listing = service.list_orders()

        assert len(listing.orders) == 2
        assert listing.pages_failed == 1
        assert len(listing.errors) == 1

    def test_unreachable_host_raises(self, service, session):
        session.get.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(ShopifyUnavailableError):
            service.list_orders()

    def test_max_pages(self, service, session):
        service.page_limit = 1
        session.get.side_effect = [orders_page(1), orders_page(2), orders_page(3)]

        listing = service.list_orders(max_pages=2)

        assert len(listing.orders) == 2


def test_next_page_info():
    assert next_page_info(None) is None
    assert next_page_info('<https://x/orders.json?page_info=prev1>; rel="previous"') is None
    header = ('<https://x/orders.json?page_info=prev1>; rel="previous", '
              '<https://x/orders.json?limit=250&page_info=next2>; rel="next"')
    assert next_page_info(header) == "next2"


# ============================================================================
# Products and diagnostics
# ============================================================================

class TestProducts:
    def test_batch_lookup_returns_product_list(self, service, session):
        session.get.return_value = response(json_data={"products": [{"id": 111}, {"id": 112}]})

        result = service.fetch_products(["111", "112"])

        assert result.ok
        assert result.data == [{"id": 111}, {"id": 112}]
        assert called_params(session, 0)["ids"] == "111,112"

    def test_single_lookup_wraps_product(self, service, session):
        session.get.return_value = response(json_data={"product": {"id": 111}})

        assert service.fetch_product("111").data == [{"id": 111}]

    def test_connection_reports_working_version(self, service, session):
        session.get.side_effect = [response(404), response(json_data={"shop": {"name": "Test", "currency": "EGP"}})]

        report = service.test_connection()

        assert report["success"] is True
        assert report["api_version"] == "2024-07"
        assert [a["status"] for a in report["attempts"]] == ["version_mismatch", "ok"]

    def test_connection_failure_includes_token_hints(self, service, session):
        session.get.return_value = response(401)

        report = service.test_connection()

        assert report["success"] is False
        assert report["token"]["starts_with_shpat"] is True
        assert len(report["attempts"]) == 1
