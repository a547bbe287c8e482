"""
Order source tests; Shopify calls run against httpx.MockTransport.
"""

import httpx
import pytest

from edition_ledger.errors import OrderUnavailable
from edition_ledger.services.order_source import (
    MappingOrderSource,
    ShopifyOrderSource,
    SnapshotOrderSource,
    default_order_source,
)
from ledger_factories import single_item_order


def shopify_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_fetch_order_from_shopify():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["token"] = request.headers.get("X-Shopify-Access-Token")
        return httpx.Response(200, json={"order": single_item_order("L1")})

    source = ShopifyOrderSource("demo.myshopify.com", "shpat_test", client=shopify_client(handler))
    order = source.fetch_order("order-L1")

    assert order["id"] == "order-L1"
    assert seen["url"] == "https://demo.myshopify.com/admin/api/2024-01/orders/order-L1.json"
    assert seen["token"] == "shpat_test"


def test_missing_order_is_none():
    source = ShopifyOrderSource(
        "demo.myshopify.com", "t", client=shopify_client(lambda request: httpx.Response(404))
    )
    assert source.fetch_order("1") is None


def test_server_error_is_order_unavailable():
    source = ShopifyOrderSource(
        "demo.myshopify.com", "t", client=shopify_client(lambda request: httpx.Response(502))
    )
    with pytest.raises(OrderUnavailable) as exc_info:
        source.fetch_order("1")
    assert isinstance(exc_info.value.cause, httpx.HTTPStatusError)


@pytest.mark.parametrize("body", [b"<html>maintenance</html>", b"[1, 2]", b'{"order": "gone"}'])
def test_unreadable_body_is_order_unavailable(body):
    source = ShopifyOrderSource(
        "demo.myshopify.com", "t",
        client=shopify_client(lambda request: httpx.Response(200, content=body)),
    )
    with pytest.raises(OrderUnavailable) as exc_info:
        source.fetch_order("1")
    assert exc_info.value.order_id == "1"


def test_transport_error_is_order_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    source = ShopifyOrderSource("demo.myshopify.com", "t", client=shopify_client(handler))
    with pytest.raises(OrderUnavailable):
        source.fetch_order("1")


def test_close_only_releases_owned_client():
    borrowed = shopify_client(lambda request: httpx.Response(404))
    with ShopifyOrderSource("demo.myshopify.com", "t", client=borrowed):
        pass
    assert borrowed.is_closed is False

    with ShopifyOrderSource("demo.myshopify.com", "t") as source:
        owned = source.client
    assert owned.is_closed is True


def test_mapping_source_from_list():
    source = MappingOrderSource.from_list([single_item_order("L1"), {"no": "id"}, "junk"])
    assert source.fetch_order("order-L1")["id"] == "order-L1"
    assert source.fetch_order("missing") is None


def test_snapshot_source(store):
    store.save_order_snapshot("order-L1", single_item_order("L1"))
    assert SnapshotOrderSource(store).fetch_order("order-L1")["id"] == "order-L1"


def test_default_source_prefers_configured_shopify(app, store):
    assert isinstance(default_order_source(store), SnapshotOrderSource)

    app.config.update(SHOPIFY_SHOP="demo.myshopify.com", SHOPIFY_ACCESS_TOKEN="t")
    try:
        with default_order_source(store) as source:
            assert isinstance(source, ShopifyOrderSource)
            assert source.order_url("7").startswith("https://demo.myshopify.com/admin/api/")
    finally:
        app.config.update(SHOPIFY_SHOP=None, SHOPIFY_ACCESS_TOKEN=None)
