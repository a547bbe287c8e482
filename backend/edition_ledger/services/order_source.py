# Overview: External views of orders used by reconciliation (snapshots or live commerce API).

from __future__ import annotations

import logging
from typing import Mapping, Optional

import httpx
from flask import current_app

from ..errors import OrderUnavailable
from .ledger_store import LedgerStore

logger = logging.getLogger(__name__)


class OrderSource:
    """
    Returns the freshest raw order payload for an id, or None if unknown.

    Raises OrderUnavailable when the view exists but cannot be read. Sources
    are context managers; close() releases whatever connection they hold.
    """

    name = "unknown"

    def fetch_order(self, order_id: str) -> Optional[dict]:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self) -> "OrderSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class SnapshotOrderSource(OrderSource):
    """Last payload received by sync_order."""

    name = "snapshot"

    def __init__(self, store: LedgerStore):
        self.store = store

    def fetch_order(self, order_id: str) -> Optional[dict]:
        return self.store.get_order_snapshot(order_id)


class MappingOrderSource(OrderSource):
    """Orders supplied up front (e.g. an exported JSON file)."""

    name = "mapping"

    def __init__(self, orders: Mapping[str, dict]):
        self.orders = {str(k): v for k, v in orders.items()}

    @classmethod
    def from_list(cls, orders: list[dict]) -> "MappingOrderSource":
        return cls({str(o.get("id")): o for o in orders if isinstance(o, dict) and o.get("id") is not None})

    def fetch_order(self, order_id: str) -> Optional[dict]:
        return self.orders.get(str(order_id))


class ShopifyOrderSource(OrderSource):
    """
    Live order lookup against the Shopify Admin REST API.

    The order resource embeds its refunds (with refund_line_items), which is
    everything the normalizer needs. A client passed in stays owned by the
    caller; one built here is closed by close().
    """

    name = "shopify"

    def __init__(
        self,
        shop: str,
        access_token: str,
        *,
        api_version: str = "2024-01",
        timeout: float = 15.0,
        client: httpx.Client | None = None,
    ):
        self.shop = shop
        self.api_version = api_version
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout)
        self.headers = {
            "X-Shopify-Access-Token": access_token,
            "Accept": "application/json",
        }

    @classmethod
    def from_config(cls, config) -> "ShopifyOrderSource":
        return cls(
            config["SHOPIFY_SHOP"],
            config["SHOPIFY_ACCESS_TOKEN"],
            api_version=config.get("SHOPIFY_API_VERSION", "2024-01"),
            timeout=config.get("SHOPIFY_TIMEOUT_SECONDS", 15.0),
        )

    def order_url(self, order_id: str) -> str:
        return f"https://{self.shop}/admin/api/{self.api_version}/orders/{order_id}.json"

    def fetch_order(self, order_id: str) -> Optional[dict]:
        try:
            response = self.client.get(self.order_url(order_id), headers=self.headers)
            if response.status_code == 404:
                logger.info("Order %s not found in Shopify", order_id)
                return None
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise OrderUnavailable(str(order_id), self.name, exc) from exc
        except ValueError as exc:
            # Body was not JSON
            raise OrderUnavailable(str(order_id), self.name, exc) from exc

        order = payload.get("order") if isinstance(payload, dict) else None
        if not isinstance(order, dict):
            raise OrderUnavailable(str(order_id), self.name)
        return order

    def close(self) -> None:
        if self._owns_client:
            self.client.close()


def default_order_source(store: LedgerStore) -> OrderSource:
    """
    Live Shopify when credentials are configured, otherwise stored snapshots.

    The caller owns the returned source and should close it (use `with`).
    """
    config = current_app.config
    if config.get("SHOPIFY_SHOP") and config.get("SHOPIFY_ACCESS_TOKEN"):
        return ShopifyOrderSource.from_config(config)
    return SnapshotOrderSource(store)
