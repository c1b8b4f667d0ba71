"""
Commerce data provider.

The engine only reads from the commerce platform: customers, their orders and
open (abandoned) checkouts. ``ShopifyCommerceProvider`` talks to the Shopify
Admin REST API over httpx; tests substitute an in-memory implementation of
``CommerceProvider``.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from journeyflow.config import settings
from journeyflow.errors import ConfigurationError, ExternalProviderError, NotFoundError
from journeyflow.models.customer import Customer
from journeyflow.services.http_client import request_json

logger = logging.getLogger(__name__)


class CommerceProvider(ABC):

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Customer:
        """Raises NotFoundError when the customer does not exist."""

    @abstractmethod
    async def get_customer_orders(self, customer_id: str) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def get_abandoned_checkouts(self, customer_id: Optional[str] = None, email: Optional[str] = None) -> List[Dict[str, Any]]:
        """Open checkouts, optionally narrowed to one customer (by id or email)."""

    @abstractmethod
    async def list_customers(self, limit: int = 250) -> List[Customer]: ...


def checkout_belongs_to(checkout: Dict[str, Any], customer_id: Optional[str], email: Optional[str]) -> bool:
    owner = checkout.get("customer") or {}
    owner_id = owner.get("id") if isinstance(owner, dict) else None
    if customer_id is not None and owner_id is not None and str(owner_id) == str(customer_id):
        return True
    checkout_email = (checkout.get("email") or "").strip().lower()
    return bool(email) and checkout_email == email.strip().lower()


class ShopifyCommerceProvider(CommerceProvider):

    def __init__(
        self,
        shop_domain: Optional[str] = None,
        access_token: Optional[str] = None,
        api_version: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.shop_domain = shop_domain or settings.SHOPIFY_SHOP_DOMAIN
        self.access_token = access_token or settings.SHOPIFY_ACCESS_TOKEN
        self.api_version = api_version or settings.SHOPIFY_API_VERSION
        self.client = client

    @property
    def base_url(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self.api_version}"

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not (self.shop_domain and self.access_token):
            raise ConfigurationError("Shopify is not configured for this store")
        return await request_json(
            "shopify",
            "GET",
            f"{self.base_url}/{path}",
            headers={"X-Shopify-Access-Token": self.access_token},
            params=params,
            client=self.client,
        )

    async def get_customer(self, customer_id):
        try:
            data = await self._get(f"customers/{customer_id}.json")
        except ExternalProviderError as e:
            if e.status_code == 404:
                raise NotFoundError(f"Customer {customer_id} not found", customer_id=customer_id) from e
            raise
        return Customer.from_raw(data.get("customer") or {})

    async def get_customer_orders(self, customer_id):
        data = await self._get(f"customers/{customer_id}/orders.json", params={"status": "any", "limit": 250})
        orders = data.get("orders") or []
        logger.debug(f"[SHOPIFY] Loaded {len(orders)} orders for customer {customer_id}")
        return orders

    async def get_abandoned_checkouts(self, customer_id=None, email=None):
        data = await self._get("checkouts.json", params={"status": "open", "limit": 250})
        checkouts = data.get("checkouts") or []
        if customer_id is None and email is None:
            return checkouts
        return [checkout for checkout in checkouts if checkout_belongs_to(checkout, customer_id, email)]

    async def list_customers(self, limit=250):
        data = await self._get("customers.json", params={"limit": limit})
        return [Customer.from_raw(raw) for raw in data.get("customers") or []]
