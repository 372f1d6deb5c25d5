"""
Shopify API client for making direct Admin REST API calls to Shopify.
Handles products, inventory levels, locations and collection membership.
"""

from typing import Any, Dict, List, Optional

import httpx
import structlog

from app.config import settings
from app.utils.retry import retry_with_backoff

logger = structlog.get_logger()

_retry = retry_with_backoff(
    max_attempts=settings.max_retry_attempts,
    initial_delay=settings.retry_initial_delay_seconds,
    multiplier=settings.retry_backoff_multiplier,
)


class ShopifyAPIClient:
    """Client for making Shopify Admin API calls."""

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        api_version: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Shopify API client.

        Args:
            shop_domain: Shopify shop domain (e.g., 'myshop.myshopify.com')
            access_token: Shopify Admin API access token
            api_version: Admin API version (defaults to settings)
            transport: Optional httpx transport (used by tests)
        """
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.base_url = f"https://{shop_domain}/admin/api/{api_version or settings.shopify_api_version}"
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=30.0,
            transport=transport,
            headers={
                "X-Shopify-Access-Token": access_token,
                "Content-Type": "application/json",
            },
        )

    @_retry
    async def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a product, or None if it no longer exists."""
        response = await self.client.get(f"/products/{product_id}.json")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json().get("product")

    @_retry
    async def create_product(self, body: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.client.post("/products.json", json=body)
        response.raise_for_status()
        product = response.json().get("product", {})
        logger.info("Created Shopify product", shop=self.shop_domain, shopify_product_id=product.get("id"))
        return product

    @_retry
    async def update_product(self, product_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.client.put(f"/products/{product_id}.json", json=body)
        response.raise_for_status()
        logger.info("Updated Shopify product", shop=self.shop_domain, shopify_product_id=product_id)
        return response.json().get("product", {})

    @_retry
    async def delete_product(self, product_id: str) -> bool:
        """Delete a product. Returns False if it was already gone."""
        response = await self.client.delete(f"/products/{product_id}.json")
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True

    @_retry
    async def get_locations(self) -> List[Dict[str, Any]]:
        response = await self.client.get("/locations.json")
        response.raise_for_status()
        return response.json().get("locations", [])

    @_retry
    async def set_inventory_level(
        self, inventory_item_id: str, location_id: str, available: int
    ) -> Dict[str, Any]:
        """Set the available quantity of an inventory item at a location."""
        response = await self.client.post(
            "/inventory_levels/set.json",
            json={
                "inventory_item_id": int(inventory_item_id),
                "location_id": int(location_id),
                "available": available,
            },
        )
        response.raise_for_status()
        return response.json().get("inventory_level", {})

    @_retry
    async def add_to_collection(self, product_id: str, collection_id: str) -> bool:
        """
        Add a product to a custom collection.
        Returns False when Shopify reports the product is already a member.
        """
        response = await self.client.post(
            "/collects.json",
            json={"collect": {"product_id": int(product_id), "collection_id": int(collection_id)}},
        )
        if response.status_code == 422:
            logger.debug(
                "Product already in collection",
                shopify_product_id=product_id,
                collection_id=collection_id,
            )
            return False
        response.raise_for_status()
        return True

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
