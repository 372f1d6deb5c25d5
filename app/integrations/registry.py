"""
Integration registry for discovery and management of store adapters.
"""

import structlog

from app.integrations.base import BaseStoreAdapter
from app.integrations.shopify.adapter import ShopifyStoreAdapter

logger = structlog.get_logger()


class IntegrationRegistry:
    """Registry that manages and provides access to all store adapters."""

    def __init__(self, load_defaults: bool = True):
        """Initialize the integration registry."""
        self._integrations: dict[str, BaseStoreAdapter] = {}
        if load_defaults:
            self.register(ShopifyStoreAdapter())

    def register(self, adapter: BaseStoreAdapter):
        """
        Register a store adapter.

        Args:
            adapter: Store adapter instance
        """
        name = adapter.get_name()
        if name in self._integrations:
            logger.warning("Integration already registered, replacing", integration_name=name)
        self._integrations[name] = adapter
        logger.info("Registered integration", integration_name=name)

    def get_adapter(self, integration_name: str) -> BaseStoreAdapter | None:
        """
        Get adapter for specific integration.

        Args:
            integration_name: Name of the integration (e.g., 'shopify')

        Returns:
            Store adapter instance, or None if not found
        """
        return self._integrations.get(integration_name.lower())

    def list_available(self) -> list[str]:
        """List all available integration names."""
        return list(self._integrations.keys())

    def is_available(self, integration_name: str) -> bool:
        return integration_name.lower() in self._integrations


# Global registry instance
integration_registry = IntegrationRegistry()
