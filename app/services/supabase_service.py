"""
Supabase service layer for database operations.
Handles CRUD operations for products, stores and sync_results.
"""

from typing import List, Optional

import structlog
from supabase import Client, create_client

from app.config import settings
from app.errors import NotFoundError
from app.models.database import Product, Store, SyncResult, utcnow

logger = structlog.get_logger()

NOT_FOUND_PHRASES = (
    "No rows",
    "Could not find",
    "PGRST116",
    "result contains 0 rows",
    "Cannot coerce the result to a single JSON object",
)


def _is_not_found(error: Exception) -> bool:
    return any(phrase in str(error) for phrase in NOT_FOUND_PHRASES)


class SupabaseService:
    """Service for interacting with Supabase database."""

    def __init__(self, client: Optional[Client] = None):
        """Initialize Supabase client."""
        self.client: Client = client or create_client(
            settings.supabase_url, settings.supabase_service_key
        )

    # Products

    def create_product(self, product: Product) -> Product:
        """Insert a new canonical product."""
        now = utcnow()
        product = product.model_copy(update={"created_at": now, "updated_at": now})
        try:
            result = (
                self.client.table("products")
                .insert(product.model_dump(mode="json", exclude_none=True))
                .execute()
            )
            if result.data:
                return Product(**result.data[0])
            raise Exception("No data returned from insert")
        except Exception as e:
            logger.error("Failed to create product", product_id=product.id, error=str(e))
            raise

    def get_product(self, product_id: str) -> Optional[Product]:
        """Get product by id."""
        try:
            result = (
                self.client.table("products")
                .select("*")
                .eq("id", product_id)
                .limit(1)
                .execute()
            )
            if result.data:
                return Product(**result.data[0])
            return None
        except Exception as e:
            if _is_not_found(e):
                return None
            logger.error("Failed to get product", product_id=product_id, error=str(e))
            raise

    def require_product(self, product_id: str) -> Product:
        product = self.get_product(product_id)
        if product is None:
            raise NotFoundError(f"Product not found: {product_id}")
        return product

    def update_product(self, product: Product) -> Product:
        """Replace a product's stored fields."""
        data = product.model_copy(update={"updated_at": utcnow()}).model_dump(
            mode="json", exclude={"id", "created_at"}
        )
        try:
            result = (
                self.client.table("products")
                .update(data)
                .eq("id", product.id)
                .execute()
            )
            if result.data:
                return Product(**result.data[0])
            raise NotFoundError(f"Product not found: {product.id}")
        except NotFoundError:
            raise
        except Exception as e:
            logger.error("Failed to update product", product_id=product.id, error=str(e))
            raise

    def list_products(self, limit: int = 50, offset: int = 0) -> List[Product]:
        try:
            result = (
                self.client.table("products")
                .select("*")
                .order("created_at", desc=True)
                .range(offset, offset + limit - 1)
                .execute()
            )
            return [Product(**row) for row in result.data] if result.data else []
        except Exception as e:
            logger.error("Failed to list products", error=str(e))
            raise

    # Stores

    def get_store(self, store_id: str) -> Optional[Store]:
        try:
            result = (
                self.client.table("stores")
                .select("*")
                .eq("id", store_id)
                .limit(1)
                .execute()
            )
            if result.data:
                return Store(**result.data[0])
            return None
        except Exception as e:
            if _is_not_found(e):
                return None
            logger.error("Failed to get store", store_id=store_id, error=str(e))
            raise

    def require_store(self, store_id: str) -> Store:
        store = self.get_store(store_id)
        if store is None:
            raise NotFoundError(f"Store not found: {store_id}")
        return store

    def list_stores(self, active_only: bool = False) -> List[Store]:
        """List connected stores, newest first."""
        try:
            query = self.client.table("stores").select("*")
            if active_only:
                query = query.eq("is_active", True)
            result = query.order("created_at", desc=True).execute()
            return [Store(**row) for row in result.data] if result.data else []
        except Exception as e:
            logger.error("Failed to list stores", error=str(e))
            raise

    def get_stores(self, store_ids: List[str]) -> dict[str, Store]:
        """Fetch several stores by id. Missing ids are simply absent."""
        if not store_ids:
            return {}
        try:
            result = (
                self.client.table("stores")
                .select("*")
                .in_("id", store_ids)
                .execute()
            )
            return {row["id"]: Store(**row) for row in result.data} if result.data else {}
        except Exception as e:
            logger.error("Failed to get stores", store_ids=store_ids, error=str(e))
            raise

    def update_store_locations(self, store: Store) -> Store:
        """Persist a store's refreshed location list."""
        try:
            result = (
                self.client.table("stores")
                .update(
                    {
                        "locations": [loc.model_dump(mode="json") for loc in store.locations],
                        "updated_at": utcnow().isoformat(),
                    }
                )
                .eq("id", store.id)
                .execute()
            )
            if result.data:
                return Store(**result.data[0])
            raise NotFoundError(f"Store not found: {store.id}")
        except NotFoundError:
            raise
        except Exception as e:
            logger.error("Failed to update store locations", store_id=store.id, error=str(e))
            raise

    # Sync results

    def fetch_sync_result(self, product_id: str, store_id: str) -> Optional[SyncResult]:
        try:
            result = (
                self.client.table("sync_results")
                .select("*")
                .eq("product_id", product_id)
                .eq("store_id", store_id)
                .limit(1)
                .execute()
            )
            if result.data:
                return SyncResult(**result.data[0])
            return None
        except Exception as e:
            if _is_not_found(e):
                return None
            logger.error(
                "Failed to fetch sync result",
                product_id=product_id,
                store_id=store_id,
                error=str(e),
            )
            raise

    def upsert_sync_result(self, sync_result: SyncResult) -> SyncResult:
        """Insert or replace the result keyed by (product_id, store_id)."""
        try:
            result = (
                self.client.table("sync_results")
                .upsert(
                    sync_result.model_dump(mode="json"),
                    on_conflict="product_id,store_id",
                )
                .execute()
            )
            if result.data:
                return SyncResult(**result.data[0])
            raise Exception("No data returned from upsert")
        except Exception as e:
            logger.error(
                "Failed to upsert sync result",
                product_id=sync_result.product_id,
                store_id=sync_result.store_id,
                error=str(e),
            )
            raise

    def list_sync_results(self, product_id: str) -> List[SyncResult]:
        try:
            result = (
                self.client.table("sync_results")
                .select("*")
                .eq("product_id", product_id)
                .order("store_id")
                .execute()
            )
            return [SyncResult(**row) for row in result.data] if result.data else []
        except Exception as e:
            logger.error("Failed to list sync results", product_id=product_id, error=str(e))
            raise
