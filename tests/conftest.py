import asyncio
import os

# Must be set before app.config is imported
os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("RETRY_INITIAL_DELAY_SECONDS", "0")
os.environ.setdefault("RETRY_BACKOFF_MULTIPLIER", "0")

import pytest

from app.errors import NotFoundError
from app.integrations.base import BaseStoreAdapter, StoreProductPayload, StorePushResult
from app.integrations.registry import IntegrationRegistry
from app.models.database import (
    Location,
    Product,
    ProductOption,
    OptionValue,
    Store,
    SyncResult,
    utcnow,
)
from app.services.sync_orchestrator import SyncOrchestrator
from app.services.sync_status_tracker import SyncStatusTracker
from app.services.variant_generator import generate_variants


class FakeBackend:
    """In-memory sync_results table keyed by (product_id, store_id)."""

    def __init__(self):
        self.rows: dict[tuple[str, str], SyncResult] = {}
        self.writes: list[SyncResult] = []

    def fetch_sync_result(self, product_id, store_id):
        return self.rows.get((product_id, store_id))

    def upsert_sync_result(self, result):
        self.rows[(result.product_id, result.store_id)] = result
        self.writes.append(result)
        return result

    def list_sync_results(self, product_id):
        return sorted(
            (r for (pid, _), r in self.rows.items() if pid == product_id),
            key=lambda r: r.store_id,
        )


class FakeSupabaseService(FakeBackend):
    """Stands in for SupabaseService in router tests."""

    def __init__(self, products=(), stores=()):
        super().__init__()
        self.products = {p.id: p for p in products}
        self.stores = {s.id: s for s in stores}

    def create_product(self, product):
        now = utcnow()
        product = product.model_copy(update={"created_at": now, "updated_at": now})
        self.products[product.id] = product
        return product

    def get_product(self, product_id):
        return self.products.get(product_id)

    def require_product(self, product_id):
        product = self.get_product(product_id)
        if product is None:
            raise NotFoundError(f"Product not found: {product_id}")
        return product

    def update_product(self, product):
        if product.id not in self.products:
            raise NotFoundError(f"Product not found: {product.id}")
        self.products[product.id] = product
        return product

    def list_products(self, limit=50, offset=0):
        return list(self.products.values())[offset : offset + limit]

    def get_store(self, store_id):
        return self.stores.get(store_id)

    def require_store(self, store_id):
        store = self.get_store(store_id)
        if store is None:
            raise NotFoundError(f"Store not found: {store_id}")
        return store

    def list_stores(self, active_only=False):
        return [s for s in self.stores.values() if s.is_active or not active_only]

    def get_stores(self, store_ids):
        return {sid: self.stores[sid] for sid in store_ids if sid in self.stores}

    def update_store_locations(self, store):
        self.stores[store.id] = store
        return store


class FakeAdapter(BaseStoreAdapter):
    """
    Records pushes instead of calling a platform.

    failures: store_id -> exception raised by the push
    delays: store_id -> seconds to sleep before answering
    gates: store_id -> event the push waits on
    """

    def __init__(self, name="shopify"):
        self.name = name
        self.calls: list[tuple[str, StoreProductPayload]] = []
        self.deleted: list[tuple[str, str]] = []
        self.failures: dict[str, Exception] = {}
        self.delays: dict[str, float] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.started: dict[str, asyncio.Event] = {}
        self.locations: dict[str, list[Location]] = {}

    def get_name(self):
        return self.name

    async def create_or_update_product(self, store, payload):
        self.calls.append((store.id, payload))
        self.started.setdefault(store.id, asyncio.Event()).set()
        if store.id in self.gates:
            await self.gates[store.id].wait()
        if store.id in self.delays:
            await asyncio.sleep(self.delays[store.id])
        if store.id in self.failures:
            raise self.failures[store.id]
        return StorePushResult(
            shopify_product_id=payload.shopify_product_id or f"gid-{store.id}",
            created=payload.shopify_product_id is None,
        )

    async def delete_product(self, store, shopify_product_id):
        self.deleted.append((store.id, shopify_product_id))
        if store.id in self.failures:
            raise self.failures[store.id]
        return True

    async def get_locations(self, store):
        return self.locations.get(store.id, [])

    def pushed_to(self):
        return [store_id for store_id, _ in self.calls]


def make_options():
    return [
        ProductOption(name="Color", option_values=[OptionValue(name="Red"), OptionValue(name="Blue")]),
        ProductOption(name="Size", option_values=[OptionValue(name="S"), OptionValue(name="M")]),
    ]


def make_product(quantity=10, price=20.0, **kwargs):
    options = make_options()
    variants = [
        v.model_copy(update={"price": price, "inventory_quantity": quantity, "sku": f"TEE-{i}"})
        for i, v in enumerate(generate_variants(options), start=1)
    ]
    return Product(title="Tee", options=options, variants=variants, **kwargs)


def make_store(store_id, **kwargs):
    locations = kwargs.pop(
        "locations",
        [
            Location(id=f"{store_id}-a", name="Warehouse", fulfills_online_orders=True),
            Location(id=f"{store_id}-b", name="Shop"),
        ],
    )
    return Store(
        id=store_id,
        name=store_id.upper(),
        domain=f"{store_id}.myshopify.com",
        access_token="shpat_test",
        locations=locations,
        **kwargs,
    )


@pytest.fixture
def product():
    return make_product()


@pytest.fixture
def stores():
    return {sid: make_store(sid) for sid in ("s1", "s2", "s3")}


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def registry(adapter):
    registry = IntegrationRegistry(load_defaults=False)
    registry.register(adapter)
    return registry


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def tracker(backend):
    return SyncStatusTracker(backend)


@pytest.fixture
def orchestrator(tracker, registry):
    return SyncOrchestrator(tracker=tracker, registry=registry, push_timeout=5.0)
