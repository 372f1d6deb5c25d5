"""
API router for connected stores.
Lists stores and refreshes their inventory locations from the platform.
"""

from datetime import datetime
from typing import List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from app.dependencies import get_orchestrator, get_supabase_service
from app.models.database import Location, Store
from app.services.supabase_service import SupabaseService
from app.services.sync_orchestrator import SyncOrchestrator

logger = structlog.get_logger()

router = APIRouter(prefix="/api/stores", tags=["stores"])


class StoreResponse(BaseModel):
    """Response model for a store. Never exposes the access token."""

    id: str
    name: str
    domain: str
    platform: str
    is_active: bool
    locations: List[Location]
    primary_location_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_store(cls, store: Store) -> "StoreResponse":
        primary = store.primary_location()
        return cls(
            **store.model_dump(exclude={"access_token", "metadata"}),
            primary_location_id=primary.id if primary else None,
        )


@router.get("", response_model=List[StoreResponse])
async def list_stores(
    active_only: bool = False,
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    return [StoreResponse.from_store(s) for s in supabase_service.list_stores(active_only=active_only)]


@router.get("/{store_id}", response_model=StoreResponse)
async def get_store(
    store_id: str,
    supabase_service: SupabaseService = Depends(get_supabase_service),
):
    return StoreResponse.from_store(supabase_service.require_store(store_id))


@router.post("/{store_id}/locations/refresh", response_model=StoreResponse)
async def refresh_locations(
    store_id: str,
    supabase_service: SupabaseService = Depends(get_supabase_service),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Fetch the store's current locations from its platform and save them."""
    store = supabase_service.require_store(store_id)
    adapter = orchestrator.registry.get_adapter(store.platform)
    if adapter is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"No integration available for platform {store.platform!r}",
        )

    locations = await adapter.get_locations(store)
    # keep capacities configured locally
    capacities = {loc.id: loc.capacity for loc in store.locations}
    locations = [loc.model_copy(update={"capacity": capacities.get(loc.id)}) for loc in locations]

    updated = supabase_service.update_store_locations(store.model_copy(update={"locations": locations}))
    logger.info("Refreshed store locations", store_id=store_id, count=len(locations))
    return StoreResponse.from_store(updated)
