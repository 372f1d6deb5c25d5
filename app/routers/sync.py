"""
API router for pushing products to connected stores.
Starts multi-store syncs, reports per-store status for polling UIs,
cancels in-flight batches and previews inventory allocation.
"""

from typing import List, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.dependencies import get_orchestrator, get_supabase_service
from app.models.database import SyncResult
from app.models.sync import AllocationPlan, SyncReport, SyncTarget
from app.services.supabase_service import SupabaseService
from app.services.sync_orchestrator import SyncOrchestrator

logger = structlog.get_logger()

router = APIRouter(prefix="/api/products", tags=["sync"])


class SyncRequest(BaseModel):
    """Request model for a multi-store sync."""

    targets: List[SyncTarget] = Field(min_length=1)
    force_sync: bool = False
    # False returns 202 immediately; poll /sync-status for progress
    wait: bool = True


class SyncAccepted(BaseModel):
    product_id: str
    batch_id: str
    store_ids: List[str]
    skipped_store_ids: List[str]


class SyncStatusResponse(BaseModel):
    product_id: str
    settled: bool
    results: List[SyncResult]


class CancelRequest(BaseModel):
    batch_id: Optional[str] = None


@router.post(
    "/{product_id}/sync",
    response_model=SyncReport,
    responses={202: {"model": SyncAccepted}},
)
async def sync_product(
    product_id: str,
    request: SyncRequest,
    background_tasks: BackgroundTasks,
    supabase_service: SupabaseService = Depends(get_supabase_service),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Push a product to the selected stores.

    Validation and allocation errors are returned before any store is
    contacted. Store-level failures never fail the request; they appear as
    failed results in the report.
    """
    product = supabase_service.require_product(product_id)
    stores = supabase_service.get_stores([t.store_id for t in request.targets])

    batch = await orchestrator.prepare(
        product, request.targets, stores, force_sync=request.force_sync
    )

    if not request.wait:
        background_tasks.add_task(orchestrator.execute, batch)
        accepted = SyncAccepted(
            product_id=product_id,
            batch_id=batch.batch_id,
            store_ids=[job.store.id for job in batch.jobs],
            skipped_store_ids=batch.skipped_store_ids,
        )
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=accepted.model_dump())

    report = await orchestrator.execute(batch)
    logger.info("Sync finished", product_id=product_id, summary=report.summary())
    return report


@router.get("/{product_id}/sync-status", response_model=SyncStatusResponse)
async def get_sync_status(
    product_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Latest result per store. Poll while `settled` is false."""
    results = await orchestrator.tracker.get(product_id)
    return SyncStatusResponse(
        product_id=product_id,
        settled=all(r.status.is_terminal for r in results),
        results=results,
    )


@router.post("/{product_id}/sync/cancel", response_model=List[SyncResult])
async def cancel_sync(
    product_id: str,
    request: CancelRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.cancel(product_id, batch_id=request.batch_id)


@router.delete("/{product_id}/stores/{store_id}", response_model=SyncResult)
async def delete_from_store(
    product_id: str,
    store_id: str,
    supabase_service: SupabaseService = Depends(get_supabase_service),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Remove the product from one store."""
    product = supabase_service.require_product(product_id)
    store = supabase_service.require_store(store_id)
    return await orchestrator.delete_from_store(product, store)


@router.post("/{product_id}/allocation-preview", response_model=AllocationPlan)
async def preview_allocation(
    product_id: str,
    target: SyncTarget,
    supabase_service: SupabaseService = Depends(get_supabase_service),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Show how a sync would split inventory across a store's locations."""
    product = supabase_service.require_product(product_id)
    store = supabase_service.require_store(target.store_id)
    return await orchestrator.preview_allocation(product, target, store)
