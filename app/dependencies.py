"""
Shared service instances for the API routers.
Overridable through FastAPI's dependency_overrides.
"""
from functools import lru_cache

from app.services.supabase_service import SupabaseService
from app.services.sync_orchestrator import SyncOrchestrator
from app.services.sync_status_tracker import SyncStatusTracker


@lru_cache
def get_supabase_service() -> SupabaseService:
    return SupabaseService()


@lru_cache
def get_orchestrator() -> SyncOrchestrator:
    # one instance per process: it owns the allocation ledger and cancellation state
    return SyncOrchestrator(tracker=SyncStatusTracker(get_supabase_service()))
