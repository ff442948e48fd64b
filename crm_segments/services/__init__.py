# Services module
from crm_segments.services.segment_client import ClientResult, SegmentClient
from crm_segments.services.filter_config_store import FilterConfigStore, PendingWrite
from crm_segments.services.ai_segment_engine import AiSegmentEngine, AiSegmentState
from crm_segments.services.hydration import HydrationController, HydrationState
from crm_segments.services.pagination_sync import AiPaginationSync

__all__ = [
    "ClientResult",
    "SegmentClient",
    "FilterConfigStore",
    "PendingWrite",
    "AiSegmentEngine",
    "AiSegmentState",
    "HydrationController",
    "HydrationState",
    "AiPaginationSync",
]
