from crm_segments.schemas.filter_ast import (
    FilterNode,
    GroupNode,
    InvolvementNode,
    TransitionNode,
    UpsellNode,
    EmailNode,
    Iteration,
    SegmentRoot,
)
from crm_segments.schemas.segment import (
    SegmentPagination,
    SegmentResults,
    GenerateResponse,
    SavedSegment,
    SavedSegmentUpdate,
)
from crm_segments.schemas.filter_config import (
    MinimalFilter,
    ManualFilterState,
    AiFilterState,
    PersistedFilterConfig,
    EMPTY_AI,
)
