"""
LLM Enrichment

Model-assisted second scoring pass over unprocessed changes.

Key Components:
- ChangeAnalyzer: Prompting, response sanitizing and cost accounting
- EnrichmentService: Per-person batching, score blending and claim-based marking
"""

from .analyzer import (
    AnalysisRequest,
    AnalysisResponse,
    AnalysisResult,
    ChangeAnalyzer,
    ChangeContext,
    CostTracker,
    PersonContext,
    RecommendedAction,
    calculate_cost,
)
from .scoring import (
    BatchScoringResult,
    EnrichmentService,
    ScoringResult,
    blend_scores,
    compute_age,
    engagement_level,
)

__all__ = [
    "AnalysisRequest",
    "AnalysisResponse",
    "AnalysisResult",
    "ChangeAnalyzer",
    "ChangeContext",
    "CostTracker",
    "PersonContext",
    "RecommendedAction",
    "calculate_cost",
    "BatchScoringResult",
    "EnrichmentService",
    "ScoringResult",
    "blend_scores",
    "compute_age",
    "engagement_level",
]
