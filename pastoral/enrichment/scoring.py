"""
Enrichment Service

Second scoring pass: claims unprocessed changes, batches them per person
into one model request, blends heuristic and model urgency, and marks every
claimed change processed, with a fallback annotation when the model fails.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from ..common.errors import NotFoundError, PastoralError
from ..common.llm_utils import round_half_up
from ..common.schemas import Person, PersonChange, utc_now
from ..common.store import DataStore
from .analyzer import AnalysisRequest, ChangeAnalyzer, ChangeContext, PersonContext

logger = logging.getLogger("pastoral.enrichment.scoring")

HEURISTIC_WEIGHT = 0.4
MODEL_WEIGHT = 0.6
TIMING_MULTIPLIERS = {
    "immediate": 1.2,
    "this_week": 1.0,
    "this_month": 0.8,
}

_FIELD_BY_CHANGE_TYPE = {
    "life_event": "major_life_change",
    "engagement": "church_participation",
    "personal_data": "contact_information",
    "relationship": "marital_status",
    "special_date": "birthday",
}


def blend_scores(heuristic: float, model_urgency: float, timing: Optional[str]) -> int:
    """40% heuristic + 60% model, times the timing multiplier, clamped to [1, 10]."""
    blended = heuristic * HEURISTIC_WEIGHT + model_urgency * MODEL_WEIGHT
    blended *= TIMING_MULTIPLIERS.get(timing, 1.0)
    if math.isnan(blended):
        return 1
    return max(1, min(10, round_half_up(blended)))


def engagement_level(last_synced_at: Optional[datetime], now: datetime) -> str:
    if last_synced_at is None:
        return "unknown"
    days = (now - last_synced_at).days
    if days <= 7:
        return "high"
    if days <= 30:
        return "medium"
    if days <= 90:
        return "low"
    return "inactive"


def compute_age(birth_date: Optional[str], today: date) -> Optional[int]:
    """Whole years since an ISO birth date, or None when absent or unparseable."""
    if not birth_date:
        return None
    try:
        born = date.fromisoformat(str(birth_date)[:10])
    except ValueError:
        return None
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return age


@dataclass
class ScoringResult:
    change_id: str
    person_id: str
    original_score: int
    enhanced_score: Optional[int]
    llm_analysis: Optional[Dict[str, Any]]
    processing_time_ms: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changeId": self.change_id,
            "personId": self.person_id,
            "originalScore": self.original_score,
            "enhancedScore": self.enhanced_score,
            "processingTime": self.processing_time_ms,
            "error": self.error,
        }


@dataclass
class BatchScoringResult:
    results: List[ScoringResult] = field(default_factory=list)
    total_cost: float = 0.0
    processing_time_ms: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return len(self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalProcessed": self.total_processed,
            "totalCost": round(self.total_cost, 6),
            "processingTime": self.processing_time_ms,
            "errors": list(self.errors),
            "results": [r.to_dict() for r in self.results],
        }


class EnrichmentService:
    """
    Model-assisted scoring of unprocessed changes.

    ``processed_at`` is set through the store's compare-and-swap claim as the
    last step for each change, so a crashed run leaves work reclaimable.
    """

    def __init__(
        self,
        store: DataStore,
        analyzer: ChangeAnalyzer,
        clock: Callable[[], datetime] = utc_now,
        history_limit: int = 5,
    ):
        self._store = store
        self._analyzer = analyzer
        self._clock = clock
        self._history_limit = history_limit

    async def process_unprocessed_changes(
        self,
        organization_id: Optional[str] = None,
        batch_size: int = 20,
        include_historical_context: bool = True,
    ) -> BatchScoringResult:
        """
        Score up to ``batch_size`` unprocessed changes, most urgent first.

        Args:
            organization_id: Restrict to one organization (None for all)
            batch_size: Maximum number of changes claimed in this pass
            include_historical_context: Attach recently processed changes to the prompt

        Returns:
            BatchScoringResult with one ScoringResult per change marked processed
        """
        started = time.monotonic()
        batch = BatchScoringResult()

        changes = await self._store.list_unprocessed_changes(organization_id=organization_id, limit=batch_size)
        if not changes:
            batch.processing_time_ms = int((time.monotonic() - started) * 1000)
            return batch

        for person_id, person_changes in self._group_by_person(changes).items():
            await self._process_person(person_id, person_changes, include_historical_context, batch)

        batch.processing_time_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Scored %d change(s)%s, cost=$%.5f, errors=%d",
            batch.total_processed,
            f" for {organization_id}" if organization_id else "",
            batch.total_cost, len(batch.errors),
        )
        return batch

    async def process_person_changes(
        self,
        person_id: str,
        include_historical_context: bool = True,
    ) -> BatchScoringResult:
        """Score every unprocessed change of one person (inline path for critical events)."""
        started = time.monotonic()
        batch = BatchScoringResult()
        changes = [c for c in await self._store.list_unprocessed_changes() if c.person_id == person_id]
        if changes:
            await self._process_person(person_id, changes, include_historical_context, batch)
        batch.processing_time_ms = int((time.monotonic() - started) * 1000)
        return batch

    def get_stats(self) -> Dict[str, Any]:
        return {
            "analyzerAvailable": self._analyzer.is_available,
            "model": self._analyzer.model,
            **self._analyzer.get_cost_stats(),
        }

    # ------------------------------------------------------------------
    # Per-person processing
    # ------------------------------------------------------------------

    @staticmethod
    def _group_by_person(changes: List[PersonChange]) -> Dict[str, List[PersonChange]]:
        grouped: Dict[str, List[PersonChange]] = {}
        for change in changes:
            grouped.setdefault(change.person_id, []).append(change)
        return grouped

    async def _process_person(
        self,
        person_id: str,
        changes: List[PersonChange],
        include_historical_context: bool,
        batch: BatchScoringResult,
    ) -> None:
        started = time.monotonic()
        try:
            person = await self._resolve_person(person_id, changes)
            request = await self._build_request(person, changes, include_historical_context)
            result = await self._analyzer.analyze_changes(request)
        except Exception as e:
            if not isinstance(e, PastoralError):
                logger.exception("Unexpected error analyzing person %s", person_id)
            message = str(e) or e.__class__.__name__
            batch.errors.append(f"Error processing person {person_id}: {message}")
            logger.warning("Falling back to heuristic scores for %s: %s", person_id, message)
            await self._mark_fallback(person_id, changes, message, started, batch)
            return

        batch.total_cost += result.cost
        elapsed_ms = int((time.monotonic() - started) * 1000)
        analysis = result.analysis.to_dict()
        for change in changes:
            enhanced = blend_scores(
                change.urgency_score,
                result.analysis.overall_urgency,
                result.analysis.suggested_timing,
            )
            ai_analysis = {
                "llmAnalysis": analysis,
                "enhancedScore": enhanced,
                "processingTime": elapsed_ms,
            }
            if await self._claim(change, enhanced, ai_analysis, batch):
                batch.results.append(ScoringResult(
                    change_id=change.id,
                    person_id=person_id,
                    original_score=change.urgency_score,
                    enhanced_score=enhanced,
                    llm_analysis=analysis,
                    processing_time_ms=elapsed_ms,
                ))

    async def _mark_fallback(
        self,
        person_id: str,
        changes: List[PersonChange],
        message: str,
        started: float,
        batch: BatchScoringResult,
    ) -> None:
        elapsed_ms = int((time.monotonic() - started) * 1000)
        for change in changes:
            ai_analysis = {"error": message, "fallbackScore": change.urgency_score}
            if await self._claim(change, None, ai_analysis, batch):
                batch.results.append(ScoringResult(
                    change_id=change.id,
                    person_id=person_id,
                    original_score=change.urgency_score,
                    enhanced_score=None,
                    llm_analysis=None,
                    processing_time_ms=elapsed_ms,
                    error=message,
                ))

    async def _claim(
        self,
        change: PersonChange,
        enhanced_score: Optional[int],
        ai_analysis: Dict[str, Any],
        batch: BatchScoringResult,
    ) -> bool:
        try:
            claimed = await self._store.claim_change(
                change.id,
                processed_at=self._clock(),
                enhanced_score=enhanced_score,
                ai_analysis=ai_analysis,
            )
        except PastoralError as e:
            batch.errors.append(f"Failed to mark change {change.id} processed: {e}")
            return False
        if not claimed:
            logger.info("Change %s already processed by another run, skipping", change.id)
        return claimed

    async def _resolve_person(self, person_id: str, changes: List[PersonChange]) -> Person:
        person = await self._store.get_person(person_id)
        if person is not None:
            return person
        for change in changes:
            snapshot = change.person_snapshot()
            if snapshot is not None:
                return snapshot
        raise NotFoundError(f"Person not found: {person_id}")

    async def _build_request(
        self,
        person: Person,
        changes: List[PersonChange],
        include_historical_context: bool,
    ) -> AnalysisRequest:
        now = self._clock()
        organization = await self._store.get_organization(person.organization_id)

        history: List[ChangeContext] = []
        if include_historical_context:
            previous = await self._store.list_changes_for_person(
                person.id, processed=True, limit=self._history_limit,
            )
            history = [self._change_context(c) for c in previous]

        return AnalysisRequest(
            person=PersonContext(
                id=person.id,
                name=person.name,
                age=compute_age(person.birth_date, now.date()),
                marital_status=person.marital_status,
                last_contact=person.last_synced_at,
                engagement_level=engagement_level(person.last_synced_at, now),
            ),
            changes=[self._change_context(c) for c in changes],
            organization_name=organization.name if organization else None,
            history=history,
        )

    @staticmethod
    def _change_context(change: PersonChange) -> ChangeContext:
        field_name = ", ".join(change.changed_fields) or _FIELD_BY_CHANGE_TYPE.get(change.change_type.value, "general")
        return ChangeContext(
            change_id=change.id,
            change_type=change.change_type.value,
            field=field_name,
            old_value=change.old_value,
            new_value=change.new_value,
            detected_at=change.detected_at,
            preliminary_score=change.urgency_score,
        )
