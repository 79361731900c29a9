"""
Change Analyzer

Sends one person's pending changes to the LLM and returns a sanitized
pastoral-care analysis: overall urgency, suggested timing, up to three
recommended actions and short notes for the leader.

Token budget: ~600 prompt tokens + up to 1000 completion tokens per person.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from ..common.errors import UpstreamServiceError
from ..common.llm_client import LLMClient
from ..common.llm_utils import clamp_float, clamp_int, parse_llm_json, truncate
from ..common.schemas import utc_now

logger = logging.getLogger("pastoral.enrichment.analyzer")

VALID_ACTIONS = ("message", "call", "visit")
VALID_TIMINGS = ("immediate", "this_week", "this_month")

# USD per 1k tokens: (prompt, completion)
MODEL_PRICES = {
    "gpt-4o-mini": (0.00015, 0.0006),
    "gpt-4o": (0.0025, 0.01),
    "claude-haiku-4-5-20251001": (0.001, 0.005),
    "gemini-2.0-flash-exp": (0.0001, 0.0004),
}
DEFAULT_PRICE = MODEL_PRICES["gpt-4o-mini"]

DEFAULT_LEADER_PREFERENCES = {
    "tone": "caring and pastoral",
    "approach": "relationship-focused",
    "priorities": ["spiritual_wellbeing", "life_transitions", "family_needs"],
}

SYSTEM_PROMPT = """You are an AI assistant helping church leaders provide better pastoral care by analyzing changes in their members' lives.

Your role is to:
1. Analyze detected changes in member profiles with cultural and spiritual sensitivity
2. Assess the urgency and significance of these changes
3. Recommend appropriate pastoral care actions (message, call, visit)
4. Provide practical guidance for leaders

Guidelines:
- Be sensitive to religious and cultural contexts
- Consider the pastoral relationship and appropriate boundaries
- Prioritize significant life events and emotional needs
- Balance urgency with practical leadership capacity
- Provide actionable, specific recommendations

Tone: {tone}
Approach: {approach}
Priorities: {priorities}
Context: Church pastoral care and relationship management

Always respond with valid JSON format as requested."""

RESPONSE_FORMAT = """{
  "overallUrgency": <1-10 number>,
  "contextualAnalysis": "<your analysis of the changes and their significance>",
  "recommendedActions": [
    {"type": "message|call|visit", "priority": <1-10 number>, "reasoning": "<why>", "confidence": <0.0-1.0 number>}
  ],
  "pastoralNotes": "<notes for the leader about pastoral care considerations>",
  "suggestedTiming": "immediate|this_week|this_month"
}"""


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    prompt_price, completion_price = MODEL_PRICES.get(model, DEFAULT_PRICE)
    return prompt_tokens * prompt_price / 1000 + completion_tokens * completion_price / 1000


# ============================================================================
# Request / response types
# ============================================================================

@dataclass
class ChangeContext:
    """One pending change as presented to the model."""
    change_id: str
    change_type: str
    field: str
    old_value: Any
    new_value: Any
    detected_at: datetime
    preliminary_score: int


@dataclass
class PersonContext:
    id: str
    name: str
    age: Optional[int] = None
    marital_status: Optional[str] = None
    last_contact: Optional[datetime] = None
    engagement_level: str = "unknown"


@dataclass
class AnalysisRequest:
    person: PersonContext
    changes: List[ChangeContext]
    leader_preferences: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_LEADER_PREFERENCES))
    organization_name: Optional[str] = None
    history: List[ChangeContext] = field(default_factory=list)


@dataclass
class RecommendedAction:
    type: str
    priority: int
    reasoning: str = ""
    confidence: float = 0.5

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "priority": self.priority,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
        }


@dataclass
class AnalysisResponse:
    """Sanitized model analysis. ``to_dict`` is the shape stored on changes."""
    overall_urgency: int
    suggested_timing: str
    contextual_analysis: str = ""
    recommended_actions: List[RecommendedAction] = field(default_factory=list)
    pastoral_notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overallUrgency": self.overall_urgency,
            "contextualAnalysis": self.contextual_analysis,
            "recommendedActions": [a.to_dict() for a in self.recommended_actions],
            "pastoralNotes": self.pastoral_notes,
            "suggestedTiming": self.suggested_timing,
        }

    @classmethod
    def from_model_output(cls, data: Dict[str, Any]) -> "AnalysisResponse":
        """Clamp and truncate whatever the model returned into the expected shape."""
        actions = []
        raw_actions = data.get("recommendedActions") or []
        if isinstance(raw_actions, list):
            for raw in raw_actions[:3]:
                if not isinstance(raw, dict):
                    continue
                action_type = raw.get("type")
                actions.append(RecommendedAction(
                    type=action_type if action_type in VALID_ACTIONS else "message",
                    priority=clamp_int(raw.get("priority"), 1, 10, 5),
                    reasoning=truncate(raw.get("reasoning"), 200),
                    confidence=clamp_float(raw.get("confidence"), 0.0, 1.0, 0.5),
                ))

        timing = data.get("suggestedTiming")
        return cls(
            overall_urgency=clamp_int(data.get("overallUrgency"), 1, 10, 5),
            suggested_timing=timing if timing in VALID_TIMINGS else "this_week",
            contextual_analysis=truncate(data.get("contextualAnalysis"), 500),
            recommended_actions=actions,
            pastoral_notes=truncate(data.get("pastoralNotes"), 300),
        )


@dataclass
class AnalysisResult:
    analysis: AnalysisResponse
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0
    raw_response: Optional[str] = None


# ============================================================================
# Cost tracking
# ============================================================================

class CostTracker:
    """Per-day request count and spend."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock
        self._by_day: Dict[date, List[float]] = {}

    def record(self, cost: float) -> None:
        self._by_day.setdefault(self._clock().date(), []).append(cost)

    def get_cost_stats(self) -> Dict[str, Any]:
        today = self._by_day.get(self._clock().date(), [])
        total = sum(today)
        return {
            "totalCostToday": round(total, 6),
            "requestsToday": len(today),
            "averageCostPerRequest": round(total / len(today), 6) if today else 0.0,
        }


# ============================================================================
# Analyzer
# ============================================================================

class ChangeAnalyzer:
    """
    LLM-backed analysis of a person's pending changes.

    Raises UpstreamServiceError when the model is unavailable, fails, or
    returns nothing parseable; callers degrade to the heuristic score.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        temperature: float = 0.3,
        max_tokens: int = 1000,
        timeout: float = 30.0,
        cost_tracker: Optional[CostTracker] = None,
    ):
        self._llm = llm_client
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout = timeout
        self._costs = cost_tracker or CostTracker()

    @property
    def is_available(self) -> bool:
        return self._llm is not None and self._llm.is_available

    @property
    def model(self) -> str:
        return getattr(self._llm, "model", "") or ""

    async def analyze_changes(self, request: AnalysisRequest) -> AnalysisResult:
        if not self.is_available:
            raise UpstreamServiceError("LLM client is not available", code="LLM_UNAVAILABLE")
        if not request.changes:
            raise ValueError("analysis request without changes")

        system = self.build_system_prompt(request.leader_preferences)
        prompt = self.build_prompt(request)

        try:
            completion = await asyncio.to_thread(
                self._llm.complete,
                prompt,
                system=system,
                max_tokens=self._max_tokens,
                timeout=self._timeout,
                temperature=self._temperature,
                json_mode=True,
            )
        except Exception as e:
            raise UpstreamServiceError(f"LLM request failed: {e}", code="LLM_ERROR") from e

        data = parse_llm_json(completion.text)
        if not data:
            raise UpstreamServiceError("No JSON in LLM response", code="LLM_INVALID_RESPONSE")

        analysis = AnalysisResponse.from_model_output(data)
        cost = calculate_cost(self.model, completion.prompt_tokens, completion.completion_tokens)
        self._costs.record(cost)

        logger.info(
            "Analyzed %d change(s) for %s: urgency=%d timing=%s cost=$%.5f",
            len(request.changes), request.person.id, analysis.overall_urgency,
            analysis.suggested_timing, cost,
        )
        return AnalysisResult(
            analysis=analysis,
            model=self.model,
            prompt_tokens=completion.prompt_tokens,
            completion_tokens=completion.completion_tokens,
            cost=cost,
            raw_response=completion.text,
        )

    def get_cost_stats(self) -> Dict[str, Any]:
        return self._costs.get_cost_stats()

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    @staticmethod
    def build_system_prompt(preferences: Optional[Dict[str, Any]] = None) -> str:
        prefs = {**DEFAULT_LEADER_PREFERENCES, **(preferences or {})}
        return SYSTEM_PROMPT.format(
            tone=prefs["tone"],
            approach=prefs["approach"],
            priorities=", ".join(prefs.get("priorities") or []),
        )

    @staticmethod
    def _format_change(change: ChangeContext) -> str:
        return (
            f"- Field: {change.field}\n"
            f"  Change Type: {change.change_type}\n"
            f"  From: {json.dumps(change.old_value, ensure_ascii=False, default=str)}\n"
            f"  To: {json.dumps(change.new_value, ensure_ascii=False, default=str)}\n"
            f"  Detected: {change.detected_at.date().isoformat()}\n"
            f"  Preliminary Score: {change.preliminary_score}/10"
        )

    def build_prompt(self, request: AnalysisRequest) -> str:
        person = request.person
        last_contact = person.last_contact.date().isoformat() if person.last_contact else "Unknown"
        lines = [
            "Analyze the following changes in a church member's profile and provide pastoral care recommendations.",
            "",
            "PERSON CONTEXT:",
            f"- Name: {person.name}",
            f"- Age: {person.age if person.age is not None else 'Unknown'}",
            f"- Marital Status: {person.marital_status or 'Unknown'}",
            f"- Last Contact: {last_contact}",
            f"- Engagement Level: {person.engagement_level}",
            "",
            "DETECTED CHANGES:",
        ]
        lines.extend(self._format_change(c) for c in request.changes)

        if request.history:
            lines.append("")
            lines.append("RECENT HISTORY (already handled):")
            lines.extend(self._format_change(c) for c in request.history)

        lines.extend([
            "",
            "CHURCH CONTEXT:",
            f"- Organization: {request.organization_name or 'Unknown'}",
            "",
            "Please provide your analysis in the following JSON format:",
            RESPONSE_FORMAT,
        ])
        return "\n".join(lines)
