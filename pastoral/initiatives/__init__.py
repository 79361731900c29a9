"""
Initiative Generation

Key Components:
- InitiativeGenerator: Cap- and duplicate-aware creation of pending initiatives
- select_initiative_type / calculate_due_date: Deterministic outreach policy
"""

from .generator import GeneratedInitiative, GenerationResult, InitiativeGenerator
from .policy import calculate_due_date, select_initiative_type

__all__ = [
    "GeneratedInitiative",
    "GenerationResult",
    "InitiativeGenerator",
    "calculate_due_date",
    "select_initiative_type",
]
