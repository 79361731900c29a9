"""Tests for record models, initiative lifecycle, templates and log helpers."""

import pytest
from datetime import datetime, timezone

from pastoral.common.errors import ValidationError
from pastoral.common.schemas import (
    ChangeKind,
    ChangeType,
    Initiative,
    InitiativeStatus,
    InitiativeType,
    Person,
    PersonChange,
    canonical_field,
    render_description,
    render_suggested_message,
    render_title,
    summarize_errors,
)

DETECTED = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


def _initiative(status=InitiativeStatus.PENDING):
    return Initiative(
        organization_id="org-1",
        leader_id="leader-1",
        person_id="per_1",
        type=InitiativeType.CALL,
        title="Ligar para Maria",
        priority=8,
        status=status,
    )


def _change(**fields):
    fields.setdefault("person_id", "per_1")
    fields.setdefault("organization_id", "org-1")
    fields.setdefault("change_type", ChangeType.RELATIONSHIP)
    fields.setdefault("urgency_score", 7)
    fields.setdefault("detected_at", DETECTED)
    return PersonChange(**fields)


class TestInitiativeLifecycle:
    @pytest.mark.parametrize("start,target", [
        (InitiativeStatus.PENDING, InitiativeStatus.IN_PROGRESS),
        (InitiativeStatus.PENDING, InitiativeStatus.COMPLETED),
        (InitiativeStatus.PENDING, InitiativeStatus.CANCELLED),
        (InitiativeStatus.IN_PROGRESS, InitiativeStatus.COMPLETED),
        (InitiativeStatus.IN_PROGRESS, InitiativeStatus.CANCELLED),
    ])
    def test_allowed_transitions(self, start, target):
        moved = _initiative(start).transition_to(target, now=DETECTED)
        assert moved.status == target
        assert moved.updated_at == DETECTED

    @pytest.mark.parametrize("start,target", [
        (InitiativeStatus.IN_PROGRESS, InitiativeStatus.PENDING),
        (InitiativeStatus.COMPLETED, InitiativeStatus.PENDING),
        (InitiativeStatus.COMPLETED, InitiativeStatus.CANCELLED),
        (InitiativeStatus.CANCELLED, InitiativeStatus.IN_PROGRESS),
    ])
    def test_illegal_transitions_raise(self, start, target):
        initiative = _initiative(start)
        assert not initiative.can_transition_to(target)
        with pytest.raises(ValidationError):
            initiative.transition_to(target)

    def test_completion_sets_completed_at(self):
        completed = _initiative().transition_to(InitiativeStatus.COMPLETED, now=DETECTED)
        assert completed.completed_at == DETECTED
        assert not completed.is_open

    def test_priority_bounds(self):
        with pytest.raises(ValueError):
            Initiative(
                organization_id="org-1", leader_id="l", person_id="p",
                type=InitiativeType.CALL, title="t", priority=11,
            )


class TestRecords:
    def test_change_score_bounds(self):
        with pytest.raises(ValueError):
            _change(urgency_score=0)
        with pytest.raises(ValueError):
            _change(enhanced_score=11)

    def test_effective_score(self):
        assert _change().effective_score == 7
        assert _change(enhanced_score=3).effective_score == 3

    def test_llm_analysis_only_from_successful_enrichment(self):
        assert _change().llm_analysis is None
        assert _change(ai_analysis={"error": "x", "fallbackScore": 7}).llm_analysis is None
        analysis = {"overallUrgency": 8}
        assert _change(ai_analysis={"llmAnalysis": analysis}).llm_analysis == analysis

    def test_person_snapshot_round_trip(self):
        person = Person(organization_id="org-1", inchurch_member_id="m-1", name="Maria Silva", leader_id="l")
        change = _change(change_kind=ChangeKind.DELETION, old_value=person.snapshot())
        assert change.person_snapshot() == person

    def test_person_snapshot_requires_deletion(self):
        assert _change(old_value={"name": "x"}).person_snapshot() is None
        assert _change(change_kind=ChangeKind.DELETION, old_value={"bad": 1}).person_snapshot() is None

    def test_first_name(self):
        assert Person(organization_id="o", name="Maria da Silva").first_name == "Maria"

    @pytest.mark.parametrize("name,expected", [
        ("maritalStatus", "marital_status"),
        ("birthDate", "birth_date"),
        ("marital_status", "marital_status"),
        ("groupId", "groupId"),
    ])
    def test_canonical_field(self, name, expected):
        assert canonical_field(name) == expected


class TestTemplates:
    def _person(self):
        return Person(organization_id="org-1", name="Maria Silva")

    def test_title(self):
        change = _change()
        assert render_title(self._person(), change, InitiativeType.CALL) == (
            "Ligar para Maria Silva - mudança de relacionamento"
        )

    def test_description_with_values_and_analysis(self):
        change = _change(old_value={"maritalStatus": "single"}, new_value={"maritalStatus": "married"})
        description = render_description(
            self._person(), change, {"contextualAnalysis": "Casou-se.", "pastoralNotes": ""},
        )
        assert description.splitlines() == [
            "Mudança detectada em Maria Silva:",
            '• De: {"maritalStatus": "single"}',
            '• Para: {"maritalStatus": "married"}',
            "• Tipo: relationship",
            "• Detectado em: 10/03/2025",
            "",
            "📋 Análise:",
            "Casou-se.",
        ]

    def test_description_without_values(self):
        description = render_description(self._person(), _change(change_type=ChangeType.ENGAGEMENT))
        assert "• De:" not in description
        assert description.endswith("• Detectado em: 10/03/2025")

    @pytest.mark.parametrize("change_type,initiative_type,expected", [
        (ChangeType.RELATIONSHIP, InitiativeType.MESSAGE, "Oi Maria! Vi que houve uma atualização"),
        (ChangeType.LIFE_EVENT, InitiativeType.CALL, "Ligação para Maria Silva sobre evento importante na vida"),
        (ChangeType.SPECIAL_DATE, InitiativeType.MESSAGE, "Feliz aniversário, Maria!"),
        (ChangeType.ENGAGEMENT, InitiativeType.VISIT, "Visita para Maria Silva - reconectar"),
    ])
    def test_suggested_message(self, change_type, initiative_type, expected):
        message = render_suggested_message(self._person(), _change(change_type=change_type), initiative_type)
        assert message.startswith(expected)
        assert "{" not in message


class TestSummarizeErrors:
    def test_empty(self):
        assert summarize_errors([]) is None

    def test_short_list(self):
        assert summarize_errors(["a", "b"]) == "a; b"

    def test_truncates_after_three(self):
        assert summarize_errors(["a", "b", "c", "d"]) == "a; b; c..."
