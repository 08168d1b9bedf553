"""Tests for system prompt assembly."""

import json
from datetime import date

import pytest

from health_assistant.core.models import (
    Allergy,
    BiometricSnapshot,
    HealthGoal,
    HealthPreferences,
    HealthProfile,
    LLMContext,
    PlanStatus,
    SystemPromptTemplate
)
from health_assistant.core.prompt_builder import (
    DEFAULT_SYSTEM_PROMPT_TEMPLATE,
    TRUNCATION_MARKER,
    build_context,
    build_system_prompt,
    load_prompt_template,
    steps_trend
)

TEMPLATE = DEFAULT_SYSTEM_PROMPT_TEMPLATE


def test_empty_inputs_produce_only_fixed_sections():
    """Empty profile and biometric window give base text plus safety/style only."""
    prompt = build_context(HealthProfile(user_id="u1"), [], None)

    assert prompt == "\n\n".join([
        TEMPLATE.base_prompt,
        TEMPLATE.safety_boundaries,
        TEMPLATE.response_guidelines,
    ])
    assert "## User Health Profile" not in prompt
    assert "## Recent Health Data" not in prompt
    assert "## Current Plans Status" not in prompt


def test_profile_section(sample_profile):
    prompt = build_context(sample_profile, [], None)

    assert "## User Health Profile" in prompt
    assert "- Age: 42 years" in prompt
    assert "- Weight: 64.5 kg" in prompt
    assert "- Hypertension (moderate severity): Diagnosed 2021 [managed]" in prompt
    assert "- Lisinopril 10mg - daily (for blood pressure)" in prompt


def test_zero_conditions_has_no_conditions_heading(sample_profile):
    profile = sample_profile.model_copy(update={"conditions": []})

    prompt = build_context(profile, [], None)

    assert "Health Conditions" not in prompt
    assert "Current Medications" in prompt


def test_allergies_goals_and_preferences():
    profile = HealthProfile(
        user_id="u1",
        allergies=[Allergy(allergen="Peanuts", type="food", severity="anaphylactic", reactions=["hives", "swelling"])],
        goals=[
            HealthGoal(title="Lose 5kg", priority="high", description="By summer"),
            HealthGoal(title="Old goal", is_active=False),
            HealthGoal(title="Sleep more", priority="low"),
        ],
        preferences=HealthPreferences(dietary_restrictions=["vegetarian"], fitness_level="beginner")
    )

    prompt = build_context(profile, [], None)

    assert "- Peanuts (food, anaphylactic) - reactions: hives, swelling" in prompt
    assert "Old goal" not in prompt
    assert prompt.index("Lose 5kg") < prompt.index("Sleep more")
    assert "- Lose 5kg (high priority): By summer" in prompt
    assert "- Dietary restrictions: vegetarian" in prompt
    assert "- Fitness level: beginner" in prompt


def test_biometrics_section(sample_biometrics):
    prompt = build_context(None, sample_biometrics, None)

    assert "## Recent Health Data (Last 4 Days)" in prompt
    assert "- Average daily steps: 7,500" in prompt
    assert "- Average sleep: 7.8 hours" in prompt
    # Only samples 0 and 2 carry a heart rate (60 and 62)
    assert "- Average resting heart rate: 61 bpm" in prompt
    assert "HRV" not in prompt
    assert "- Total exercise time: 120 minutes" in prompt
    assert "- Activity trend: increasing" in prompt


def test_trend_needs_three_samples(sample_biometrics):
    prompt = build_context(None, sample_biometrics[:2], None)

    assert "Recent Trends" not in prompt
    assert steps_trend(sample_biometrics[:2]) is None


@pytest.mark.parametrize("steps,expected", [
    ([1000, 5000, 2000], "increasing"),
    ([3000, 1000, 2000], "decreasing"),
    ([2000, 9000, 2000], "stable"),
])
def test_steps_trend_compares_first_and_last_of_last_three(steps, expected):
    snapshots = [BiometricSnapshot(date=date(2024, 1, i + 1), steps=s) for i, s in enumerate(steps)]

    assert steps_trend(snapshots) == expected


def test_plans_section_with_nudge():
    prompt = build_context(None, [], PlanStatus(has_diet_plan=True, has_exercise_plan=True))

    assert "- Diet Plan: Active" in prompt
    assert "- Supplement Plan: Not set up" in prompt
    assert "may benefit from setting up missing plans" in prompt


def test_plans_section_without_nudge():
    plans = PlanStatus(has_diet_plan=True, has_exercise_plan=True, has_supplement_plan=True)

    prompt = build_context(None, [], plans)

    assert "## Current Plans Status:" in prompt
    assert "missing plans" not in prompt


def test_section_order(sample_profile, sample_biometrics):
    prompt = build_context(sample_profile, sample_biometrics, PlanStatus())

    positions = [
        prompt.index(TEMPLATE.base_prompt),
        prompt.index("## User Health Profile"),
        prompt.index("## Recent Health Data"),
        prompt.index("## Current Plans Status"),
        prompt.index("## Important Boundaries"),
        prompt.index("## Response Guidelines"),
    ]
    assert positions == sorted(positions)


def test_max_chars_keeps_safety_text(sample_profile, sample_biometrics):
    """Truncation cuts the data sections, never the safety boundaries."""
    full = build_context(sample_profile, sample_biometrics, PlanStatus())
    limit = len(full) - 200

    prompt = build_context(sample_profile, sample_biometrics, PlanStatus(), max_chars=limit)

    assert len(prompt) <= limit
    assert TRUNCATION_MARKER.strip() in prompt
    assert prompt.endswith(TEMPLATE.response_guidelines)
    assert TEMPLATE.safety_boundaries in prompt


def test_max_chars_not_reached_leaves_prompt_unchanged(sample_profile):
    full = build_context(sample_profile, [], None)

    assert build_context(sample_profile, [], None, max_chars=len(full) + 10) == full


def test_custom_template():
    template = SystemPromptTemplate(base_prompt="BASE", safety_boundaries="SAFE", response_guidelines="STYLE")

    assert build_context(None, [], None, template=template) == "BASE\n\nSAFE\n\nSTYLE"


def test_build_system_prompt_uses_context(sample_profile):
    context = LLMContext(health_profile=sample_profile, plans=PlanStatus(has_diet_plan=True))

    prompt = build_system_prompt(context)

    assert "Hypertension" in prompt
    assert "- Diet Plan: Active" in prompt


def test_load_prompt_template(tmp_path):
    path = tmp_path / "template.json"
    path.write_text(json.dumps({
        "base_prompt": "Be brief.",
        "safety_boundaries": "No diagnoses.",
        "response_guidelines": "Use bullets."
    }))

    template = load_prompt_template(str(path))

    assert template.base_prompt == "Be brief."
    assert template.id == "default"


def test_load_prompt_template_invalid(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")

    with pytest.raises(ValueError, match="Invalid prompt template"):
        load_prompt_template(str(path))
