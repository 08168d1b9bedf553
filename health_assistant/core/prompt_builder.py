"""Assembles the system prompt from the user's health data."""

import json
import logging
from pathlib import Path
from typing import List, Optional

from health_assistant.core.models import (
    BiometricSnapshot,
    HealthProfile,
    LLMContext,
    PlanStatus,
    SystemPromptTemplate
)

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n[Context truncated]"


DEFAULT_SYSTEM_PROMPT_TEMPLATE = SystemPromptTemplate(
    id="default",
    name="Health Assistant",
    base_prompt=(
        "You are a knowledgeable health and wellness assistant. Your role is to "
        "provide personalized guidance on diet, exercise, supplementation, and "
        "lifestyle based on the user's health profile."
    ),
    safety_boundaries="""## Important Boundaries
- You are NOT a medical professional. Always recommend consulting healthcare providers for medical decisions.
- Do not diagnose conditions or prescribe medications.
- If the user mentions emergency symptoms (chest pain, difficulty breathing, severe bleeding, suicidal thoughts), immediately recommend they seek emergency medical care.
- Be cautious with supplement recommendations that may interact with the user's medications.
- Provide evidence-based information when possible.""",
    response_guidelines="""## Response Guidelines
- Be conversational but professional.
- Personalize responses based on the user's profile.
- When recommending exercises, consider the user's mobility level and conditions.
- When discussing diet, respect dietary restrictions and allergies.
- Provide actionable, specific advice rather than generic suggestions.
- Use metric units by default, but can convert if asked.
- Keep responses concise but thorough.""",
)


def load_prompt_template(path: str) -> SystemPromptTemplate:
    """
    Load template wording from a JSON file.

    Args:
        path: JSON file with the SystemPromptTemplate fields

    Returns:
        Parsed template

    Raises:
        ValueError: If the file cannot be read or does not match the schema
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return SystemPromptTemplate.model_validate(data)
    except Exception as e:
        logger.error(f"Failed to load prompt template from {path}: {e}")
        raise ValueError(f"Invalid prompt template file {path}: {e}") from e


def build_context(
    health_profile: Optional[HealthProfile],
    recent_biometrics: Optional[List[BiometricSnapshot]],
    plans: Optional[PlanStatus],
    template: Optional[SystemPromptTemplate] = None,
    max_chars: Optional[int] = None
) -> str:
    """
    Build the system prompt for one turn.

    Section order is fixed: base instructions, health profile, recent health
    data, plan status, safety boundaries, response guidelines. Sections with
    no data are left out entirely.

    Args:
        health_profile: User profile, if any
        recent_biometrics: Daily samples, oldest first
        plans: Plan presence flags, if known
        template: Prompt wording (defaults to DEFAULT_SYSTEM_PROMPT_TEMPLATE)
        max_chars: Optional upper bound on the returned length

    Returns:
        Assembled system prompt
    """
    template = template or DEFAULT_SYSTEM_PROMPT_TEMPLATE

    sections = [template.base_prompt]

    if health_profile is not None:
        profile_section = _build_health_profile_section(health_profile)
        if profile_section:
            sections.append(profile_section)

    if recent_biometrics:
        sections.append(_build_biometrics_section(recent_biometrics))

    if plans is not None:
        sections.append(_build_plans_section(plans))

    body = "\n\n".join(sections)
    tail = "\n\n".join([template.safety_boundaries, template.response_guidelines])

    if max_chars is not None:
        budget = max_chars - len(tail) - 2
        if len(body) > budget:
            # Trailing data sections go first; safety text is never cut
            keep = max(0, budget - len(TRUNCATION_MARKER))
            body = body[:keep].rstrip() + TRUNCATION_MARKER
            logger.debug(f"System prompt truncated to {max_chars} characters")

    return body + "\n\n" + tail


def build_system_prompt(context: LLMContext) -> str:
    """Build the system prompt for a provider call."""
    return build_context(
        context.health_profile,
        context.recent_biometrics,
        context.plans,
        template=context.template,
        max_chars=context.max_context_chars
    )


def _build_health_profile_section(profile: HealthProfile) -> str:
    parts: List[str] = []

    metrics = profile.baseline_metrics
    if metrics is not None:
        lines = []
        if metrics.age:
            lines.append(f"- Age: {metrics.age} years")
        if metrics.sex:
            lines.append(f"- Sex: {metrics.sex}")
        if metrics.height_cm:
            lines.append(f"- Height: {_format_number(metrics.height_cm)} cm")
        if metrics.weight_kg:
            lines.append(f"- Weight: {_format_number(metrics.weight_kg)} kg")
        if lines:
            parts.append("### Basic Information:\n" + "\n".join(lines))

    if profile.conditions:
        lines = []
        for condition in profile.conditions:
            line = f"- {condition.name} ({condition.severity} severity)"
            if condition.notes:
                line += f": {condition.notes}"
            if condition.is_managed:
                line += " [managed]"
            lines.append(line)
        parts.append("### Health Conditions:\n" + "\n".join(lines))

    if profile.medications:
        lines = []
        for med in profile.medications:
            line = f"- {med.name} {med.dosage} - {med.frequency}"
            if med.purpose:
                line += f" (for {med.purpose})"
            lines.append(line)
        parts.append("### Current Medications:\n" + "\n".join(lines))

    if profile.allergies:
        lines = []
        for allergy in profile.allergies:
            line = f"- {allergy.allergen} ({allergy.type}, {allergy.severity})"
            if allergy.reactions:
                line += f" - reactions: {', '.join(allergy.reactions)}"
            lines.append(line)
        parts.append("### Allergies:\n" + "\n".join(lines))

    active_goals = [goal for goal in profile.goals if goal.is_active]
    if active_goals:
        lines = []
        for goal in active_goals:
            line = f"- {goal.title} ({goal.priority} priority)"
            if goal.description:
                line += f": {goal.description}"
            lines.append(line)
        parts.append("### Health Goals:\n" + "\n".join(lines))

    prefs = profile.preferences
    if prefs is not None:
        lines = []
        if prefs.dietary_restrictions:
            lines.append(f"- Dietary restrictions: {', '.join(prefs.dietary_restrictions)}")
        if prefs.fitness_level:
            lines.append(f"- Fitness level: {prefs.fitness_level}")
        if prefs.mobility_level:
            lines.append(f"- Mobility level: {prefs.mobility_level}")
        if prefs.avoided_foods:
            lines.append(f"- Foods to avoid: {', '.join(prefs.avoided_foods)}")
        if lines:
            parts.append("### Preferences:\n" + "\n".join(lines))

    if not parts:
        return ""
    return "## User Health Profile\n" + "\n\n".join(parts)


def _build_biometrics_section(snapshots: List[BiometricSnapshot]) -> str:
    count = len(snapshots)

    avg_steps = round(sum(s.steps for s in snapshots) / count)
    avg_sleep = sum(s.sleep_hours for s in snapshots) / count

    heart_rates = [s.resting_heart_rate for s in snapshots if s.resting_heart_rate]
    hrv_values = [s.hrv for s in snapshots if s.hrv]
    total_exercise = sum(s.exercise_minutes for s in snapshots)

    lines = [
        f"## Recent Health Data (Last {count} Days)",
        f"- Average daily steps: {avg_steps:,}",
        f"- Average sleep: {avg_sleep:.1f} hours",
    ]
    if heart_rates:
        lines.append(f"- Average resting heart rate: {round(sum(heart_rates) / len(heart_rates))} bpm")
    if hrv_values:
        lines.append(f"- Average HRV: {round(sum(hrv_values) / len(hrv_values))} ms")
    lines.append(f"- Total exercise time: {total_exercise} minutes")

    trend = steps_trend(snapshots)
    if trend is not None:
        lines.append("")
        lines.append("### Recent Trends:")
        lines.append(f"- Activity trend: {trend}")

    return "\n".join(lines)


def steps_trend(snapshots: List[BiometricSnapshot]) -> Optional[str]:
    """Compare first and last of the last three samples; None below three."""
    if len(snapshots) < 3:
        return None
    first, _, last = [s.steps for s in snapshots[-3:]]
    if last > first:
        return "increasing"
    if last < first:
        return "decreasing"
    return "stable"


def _build_plans_section(plans: PlanStatus) -> str:
    lines = [
        "## Current Plans Status:",
        f"- Diet Plan: {'Active' if plans.has_diet_plan else 'Not set up'}",
        f"- Exercise Plan: {'Active' if plans.has_exercise_plan else 'Not set up'}",
        f"- Supplement Plan: {'Active' if plans.has_supplement_plan else 'Not set up'}",
    ]
    if not (plans.has_diet_plan and plans.has_exercise_plan and plans.has_supplement_plan):
        lines.append("")
        lines.append(
            "Note: The user may benefit from setting up missing plans. "
            "You can suggest they create them in the Plans section."
        )
    return "\n".join(lines)


def _format_number(value: float) -> str:
    return f"{value:g}"
