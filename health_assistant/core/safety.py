"""Input sanitization and emergency detection for user messages.

The sanitizer is a best-effort filter against prompt-override markers, not a
security boundary. The emergency classifier decides whether a turn must be
answered with crisis resources instead of a generated response.
"""

import re
from typing import Optional

from health_assistant.core.models import (
    EmergencyKind,
    EmergencyResult,
    SafetyAction,
    SafetyFlag,
    SafetyFlagType
)

MAX_INPUT_LENGTH = 4000
ELLIPSIS = "..."

_OVERRIDE_PATTERNS = [
    re.compile(r"system:", re.IGNORECASE),
    re.compile(r"\[system\]", re.IGNORECASE),
    re.compile(r"###.*instruction", re.IGNORECASE),
]

# Checked first; wins over medical keywords
MENTAL_HEALTH_KEYWORDS = [
    "suicide",
    "kill myself",
    "end my life",
    "want to die",
    "self harm",
    "hurt myself",
    "cutting myself",
]

MEDICAL_EMERGENCY_KEYWORDS = [
    "heart attack",
    "can't breathe",
    "difficulty breathing",
    "chest pain",
    "stroke",
    "severe bleeding",
    "unconscious",
    "seizure",
    "overdose",
    "anaphylaxis",
    "choking",
]


def sanitize_user_input(raw: str) -> str:
    """
    Strip prompt-override markers, cap the length and trim whitespace.

    Markers are removed until none remain, so the result is stable under a
    second pass.

    Args:
        raw: Raw user text

    Returns:
        Sanitized text
    """
    sanitized = raw
    while True:
        stripped = sanitized
        for pattern in _OVERRIDE_PATTERNS:
            stripped = pattern.sub("", stripped)
        if stripped == sanitized:
            break
        sanitized = stripped

    if len(sanitized) > MAX_INPUT_LENGTH:
        sanitized = sanitized[:MAX_INPUT_LENGTH] + ELLIPSIS

    return sanitized.strip()


def detect_emergency(text: str) -> EmergencyResult:
    """
    Classify text against the emergency keyword sets.

    Args:
        text: User text (sanitized or raw)

    Returns:
        Emergency verdict with the matched keywords of the winning family
    """
    lowered = text.lower().replace("’", "'")

    found_mental = [k for k in MENTAL_HEALTH_KEYWORDS if k in lowered]
    if found_mental:
        return EmergencyResult(
            is_emergency=True,
            kind=EmergencyKind.MENTAL_HEALTH,
            matched_keywords=found_mental
        )

    found_medical = [k for k in MEDICAL_EMERGENCY_KEYWORDS if k in lowered]
    if found_medical:
        return EmergencyResult(
            is_emergency=True,
            kind=EmergencyKind.MEDICAL,
            matched_keywords=found_medical
        )

    return EmergencyResult(is_emergency=False)


def emergency_safety_flag(result: EmergencyResult) -> SafetyFlag:
    """Flag attached to the user message that triggered an emergency."""
    flag_type = (
        SafetyFlagType.SELF_HARM
        if result.kind == EmergencyKind.MENTAL_HEALTH
        else SafetyFlagType.EMERGENCY
    )
    return SafetyFlag(
        type=flag_type,
        description=f"Emergency keywords detected: {', '.join(result.matched_keywords)}",
        triggered=True,
        action=SafetyAction.WARN
    )


_CRISIS_LINES = {
    "US": [
        "📞 **988 Suicide & Crisis Lifeline**: call or text 988 (US)",
        "📞 **Crisis Text Line**: Text HOME to 741741",
    ],
    "UK": [
        "📞 **Samaritans**: 116 123 (UK & Ireland)",
        "📞 **Shout**: Text SHOUT to 85258",
    ],
    "EU": [
        "📞 **European emotional support line**: 116 123",
    ],
}

_EMERGENCY_NUMBERS = {
    "US": "📞 **US**: 911",
    "UK": "📞 **UK**: 999",
    "EU": "📞 **EU**: 112",
}

_IASP_LINE = (
    "📞 **International Association for Suicide Prevention**: "
    "https://www.iasp.info/resources/Crisis_Centres/"
)


def get_emergency_response(kind: Optional[EmergencyKind], region: str = "US") -> str:
    """
    Fixed crisis-resource reply used instead of a generated response.

    Args:
        kind: Emergency family, or None when unknown
        region: Region code used to order hotline references (US, UK, EU)

    Returns:
        Markdown text with hotline references
    """
    region = region.upper()

    if kind == EmergencyKind.MENTAL_HEALTH:
        lines = list(_CRISIS_LINES.get(region, []))
        if region not in _CRISIS_LINES:
            lines.extend(_CRISIS_LINES["US"])
        lines.append(_IASP_LINE)
        hotlines = "\n".join(lines)
        return (
            "⚠️ **I'm concerned about what you've shared.**\n\n"
            "If you're having thoughts of suicide or self-harm, please reach out for help:\n\n"
            f"{hotlines}\n\n"
            "You don't have to face this alone. These services are free, confidential, "
            "and available 24/7.\n\n"
            "I'm an AI and cannot provide crisis support, but trained counselors are "
            "ready to help you right now."
        )

    if kind == EmergencyKind.MEDICAL:
        numbers = [_EMERGENCY_NUMBERS[region]] if region in _EMERGENCY_NUMBERS else []
        numbers.extend(v for k, v in _EMERGENCY_NUMBERS.items() if k != region)
        return (
            "⚠️ **This sounds like a medical emergency.**\n\n"
            "**Please call emergency services immediately:**\n"
            + "\n".join(numbers)
            + "\n\nIf someone is with you, ask them to help while you wait for "
            "emergency services.\n\n"
            "I'm an AI assistant and cannot provide emergency medical care. "
            "Please seek immediate professional help."
        )

    return (
        "⚠️ If this is an emergency, please call your local emergency services "
        "immediately.\n\n"
        "I'm an AI assistant and cannot provide emergency assistance."
    )
