"""Offline backend with a deterministic keyword responder.

No on-device inference runtime is bundled. Until a model is loaded (which is
currently never) every request is answered from fixed topic templates,
personalised with whatever the user profile provides.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from health_assistant.core.catalog import default_model
from health_assistant.core.errors import ErrorCode, ProviderError
from health_assistant.core.models import (
    FinishReason,
    HealthCheckResult,
    HealthProfile,
    LLMContext,
    ProviderConfig,
    ProviderType,
    StreamChunk
)
from health_assistant.core.providers.base import LLMProvider

logger = logging.getLogger(__name__)

EMERGENCY_KEYWORDS = [
    "emergency", "call 911", "heart attack", "stroke", "can't breathe",
    "severe pain", "suicide", "kill myself", "end my life", "overdose",
    "bleeding heavily", "unconscious", "seizure",
]

DIET_KEYWORDS = [
    "diet", "food", "eat", "meal", "nutrition", "calories", "protein",
    "carbs", "fat", "recipe", "breakfast", "lunch", "dinner", "snack",
]

EXERCISE_KEYWORDS = [
    "exercise", "workout", "fitness", "training", "cardio", "strength",
    "run", "walk", "gym", "muscle", "weight", "activity",
]

SUPPLEMENT_KEYWORDS = [
    "supplement", "vitamin", "mineral", "probiotic", "omega", "protein powder",
    "creatine", "magnesium", "zinc", "iron", "d3", "b12",
]

EMERGENCY_REPLY = """⚠️ If you're experiencing an emergency, please call emergency services (911 in the US) immediately.

I'm an AI assistant and cannot provide emergency medical care. If you're having:
- Chest pain or difficulty breathing
- Signs of a stroke
- Severe bleeding
- Thoughts of self-harm

Please seek immediate medical attention."""

DEFAULT_REPLY = """I'm your health assistant. I can help with questions about:

🍽️ **Diet & Nutrition** - Meal planning, dietary restrictions, nutrition goals
🏋️ **Exercise** - Workout recommendations, activity modifications, fitness goals
💊 **Supplements** - Evidence-based recommendations, interaction checking
🌙 **Lifestyle** - Sleep, stress management, daily routines

I'm currently operating in offline mode with limited capabilities. For full AI-powered responses, please configure a cloud provider in Settings.

How can I help you today?"""


def default_local_config(**overrides: Any) -> ProviderConfig:
    data: Dict[str, Any] = {
        "provider": ProviderType.LOCAL,
        "model": default_model(ProviderType.LOCAL).id,
        "temperature": 0.7,
        "max_tokens": 1024,
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    return ProviderConfig.model_validate(data)


def _mentions(text: str, keywords: List[str]) -> bool:
    return any(keyword in text for keyword in keywords)


class LocalProvider(LLMProvider):
    """Rule-based responder used as the last resort of the fallback chain."""

    provider_type = ProviderType.LOCAL
    name = "Local Model"
    description = "On-device responses. Works offline with limited capabilities."
    requires_api_key = False
    supports_streaming = False
    supports_offline = True
    is_last_resort = True

    def __init__(self, config: Optional[ProviderConfig] = None, word_delay: float = 0.05):
        super().__init__(config or default_local_config())
        self.word_delay = word_delay
        self.model_loaded = False

    def set_config(self, updates: Dict[str, Any]) -> None:
        super().set_config(updates)
        if updates.get("local_model_path"):
            # A new model file has to be loaded again
            self.model_loaded = False

    def is_available(self) -> bool:
        return False

    async def health_check(self) -> HealthCheckResult:
        return HealthCheckResult(
            provider=self.provider_type,
            available=False,
            error="Local model runtime is not available on this host",
            model_loaded=self.model_loaded
        )

    async def load_model(self) -> None:
        """
        Load the on-device model named by ``local_model_path``.

        Raises:
            ProviderError: Always, no inference runtime is bundled
        """
        raise ProviderError(
            "Local model loading not implemented. Please use OpenAI or Gemini.",
            ErrorCode.LOCAL_MODEL_NOT_LOADED,
            self.provider_type
        )

    async def unload_model(self) -> None:
        self.model_loaded = False

    async def complete(self, prompt: str, context: LLMContext) -> str:
        return self.rule_based_response(prompt, context.health_profile)

    async def stream_complete(self, prompt: str, context: LLMContext) -> AsyncIterator[StreamChunk]:
        response = await self.complete(prompt, context)

        for word in response.split(" "):
            yield StreamChunk.delta(word + " ")
            if self.word_delay:
                await asyncio.sleep(self.word_delay)

        yield StreamChunk.done(FinishReason.STOP)

    def rule_based_response(self, prompt: str, profile: Optional[HealthProfile]) -> str:
        """Pick a topic template by keyword and personalise it from the profile."""
        text = prompt.lower()

        if _mentions(text, EMERGENCY_KEYWORDS):
            return EMERGENCY_REPLY
        if _mentions(text, DIET_KEYWORDS):
            return self._diet_reply(profile)
        if _mentions(text, EXERCISE_KEYWORDS):
            return self._exercise_reply(profile)
        if _mentions(text, SUPPLEMENT_KEYWORDS):
            return self._supplement_reply(profile)
        return DEFAULT_REPLY

    @staticmethod
    def _diet_reply(profile: Optional[HealthProfile]) -> str:
        response = "Based on your health profile, here are some general dietary guidelines:\n\n"

        if profile is not None and profile.conditions:
            response += "Given your health conditions, you should:\n"
            response += "- Consult with a registered dietitian for personalized advice\n"
            response += "- Focus on whole, unprocessed foods\n"
            response += "- Stay hydrated throughout the day\n"

        restrictions = profile.preferences.dietary_restrictions if profile and profile.preferences else []
        if restrictions:
            response += f"\nRespecting your dietary restrictions ({', '.join(restrictions)}), consider:\n"
            response += "- Planning meals ahead to ensure nutritional completeness\n"
            response += "- Reading labels carefully\n"

        response += (
            "\nℹ️ Note: I'm providing general guidance. For personalized meal plans, "
            "please use the Plans section or consult a healthcare provider."
        )
        return response

    @staticmethod
    def _exercise_reply(profile: Optional[HealthProfile]) -> str:
        fitness_level = "moderate"
        if profile is not None and profile.preferences and profile.preferences.fitness_level:
            fitness_level = profile.preferences.fitness_level

        response = "Here are some exercise considerations for you:\n\n"
        response += f"Based on your fitness level ({fitness_level}):\n"
        response += "- Start with exercises appropriate for your current level\n"
        response += "- Include both cardio and strength training\n"
        response += "- Allow adequate rest between sessions\n"

        if profile is not None and profile.conditions:
            response += "\n⚠️ Given your health conditions, please:\n"
            response += "- Consult your doctor before starting new exercises\n"
            response += "- Listen to your body and stop if you feel pain\n"

        response += "\nCheck the Plans section for a personalized exercise program."
        return response

    @staticmethod
    def _supplement_reply(profile: Optional[HealthProfile]) -> str:
        response = "Regarding supplements:\n\n"
        response += (
            "⚠️ Important: Always consult your healthcare provider before starting any "
            "supplement, especially if you're taking medications.\n\n"
        )

        if profile is not None and profile.medications:
            response += (
                "Since you're taking medications, supplement interactions are a real "
                "concern. Please:\n"
            )
            response += "- Discuss any supplements with your doctor or pharmacist\n"
            response += "- Start with one supplement at a time\n"
            response += "- Monitor for any adverse effects\n"

        response += "\nThe Supplements section in Plans can help identify evidence-based options for your goals."
        return response
