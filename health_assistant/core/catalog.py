"""Static catalog of generation backends and their selectable models."""

from typing import Dict, List

from health_assistant.core.models import ModelInfo, ProviderType


OPENAI_MODELS: List[ModelInfo] = [
    ModelInfo(
        id="gpt-4o",
        name="GPT-4o",
        description="Most capable model, best for complex health queries",
        context_window=128000,
        max_output_tokens=4096,
        cost_per_1k_tokens=0.005,
        is_default=True
    ),
    ModelInfo(
        id="gpt-4o-mini",
        name="GPT-4o Mini",
        description="Fast and affordable, good for most queries",
        context_window=128000,
        max_output_tokens=16384,
        cost_per_1k_tokens=0.00015
    ),
    ModelInfo(
        id="gpt-3.5-turbo",
        name="GPT-3.5 Turbo",
        description="Legacy model, fastest response times",
        context_window=16385,
        max_output_tokens=4096,
        cost_per_1k_tokens=0.0005
    ),
]

GEMINI_MODELS: List[ModelInfo] = [
    ModelInfo(
        id="gemini-2.5-flash",
        name="Gemini 2.5 Flash",
        description="Fast and efficient, latest generation",
        context_window=1000000,
        max_output_tokens=8192,
        cost_per_1k_tokens=0.0001,
        is_default=True
    ),
    ModelInfo(
        id="gemini-2.0-flash",
        name="Gemini 2.0 Flash",
        description="Previous generation flash model",
        context_window=1000000,
        max_output_tokens=8192,
        cost_per_1k_tokens=0.0001
    ),
    ModelInfo(
        id="gemini-1.5-pro",
        name="Gemini 1.5 Pro",
        description="Most capable Gemini model",
        context_window=1000000,
        max_output_tokens=8192,
        cost_per_1k_tokens=0.00125
    ),
]

LOCAL_MODELS: List[ModelInfo] = [
    ModelInfo(
        id="llama-3-8b-health",
        name="Llama 3 8B (Health)",
        description="Local model fine-tuned for health queries",
        context_window=8192,
        max_output_tokens=2048,
        is_default=True
    ),
    ModelInfo(
        id="phi-3-mini",
        name="Phi-3 Mini",
        description="Small but capable local model",
        context_window=4096,
        max_output_tokens=1024
    ),
]

MODELS_BY_PROVIDER: Dict[ProviderType, List[ModelInfo]] = {
    ProviderType.OPENAI: OPENAI_MODELS,
    ProviderType.GEMINI: GEMINI_MODELS,
    ProviderType.LOCAL: LOCAL_MODELS,
}


def get_models(provider: ProviderType) -> List[ModelInfo]:
    """Models registered for a backend (returns a copy of the list)."""
    return list(MODELS_BY_PROVIDER[provider])


def default_model(provider: ProviderType) -> ModelInfo:
    for model in MODELS_BY_PROVIDER[provider]:
        if model.is_default:
            return model
    return MODELS_BY_PROVIDER[provider][0]


def find_model(provider: ProviderType, model_id: str) -> ModelInfo:
    """
    Look up a model by id.

    Raises:
        KeyError: If the backend has no model with that id
    """
    for model in MODELS_BY_PROVIDER[provider]:
        if model.id == model_id:
            return model
    raise KeyError(f"Unknown model {model_id!r} for provider {provider.value}")
