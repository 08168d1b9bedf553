"""Pydantic domain models for the Health Assistant engine."""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderType(str, Enum):
    """Generation backends known to the engine."""

    OPENAI = "openai"  # Cloud A
    GEMINI = "gemini"  # Cloud B
    LOCAL = "local"  # On-device / rule-based


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class SafetyFlagType(str, Enum):
    EMERGENCY = "emergency"
    MEDICAL_ADVICE = "medical_advice"
    SELF_HARM = "self_harm"
    DANGEROUS_RECOMMENDATION = "dangerous_recommendation"


class SafetyAction(str, Enum):
    BLOCK = "block"
    WARN = "warn"
    LOG = "log"


class ChunkType(str, Enum):
    CONTENT = "content"
    DONE = "done"
    ERROR = "error"


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


class EmergencyKind(str, Enum):
    MEDICAL = "medical"
    MENTAL_HEALTH = "mental_health"


# ---------------------------------------------------------------------------
# Provider configuration
# ---------------------------------------------------------------------------


class ModelInfo(BaseModel):
    """Static description of one selectable model."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    context_window: int = Field(..., gt=0)
    max_output_tokens: int = Field(..., gt=0)
    cost_per_1k_tokens: Optional[float] = None  # Cloud providers only
    is_default: bool = False


class ProviderConfig(BaseModel):
    """Live configuration held by one provider adapter."""

    provider: ProviderType
    model: str
    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    local_model_path: Optional[str] = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, ge=1)
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    frequency_penalty: Optional[float] = Field(default=None, ge=-2.0, le=2.0)
    presence_penalty: Optional[float] = Field(default=None, ge=-2.0, le=2.0)

    def merged(self, updates: Dict[str, Any]) -> "ProviderConfig":
        """Return a new validated config with ``updates`` applied on top."""
        data = self.model_dump()
        data.update(updates)
        # The backend identity of a config never changes through a merge
        data["provider"] = self.provider
        return ProviderConfig.model_validate(data)


class ProviderInfo(BaseModel):
    """Backend metadata shown to settings screens."""

    type: ProviderType
    name: str
    description: str
    models: List[ModelInfo]
    is_configured: bool
    requires_api_key: bool
    supports_streaming: bool
    supports_offline: bool


class HealthCheckResult(BaseModel):
    provider: ProviderType
    available: bool
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    model_loaded: Optional[bool] = None


# ---------------------------------------------------------------------------
# Health context
# ---------------------------------------------------------------------------


class BaselineMetrics(BaseModel):
    age: Optional[int] = Field(default=None, ge=0)
    sex: Optional[Literal["male", "female", "other"]] = None
    height_cm: Optional[float] = Field(default=None, gt=0)
    weight_kg: Optional[float] = Field(default=None, gt=0)


class HealthCondition(BaseModel):
    name: str
    category: str = "other"
    severity: Literal["mild", "moderate", "severe", "critical"] = "mild"
    notes: Optional[str] = None
    is_managed: bool = False


class Medication(BaseModel):
    name: str
    dosage: str
    frequency: str
    purpose: Optional[str] = None


class Allergy(BaseModel):
    allergen: str
    type: Literal["food", "drug", "environmental", "other"] = "other"
    severity: Literal["mild", "moderate", "severe", "anaphylactic"] = "mild"
    reactions: List[str] = Field(default_factory=list)


class HealthGoal(BaseModel):
    title: str
    category: str = "other"
    description: Optional[str] = None
    priority: Literal["low", "medium", "high"] = "medium"
    is_active: bool = True


class HealthPreferences(BaseModel):
    dietary_restrictions: List[str] = Field(default_factory=list)
    fitness_level: Optional[str] = None
    mobility_level: Optional[str] = None
    avoided_foods: List[str] = Field(default_factory=list)


class HealthProfile(BaseModel):
    """User health profile as supplied by the persistence collaborator."""

    user_id: str
    baseline_metrics: Optional[BaselineMetrics] = None
    conditions: List[HealthCondition] = Field(default_factory=list)
    medications: List[Medication] = Field(default_factory=list)
    allergies: List[Allergy] = Field(default_factory=list)
    goals: List[HealthGoal] = Field(default_factory=list)
    preferences: Optional[HealthPreferences] = None


class BiometricSnapshot(BaseModel):
    """Daily aggregate from the biometric data source."""

    date: date
    steps: int = Field(default=0, ge=0)
    sleep_hours: float = Field(default=0.0, ge=0.0)
    resting_heart_rate: Optional[float] = Field(default=None, gt=0)
    hrv: Optional[float] = Field(default=None, gt=0)
    exercise_minutes: int = Field(default=0, ge=0)


class PlanStatus(BaseModel):
    has_diet_plan: bool = False
    has_exercise_plan: bool = False
    has_supplement_plan: bool = False


class SystemPromptTemplate(BaseModel):
    """Fixed prompt wording wrapped around the assembled health context."""

    id: str = "default"
    name: str = "Health Assistant"
    base_prompt: str
    safety_boundaries: str
    response_guidelines: str


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


class SafetyFlag(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: SafetyFlagType
    description: str
    triggered: bool
    action: SafetyAction


class ContextSnapshot(BaseModel):
    """Health facts active when a message was sent (audit only)."""

    model_config = ConfigDict(frozen=True)

    recent_steps: Optional[int] = None
    recent_sleep: Optional[float] = None
    active_conditions: List[str] = Field(default_factory=list)


class Conversation(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    user_id: str
    title: str = "New Conversation"
    created_at: datetime = Field(default_factory=utcnow)
    last_message_at: datetime = Field(default_factory=utcnow)
    message_count: int = Field(default=0, ge=0)
    provider_used: ProviderType
    model_used: str
    tags: List[str] = Field(default_factory=list)
    is_archived: bool = False


class Message(BaseModel):
    """A committed conversation message. Immutable once built."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    conversation_id: UUID
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    context_snapshot: Optional[ContextSnapshot] = None
    safety_flags: List[SafetyFlag] = Field(default_factory=list)
    tokens_used: Optional[int] = None
    latency_ms: Optional[float] = None
    provider_used: Optional[ProviderType] = None
    model_used: Optional[str] = None


class LLMContext(BaseModel):
    """Everything a provider needs besides the user prompt. Built per turn."""

    health_profile: Optional[HealthProfile] = None
    recent_biometrics: List[BiometricSnapshot] = Field(default_factory=list)
    plans: Optional[PlanStatus] = None
    conversation_history: List[Message] = Field(default_factory=list)
    max_history_messages: int = Field(default=10, ge=0)
    template: Optional[SystemPromptTemplate] = None
    max_context_chars: Optional[int] = None

    def recent_history(self) -> List[Message]:
        """Last ``max_history_messages`` user/assistant messages."""
        if self.max_history_messages == 0:
            return []
        dialogue = [
            m for m in self.conversation_history
            if m.role in (MessageRole.USER, MessageRole.ASSISTANT)
        ]
        return dialogue[-self.max_history_messages:]


# ---------------------------------------------------------------------------
# Streaming & safety results
# ---------------------------------------------------------------------------


class StreamChunk(BaseModel):
    """One element of an incremental generation response."""

    model_config = ConfigDict(frozen=True)

    type: ChunkType
    content: Optional[str] = None
    finish_reason: Optional[FinishReason] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: Optional[bool] = None
    provider: Optional[ProviderType] = None
    model: Optional[str] = None

    @classmethod
    def delta(cls, content: str) -> "StreamChunk":
        return cls(type=ChunkType.CONTENT, content=content)

    @classmethod
    def done(cls, finish_reason: FinishReason = FinishReason.STOP) -> "StreamChunk":
        return cls(type=ChunkType.DONE, finish_reason=finish_reason)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: Optional[str] = None,
        retryable: Optional[bool] = None
    ) -> "StreamChunk":
        return cls(
            type=ChunkType.ERROR,
            error=error,
            error_code=error_code,
            retryable=retryable,
            finish_reason=FinishReason.ERROR
        )


class EmergencyResult(BaseModel):
    is_emergency: bool
    kind: Optional[EmergencyKind] = None
    matched_keywords: List[str] = Field(default_factory=list)
