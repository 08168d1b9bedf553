"""API request/response schemas."""

from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from health_assistant.core.models import (
    BiometricSnapshot,
    Conversation,
    HealthCheckResult,
    HealthProfile,
    Message,
    PlanStatus,
    ProviderConfig,
    ProviderInfo,
    ProviderType
)


class CreateConversationRequest(BaseModel):
    """Start a new conversation for a user."""

    user_id: str = Field(..., min_length=1)
    title: Optional[str] = Field(default=None, max_length=200)


class ConversationListResponse(BaseModel):
    conversations: List[Conversation]
    total: int


class MessageListResponse(BaseModel):
    messages: List[Message]
    total: int


class SendMessageRequest(BaseModel):
    """
    One user turn.

    With ``stream`` the reply is sent as server-sent events, otherwise as a
    single JSON body once the turn resolves.
    """

    user_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1, max_length=20000)
    stream: bool = True


class ProviderConfigUpdate(BaseModel):
    """Partial backend config; only the fields sent are changed."""

    model: Optional[str] = None
    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    local_model_path: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    frequency_penalty: Optional[float] = Field(default=None, ge=-2.0, le=2.0)
    presence_penalty: Optional[float] = Field(default=None, ge=-2.0, le=2.0)


class ProviderConfigResponse(BaseModel):
    """Backend config with the credential replaced by a presence flag."""

    provider: ProviderType
    model: str
    has_api_key: bool
    endpoint: Optional[str] = None
    local_model_path: Optional[str] = None
    temperature: float
    max_tokens: int
    top_p: Optional[float] = None

    @classmethod
    def from_config(cls, config: ProviderConfig) -> "ProviderConfigResponse":
        return cls(
            provider=config.provider,
            model=config.model,
            has_api_key=bool(config.api_key),
            endpoint=config.endpoint,
            local_model_path=config.local_model_path,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            top_p=config.top_p
        )


class ProviderListResponse(BaseModel):
    providers: List[ProviderInfo]
    provider_order: List[ProviderType]


class ProviderStatusResponse(BaseModel):
    provider_order: List[ProviderType]
    last_successful_provider: Optional[ProviderType] = None
    chain: List[HealthCheckResult]


class FallbackOrderRequest(BaseModel):
    order: List[ProviderType] = Field(..., min_length=1)


class HealthContextRequest(BaseModel):
    """Health data to seed for a user; omitted parts stay unchanged."""

    profile: Optional[HealthProfile] = None
    biometrics: Optional[List[BiometricSnapshot]] = None
    plans: Optional[PlanStatus] = None


class TurnResponse(BaseModel):
    conversation_id: UUID
    state: str
    content: str
    is_emergency: bool
    user_message: Optional[Message] = None
    assistant_message: Optional[Message] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
