"""Conversation turns: sanitize, screen, build context, stream and commit."""

import logging
import time
from contextlib import aclosing
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Set, Union
from uuid import UUID

from pydantic import BaseModel

from health_assistant.core.fallback_chain import FallbackChain
from health_assistant.core.health_source import HealthDataSource
from health_assistant.core.models import (
    BiometricSnapshot,
    ChunkType,
    ContextSnapshot,
    Conversation,
    FinishReason,
    HealthProfile,
    LLMContext,
    Message,
    MessageRole,
    ProviderType,
    SystemPromptTemplate,
    utcnow
)
from health_assistant.core.safety import (
    detect_emergency,
    emergency_safety_flag,
    get_emergency_response,
    sanitize_user_input
)
from health_assistant.db.conversation_store import ConversationStore

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 50


class ConversationNotFoundError(ValueError):
    """Conversation does not exist or belongs to another user."""


class ConversationBusyError(Exception):
    """A turn is already in flight for this conversation."""


class TurnState(str, Enum):
    RECEIVED = "received"
    SANITIZED = "sanitized"
    EMERGENCY_CHECK = "emergency_check"
    EMERGENCY_RESPONDED = "emergency_responded"
    CONTEXT_BUILT = "context_built"
    STREAMING = "streaming"
    COMMITTED = "committed"
    ABORTED = "aborted"


class TurnEventType(str, Enum):
    DELTA = "delta"
    EMERGENCY = "emergency"
    COMMITTED = "committed"
    ERROR = "error"


class TurnEvent(BaseModel):
    """
    Progress of one turn.

    ``content`` is the running buffer for deltas and the full assistant text
    for emergency/committed events.
    """

    type: TurnEventType
    conversation_id: UUID
    content: str = ""
    delta: Optional[str] = None
    user_message: Optional[Message] = None
    assistant_message: Optional[Message] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    provider: Optional[ProviderType] = None
    model: Optional[str] = None


class TurnResult(BaseModel):
    conversation_id: UUID
    state: TurnState
    content: str = ""
    user_message: Optional[Message] = None
    assistant_message: Optional[Message] = None
    is_emergency: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None


DeltaObserver = Callable[[str], Union[None, Awaitable[None]]]


def derive_title(text: str) -> str:
    if len(text) > TITLE_MAX_LENGTH:
        return text[:TITLE_MAX_LENGTH] + "..."
    return text


def build_context_snapshot(
    profile: Optional[HealthProfile],
    biometrics: List[BiometricSnapshot]
) -> ContextSnapshot:
    latest = biometrics[-1] if biometrics else None
    return ContextSnapshot(
        recent_steps=latest.steps if latest else None,
        recent_sleep=latest.sleep_hours if latest else None,
        active_conditions=[c.name for c in profile.conditions] if profile else []
    )


class ConversationManager:
    """Runs user turns against the fallback chain and persists the outcome."""

    def __init__(
        self,
        store: ConversationStore,
        chain: FallbackChain,
        health_source: HealthDataSource,
        max_history_messages: int = 10,
        biometric_window: int = 7,
        emergency_region: str = "US",
        prompt_template: Optional[SystemPromptTemplate] = None,
        max_context_chars: Optional[int] = None
    ):
        self.store = store
        self.chain = chain
        self.health_source = health_source
        self.max_history_messages = max_history_messages
        self.biometric_window = biometric_window
        self.emergency_region = emergency_region
        self.prompt_template = prompt_template
        self.max_context_chars = max_context_chars
        self._active_turns: Set[UUID] = set()

    async def create_conversation(self, user_id: str, title: Optional[str] = None) -> Conversation:
        """Start an empty conversation labelled with the primary backend."""
        primary = self.chain.provider_order[0]
        model = self.chain.registry.get_provider(primary).config.model
        conversation = Conversation(
            user_id=user_id,
            title=title or "New Conversation",
            provider_used=primary,
            model_used=model
        )
        return await self.store.create_conversation(conversation)

    async def get_conversation(self, conversation_id: UUID) -> Conversation:
        """
        Raises:
            ConversationNotFoundError: If there is no such conversation
        """
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    async def list_conversations(self, user_id: str, include_archived: bool = False) -> List[Conversation]:
        return await self.store.list_conversations(user_id, include_archived=include_archived)

    async def get_messages(self, conversation_id: UUID) -> List[Message]:
        await self.get_conversation(conversation_id)
        return await self.store.get_messages(conversation_id)

    async def archive_conversation(self, conversation_id: UUID) -> None:
        if not await self.store.archive_conversation(conversation_id):
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")

    async def delete_conversation(self, conversation_id: UUID) -> None:
        if conversation_id in self._active_turns:
            raise ConversationBusyError(f"Conversation {conversation_id} has a turn in progress")
        if not await self.store.delete_conversation(conversation_id):
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found")
        logger.info(f"Deleted conversation {conversation_id}")

    async def stream_turn(
        self,
        user_id: str,
        content: str,
        conversation_id: Optional[UUID] = None
    ) -> AsyncIterator[TurnEvent]:
        """
        Run one turn and yield its progress.

        Nothing is stored until the turn resolves: an emergency reply or a
        clean end of stream commits both messages, an error aborts the turn
        and leaves the conversation as it was. Closing the iterator early
        aborts the turn and closes the backend stream.

        Args:
            user_id: Owner of the conversation
            content: Raw user message
            conversation_id: Existing conversation, or None to start one

        Raises:
            ValueError: If the message is empty after sanitization
            ConversationNotFoundError: If the conversation is unknown
            ConversationBusyError: If a turn is already running for it
        """
        # STEP 1: Sanitize before anything touches storage
        sanitized = sanitize_user_input(content)
        if not sanitized:
            raise ValueError("Message content is empty")

        if conversation_id is None:
            conversation = await self.create_conversation(user_id)
        else:
            conversation = await self.get_conversation(conversation_id)
            if conversation.user_id != user_id:
                raise ConversationNotFoundError(f"Conversation {conversation_id} not found")

        # No await between the check and the claim
        if conversation.id in self._active_turns:
            raise ConversationBusyError(f"Conversation {conversation.id} has a turn in progress")
        self._active_turns.add(conversation.id)

        try:
            history = await self.store.get_messages(conversation.id, limit=self.max_history_messages)
            last_timestamp = history[-1].timestamp if history else None

            # STEP 2: Emergency screen; no backend is called on this path
            emergency = detect_emergency(sanitized)
            if emergency.is_emergency:
                logger.warning(
                    f"Emergency detected in conversation {conversation.id}: {emergency.kind.value}"
                )
                reply = get_emergency_response(emergency.kind, self.emergency_region)
                user_message = Message(
                    conversation_id=conversation.id,
                    role=MessageRole.USER,
                    content=sanitized,
                    timestamp=_not_before(last_timestamp),
                    safety_flags=[emergency_safety_flag(emergency)]
                )
                assistant_message = Message(
                    conversation_id=conversation.id,
                    role=MessageRole.ASSISTANT,
                    content=reply,
                    timestamp=_not_before(user_message.timestamp)
                )
                await self._commit(conversation, user_message, assistant_message)
                yield TurnEvent(
                    type=TurnEventType.EMERGENCY,
                    conversation_id=conversation.id,
                    content=reply,
                    user_message=user_message,
                    assistant_message=assistant_message
                )
                return

            # STEP 3: Context from live health data and recent history
            profile = await self.health_source.get_profile(user_id)
            biometrics = await self.health_source.get_recent_biometrics(user_id, self.biometric_window)
            plans = await self.health_source.get_plan_status(user_id)
            context = LLMContext(
                health_profile=profile,
                recent_biometrics=biometrics,
                plans=plans,
                conversation_history=history,
                max_history_messages=self.max_history_messages,
                template=self.prompt_template,
                max_context_chars=self.max_context_chars
            )
            user_message = Message(
                conversation_id=conversation.id,
                role=MessageRole.USER,
                content=sanitized,
                timestamp=_not_before(last_timestamp),
                context_snapshot=build_context_snapshot(profile, biometrics)
            )

            # STEP 4: Stream, accumulating in arrival order
            buffer = ""
            provider: Optional[ProviderType] = None
            model: Optional[str] = None
            start = time.perf_counter()

            async with aclosing(self.chain.stream_complete(sanitized, context)) as stream:
                async for chunk in stream:
                    provider = chunk.provider or provider
                    model = chunk.model or model

                    if chunk.type == ChunkType.CONTENT:
                        if not chunk.content:
                            continue
                        buffer += chunk.content
                        yield TurnEvent(
                            type=TurnEventType.DELTA,
                            conversation_id=conversation.id,
                            content=buffer,
                            delta=chunk.content,
                            provider=provider,
                            model=model
                        )
                        continue

                    if chunk.type == ChunkType.ERROR or chunk.finish_reason == FinishReason.CONTENT_FILTER:
                        error = chunk.error or "Response was blocked by content filtering"
                        error_code = chunk.error_code or (
                            "CONTENT_FILTERED" if chunk.finish_reason == FinishReason.CONTENT_FILTER else None
                        )
                        logger.warning(f"Turn aborted in conversation {conversation.id}: {error}")
                        yield TurnEvent(
                            type=TurnEventType.ERROR,
                            conversation_id=conversation.id,
                            content=buffer,
                            error=error,
                            error_code=error_code,
                            provider=provider,
                            model=model
                        )
                        return

                    # Clean done
                    break
                else:
                    # Stream ended without a terminal chunk
                    yield TurnEvent(
                        type=TurnEventType.ERROR,
                        conversation_id=conversation.id,
                        content=buffer,
                        error="Response stream ended unexpectedly",
                        provider=provider,
                        model=model
                    )
                    return

            # STEP 5: Commit
            assistant_message = Message(
                conversation_id=conversation.id,
                role=MessageRole.ASSISTANT,
                content=buffer,
                timestamp=_not_before(user_message.timestamp),
                latency_ms=(time.perf_counter() - start) * 1000,
                provider_used=provider,
                model_used=model
            )
            conversation = await self._commit(conversation, user_message, assistant_message)
            yield TurnEvent(
                type=TurnEventType.COMMITTED,
                conversation_id=conversation.id,
                content=buffer,
                user_message=user_message,
                assistant_message=assistant_message,
                provider=provider,
                model=model
            )

        finally:
            self._active_turns.discard(conversation.id)

    async def send_message(
        self,
        user_id: str,
        content: str,
        conversation_id: Optional[UUID] = None,
        on_delta: Optional[DeltaObserver] = None
    ) -> TurnResult:
        """
        Run a whole turn and return its outcome.

        Args:
            user_id: Owner of the conversation
            content: Raw user message
            conversation_id: Existing conversation, or None to start one
            on_delta: Called with the running buffer after every content chunk

        Returns:
            Final state with the committed messages or the error
        """
        result: Optional[TurnResult] = None

        async with aclosing(self.stream_turn(user_id, content, conversation_id)) as events:
            async for event in events:
                if event.type == TurnEventType.DELTA:
                    if on_delta is not None:
                        outcome = on_delta(event.content)
                        if outcome is not None:
                            await outcome
                elif event.type == TurnEventType.EMERGENCY:
                    result = TurnResult(
                        conversation_id=event.conversation_id,
                        state=TurnState.EMERGENCY_RESPONDED,
                        content=event.content,
                        user_message=event.user_message,
                        assistant_message=event.assistant_message,
                        is_emergency=True
                    )
                elif event.type == TurnEventType.COMMITTED:
                    result = TurnResult(
                        conversation_id=event.conversation_id,
                        state=TurnState.COMMITTED,
                        content=event.content,
                        user_message=event.user_message,
                        assistant_message=event.assistant_message
                    )
                else:
                    result = TurnResult(
                        conversation_id=event.conversation_id,
                        state=TurnState.ABORTED,
                        content=event.content,
                        error=event.error,
                        error_code=event.error_code
                    )

        return result

    async def _commit(
        self,
        conversation: Conversation,
        user_message: Message,
        assistant_message: Message
    ) -> Conversation:
        # provider_used/model_used stay as set at creation; each reply carries its own
        updates = {
            "last_message_at": assistant_message.timestamp,
            "message_count": conversation.message_count + 2,
        }
        if conversation.message_count == 0:
            updates["title"] = derive_title(user_message.content)

        updated = conversation.model_copy(update=updates)
        await self.store.commit_turn(updated, [user_message, assistant_message])
        logger.info(f"Committed turn in conversation {conversation.id}")
        return updated


def _not_before(previous: Optional[datetime]) -> datetime:
    now = utcnow()
    if previous is not None and now < previous:
        return previous
    return now
