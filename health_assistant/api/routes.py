"""FastAPI routes for providers and conversations."""

import json
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from health_assistant.api.schemas import (
    ConversationListResponse,
    CreateConversationRequest,
    FallbackOrderRequest,
    HealthContextRequest,
    MessageListResponse,
    ProviderConfigResponse,
    ProviderConfigUpdate,
    ProviderListResponse,
    ProviderStatusResponse,
    SendMessageRequest,
    TurnResponse
)
from health_assistant.core.conversation_manager import (
    ConversationBusyError,
    ConversationManager,
    ConversationNotFoundError,
    TurnEvent,
    TurnEventType
)
from health_assistant.core.fallback_chain import FallbackChain
from health_assistant.core.health_source import InMemoryHealthDataSource
from health_assistant.core.models import Conversation, ProviderType
from health_assistant.core.registry import ProviderRegistry

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["assistant"])


# Dependency injection; everything is built once by create_app
def get_manager(request: Request) -> ConversationManager:
    return request.app.state.manager


def get_chain(request: Request) -> FallbackChain:
    return request.app.state.chain


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def _encode_sse(event: str, data: Dict[str, Any]) -> str:
    payload = json.dumps(data, ensure_ascii=False)
    return f"event: {event}\ndata: {payload}\n\n"


def _event_payload(event: TurnEvent) -> Dict[str, Any]:
    if event.type == TurnEventType.DELTA:
        return {"delta": event.delta, "content": event.content}
    return event.model_dump(mode="json", exclude_none=True)


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "health-assistant",
        "version": "1.0.0"
    }


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


@router.get("/providers", response_model=ProviderListResponse)
async def list_providers(
    registry: ProviderRegistry = Depends(get_registry),
    chain: FallbackChain = Depends(get_chain)
) -> ProviderListResponse:
    """List backends with their models and capabilities."""
    return ProviderListResponse(
        providers=registry.list_provider_info(),
        provider_order=chain.provider_order
    )


@router.get("/providers/status", response_model=ProviderStatusResponse)
async def provider_status(chain: FallbackChain = Depends(get_chain)) -> ProviderStatusResponse:
    """
    Probe the chain in order, stopping at the first available backend.

    Each check is a real round trip to the backend.
    """
    try:
        results = await chain.get_chain_status()
    except Exception as e:
        logger.error(f"Provider status check failed: {e}")
        raise HTTPException(status_code=500, detail=f"Provider status check failed: {str(e)}")

    return ProviderStatusResponse(
        provider_order=chain.provider_order,
        last_successful_provider=chain.last_successful_provider,
        chain=results
    )


@router.patch("/providers/{provider}/config", response_model=ProviderConfigResponse)
async def update_provider_config(
    provider: ProviderType,
    request: ProviderConfigUpdate,
    registry: ProviderRegistry = Depends(get_registry)
) -> ProviderConfigResponse:
    """
    Change a backend's config. Takes effect on its next call.

    - **provider**: openai, gemini or local
    - Body fields left out are not changed
    """
    updates = request.model_dump(exclude_unset=True)
    try:
        adapter = registry.update_config(provider, updates)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to update {provider.value} config: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to update config: {str(e)}")

    return ProviderConfigResponse.from_config(adapter.config)


@router.put("/providers/fallback-order", response_model=ProviderListResponse)
async def set_fallback_order(
    request: FallbackOrderRequest,
    registry: ProviderRegistry = Depends(get_registry),
    chain: FallbackChain = Depends(get_chain)
) -> ProviderListResponse:
    try:
        chain.set_provider_order(request.order)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return ProviderListResponse(
        providers=registry.list_provider_info(),
        provider_order=chain.provider_order
    )


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@router.post("/conversations", response_model=Conversation, status_code=201)
async def create_conversation(
    request: CreateConversationRequest,
    manager: ConversationManager = Depends(get_manager)
) -> Conversation:
    try:
        return await manager.create_conversation(request.user_id, title=request.title)
    except Exception as e:
        logger.error(f"Failed to create conversation: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to create conversation: {str(e)}")


@router.get("/users/{user_id}/conversations", response_model=ConversationListResponse)
async def list_conversations(
    user_id: str,
    include_archived: bool = False,
    manager: ConversationManager = Depends(get_manager)
) -> ConversationListResponse:
    """Conversations of a user, most recently active first."""
    try:
        conversations = await manager.list_conversations(user_id, include_archived=include_archived)
    except Exception as e:
        logger.error(f"Failed to list conversations: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to list conversations: {str(e)}")

    return ConversationListResponse(conversations=conversations, total=len(conversations))


@router.get("/conversations/{conversation_id}", response_model=Conversation)
async def get_conversation(
    conversation_id: UUID,
    manager: ConversationManager = Depends(get_manager)
) -> Conversation:
    try:
        return await manager.get_conversation(conversation_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to get conversation: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to get conversation: {str(e)}")


@router.get("/conversations/{conversation_id}/messages", response_model=MessageListResponse)
async def get_messages(
    conversation_id: UUID,
    manager: ConversationManager = Depends(get_manager)
) -> MessageListResponse:
    """Committed messages in time order."""
    try:
        messages = await manager.get_messages(conversation_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to get messages: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to get messages: {str(e)}")

    return MessageListResponse(messages=messages, total=len(messages))


@router.post("/conversations/{conversation_id}/messages")
async def send_message(
    conversation_id: UUID,
    request: SendMessageRequest,
    manager: ConversationManager = Depends(get_manager)
):
    """
    Send a user message and get the assistant's reply.

    Streaming responses are server-sent events: ``delta`` while the reply is
    generated, then exactly one of ``committed``, ``emergency`` or ``error``.

    - **user_id**: Owner of the conversation
    - **content**: Message text
    - **stream**: SSE when true, a single JSON body when false
    """
    if not request.stream:
        try:
            result = await manager.send_message(request.user_id, request.content, conversation_id)
        except ConversationNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ConversationBusyError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            logger.error(f"Turn failed: {e}")
            raise HTTPException(status_code=500, detail=f"Turn failed: {str(e)}")

        if result.error is not None:
            raise HTTPException(
                status_code=502,
                detail={"code": result.error_code, "message": result.error}
            )
        return TurnResponse(
            conversation_id=result.conversation_id,
            state=result.state.value,
            content=result.content,
            is_emergency=result.is_emergency,
            user_message=result.user_message,
            assistant_message=result.assistant_message
        )

    events = manager.stream_turn(request.user_id, request.content, conversation_id)

    # Pull the first event here so request errors still get a proper status
    try:
        first = await events.__anext__()
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConversationBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Turn failed to start: {e}")
        raise HTTPException(status_code=500, detail=f"Turn failed: {str(e)}")

    async def generate() -> AsyncIterator[str]:
        async with aclosing(events):
            yield _encode_sse(first.type.value, _event_payload(first))
            try:
                async for event in events:
                    yield _encode_sse(event.type.value, _event_payload(event))
            except Exception as e:
                logger.error(f"Turn stream failed: {e}")
                yield _encode_sse("error", {"error": "Assistant stream failed."})

    async def release_turn() -> None:
        await events.aclose()

    # Runs even if the client goes away before the body is read
    cleanup = BackgroundTasks()
    cleanup.add_task(release_turn)

    try:
        return StreamingResponse(
            generate(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
            background=cleanup,
        )
    except Exception:
        await release_turn()
        raise


@router.post("/conversations/{conversation_id}/archive", status_code=204)
async def archive_conversation(
    conversation_id: UUID,
    manager: ConversationManager = Depends(get_manager)
) -> Response:
    try:
        await manager.archive_conversation(conversation_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Archive failed: {e}")
        raise HTTPException(status_code=500, detail=f"Archive failed: {str(e)}")
    return Response(status_code=204)


@router.delete("/conversations/{conversation_id}", status_code=204)
async def delete_conversation(
    conversation_id: UUID,
    manager: ConversationManager = Depends(get_manager)
) -> Response:
    """Delete a conversation and every message in it."""
    try:
        await manager.delete_conversation(conversation_id)
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConversationBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Delete failed: {e}")
        raise HTTPException(status_code=500, detail=f"Delete failed: {str(e)}")
    return Response(status_code=204)


@router.put("/users/{user_id}/health-context", status_code=204)
async def set_health_context(
    user_id: str,
    request: HealthContextRequest,
    http_request: Request
) -> Response:
    """Seed profile, biometrics and plan flags used to build the context."""
    source = http_request.app.state.health_source
    if not isinstance(source, InMemoryHealthDataSource):
        raise HTTPException(status_code=501, detail="Health data source is read-only")

    profile = request.profile.model_copy(update={"user_id": user_id}) if request.profile else None
    await source.set_health_context(
        user_id,
        profile=profile,
        biometrics=request.biometrics,
        plans=request.plans
    )
    return Response(status_code=204)
