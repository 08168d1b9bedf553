"""Persistence of conversations and their messages."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional
from uuid import UUID

from health_assistant.core.models import (
    ContextSnapshot,
    Conversation,
    Message,
    MessageRole,
    ProviderType,
    SafetyFlag
)
from health_assistant.db.pool import DatabasePool

logger = logging.getLogger(__name__)


class ConversationStore(ABC):
    """
    Storage contract used by the conversation manager.

    Messages come back oldest first. ``commit_turn`` writes the new messages
    together with the title, message count and last activity as one unit.
    The backend recorded at creation is left as it is.
    """

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def list_conversations(
        self,
        user_id: str,
        include_archived: bool = False,
        limit: int = 50
    ) -> List[Conversation]:
        """Most recently active first."""

    @abstractmethod
    async def get_messages(
        self,
        conversation_id: UUID,
        limit: Optional[int] = None
    ) -> List[Message]:
        """Messages oldest first; with ``limit``, only the last ``limit`` of them."""

    @abstractmethod
    async def commit_turn(self, conversation: Conversation, messages: List[Message]) -> None:
        ...

    @abstractmethod
    async def archive_conversation(self, conversation_id: UUID) -> bool:
        ...

    @abstractmethod
    async def delete_conversation(self, conversation_id: UUID) -> bool:
        """Delete a conversation and all of its messages."""


class InMemoryConversationStore(ConversationStore):
    """Process-local store, used when no database is configured."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._conversations: Dict[UUID, Conversation] = {}
        self._messages: Dict[UUID, List[Message]] = {}

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        async with self._lock:
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
        return conversation

    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    async def list_conversations(
        self,
        user_id: str,
        include_archived: bool = False,
        limit: int = 50
    ) -> List[Conversation]:
        matches = [
            c for c in self._conversations.values()
            if c.user_id == user_id and (include_archived or not c.is_archived)
        ]
        matches.sort(key=lambda c: c.last_message_at, reverse=True)
        return matches[:limit]

    async def get_messages(
        self,
        conversation_id: UUID,
        limit: Optional[int] = None
    ) -> List[Message]:
        messages = list(self._messages.get(conversation_id, []))
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    async def commit_turn(self, conversation: Conversation, messages: List[Message]) -> None:
        async with self._lock:
            stored = self._conversations.get(conversation.id)
            if stored is None:
                raise ValueError(f"Conversation {conversation.id} not found")
            self._messages[conversation.id].extend(messages)
            self._conversations[conversation.id] = stored.model_copy(update={
                "title": conversation.title,
                "last_message_at": conversation.last_message_at,
                "message_count": conversation.message_count,
            })

    async def archive_conversation(self, conversation_id: UUID) -> bool:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return False
            self._conversations[conversation_id] = conversation.model_copy(update={"is_archived": True})
            return True

    async def delete_conversation(self, conversation_id: UUID) -> bool:
        async with self._lock:
            if self._conversations.pop(conversation_id, None) is None:
                return False
            self._messages.pop(conversation_id, None)
            return True


class PostgresConversationStore(ConversationStore):
    """asyncpg-backed store (schema in db/migrations/001_init.sql)."""

    def __init__(self, db_pool: DatabasePool):
        self.db_pool = db_pool

    async def create_conversation(self, conversation: Conversation) -> Conversation:
        try:
            async with self.db_pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO conversations
                    (id, user_id, title, created_at, last_message_at, message_count,
                     provider_used, model_used, tags, is_archived)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    """,
                    conversation.id,
                    conversation.user_id,
                    conversation.title,
                    conversation.created_at,
                    conversation.last_message_at,
                    conversation.message_count,
                    conversation.provider_used.value,
                    conversation.model_used,
                    json.dumps(conversation.tags),
                    conversation.is_archived
                )
            logger.info(f"Created conversation {conversation.id} for user {conversation.user_id}")
            return conversation

        except Exception as e:
            logger.error(f"Failed to create conversation: {e}")
            raise

    async def get_conversation(self, conversation_id: UUID) -> Optional[Conversation]:
        async with self.db_pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, user_id, title, created_at, last_message_at, message_count,
                       provider_used, model_used, tags, is_archived
                FROM conversations
                WHERE id = $1
                """,
                conversation_id
            )
        return _row_to_conversation(row) if row else None

    async def list_conversations(
        self,
        user_id: str,
        include_archived: bool = False,
        limit: int = 50
    ) -> List[Conversation]:
        async with self.db_pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, user_id, title, created_at, last_message_at, message_count,
                       provider_used, model_used, tags, is_archived
                FROM conversations
                WHERE user_id = $1
                  AND ($2::boolean OR NOT is_archived)
                ORDER BY last_message_at DESC
                LIMIT $3
                """,
                user_id,
                include_archived,
                limit
            )
        return [_row_to_conversation(row) for row in rows]

    async def get_messages(
        self,
        conversation_id: UUID,
        limit: Optional[int] = None
    ) -> List[Message]:
        async with self.db_pool.acquire() as conn:
            if limit is None:
                rows = await conn.fetch(
                    """
                    SELECT id, conversation_id, role, content, timestamp, context_snapshot,
                           safety_flags, tokens_used, latency_ms, provider_used, model_used
                    FROM messages
                    WHERE conversation_id = $1
                    ORDER BY timestamp, seq
                    """,
                    conversation_id
                )
            else:
                # Newest N, flipped back to oldest first
                rows = await conn.fetch(
                    """
                    SELECT * FROM (
                        SELECT id, conversation_id, role, content, timestamp, context_snapshot,
                               safety_flags, tokens_used, latency_ms, provider_used, model_used, seq
                        FROM messages
                        WHERE conversation_id = $1
                        ORDER BY timestamp DESC, seq DESC
                        LIMIT $2
                    ) recent
                    ORDER BY timestamp, seq
                    """,
                    conversation_id,
                    max(limit, 0)
                )
        return [_row_to_message(row) for row in rows]

    async def commit_turn(self, conversation: Conversation, messages: List[Message]) -> None:
        try:
            async with self.db_pool.acquire() as conn:
                async with conn.transaction():
                    for message in messages:
                        await conn.execute(
                            """
                            INSERT INTO messages
                            (id, conversation_id, role, content, timestamp, context_snapshot,
                             safety_flags, tokens_used, latency_ms, provider_used, model_used)
                            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                            """,
                            message.id,
                            message.conversation_id,
                            message.role.value,
                            message.content,
                            message.timestamp,
                            message.context_snapshot.model_dump_json() if message.context_snapshot else None,
                            json.dumps([flag.model_dump(mode="json") for flag in message.safety_flags]),
                            message.tokens_used,
                            message.latency_ms,
                            message.provider_used.value if message.provider_used else None,
                            message.model_used
                        )

                    status = await conn.execute(
                        """
                        UPDATE conversations
                        SET title = $2, last_message_at = $3, message_count = $4
                        WHERE id = $1
                        """,
                        conversation.id,
                        conversation.title,
                        conversation.last_message_at,
                        conversation.message_count
                    )
                    if status == "UPDATE 0":
                        raise ValueError(f"Conversation {conversation.id} not found")

            logger.info(f"Committed {len(messages)} messages to conversation {conversation.id}")

        except Exception as e:
            logger.error(f"Failed to commit turn: {e}")
            raise

    async def archive_conversation(self, conversation_id: UUID) -> bool:
        async with self.db_pool.acquire() as conn:
            status = await conn.execute(
                "UPDATE conversations SET is_archived = TRUE WHERE id = $1",
                conversation_id
            )
        return status != "UPDATE 0"

    async def delete_conversation(self, conversation_id: UUID) -> bool:
        # Messages go with it through ON DELETE CASCADE
        async with self.db_pool.acquire() as conn:
            status = await conn.execute(
                "DELETE FROM conversations WHERE id = $1",
                conversation_id
            )
        deleted = status != "DELETE 0"
        if deleted:
            logger.info(f"Deleted conversation {conversation_id}")
        return deleted


def _load_json(value):
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value


def _row_to_conversation(row) -> Conversation:
    return Conversation(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        created_at=row["created_at"],
        last_message_at=row["last_message_at"],
        message_count=row["message_count"],
        provider_used=ProviderType(row["provider_used"]),
        model_used=row["model_used"],
        tags=_load_json(row["tags"]) or [],
        is_archived=row["is_archived"]
    )


def _row_to_message(row) -> Message:
    snapshot = _load_json(row["context_snapshot"])
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=MessageRole(row["role"]),
        content=row["content"],
        timestamp=row["timestamp"],
        context_snapshot=ContextSnapshot.model_validate(snapshot) if snapshot else None,
        safety_flags=[SafetyFlag.model_validate(f) for f in _load_json(row["safety_flags"]) or []],
        tokens_used=row["tokens_used"],
        latency_ms=row["latency_ms"],
        provider_used=ProviderType(row["provider_used"]) if row["provider_used"] else None,
        model_used=row["model_used"]
    )
