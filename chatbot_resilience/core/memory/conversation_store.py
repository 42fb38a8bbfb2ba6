# ============================================================================
# SCOPE: GLOBAL
# Description: Memoria de conversación por cliente de WhatsApp. Historial
#              acotado, expiración por inactividad y marca de derivación a
#              un agente humano.
# Tenant-Aware: No - la clave de conversación es el teléfono del cliente.
# ============================================================================
"""
Conversation Memory Store - bounded, TTL-expiring message history.

Features:
- Per-conversation FIFO trim at ``max_messages_per_conversation``
- Optional compression of the oldest half into a running summary
- Conversations expire after ``conversation_timeout`` of inactivity
- Escalation flag for handoff to a human agent
- History rendered as langchain-core messages for the agent

Usage:
    memory = ConversationMemoryStore()

    memory.add_user_message(phone, "Quero pausar minha assinatura", owner_name="Ana")
    memory.add_ai_message(phone, "Claro! Por quanto tempo?")
    history = memory.get_langchain_messages(phone)
"""

import asyncio
from collections import OrderedDict
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from chatbot_resilience.core.shared.logger import LogCategory, get_category_logger
from chatbot_resilience.core.shared.timing import Clock, elapsed_since, system_clock
from chatbot_resilience.models.conversation import (
    ConversationMessage,
    ConversationMetadata,
    ConversationRecord,
    MessageRole,
)

logger = get_category_logger(__name__, LogCategory.CONVERSATION)

Summarizer = Callable[[Sequence[ConversationMessage], str | None], str]

# Conversations with activity in this window count as "recent" in stats
RECENT_WINDOW_SECONDS = 3600


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit].rstrip()}..."


def summarize_messages(messages: Sequence[ConversationMessage], previous_summary: str | None = None) -> str:
    """Rule-based summary of messages being dropped from the history."""
    user_messages = [m for m in messages if m.role == "user"]
    assistant_count = sum(1 for m in messages if m.role == "assistant")

    summary = (
        f"{len(messages)} earlier messages "
        f"({len(user_messages)} from user, {assistant_count} from assistant)."
    )
    if user_messages:
        topics = "; ".join(_truncate(m.content, 60) for m in user_messages[-3:])
        summary += f" User asked about: {topics}."

    return f"{previous_summary}\n{summary}" if previous_summary else summary


@dataclass
class ConversationMemoryConfig:
    """Limits of the conversation memory."""

    max_messages_per_conversation: int = 50
    conversation_timeout: float = 24 * 3600
    enable_summarization: bool = False
    max_summary_length: int = 2000
    max_conversations: int = 10000

    def __post_init__(self) -> None:
        if self.max_messages_per_conversation < 1:
            raise ValueError("max_messages_per_conversation must be at least 1")
        if self.conversation_timeout <= 0:
            raise ValueError("conversation_timeout must be positive")
        if self.max_conversations < 1:
            raise ValueError("max_conversations must be at least 1")


class ConversationMemoryStore:
    """
    In-memory conversation history keyed by conversation (customer phone).

    Every operation is synchronous except ``cleanup``, which yields to the
    event loop between batches.
    """

    def __init__(
        self,
        config: ConversationMemoryConfig | None = None,
        clock: Clock = system_clock,
        summarizer: Summarizer = summarize_messages,
    ):
        self.config = config or ConversationMemoryConfig()
        self._clock = clock
        self._summarizer = summarizer
        # Ordered from least to most recently active
        self._conversations: OrderedDict[str, ConversationRecord] = OrderedDict()
        self._stats: dict[str, int] = {
            "created": 0,
            "expired": 0,
            "evicted": 0,
            "trimmed_messages": 0,
            "summarized_messages": 0,
        }

    def __len__(self) -> int:
        return len(self._conversations)

    def add_user_message(self, key: str, content: str, owner_name: str | None = None) -> ConversationMessage:
        """Append a customer message, creating the conversation on first use."""
        return self._add_message(key, "user", content, owner_name)

    def add_ai_message(self, key: str, content: str) -> ConversationMessage:
        """Append an assistant response."""
        return self._add_message(key, "assistant", content)

    def get_conversation(self, key: str) -> list[ConversationMessage]:
        """Messages of a live conversation, oldest first (empty when missing or expired)."""
        record = self._get_live(key)
        return list(record.messages) if record is not None else []

    def get_langchain_messages(self, key: str) -> list[BaseMessage]:
        """History as langchain-core messages, preceded by the summary when there is one."""
        record = self._get_live(key)
        if record is None:
            return []

        messages: list[BaseMessage] = []
        if record.summary:
            messages.append(SystemMessage(content=f"Conversation summary so far:\n{record.summary}"))
        for message in record.messages:
            if message.role == "user":
                messages.append(HumanMessage(content=message.content))
            elif message.role == "assistant":
                messages.append(AIMessage(content=message.content))
            else:
                messages.append(SystemMessage(content=message.content))
        return messages

    def mark_as_escalated(self, key: str) -> bool:
        """Flag a conversation as handed off to a human. False when it does not exist."""
        record = self._get_live(key)
        if record is None:
            return False
        if not record.metadata.escalated:
            record.metadata.escalated = True
            logger.info("Conversation escalated to human agent", conversation_key=key)
        return True

    def is_escalated(self, key: str) -> bool:
        record = self._get_live(key)
        return record is not None and record.metadata.escalated

    def get_metadata(self, key: str) -> ConversationMetadata | None:
        record = self._get_live(key)
        return record.metadata.model_copy() if record is not None else None

    def clear_conversation(self, key: str) -> bool:
        self._validate_key(key)
        return self._conversations.pop(key, None) is not None

    def get_conversation_summary(self, key: str) -> str:
        """Human readable summary for logs and analytics."""
        record = self._get_live(key)
        if record is None:
            return "No conversation found"

        metadata = record.metadata
        duration_minutes = round(elapsed_since(metadata.started_at, self._clock()) / 60)
        recent = record.messages[-5:]
        lines = [
            "Conversation Summary:",
            f"- Customer: {metadata.owner_name or key}",
            f"- Started: {record.export()['metadata']['started_at']}",
            f"- Duration: {duration_minutes} minutes",
            f"- Messages: {metadata.message_count}",
            f"- Escalated: {'Yes' if metadata.escalated else 'No'}",
        ]
        if record.summary:
            lines.append(f"- Earlier context: {record.summary}")
        lines.append(f"- Last {len(recent)} messages:")
        for index, message in enumerate(recent, start=1):
            role = "User" if message.role == "user" else "AI"
            lines.append(f"  {index}. {role}: {_truncate(message.content, 100)}")
        return "\n".join(lines)

    def get_active_conversations_count(self) -> int:
        now = self._clock()
        return sum(1 for record in self._conversations.values() if not self._is_expired(record, now))

    def export_conversation(self, key: str) -> dict[str, Any] | None:
        """Full conversation with ISO timestamps, for backup or analysis."""
        record = self._get_live(key)
        return record.export() if record is not None else None

    def cleanup_expired(self) -> int:
        """Delete every conversation past the inactivity timeout."""
        now = self._clock()
        expired = [key for key, record in self._conversations.items() if self._is_expired(record, now)]
        for key in expired:
            del self._conversations[key]
        self._stats["expired"] += len(expired)
        return len(expired)

    async def cleanup(self, batch_size: int = 500) -> int:
        """Incremental ``cleanup_expired`` for the periodic maintenance loop."""
        now = self._clock()
        keys = list(self._conversations.keys())
        removed = 0
        for start in range(0, len(keys), batch_size):
            for key in keys[start : start + batch_size]:
                record = self._conversations.get(key)
                if record is not None and self._is_expired(record, now):
                    del self._conversations[key]
                    removed += 1
            await asyncio.sleep(0)
        self._stats["expired"] += removed
        if removed:
            logger.info(f"Cleaned up {removed} old conversations", remaining=len(self._conversations))
        return removed

    def get_stats(self) -> dict[str, Any]:
        now = self._clock()
        records = list(self._conversations.values())
        total_messages = sum(r.metadata.message_count for r in records)
        return {
            "total_conversations": len(records),
            "active_conversations": sum(1 for r in records if not self._is_expired(r, now)),
            "recent_conversations": sum(
                1 for r in records if elapsed_since(r.metadata.last_message_at, now) <= RECENT_WINDOW_SECONDS
            ),
            "escalated_conversations": sum(1 for r in records if r.metadata.escalated),
            "total_messages": total_messages,
            "average_messages_per_conversation": total_messages / max(1, len(records)),
            **self._stats,
        }

    def _add_message(
        self,
        key: str,
        role: MessageRole,
        content: str,
        owner_name: str | None = None,
    ) -> ConversationMessage:
        self._validate_key(key)
        if not isinstance(content, str):
            raise TypeError(f"content must be a string, got {type(content).__name__}")

        now = self._clock()
        record = self._get_live(key)
        if record is None:
            record = self._create(key, now, owner_name)

        message = ConversationMessage(role=role, content=content, timestamp=now)
        record.messages.append(message)
        record.metadata.message_count += 1
        record.touch(now)
        if owner_name and not record.metadata.owner_name:
            record.metadata.owner_name = owner_name
        self._conversations.move_to_end(key)

        if len(record.messages) > self.config.max_messages_per_conversation:
            self._trim(record)
        return message

    def _create(self, key: str, now: float, owner_name: str | None) -> ConversationRecord:
        while len(self._conversations) >= self.config.max_conversations:
            evicted_key, _ = self._conversations.popitem(last=False)
            self._stats["evicted"] += 1
            logger.debug("Evicted least recently active conversation", conversation_key=evicted_key)

        record = ConversationRecord(
            conversation_key=key,
            metadata=ConversationMetadata(started_at=now, last_message_at=now, owner_name=owner_name),
        )
        self._conversations[key] = record
        self._stats["created"] += 1
        return record

    def _trim(self, record: ConversationRecord) -> None:
        if self.config.enable_summarization:
            half = len(record.messages) // 2
            oldest = record.messages[:half]
            record.messages = record.messages[half:]
            summary = self._summarizer(oldest, record.summary)
            record.summary = summary[-self.config.max_summary_length :]
            self._stats["summarized_messages"] += len(oldest)
            logger.debug(
                "Compressed oldest messages into summary",
                conversation_key=record.conversation_key,
                summarized=len(oldest),
            )
        else:
            overflow = len(record.messages) - self.config.max_messages_per_conversation
            record.messages = record.messages[overflow:]
            self._stats["trimmed_messages"] += overflow

    def _get_live(self, key: str) -> ConversationRecord | None:
        self._validate_key(key)
        record = self._conversations.get(key)
        if record is None:
            return None
        if self._is_expired(record, self._clock()):
            del self._conversations[key]
            self._stats["expired"] += 1
            logger.debug("Conversation expired", conversation_key=key)
            return None
        return record

    def _is_expired(self, record: ConversationRecord, now: float) -> bool:
        return elapsed_since(record.metadata.last_message_at, now) > self.config.conversation_timeout

    @staticmethod
    def _validate_key(key: str) -> None:
        if not isinstance(key, str):
            raise TypeError(f"conversation key must be a string, got {type(key).__name__}")
        if not key.strip():
            raise ValueError("conversation key must not be empty")
