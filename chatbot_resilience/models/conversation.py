from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

MessageRole = Literal["user", "assistant", "system"]


def _iso(timestamp: float | None) -> str | None:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, UTC).isoformat()


class ConversationMessage(BaseModel):
    """Modelo para un mensaje individual en una conversación"""

    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: str
    timestamp: float


class ConversationMetadata(BaseModel):
    """Metadatos de la conversación usados para expiración y derivación a humano"""

    started_at: float
    last_message_at: float
    message_count: int = Field(0, ge=0)
    escalated: bool = False
    owner_name: str | None = None


class ConversationRecord(BaseModel):
    """Historial acotado de una conversación"""

    conversation_key: str
    messages: list[ConversationMessage] = Field(default_factory=list)
    summary: str | None = None
    metadata: ConversationMetadata

    def touch(self, now: float) -> None:
        """Actualiza last_message_at sin retroceder nunca en el tiempo"""
        self.metadata.last_message_at = max(self.metadata.last_message_at, now)

    def count_by_role(self, role: MessageRole) -> int:
        return sum(1 for message in self.messages if message.role == role)

    def export(self) -> dict:
        """Serializa la conversación con fechas ISO 8601"""
        return {
            "conversation_key": self.conversation_key,
            "summary": self.summary,
            "metadata": {
                **self.metadata.model_dump(),
                "started_at": _iso(self.metadata.started_at),
                "last_message_at": _iso(self.metadata.last_message_at),
            },
            "messages": [
                {"role": m.role, "content": m.content, "timestamp": _iso(m.timestamp)} for m in self.messages
            ],
        }
