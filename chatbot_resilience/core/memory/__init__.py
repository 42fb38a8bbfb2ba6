from chatbot_resilience.core.memory.conversation_store import (
    ConversationMemoryConfig,
    ConversationMemoryStore,
    summarize_messages,
)

__all__ = [
    "ConversationMemoryConfig",
    "ConversationMemoryStore",
    "summarize_messages",
]
