from chatbot_resilience.models.conversation import (
    ConversationMessage,
    ConversationMetadata,
    ConversationRecord,
    MessageRole,
)
from chatbot_resilience.models.fallback import InteractionRecord, SubscriptionStatus, UserFallbackData

__all__ = [
    "ConversationMessage",
    "ConversationMetadata",
    "ConversationRecord",
    "InteractionRecord",
    "MessageRole",
    "SubscriptionStatus",
    "UserFallbackData",
]
