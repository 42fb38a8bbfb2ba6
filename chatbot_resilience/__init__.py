"""
Chatbot Resilience

Caching and fallback core of the WhatsApp support chatbot: tiered cache,
circuit breaker, fallback executor, LLM response cache and conversation
memory.
"""

__version__ = "0.1.0"
