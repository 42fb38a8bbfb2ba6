# ============================================================================
# SCOPE: GLOBAL
# Description: Cache de respuestas generadas por el LLM. Búsqueda exacta por
#              mensaje normalizado + contexto y búsqueda semántica (Jaccard)
#              por intent. Nunca cachea mensajes con datos personales.
# Tenant-Aware: No - los mensajes con PII se rechazan antes de cachear.
# ============================================================================
"""
Response Cache - reuse LLM answers for repeated or near-duplicate questions.

Features:
- Exact lookup keyed by sha256(normalized message + context fingerprint)
- Semantic lookup by token-set Jaccard similarity within the same intent
- Cacheability filter: confidence, intent blocklist, length and PII patterns
- TTL expiration and LRU eviction by last access time
- Tag and intent invalidation

Usage:
    cache = ResponseCache(ResponseCacheConfig(max_size=500))

    cached = cache.get(message, context) or cache.get_semantic(message, intent)
    if cached is None:
        answer = await llm.generate(...)
        cache.set(message, answer, intent, confidence, quick_replies, context)
"""

import asyncio
import hashlib
import json
import re
import string
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from chatbot_resilience.core.shared.logger import LogCategory, get_category_logger
from chatbot_resilience.core.shared.timing import Clock, is_expired, system_clock

logger = get_category_logger(__name__, LogCategory.CACHE)

# Phone numbers, CPF/CNPJ documents and e-mail addresses
PII_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b\d{10,13}\b"),
    re.compile(r"\(?\b\d{2}\)?[\s-]?9?\d{4}[\s-]\d{4}\b"),
    re.compile(r"\b\d{3}\.\d{3}\.\d{3}-\d{2}\b"),
    re.compile(r"\b\d{2}\.\d{3}\.\d{3}/\d{4}-\d{2}\b"),
    re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
)

DEFAULT_NON_CACHEABLE_INTENTS = frozenset({"emergency", "complaint", "personal_query"})

_STRIP_CHARS = string.punctuation + "¿¡“”«»"


def normalize_message(message: str) -> str:
    return message.lower().strip()


def tokenize(text: str) -> set[str]:
    """Lower-cased whitespace tokens with surrounding punctuation removed."""
    tokens = (token.strip(_STRIP_CHARS) for token in text.lower().split())
    return {token for token in tokens if token}


def jaccard_similarity(a: str, b: str) -> float:
    """|A ∩ B| / |A ∪ B| over the token sets of two texts."""
    tokens_a = tokenize(a)
    tokens_b = tokenize(b)
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)


def contains_pii(text: str) -> bool:
    return any(pattern.search(text) for pattern in PII_PATTERNS)


def _intent_key(intent: str) -> str:
    if not isinstance(intent, str):
        raise TypeError(f"intent must be a string, got {type(intent).__name__}")
    return intent.strip().lower()


@dataclass
class ResponseCacheConfig:
    """Tuning knobs of the response cache."""

    max_size: int = 500
    default_ttl: float = 20 * 60
    # Recorded on each cached entry
    similarity_threshold: float = 0.8
    # Default for get_semantic when the caller passes no threshold
    semantic_lookup_threshold: float = 0.85
    min_confidence: float = 0.7
    min_message_length: int = 10
    max_message_length: int = 500
    non_cacheable_intents: frozenset[str] = DEFAULT_NON_CACHEABLE_INTENTS
    enable_exact_cache: bool = True
    enable_semantic_cache: bool = True

    def __post_init__(self) -> None:
        if self.max_size < 1:
            raise ValueError("max_size must be at least 1")
        if self.default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        if not 0 < self.similarity_threshold <= 1:
            raise ValueError("similarity_threshold must be in (0, 1]")
        if not 0 < self.semantic_lookup_threshold <= 1:
            raise ValueError("semantic_lookup_threshold must be in (0, 1]")
        self.non_cacheable_intents = frozenset(_intent_key(i) for i in self.non_cacheable_intents)


@dataclass
class CachedLLMResponse:
    """A cached LLM answer."""

    id: str
    normalized_message_key: str
    original_message: str
    response_text: str
    intent: str
    confidence: float
    created_at: float
    expires_at: float
    quick_replies: list[str] = field(default_factory=list)
    access_count: int = 1
    last_accessed_at: float = 0.0
    tags: set[str] = field(default_factory=set)
    owner_user_id: str | None = None
    similarity_threshold: float = 0.8

    def is_expired(self, now: float) -> bool:
        return is_expired(self.expires_at, now)

    def touch(self, now: float) -> None:
        self.access_count += 1
        self.last_accessed_at = now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "normalized_message_key": self.normalized_message_key,
            "original_message": self.original_message,
            "response_text": self.response_text,
            "intent": self.intent,
            "confidence": self.confidence,
            "quick_replies": list(self.quick_replies),
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "access_count": self.access_count,
            "last_accessed_at": self.last_accessed_at,
            "tags": sorted(self.tags),
            "owner_user_id": self.owner_user_id,
            "similarity_threshold": self.similarity_threshold,
        }


class ResponseCache:
    """
    In-memory cache of LLM responses with exact and semantic lookup.

    Lookups and writes are synchronous; they never touch the network.
    """

    def __init__(self, config: ResponseCacheConfig | None = None, clock: Clock = system_clock):
        self.config = config or ResponseCacheConfig()
        self._clock = clock
        self._entries: dict[str, CachedLLMResponse] = {}
        self._key_by_id: dict[str, str] = {}
        # intent -> ids in insertion order
        self._intent_index: dict[str, dict[str, None]] = {}
        self._stats: dict[str, int] = {
            "exact_hits": 0,
            "semantic_hits": 0,
            "misses": 0,
            "rejected": 0,
            "evictions": 0,
            "expirations": 0,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def generate_key(self, message: str, context: Mapping[str, Any] | None = None) -> str:
        """
        Build the exact-match key for a message and its context.

        Raises:
            TypeError: If message is not a string or context is not a JSON
                serializable mapping
        """
        if not isinstance(message, str):
            raise TypeError(f"message must be a string, got {type(message).__name__}")
        if context is not None and not isinstance(context, Mapping):
            raise TypeError(f"context must be a mapping, got {type(context).__name__}")

        context_hash = ""
        if context:
            try:
                serialized = json.dumps(context, sort_keys=True, ensure_ascii=False)
            except (TypeError, ValueError) as e:
                raise TypeError(f"context is not JSON serializable: {e}") from e
            context_hash = hashlib.md5(serialized.encode("utf-8")).hexdigest()[:8]

        raw = f"{normalize_message(message)}:{context_hash}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]

    def is_cacheable(self, message: str, intent: str, confidence: float) -> bool:
        """True when a response to ``message`` may be cached and shared."""
        if confidence < self.config.min_confidence:
            return False
        if _intent_key(intent) in self.config.non_cacheable_intents:
            return False
        if not self.config.min_message_length <= len(message) <= self.config.max_message_length:
            return False
        if contains_pii(message):
            return False
        return True

    def get(self, message: str, context: Mapping[str, Any] | None = None) -> CachedLLMResponse | None:
        """Exact-match lookup; expired entries are removed on read."""
        key = self.generate_key(message, context)
        if not self.config.enable_exact_cache:
            return None

        entry = self._entries.get(key)
        now = self._clock()
        if entry is None:
            self._stats["misses"] += 1
            return None
        if entry.is_expired(now):
            self._remove(key)
            self._stats["expirations"] += 1
            self._stats["misses"] += 1
            return None

        entry.touch(now)
        self._stats["exact_hits"] += 1
        logger.debug("Response cache exact hit", intent=entry.intent, access_count=entry.access_count)
        return entry

    def get_semantic(
        self,
        message: str,
        intent: str,
        threshold: float | None = None,
    ) -> CachedLLMResponse | None:
        """
        Find a cached answer to a similarly phrased question with the same intent.

        Args:
            message: Incoming user message
            intent: Intent label of the incoming message
            threshold: Minimum Jaccard similarity (``semantic_lookup_threshold`` when None)

        Returns:
            The first candidate whose similarity reaches the threshold
        """
        if not isinstance(message, str):
            raise TypeError(f"message must be a string, got {type(message).__name__}")
        threshold = self.config.semantic_lookup_threshold if threshold is None else threshold
        if not 0 < threshold <= 1:
            raise ValueError(f"threshold must be in (0, 1], got {threshold}")
        if not self.config.enable_semantic_cache:
            return None

        now = self._clock()
        candidate_ids = list(self._intent_index.get(_intent_key(intent), ()))
        for entry_id in candidate_ids:
            key = self._key_by_id.get(entry_id)
            entry = self._entries.get(key) if key is not None else None
            if entry is None:
                continue
            if entry.is_expired(now):
                self._remove(key)
                self._stats["expirations"] += 1
                continue

            similarity = jaccard_similarity(message, entry.original_message)
            if similarity >= threshold:
                entry.touch(now)
                self._stats["semantic_hits"] += 1
                logger.debug(
                    "Response cache semantic hit",
                    intent=entry.intent,
                    similarity=round(similarity, 3),
                )
                return entry

        self._stats["misses"] += 1
        return None

    def set(
        self,
        message: str,
        response_text: str,
        intent: str,
        confidence: float,
        quick_replies: Iterable[str] = (),
        context: Mapping[str, Any] | None = None,
        tags: Iterable[str] = (),
        ttl: float | None = None,
    ) -> CachedLLMResponse | None:
        """
        Cache an LLM response if it passes the cacheability rules.

        Returns:
            The new entry, or None when the response was not cacheable

        Raises:
            TypeError: On non-string message/response or malformed context
            ValueError: If confidence is outside [0, 1] or ttl is not positive
        """
        key = self.generate_key(message, context)
        if not isinstance(response_text, str):
            raise TypeError(f"response_text must be a string, got {type(response_text).__name__}")
        if not 0 <= confidence <= 1:
            raise ValueError(f"confidence must be in [0, 1], got {confidence}")
        ttl = self.config.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError(f"ttl must be positive, got {ttl}")

        if not isinstance(intent, str):
            raise TypeError(f"intent must be a string, got {type(intent).__name__}")
        if not self.is_cacheable(message, intent, confidence):
            self._stats["rejected"] += 1
            logger.debug("Response not cacheable", intent=intent, confidence=confidence)
            return None

        if key in self._entries:
            self._remove(key)
        elif len(self._entries) >= self.config.max_size:
            self._evict_lru()

        now = self._clock()
        entry = CachedLLMResponse(
            id=uuid.uuid4().hex,
            normalized_message_key=key,
            original_message=message,
            response_text=response_text,
            intent=intent,
            confidence=confidence,
            quick_replies=list(quick_replies),
            created_at=now,
            expires_at=now + ttl,
            last_accessed_at=now,
            tags=set(tags),
            owner_user_id=self._owner_from_context(context),
            similarity_threshold=self.config.similarity_threshold,
        )
        self._entries[key] = entry
        self._key_by_id[entry.id] = key
        self._intent_index.setdefault(_intent_key(intent), {})[entry.id] = None

        logger.debug("Response cached", intent=intent, size=len(self._entries))
        return entry

    def invalidate_by_tag(self, tag: str) -> int:
        keys = [key for key, entry in self._entries.items() if tag in entry.tags]
        for key in keys:
            self._remove(key)
        if keys:
            logger.info("Response cache invalidated by tag", tag=tag, removed=len(keys))
        return len(keys)

    def invalidate_intent(self, intent: str) -> int:
        ids = list(self._intent_index.get(_intent_key(intent), ()))
        for entry_id in ids:
            key = self._key_by_id.get(entry_id)
            if key is not None:
                self._remove(key)
        if ids:
            logger.info("Response cache invalidated by intent", intent=intent, removed=len(ids))
        return len(ids)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        self._key_by_id.clear()
        self._intent_index.clear()
        return count

    def cleanup_expired(self) -> int:
        """Remove every expired entry from the map and the intent index."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._remove(key)
        self._stats["expirations"] += len(expired)
        return len(expired)

    async def cleanup(self, batch_size: int = 200) -> int:
        """Incremental ``cleanup_expired`` yielding to the event loop between batches."""
        now = self._clock()
        keys = list(self._entries.keys())
        removed = 0
        for start in range(0, len(keys), batch_size):
            for key in keys[start : start + batch_size]:
                entry = self._entries.get(key)
                if entry is not None and entry.is_expired(now):
                    self._remove(key)
                    removed += 1
            await asyncio.sleep(0)
        self._stats["expirations"] += removed
        if removed:
            logger.info("Response cache cleanup completed", removed=removed, remaining=len(self._entries))
        return removed

    def get_stats(self) -> dict[str, Any]:
        entries = list(self._entries.values())
        total = len(entries)
        by_intent: dict[str, int] = {}
        for entry in entries:
            by_intent[entry.intent] = by_intent.get(entry.intent, 0) + 1

        memory_bytes = sum(len(json.dumps(entry.to_dict(), ensure_ascii=False).encode("utf-8")) for entry in entries)
        return {
            "total_entries": total,
            "max_size": self.config.max_size,
            "entries_by_intent": by_intent,
            "average_access_count": (sum(e.access_count for e in entries) / total) if total else 0.0,
            "hit_rate": (sum(1 for e in entries if e.access_count > 1) / total) if total else 0.0,
            "memory_usage_bytes": memory_bytes,
            **self._stats,
        }

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        self._key_by_id.pop(entry.id, None)
        intent_key = _intent_key(entry.intent)
        ids = self._intent_index.get(intent_key)
        if ids is not None:
            ids.pop(entry.id, None)
            if not ids:
                del self._intent_index[intent_key]

    def _evict_lru(self) -> None:
        lru_key = min(self._entries, key=lambda k: self._entries[k].last_accessed_at)
        evicted = self._entries[lru_key]
        self._remove(lru_key)
        self._stats["evictions"] += 1
        logger.debug("Response cache evicted LRU entry", intent=evicted.intent, last_accessed_at=evicted.last_accessed_at)

    @staticmethod
    def _owner_from_context(context: Mapping[str, Any] | None) -> str | None:
        if not context:
            return None
        owner = context.get("user_id")
        profile = context.get("user_profile")
        if owner is None and isinstance(profile, Mapping):
            owner = profile.get("id")
        return str(owner) if owner is not None else None
