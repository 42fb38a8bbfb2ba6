"""
Cache data structures.

``CacheEntry`` lives in process memory. ``DurableRecord`` is the versioned
envelope written to Redis and to the fallback directory; it is validated with
pydantic whenever it is read back so that corrupt or foreign payloads never
reach callers.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic_core import PydanticSerializationError, to_jsonable_python

from chatbot_resilience.core.shared.timing import is_expired, remaining_ttl

DURABLE_RECORD_VERSION = 1


class CacheLayer(str, Enum):
    """Cache layer identifiers, ordered from fastest to most durable."""

    MEMORY = "memory"
    REDIS = "redis"
    FILE = "file"


class CacheKeyError(ValueError):
    """Raised when a cache key is not a non-empty string."""


def validate_key(key: Any) -> str:
    if not isinstance(key, str):
        raise CacheKeyError(f"Cache key must be a string, got {type(key).__name__}")
    if not key.strip():
        raise CacheKeyError("Cache key must not be empty")
    return key


def validate_ttl(ttl_seconds: Any) -> float:
    if isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, (int, float)):
        raise TypeError(f"TTL must be a number of seconds, got {type(ttl_seconds).__name__}")
    if ttl_seconds <= 0:
        raise ValueError(f"TTL must be positive, got {ttl_seconds}")
    return float(ttl_seconds)


def to_jsonable(value: Any) -> Any:
    """Convert a value to plain JSON types (pydantic models, datetimes and sets included).

    Raises:
        TypeError: If the value cannot be represented as JSON.
    """
    try:
        jsonable = to_jsonable_python(value)
        json.dumps(jsonable)
    except (PydanticSerializationError, TypeError, ValueError) as e:
        raise TypeError(f"Value of type {type(value).__name__} is not JSON serializable") from e
    return jsonable


@dataclass
class CacheEntry:
    """A single in-memory cache entry with expiration."""

    key: str
    value: Any
    created_at: float
    expires_at: float
    layer: CacheLayer = CacheLayer.MEMORY
    access_count: int = 0
    last_accessed: float = field(default=0.0)

    def __post_init__(self) -> None:
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be later than created_at")
        if not self.last_accessed:
            self.last_accessed = self.created_at

    def is_expired(self, now: float) -> bool:
        return is_expired(self.expires_at, now)

    def touch(self, now: float) -> None:
        """Update access tracking."""
        self.access_count += 1
        self.last_accessed = now

    def remaining_ttl(self, now: float) -> float:
        return remaining_ttl(self.expires_at, now)


class DurableRecord(BaseModel):
    """Versioned envelope stored in the remote and durable layers."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    version: Literal[1] = DURABLE_RECORD_VERSION
    key: str
    data: Any = None
    timestamp: float
    expires_at: float = Field(alias="expiresAt")

    @model_validator(mode="after")
    def check_expiry_order(self) -> "DurableRecord":
        if self.expires_at <= self.timestamp:
            raise ValueError("expiresAt must be later than timestamp")
        return self

    def is_expired(self, now: float) -> bool:
        return is_expired(self.expires_at, now)

    def dumps(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def loads(cls, raw: str | bytes) -> "DurableRecord | None":
        """Parse a stored payload; ``None`` when it is not a valid record."""
        try:
            return cls.model_validate_json(raw)
        except ValidationError:
            return None


@dataclass(frozen=True)
class CacheLookup:
    """Result of a tiered lookup, including which layer answered."""

    hit: bool
    value: Any = None
    layer: CacheLayer | None = None


MISS = CacheLookup(hit=False)
