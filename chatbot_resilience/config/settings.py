import tempfile
from pathlib import Path

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Configuración del núcleo de cache y fallback del chatbot.
    Carga automáticamente las variables de entorno.
    """

    PROJECT_NAME: str = "Chatbot Resilience"
    VERSION: str = "0.1.0"

    DEBUG: bool = Field(False, description="Modo de depuración")
    ENVIRONMENT: str = Field("development", description="Entorno de ejecución")

    # Logging
    LOG_LEVEL: str = Field("INFO", description="Nivel de logging (DEBUG, INFO, WARNING, ERROR)")
    LOG_FORMAT: str = Field("colored", description="Formato de logs: colored, json o plain")
    LOG_FILE: str | None = Field(None, description="Archivo opcional para logs en JSON")

    # Remote cache (Redis compatible)
    REDIS_URL: str | None = Field(None, description="URL del almacén remoto; sin valor la capa remota se desactiva")
    REDIS_TOKEN: str | None = Field(None, description="Token de acceso del almacén remoto")
    REDIS_KEY_PREFIX: str = Field("chatbot:fallback", description="Prefijo de claves en el almacén remoto")

    # Tiered cache
    FALLBACK_STORAGE_DIR: str = Field(
        default_factory=lambda: str(Path(tempfile.gettempdir()) / "chatbot-fallback"),
        description="Directorio de la capa de fallback en disco",
    )
    CACHE_MEMORY_PROMOTION_TTL_SECONDS: int = Field(
        300, description="TTL máximo al promover una entrada a memoria desde una capa inferior"
    )
    CACHE_LAYER_TIMEOUT_SECONDS: float = Field(1.5, description="Timeout de las operaciones en Redis y disco")
    CACHE_CLEANUP_INTERVAL_SECONDS: int = Field(3600, description="Intervalo de limpieza del cache en capas")

    # Circuit breaker / fallback executor
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: int = Field(3, description="Fallos consecutivos antes de abrir el circuito")
    CIRCUIT_BREAKER_COOLDOWN_SECONDS: float = Field(60.0, description="Segundos en OPEN antes de probar HALF_OPEN")
    PRIMARY_OPERATION_TIMEOUT_SECONDS: float = Field(5.0, description="Timeout de la operación primaria")
    FALLBACK_CACHE_TTL_SECONDS: int = Field(3600, description="TTL de los resultados primarios guardados en cache")

    # Response cache
    RESPONSE_CACHE_MAX_SIZE: int = Field(500, description="Máximo de respuestas LLM en cache")
    RESPONSE_CACHE_TTL_SECONDS: int = Field(1200, description="TTL de las respuestas LLM en cache")
    RESPONSE_CACHE_SIMILARITY_THRESHOLD: float = Field(0.8, description="Umbral de similitud semántica (Jaccard)")
    RESPONSE_CACHE_SEMANTIC_LOOKUP_THRESHOLD: float = Field(
        0.85, description="Umbral por defecto de la búsqueda semántica (get_semantic)"
    )
    RESPONSE_CACHE_MIN_CONFIDENCE: float = Field(0.7, description="Confianza mínima para cachear una respuesta")
    RESPONSE_CACHE_CLEANUP_INTERVAL_SECONDS: int = Field(300, description="Intervalo de limpieza del cache de respuestas")

    # Conversation memory
    CONVERSATION_MAX_MESSAGES: int = Field(50, description="Máximo de mensajes por conversación")
    CONVERSATION_TIMEOUT_HOURS: float = Field(24.0, description="Horas de inactividad antes de expirar una conversación")
    CONVERSATION_ENABLE_SUMMARIZATION: bool = Field(
        False, description="Comprimir la mitad más antigua en un resumen en lugar de descartarla"
    )
    CONVERSATION_MAX_CONVERSATIONS: int = Field(10000, description="Máximo de conversaciones activas en memoria")
    CONVERSATION_CLEANUP_INTERVAL_SECONDS: int = Field(3600, description="Intervalo de limpieza de conversaciones")

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator(
        "CIRCUIT_BREAKER_FAILURE_THRESHOLD",
        "RESPONSE_CACHE_MAX_SIZE",
        "CONVERSATION_MAX_MESSAGES",
        "CONVERSATION_MAX_CONVERSATIONS",
        "FALLBACK_CACHE_TTL_SECONDS",
        "RESPONSE_CACHE_TTL_SECONDS",
        "CACHE_MEMORY_PROMOTION_TTL_SECONDS",
    )
    @classmethod
    def validate_positive_int(cls, v):
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator(
        "CIRCUIT_BREAKER_COOLDOWN_SECONDS",
        "PRIMARY_OPERATION_TIMEOUT_SECONDS",
        "CACHE_LAYER_TIMEOUT_SECONDS",
        "CONVERSATION_TIMEOUT_HOURS",
    )
    @classmethod
    def validate_positive_duration(cls, v):
        if v <= 0:
            raise ValueError("duration must be greater than 0")
        return v

    @field_validator(
        "RESPONSE_CACHE_SIMILARITY_THRESHOLD",
        "RESPONSE_CACHE_SEMANTIC_LOOKUP_THRESHOLD",
        "RESPONSE_CACHE_MIN_CONFIDENCE",
    )
    @classmethod
    def validate_ratio(cls, v):
        if not 0 < v <= 1:
            raise ValueError("ratio must be in (0, 1]")
        return v

    @field_validator("REDIS_URL", "REDIS_TOKEN", mode="before")
    @classmethod
    def blank_as_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @computed_field
    @property
    def is_development(self) -> bool:
        """Determina si está en modo desarrollo"""
        return self.DEBUG or self.ENVIRONMENT.lower() in ["development", "dev", "local"]

    @computed_field
    @property
    def remote_cache_enabled(self) -> bool:
        """La capa remota sólo se usa si hay URL configurada"""
        return self.REDIS_URL is not None

    @computed_field
    @property
    def conversation_timeout_seconds(self) -> float:
        return self.CONVERSATION_TIMEOUT_HOURS * 3600


# Singleton para configuración
_settings_instance = None


def get_settings() -> Settings:
    """
    Retorna una instancia cacheada de la configuración.
    Esto evita cargar las variables de entorno múltiples veces.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings()
    return _settings_instance


def reset_settings() -> None:
    """Descarta la instancia cacheada (usado en tests)."""
    global _settings_instance
    _settings_instance = None
