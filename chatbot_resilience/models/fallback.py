"""
Modelos de datos servidos por el sistema de fallback.

Los valores leídos desde Redis o desde disco llegan como JSON plano; se
validan contra estos modelos antes de entregarlos al chatbot.
"""

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UserFallbackData(BaseModel):
    """Datos mínimos de un usuario necesarios para atender un mensaje"""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = "Cliente"
    phone: str
    whatsapp: str | None = None
    email: str | None = None
    has_active_subscription: bool = False
    subscription_status: str = "none"
    last_known_good: datetime = Field(default_factory=_utcnow)


class SubscriptionStatus(BaseModel):
    """Estado de la suscripción de un usuario"""

    model_config = ConfigDict(extra="ignore")

    has_active: bool
    status: str
    plan_type: str
    next_billing_date: datetime | None = None

    @classmethod
    def unknown(cls) -> "SubscriptionStatus":
        """Valor por defecto cuando ni la base ni el cache responden"""
        return cls(has_active=False, status="unknown", plan_type="unknown")


class InteractionRecord(BaseModel):
    """Interacción de WhatsApp pendiente de persistir"""

    model_config = ConfigDict(extra="ignore")

    phone: str
    message: str
    response: str | None = None
    intent: str | None = None
    user_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
