"""
Planes de suscripción y tabla de montos cobrables.

Los montos están en pesos chilenos enteros (CLP no tiene decimales).
"""

import calendar
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict

from app.utils.exceptions import ConfigurationError


class PlanId(str, Enum):
    """Identificadores de plan."""

    FREE = "FREE"
    PRO = "PRO"
    BUSINESS = "BUSINESS"
    ENTERPRISE = "ENTERPRISE"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PlanLimits(BaseModel):
    """Límites numéricos del plan (-1 = ilimitado)."""

    model_config = ConfigDict(frozen=True)

    users: int
    records: int


class SubscriptionPlan(BaseModel):
    """Plan de suscripción (dato de referencia inmutable)."""

    model_config = ConfigDict(frozen=True)

    id: PlanId
    name: str
    price: int
    currency: str = "CLP"
    interval: BillingInterval = BillingInterval.MONTHLY
    features: tuple[str, ...] = ()
    limits: PlanLimits


PLANS: dict[PlanId, SubscriptionPlan] = {
    PlanId.FREE: SubscriptionPlan(
        id=PlanId.FREE,
        name="Free",
        price=0,
        features=("1 usuario", "100 registros"),
        limits=PlanLimits(users=1, records=100),
    ),
    PlanId.PRO: SubscriptionPlan(
        id=PlanId.PRO,
        name="Pro",
        price=29000,
        features=("5 usuarios", "1,000 registros", "Soporte por email"),
        limits=PlanLimits(users=5, records=1000),
    ),
    PlanId.BUSINESS: SubscriptionPlan(
        id=PlanId.BUSINESS,
        name="Business",
        price=79000,
        features=("25 usuarios", "10,000 registros", "Soporte prioritario"),
        limits=PlanLimits(users=25, records=10000),
    ),
    PlanId.ENTERPRISE: SubscriptionPlan(
        id=PlanId.ENTERPRISE,
        name="Enterprise",
        price=0,
        features=("Usuarios ilimitados", "Registros ilimitados", "SLA garantizado"),
        limits=PlanLimits(users=-1, records=-1),
    ),
}

# Montos cobrables por pasarelas chilenas. ENTERPRISE = 0 significa
# "contactar a ventas", no "gratis".
PLAN_AMOUNTS_CLP: dict[PlanId, int] = {
    PlanId.PRO: 29000,
    PlanId.BUSINESS: 79000,
    PlanId.ENTERPRISE: 0,
}


def coerce_plan_id(plan_id: "PlanId | str") -> PlanId | None:
    """Convierte un string a PlanId, o None si no es un plan conocido."""
    if isinstance(plan_id, PlanId):
        return plan_id
    try:
        return PlanId(str(plan_id).upper())
    except ValueError:
        return None


def get_plan(plan_id: PlanId | str) -> SubscriptionPlan:
    plan = coerce_plan_id(plan_id)
    if plan is None:
        raise ConfigurationError(f"Unknown plan: {plan_id}")
    return PLANS[plan]


def get_plan_amount(plan_id: PlanId | str) -> int:
    """
    Retorna el monto en CLP configurado para un plan.

    Raises:
        ConfigurationError: Si el plan no tiene monto configurado
            (FREE o un identificador desconocido)
    """
    plan = coerce_plan_id(plan_id)
    if plan is None or plan not in PLAN_AMOUNTS_CLP:
        raise ConfigurationError(f"No price configured for plan: {plan_id}")
    return PLAN_AMOUNTS_CLP[plan]


def get_chargeable_amount(plan_id: PlanId | str) -> int:
    """
    Monto cobrable para un checkout.

    A diferencia de get_plan_amount, rechaza montos en 0 (ENTERPRISE).
    """
    amount = get_plan_amount(plan_id)
    if amount <= 0:
        raise ConfigurationError(f"Plan {plan_id} has no chargeable amount")
    return amount


def add_months(moment: datetime, months: int) -> datetime:
    """Suma meses calendario, ajustando al último día del mes si es necesario."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def next_period_end(start: datetime, plan_id: PlanId | str) -> datetime:
    """Fin del periodo de facturación que comienza en `start`."""
    plan = get_plan(plan_id)
    months = 12 if plan.interval == BillingInterval.YEARLY else 1
    return add_months(start, months)
