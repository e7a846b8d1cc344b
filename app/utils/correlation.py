"""
Strings de correlación tenant/plan para órdenes de pasarelas.

Formato en el cable: ``tenant-{tenantId}-{planId}-{timestamp}``. El parseo se
ancla desde la derecha: el plan es un PlanId sin guiones y el timestamp son
los dígitos finales, por lo que tenant ids con guiones (UUIDs) se recuperan
completos.

La forma compacta (UUID en hex y timestamp en segundos) cabe en el
session_id de Transbank, limitado a 61 caracteres.
"""

import re
import secrets
import time
import uuid
from typing import NamedTuple

from app.schemas.plan import PlanId


REFERENCE_PREFIX = "tenant-"

_PLAN_ALTERNATION = "|".join(plan.value for plan in PlanId)
_REFERENCE_RE = re.compile(
    rf"^{REFERENCE_PREFIX}(?P<tenant_id>.+)-(?P<plan_id>{_PLAN_ALTERNATION})-(?P<timestamp>\d+)$"
)
_HEX_UUID_RE = re.compile(r"^[0-9a-f]{32}$")


class Correlation(NamedTuple):
    tenant_id: str
    plan_id: PlanId
    timestamp: int


def build_reference(
    tenant_id: str,
    plan_id: PlanId | str,
    timestamp_ms: int | None = None,
) -> str:
    """Construye la referencia de orden para una pasarela."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)

    plan_value = plan_id.value if isinstance(plan_id, PlanId) else str(plan_id)
    return f"{REFERENCE_PREFIX}{tenant_id}-{plan_value}-{timestamp_ms}"


def build_compact_reference(
    tenant_id: str,
    plan_id: PlanId | str,
    timestamp_s: int | None = None,
) -> str:
    """
    Variante corta de build_reference.

    Si el tenant es un UUID se escribe sin guiones; parse_reference con
    compact=True lo devuelve en su forma canónica.
    """
    if timestamp_s is None:
        timestamp_s = int(time.time())

    try:
        tenant_token = uuid.UUID(str(tenant_id)).hex
    except ValueError:
        tenant_token = str(tenant_id)

    return build_reference(tenant_token, plan_id, timestamp_s)


def parse_reference(reference: str | None, compact: bool = False) -> Correlation | None:
    """
    Recupera tenant y plan desde una referencia de orden.

    Args:
        reference: String recibido de la pasarela
        compact: Normaliza tenants en hex de 32 caracteres a UUID canónico

    Returns:
        Correlation o None si la referencia no tiene el formato esperado
    """
    if not reference:
        return None

    match = _REFERENCE_RE.match(reference.strip())
    if not match:
        return None

    tenant_id = match.group("tenant_id")
    if compact and _HEX_UUID_RE.match(tenant_id):
        tenant_id = str(uuid.UUID(hex=tenant_id))

    return Correlation(
        tenant_id=tenant_id,
        plan_id=PlanId(match.group("plan_id")),
        timestamp=int(match.group("timestamp")),
    )


def new_buy_order(prefix: str = "O") -> str:
    """Orden de compra única de 19 caracteres (límite Transbank: 26)."""
    return f"{prefix}{int(time.time())}{secrets.token_hex(4)}"
