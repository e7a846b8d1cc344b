"""
INSERT ... ON CONFLICT según el dialecto de la sesión.
"""

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def dialect_insert(session: AsyncSession, model: Any):
    """Retorna un insert con soporte de on_conflict_* para el motor actual."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect: {dialect}")


def non_null(values: dict[str, Any]) -> dict[str, Any]:
    """Descarta valores None para no pisar columnas con datos previos."""
    return {key: value for key, value in values.items() if value is not None}
