"""
Utilidades para firmas HMAC-SHA256.
Usadas para verificar webhooks de pasarelas y firmar requests a Flow.
"""

import hashlib
import hmac
from typing import Any, Mapping

import structlog


logger = structlog.get_logger(__name__)


def generate_signature(payload: bytes | str, secret: str) -> str:
    """
    Genera una firma HMAC-SHA256 para un payload.

    Args:
        payload: Datos a firmar
        secret: Clave secreta

    Returns:
        Firma hexadecimal
    """
    if isinstance(payload, str):
        payload = payload.encode("utf-8")

    return hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256,
    ).hexdigest()


def verify_signature(
    payload: bytes | str,
    signature: str,
    secret: str,
) -> bool:
    """
    Verifica una firma HMAC-SHA256 en tiempo constante.

    Nunca lanza excepción: una firma con formato inválido es simplemente
    una firma que no coincide.
    """
    expected = generate_signature(payload, secret)

    try:
        return hmac.compare_digest(
            expected.encode("ascii"),
            signature.encode("ascii"),
        )
    except (UnicodeEncodeError, AttributeError):
        return False


def parse_signature_header(header: str, separators: str = ";,") -> dict[str, str]:
    """
    Parsea un header de firma tipo "ts=123;v1=abc" (o separado por comas).

    Returns:
        Dict con las partes encontradas; vacío si el formato no es válido
    """
    parts: dict[str, str] = {}
    normalized = header
    for sep in separators[1:]:
        normalized = normalized.replace(sep, separators[0])

    for item in normalized.split(separators[0]):
        if "=" in item:
            key, value = item.split("=", 1)
            parts[key.strip()] = value.strip()

    return parts


def sign_params(params: Mapping[str, Any], secret: str) -> str:
    """
    Firma parámetros al estilo de la API de Flow.

    Concatena `clave + valor` en orden alfabético de clave y firma el
    resultado con HMAC-SHA256.
    """
    to_sign = "".join(
        f"{key}{params[key]}" for key in sorted(params) if params[key] is not None
    )
    return generate_signature(to_sign, secret)
