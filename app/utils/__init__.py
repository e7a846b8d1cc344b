"""
Utilidades del servicio de facturación.
"""

from app.utils.hmac_utils import (
    generate_signature,
    verify_signature,
    parse_signature_header,
    sign_params,
)
from app.utils.retry import retry_async, backoff_delay

__all__ = [
    # HMAC
    "generate_signature",
    "verify_signature",
    "parse_signature_header",
    "sign_params",
    # Retry
    "retry_async",
    "backoff_delay",
]
