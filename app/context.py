"""
Contexto del request para logging.

El valor vive en una ContextVar para sobrevivir a los saltos entre
corrutinas del mismo request.
"""

from contextvars import ContextVar

# ID único por request HTTP
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
