"""Request-scoped identifier shared by middleware, handlers and log lines."""

from __future__ import annotations

import re
import uuid
from contextvars import ContextVar, Token

__all__ = [
    "REQUEST_ID_CONTEXT",
    "REQUEST_ID_HEADER",
    "clear_request_id",
    "get_request_id",
    "new_request_id",
    "request_id_from_header",
    "set_request_id",
]

REQUEST_ID_HEADER = "X-Request-ID"
REQUEST_ID_CONTEXT: ContextVar[str] = ContextVar("request_id", default="")

# Upstream ids are echoed into headers and logs; keep them short and printable.
_ALLOWED_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex}"


def request_id_from_header(value: str | None) -> str:
    """Reuse the caller's id when it is well formed, otherwise mint a new one."""

    if value:
        candidate = value.strip()
        if _ALLOWED_REQUEST_ID.match(candidate):
            return candidate
    return new_request_id()


def set_request_id(request_id: str) -> Token[str]:
    return REQUEST_ID_CONTEXT.set(request_id)


def get_request_id() -> str:
    """Return the active request id, or an empty string outside a request."""

    return REQUEST_ID_CONTEXT.get()


def clear_request_id(token: Token[str] | None = None) -> None:
    if token is not None:
        REQUEST_ID_CONTEXT.reset(token)
    else:
        REQUEST_ID_CONTEXT.set("")
