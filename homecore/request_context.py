"""
Request Context - Request-ID und Scope pro Request.

Jeder HTTP-Request bekommt eine Request-ID (Header X-Request-ID oder neu
erzeugt) und einen Scope (Header X-Scope, sonst "global"). Beide stehen
ueber ContextVars allen Komponenten zur Verfuegung; die Request-ID wird in
jede Log-Zeile geschrieben.
"""

import logging
import re
import time
import uuid
from contextvars import ContextVar

from .constants import PATTERN_DEFAULT_SCOPE

logger = logging.getLogger(__name__)

_request_id_var: ContextVar[str] = ContextVar("request_id", default="")
_scope_var: ContextVar[str] = ContextVar("scope", default=PATTERN_DEFAULT_SCOPE)

_SCOPE_PATTERN = re.compile(r"^[A-Za-z0-9_.@-]{1,64}$")


def get_request_id() -> str:
    return _request_id_var.get()


def get_scope() -> str:
    """Scope des laufenden Requests (Benutzer oder global)."""
    return _scope_var.get()


class RequestContextMiddleware:
    """ASGI Middleware: setzt Request-ID und Scope, loggt die Dauer."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = ""
        user_scope = ""
        for key, value in scope.get("headers", []):
            if key == b"x-request-id":
                request_id = value.decode("utf-8", errors="replace")
            elif key == b"x-scope":
                user_scope = value.decode("utf-8", errors="replace").strip()

        request_id = request_id or uuid.uuid4().hex[:12]
        # Ungueltige Scopes fallen auf global zurueck
        if not _SCOPE_PATTERN.match(user_scope):
            user_scope = PATTERN_DEFAULT_SCOPE

        rid_token = _request_id_var.set(request_id)
        scope_token = _scope_var.set(user_scope)
        started = time.monotonic()
        status_holder = {"status": 0}

        async def send_with_request_id(message):
            if message["type"] == "http.response.start":
                status_holder["status"] = message.get("status", 0)
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", request_id.encode()))
                message["headers"] = headers
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            logger.debug(
                "%s %s -> %d (%.0f ms, scope=%s)",
                scope.get("method", ""), scope.get("path", ""),
                status_holder["status"], (time.monotonic() - started) * 1000, user_scope,
            )
            _scope_var.reset(scope_token)
            _request_id_var.reset(rid_token)


class StructuredFormatter(logging.Formatter):
    """Formatter mit Request-ID.

    Format:
        12:34:56 [homecore.controller] INFO: [req-abc123] Nachricht
    """

    def format(self, record: logging.LogRecord) -> str:
        request_id = _request_id_var.get()
        record.request_id = f"[req-{request_id}] " if request_id else ""
        return super().format(record)


def setup_structured_logging(level: int = logging.INFO) -> None:
    """Konfiguriert den Root-Logger mit dem StructuredFormatter."""
    fmt = "%(asctime)s [%(name)s] %(levelname)s: %(request_id)s%(message)s"
    formatter = StructuredFormatter(fmt=fmt, datefmt="%H:%M:%S")

    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers:
        handler.setFormatter(formatter)
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)
