"""ASGI middleware binding a trace ID to each HTTP request.

The trace ID is read from the ``X-Trace-ID`` request header (or generated),
bound to the logging context for the duration of the request and echoed in
the response headers, including error responses produced by exception
handlers.
"""

from fastapi import FastAPI
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from libs.common.logging.context import (
    TRACE_ID_HEADER,
    clear_trace_id,
    generate_trace_id,
    set_trace_id,
)


class ASGITraceIDMiddleware:
    """Trace ID middleware implemented at the raw ASGI level."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        trace_id_bytes = headers.get(TRACE_ID_HEADER.lower().encode())
        trace_id = trace_id_bytes.decode() if trace_id_bytes else generate_trace_id()

        set_trace_id(trace_id)

        async def send_with_trace_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_headers = list(message.get("headers", []))
                response_headers.append((TRACE_ID_HEADER.lower().encode(), trace_id.encode()))
                message["headers"] = response_headers
            await send(message)

        try:
            await self.app(scope, receive, send_with_trace_id)
        finally:
            clear_trace_id()


def add_trace_id_middleware(app: FastAPI) -> None:
    """Register ASGITraceIDMiddleware on a FastAPI application."""
    app.add_middleware(ASGITraceIDMiddleware)
