from dataclasses import dataclass
from time import perf_counter
from uuid import uuid4

from fastapi import Request
from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

REQUEST_ID_HEADER = "X-Request-ID"
PROCESSING_TIME_HEADER = "X-Processing-Time-Ms"


@dataclass
class RequestContext:
    request_id: str
    start_time: float

    @property
    def elapsed_ms(self) -> int:
        return int((perf_counter() - self.start_time) * 1000)


def create_request_context() -> RequestContext:
    # Always server-generated: the id names the request's workspace on disk.
    return RequestContext(request_id=uuid4().hex, start_time=perf_counter())


def get_request_context(request: Request) -> RequestContext:
    """Return the context attached by the middleware, creating one if absent."""
    context = getattr(request.state, "context", None)
    if context is None:
        context = create_request_context()
        request.state.context = context
    return context


class RequestContextMiddleware:
    """Attach a ``RequestContext`` to each HTTP request and echo its id.

    Written against raw ASGI so the route keeps the server's ``receive``
    channel and ``Request.is_disconnected()`` sees the client going away.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        context = create_request_context()
        scope.setdefault("state", {})["context"] = context

        async def send_with_context(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                headers[REQUEST_ID_HEADER] = context.request_id
                headers[PROCESSING_TIME_HEADER] = str(context.elapsed_ms)
            await send(message)

        await self.app(scope, receive, send_with_context)
