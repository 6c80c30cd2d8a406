import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_rid_ctx: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    """
    Request id of the request being served, or "" outside of a request.
    Log lines emitted from background threads therefore carry no id.
    """
    return _rid_ctx.get()


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Accepts a caller-supplied X-Request-ID (kiosks retry with the same id)
    or mints one, exposes it to log records and echoes it on the response.
    """

    def __init__(self, app, header_name: str = "X-Request-ID", max_length: int = 128):
        super().__init__(app)
        self.header_name = header_name
        self.max_length = max_length

    async def dispatch(self, request: Request, call_next):
        rid = (request.headers.get(self.header_name) or "").strip()[: self.max_length] or uuid.uuid4().hex
        token = _rid_ctx.set(rid)
        try:
            response: Response = await call_next(request)
        finally:
            _rid_ctx.reset(token)
        response.headers.setdefault(self.header_name, rid)
        return response
