"""
Custom middleware for the Plugin Gateway
"""

import time
from typing import Any, Awaitable, Callable, Dict

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from gateway import __version__
from gateway.utils import generate_request_id, get_client_ip

logger = structlog.get_logger()


def dispatch_context(request: Request) -> Dict[str, Any]:
    """Route key and plugin the router recorded for this request, if any."""
    state = request.state
    context = {}
    if getattr(state, "route_key", None):
        context["route_key"] = state.route_key
    if getattr(state, "plugin", None):
        context["plugin"] = state.plugin
    return context


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request once it is answered, with the plugin that served it"""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = generate_request_id()
        request.state.request_id = request_id
        log = logger.bind(request_id=request_id, method=request.method, path=request.url.path)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            log.error(
                "Request failed",
                error=repr(e),
                duration=time.perf_counter() - started,
                **dispatch_context(request),
            )
            raise

        duration = time.perf_counter() - started
        log.info(
            "Request served",
            status_code=response.status_code,
            duration=duration,
            client_ip=get_client_ip(request),
            **dispatch_context(request),
        )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration:.6f}"
        return response


class GatewayMiddleware(BaseHTTPMiddleware):
    """Stamps gateway headers on every response"""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        response.headers["X-Gateway-Version"] = __version__
        response.headers["X-Gateway-Timestamp"] = str(int(time.time()))
        return response
