"""
Request dispatch to registered plugins
"""

import asyncio
import inspect
from typing import Any, Callable, Optional

import httpx
import structlog
from fastapi import Request
from starlette.concurrency import run_in_threadpool
from starlette.responses import Response

from gateway.errors import PluginHandlerError
from gateway.plugin_system.contract import (
    PluginDescriptor,
    PluginEnvironment,
    ResponseSink,
    route_key,
)
from gateway.plugin_system.registry import RegistryService
from gateway.usage import UsageStoreService
from gateway.utils import PrettyJSONResponse, error_response, get_client_ip

logger = structlog.get_logger()

EnvironmentFactory = Callable[[PluginDescriptor], PluginEnvironment]


class PluginRouter:
    """
    Routes requests under the metered prefix to plugin handlers.

    Every request is counted before resolution; the count is attributed to
    its route key only when that key belongs to a registered plugin.
    """

    def __init__(
        self,
        registry: RegistryService,
        usage: UsageStoreService,
        environment_for: EnvironmentFactory,
        timeout: Optional[float] = None,
    ) -> None:
        self.registry = registry
        self.usage = usage
        self.environment_for = environment_for
        self.timeout = timeout

    def attribution_key(self, path: str) -> Optional[str]:
        key = route_key(path)
        return key if self.registry.knows_key(key) else None

    async def dispatch(self, request: Request, path: str) -> Response:
        """Dispatch ``request`` for ``path`` (relative to the metered prefix)."""
        key = self.attribution_key(path)
        self.usage.record_request(key)
        request.state.route_key = key

        descriptor = self.registry.resolve(path, request.method)
        if descriptor is None:
            if self.registry.has_path(path):
                return error_response(
                    405, "Method Not Allowed", f"{request.method} is not supported on this endpoint"
                )
            return error_response(404, "Not Found", f"No API found at {path}")

        request.state.plugin = descriptor.name

        logger.debug(
            "Dispatching to plugin",
            plugin=descriptor.name,
            method=request.method,
            path=path,
            client_ip=get_client_ip(request),
        )

        try:
            return await self._invoke(descriptor, request)
        except asyncio.CancelledError:
            logger.info("Client disconnected during dispatch", plugin=descriptor.name, path=path)
            raise
        except PluginHandlerError as e:
            return self._handler_failed(e, path)

    async def _invoke(self, descriptor: PluginDescriptor, request: Request) -> Response:
        sink = ResponseSink()
        env = self.environment_for(descriptor)

        try:
            if self.timeout is not None:
                result = await asyncio.wait_for(
                    self._call_handler(descriptor, request, sink, env), self.timeout
                )
            else:
                result = await self._call_handler(descriptor, request, sink, env)
            return self._build_response(sink, result)
        except asyncio.TimeoutError as e:
            raise PluginHandlerError(descriptor.name, 504, e) from e
        except httpx.HTTPError as e:
            raise PluginHandlerError(descriptor.name, 502, e) from e
        except Exception as e:
            raise PluginHandlerError(descriptor.name, 500, e) from e

    async def _call_handler(
        self, descriptor: PluginDescriptor, request: Request, sink: ResponseSink, env: PluginEnvironment
    ) -> Any:
        handler = descriptor.handler
        if inspect.iscoroutinefunction(handler):
            return await handler(request, sink, env)

        # Plain functions may block, keep them off the event loop
        result = await run_in_threadpool(handler, request, sink, env)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _build_response(self, sink: ResponseSink, result: Any) -> Response:
        response = sink.to_response()
        if response is not None:
            return response
        if isinstance(result, Response):
            return result
        if result is not None:
            return PrettyJSONResponse(content=result, status_code=sink.status_code, headers=sink.headers)
        return Response(status_code=204, headers=sink.headers)

    def _handler_failed(self, error: PluginHandlerError, path: str) -> Response:
        logger.error(
            "Plugin handler failed",
            plugin=error.plugin_name,
            path=path,
            status_code=error.status_code,
            error=repr(error.cause),
            exc_info=error.cause,
        )
        if error.status_code == 504:
            return error_response(504, "Gateway Timeout", "The API did not respond in time")
        if error.status_code == 502:
            return error_response(502, "Bad Gateway", "The upstream service request failed")
        return error_response(500, "Internal server error", "The API failed to handle the request")
