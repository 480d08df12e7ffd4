"""
FastAPI Plugin Gateway

Serves drop-in API plugins under /api, meters their usage and exposes the
discovery endpoints (/api-list, /stats).
"""

import logging
import sys
import time
from contextlib import asynccontextmanager
from http import HTTPStatus
from pathlib import Path
from typing import AsyncGenerator, Optional

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException

from gateway import __version__
from gateway.config import Settings, load_static_config, resolve_port, settings
from gateway.discovery import build_api_list, build_stats
from gateway.errors import RouteConflict
from gateway.middleware import GatewayMiddleware, LoggingMiddleware
from gateway.plugin_system import PluginManager, RegistryService
from gateway.router import PluginRouter
from gateway.usage import UsageStoreService
from gateway.utils import PrettyJSONResponse, error_response


def configure_logging(app_settings: Settings) -> None:
    """Configure structlog to write to stdout and, when LOG_FILE is set, to a file"""
    handlers: list = [logging.StreamHandler(sys.stdout)]
    if app_settings.LOG_FILE:
        log_file = Path(app_settings.LOG_FILE)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=logging.DEBUG if app_settings.DEBUG else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Suppress watchfiles.main INFO logging in DEBUG mode to prevent "1 change detected" spam
    if app_settings.DEBUG:
        logging.getLogger("watchfiles.main").setLevel(logging.WARNING)


logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager"""
    app_settings: Settings = app.state.settings

    # Startup
    logger.info("Starting Plugin Gateway", version=__version__)
    static_config = load_static_config(app_settings.STATIC_CONFIG_PATH)

    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(app_settings.REQUEST_TIMEOUT),
        follow_redirects=True,
        limits=httpx.Limits(
            max_connections=app_settings.MAX_CONNECTIONS,
            max_keepalive_connections=app_settings.MAX_KEEPALIVE_CONNECTIONS,
        ),
    )

    registry = RegistryService()
    plugin_manager = PluginManager(
        registry,
        system_plugins_dir=app_settings.SYSTEM_PLUGINS_DIR,
        user_plugins_dir=app_settings.USER_PLUGINS_DIR,
        config_path=app_settings.PLUGIN_CONFIG_PATH,
        static_config=static_config,
        http_client=http_client,
    )
    try:
        counts = plugin_manager.load_plugins()
    except RouteConflict as e:
        logger.error(
            "Route conflict between plugins, refusing to start",
            route=e.route,
            plugin=e.plugin_name,
            existing_plugin=e.existing_name,
        )
        await http_client.aclose()
        raise
    logger.info("Plugin system initialized", counts=counts)

    usage = UsageStoreService(app_settings.STATS_FILE)
    usage.restore()
    usage.start(app_settings.STATS_FLUSH_INTERVAL)

    app.state.static_config = static_config
    app.state.registry = registry
    app.state.plugin_manager = plugin_manager
    app.state.usage = usage
    app.state.plugin_router = PluginRouter(
        registry,
        usage,
        plugin_manager.environment_for,
        timeout=app_settings.PLUGIN_TIMEOUT,
    )

    yield

    # Shutdown
    logger.info("Shutting down Plugin Gateway")
    if not await usage.stop():
        logger.warning("Final usage statistics flush failed")
    await http_client.aclose()


async def health_check() -> dict:
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": time.time()}


async def api_list(request: Request) -> Response:
    """List the registered APIs and the static configuration"""
    state = request.app.state
    listing = build_api_list(state.registry, state.static_config, state.settings.API_PREFIX)
    return PrettyJSONResponse(content=listing.model_dump())


async def stats(request: Request) -> Response:
    """Aggregate usage statistics"""
    state = request.app.state
    result = build_stats(state.usage.snapshot(), state.registry)
    return PrettyJSONResponse(content=result.model_dump(by_alias=True))


async def plugin_status(request: Request) -> Response:
    """Get plugin status and information"""
    return PrettyJSONResponse(content=request.app.state.plugin_manager.get_plugin_status())


async def dispatch_plugin(path: str, request: Request) -> Response:
    """Hand the request to the plugin registered for ``path``"""
    return await request.app.state.plugin_router.dispatch(request, path)


async def not_found(path: str, request: Request) -> Response:
    """Fallback for everything outside the known routes"""
    logger.warning("Unmatched request", method=request.method, path=request.url.path)
    return error_response(404, "Not Found", "Page not found")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Custom HTTP exception handler"""
    return error_response(exc.status_code, HTTPStatus(exc.status_code).phrase, str(exc.detail))


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render unexpected failures without internal details"""
    logger.error("Server error", path=request.url.path, error=repr(exc), exc_info=exc)
    return error_response(500, "Internal server error", "An unexpected error occurred")


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """Build the gateway application"""
    app_settings = app_settings or settings
    configure_logging(app_settings)

    app = FastAPI(
        title="Plugin Gateway",
        description="Drop-in API plugins with shared routing and usage statistics",
        version=__version__,
        lifespan=lifespan,
        default_response_class=PrettyJSONResponse,
    )
    app.state.settings = app_settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(GatewayMiddleware)

    prefix = "/" + app_settings.API_PREFIX.strip("/")
    methods = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

    app.add_api_route("/health", health_check, methods=["GET"])
    app.add_api_route("/api-list", api_list, methods=["GET"], response_model=None)
    app.add_api_route("/stats", stats, methods=["GET"], response_model=None)
    app.add_api_route("/plugins/status", plugin_status, methods=["GET"], response_model=None)
    app.add_api_route(prefix + "/{path:path}", dispatch_plugin, methods=methods, response_model=None)
    app.add_api_route("/{path:path}", not_found, methods=methods, response_model=None)

    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = resolve_port(settings, load_static_config(settings.STATIC_CONFIG_PATH))
    uvicorn.run(
        "gateway.main:app",
        host=settings.HOST,
        port=port,
        reload=settings.DEBUG,
        reload_excludes=["logs/", "logs/*", "*.log", "db.json", "__pycache__/", "*.pyc"],
        log_level="info" if not settings.DEBUG else "debug",
    )
