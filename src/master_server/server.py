"""
HTTP server for the master server.

Binds the registry service to aiohttp routes:

    GET    /server               list live registrations
    POST   /server               register (or refresh) a server
    GET    /server/{id}/{port}   heartbeat
    PUT    /server/{id}/{port}   update
    DELETE /server/{id}/{port}   deregister
"""

import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable

from aiohttp import web

from .registry import RegistryCleaner, RegistryService, RegistryStorage
from .registry.service import utc_now
from .utils.config import MasterServerConfig
from .utils.errors import (
    InvalidInputError,
    MasterServerError,
    NetworkError,
    error_context,
)
from .utils.logging import get_logger

logger = get_logger(__name__)

SERVICE_KEY = web.AppKey("registry_service", RegistryService)
CONFIG_KEY = web.AppKey("master_server_config", MasterServerConfig)

CORS_ALLOW_HEADERS = "Origin, X-Requested-With, Content-Type, Accept"
GENERIC_ERROR_BODY = {"error": "Internal Server Error"}


def caller_address(request: web.Request, trust_forwarded_for: bool = False) -> str:
    """
    The address every registry decision is keyed on.

    With trust_forwarded_for set, the first X-Forwarded-For hop wins when
    present; otherwise the peer address of the connection.
    """
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.remote or ""


def _address(request: web.Request) -> str:
    return caller_address(request, request.app[CONFIG_KEY].server.trust_forwarded_for)


async def _read_json_object(request: web.Request) -> dict:
    try:
        body = await request.json()
    except ValueError as e:
        raise InvalidInputError(
            field="body", value=None,
            constraint="request body must be valid JSON",
            message="Request body is not valid JSON",
        ) from e

    if not isinstance(body, dict):
        raise InvalidInputError(
            field="body", value=body,
            constraint="request body must be a JSON object",
            message="Request body must be a JSON object",
        )
    return body


# Handlers

async def list_servers(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    try:
        entries = await service.list_live()
    except MasterServerError as e:
        logger.error("list_servers_failed", error=str(e), exc_info=True)
        return web.json_response(GENERIC_ERROR_BODY, status=500)

    return web.json_response([entry.serialize() for entry in entries])


async def register_server(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    address = _address(request)

    with error_context("server", "register", address=address):
        body = await _read_json_object(request)
        result = await service.register(address, body.get("name"), body.get("port"))

    return web.json_response(
        result.entry.serialize(include_id=True),
        status=201 if result.created else 200
    )


async def heartbeat(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    address = _address(request)
    registration_id = request.match_info["id"]

    with error_context("server", "heartbeat", address=address, id=registration_id):
        await service.heartbeat(address, registration_id, request.match_info["port"])

    return web.json_response({"status": "ok"})


async def update_server(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    address = _address(request)
    registration_id = request.match_info["id"]

    with error_context("server", "update", address=address, id=registration_id):
        body = await _read_json_object(request)
        await service.update(address, registration_id, request.match_info["port"], body)

    return web.Response(status=204)


async def deregister_server(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    address = _address(request)
    registration_id = request.match_info["id"]

    with error_context("server", "deregister", address=address, id=registration_id):
        await service.deregister(address, registration_id, request.match_info["port"])

    return web.Response(status=204)


# Middlewares

@web.middleware
async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """Resolve registry errors into structured JSON responses."""
    try:
        return await handler(request)
    except MasterServerError as e:
        fields = dict(e.context.metadata)
        fields.update(
            method=request.method,
            path=request.path,
            component=e.context.component,
            operation=e.context.operation,
            error_code=e.code,
            error=e.message,
        )
        log = getattr(logger, e.severity.value)
        log("request_failed", **fields)
        return web.json_response(e.to_dict(), status=e.http_status)


@web.middleware
async def request_logging_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """Access log: one event per request."""
    started = time.perf_counter()
    status = 500
    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as e:
        status = e.status
        raise
    finally:
        logger.info(
            "http_request",
            method=request.method,
            path=request.path,
            status=status,
            remote=request.remote,
            duration_ms=round((time.perf_counter() - started) * 1000, 2)
        )


def cors_middleware(allow_origin: str = "*") -> Callable:
    """Add CORS headers to every response, answering preflights directly."""
    headers = {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
    }

    @web.middleware
    async def middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response(status=204)
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, DELETE, OPTIONS"
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                e.headers.update(headers)
                raise
        response.headers.update(headers)
        return response

    return middleware


def create_app(config: MasterServerConfig, service: RegistryService) -> web.Application:
    """
    Build the aiohttp application.

    Args:
        config: Server configuration
        service: Registry service the handlers call into
    """
    app = web.Application(middlewares=[
        request_logging_middleware,
        cors_middleware(config.server.cors_allow_origin),
        error_middleware,
    ])
    app[SERVICE_KEY] = service
    app[CONFIG_KEY] = config

    app.router.add_get("/server", list_servers)
    app.router.add_post("/server", register_server)
    app.router.add_get("/server/{id}/{port}", heartbeat)
    app.router.add_put("/server/{id}/{port}", update_server)
    app.router.add_delete("/server/{id}/{port}", deregister_server)

    static_dir = config.server.static_dir
    if static_dir is not None:
        _add_static_routes(app, Path(static_dir))

    return app


def _add_static_routes(app: web.Application, static_dir: Path) -> None:
    """Serve a front-end directory at the site root."""
    index = static_dir / "index.html"

    async def serve_index(request: web.Request) -> web.StreamResponse:
        if not index.is_file():
            raise web.HTTPNotFound()
        return web.FileResponse(index)

    app.router.add_get("/", serve_index)
    app.router.add_static("/", static_dir)
    logger.info("static_directory_mounted", path=str(static_dir))


# Lifecycle

@dataclass
class ServerHandle:
    """Everything a running master server owns."""
    config: MasterServerConfig
    app: web.Application
    runner: web.AppRunner
    site: web.TCPSite
    storage: RegistryStorage
    service: RegistryService
    cleaner: RegistryCleaner

    @property
    def port(self) -> int:
        """Port actually bound (useful when configured with port 0)."""
        for address in self.runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return address[1]
        return self.config.server.port


async def run_server(
    config: MasterServerConfig,
    clock: Callable[[], datetime] = utc_now
) -> ServerHandle:
    """
    Open storage, start the reaper and bind the listener.

    Args:
        config: Full server configuration
        clock: Source of "now" shared by the service and the reaper

    Returns:
        Handle to pass to close_server()
    """
    storage = RegistryStorage(
        db_path=config.database.path,
        timeout=config.database.timeout,
        operation_timeout=config.database.operation_timeout,
        journal_mode=config.database.journal_mode,
        synchronous=config.database.synchronous,
    )
    await storage.initialize()

    service = RegistryService(storage, config.registry, clock=clock)
    cleaner = RegistryCleaner(storage, config.registry, clock=clock)
    await cleaner.start_periodic_cleanup()

    app = create_app(config, service)
    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, config.server.host, config.server.port)

    try:
        await site.start()
    except OSError as e:
        await runner.cleanup()
        await cleaner.stop_periodic_cleanup()
        await storage.close()
        raise NetworkError(
            f"Failed to bind {config.server.host}:{config.server.port}: {e}", cause=e
        ) from e

    handle = ServerHandle(
        config=config,
        app=app,
        runner=runner,
        site=site,
        storage=storage,
        service=service,
        cleaner=cleaner,
    )
    logger.info("master_server_started", host=config.server.host, port=handle.port,
                database=str(config.database.path))
    return handle


async def close_server(handle: ServerHandle) -> None:
    """Stop the listener, then the reaper, then close storage."""
    await handle.runner.cleanup()
    await handle.cleaner.stop_periodic_cleanup()
    await handle.storage.close()
    logger.info("master_server_stopped")


__all__ = [
    'caller_address',
    'create_app',
    'run_server',
    'close_server',
    'ServerHandle',
    'SERVICE_KEY',
    'CONFIG_KEY',
]
