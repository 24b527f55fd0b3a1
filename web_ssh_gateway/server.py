"""
HTTP / WebSocket server

Starlette application exposing the gateway to the browser: SSH slot
management, file operations on the local workspace or a connected slot,
uploads/downloads, and the terminal WebSocket at ``/ws/terminal``.
"""

import contextlib
import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import parse_qs

import uvicorn
from pydantic import BaseModel, ValidationError
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.datastructures import UploadFile
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route, WebSocketRoute
from starlette.websockets import WebSocket

from . import __version__
from .config import AppConfig, load_config
from .errors import FileTooLarge, GatewayError, InvalidRequest
from .gateway import Gateway
from .models import (
    BatchRequest,
    ConnectRequest,
    CredentialUploadResult,
    MkdirRequest,
    RenameRequest,
    SlotRequest,
    TransferRequest,
)
from .security import AuthManager

logger = logging.getLogger(__name__)

PUBLIC_PATHS = {"/", "/health", "/status", "/api/auth/token"}


# --- helpers ---

def _get_client_ip(scope) -> str:
    client = scope.get("client")
    if isinstance(client, (list, tuple)) and client:
        return str(client[0])
    return "0.0.0.0"


def _get_header(scope, name: str) -> Optional[str]:
    key = name.lower().encode()
    for k, v in scope.get("headers") or []:
        if k.lower() == key:
            return v.decode("latin-1")
    return None


def _get_query_param(scope, name: str) -> Optional[str]:
    query = parse_qs((scope.get("query_string") or b"").decode("latin-1"))
    values = query.get(name)
    return values[0] if values else None


def _cors_headers(cors_origins: list, origin: str) -> list:
    allow_origin = "*"
    if "*" not in cors_origins:
        allow_origin = origin if origin in cors_origins else (cors_origins[0] if cors_origins else "*")
    return [
        (b"access-control-allow-origin", allow_origin.encode()),
        (b"access-control-allow-methods", b"GET, POST, PATCH, DELETE, OPTIONS"),
        (b"access-control-allow-headers", b"Content-Type, Authorization, X-API-Key, X-Client-ID"),
        (b"access-control-max-age", b"86400"),
    ]


def _gateway(request) -> Gateway:
    return request.app.state.gateway


def _slot(value: Optional[str]) -> Optional[str]:
    return value or None


async def _parse_body(request: Request, model: type) -> Any:
    """Validate a JSON body against a request model."""
    try:
        payload = await request.json()
    except ValueError:
        raise InvalidRequest("Request body must be valid JSON")
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return model(**payload)


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(by_alias=True)


# --- middleware ---

class ApiKeyAuthMiddleware:
    """Optional API key / JWT check in front of every non-public path"""

    def __init__(self, app, *, auth_manager: AuthManager, public_paths: set):
        self.app = app
        self.auth_manager = auth_manager
        self.enable_cors = auth_manager.config.enable_cors
        self.cors_origins = auth_manager.config.cors_origins
        self.public_paths = public_paths

    async def __call__(self, scope, receive, send):
        scope_type = scope.get("type")
        if scope_type == "http":
            await self._handle_http(scope, receive, send)
            return

        if scope_type == "websocket" and scope.get("path", "") not in self.public_paths:
            client_id = self._authenticate(scope, _get_client_ip(scope))
            if not client_id:
                await send({"type": "websocket.close", "code": 1008})
                return
            scope.setdefault("state", {})["client_id"] = client_id

        await self.app(scope, receive, send)

    async def _handle_http(self, scope, receive, send):
        origin = _get_header(scope, "origin") or "*"
        if self.enable_cors and scope.get("method") == "OPTIONS":
            await send({
                "type": "http.response.start",
                "status": 204,
                "headers": _cors_headers(self.cors_origins, origin),
            })
            await send({"type": "http.response.body", "body": b""})
            return

        if scope.get("path", "") not in self.public_paths:
            client_id = self._authenticate(scope, _get_client_ip(scope))
            if not client_id:
                headers = [(b"content-type", b"application/json")]
                if self.enable_cors:
                    headers += _cors_headers(self.cors_origins, origin)
                await send({"type": "http.response.start", "status": 401, "headers": headers})
                await send({"type": "http.response.body", "body": b'{"error":"Authentication failed"}'})
                return
            scope.setdefault("state", {})["client_id"] = client_id

        if not self.enable_cors:
            await self.app(scope, receive, send)
            return

        cors_headers = _cors_headers(self.cors_origins, origin)

        async def send_with_cors(message):
            if message.get("type") == "http.response.start":
                message["headers"] = list(message.get("headers", [])) + cors_headers
            await send(message)

        await self.app(scope, receive, send_with_cors)

    def _authenticate(self, scope, client_ip: str) -> Optional[str]:
        if not self.auth_manager.config.enable_auth:
            return "anonymous"
        if not self.auth_manager.is_ip_allowed(client_ip):
            logger.warning(f"Rejected request from disallowed IP {client_ip}")
            return None
        if not self.auth_manager.check_rate_limit(client_ip):
            logger.warning(f"Rate limit exceeded for {client_ip}")
            return None

        authorization = _get_header(scope, "authorization") or ""
        if authorization.startswith("Bearer "):
            return self.auth_manager.verify_token(authorization[7:])

        api_key = _get_header(scope, "x-api-key") or ""
        if api_key:
            client_id = _get_header(scope, "x-client-id") or ""
            if client_id and self.auth_manager.check_api_key(client_id, api_key):
                return client_id
            return None

        # Browsers cannot set headers on a WebSocket handshake.
        token = _get_query_param(scope, "token")
        if token:
            return self.auth_manager.verify_token(token)
        return None


# --- exception handlers ---

async def gateway_error_handler(request: Request, exc: GatewayError) -> Response:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def validation_error_handler(request: Request, exc: ValidationError) -> Response:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        messages.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    return JSONResponse({"error": "; ".join(messages) or "Invalid request"}, status_code=400)


async def unhandled_error_handler(request: Request, exc: Exception) -> Response:
    logger.error(f"Unhandled error in {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse({"error": "Internal server error"}, status_code=500)


# --- general routes ---

async def root_handler(request: Request) -> Response:
    return JSONResponse({
        "server": "web-ssh-gateway",
        "version": __version__,
        "endpoints": {
            "files": "/api/files",
            "ssh": "/api/ssh",
            "terminal": "/ws/terminal",
            "health": "/health",
            "status": "/status",
        },
    })


async def health_handler(request: Request) -> Response:
    return JSONResponse({"status": "healthy", "timestamp": time.time()})


async def status_handler(request: Request) -> Response:
    gateway = _gateway(request)
    return JSONResponse({
        "server": "web-ssh-gateway",
        "version": __version__,
        "ssh_connections": len(gateway.registry.list_connections()),
        "sessions": len(gateway.sessions.list_sessions()),
    })


async def token_handler(request: Request) -> Response:
    auth_manager: AuthManager = request.app.state.auth_manager
    try:
        payload = await request.json()
    except ValueError:
        raise InvalidRequest("Request body must be valid JSON")
    if not isinstance(payload, dict):
        raise InvalidRequest("Request body must be a JSON object")
    client_id = str(payload.get("client_id") or "")
    api_key = str(payload.get("api_key") or "")
    if not client_id or not api_key:
        raise InvalidRequest("client_id and api_key are required")

    token = auth_manager.generate_token(client_id, api_key)
    if not token:
        return JSONResponse({"error": "Authentication failed"}, status_code=401)
    return JSONResponse({
        "token": token,
        "token_type": "bearer",
        "expires_in": auth_manager.config.jwt_expiration,
    })


# --- SSH slot routes ---

async def upload_key_handler(request: Request) -> Response:
    gateway = _gateway(request)
    form = await request.form()
    try:
        slot_id = form.get("connectionId")
        upload = form.get("pemFile")
        if not slot_id or not isinstance(upload, UploadFile):
            raise InvalidRequest("connectionId and pemFile are required")
        limit = gateway.config.files.key_upload_limit
        key_bytes = await upload.read(limit + 1)
        gateway.store_credential(str(slot_id), key_bytes)
        result = CredentialUploadResult(connection_id=str(slot_id), file_name=upload.filename)
    finally:
        await form.close()
    return JSONResponse(_dump(result))


async def connect_handler(request: Request) -> Response:
    body = await _parse_body(request, ConnectRequest)
    await _gateway(request).connect(body.connection_id, body.host, body.port, body.username)
    return JSONResponse({"success": True, "connectionId": body.connection_id})


async def disconnect_handler(request: Request) -> Response:
    body = await _parse_body(request, SlotRequest)
    await _gateway(request).disconnect(body.connection_id)
    return JSONResponse({"success": True})


async def ssh_status_handler(request: Request) -> Response:
    slot_id = request.query_params.get("connectionId")
    if not slot_id:
        raise InvalidRequest("connectionId is required")
    return JSONResponse(_dump(_gateway(request).status(slot_id)))


# --- file routes ---

async def files_handler(request: Request) -> Response:
    gateway = _gateway(request)
    params = request.query_params
    slot_id = _slot(params.get("connectionId"))

    if request.method == "DELETE":
        path = params.get("path")
        if not path:
            raise InvalidRequest("Path is required")
        await gateway.delete_entry(path, slot_id)
        return JSONResponse({"success": True})

    listing = await gateway.list_directory(params.get("path") or "/", slot_id)
    return JSONResponse(_dump(listing))


async def rename_handler(request: Request) -> Response:
    body = await _parse_body(request, RenameRequest)
    await _gateway(request).rename_entry(body.old_path, body.new_path, _slot(body.connection_id))
    return JSONResponse({"success": True})


async def mkdir_handler(request: Request) -> Response:
    body = await _parse_body(request, MkdirRequest)
    await _gateway(request).make_directory(body.path, _slot(body.connection_id))
    return JSONResponse({"success": True})


def _results_response(results) -> Response:
    return JSONResponse({"success": True, "results": [_dump(r) for r in results]})


async def copy_handler(request: Request) -> Response:
    body = await _parse_body(request, BatchRequest)
    results = await _gateway(request).copy_entries(
        body.sources, body.destination, _slot(body.connection_id)
    )
    return _results_response(results)


async def move_handler(request: Request) -> Response:
    body = await _parse_body(request, BatchRequest)
    results = await _gateway(request).move_entries(
        body.sources, body.destination, _slot(body.connection_id)
    )
    return _results_response(results)


async def transfer_handler(request: Request) -> Response:
    body = await _parse_body(request, TransferRequest)
    results = await _gateway(request).transfer_entries(
        body.sources,
        body.destination,
        source_slot=_slot(body.source_connection_id),
        dest_slot=_slot(body.dest_connection_id),
        operation=body.operation,
    )
    return _results_response(results)


async def read_handler(request: Request) -> Response:
    path = request.query_params.get("path")
    if not path:
        raise InvalidRequest("Path is required")
    content = await _gateway(request).read_file(path, _slot(request.query_params.get("connectionId")))
    return JSONResponse(_dump(content))


async def upload_handler(request: Request) -> Response:
    gateway = _gateway(request)
    remote = request.url.path.endswith("/remote")
    form = await request.form()
    try:
        upload = form.get("file")
        if not isinstance(upload, UploadFile):
            raise InvalidRequest("No file uploaded")
        slot_id = _slot(form.get("connectionId"))
        if remote and not slot_id:
            raise InvalidRequest("connectionId is required")

        limit = gateway.config.files.upload_limit
        data = await upload.read(limit + 1)
        if len(data) > limit:
            raise FileTooLarge(f"File too large (max {limit // (1024 * 1024)}MB)")
        result = await gateway.upload_file(
            data, upload.filename or "", form.get("path") or "/", slot_id if remote else None
        )
    finally:
        await form.close()
    return JSONResponse(_dump(result))


async def download_handler(request: Request) -> Response:
    path = request.query_params.get("path")
    if not path:
        raise InvalidRequest("Path is required")
    download = await _gateway(request).download_entry(
        path, _slot(request.query_params.get("connectionId"))
    )
    headers = {"Content-Disposition": download.content_disposition()}
    if download.size is not None:
        headers["Content-Length"] = str(download.size)
    background = BackgroundTask(download.cleanup) if download.cleanup else None
    return StreamingResponse(
        download.chunks, media_type=download.media_type, headers=headers, background=background
    )


# --- terminal ---

async def terminal_endpoint(websocket: WebSocket):
    gateway: Gateway = websocket.app.state.gateway
    session_id = websocket.query_params.get("session") or gateway.config.terminal.default_session
    slot_id = _slot(websocket.query_params.get("connectionId"))
    await gateway.terminals.serve(websocket, session_id, slot_id)


# --- application ---

def create_app(gateway: Optional[Gateway] = None, config: Optional[AppConfig] = None) -> Starlette:
    """Build the Starlette app around a gateway (a fresh one if not given)."""
    if gateway is None:
        gateway = Gateway(config or load_config())
    config = gateway.config
    auth_manager = AuthManager(config.security)

    @contextlib.asynccontextmanager
    async def lifespan(app):
        await gateway.start()
        try:
            yield
        finally:
            await gateway.shutdown()

    routes = [
        Route("/", root_handler, methods=["GET"]),
        Route("/health", health_handler, methods=["GET"]),
        Route("/status", status_handler, methods=["GET"]),
        Route("/api/auth/token", token_handler, methods=["POST"]),
        Route("/api/ssh/upload-key", upload_key_handler, methods=["POST"]),
        Route("/api/ssh/connect", connect_handler, methods=["POST"]),
        Route("/api/ssh/disconnect", disconnect_handler, methods=["POST"]),
        Route("/api/ssh/status", ssh_status_handler, methods=["GET"]),
        Route("/api/files", files_handler, methods=["GET", "DELETE"]),
        Route("/api/files/rename", rename_handler, methods=["PATCH"]),
        Route("/api/files/mkdir", mkdir_handler, methods=["POST"]),
        Route("/api/files/copy", copy_handler, methods=["POST"]),
        Route("/api/files/move", move_handler, methods=["POST"]),
        Route("/api/files/transfer", transfer_handler, methods=["POST"]),
        Route("/api/files/read", read_handler, methods=["GET"]),
        Route("/api/upload", upload_handler, methods=["POST"]),
        Route("/api/upload/remote", upload_handler, methods=["POST"]),
        Route("/api/download", download_handler, methods=["GET"]),
        WebSocketRoute("/ws/terminal", terminal_endpoint),
    ]

    app = Starlette(
        routes=routes,
        middleware=[
            Middleware(ApiKeyAuthMiddleware, auth_manager=auth_manager, public_paths=PUBLIC_PATHS),
        ],
        exception_handlers={
            GatewayError: gateway_error_handler,
            ValidationError: validation_error_handler,
            Exception: unhandled_error_handler,
        },
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    app.state.auth_manager = auth_manager
    return app


def main(config_path: Optional[str] = None):
    config = load_config(config_path)
    app = create_app(config=config)
    host, port = config.server.host, config.server.port
    logger.info(f"Web SSH gateway listening on {host}:{port}")
    logger.debug(f"Effective configuration: {json.dumps(config.to_dict())}")
    uvicorn.run(app, host=host, port=port, log_level=config.server.log_level.lower())


if __name__ == "__main__":
    main()
