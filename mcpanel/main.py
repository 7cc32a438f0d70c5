import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import anyio
from fastapi import APIRouter, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .auth import TokenAuth
from .config import settings
from .models import (
    BackupResponse,
    CommandRequest,
    CommandResponse,
    KickRequest,
    KickResponse,
    LogsResponse,
    MessageResponse,
    ResetRequest,
    ResetResponse,
    ServerActionResponse,
    ServerPropertiesContent,
    ServerPropertiesResponse,
    ServerPropertiesUpdate,
    ServerStatus,
    VersionChangeRequest,
    VersionChangeResponse,
)
from .services.broadcast import Subscription
from .services.errors import ServiceError
from .services.lifecycle import LifecycleController, build_controller

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("mc-manager")


async def _drain(websocket: WebSocket) -> None:
    # Client messages are ignored; this only notices the disconnect
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


async def _forward(websocket: WebSocket, subscription: Subscription) -> None:
    try:
        while True:
            message = await subscription.get()
            if message is None:
                await websocket.close(code=1013)
                return
            await websocket.send_json(message)
    except WebSocketDisconnect:
        return


async def _relay(websocket: WebSocket, subscription: Subscription) -> None:
    """Forward broadcasts until either side is done; both halves end together."""
    async with anyio.create_task_group() as task_group:

        async def run(half, *args) -> None:
            try:
                await half(*args)
            except Exception as exc:
                logger.debug("Observer connection closed: %s", exc)
            finally:
                task_group.cancel_scope.cancel()

        task_group.start_soon(run, _drain, websocket)
        task_group.start_soon(run, _forward, websocket, subscription)


def create_app(
    controller: Optional[LifecycleController] = None,
    auth: Optional[TokenAuth] = None,
) -> FastAPI:
    controller = controller or build_controller()
    auth = auth or TokenAuth()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await controller.startup()
        try:
            yield
        finally:
            await controller.shutdown()

    app = FastAPI(title="Minecraft Container Control", lifespan=lifespan)
    app.state.controller = controller
    api = APIRouter(prefix="/api", dependencies=[Depends(auth.require)])

    @app.exception_handler(ServiceError)
    def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.get("/api/health")
    def health() -> dict:
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @api.get("/status", response_model=ServerStatus)
    async def get_status() -> ServerStatus:
        return await controller.status()

    @api.post("/start", response_model=ServerActionResponse)
    async def start_server() -> ServerActionResponse:
        return await controller.start()

    @api.post("/stop", response_model=ServerActionResponse)
    async def stop_server() -> ServerActionResponse:
        return await controller.stop()

    @api.post("/restart", response_model=ServerActionResponse)
    async def restart_server() -> ServerActionResponse:
        return await controller.restart()

    @api.post("/kill", response_model=ServerActionResponse)
    async def kill_server() -> ServerActionResponse:
        return await controller.kill()

    @api.post("/command", response_model=CommandResponse)
    async def send_command(request: CommandRequest) -> CommandResponse:
        response = await controller.send_command(request.command)
        return CommandResponse(message="Command sent", response=response)

    @api.post("/kick", response_model=KickResponse)
    async def kick_player(request: KickRequest) -> KickResponse:
        await controller.kick(request.player_name, request.reason)
        return KickResponse(message=f"Kicked {request.player_name}")

    @api.post("/version/change", response_model=VersionChangeResponse)
    async def change_version(request: VersionChangeRequest) -> VersionChangeResponse:
        return await controller.change_version(
            request.version, request.server_type, request.forge_version
        )

    @api.post("/server/reset", response_model=ResetResponse)
    async def reset_server(request: ResetRequest) -> ResetResponse:
        return await controller.reset(
            delete_world=request.delete_world,
            delete_mods=request.delete_mods,
            delete_config=request.delete_config,
        )

    @api.get("/server-properties", response_model=ServerPropertiesResponse)
    async def get_server_properties() -> ServerPropertiesResponse:
        return ServerPropertiesResponse(properties=await controller.server_properties())

    @api.put("/server-properties", response_model=MessageResponse)
    async def update_server_properties(request: ServerPropertiesUpdate) -> MessageResponse:
        await controller.update_server_properties(request.properties)
        return MessageResponse(message="Properties updated. Restart server to apply.")

    @api.post("/server-properties/save", response_model=MessageResponse)
    async def save_server_properties(request: ServerPropertiesContent) -> MessageResponse:
        await controller.save_server_properties(request.content)
        return MessageResponse(message="server.properties saved successfully")

    @api.post("/backup", response_model=BackupResponse)
    async def run_backup() -> BackupResponse:
        return await controller.backup()

    @api.get("/logs", response_model=LogsResponse)
    def recent_logs() -> LogsResponse:
        return LogsResponse(lines=controller.logs.recent())

    app.include_router(api)

    @app.websocket("/ws")
    async def observe(websocket: WebSocket) -> None:
        if not auth.verify(auth.token_from(websocket)):
            await websocket.close(code=1008)
            return
        await websocket.accept()
        logger.info("Observer connected; sending log buffer")
        snapshot, subscription = controller.logs.subscribe()
        try:
            await websocket.send_json({"type": "log", "line": "[System] Connected to API. Fetching history..."})
            for line in snapshot:
                await websocket.send_json({"type": "log", "line": line})
            await _relay(websocket, subscription)
        except WebSocketDisconnect:
            pass
        finally:
            controller.logs.unsubscribe(subscription)
            logger.info("Observer disconnected")

    return app


app = create_app()
