"""Lifecycle control of the managed Minecraft container.

The controller owns the action state and the current container handle. Every
operation claims the action state up front and restores ``idle`` on the way
out, whatever happens in between; failures are raised to the caller and also
announced on the log channel so already-connected observers see them.
"""

import asyncio
import contextlib
import logging
import os
import time
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional

from dotenv import set_key

from ..config import Settings, settings as default_settings
from ..models import (
    ActionState,
    BackupResponse,
    ContainerStatus,
    ResetResponse,
    ServerActionResponse,
    ServerConfig,
    ServerStatus,
    VersionChangeResponse,
)
from .broadcast import Broadcaster
from .data_service import (
    empty_directory,
    ensure_query_enabled,
    read_server_properties,
    save_server_properties,
    update_server_properties,
)
from .errors import Busy, Conflict, GatewayUnavailable, NotFound, RuntimeFailure, ServiceError
from .locator import ContainerLocator
from .log_stream import LogStreamManager
from .polling import poll_until
from .rcon_gateway import CommandGateway
from .readiness import ProbeResult, ReadinessProber
from .runtime import ContainerRuntime, ContainerSpec, ContainerState

logger = logging.getLogger("mc-manager")

VERSION_ENV_KEYS = ("MC_VERSION=", "SERVER_TYPE=", "FORGE_VERSION=")


def derive_status(state: ContainerState, server_ready: bool) -> ContainerStatus:
    if state.running:
        return ContainerStatus.RUNNING if server_ready else ContainerStatus.STARTING
    if state.status == "created":
        return ContainerStatus.CREATED
    return ContainerStatus.STOPPED


def discover_binds(mounts: list[Dict[str, Any]], defaults: tuple[str, ...]) -> list[str]:
    """Reuse the volumes this API container sees for the game container.

    Named volumes are referenced by name, bind mounts by host path; anything
    not mounted here falls back to the default source.
    """

    def source_for(destination: str) -> Optional[str]:
        for mount in mounts:
            if mount.get("Destination") == destination:
                return mount.get("Name") if mount.get("Type") == "volume" else mount.get("Source")
        return None

    binds = []
    for default in defaults:
        default_source, destination = default.split(":", 1)
        binds.append(f"{source_for(destination) or default_source}:{destination}")

    properties_destination = "/server/server.properties"
    properties_source = source_for(properties_destination)
    if properties_source:
        binds.append(f"{properties_source}:{properties_destination}")
    return binds


class LifecycleController:
    def __init__(
        self,
        runtime: ContainerRuntime,
        locator: ContainerLocator,
        prober: ReadinessProber,
        gateway: CommandGateway,
        logs: LogStreamManager,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or default_settings
        self.runtime = runtime
        self.locator = locator
        self.prober = prober
        self.gateway = gateway
        self.logs = logs
        self.action_state = ActionState.IDLE
        self.current_handle = None
        self.readiness_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()
        self._sleep = sleep
        self._clock = clock

    @property
    def events(self) -> Broadcaster:
        return self.logs.broadcaster

    # -- state helpers -------------------------------------------------

    def _claim(self, state: ActionState) -> None:
        if self.action_state is not ActionState.IDLE:
            raise Busy(self.action_state.value)
        self.action_state = state
        logger.info("Action state: %s", state.value)

    def _release(self) -> None:
        self.action_state = ActionState.IDLE
        logger.info("Action state: idle")

    @contextlib.contextmanager
    def _action(self, state: ActionState) -> Iterator[None]:
        self._claim(state)
        try:
            yield
        finally:
            self._release()

    @contextlib.contextmanager
    def _reporting(self, label: str) -> Iterator[None]:
        try:
            yield
        except ServiceError as exc:
            logger.error("%s failed: %s", label, exc.message)
            self._announce(f"{label} failed: {exc.message}")
            raise

    def _announce(self, message: str) -> None:
        self.logs.broadcast(f"[System] {message}")

    def _emit(self, action: str, **extra: Any) -> None:
        self.events.publish_status(action, **extra)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _locate_required(self):
        handle = await self.locator.locate()
        if handle is None:
            raise NotFound()
        self.current_handle = handle
        return handle

    # -- status --------------------------------------------------------

    async def status(self) -> ServerStatus:
        try:
            handle = await self.locator.locate()
            if handle is None:
                return ServerStatus(
                    running=False,
                    status=ContainerStatus.NOT_FOUND,
                    action_state=self.action_state,
                )
            state = await self.runtime.inspect(handle)
        except ServiceError as exc:
            logger.error("Error getting container status: %s", exc.message)
            return ServerStatus(
                running=False,
                status=ContainerStatus.ERROR,
                error=exc.message,
                action_state=self.action_state,
            )

        probe = await self.prober.probe(state) if state.running else ProbeResult(server_ready=False)
        env = state.env
        return ServerStatus(
            running=state.running,
            status=derive_status(state, probe.server_ready),
            server_ready=probe.server_ready,
            started_at=state.started_at,
            uptime_seconds=state.uptime_seconds(),
            health=state.health,
            config=ServerConfig(
                mc_version=env.get("MC_VERSION") or "unknown",
                server_type=env.get("SERVER_TYPE") or "unknown",
                forge_version=env.get("FORGE_VERSION", ""),
            ),
            players=probe.players,
            action_state=self.action_state,
        )

    async def _server_ready(self) -> bool:
        return (await self.status()).server_ready

    # -- start / stop --------------------------------------------------

    async def start(self) -> ServerActionResponse:
        with self._reporting("Start"):
            handle = await self._locate_required()
            if (await self.runtime.inspect(handle)).running:
                return await self._already_running(handle)

            with self._action(ActionState.STARTING):
                self._emit("starting")
                self._announce("Starting server...")
                try:
                    await self.runtime.start(handle)
                except Conflict:
                    return await self._already_running(handle)
                await self._sleep(self.settings.start_settle_seconds)
                await self.logs.attach(handle, silent=True)
                self._announce("Server container started.")
                self._emit("started")
        return ServerActionResponse(message="Server starting...", status="starting")

    async def _already_running(self, handle) -> ServerActionResponse:
        self._announce("Server already running.")
        if not self.logs.attached:
            await self.logs.attach(handle)
        return ServerActionResponse(message="Server already running", status="running")

    async def stop(self) -> ServerActionResponse:
        with self._reporting("Stop"):
            handle = await self._locate_required()
            if not (await self.runtime.inspect(handle)).running:
                self._announce("Server already stopped.")
                return ServerActionResponse(message="Server already stopped", status="stopped")

            with self._action(ActionState.STOPPING):
                self._emit("stopping")
                self._announce("Stopping server...")
                try:
                    await self._stop_container(handle)
                except Conflict:
                    self._announce("Server already stopped.")
                await self.logs.detach()
                self._announce("Server stopped.")
                self._emit("stopped")
        return ServerActionResponse(message="Server stopped", status="stopped")

    async def _stop_container(self, handle) -> bool:
        """Graceful RCON stop first, forceful runtime stop if it is still up.

        Returns whether the graceful path brought the server down.
        """
        graceful = await self._graceful_stop(handle)
        if (await self.runtime.inspect(handle)).running:
            self._announce("Forcing container stop...")
            await self.runtime.stop(handle, timeout=self.settings.stop_grace_seconds)
        return graceful

    async def _graceful_stop(self, handle) -> bool:
        try:
            await self.gateway.graceful_stop()
        except GatewayUnavailable as exc:
            logger.warning("Graceful stop unavailable: %s", exc.message)
            self._announce("RCON failed, forcing container stop...")
            return False
        self._announce("Sent graceful stop command via RCON.")

        async def stopped() -> bool:
            return not (await self.runtime.inspect(handle)).running

        done = await poll_until(
            stopped,
            interval=self.settings.stop_poll_interval_seconds,
            timeout=self.settings.stop_poll_timeout_seconds,
            sleep=self._sleep,
            clock=self._clock,
        )
        if done:
            self._announce("Server stopped gracefully.")
        return done

    # -- restart / kill ------------------------------------------------

    async def restart(self) -> ServerActionResponse:
        with self._reporting("Restart"):
            handle = await self._locate_required()
            self._claim(ActionState.RESTARTING)
            try:
                self._emit("restarting")
                self._announce("Restarting server...")
                await self.logs.detach()
                await self.runtime.restart(handle, timeout=self.settings.restart_grace_seconds)
                self._announce("Container restarted, waiting for server to start...")
                self._emit("starting")
            except BaseException:
                self._release()
                raise
            # Action state is released by the readiness task
            self.readiness_task = self._spawn(self._await_ready_after_restart(handle))
        return ServerActionResponse(message="Server restarting...", status="restarting")

    async def _await_ready_after_restart(self, handle) -> None:
        try:
            await self._sleep(self.settings.restart_settle_seconds)
            await self.logs.attach(handle, silent=True)
            ready = await poll_until(
                self._server_ready,
                interval=self.settings.readiness_poll_interval_seconds,
                timeout=self.settings.readiness_poll_timeout_seconds,
                sleep=self._sleep,
                clock=self._clock,
            )
            if ready:
                self._announce("Server started successfully.")
            else:
                # Unblock observers rather than leave them on "restarting" forever
                self._announce("Server start timeout, check status manually.")
            self._emit("started")
        finally:
            self._release()

    async def kill(self) -> ServerActionResponse:
        with self._reporting("Kill"):
            handle = await self._locate_required()
            if not (await self.runtime.inspect(handle)).running:
                return ServerActionResponse(message="Server is already stopped", status="stopped")

            with self._action(ActionState.STOPPING):
                try:
                    await self.runtime.kill(handle)
                except Conflict:
                    return ServerActionResponse(message="Server is already stopped", status="stopped")
                self._announce("Server killed.")
                self._emit("killed")
        return ServerActionResponse(message="Server killed.", status="killed")

    # -- reset ---------------------------------------------------------

    async def reset(
        self,
        delete_world: bool = False,
        delete_mods: bool = False,
        delete_config: bool = False,
    ) -> ResetResponse:
        """Stop the server and empty the selected data directories.

        The container itself is kept so the next start reuses its
        configuration.
        """
        deleted: list[str] = []
        with self._reporting("Reset"), self._action(ActionState.STOPPING):
            handle = await self.locator.locate()
            if handle is not None:
                self.current_handle = handle
                self._announce("Stopping server for data reset...")
                if (await self.runtime.inspect(handle)).running:
                    try:
                        await self._stop_container(handle)
                    except Conflict:
                        pass
                await self.logs.detach()
                self._announce("Waiting for file system to sync...")
                await self._sleep(self.settings.reset_settle_seconds)

            targets = (
                ("world", delete_world, self.settings.world_dir),
                ("mods", delete_mods, self.settings.mods_dir),
                ("config", delete_config, self.settings.config_dir),
            )
            for category, selected, path in targets:
                if not selected:
                    continue
                failed = await empty_directory(
                    path,
                    retry_delay=self.settings.reset_retry_delay_seconds,
                    sleep=self._sleep,
                )
                if failed:
                    self._announce(f"Could not delete {len(failed)} entries in {category}.")
                deleted.append(category)

            self._emit("reset")
            self._announce("Server reset complete.")
            logger.info("Reset complete (%s); container ready to start", ", ".join(deleted) or "nothing deleted")
        return ResetResponse(
            message="Server reset complete",
            deleted=deleted,
            note="Click Start to launch the server with fresh data",
        )

    # -- version swap --------------------------------------------------

    async def change_version(
        self,
        version: str,
        server_type: str = "forge",
        forge_version: Optional[str] = None,
    ) -> VersionChangeResponse:
        """Recreate the container with new version variables.

        This is the only operation that replaces the current handle.
        """
        with self._reporting("Version change"), self._action(ActionState.RESTARTING):
            handle = await self.locator.locate()
            if handle is not None:
                state = await self.runtime.inspect(handle)
                await self.logs.detach()
                if state.running:
                    logger.info("Stopping server for version change")
                    try:
                        await self.runtime.stop(handle, timeout=self.settings.swap_stop_grace_seconds)
                    except Conflict:
                        pass
                logger.info("Removing old container %s", state.name)
                await self.runtime.remove(handle)
                self.current_handle = None
                image = state.image
                host_config = state.host_config
                environment = [item for item in state.env_list if not item.startswith(VERSION_ENV_KEYS)]
            else:
                logger.info("No existing container found; creating a fresh one")
                image = self.settings.default_image
                host_config = await self._default_host_config()
                environment = list(self.settings.default_env)

            environment.append(f"MC_VERSION={version}")
            environment.append(f"SERVER_TYPE={server_type}")
            if server_type.lower() == "forge" and forge_version:
                environment.append(f"FORGE_VERSION={forge_version}")

            logger.info("Creating new container: %s %s", server_type, version)
            new_handle = await self.runtime.create(
                ContainerSpec(
                    name=self.settings.container_name,
                    image=image,
                    environment=tuple(environment),
                    host_config=host_config,
                    exposed_port=self.settings.mc_port,
                )
            )
            self.current_handle = new_handle
            await self.runtime.start(new_handle)
            await self.logs.attach(new_handle)
            await asyncio.to_thread(self._persist_version, version, server_type, forge_version)
            self._emit("version_changed", version=version, serverType=server_type)

        return VersionChangeResponse(
            message=f"Switching to {server_type} {version}. Server is restarting with new version.",
            version=version,
            server_type=server_type,
        )

    async def _default_host_config(self) -> Dict[str, Any]:
        try:
            binds = discover_binds(await self.runtime.self_mounts(), self.settings.default_volumes)
        except ServiceError as exc:
            logger.warning("Failed to inspect own container for binds, using defaults: %s", exc.message)
            binds = list(self.settings.default_volumes)
        port = self.settings.mc_port
        return {
            "Binds": binds,
            "PortBindings": {f"{port}/tcp": [{"HostPort": str(port)}]},
            "Memory": self.settings.default_memory_bytes,
        }

    def _persist_version(self, version: str, server_type: str, forge_version: Optional[str]) -> None:
        path = self.settings.env_file_path
        if not path or not os.path.exists(path):
            return
        try:
            set_key(path, "MC_VERSION", version, quote_mode="never")
            set_key(path, "SERVER_TYPE", server_type, quote_mode="never")
            set_key(path, "FORGE_VERSION", forge_version or "", quote_mode="never")
        except OSError as exc:
            logger.warning("Failed to update %s: %s", path, exc)
            return
        logger.info("%s updated with new version settings", path)

    # -- commands ------------------------------------------------------

    async def send_command(self, command: str) -> str:
        response = await self.gateway.send_command(command)
        self.logs.broadcast(f"> {command}")
        self.logs.broadcast(f"[RCON] {response}")
        return response

    async def kick(self, player_name: str, reason: str = "Kicked by admin") -> None:
        await self.gateway.kick(player_name, reason)
        self._announce(f"Kicked player: {player_name}")

    # -- server files --------------------------------------------------

    async def server_properties(self) -> Dict[str, str]:
        try:
            return await asyncio.to_thread(read_server_properties, self.settings.server_dir)
        except OSError as exc:
            raise RuntimeFailure(f"Failed to read server.properties: {exc}") from exc

    async def update_server_properties(self, properties: Dict[str, Any]) -> Dict[str, str]:
        try:
            updated = await asyncio.to_thread(update_server_properties, self.settings.server_dir, properties)
        except OSError as exc:
            raise RuntimeFailure(f"Failed to update server.properties: {exc}") from exc
        self._announce("server.properties updated. Restart server to apply.")
        return updated

    async def save_server_properties(self, content: str) -> None:
        try:
            await asyncio.to_thread(save_server_properties, self.settings.server_dir, content)
        except OSError as exc:
            raise RuntimeFailure(f"Failed to save server.properties: {exc}") from exc
        self._announce("server.properties saved. Restart server to apply.")

    async def backup(self) -> BackupResponse:
        with self._reporting("Backup"):
            handle = await self._locate_required()
            self._announce("Running backup...")
            exit_code, output = await self.runtime.exec_command(handle, list(self.settings.backup_command))
            if exit_code != 0:
                raise RuntimeFailure(f"Backup exited with code {exit_code}: {output.strip()}")
            self._announce("Backup completed.")
        return BackupResponse(message="Backup completed", output=output, exit_code=exit_code)

    # -- process lifecycle ---------------------------------------------

    async def startup(self) -> None:
        try:
            await asyncio.to_thread(ensure_query_enabled, self.settings.server_dir)
        except OSError as exc:
            logger.error("Error ensuring enable-query: %s", exc)

        try:
            handle = await self.locator.locate()
            if handle is not None and (await self.runtime.inspect(handle)).running:
                self.current_handle = handle
                await self.logs.attach(handle)
        except ServiceError as exc:
            logger.error("Startup log attach failed: %s", exc.message)

    async def shutdown(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.logs.shutdown()


def build_controller(settings: Optional[Settings] = None) -> LifecycleController:
    settings = settings or default_settings
    runtime = ContainerRuntime()
    broadcaster = Broadcaster(settings.subscriber_queue_size)
    logs = LogStreamManager(runtime, broadcaster, settings=settings)
    return LifecycleController(
        runtime=runtime,
        locator=ContainerLocator(runtime, settings.container_name),
        prober=ReadinessProber(settings=settings),
        gateway=CommandGateway(settings=settings),
        logs=logs,
        settings=settings,
    )
