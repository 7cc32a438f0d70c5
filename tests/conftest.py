import asyncio
import dataclasses
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from mcpanel.config import settings as base_settings
from mcpanel.models import Players
from mcpanel.services.broadcast import Broadcaster
from mcpanel.services.errors import GatewayUnavailable, NotFound
from mcpanel.services.lifecycle import LifecycleController
from mcpanel.services.locator import ContainerLocator
from mcpanel.services.log_stream import LogStreamManager
from mcpanel.services.readiness import ProbeResult
from mcpanel.services.runtime import ContainerSpec, ContainerState


async def instant_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


async def settle(rounds: int = 20) -> None:
    """Let background tasks (log pumps, re-attach checks) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def iso_ago(seconds: float) -> str:
    started = datetime.now(timezone.utc) - timedelta(seconds=seconds)
    return started.isoformat().replace("+00:00", "Z")


class FakeContainer:
    def __init__(
        self,
        name: str = "minecraft-server",
        running: bool = False,
        status: Optional[str] = None,
        health: str = "unknown",
        uptime: float = 0,
        env: tuple[str, ...] = ("MC_VERSION=1.20.1", "SERVER_TYPE=forge", "FORGE_VERSION=47.2.0", "EULA=TRUE"),
        image: str = "minecraft-minecraft:latest",
        host_config: Optional[dict] = None,
    ) -> None:
        self.id = f"id-{name}-{id(self)}"
        self.name = name
        self.attrs = {"Names": [f"/{name}"]}
        self.running = running
        self.status = status or ("running" if running else "exited")
        self.health = health
        self.started_at = iso_ago(uptime) if running else None
        self.env = env
        self.image = image
        self.host_config = host_config if host_config is not None else {"Binds": ["minecraft-world:/server/world"]}
        self.removed = False
        self.log_history: list[str] = []

    def log(self, *lines: str) -> None:
        self.log_history.extend(lines)

    def state(self) -> ContainerState:
        return ContainerState(
            id=self.id,
            name=self.name,
            running=self.running,
            status=self.status,
            started_at=self.started_at,
            health=self.health,
            env_list=self.env,
            image=self.image,
            host_config=dict(self.host_config),
        )


class FakeLogStream:
    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, data: bytes) -> None:
        self.queue.put_nowait(data)

    def end(self) -> None:
        self.queue.put_nowait(None)

    def fail(self, exc: Exception) -> None:
        self.queue.put_nowait(exc)

    async def read(self) -> Optional[bytes]:
        if self.closed:
            return None
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.queue.put_nowait(None)


class FakeRuntime:
    """In-memory stand-in for ContainerRuntime."""

    def __init__(self, *containers: FakeContainer) -> None:
        self.containers = list(containers)
        self.calls: list[tuple[str, str]] = []
        self.streams: list[FakeLogStream] = []
        self.created: list[ContainerSpec] = []
        self.failures: dict[str, Exception] = {}
        self.mounts: Optional[list] = None
        self.stop_leaves_running = False
        self.exec_result: tuple[int, str] = (0, "Backup saved to /backups/world.tar.gz")
        self.executed: list[list[str]] = []

    @property
    def live_streams(self) -> list[FakeLogStream]:
        return [stream for stream in self.streams if not stream.closed]

    def called(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    async def _enter(self, method: str, handle: Optional[FakeContainer] = None) -> None:
        await asyncio.sleep(0)
        self.calls.append((method, handle.name if handle else ""))
        if method in self.failures:
            raise self.failures[method]
        if handle is not None and handle.removed:
            raise NotFound(f"Container not found: {handle.name}")

    async def list_containers(self) -> list:
        await self._enter("list")
        return list(self.containers)

    async def inspect(self, handle: FakeContainer) -> ContainerState:
        await self._enter("inspect", handle)
        return handle.state()

    async def start(self, handle: FakeContainer) -> None:
        await self._enter("start", handle)
        handle.running = True
        handle.status = "running"
        handle.started_at = iso_ago(0)

    async def stop(self, handle: FakeContainer, timeout: int) -> None:
        await self._enter("stop", handle)
        if not self.stop_leaves_running:
            handle.running = False
            handle.status = "exited"

    async def restart(self, handle: FakeContainer, timeout: int) -> None:
        await self._enter("restart", handle)
        handle.running = True
        handle.status = "running"
        handle.started_at = iso_ago(0)

    async def kill(self, handle: FakeContainer) -> None:
        await self._enter("kill", handle)
        handle.running = False
        handle.status = "exited"

    async def remove(self, handle: FakeContainer) -> None:
        await self._enter("remove", handle)
        handle.removed = True
        self.containers.remove(handle)

    async def create(self, spec: ContainerSpec) -> FakeContainer:
        await self._enter("create")
        self.created.append(spec)
        container = FakeContainer(
            name=spec.name,
            status="created",
            env=spec.environment,
            image=spec.image,
            host_config=spec.host_config,
        )
        self.containers.append(container)
        return container

    async def exec_command(self, handle: FakeContainer, command: list[str]) -> tuple[int, str]:
        await self._enter("exec", handle)
        self.executed.append(command)
        return self.exec_result

    async def self_mounts(self) -> list:
        await self._enter("self_mounts")
        if self.mounts is None:
            raise NotFound("Container not found: api")
        return self.mounts

    async def open_log_stream(self, handle: FakeContainer, tail: int) -> FakeLogStream:
        await self._enter("logs", handle)
        stream = FakeLogStream()
        backlog = handle.log_history[-tail:] if tail else []
        if backlog:
            stream.push(("\n".join(backlog) + "\n").encode("utf-8"))
        self.streams.append(stream)
        return stream


class FakeGateway:
    def __init__(self) -> None:
        self.available = True
        self.stops_container: Optional[FakeContainer] = None
        self.sent: list[str] = []
        self.replies: dict[str, str] = {}

    async def _check(self) -> None:
        await asyncio.sleep(0)
        if not self.available:
            raise GatewayUnavailable("RCON unavailable: connection refused")

    async def graceful_stop(self) -> None:
        await self._check()
        self.sent.append("stop")
        if self.stops_container is not None:
            self.stops_container.running = False
            self.stops_container.status = "exited"

    async def send_command(self, command: str) -> str:
        await self._check()
        self.sent.append(command)
        return self.replies.get(command, "")

    async def kick(self, player_name: str, reason: str = "Kicked by admin") -> str:
        await self._check()
        self.sent.append(f"kick {player_name} {reason}")
        return f"Kicked {player_name}"


class FakeProber:
    def __init__(self, ready: bool = True, players: Optional[Players] = None) -> None:
        self.ready = ready
        self.players = players
        self.calls = 0

    async def probe(self, state: ContainerState) -> ProbeResult:
        self.calls += 1
        if not state.running or not self.ready:
            return ProbeResult(server_ready=False)
        return ProbeResult(server_ready=True, players=self.players, method="fake")


@pytest.fixture
def test_settings(tmp_path):
    server_dir = tmp_path / "server"
    for name in ("world", "mods", "config"):
        (server_dir / name).mkdir(parents=True)
    return dataclasses.replace(
        base_settings,
        container_name="minecraft-server",
        start_settle_seconds=0,
        restart_settle_seconds=0,
        reattach_delay_seconds=0,
        stop_poll_interval_seconds=0,
        stop_poll_timeout_seconds=0,
        readiness_poll_interval_seconds=0,
        readiness_poll_timeout_seconds=0,
        reset_settle_seconds=0,
        reset_retry_delay_seconds=0,
        log_buffer_size=500,
        log_tail_lines=50,
        server_dir=str(server_dir),
        env_file_path=str(tmp_path / ".env"),
        api_token="secret-token",
    )


@pytest.fixture
def container():
    return FakeContainer()


@pytest.fixture
def runtime(container):
    return FakeRuntime(container)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def prober():
    return FakeProber()


@pytest.fixture
def broadcaster():
    return Broadcaster(queue_size=1000)


@pytest.fixture
def log_manager(runtime, broadcaster, test_settings):
    return LogStreamManager(runtime, broadcaster, settings=test_settings, sleep=instant_sleep)


@pytest.fixture
def controller(runtime, gateway, prober, log_manager, test_settings):
    return LifecycleController(
        runtime=runtime,
        locator=ContainerLocator(runtime, test_settings.container_name),
        prober=prober,
        gateway=gateway,
        logs=log_manager,
        settings=test_settings,
        sleep=instant_sleep,
    )


def drain(subscription) -> list[dict]:
    messages = []
    while not subscription.queue.empty():
        messages.append(subscription.queue.get_nowait())
    return messages


def status_actions(subscription) -> list[str]:
    return [m["action"] for m in drain(subscription) if m and m["type"] == "serverStatusUpdate"]
