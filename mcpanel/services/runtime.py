"""Async facade over the docker SDK.

The docker SDK is blocking, so every call is pushed to a worker thread with
``asyncio.to_thread``. Docker errors are mapped onto the service error
taxonomy here so callers never see ``docker.errors`` directly.
"""

import asyncio
import logging
import re
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import requests
from docker.errors import APIError, DockerException
from docker.errors import NotFound as DockerNotFound

from ..docker_client import get_docker_client
from .errors import Conflict, NotFound, RuntimeFailure

logger = logging.getLogger(__name__)

_FRACTION_RE = re.compile(r"\.(\d+)")
_NEVER_STARTED = "0001-01-01T00:00:00Z"
_HEALTH_VALUES = {"healthy", "unhealthy"}


def parse_docker_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value or value == _NEVER_STARTED:
        return None
    # Docker reports nanoseconds; datetime only keeps microseconds
    normalized = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    normalized = normalized.replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ContainerState:
    id: str
    name: str
    running: bool
    status: str
    started_at: Optional[str]
    health: str
    env_list: tuple[str, ...]
    image: str
    host_config: Dict[str, Any] = field(default_factory=dict)

    @property
    def env(self) -> Dict[str, str]:
        env_map: Dict[str, str] = {}
        for item in self.env_list:
            if "=" in item:
                key, value = item.split("=", 1)
                env_map[key] = value
        return env_map

    def uptime_seconds(self, now: Optional[datetime] = None) -> Optional[int]:
        if not self.running:
            return None
        started = parse_docker_timestamp(self.started_at)
        if started is None:
            return None
        now = now or datetime.now(timezone.utc)
        return max(0, int((now - started).total_seconds()))

    @classmethod
    def from_attrs(cls, attrs: Dict[str, Any]) -> "ContainerState":
        state = attrs.get("State") or {}
        config = attrs.get("Config") or {}
        health = (state.get("Health") or {}).get("Status")
        return cls(
            id=attrs.get("Id", ""),
            name=(attrs.get("Name") or "").lstrip("/"),
            running=bool(state.get("Running")),
            status=state.get("Status") or "unknown",
            started_at=state.get("StartedAt"),
            health=health if health in _HEALTH_VALUES else "unknown",
            env_list=tuple(config.get("Env") or ()),
            image=config.get("Image") or "",
            host_config=dict(attrs.get("HostConfig") or {}),
        )


@dataclass(frozen=True)
class ContainerSpec:
    name: str
    image: str
    environment: tuple[str, ...]
    host_config: Dict[str, Any]
    exposed_port: int


class DockerLogStream:
    """Follow-mode log stream; ``read`` returns ``None`` at end of data."""

    def __init__(self, stream) -> None:
        self._stream = stream
        self._iterator = iter(stream)

    async def read(self) -> Optional[bytes]:
        return await asyncio.to_thread(next, self._iterator, None)

    def close(self) -> None:
        self._stream.close()


class ContainerRuntime:
    def __init__(self, client_factory: Callable[[], Any] = get_docker_client) -> None:
        self._client_factory = client_factory

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except DockerNotFound as exc:
            raise NotFound(f"Container not found: {exc.explanation or exc}") from exc
        except APIError as exc:
            if exc.status_code == 304:
                raise Conflict(str(exc.explanation or "Container already in requested state")) from exc
            raise RuntimeFailure(str(exc.explanation or exc)) from exc
        except (DockerException, requests.exceptions.RequestException) as exc:
            raise RuntimeFailure(f"Docker unavailable: {exc}") from exc

    async def list_containers(self) -> list:
        return await self._call(lambda: self._client_factory().containers.list(all=True))

    async def inspect(self, handle) -> ContainerState:
        def _inspect() -> Dict[str, Any]:
            handle.reload()
            return handle.attrs

        return ContainerState.from_attrs(await self._call(_inspect))

    async def start(self, handle) -> None:
        await self._call(handle.start)

    async def stop(self, handle, timeout: int) -> None:
        await self._call(handle.stop, timeout=timeout)

    async def restart(self, handle, timeout: int) -> None:
        await self._call(handle.restart, timeout=timeout)

    async def kill(self, handle) -> None:
        await self._call(handle.kill)

    async def remove(self, handle) -> None:
        await self._call(handle.remove)

    async def create(self, spec: ContainerSpec):
        def _create():
            client = self._client_factory()
            result = client.api.create_container(
                spec.image,
                name=spec.name,
                environment=list(spec.environment),
                host_config=spec.host_config,
                ports=[spec.exposed_port],
                tty=True,
                stdin_open=True,
            )
            return client.containers.get(result["Id"])

        return await self._call(_create)

    async def exec_command(self, handle, command: list[str]) -> tuple[int, str]:
        """Run a command inside the container; returns exit code and combined output."""
        result = await self._call(handle.exec_run, command, stdout=True, stderr=True)
        output = (result.output or b"").decode("utf-8", errors="replace")
        return result.exit_code, output

    async def self_mounts(self) -> list[Dict[str, Any]]:
        """Mounts of the container this process runs in (looked up by hostname)."""

        def _mounts() -> list[Dict[str, Any]]:
            own = self._client_factory().containers.get(socket.gethostname())
            return own.attrs.get("Mounts") or []

        return await self._call(_mounts)

    async def open_log_stream(self, handle, tail: int) -> DockerLogStream:
        stream = await self._call(
            handle.logs,
            stream=True,
            follow=True,
            stdout=True,
            stderr=True,
            tail=tail,
            timestamps=True,
        )
        return DockerLogStream(stream)
