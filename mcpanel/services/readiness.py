"""Decides whether the game server is answering, not just whether it runs.

Strategies are tried in order. Each one returns a tagged outcome: ``READY``
ends the probe, ``FALLBACK`` hands over to the next strategy, ``NOT_READY``
ends the probe without readiness. Strategy failures never escape a probe.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, Sequence

from mcstatus import JavaServer

from ..config import Settings, settings as default_settings
from ..models import PlayerSample, Players
from .runtime import ContainerState

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    READY = "ready"
    FALLBACK = "fallback"
    NOT_READY = "not_ready"


@dataclass(frozen=True)
class ProbeOutcome:
    kind: Outcome
    players: Optional[Players] = None

    @classmethod
    def ready(cls, players: Optional[Players] = None) -> "ProbeOutcome":
        return cls(Outcome.READY, players)

    @classmethod
    def fallback(cls) -> "ProbeOutcome":
        return cls(Outcome.FALLBACK)

    @classmethod
    def not_ready(cls) -> "ProbeOutcome":
        return cls(Outcome.NOT_READY)


@dataclass(frozen=True)
class ProbeResult:
    server_ready: bool
    players: Optional[Players] = None
    method: Optional[str] = None


class ReadinessStrategy(Protocol):
    name: str

    async def __call__(self, state: ContainerState) -> ProbeOutcome: ...


class QueryProbe:
    """Full query protocol (UDP); returns the whole player roster."""

    name = "query"

    def __init__(self, host: str, port: int, timeout: float) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout

    async def __call__(self, state: ContainerState) -> ProbeOutcome:
        server = JavaServer(self.host, self.port, timeout=self.timeout, query_port=self.port)
        try:
            response = await asyncio.wait_for(server.async_query(), self.timeout)
        except Exception as exc:
            logger.debug("Query probe failed for %s:%s: %s", self.host, self.port, exc)
            return ProbeOutcome.fallback()
        names = getattr(response.players, "names", None) or getattr(response.players, "list", None) or []
        return ProbeOutcome.ready(
            Players(
                online=response.players.online,
                max=response.players.max,
                sample=[PlayerSample(name=name) for name in names],
            )
        )


class StatusProbe:
    """Server list ping; player counts and an optional sample."""

    name = "status"

    def __init__(self, host: str, port: int, timeout: float) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout

    async def __call__(self, state: ContainerState) -> ProbeOutcome:
        server = JavaServer(self.host, self.port, timeout=self.timeout)
        try:
            response = await asyncio.wait_for(server.async_status(), self.timeout)
        except Exception as exc:
            logger.debug("Status probe failed for %s:%s: %s", self.host, self.port, exc)
            return ProbeOutcome.fallback()
        sample = [
            PlayerSample(name=player.name, id=player.id)
            for player in (response.players.sample or [])
        ]
        return ProbeOutcome.ready(
            Players(online=response.players.online, max=response.players.max, sample=sample)
        )


class UptimeHealthHeuristic:
    """Last resort when query/status are disabled: long enough up and healthy."""

    name = "heuristic"

    def __init__(self, warmup_seconds: float, require_healthy: bool = True) -> None:
        self.warmup_seconds = warmup_seconds
        self.require_healthy = require_healthy

    async def __call__(self, state: ContainerState) -> ProbeOutcome:
        uptime = state.uptime_seconds() or 0
        healthy = state.health == "healthy" or not self.require_healthy
        if uptime > self.warmup_seconds and healthy:
            return ProbeOutcome.ready()
        return ProbeOutcome.not_ready()


def default_strategies(settings: Settings) -> list[ReadinessStrategy]:
    return [
        QueryProbe(settings.mc_host, settings.mc_query_port, settings.probe_timeout_seconds),
        StatusProbe(settings.mc_host, settings.mc_port, settings.probe_timeout_seconds),
        UptimeHealthHeuristic(
            settings.readiness_warmup_seconds,
            require_healthy=settings.readiness_require_healthy,
        ),
    ]


class ReadinessProber:
    def __init__(
        self,
        strategies: Optional[Sequence[ReadinessStrategy]] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or default_settings
        self.strategies = list(strategies) if strategies is not None else default_strategies(self.settings)

    async def probe(self, state: ContainerState) -> ProbeResult:
        if not state.running:
            return ProbeResult(server_ready=False)
        for strategy in self.strategies:
            outcome = await strategy(state)
            if outcome.kind is Outcome.READY:
                return ProbeResult(server_ready=True, players=outcome.players, method=strategy.name)
            if outcome.kind is Outcome.NOT_READY:
                break
        return ProbeResult(server_ready=False)
