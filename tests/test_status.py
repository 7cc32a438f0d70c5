import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pydantic import ValidationError

from conftest import FakeContainer
from mcpanel.models import ActionState, ContainerStatus, Players, ServerStatus
from mcpanel.services.errors import RuntimeFailure
from mcpanel.services.readiness import ReadinessProber


def assert_invariants(status: ServerStatus) -> None:
    if status.status is ContainerStatus.RUNNING:
        assert status.running and status.server_ready
    if status.status is ContainerStatus.STARTING:
        assert status.running and not status.server_ready
    if not status.running:
        assert not status.server_ready


@pytest.mark.asyncio
async def test_missing_container_is_not_found(controller, runtime):
    runtime.containers.clear()
    status = await controller.status()
    assert status.status is ContainerStatus.NOT_FOUND
    assert not status.running
    assert_invariants(status)


@pytest.mark.asyncio
async def test_stopped_container(controller):
    status = await controller.status()
    assert status.status is ContainerStatus.STOPPED
    assert status.uptime_seconds is None
    assert status.config.mc_version == "1.20.1"
    assert status.config.forge_version == "47.2.0"
    assert_invariants(status)


@pytest.mark.asyncio
async def test_created_container(controller, container):
    container.status = "created"
    assert (await controller.status()).status is ContainerStatus.CREATED


@pytest.mark.asyncio
async def test_ready_server_is_running(controller, container, prober):
    container.running = True
    container.started_at = "2024-05-01T12:00:00Z"
    prober.players = Players(online=1, max=20)

    status = await controller.status()

    assert status.status is ContainerStatus.RUNNING
    assert status.server_ready
    assert status.players.online == 1
    assert status.started_at == "2024-05-01T12:00:00Z"
    assert status.uptime_seconds > 0
    assert_invariants(status)


@pytest.mark.asyncio
async def test_unready_server_is_starting(controller, container, prober):
    container.running = True
    prober.ready = False
    status = await controller.status()
    assert status.status is ContainerStatus.STARTING
    assert_invariants(status)


@pytest.mark.asyncio
async def test_runtime_error_is_reported_not_raised(controller, runtime):
    runtime.failures["list"] = RuntimeFailure("Docker unavailable: connection refused")
    status = await controller.status()
    assert status.status is ContainerStatus.ERROR
    assert status.error == "Docker unavailable: connection refused"
    assert_invariants(status)


@pytest.mark.asyncio
async def test_action_state_is_reported(controller):
    controller.action_state = ActionState.STOPPING
    assert (await controller.status()).action_state is ActionState.STOPPING


@pytest.mark.asyncio
async def test_status_ping_players_when_query_times_out(controller, container, test_settings):
    container.running = True
    controller.prober = ReadinessProber(settings=test_settings)
    server = MagicMock()
    server.async_query = AsyncMock(side_effect=asyncio.TimeoutError())
    server.async_status = AsyncMock(
        return_value=SimpleNamespace(players=SimpleNamespace(online=2, max=20, sample=None))
    )

    with patch("mcpanel.services.readiness.JavaServer", return_value=server):
        status = await controller.status()

    assert status.status is ContainerStatus.RUNNING
    assert (status.players.online, status.players.max) == (2, 20)


@pytest.mark.asyncio
async def test_young_unhealthy_server_without_network_checks_is_starting(controller, container, test_settings):
    controller.prober = ReadinessProber(settings=test_settings)
    controller.runtime.containers[0] = FakeContainer(running=True, uptime=30, health="unhealthy")
    server = MagicMock()
    server.async_query = AsyncMock(side_effect=asyncio.TimeoutError())
    server.async_status = AsyncMock(side_effect=ConnectionRefusedError())

    with patch("mcpanel.services.readiness.JavaServer", return_value=server):
        status = await controller.status()

    assert status.status is ContainerStatus.STARTING
    assert status.players is None
    assert_invariants(status)


def test_model_rejects_running_without_readiness():
    with pytest.raises(ValidationError):
        ServerStatus(running=True, status=ContainerStatus.RUNNING, server_ready=False)
    with pytest.raises(ValidationError):
        ServerStatus(running=False, status=ContainerStatus.STARTING)


def test_status_serializes_with_camel_case_keys():
    payload = ServerStatus(running=False, status=ContainerStatus.STOPPED).model_dump(by_alias=True)
    assert payload["serverReady"] is False
    assert payload["actionState"] == ActionState.IDLE
