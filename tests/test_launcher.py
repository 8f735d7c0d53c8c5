"""Tests for the bootstrap sequence from VM creation to a bound channel."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeProcess, event_payloads, event_types, make_template
from vmfleet.agent import AgentRecord, ConnectionState
from vmfleet.config import FleetConfig
from vmfleet.template import AgentTemplate


@pytest.fixture
def controller(make_controller):
    return make_controller()


@pytest.fixture
async def agent(controller, backend, registry):
    record = AgentRecord(
        name="multipass-abcd1234",
        template=controller.get_template("java"),
        controller_name=controller.name,
        client=backend,
        registry=registry,
        events=controller.events,
    )
    await registry.add_node(record)
    return record


def _states(agent: AgentRecord) -> list[str]:
    return [p["state"] for p in event_payloads(agent, "vmfleet.state")]


# ── Happy path ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_launch_creates_vm_and_binds_channel(controller, make_launcher, agent, backend, script, registry):
    ok = await make_launcher(controller).launch(agent)

    assert ok is True
    assert agent.state is ConnectionState.CHANNEL_ESTABLISHED
    assert agent.accepting_tasks
    assert agent.vm_requested
    assert registry.get_node(agent.name) is agent
    assert _states(agent) == ["CreatingVm", "AwaitingNetwork", "Authenticating", "ChannelEstablished"]

    assert backend.commands() == ["list", "launch", "list"]
    assert backend.calls[1][:2] == ("launch", "jammy")
    assert backend.cloud_init_payloads[agent.name] == controller.get_template("java").cloud_init
    assert script.hosts == ["10.0.0.2"]

    assert agent.channel is not None
    assert isinstance(agent.channel.transport.process, FakeProcess)


@pytest.mark.asyncio
async def test_launch_stages_payload(controller, make_launcher, agent, script):
    await make_launcher(controller).launch(agent)

    assert script.commands == [
        "set",
        "mkdir -p /home/agent/agent",
        "test -f /home/agent/agent/agent.jar",
        "chmod 0644 /home/agent/agent/agent.jar",
    ]
    assert script.uploads == [("/opt/vmfleet/agent.jar", "/home/agent/agent")]
    assert script.started == ["cd /home/agent/agent && java -jar agent.jar"]
    assert "HOME=/home/builder\n" in [p["text"] for p in event_payloads(agent, "vmfleet.log")]


@pytest.mark.asyncio
async def test_stale_payload_is_removed(controller, make_launcher, agent, script):
    script.payload_exists = True
    await make_launcher(controller).launch(agent)
    assert "rm /home/agent/agent/agent.jar" in script.commands


@pytest.mark.asyncio
async def test_remote_stderr_goes_to_agent_log(controller, make_launcher, agent):
    launcher = make_launcher(controller)
    await launcher.launch(agent)
    await asyncio.gather(*launcher._pumps)

    texts = [p["text"] for p in event_payloads(agent, "vmfleet.log")]
    assert "INFO: agent process started" in texts


@pytest.mark.asyncio
async def test_existing_instance_is_reused(controller, make_launcher, agent, backend):
    backend.instances[agent.name] = {"name": agent.name, "state": "Running", "ipv4": ["10.0.0.9"]}

    assert await make_launcher(controller).launch(agent)
    assert backend.commands() == ["list", "list"]
    assert agent.vm_requested


@pytest.mark.asyncio
async def test_ssh_retries_until_server_is_up(controller, make_launcher, agent, script):
    script.transport_failures = 2
    assert await make_launcher(controller).launch(agent)
    assert script.connect_attempts == 3
    assert agent.state is ConnectionState.CHANNEL_ESTABLISHED


@pytest.mark.asyncio
async def test_serialized_per_launcher(controller, make_launcher, agent, backend, registry):
    second = AgentRecord(
        name="multipass-efgh5678",
        template=controller.get_template("java"),
        controller_name=controller.name,
        client=backend,
        registry=registry,
        events=controller.events,
    )
    await registry.add_node(second)
    launcher = make_launcher(controller)

    results = await asyncio.gather(launcher.launch(agent), launcher.launch(second))

    assert results == [True, True]
    launches = [c[3] for c in backend.calls if c[0] == "launch"]
    assert launches == [agent.name, second.name]
    assert backend.commands() == ["list", "launch", "list", "list", "launch", "list"]


# ── Failures ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_create_failure_fails_and_deregisters(controller, make_launcher, agent, backend, registry):
    backend.launch_rc = 1

    assert await make_launcher(controller).launch(agent) is False
    assert registry.get_node(agent.name) is None
    assert "vmfleet.failed" in event_types(agent)
    assert "Failed" in _states(agent)
    # The VM was requested, so teardown still runs
    assert backend.commands()[-2:] == ["delete", "purge"]


@pytest.mark.asyncio
async def test_no_ipv4_fails(controller, make_launcher, agent, backend, registry, script):
    backend.launch_ipv4 = []

    assert await make_launcher(controller).launch(agent) is False
    failure = event_payloads(agent, "vmfleet.failed")[0]
    assert "no IPv4" in failure["error"]
    assert registry.get_node(agent.name) is None
    assert script.connect_attempts == 0


@pytest.mark.asyncio
async def test_deleted_instance_name_collision(controller, make_launcher, agent, backend):
    backend.instances[agent.name] = {"name": agent.name, "state": "Deleted"}

    assert await make_launcher(controller).launch(agent) is False
    assert "collides" in event_payloads(agent, "vmfleet.failed")[0]["error"]
    assert "launch" not in backend.commands()
    assert "delete" not in backend.commands()


@pytest.mark.asyncio
async def test_missing_template_fails_without_backend_calls(controller, make_launcher, backend, registry):
    orphan = AgentRecord(
        name="multipass-orphan01",
        template=AgentTemplate(name="removed"),
        controller_name=controller.name,
        client=backend,
        registry=registry,
    )
    await registry.add_node(orphan)

    assert await make_launcher(controller).launch(orphan) is False
    assert backend.calls == []
    assert registry.get_node(orphan.name) is None


@pytest.mark.asyncio
async def test_missing_credential_fails(make_controller, make_launcher, backend, registry, script):
    controller = make_controller(templates=[make_template(credentials_id="nobody")])
    record = AgentRecord(
        name="multipass-nocred01",
        template=controller.get_template("java"),
        controller_name=controller.name,
        client=backend,
        registry=registry,
    )
    await registry.add_node(record)

    assert await make_launcher(controller).launch(record) is False
    assert "No SSH credential" in event_payloads(record, "vmfleet.failed")[0]["error"]
    assert script.connect_attempts == 0


@pytest.mark.asyncio
async def test_going_offline_aborts_ssh_wait(controller, make_launcher, agent, script, registry):
    script.fail_forever = True
    launcher = make_launcher(controller, config=FleetConfig(ssh_retry_seconds=30))
    task = asyncio.create_task(launcher.launch(agent))

    while script.connect_attempts == 0:
        await asyncio.sleep(0.01)
    agent.mark_offline("Disconnected by user")

    assert await asyncio.wait_for(task, timeout=2) is False
    assert "Disconnected by user" in event_payloads(agent, "vmfleet.failed")[0]["error"]
    assert registry.get_node(agent.name) is None
    assert script.connect_attempts == 1


@pytest.mark.asyncio
async def test_auth_failure_continues_optimistically(controller, make_launcher, agent, script):
    script.auth_fails = True

    assert await make_launcher(controller).launch(agent) is False
    assert "Authenticating" in _states(agent)
    failure = event_payloads(agent, "vmfleet.failed")[0]
    assert "No authenticated SSH session" in failure["error"]
    assert script.shells[-1].closed


@pytest.mark.asyncio
async def test_strict_auth_fails_at_authentication(controller, make_launcher, agent, script):
    script.auth_fails = True
    launcher = make_launcher(controller, config=FleetConfig(ssh_retry_seconds=0, strict_auth=True))

    assert await launcher.launch(agent) is False
    assert "Permission denied" in event_payloads(agent, "vmfleet.failed")[0]["error"]
    assert script.commands == []


@pytest.mark.asyncio
async def test_staging_error_is_channel_binding_error(controller, make_launcher, agent, script, registry):
    script.run_error = OSError("Broken pipe")

    assert await make_launcher(controller).launch(agent) is False
    assert "Broken pipe" in event_payloads(agent, "vmfleet.failed")[0]["error"]
    assert script.shells[-1].closed
    assert agent.channel is None
    assert registry.get_node(agent.name) is None


# ── Termination while launching ───────────────────────────────


async def _wait_for(predicate) -> None:
    while not predicate():
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_terminated_during_ssh_wait_stays_terminated(controller, make_launcher, agent, script, registry):
    script.transport_failures = 1
    launcher = make_launcher(controller, config=FleetConfig(ssh_retry_seconds=30))
    task = asyncio.create_task(launcher.launch(agent))

    await _wait_for(lambda: script.connect_attempts == 1)
    await registry.remove_node(agent)

    assert await asyncio.wait_for(task, timeout=2) is False
    assert agent.state is ConnectionState.TERMINATED
    assert script.connect_attempts == 1
    assert script.started == []
    assert agent.channel is None
    assert "vmfleet.failed" not in event_types(agent)
    assert event_types(agent)[-1] == "vmfleet.terminated"


@pytest.mark.asyncio
async def test_terminated_during_creation_destroys_late_vm(controller, make_launcher, agent, backend, registry, script):
    backend.launch_delay = 0.05
    task = asyncio.create_task(make_launcher(controller).launch(agent))

    await _wait_for(lambda: "launch" in backend.commands())
    await registry.remove_node(agent)
    assert agent.name not in backend.instances

    assert await asyncio.wait_for(task, timeout=2) is False
    assert agent.state is ConnectionState.TERMINATED
    assert agent.name not in backend.instances
    assert backend.commands()[-2:] == ["delete", "purge"]
    assert script.connect_attempts == 0


@pytest.mark.asyncio
async def test_offline_agent_is_not_launched(controller, make_launcher, agent, backend):
    agent.mark_offline("Controller shutting down")

    assert await make_launcher(controller).launch(agent) is False
    assert "launch" not in backend.commands()
    assert "Controller shutting down" in event_payloads(agent, "vmfleet.failed")[0]["error"]
