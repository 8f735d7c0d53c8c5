"""Shared fakes: a scripted multipass executable and a scripted SSH shell."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field

import pytest

from vmfleet.agent import AgentRecord, ConnectionState
from vmfleet.backend.client import MultipassClient
from vmfleet.config import FleetConfig
from vmfleet.controller import FleetController
from vmfleet.errors import AuthenticationFailed, ChannelBindingError, TransportFailure
from vmfleet.events import EventBuffer
from vmfleet.host import InMemoryHostRegistry, SshCredential, StaticCredentialResolver
from vmfleet.launcher import BootstrapLauncher
from vmfleet.template import AgentTemplate


class FakeMultipass(MultipassClient):
    """MultipassClient whose executable is simulated in memory."""

    def __init__(self, instances: list[dict] | None = None, images: dict | None = None) -> None:
        super().__init__("multipass")
        self.instances: dict[str, dict] = {i["name"]: i for i in (instances or [])}
        self.images = images or {}
        self.calls: list[tuple[str, ...]] = []
        self.cloud_init_payloads: dict[str, str] = {}
        self.cloud_init_paths: dict[str, str] = {}
        self.launch_ipv4 = ["10.0.0.2"]
        self.launch_rc = 0
        self.purge_rc = 0
        self.launch_delay = 0.0

    async def _run(self, *args: str) -> tuple[int, str, str]:
        self.calls.append(args)
        # Yield so that concurrent callers could interleave.
        await asyncio.sleep(0)
        cmd = args[0]
        if cmd == "list":
            return 0, json.dumps({"list": list(self.instances.values())}), ""
        if cmd == "find":
            return 0, json.dumps({"images": self.images}), ""
        if cmd == "launch":
            opts = dict(zip(args[2::2], args[3::2]))
            name = opts["--name"]
            self.cloud_init_paths[name] = opts["--cloud-init"]
            with open(opts["--cloud-init"], encoding="utf-8") as f:
                self.cloud_init_payloads[name] = f.read()
            if self.launch_delay:
                await asyncio.sleep(self.launch_delay)
            if self.launch_rc:
                return self.launch_rc, "", "launch failed: image not found"
            self.instances[name] = {
                "name": name,
                "state": "Running",
                "ipv4": list(self.launch_ipv4),
                "release": "Ubuntu 24.04 LTS",
            }
            return 0, "", ""
        if cmd == "delete":
            if args[1] not in self.instances:
                return 2, "", f'instance "{args[1]}" does not exist'
            self.instances[args[1]]["state"] = "Deleted"
            return 0, "", ""
        if cmd == "purge":
            if self.purge_rc:
                return self.purge_rc, "", "purge failed"
            self.instances = {k: v for k, v in self.instances.items() if v["state"] != "Deleted"}
            return 0, "", ""
        return 1, "", f"unknown command {cmd}"

    def commands(self) -> list[str]:
        return [c[0] for c in self.calls]


class FakeStream:
    def __init__(self, lines: list[bytes]) -> None:
        self.lines = lines

    async def __aiter__(self):
        for line in self.lines:
            yield line


class FakeProcess:
    def __init__(self) -> None:
        self.stdout = object()
        self.stdin = object()
        self.stderr = FakeStream([b"INFO: agent process started\n"])
        self.closed = False

    def close(self) -> None:
        self.closed = True


@dataclass
class ShellScript:
    """Behaviour shared by every FakeShell a launcher creates."""

    transport_failures: int = 0
    fail_forever: bool = False
    auth_fails: bool = False
    payload_exists: bool = False
    run_error: Exception | None = None
    connect_attempts: int = 0
    hosts: list[str] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)
    uploads: list[tuple[str, str]] = field(default_factory=list)
    started: list[str] = field(default_factory=list)
    shells: list["FakeShell"] = field(default_factory=list)


class FakeShell:
    def __init__(self, host: str, script: ShellScript) -> None:
        self.host = host
        self.script = script
        self.connected = False
        self.closed = False
        script.hosts.append(host)
        script.shells.append(self)

    async def connect(self, credential: SshCredential) -> None:
        self.script.connect_attempts += 1
        await asyncio.sleep(0)
        if self.script.fail_forever:
            raise TransportFailure("Connection refused")
        if self.script.transport_failures > 0:
            self.script.transport_failures -= 1
            raise TransportFailure("Connection refused")
        if self.script.auth_fails:
            raise AuthenticationFailed(f"Permission denied for {credential.username}")
        self.connected = True

    def _require(self) -> None:
        if not self.connected:
            raise ChannelBindingError(f"No authenticated SSH session to {self.host}")

    async def run(self, command: str) -> tuple[int, str]:
        self._require()
        if self.script.run_error is not None:
            raise self.script.run_error
        self.script.commands.append(command)
        if command.startswith("test -f"):
            return (0 if self.script.payload_exists else 1), ""
        if command == "set":
            return 0, "HOME=/home/builder\n"
        return 0, ""

    async def put(self, local_path: str, remote_dir: str) -> None:
        self._require()
        self.script.uploads.append((local_path, remote_dir))

    async def start(self, command: str) -> FakeProcess:
        self._require()
        self.script.started.append(command)
        return FakeProcess()

    def close(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BlockingLauncher:
    """Launcher that parks every agent in CreatingVm until released.

    An agent taken offline while parked fails and is deregistered, the way
    BootstrapLauncher stops at its next step.
    """

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.launched: list[str] = []

    async def launch(self, agent: AgentRecord) -> bool:
        self.launched.append(agent.name)
        await agent.set_state(ConnectionState.CREATING_VM)
        while not self.release.is_set():
            if agent.is_offline:
                await agent.registry.remove_node(agent)
                return False
            await asyncio.sleep(0.01)
        return True


def make_template(name: str = "java", labels: str = "java jdk17", **kwargs) -> AgentTemplate:
    defaults = dict(
        cpu=2,
        memory="2G",
        disk="10G",
        image_alias="jammy",
        cloud_init="#cloud-config\npackages:\n  - openjdk-17-jre-headless\n",
        credentials_id="builder",
    )
    defaults.update(kwargs)
    return AgentTemplate.from_dict({"name": name, "labels": labels, **defaults})


BUILDER = SshCredential(id="builder", username="builder", password="s3cret")


@pytest.fixture
def backend() -> FakeMultipass:
    return FakeMultipass()


@pytest.fixture
def registry() -> InMemoryHostRegistry:
    return InMemoryHostRegistry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def script() -> ShellScript:
    return ShellScript()


@pytest.fixture
def config() -> FleetConfig:
    return FleetConfig(ssh_retry_seconds=0, termination_delay_seconds=0.01)


@pytest.fixture
def make_controller(backend, registry, clock, config):
    def _make(templates=None, launcher_factory=None, **kwargs) -> FleetController:
        return FleetController(
            name=kwargs.pop("name", "multipass"),
            templates=templates if templates is not None else [make_template()],
            client=backend,
            registry=registry,
            credentials=StaticCredentialResolver.of([BUILDER]),
            config=kwargs.pop("config", config),
            launcher_factory=launcher_factory,
            events=EventBuffer(),
            clock=clock,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_launcher(script, config):
    def _make(controller: FleetController, **overrides) -> BootstrapLauncher:
        return BootstrapLauncher(
            controller,
            credentials=controller.credentials,
            binder=controller.channel_binder,
            config=overrides.pop("config", config),
            shell_factory=lambda host: FakeShell(host, script),
        )

    return _make


def event_types(agent: AgentRecord) -> list[str]:
    return [event_type for event_type, _ in agent.events.events(agent.name)]


def event_payloads(agent: AgentRecord, event_type: str) -> list[dict]:
    return [p for t, p in agent.events.events(agent.name) if t == event_type]
