"""Bootstrap of a freshly provisioned agent into a connected execution node.

For one agent, ``BootstrapLauncher.launch`` walks:

    CreatingVm        find the VM by agent name, create it if missing
    AwaitingNetwork   re-query, take the first IPv4 address
    Authenticating    SSH connect + authenticate (waits for sshd to come up)
    ChannelEstablished
                      stage the payload, start it, hand its stdio to the host

Any fatal error moves the agent to Failed and deregisters it from the host.
Errors never propagate to the caller; ``launch`` returns False instead.
Taking the agent offline stops the launch at its next step; an agent
terminated meanwhile stays terminated, and a VM or channel created after
that point is torn down again.
"""

from __future__ import annotations

import asyncio
import logging
import os
import posixpath
import shlex
from typing import TYPE_CHECKING, Any, Callable

import asyncssh

from vmfleet.agent import FINAL_STATES, AgentRecord, ConnectionState
from vmfleet.backend.models import InstanceState
from vmfleet.config import FleetConfig
from vmfleet.errors import (
    AuthenticationFailed,
    ChannelBindingError,
    ConfigurationError,
    FleetError,
    LaunchAborted,
    NetworkUnready,
    TransportFailure,
)
from vmfleet.events import FailedEvent
from vmfleet.host import ChannelBinder, CredentialResolver, ExecutionChannel
from vmfleet.ssh import RemoteShell
from vmfleet.template import AgentTemplate

if TYPE_CHECKING:
    from vmfleet.controller import FleetController

logger = logging.getLogger(__name__)

PAYLOAD_DIR = "agent"


class _RemoteProcess:
    """Closes the remote process together with the SSH session carrying it."""

    def __init__(self, process: Any, shell: RemoteShell) -> None:
        self.process = process
        self.shell = shell

    def close(self) -> None:
        self.process.close()
        self.shell.close()


class BootstrapLauncher:
    """Launch strategy for Multipass-backed agents.

    ``launch`` is serialized per launcher instance so backend command
    sequences from one launcher never interleave.
    """

    def __init__(
        self,
        controller: FleetController,
        credentials: CredentialResolver,
        binder: ChannelBinder,
        config: FleetConfig,
        shell_factory: Callable[[str], RemoteShell] | None = None,
    ) -> None:
        self.controller = controller
        self.credentials = credentials
        self.binder = binder
        self.config = config
        self.shell_factory = shell_factory or self._default_shell
        self._lock = asyncio.Lock()
        self._pumps: set[asyncio.Task] = set()

    def _default_shell(self, host: str) -> RemoteShell:
        return RemoteShell(
            host,
            port=self.config.ssh_port,
            insecure_host_keys=self.config.insecure_host_keys,
            known_hosts=self.config.known_hosts,
            connect_timeout=self.config.ssh_connect_timeout_seconds,
        )

    async def launch(self, agent: AgentRecord) -> bool:
        """Bring ``agent`` to ChannelEstablished. Returns False on failure."""
        async with self._lock:
            try:
                await self._launch(agent)
                return True
            except FleetError as e:
                logger.error("Launch of agent %s failed: %s", agent.name, e)
                await self._fail(agent, e)
            except Exception as e:
                logger.exception("Unexpected error launching agent %s", agent.name)
                await self._fail(agent, e)
            return False

    async def _launch(self, agent: AgentRecord) -> None:
        self._check_online(agent)
        await agent.set_state(ConnectionState.CREATING_VM)

        template = self.controller.get_template(agent.template.name)
        if template is None:
            raise ConfigurationError(f"No template named {agent.template.name} for agent {agent.name}")

        address = await self._ensure_instance(agent, template)
        self._check_online(agent)
        await agent.set_state(ConnectionState.AWAITING_NETWORK)

        shell = await self._connect(agent, template, address)
        try:
            self._check_online(agent)
            await self._start_agent(agent, shell)
            self._check_online(agent)
        except BaseException:
            shell.close()
            raise
        await agent.set_state(ConnectionState.CHANNEL_ESTABLISHED)
        agent.accepting_tasks = True
        logger.info("Agent %s connected", agent.name)

    @staticmethod
    def _check_online(agent: AgentRecord) -> None:
        """Stop the launch once the agent has been taken offline."""
        if agent.is_offline:
            raise LaunchAborted(f"Agent {agent.name} went offline during launch ({agent.offline_reason})")

    async def _ensure_instance(self, agent: AgentRecord, template: AgentTemplate) -> str:
        """Create the VM unless one with the agent's name exists; return its IPv4."""
        client = agent.client
        existing = await client.get_instance(agent.name)
        if existing is None:
            await agent.events.log(agent.name, f"Creating VM {agent.name} from {template.image_alias}")
            agent.vm_requested = True
            await client.create_instance(
                agent.name,
                template.cloud_init,
                template.cpu,
                template.memory,
                template.disk,
                template.image_alias,
            )
        elif existing.state is InstanceState.DELETED:
            raise ConfigurationError(
                f"Instance name {agent.name} collides with a deleted instance on the backend"
            )
        else:
            logger.info("Reusing existing instance %s (%s)", agent.name, existing.state.value)
            agent.vm_requested = True

        instance = await client.get_instance(agent.name)
        if instance is None:
            raise NetworkUnready(f"Cannot find the instance named {agent.name}")
        if not instance.ipv4:
            raise NetworkUnready(f"Instance {agent.name} has no IPv4 address")
        return instance.ipv4[0]

    async def _connect(self, agent: AgentRecord, template: AgentTemplate, address: str) -> RemoteShell:
        """Connect and authenticate, retrying until sshd answers.

        The wait between attempts is interrupted when the agent goes offline;
        an offline agent with a recorded reason aborts the launch.
        """
        credential = self.credentials.resolve(template.credentials_id)
        if credential is None:
            raise ConfigurationError(
                f"No SSH credential {template.credentials_id!r} for template {template.name}"
            )

        logger.info(
            "Connecting to %s (%s) on port %d",
            agent.name, address, self.config.ssh_port,
        )
        while True:
            shell = self.shell_factory(address)
            try:
                await shell.connect(credential)
            except TransportFailure as e:
                if agent.is_offline and agent.offline_reason:
                    raise LaunchAborted(
                        f"SSH connection cannot be established and the agent is offline "
                        f"({agent.offline_reason}): {e}"
                    ) from e
                logger.warning(
                    "Waiting for SSH server on %s to be ready, next attempt in %ss: %s",
                    agent.name, self.config.ssh_retry_seconds, e,
                )
                if await agent.wait_offline(self.config.ssh_retry_seconds):
                    raise LaunchAborted(
                        f"Agent {agent.name} went offline while waiting for SSH ({agent.offline_reason})"
                    ) from e
                continue
            except AuthenticationFailed as e:
                await agent.set_state(ConnectionState.AUTHENTICATING)
                logger.error(
                    "Failed to authenticate agent %s with credentials %r: %s",
                    agent.name, credential.id, e,
                )
                await agent.events.log(agent.name, f"Authentication failed: {e}")
                if self.config.strict_auth:
                    raise
                # Carry on without a session; staging will fail loudly.
                return shell

            await agent.set_state(ConnectionState.AUTHENTICATING)
            logger.info(
                "Successfully authenticated agent %s with credentials %r",
                agent.name, credential.id,
            )
            return shell

    async def _start_agent(self, agent: AgentRecord, shell: RemoteShell) -> None:
        """Stage the payload, start it and bind its stdio to the host channel."""
        payload_dir = posixpath.join(self.config.remote_fs, PAYLOAD_DIR)
        payload_name = os.path.basename(self.config.payload_path)
        remote_payload = posixpath.join(payload_dir, payload_name)

        try:
            _, env_output = await shell.run("set")
            await agent.events.log(agent.name, env_output)

            await shell.run(f"mkdir -p {shlex.quote(payload_dir)}")
            rc, _ = await shell.run(f"test -f {shlex.quote(remote_payload)}")
            if rc == 0:
                await shell.run(f"rm {shlex.quote(remote_payload)}")
            await shell.put(self.config.payload_path, payload_dir)
            await shell.run(f"chmod 0644 {shlex.quote(remote_payload)}")

            command = self.config.agent_command.format(payload=shlex.quote(payload_name))
            process = await shell.start(f"cd {shlex.quote(payload_dir)} && {command}")
            channel = ExecutionChannel(
                reader=process.stdout,
                writer=process.stdin,
                transport=_RemoteProcess(process, shell),
            )
            await self.binder.bind(agent, channel)
        except ChannelBindingError:
            raise
        except (OSError, asyncssh.Error) as e:
            raise ChannelBindingError(f"Failed to start agent process on {agent.name}: {e}") from e

        if process.stderr is not None:
            pump = asyncio.create_task(self._pump_stderr(agent, process.stderr))
            self._pumps.add(pump)
            pump.add_done_callback(self._pumps.discard)

    async def _pump_stderr(self, agent: AgentRecord, stderr: Any) -> None:
        """Copy the remote process's stderr into the agent's log."""
        try:
            async for line in stderr:
                if agent.state in FINAL_STATES:
                    return
                if isinstance(line, bytes):
                    line = line.decode(errors="replace")
                await agent.events.log(agent.name, line.rstrip("\n"))
        except (OSError, asyncssh.Error) as e:
            logger.debug("stderr of agent %s closed: %s", agent.name, e)

    async def _fail(self, agent: AgentRecord, error: BaseException) -> None:
        if agent.state in FINAL_STATES:
            # Terminated while launching; only what the launch left behind remains.
            logger.info("Launch of agent %s stopped after termination: %s", agent.name, error)
            await self._discard(agent)
            return
        await agent.set_state(ConnectionState.FAILED)
        await agent.events.publish(agent.name, FailedEvent(error=str(error)))
        try:
            await agent.registry.remove_node(agent)
        except Exception as e:
            logger.error("Failed to deregister agent %s: %s", agent.name, e)

    async def _discard(self, agent: AgentRecord) -> None:
        """Tear down a channel or VM that appeared after the agent terminated."""
        if agent.channel is not None:
            agent.channel.close()
            agent.channel = None
        if agent.vm_requested:
            try:
                await agent.client.terminate_instance(agent.name)
            except Exception as e:
                logger.warning("Failed to terminate late instance %s: %s", agent.name, e)
