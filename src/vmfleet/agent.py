"""Agent records and the one-task-per-VM lifecycle.

Lifecycle of an agent:
    Pending -> CreatingVm -> AwaitingNetwork -> Authenticating
            -> ChannelEstablished -> (one task) -> Terminating -> Terminated

Any launch step may end in Failed instead, after which the agent is
deregistered from the host (which in turn runs terminate()).
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from vmfleet.events import EventBuffer, StateEvent, TerminatedEvent
from vmfleet.template import AgentTemplate

if TYPE_CHECKING:
    from vmfleet.backend.client import MultipassClient
    from vmfleet.host import ExecutionChannel, HostRegistry

logger = logging.getLogger(__name__)

OFFLINE_DISCONNECT = "Disconnect VM"
OFFLINE_SHUTDOWN = "Controller shutting down"


class ConnectionState(str, Enum):
    PENDING = "Pending"
    CREATING_VM = "CreatingVm"
    AWAITING_NETWORK = "AwaitingNetwork"
    AUTHENTICATING = "Authenticating"
    CHANNEL_ESTABLISHED = "ChannelEstablished"
    FAILED = "Failed"
    TERMINATING = "Terminating"
    TERMINATED = "Terminated"


LAUNCHING_STATES = frozenset({
    ConnectionState.PENDING,
    ConnectionState.CREATING_VM,
    ConnectionState.AWAITING_NETWORK,
    ConnectionState.AUTHENTICATING,
})


# States an agent never leaves once teardown has started.
FINAL_STATES = frozenset({ConnectionState.TERMINATING, ConnectionState.TERMINATED})


class AgentRecord:
    """One ephemeral build agent backed by one Multipass VM.

    The display name doubles as the VM name on the backend.
    """

    def __init__(
        self,
        name: str,
        template: AgentTemplate,
        controller_name: str,
        client: MultipassClient,
        registry: HostRegistry,
        events: EventBuffer | None = None,
        vm_requested: bool = False,
    ) -> None:
        self.name = name
        self.template = template
        self.controller_name = controller_name
        self.client = client
        self.registry = registry
        self.events = events or EventBuffer()
        # False until the launcher first asks the backend for this VM; an
        # agent that never got that far has nothing to destroy.
        self.vm_requested = vm_requested

        self.state = ConnectionState.PENDING
        # Only a connected agent takes work; the launcher opens it up.
        self.accepting_tasks = False
        self.channel: ExecutionChannel | None = None
        self.offline_reason: str | None = None

        # Set when the agent goes offline; doubles as the cancellation token
        # for the SSH wait loop in the launcher.
        self._offline = asyncio.Event()
        self._on_terminated: list[Callable[[AgentRecord], None]] = []

    def __repr__(self) -> str:
        return f"AgentRecord(name={self.name!r}, template={self.template.name!r}, state={self.state.value})"

    @property
    def is_launching(self) -> bool:
        return self.state in LAUNCHING_STATES

    @property
    def is_offline(self) -> bool:
        return self._offline.is_set()

    async def set_state(self, state: ConnectionState) -> None:
        if self.state in FINAL_STATES and state not in FINAL_STATES:
            logger.debug("Agent %s is %s, not moving to %s", self.name, self.state.value, state.value)
            return
        logger.info("Agent %s: %s -> %s", self.name, self.state.value, state.value)
        self.state = state
        await self.events.publish(self.name, StateEvent(state=state.value))

    def add_terminated_callback(self, callback: Callable[[AgentRecord], None]) -> None:
        """Run ``callback(agent)`` once terminate() has finished."""
        self._on_terminated.append(callback)

    def mark_offline(self, reason: str) -> None:
        """Take the agent offline. Wakes anything blocked in wait_offline()."""
        self.offline_reason = reason
        self.accepting_tasks = False
        self._offline.set()

    async def wait_offline(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True early if marked offline."""
        try:
            await asyncio.wait_for(self._offline.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def terminate(self) -> None:
        """Termination hook: destroy the VM and forget the agent.

        Idempotent. Backend and registry failures are logged, not raised.
        """
        if self.state in FINAL_STATES:
            return
        await self.set_state(ConnectionState.TERMINATING)
        logger.info("Terminating agent %s", self.name)

        if not self.is_offline:
            self.mark_offline(OFFLINE_DISCONNECT)
        if self.channel is not None:
            try:
                self.channel.close()
            except Exception:
                logger.exception("Failed to close channel of agent %s", self.name)
            self.channel = None

        if self.vm_requested:
            try:
                await self.client.terminate_instance(self.name)
                logger.info("Terminated instance %s", self.name)
            except Exception as e:
                logger.warning("Failed to terminate instance %s: %s", self.name, e)

        try:
            await self.registry.remove_node(self)
        except Exception as e:
            logger.warning("Failed to remove node %s: %s", self.name, e)

        await self.set_state(ConnectionState.TERMINATED)
        await self.events.publish(self.name, TerminatedEvent())
        await self.events.close(self.name)
        for callback in self._on_terminated:
            callback(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "template": self.template.name,
            "controller": self.controller_name,
            "state": self.state.value,
            "accepting_tasks": self.accepting_tasks,
            "offline_reason": self.offline_reason,
        }


class AgentLifecycle:
    """Task bookkeeping that enforces one task per agent."""

    def __init__(self, termination_delay: float = 0.5) -> None:
        self.termination_delay = termination_delay
        self._pending: set[asyncio.Task] = set()

    def task_accepted(self, agent: AgentRecord, task: str) -> None:
        logger.info("[%s]: Task '%s' accepted", agent.name, task)

    def task_completed(
        self,
        agent: AgentRecord,
        task: str,
        duration: float,
        problems: BaseException | str | None = None,
    ) -> asyncio.Task:
        """Stop scheduling onto the agent and remove it shortly after.

        Returns the detached removal task.
        """
        if problems is None:
            logger.info("[%s]: Task '%s' completed in %.1fs", agent.name, task, duration)
        else:
            logger.info(
                "[%s]: Task '%s' completed with problems in %.1fs: %s",
                agent.name, task, duration, problems,
            )

        agent.accepting_tasks = False
        removal = asyncio.create_task(self._remove_after_delay(agent))
        self._pending.add(removal)
        removal.add_done_callback(self._pending.discard)
        return removal

    async def _remove_after_delay(self, agent: AgentRecord) -> None:
        logger.info("[%s]: Terminating agent after task", agent.name)
        try:
            await asyncio.sleep(self.termination_delay)
            await agent.registry.remove_node(agent)
        except Exception as e:
            logger.info("[%s]: Error when trying to terminate agent: %s", agent.name, e)
