"""Demand-driven provisioning of ephemeral Multipass agents.

A controller owns the templates for one Multipass host. Given a demand
signal (label, count) it picks the matching templates, works out how many
agents are still missing, and starts one launch task per missing agent.
Launches run in the background; provision() only returns handles.

Provisioning decisions are serialized per controller and rate limited by a
controller-wide cooldown, so a burst of demand signals cannot trigger a
burst of VM launches.
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable

from vmfleet.agent import OFFLINE_SHUTDOWN, AgentRecord
from vmfleet.backend.client import MultipassClient
from vmfleet.config import FleetConfig
from vmfleet.errors import ConfigurationError, ProvisioningFailed, ProvisioningRejected
from vmfleet.events import EventBuffer
from vmfleet.host import AttachingChannelBinder, ChannelBinder, CredentialResolver, HostRegistry
from vmfleet.launcher import BootstrapLauncher
from vmfleet.template import AgentTemplate

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9-]*$")
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
_SUFFIX_LENGTH = 8


@dataclass
class ProvisionRequest:
    """A demand signal. ``label=None`` matches every template."""

    label: str | None = None
    count: int = 1


@dataclass
class PlannedAgent:
    """Handle for an agent whose launch is in flight.

    ``future`` resolves to the connected AgentRecord, or None if the launch
    failed.
    """

    name: str
    template_name: str
    future: asyncio.Task = field(repr=False)


class ProvisionOutcome(str, Enum):
    PLANNED = "planned"
    NOTHING_NEEDED = "nothing_needed"
    CANNOT_SATISFY = "cannot_satisfy"
    COOLDOWN = "cooldown"
    DRAINING = "draining"


class FleetController:
    """Provisioning controller for one Multipass host."""

    def __init__(
        self,
        name: str,
        templates: Iterable[AgentTemplate],
        client: MultipassClient,
        registry: HostRegistry,
        credentials: CredentialResolver,
        config: FleetConfig | None = None,
        fallback_label: str = "",
        channel_binder: ChannelBinder | None = None,
        launcher_factory: Callable[[FleetController], BootstrapLauncher] | None = None,
        events: EventBuffer | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not name or not _NAME_RE.match(name):
            raise ConfigurationError(
                f"Invalid controller name {name!r}: use letters, digits and hyphens, starting with a letter"
            )
        self.name = name
        self.templates: tuple[AgentTemplate, ...] = tuple(templates)
        seen: set[str] = set()
        for template in self.templates:
            if template.name in seen:
                raise ConfigurationError(f"Duplicate template name {template.name!r} in controller {name}")
            seen.add(template.name)

        self.client = client
        self.registry = registry
        self.credentials = credentials
        self.config = config or FleetConfig()
        self.fallback_label = fallback_label
        self.channel_binder = channel_binder or AttachingChannelBinder()
        self.launcher_factory = launcher_factory or self._default_launcher
        self.events = events or EventBuffer()
        self._clock = clock

        self._lock = asyncio.Lock()
        self._last_provision_time: float | None = None
        # Names handed out to agents that have not terminated yet.
        self._allocated_names: set[str] = set()
        self._launches: dict[str, asyncio.Task] = {}
        self.last_outcome: ProvisionOutcome | None = None

    def _default_launcher(self, controller: FleetController) -> BootstrapLauncher:
        return BootstrapLauncher(
            controller,
            credentials=self.credentials,
            binder=self.channel_binder,
            config=self.config,
        )

    # ── Templates ─────────────────────────────────────────────────

    def get_template(self, name: str) -> AgentTemplate | None:
        for template in self.templates:
            if template.name == name:
                return template
        return None

    def templates_for(self, label: str | None) -> list[AgentTemplate]:
        return [t for t in self.templates if t.matches(label, self.fallback_label)]

    def can_provision(self, request: ProvisionRequest) -> bool:
        """True if some template can serve the request's label. No cooldown check."""
        result = bool(self.templates_for(request.label))
        logger.info(
            "[%s] Check provisioning capacity for label '%s': %s",
            self.name, request.label, result,
        )
        return result

    # ── Provisioning ──────────────────────────────────────────────

    def _is_draining(self) -> bool:
        return self.registry.is_quiescing() or self.registry.is_terminating()

    def _on_cooldown(self) -> float | None:
        """Seconds since the last decision if still inside the cooldown window."""
        if self._last_provision_time is None:
            return None
        elapsed = self._clock() - self._last_provision_time
        if elapsed < self.config.provision_cooldown_seconds:
            return elapsed
        return None

    def agents(self) -> list[AgentRecord]:
        """Agents in the host registry that belong to this controller."""
        return [
            node for node in self.registry.get_nodes()
            if isinstance(node, AgentRecord) and node.controller_name == self.name
        ]

    def _connecting_count(self, template: AgentTemplate) -> int:
        return sum(1 for a in self.agents() if a.template.name == template.name and a.is_launching)

    async def provision(self, request: ProvisionRequest) -> list[PlannedAgent]:
        """Plan and start launches for a demand signal.

        Returns immediately with one handle per started launch. An empty list
        means nothing was started; ``last_outcome`` says why.
        """
        async with self._lock:
            if self._is_draining():
                self.last_outcome = ProvisionOutcome.DRAINING
                return []

            templates = self.templates_for(request.label)
            if not templates:
                logger.info("[%s] Cannot satisfy label '%s': no matching template", self.name, request.label)
                self.last_outcome = ProvisionOutcome.CANNOT_SATISFY
                return []

            elapsed = self._on_cooldown()
            if elapsed is not None:
                logger.info(
                    "[%s] Provision of %d skipped, still on cooldown (%dms of %dms)",
                    self.name, request.count, elapsed * 1000,
                    self.config.provision_cooldown_seconds * 1000,
                )
                self.last_outcome = ProvisionOutcome.COOLDOWN
                return []

            planned: list[PlannedAgent] = []
            for template in templates:
                connecting = self._connecting_count(template)
                deficit = max(request.count - connecting, 0)
                logger.info(
                    "[%s] Provisioning %d agents of template '%s' for label '%s' (%d already provisioning)",
                    self.name, deficit, template.name, request.label, connecting,
                )
                for _ in range(deficit):
                    planned.append(await self._plan(template))

            self._last_provision_time = self._clock()
            self.last_outcome = ProvisionOutcome.PLANNED if planned else ProvisionOutcome.NOTHING_NEEDED
            return planned

    async def provision_template(self, template_name: str) -> PlannedAgent:
        """Manually provision exactly one agent from a named template."""
        if self._is_draining():
            raise ProvisioningRejected("Host is shutting down, not provisioning", status_code=409)
        template = self.get_template(template_name)
        if template is None:
            raise ProvisioningRejected(f"No template named {template_name}", status_code=404)

        async with self._lock:
            elapsed = self._on_cooldown()
            if elapsed is not None:
                self.last_outcome = ProvisionOutcome.COOLDOWN
                raise ProvisioningFailed(
                    f"Controller {self.name} is on cooldown, no agent provisioned"
                )
            planned = await self._plan(template)
            self._last_provision_time = self._clock()
            self.last_outcome = ProvisionOutcome.PLANNED
            return planned

    def _allocate_name(self) -> str:
        suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(_SUFFIX_LENGTH))
        name = f"{self.name}-{suffix}"
        known = {node.name for node in self.registry.get_nodes()}
        if name in self._allocated_names or name in known:
            raise ConfigurationError(f"Generated agent name {name} is already in use")
        self._allocated_names.add(name)
        return name

    async def _plan(self, template: AgentTemplate) -> PlannedAgent:
        agent = AgentRecord(
            name=self._allocate_name(),
            template=template,
            controller_name=self.name,
            client=self.client,
            registry=self.registry,
            events=self.events,
        )
        agent.add_terminated_callback(self._release_name)
        await self.registry.add_node(agent)
        task = asyncio.create_task(self._launch(agent), name=f"launch-{agent.name}")
        self._launches[agent.name] = task
        task.add_done_callback(lambda _: self._launches.pop(agent.name, None))
        return PlannedAgent(name=agent.name, template_name=template.name, future=task)

    def _release_name(self, agent: AgentRecord) -> None:
        self._allocated_names.discard(agent.name)

    async def _launch(self, agent: AgentRecord) -> AgentRecord | None:
        launcher = self.launcher_factory(self)
        try:
            connected = await launcher.launch(agent)
        except asyncio.CancelledError:
            logger.info("[%s] Launch of agent %s cancelled", self.name, agent.name)
            try:
                await self.registry.remove_node(agent)
            except Exception:
                logger.exception("[%s] Failed to deregister agent %s", self.name, agent.name)
            return None
        return agent if connected else None

    # ── Host hooks ────────────────────────────────────────────────

    async def startup(self) -> None:
        """Terminate agents left behind by a previous run of this controller.

        Called once by the host during its own startup.
        """
        stale = self.agents()
        if not stale:
            return
        logger.info("[%s] Deleting %d previous agents", self.name, len(stale))
        for agent in stale:
            # Whatever happened before the restart, a VM may exist.
            agent.vm_requested = True
            try:
                await agent.terminate()
            except Exception:
                logger.exception("[%s] Failed to terminate agent %s", self.name, agent.name)

    async def shutdown(self) -> None:
        """Stop in-flight launches and terminate every agent of this controller.

        Launches are not cancelled: their agents are taken offline and each
        launch stops at its next step, so a VM still being created is
        destroyed once ``multipass launch`` returns.
        """
        for agent in self.agents():
            if agent.is_launching:
                agent.mark_offline(OFFLINE_SHUTDOWN)
        await asyncio.gather(*self._launches.values(), return_exceptions=True)

        for agent in self.agents():
            try:
                await agent.terminate()
            except Exception:
                logger.exception("[%s] Failed to terminate agent %s", self.name, agent.name)
