"""Interfaces to the host orchestrator, plus in-memory implementations.

The host owns the node registry, credential storage and the execution
channel protocol. vmfleet only talks to them through the protocols below.
The in-memory classes back the bundled server and the tests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Iterable, Protocol

if TYPE_CHECKING:
    from vmfleet.agent import AgentRecord

logger = logging.getLogger(__name__)

SSH_SCHEME = "ssh"


class HostRegistry(Protocol):
    async def add_node(self, agent: AgentRecord) -> None: ...

    async def remove_node(self, agent: AgentRecord) -> None: ...

    def get_nodes(self) -> list[AgentRecord]: ...

    def is_quiescing(self) -> bool: ...

    def is_terminating(self) -> bool: ...


@dataclass
class SshCredential:
    id: str
    username: str
    password: str | None = None
    private_key_path: str | None = None
    passphrase: str | None = None
    scheme: str = SSH_SCHEME

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SshCredential:
        return cls(
            id=data["id"],
            username=data["username"],
            password=data.get("password"),
            private_key_path=data.get("private_key_path"),
            passphrase=data.get("passphrase"),
            scheme=data.get("scheme", SSH_SCHEME),
        )


class CredentialResolver(Protocol):
    def resolve(self, credentials_id: str) -> SshCredential | None: ...


@dataclass
class ExecutionChannel:
    """The remote execution process's stdio, as handed to the host.

    ``reader`` is the process stdout, ``writer`` its stdin. The transport
    (an asyncssh process) is kept so the channel can be torn down.
    """

    reader: Any
    writer: Any
    transport: Any = None

    def close(self) -> None:
        if self.transport is not None:
            self.transport.close()


class ChannelBinder(Protocol):
    async def bind(self, agent: AgentRecord, channel: ExecutionChannel) -> None: ...


# ── In-memory implementations ─────────────────────────────────


class InMemoryHostRegistry:
    """Node registry kept in process memory.

    Removing a node runs the agent's termination hook, which is where the
    backing VM gets destroyed.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, AgentRecord] = {}
        self.quiescing = False
        self.terminating = False

    async def add_node(self, agent: AgentRecord) -> None:
        self._nodes[agent.name] = agent
        logger.info("Node %s added", agent.name)

    async def remove_node(self, agent: AgentRecord) -> None:
        removed = self._nodes.pop(agent.name, None)
        if removed is None:
            return
        logger.info("Node %s removed", agent.name)
        await removed.terminate()

    def get_nodes(self) -> list[AgentRecord]:
        return list(self._nodes.values())

    def get_node(self, name: str) -> AgentRecord | None:
        return self._nodes.get(name)

    def is_quiescing(self) -> bool:
        return self.quiescing

    def is_terminating(self) -> bool:
        return self.terminating


@dataclass
class StaticCredentialResolver:
    """Resolves SSH credentials from a fixed list (the fleet file)."""

    credentials: dict[str, SshCredential] = field(default_factory=dict)

    @classmethod
    def of(cls, credentials: Iterable[SshCredential]) -> StaticCredentialResolver:
        return cls({c.id: c for c in credentials})

    def resolve(self, credentials_id: str) -> SshCredential | None:
        credential = self.credentials.get(credentials_id)
        if credential is None or credential.scheme != SSH_SCHEME:
            return None
        return credential


class AttachingChannelBinder:
    """Stores the channel on the agent; the host reads and writes it there."""

    async def bind(self, agent: AgentRecord, channel: ExecutionChannel) -> None:
        agent.channel = channel
