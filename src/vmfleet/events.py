"""Agent launch log: event types and an in-memory event buffer.

Every agent gets its own log keyed by agent name. The launcher writes
state transitions, remote command output and failures into it; the server
replays and live-tails it over SSE until the agent is gone.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import AsyncIterator, Literal, Union

logger = logging.getLogger(__name__)


@dataclass
class BaseEvent:
    timestamp: float = field(default_factory=time.time)
    agent: str | None = None


@dataclass
class StateEvent(BaseEvent):
    type: Literal["vmfleet.state"] = "vmfleet.state"
    state: str = ""


@dataclass
class LogEvent(BaseEvent):
    type: Literal["vmfleet.log"] = "vmfleet.log"
    text: str = ""


@dataclass
class FailedEvent(BaseEvent):
    type: Literal["vmfleet.failed"] = "vmfleet.failed"
    error: str = ""


@dataclass
class TerminatedEvent(BaseEvent):
    type: Literal["vmfleet.terminated"] = "vmfleet.terminated"


FleetEvent = Union[
    StateEvent,
    LogEvent,
    FailedEvent,
    TerminatedEvent,
]

TERMINAL_EVENTS = {"vmfleet.failed", "vmfleet.terminated"}


@dataclass
class _AgentLog:
    events: list[tuple[str, dict]] = field(default_factory=list)
    closed: bool = False
    reaper: asyncio.TimerHandle | None = None


class EventBuffer:
    """Per-agent launch logs with replay and live tail.

    A log is closed when its agent terminates and dropped ``retention``
    seconds later, or as soon as a client has streamed a closed log to its
    end. Readers that are mid-stream keep their own reference to the log and
    finish normally after it is dropped.
    """

    def __init__(self, retention: float = 300) -> None:
        self.retention = retention
        self._logs: dict[str, _AgentLog] = {}
        self._cond: asyncio.Condition = asyncio.Condition()

    async def append(self, agent: str, event_type: str, payload: dict) -> None:
        async with self._cond:
            self._logs.setdefault(agent, _AgentLog()).events.append((event_type, payload))
            self._cond.notify_all()

    def events(self, agent: str) -> list[tuple[str, dict]]:
        """Snapshot of an agent's log; empty once it has been dropped."""
        log = self._logs.get(agent)
        return list(log.events) if log else []

    async def stream(self, agent: str, cursor: int = 0) -> AsyncIterator[tuple[str, dict]]:
        """Yield events for an agent from ``cursor``, then wait for more.

        Terminates once the agent's log is closed.
        """
        log = self._logs.setdefault(agent, _AgentLog())
        while True:
            while cursor < len(log.events):
                yield log.events[cursor]
                cursor += 1
            if log.closed:
                return
            async with self._cond:
                # Re-check under the lock: append() and close() notify while
                # holding it, so nothing can slip in before wait().
                while cursor >= len(log.events) and not log.closed:
                    await self._cond.wait()

    async def close(self, agent: str) -> None:
        """Mark an agent's log finished and schedule it to be dropped."""
        async with self._cond:
            log = self._logs.get(agent)
            if log is None or log.closed:
                return
            log.closed = True
            self._cond.notify_all()
        log.reaper = asyncio.get_running_loop().call_later(self.retention, self.reap, agent)

    def reap(self, agent: str) -> None:
        log = self._logs.pop(agent, None)
        if log is not None and log.reaper is not None:
            log.reaper.cancel()

    def has(self, agent: str) -> bool:
        return agent in self._logs

    def is_closed(self, agent: str) -> bool:
        log = self._logs.get(agent)
        return log is not None and log.closed

    async def publish(self, agent: str, event: FleetEvent) -> None:
        event.agent = agent
        payload = asdict(event)
        event_type = payload.pop("type")
        await self.append(agent, event_type, payload)

    async def log(self, agent: str, text: str) -> None:
        await self.publish(agent, LogEvent(text=text))

    async def stream_sse(self, agent: str) -> AsyncIterator[dict]:
        """Stream events formatted for SSE (event + data keys)."""
        async for event_type, payload in self.stream(agent):
            yield {
                "event": event_type,
                "data": json.dumps({"type": event_type, **payload}),
            }
            if event_type in TERMINAL_EVENTS:
                return
