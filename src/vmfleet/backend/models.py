"""Typed records parsed from ``multipass ... --format json`` output."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from vmfleet.errors import ParseError


class InstanceState(str, Enum):
    RUNNING = "Running"
    STOPPED = "Stopped"
    DELETED = "Deleted"


@dataclass
class VmInstance:
    """One entry of ``multipass list``.

    Not owned by vmfleet: always re-fetched from the backend, never cached.
    """

    name: str
    state: InstanceState
    ipv4: list[str] = field(default_factory=list)
    release: str = ""
    image_hash: str | None = None
    cpus: int = 0
    snapshots: int = 0

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> VmInstance:
        if not isinstance(data, dict):
            raise ParseError(f"Instance entry is not an object: {data!r}")
        try:
            name = data["name"]
            raw_state = data["state"]
        except KeyError as e:
            raise ParseError(f"Instance entry missing required field {e}") from e
        try:
            state = InstanceState(raw_state)
        except ValueError as e:
            raise ParseError(f"Unknown instance state: {raw_state!r}") from e

        return cls(
            name=name,
            state=state,
            # multipass reports no "ipv4" key (or null) for stopped instances
            ipv4=list(data.get("ipv4") or []),
            release=data.get("release") or "",
            image_hash=data.get("image_hash") or None,
            cpus=_as_int(data.get("cpus")),
            snapshots=_as_int(data.get("snapshots")),
        )


@dataclass
class VmImage:
    """One entry of ``multipass find --only-images``."""

    aliases: list[str] = field(default_factory=list)
    os: str = ""
    release: str = ""
    remote: str = ""
    version: str = ""

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> VmImage:
        if not isinstance(data, dict):
            raise ParseError(f"Image entry is not an object: {data!r}")
        return cls(
            aliases=list(data.get("aliases") or []),
            os=data.get("os") or "",
            release=data.get("release") or "",
            remote=data.get("remote") or "",
            version=data.get("version") or "",
        )


def _as_int(value: Any) -> int:
    # multipass has emitted both 2 and "2" for cpus across releases
    if value in (None, ""):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ParseError(f"Expected an integer, got {value!r}") from e
