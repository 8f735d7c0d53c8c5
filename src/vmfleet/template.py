from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from vmfleet.errors import ConfigurationError

DEFAULT_IMAGE_ALIAS = "noble"


def parse_labels(labels: str | None) -> frozenset[str]:
    """Split a whitespace separated label string into a label set."""
    if not labels:
        return frozenset()
    return frozenset(labels.split())


@dataclass(frozen=True)
class AgentTemplate:
    """Sizing and bootstrap parameters for one class of agent.

    Built from configuration and never mutated afterwards.
    """

    name: str
    labels: frozenset[str] = field(default_factory=frozenset)
    cpu: int = 1
    memory: str = "1G"
    disk: str = "5G"
    image_alias: str = DEFAULT_IMAGE_ALIAS
    cloud_init: str = ""
    credentials_id: str = ""

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ConfigurationError("Template name must not be empty")
        if self.cpu < 1:
            raise ConfigurationError(f"Template {self.name}: cpu must be at least 1")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentTemplate:
        """Build a template from a fleet file ``[[templates]]`` table."""
        labels = data.get("labels", data.get("label", ""))
        if isinstance(labels, (list, tuple)):
            label_set = frozenset(str(l) for l in labels)
        else:
            label_set = parse_labels(labels)
        return cls(
            name=data.get("name", ""),
            labels=label_set,
            cpu=int(data.get("cpu", 1)),
            memory=str(data.get("memory", "1G")),
            disk=str(data.get("disk", "5G")),
            image_alias=data.get("image_alias") or DEFAULT_IMAGE_ALIAS,
            cloud_init=data.get("cloud_init", ""),
            credentials_id=data.get("credentials_id", ""),
        )

    def matches(self, label: str | None, fallback_label: str | None = None) -> bool:
        """True if this template can serve work for ``label``.

        ``None`` is the wildcard and matches every template. A template
        without labels is only reachable through the controller's
        fallback label.
        """
        if label is None:
            return True
        wanted = parse_labels(label)
        if not self.labels:
            return bool(fallback_label) and fallback_label in wanted
        return bool(self.labels & wanted)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "labels": sorted(self.labels),
            "cpu": self.cpu,
            "memory": self.memory,
            "disk": self.disk,
            "image_alias": self.image_alias,
            "credentials_id": self.credentials_id,
        }
