from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field

from vmfleet.errors import ConfigurationError
from vmfleet.host import SshCredential
from vmfleet.template import AgentTemplate


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class FleetConfig:
    fleet_file: str = "/etc/vmfleet/fleet.toml"
    port: int = 3000
    multipass_bin: str = "multipass"
    provision_cooldown_seconds: float = 0.5
    termination_delay_seconds: float = 0.5
    # How long a terminated agent's launch log stays readable.
    event_retention_seconds: float = 300
    ssh_port: int = 22
    ssh_connect_timeout_seconds: float = 10
    ssh_retry_seconds: float = 5
    # Accept any host key from agent VMs. Fresh VMs have unknown keys; turn
    # this off and point known_hosts at a managed file to verify them.
    insecure_host_keys: bool = True
    known_hosts: str = ""
    # Abort the launch when SSH authentication fails instead of carrying on.
    strict_auth: bool = False
    remote_fs: str = "/home/agent"
    payload_path: str = "/opt/vmfleet/agent.jar"
    agent_command: str = "java -jar {payload}"

    @staticmethod
    def from_env() -> FleetConfig:
        return FleetConfig(
            fleet_file=os.environ.get("VMFLEET_FLEET_FILE", "/etc/vmfleet/fleet.toml"),
            port=int(os.environ.get("VMFLEET_PORT", "3000")),
            multipass_bin=os.environ.get("VMFLEET_MULTIPASS_BIN", "multipass"),
            provision_cooldown_seconds=float(os.environ.get("VMFLEET_COOLDOWN_SECONDS", "0.5")),
            ssh_retry_seconds=float(os.environ.get("VMFLEET_SSH_RETRY_SECONDS", "5")),
            event_retention_seconds=float(os.environ.get("VMFLEET_EVENT_RETENTION_SECONDS", "300")),
            insecure_host_keys=_env_bool("VMFLEET_INSECURE_HOST_KEYS", True),
            known_hosts=os.environ.get("VMFLEET_KNOWN_HOSTS", ""),
            strict_auth=_env_bool("VMFLEET_STRICT_AUTH", False),
            remote_fs=os.environ.get("VMFLEET_REMOTE_FS", "/home/agent"),
            payload_path=os.environ.get("VMFLEET_PAYLOAD_PATH", "/opt/vmfleet/agent.jar"),
            agent_command=os.environ.get("VMFLEET_AGENT_COMMAND", "java -jar {payload}"),
        )


@dataclass
class FleetFile:
    """Controller definition read from the TOML fleet file."""

    name: str = "multipass"
    fallback_label: str = ""
    templates: list[AgentTemplate] = field(default_factory=list)
    credentials: list[SshCredential] = field(default_factory=list)


def load_fleet_file(path: str) -> FleetFile:
    """Read the controller, its templates and SSH credentials from TOML."""
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Fleet file not found: {path}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid fleet file {path}: {e}") from e

    controller = data.get("controller", {})
    try:
        credentials = [SshCredential.from_dict(c) for c in data.get("credentials", [])]
    except KeyError as e:
        raise ConfigurationError(f"Credential in {path} is missing {e}") from e

    return FleetFile(
        name=controller.get("name", "multipass"),
        fallback_label=controller.get("fallback_label", ""),
        templates=[AgentTemplate.from_dict(t) for t in data.get("templates", [])],
        credentials=credentials,
    )
