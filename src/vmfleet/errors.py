"""Error taxonomy for provisioning, backend calls, and agent bootstrap."""

from __future__ import annotations


class FleetError(Exception):
    """Base exception for all vmfleet errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class ConfigurationError(FleetError):
    """Unknown template, invalid or colliding name, missing credential."""


# ── Backend ───────────────────────────────────────────────────


class BackendError(FleetError):
    """A virtualization backend command did not do what was asked."""


class BackendUnavailable(BackendError):
    """The backend executable could not be invoked or refused to answer."""


class CreateFailed(BackendError):
    """``multipass launch`` exited non-zero."""

    def __init__(self, name: str, returncode: int, stderr: str) -> None:
        self.name = name
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"Failed to create instance {name} (exit {returncode}): {stderr}")


class ParseError(BackendError):
    """Backend output did not have the expected JSON shape."""


# ── Bootstrap ─────────────────────────────────────────────────


class NetworkUnready(FleetError):
    """The instance is missing or has no IPv4 address yet."""


class TransportFailure(FleetError):
    """The SSH transport to the instance could not be established."""


class AuthenticationFailed(FleetError):
    """The SSH server rejected the template's credential."""


class LaunchAborted(FleetError):
    """The SSH wait loop gave up because the agent was marked offline."""


class ChannelBindingError(FleetError):
    """Staging the payload or binding the remote process streams failed."""


# ── Manual provisioning ───────────────────────────────────────


class ProvisioningRejected(FleetError):
    """Manual provisioning refused before anything was created."""

    def __init__(self, message: str, status_code: int = 409) -> None:
        super().__init__(message, status_code=status_code)


class ProvisioningFailed(FleetError):
    """Manual provisioning was accepted but produced no agent."""

    def __init__(self, message: str = "No agent could be provisioned") -> None:
        super().__init__(message, status_code=500)
