"""SSH session to an agent VM, on top of asyncssh."""

from __future__ import annotations

import asyncio
import logging
import os

import asyncssh

from vmfleet.errors import AuthenticationFailed, ChannelBindingError, TransportFailure
from vmfleet.host import SshCredential

logger = logging.getLogger(__name__)


class RemoteShell:
    """One SSH connection used to bootstrap an agent.

    With ``insecure_host_keys`` the server host key is accepted without
    verification (the default, since agent VMs boot with fresh keys).
    Without it, keys are checked against ``known_hosts``.
    """

    def __init__(
        self,
        host: str,
        port: int = 22,
        insecure_host_keys: bool = True,
        known_hosts: str = "",
        connect_timeout: float = 10,
    ) -> None:
        self.host = host
        self.port = port
        self.insecure_host_keys = insecure_host_keys
        self.known_hosts = known_hosts
        self.connect_timeout = connect_timeout
        self._conn: asyncssh.SSHClientConnection | None = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    async def connect(self, credential: SshCredential) -> None:
        """Open the transport and authenticate.

        Raises TransportFailure when the server is not reachable (yet) and
        AuthenticationFailed when it rejects the credential.
        """
        options: dict = {
            "port": self.port,
            "username": credential.username,
            "connect_timeout": self.connect_timeout,
        }
        if credential.password:
            options["password"] = credential.password
        if credential.private_key_path:
            options["client_keys"] = [os.path.expanduser(credential.private_key_path)]
            if credential.passphrase:
                options["passphrase"] = credential.passphrase
        if self.insecure_host_keys:
            options["known_hosts"] = None
        elif self.known_hosts:
            options["known_hosts"] = os.path.expanduser(self.known_hosts)

        try:
            self._conn = await asyncssh.connect(self.host, **options)
        except asyncssh.PermissionDenied as e:
            raise AuthenticationFailed(
                f"SSH authentication to {self.host} as {credential.username} failed: {e}"
            ) from e
        except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
            raise TransportFailure(f"SSH connection to {self.host}:{self.port} failed: {e}") from e

    def _require(self) -> asyncssh.SSHClientConnection:
        if self._conn is None:
            raise ChannelBindingError(f"No authenticated SSH session to {self.host}")
        return self._conn

    async def run(self, command: str) -> tuple[int, str]:
        """Run a command to completion; returns (exit status, stdout + stderr)."""
        result = await self._require().run(command, check=False)
        output = f"{result.stdout or ''}{result.stderr or ''}"
        return result.exit_status or 0, output

    async def put(self, local_path: str, remote_dir: str) -> None:
        await asyncssh.scp(local_path, (self._require(), remote_dir))

    async def start(self, command: str) -> asyncssh.SSHClientProcess:
        """Start a long-running command with binary stdio."""
        return await self._require().create_process(command, encoding=None)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
