"""Multipass CLI wrapper.

Every backend interaction goes through the ``multipass`` executable:

    list   --format json                 -> {"list": [instance, ...]}
    find   --format json --only-images   -> {"images": {key: image, ...}}
    launch <alias> --name ... --cloud-init <file>
    delete <name>
    purge

Commands run via ``asyncio.create_subprocess_exec`` (no shell involved, so
template values never need quoting). Output is parsed into the records in
``vmfleet.backend.models``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from typing import Any

from vmfleet.backend.models import VmImage, VmInstance
from vmfleet.errors import BackendError, BackendUnavailable, CreateFailed, ParseError

logger = logging.getLogger(__name__)


class MultipassClient:
    """Stateful client for one Multipass host.

    The only state kept is the image alias catalog, which is assumed stable
    for the lifetime of the process.
    """

    def __init__(self, executable: str = "multipass") -> None:
        self.executable = executable
        self._image_aliases: list[str] | None = None

    async def _run(self, *args: str) -> tuple[int, str, str]:
        """Run ``multipass <args>`` and return (returncode, stdout, stderr)."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.executable,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise BackendUnavailable(f"Cannot invoke {self.executable}: {e}") from e
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # Never leave a half-finished backend command running behind us.
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        return proc.returncode or 0, stdout.decode().strip(), stderr.decode().strip()

    async def _query(self, *args: str) -> Any:
        rc, stdout, stderr = await self._run(*args)
        if rc != 0:
            raise BackendUnavailable(
                f"{self.executable} {' '.join(args)} exited {rc}: {stderr}"
            )
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            raise ParseError(f"Malformed JSON from {self.executable} {args[0]}: {e}") from e

    # ── Instances ─────────────────────────────────────────────────

    async def list_instances(self) -> list[VmInstance]:
        data = await self._query("list", "--format", "json")
        if not isinstance(data, dict) or not isinstance(data.get("list"), list):
            raise ParseError("Expected a 'list' array in multipass list output")
        return [VmInstance.from_json(entry) for entry in data["list"]]

    async def get_instance(self, name: str) -> VmInstance | None:
        """Return the instance with exactly this name, or None."""
        for instance in await self.list_instances():
            if instance.name == name:
                return instance
        return None

    async def create_instance(
        self,
        name: str,
        cloud_init: str,
        cpus: int,
        memory: str,
        disk: str,
        image_alias: str,
    ) -> None:
        """Launch a new instance. Fire-and-confirm: re-query to see the result.

        The cloud-init payload is written to a temporary file that only lives
        for the duration of the launch command.
        """
        fd, cloud_init_path = tempfile.mkstemp(prefix="cloud-init-config", suffix=".yaml")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(cloud_init)

            logger.info(
                "Launching instance %s (image=%s cpus=%s memory=%s disk=%s)",
                name, image_alias, cpus, memory, disk,
            )
            rc, _, stderr = await self._run(
                "launch",
                image_alias,
                "--name", name,
                "--cpus", str(cpus),
                "--memory", memory,
                "--disk", disk,
                "--cloud-init", cloud_init_path,
            )
        finally:
            if os.path.exists(cloud_init_path):
                os.remove(cloud_init_path)

        if rc != 0:
            raise CreateFailed(name, rc, stderr)

    async def terminate_instance(self, name: str) -> None:
        """Delete then purge an instance.

        The delete step is best-effort (the instance may already be gone);
        a failing purge is raised.
        """
        rc, _, stderr = await self._run("delete", name)
        if rc != 0:
            logger.debug("multipass delete %s exited %d: %s", name, rc, stderr)

        rc, _, stderr = await self._run("purge")
        if rc != 0:
            raise BackendError(f"multipass purge exited {rc}: {stderr}")

    # ── Images ────────────────────────────────────────────────────

    async def list_image_aliases(self) -> list[str]:
        """First alias of every launchable image, cached after the first call."""
        if self._image_aliases is not None:
            return self._image_aliases

        data = await self._query("find", "--format", "json", "--only-images")
        if not isinstance(data, dict) or not isinstance(data.get("images"), dict):
            raise ParseError("Expected an 'images' object in multipass find output")

        aliases: list[str] = []
        for entry in data["images"].values():
            image = VmImage.from_json(entry)
            if image.aliases:
                aliases.append(image.aliases[0])

        self._image_aliases = aliases
        return aliases
