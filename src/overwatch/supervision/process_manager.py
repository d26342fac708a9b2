"""
Process manager adapters for the self-healing supervisor.

The supervisor only needs two operations from whatever runs the processes:
list them with a status, and restart one by name. ``Pm2ProcessManager``
implements them on top of the pm2 command line.
"""

import asyncio
import json
import subprocess
from dataclasses import dataclass
from typing import Any, List, Protocol

from ..utils.errors import ErrorRecovery, ProcessManagerError
from ..utils.logging import get_logger


logger = get_logger("overwatch.process_manager")

ONLINE = "online"
FAILED_STATUSES = frozenset({"stopped", "errored"})


@dataclass(frozen=True)
class ProcessInfo:
    """A supervised process and its reported status."""
    name: str
    status: str

    @property
    def is_online(self) -> bool:
        return self.status == ONLINE

    @property
    def is_failed(self) -> bool:
        return self.status in FAILED_STATUSES


class ProcessManager(Protocol):
    async def list(self) -> List[ProcessInfo]:
        ...

    async def restart(self, name: str) -> None:
        ...


class Pm2ProcessManager:
    """ProcessManager backed by the ``pm2`` CLI."""

    def __init__(self, binary: str = "pm2", list_retries: int = 3, command_timeout: float = 30.0):
        self.binary = binary
        self.list_retries = list_retries
        self.command_timeout = command_timeout

    async def list(self) -> List[ProcessInfo]:
        """List processes from ``pm2 jlist``, retrying transient failures."""
        stdout = await ErrorRecovery.exponential_backoff(
            lambda: self._run("jlist"),
            max_retries=self.list_retries,
            base_delay=0.5,
            max_delay=5.0,
            exceptions=(ProcessManagerError,)
        )
        return self.parse_jlist(stdout)

    async def restart(self, name: str) -> None:
        await self._run("restart", name)
        logger.info("pm2_process_restarted", name=name)

    @staticmethod
    def parse_jlist(output: str) -> List[ProcessInfo]:
        try:
            entries: Any = json.loads(output or "[]")
        except json.JSONDecodeError as e:
            raise ProcessManagerError(f"Unreadable pm2 jlist output: {e}", cause=e) from e

        processes = []
        for entry in entries:
            env = entry.get("pm2_env") or {}
            processes.append(ProcessInfo(
                name=entry.get("name", "unknown"),
                status=env.get("status", "unknown"),
            ))
        return processes

    async def _run(self, *args: str) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary, *args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE
            )
        except OSError as e:
            raise ProcessManagerError(f"Cannot run {self.binary}: {e}", cause=e) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.command_timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise ProcessManagerError(
                f"{self.binary} {' '.join(args)} timed out after {self.command_timeout}s", cause=e
            ) from e

        if process.returncode != 0:
            raise ProcessManagerError(
                f"{self.binary} {' '.join(args)} exited with {process.returncode}: "
                f"{stderr.decode(errors='replace').strip()}"
            )
        return stdout.decode(errors="replace")


__all__ = [
    'ProcessInfo',
    'ProcessManager',
    'Pm2ProcessManager',
    'FAILED_STATUSES',
]
