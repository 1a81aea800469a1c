"""Best-effort reclamation of TCP ports held by stray processes.

A dev server from a previous session can outlive the application that
started it. Before starting a project, whatever is listening on its
port is terminated. Nothing here ever raises: failures are logged and
treated as "nothing to free".
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import List, Optional, Sequence

import psutil

from .termination import terminate_tree

logger = logging.getLogger(__name__)


def parse_lsof_pids(output: str) -> List[int]:
    """PIDs from ``lsof -t`` output (one per line)."""
    pids = []
    for line in output.splitlines():
        line = line.strip()
        if line.isdigit():
            pid = int(line)
            if pid not in pids:
                pids.append(pid)
    return pids


def parse_netstat_pids(output: str, port: int) -> List[int]:
    """PIDs listening on ``port`` from Windows ``netstat -ano`` output.

    Example line::

        TCP    0.0.0.0:3000     0.0.0.0:0     LISTENING     1234
    """
    pids = []
    suffix = f":{port}"
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 5 or fields[0].upper() != "TCP":
            continue
        local, state, pid = fields[1], fields[3], fields[-1]
        if not local.endswith(suffix) or state.upper() != "LISTENING":
            continue
        if pid.isdigit() and int(pid) != 0 and int(pid) not in pids:
            pids.append(int(pid))
    return pids


class PortReclaimer:
    """Finds and terminates the processes listening on a port."""

    def __init__(self, grace_period: float = 2.0, command_timeout: float = 5.0) -> None:
        self.grace_period = grace_period
        self.command_timeout = command_timeout

    async def _run(self, cmd: Sequence[str]) -> Optional[str]:
        """Run a listing command; None when the tool is unavailable."""
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except (FileNotFoundError, PermissionError):
            return None
        try:
            stdout, _ = await asyncio.wait_for(
                process.communicate(), timeout=self.command_timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("%s timed out", cmd[0])
            return None
        return stdout.decode("utf-8", errors="replace")

    def _pids_from_psutil(self, port: int) -> List[int]:
        pids = []
        try:
            connections = psutil.net_connections(kind="tcp")
        except psutil.AccessDenied:
            logger.debug("psutil.net_connections needs elevated privileges")
            return pids
        for conn in connections:
            if (
                conn.laddr
                and conn.laddr.port == port
                and conn.status == psutil.CONN_LISTEN
                and conn.pid
                and conn.pid not in pids
            ):
                pids.append(conn.pid)
        return pids

    async def find_pids(self, port: int) -> List[int]:
        """PIDs listening on ``port``, excluding this process."""
        if sys.platform.startswith("win"):
            output = await self._run(["netstat", "-ano", "-p", "tcp"])
            pids = parse_netstat_pids(output, port) if output is not None else None
        else:
            output = await self._run(["lsof", "-t", f"-iTCP:{port}", "-sTCP:LISTEN"])
            pids = parse_lsof_pids(output) if output is not None else None

        if pids is None:
            pids = self._pids_from_psutil(port)

        own = os.getpid()
        return [pid for pid in pids if pid != own]

    async def free_port(self, port: int) -> List[int]:
        """Terminate every process listening on ``port``.

        Returns:
            The PIDs termination was attempted on (empty when the port was free)
        """
        try:
            pids = await self.find_pids(port)
        except Exception as e:
            logger.warning("Could not list processes on port %s: %s", port, e)
            return []

        if not pids:
            return []

        logger.info("Freeing port %s held by pid(s) %s", port, pids)
        results = await asyncio.gather(
            *(terminate_tree(pid, self.grace_period) for pid in pids),
            return_exceptions=True,
        )
        for pid, result in zip(pids, results):
            if isinstance(result, BaseException):
                logger.warning("Failed to terminate pid %s on port %s: %s", pid, port, result)
        return pids
