"""Process-tree termination with graceful-then-forceful escalation."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import List

import psutil

logger = logging.getLogger(__name__)


def _collect_tree(pid: int) -> List[psutil.Process]:
    root = psutil.Process(pid)
    try:
        children = root.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        children = []
    # children first so a parent cannot respawn them while it shuts down
    return children + [root]


def _signal_all(procs: List[psutil.Process], force: bool) -> None:
    for proc in procs:
        try:
            if force:
                proc.kill()
            else:
                proc.terminate()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied:
            logger.warning("Access denied signalling pid %s", proc.pid)


def _signal_group(pgid: int, force: bool) -> None:
    if not hasattr(os, "killpg"):
        return
    try:
        os.killpg(pgid, signal.SIGKILL if force else signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        pass


def terminate_tree_sync(
    pid: int, grace_period: float = 5.0, process_group: bool = False
) -> bool:
    """Terminate ``pid`` and all of its descendants.

    Sends a termination request to the whole tree, waits up to
    ``grace_period`` seconds, then force-kills whatever is still alive.
    With ``process_group`` (POSIX, ``pid`` leads its own session) the
    signals also go to the process group, which catches descendants that
    were re-parented away from ``pid``.

    Returns:
        True if every process in the tree is gone afterwards
    """
    try:
        procs = _collect_tree(pid)
    except psutil.NoSuchProcess:
        return True
    except psutil.AccessDenied:
        logger.warning("Access denied inspecting pid %s", pid)
        return False

    if process_group:
        _signal_group(pid, force=False)
    _signal_all(procs, force=False)
    _gone, alive = psutil.wait_procs(procs, timeout=grace_period)
    if not alive:
        return True

    logger.info("Force-killing %d process(es) in tree of pid %s", len(alive), pid)
    if process_group:
        _signal_group(pid, force=True)
    _signal_all(alive, force=True)
    _gone, alive = psutil.wait_procs(alive, timeout=2.0)
    return not alive


async def terminate_tree(
    pid: int, grace_period: float = 5.0, process_group: bool = False
) -> bool:
    """Async wrapper around :func:`terminate_tree_sync` (runs in an executor)."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(
        None, terminate_tree_sync, pid, grace_period, process_group
    )


async def terminate_child(
    process: asyncio.subprocess.Process, grace_period: float = 5.0
) -> bool:
    """Terminate a process spawned by this event loop, plus its descendants.

    The root is signalled and awaited through asyncio so the loop's child
    watcher still reaps it and records its real exit status; psutil only
    handles the descendants.

    Returns:
        True if the root and every descendant are gone afterwards
    """
    if process.returncode is not None:
        return True

    loop = asyncio.get_running_loop()
    group = hasattr(os, "killpg")
    try:
        descendants = psutil.Process(process.pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        descendants = []

    for force in (False, True):
        if group:
            _signal_group(process.pid, force)
        _signal_all(descendants, force)
        try:
            if force:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            pass

        # root and descendants share one deadline per phase
        deadline = loop.time() + (grace_period if not force else 2.0)
        try:
            await asyncio.wait_for(process.wait(), timeout=deadline - loop.time())
        except asyncio.TimeoutError:
            pass
        if descendants:
            remaining = max(deadline - loop.time(), 0.1)
            _gone, descendants = await loop.run_in_executor(
                None, psutil.wait_procs, descendants, remaining
            )
        if process.returncode is not None and not descendants:
            return True
        if not force:
            logger.info("Force-killing pid %s after %.1fs grace period", process.pid, grace_period)

    return process.returncode is not None and not descendants
