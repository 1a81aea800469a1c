"""Supervision of long-running project dev servers.

Per project the lifecycle is::

    IDLE -> STARTING -> RUNNING -> (STOPPING -> IDLE) | (exit -> IDLE)
                 \\-> CANCELLING -> IDLE

All registry state (handles, states, cancellation marks) lives on one
``ProcessSupervisor`` and is only touched from the event loop thread, so
no two mutations for the same project interleave.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
import sys
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set, Union

from ..errors import (
    PortConflictError,
    SpawnError,
    StartCancelled,
    StartError,
    StartFailed,
)
from ..events import ProcessListener
from ..runtime.environment import build_environment
from ..runtime.types import InstalledRuntimeLocation
from .output import LineBuffer, PatternMatcher, is_port_conflict
from .ports import PortReclaimer
from .termination import terminate_child

logger = logging.getLogger(__name__)

READ_CHUNK = 4096


class ProjectState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CANCELLING = "cancelling"


class _Startup(Enum):
    READY = "ready"
    PORT_CONFLICT = "port_conflict"
    EXITED = "exited"


@dataclass
class StartRequest:
    """Everything needed to launch one project.

    By default the runtime's package manager is launched with ``args``
    (``npm start``, ``mvn spring-boot:run``); ``command`` replaces that
    entirely.

    ``resolve_runtime`` supplies ``location`` lazily (usually an install)
    and ``prepare`` runs after it, before the first spawn. Both run inside
    the supervised start, so a cancel that arrives meanwhile is honoured.
    """

    project_name: str
    project_dir: Union[str, Path]
    location: Optional[InstalledRuntimeLocation] = None
    port: Optional[int] = None
    readiness_patterns: Sequence[str] = ()
    args: Sequence[str] = ()
    command: Optional[Sequence[str]] = None
    env: Dict[str, str] = field(default_factory=dict)
    startup_timeout: Optional[float] = None
    resolve_runtime: Optional[Callable[[], Awaitable[InstalledRuntimeLocation]]] = field(
        default=None, repr=False
    )
    prepare: Optional[Callable[["StartRequest", ProcessListener], Awaitable[None]]] = field(
        default=None, repr=False
    )

    def resolve_command(self) -> List[str]:
        if self.command:
            return [str(c) for c in self.command]
        if self.location is None:
            raise ValueError(f"No runtime or command given for {self.project_name}")
        return [str(self.location.package_manager_executable_path), *self.args]

    @property
    def runtime_version(self) -> Optional[str]:
        return self.location.version if self.location else None


@dataclass(eq=False)
class ProjectProcessHandle:
    """A supervised process. Owned by the supervisor's registry."""

    project_name: str
    process: asyncio.subprocess.Process
    port: Optional[int]
    runtime_version: Optional[str]
    started_at: datetime = field(default_factory=datetime.now)
    ready: bool = False
    exit_code: Optional[int] = None
    startup: "asyncio.Future[_Startup]" = field(init=False, repr=False)
    monitor: Optional["asyncio.Task[None]"] = field(default=None, repr=False)
    stop_requested: bool = field(default=False, repr=False)
    superseded: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        self.startup = asyncio.get_running_loop().create_future()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_alive(self) -> bool:
        return self.process.returncode is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project_name,
            "pid": self.pid,
            "port": self.port,
            "runtime_version": self.runtime_version,
            "started_at": self.started_at.isoformat(),
            "ready": self.ready,
            "alive": self.is_alive,
            "exit_code": self.exit_code,
        }


def _spawn_kwargs() -> Dict[str, Any]:
    if sys.platform.startswith("win"):
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def _notify(callback: Callable[..., None], *args: Any) -> None:
    # a broken listener must not wedge the supervisor
    try:
        callback(*args)
    except Exception:
        logger.exception("Process listener %s raised", getattr(callback, "__name__", callback))


class ProcessSupervisor:
    """Starts, watches and stops project processes.

    Args:
        reclaimer: Frees ports before spawning (``PortReclaimer`` by default)
        grace_period: Seconds between the termination request and force-kill
        port_retry_delay: Pause before retrying after a port conflict
        max_port_attempts: Total start attempts when the port is taken
    """

    def __init__(
        self,
        reclaimer: Optional[PortReclaimer] = None,
        grace_period: float = 5.0,
        port_retry_delay: float = 1.5,
        max_port_attempts: int = 2,
    ) -> None:
        self.reclaimer = reclaimer or PortReclaimer()
        self.grace_period = grace_period
        self.port_retry_delay = port_retry_delay
        self.max_port_attempts = max_port_attempts
        self._handles: Dict[str, ProjectProcessHandle] = {}
        self._states: Dict[str, ProjectState] = {}
        # one token per start() call in flight; cancel marks tokens, not names
        self._starts: Dict[str, Set[object]] = {}
        self._cancelled: Set[object] = set()
        self._start_locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def state(self, project_name: str) -> ProjectState:
        return self._states.get(project_name, ProjectState.IDLE)

    def get_handle(self, project_name: str) -> Optional[ProjectProcessHandle]:
        return self._handles.get(project_name)

    def is_running(self, project_name: str) -> bool:
        handle = self._handles.get(project_name)
        return handle is not None and handle.is_alive

    def status(self) -> Dict[str, Dict[str, Any]]:
        """State of every project that is running or mid-transition."""
        result: Dict[str, Dict[str, Any]] = {}
        names = set(self._handles) | {
            n for n, s in self._states.items() if s is not ProjectState.IDLE
        }
        for name in sorted(names):
            handle = self._handles.get(name)
            info: Dict[str, Any] = handle.to_dict() if handle else {"project": name}
            info["state"] = self.state(name).value
            info["running"] = self.is_running(name)
            result[name] = info
        return result

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def _start_lock(self, project_name: str) -> asyncio.Lock:
        lock = self._start_locks.get(project_name)
        if lock is None:
            lock = self._start_locks[project_name] = asyncio.Lock()
        return lock

    async def start(
        self, request: StartRequest, listener: Optional[ProcessListener] = None
    ) -> ProjectProcessHandle:
        """Start a project and wait until it is ready.

        An already running instance of the project is stopped first. The
        runtime is resolved and prepared, the port is reclaimed before
        every spawn, and if the process reports its port as taken it is
        killed and the whole sequence runs once more.

        A ``cancel``/``stop`` issued at any point after this call begins
        (while the previous instance stops, while the runtime installs,
        during port reclamation or while waiting for readiness) ends it
        with ``StartCancelled`` and nothing is left running.

        Returns:
            The handle. ``handle.ready`` is False only when the process
            exited cleanly (code 0) before any readiness pattern matched.

        Raises:
            StartCancelled: ``cancel``/``stop`` arrived while starting
            SpawnError: The executable could not be launched
            StartFailed: Non-zero exit or startup timeout before readiness
            PortConflictError: The port was still taken on the retry
        """
        listener = listener or ProcessListener()
        name = request.project_name
        token = object()
        self._starts.setdefault(name, set()).add(token)
        if name not in self._handles:
            self._states[name] = ProjectState.STARTING

        try:
            if name in self._handles:
                _notify(listener.on_output, f"🔄 {name} is already running, stopping it first...")
                await self._stop_running(name)

            async with self._start_lock(name):
                if name in self._handles:
                    await self._stop_running(name)
                self._check_cancelled(name, token)
                self._states[name] = ProjectState.STARTING

                request = await self._prepare(request, listener, token)

                attempt = 1
                while True:
                    handle = await self._start_attempt(request, listener, token)
                    if handle is not None:
                        return handle

                    if attempt >= self.max_port_attempts:
                        error = PortConflictError(name, request.port or 0)
                        _notify(listener.on_error, str(error))
                        raise error

                    _notify(
                        listener.on_output,
                        f"🔄 Restarting {name} in {self.port_retry_delay:g}s "
                        f"(attempt {attempt + 1}/{self.max_port_attempts})...",
                    )
                    await asyncio.sleep(self.port_retry_delay)
                    attempt += 1
        finally:
            self._cancelled.discard(token)
            starts = self._starts.get(name)
            if starts is not None:
                starts.discard(token)
                if not starts:
                    del self._starts[name]
            if name not in self._handles and name not in self._starts:
                self._states[name] = ProjectState.IDLE

    def _check_cancelled(self, project_name: str, token: object) -> None:
        if token in self._cancelled:
            raise StartCancelled(project_name)

    def _mark_cancelled(self, project_name: str) -> bool:
        """Cancel every start of ``project_name`` in flight. True if there was one."""
        starts = self._starts.get(project_name)
        if not starts:
            return False
        self._cancelled.update(starts)
        return True

    async def _prepare(
        self, request: StartRequest, listener: ProcessListener, token: object
    ) -> StartRequest:
        name = request.project_name
        if request.location is None and request.resolve_runtime is not None:
            request = replace(request, location=await request.resolve_runtime())
            self._check_cancelled(name, token)

        if request.prepare is not None:
            try:
                await request.prepare(request, listener)
            except StartCancelled:
                raise
            except StartError as e:
                _notify(listener.on_error, str(e))
                raise
            self._check_cancelled(name, token)
        return request

    async def _start_attempt(
        self, request: StartRequest, listener: ProcessListener, token: object
    ) -> Optional[ProjectProcessHandle]:
        """One pass of reclaim -> cancellation check -> spawn -> wait.

        Returns None when the process hit a port conflict (already killed).
        """
        name = request.project_name
        self._check_cancelled(name, token)

        if request.port is not None:
            _notify(listener.on_output, f"🔌 Freeing port {request.port}...")
            freed = await self.reclaimer.free_port(request.port)
            if freed:
                _notify(
                    listener.on_output,
                    f"   Terminated pid(s) {', '.join(str(p) for p in freed)} on port {request.port}",
                )

        self._check_cancelled(name, token)
        handle = await self._spawn(request, listener)

        if not PatternMatcher(request.readiness_patterns):
            self._mark_ready(handle, listener)

        try:
            outcome = await asyncio.wait_for(
                asyncio.shield(handle.startup), timeout=request.startup_timeout
            )
        except asyncio.TimeoutError:
            error = StartFailed(
                name,
                None,
                f"{name} did not become ready within {request.startup_timeout:g}s",
            )
            _notify(listener.on_error, str(error))
            await self._terminate(handle)
            raise error

        if outcome is _Startup.READY:
            return handle

        if outcome is _Startup.PORT_CONFLICT:
            handle.superseded = True
            _notify(
                listener.on_output,
                f"⚠️  Port {request.port} is already in use, stopping {name}...",
            )
            await self._terminate(handle)
            return None

        # exited before readiness
        if handle.stop_requested:
            raise StartCancelled(name)
        if handle.exit_code == 0:
            return handle
        raise StartFailed(name, handle.exit_code)

    async def _spawn(
        self, request: StartRequest, listener: ProcessListener
    ) -> ProjectProcessHandle:
        name = request.project_name
        try:
            cmd = request.resolve_command()
            env = build_environment(
                request.location, project_dir=request.project_dir, overrides=request.env
            )
            _notify(listener.on_output, f"🚀 Starting {name}: {' '.join(cmd)}")
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(request.project_dir),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **_spawn_kwargs(),
            )
        except (OSError, ValueError) as e:
            error = SpawnError(name, e)
            _notify(listener.on_error, str(error))
            raise error from e

        handle = ProjectProcessHandle(
            project_name=name,
            process=process,
            port=request.port,
            runtime_version=request.runtime_version,
        )
        self._handles[name] = handle
        handle.monitor = asyncio.create_task(
            self._monitor(handle, PatternMatcher(request.readiness_patterns), listener)
        )
        logger.info("Started %s (pid %s)", name, process.pid)
        return handle

    def _mark_ready(self, handle: ProjectProcessHandle, listener: ProcessListener) -> None:
        handle.ready = True
        if self._handles.get(handle.project_name) is handle:
            self._states[handle.project_name] = ProjectState.RUNNING
        _notify(listener.on_ready)
        if not handle.startup.done():
            handle.startup.set_result(_Startup.READY)

    # ------------------------------------------------------------------
    # Output and exit
    # ------------------------------------------------------------------

    def _inspect(
        self,
        handle: ProjectProcessHandle,
        matcher: PatternMatcher,
        texts: Sequence[str],
        listener: ProcessListener,
    ) -> None:
        if handle.ready or handle.startup.done():
            return
        if handle.port is not None and is_port_conflict(*texts):
            handle.startup.set_result(_Startup.PORT_CONFLICT)
            return
        if matcher.matches(*texts):
            self._mark_ready(handle, listener)

    async def _pump(
        self,
        handle: ProjectProcessHandle,
        stream: Optional[asyncio.StreamReader],
        matcher: PatternMatcher,
        listener: ProcessListener,
    ) -> None:
        if stream is None:
            return
        buffer = LineBuffer()
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                break
            text = buffer.decode(chunk)
            lines = buffer.feed_text(text)
            for line in lines:
                _notify(listener.on_output, line)
            self._inspect(handle, matcher, [text, *lines], listener)

        tail = buffer.flush()
        if tail is not None:
            _notify(listener.on_output, tail)
            self._inspect(handle, matcher, [tail], listener)

    async def _monitor(
        self,
        handle: ProjectProcessHandle,
        matcher: PatternMatcher,
        listener: ProcessListener,
    ) -> None:
        process = handle.process
        await asyncio.gather(
            self._pump(handle, process.stdout, matcher, listener),
            self._pump(handle, process.stderr, matcher, listener),
        )
        exit_code = await process.wait()
        handle.exit_code = exit_code
        name = handle.project_name
        logger.info("%s (pid %s) exited with code %s", name, handle.pid, exit_code)

        # a newer process for the same project may already be registered
        if self._handles.get(name) is handle:
            del self._handles[name]
            self._states[name] = ProjectState.IDLE

        if not handle.superseded:
            if exit_code != 0 and not handle.stop_requested:
                if handle.ready:
                    _notify(listener.on_error, f"{name} exited with code {exit_code}")
                else:
                    _notify(
                        listener.on_error,
                        f"{name} exited with code {exit_code} before it was ready",
                    )
            _notify(listener.on_exit, exit_code)

        if not handle.startup.done():
            handle.startup.set_result(_Startup.EXITED)

    # ------------------------------------------------------------------
    # Stop / cancel
    # ------------------------------------------------------------------

    async def _terminate(self, handle: ProjectProcessHandle) -> bool:
        handle.stop_requested = True
        name = handle.project_name
        if self._handles.get(name) is handle:
            del self._handles[name]

        confirmed = await terminate_child(handle.process, self.grace_period)

        monitor = handle.monitor
        if monitor is not None and monitor is not asyncio.current_task():
            # output pipes may be held open by an orphaned grandchild
            await asyncio.wait({monitor}, timeout=self.grace_period)
        return confirmed

    async def _stop_running(self, project_name: str) -> bool:
        handle = self._handles.get(project_name)
        if handle is None:
            return True
        self._states[project_name] = ProjectState.STOPPING
        return await self._terminate(handle)

    def _settle(self, project_name: str) -> None:
        if project_name not in self._handles and project_name not in self._starts:
            self._states[project_name] = ProjectState.IDLE

    async def stop(self, project_name: str) -> bool:
        """Stop a project's process tree.

        A start still in flight for the project is cancelled as well.

        Returns:
            True if the project is confirmed not running afterwards
        """
        self._mark_cancelled(project_name)
        handle = self._handles.get(project_name)
        if handle is None:
            return True

        confirmed = await self._stop_running(project_name)
        self._settle(project_name)
        logger.info("Stopped %s (confirmed=%s)", project_name, confirmed)
        return confirmed

    async def cancel(self, project_name: str) -> bool:
        """Abort a project that is still starting (or stop it if running).

        The termination is the same as :meth:`stop`; the difference is
        that the state reads CANCELLING until the aborted start unwinds
        with ``StartCancelled``.
        """
        if self._mark_cancelled(project_name):
            self._states[project_name] = ProjectState.CANCELLING

        handle = self._handles.get(project_name)
        if handle is None:
            return True
        confirmed = await self._terminate(handle)
        self._settle(project_name)
        return confirmed

    async def stop_all(self) -> Dict[str, bool]:
        names = sorted(
            set(self._handles)
            | set(self._starts)
            | {n for n, s in self._states.items() if s is not ProjectState.IDLE}
        )
        results = await asyncio.gather(*(self.stop(n) for n in names))
        return dict(zip(names, results))
