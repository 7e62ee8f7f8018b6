# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The DevAgent Authors

"""
DevAgent Process Supervisor

Starts, stops and reports on the desktop agent process.

Launch modes:
  - detached:   the agent runs in its own session, output is appended to
                <logs_dir>/agent-YYYYMMDD.log, and the call returns once
                the process survived the startup grace period
  - foreground: the agent's output is streamed to the caller, the call
                blocks until the agent exits or an interrupt arrives, and
                an interrupt stops the agent before returning

The running agent is tracked by a handle record (pid, mode, start time and
OS creation time). A handle whose PID is gone, a zombie, or now belongs to
a different process is stale and is discarded on sight.

Start and stop run under an exclusive lock file, so two devagent
invocations racing each other cannot launch two agents.
"""

import asyncio
import fcntl
import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, IO, Optional, Tuple, Union

import psutil

from .downloader import agent_executable_path
from .errors import (
    AgentStartError,
    AgentStopError,
    AlreadyRunningError,
    NotInstalledError,
    RestartError,
    StaleHandleError,
    SupervisorBusyError,
)
from .store import InstallationRecord, VersionStore

logger = logging.getLogger(__name__)

STARTUP_GRACE = 1.5  # seconds the agent must survive after spawn
STARTUP_POLL_INTERVAL = 0.1
STOP_TIMEOUT = 10.0  # SIGTERM grace before SIGKILL
KILL_TIMEOUT = 5.0
LOCK_TIMEOUT = 10.0
LOCK_POLL_INTERVAL = 0.1
CREATE_TIME_TOLERANCE = 1.0  # seconds


class LaunchMode(str, Enum):
    DETACHED = "detached"
    FOREGROUND = "foreground"


class AgentState(str, Enum):
    NOT_RUNNING = "not_running"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class ProcessHandle:
    """Record of a launched agent process."""
    pid: int
    mode: LaunchMode
    started_at: float
    create_time: Optional[float] = None
    version: Optional[str] = None
    executable: Optional[str] = None

    @property
    def uptime(self) -> float:
        return max(0.0, time.time() - self.started_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.pid,
            "mode": self.mode.value,
            "started_at": self.started_at,
            "create_time": self.create_time,
            "version": self.version,
            "executable": self.executable,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessHandle":
        return cls(
            pid=int(data["pid"]),
            mode=LaunchMode(data.get("mode", LaunchMode.DETACHED.value)),
            started_at=float(data["started_at"]),
            create_time=data.get("create_time"),
            version=data.get("version"),
            executable=data.get("executable"),
        )


@dataclass
class AgentStatus:
    """Snapshot reported by AgentSupervisor.get_status()."""
    running: bool
    version: Optional[str] = None
    pid: Optional[int] = None
    uptime: Optional[float] = None
    mode: Optional[str] = None
    started_at: Optional[float] = None
    running_version: Optional[str] = None
    install_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "pid": self.pid,
            "version": self.version,
            "uptime": self.uptime,
            "mode": self.mode,
            "started_at": self.started_at,
            "running_version": self.running_version,
            "install_path": self.install_path,
        }


@dataclass
class StartResult:
    """Outcome of start() / restart()."""
    handle: Optional[ProcessHandle]
    already_running: bool = False
    exit_code: Optional[int] = None
    interrupted: bool = False


AgentProcess = Union[subprocess.Popen, asyncio.subprocess.Process]


class SupervisorLock:
    """Exclusive flock on a lock file, acquired with a bounded wait.

    Usage:
        async with SupervisorLock(path):
            ...
    """

    def __init__(self, path: Path, timeout: float = LOCK_TIMEOUT):
        self.path = path
        self.timeout = timeout
        self._file: Optional[IO[str]] = None

    async def __aenter__(self) -> "SupervisorLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, "a+")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout

        while True:
            try:
                fcntl.flock(self._file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if loop.time() >= deadline:
                    self._file.close()
                    self._file = None
                    raise SupervisorBusyError(
                        f"Another devagent command is managing the agent (lock {self.path})",
                        hint="Wait for it to finish and retry",
                    )
                await asyncio.sleep(LOCK_POLL_INTERVAL)

        # Record the holder for debugging
        self._file.seek(0)
        self._file.truncate()
        self._file.write(str(os.getpid()))
        self._file.flush()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._file is not None:
            try:
                fcntl.flock(self._file.fileno(), fcntl.LOCK_UN)
            finally:
                self._file.close()
                self._file = None


def _exit_code(proc: AgentProcess) -> Optional[int]:
    if isinstance(proc, subprocess.Popen):
        return proc.poll()
    return proc.returncode


class AgentSupervisor:
    """Lifecycle manager for the desktop agent process.

    Usage:
        supervisor = AgentSupervisor(store)
        result = await supervisor.start(LaunchMode.DETACHED)
        status = supervisor.get_status()
        await supervisor.stop()
    """

    def __init__(
        self,
        store: VersionStore,
        startup_grace: float = STARTUP_GRACE,
        stop_timeout: float = STOP_TIMEOUT,
        lock_timeout: float = LOCK_TIMEOUT,
        output: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            store: Source of paths, configuration and persisted records.
            startup_grace: Seconds a new agent must stay alive before the
                           start counts as successful.
            stop_timeout: Seconds to wait after SIGTERM before SIGKILL.
            lock_timeout: Seconds to wait for the supervisor lock.
            output: Receives foreground output lines. Defaults to stdout.
        """
        self.store = store
        self.startup_grace = startup_grace
        self.stop_timeout = stop_timeout
        self.lock_timeout = lock_timeout
        self.output = output or (lambda line: print(line, flush=True))
        self._state = AgentState.NOT_RUNNING
        self._foreground_proc: Optional[asyncio.subprocess.Process] = None

    @property
    def state(self) -> AgentState:
        return self._state

    def _lock(self) -> SupervisorLock:
        return SupervisorLock(self.store.lock_path, self.lock_timeout)

    # =========================================================================
    # HANDLE VERIFICATION
    # =========================================================================

    def current_handle(self) -> Optional[ProcessHandle]:
        """Return the handle of the live agent, discarding stale records."""
        data = self.store.read_handle()
        if data is None:
            return None

        try:
            handle = ProcessHandle.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.debug("Discarding malformed agent handle: %s", e)
            self.store.clear_handle()
            return None

        try:
            self._verify_handle(handle)
        except StaleHandleError as e:
            logger.debug("%s; treating agent as not running", e)
            self.store.clear_handle()
            return None
        return handle

    def _verify_handle(self, handle: ProcessHandle) -> None:
        try:
            proc = psutil.Process(handle.pid)
            status = proc.status()
            create_time = proc.create_time()
        except psutil.NoSuchProcess:
            raise StaleHandleError(handle.pid, "no such process")
        except psutil.AccessDenied:
            raise StaleHandleError(handle.pid, "process belongs to another user")

        if status == psutil.STATUS_ZOMBIE:
            # Reap it if it is our own detached child; asyncio reaps foreground ones
            foreground = self._foreground_proc
            if foreground is None or foreground.pid != handle.pid:
                try:
                    proc.wait(timeout=0)
                except (psutil.Error, ChildProcessError):
                    pass
            raise StaleHandleError(handle.pid, "process has exited")

        if handle.create_time is not None and abs(create_time - handle.create_time) > CREATE_TIME_TOLERANCE:
            raise StaleHandleError(handle.pid, "PID now belongs to a different process")

    def is_running(self) -> bool:
        return self.current_handle() is not None

    # =========================================================================
    # START
    # =========================================================================

    async def start(
        self,
        mode: LaunchMode = LaunchMode.DETACHED,
        interrupt: Optional[asyncio.Event] = None,
    ) -> StartResult:
        """Start the agent.

        Args:
            mode: Detached or foreground.
            interrupt: Foreground only. Setting it stops the agent, like
                       SIGINT/SIGTERM do.

        Returns:
            StartResult. already_running is set when a live agent existed
            and nothing was spawned.

        Raises:
            NotInstalledError: No installed build to launch.
            AgentStartError: Spawn failed or the agent died during startup.
            SupervisorBusyError: The supervisor lock could not be acquired.
        """
        mode = LaunchMode(mode)

        async with self._lock():
            existing = self.current_handle()
            try:
                self._guard_single_instance(existing)
            except AlreadyRunningError as e:
                logger.info("%s", e)
                self._state = AgentState.RUNNING
                return StartResult(handle=existing, already_running=True)

            record, executable = self._resolve_install()
            self._state = AgentState.STARTING
            logger.info("Starting agent %s (%s)", record.version, mode.value)

            proc, handle = await self._launch(record, executable, mode)
            pump: Optional[asyncio.Task] = None
            if mode is LaunchMode.FOREGROUND:
                pump = asyncio.create_task(self._pump_output(proc))

            try:
                self.store.write_handle(handle.to_dict())
                await self._confirm_started(proc, handle)
            except BaseException:
                self._state = AgentState.NOT_RUNNING
                self._foreground_proc = None
                self._abort_launch(proc)
                self.store.clear_handle()
                if pump is not None:
                    await asyncio.gather(pump, return_exceptions=True)
                raise

            self._state = AgentState.RUNNING
            logger.info("Agent started successfully at PID %d", handle.pid)

        if mode is LaunchMode.FOREGROUND:
            return await self._run_foreground(proc, handle, pump, interrupt)
        # The agent outlives this Popen; the handle file tracks it from here
        proc.returncode = 0
        return StartResult(handle=handle)

    def _guard_single_instance(self, existing: Optional[ProcessHandle]) -> None:
        if existing is not None:
            raise AlreadyRunningError(existing.pid)

    def _resolve_install(self) -> Tuple[InstallationRecord, Path]:
        record = self.store.read_installation()
        if record is None:
            raise NotInstalledError()
        executable = agent_executable_path(record.install_path)
        if not executable.is_file():
            raise NotInstalledError(
                f"Agent executable not found at {executable}",
                hint="Reinstall with: devagent update --force",
            )
        return record, executable

    def _agent_env(self, version: str) -> Dict[str, str]:
        config = self.store.read()
        env = os.environ.copy()
        env.update({
            "DEVAGENT_API_KEY": self.store.auth_token() or "",
            "DEVAGENT_API_URL": config.effective_api_url(),
            "DEVAGENT_PROJECT_ID": config.project_id or "",
            "DEVAGENT_LOG_LEVEL": config.log_level,
            "DEVAGENT_LOG_DIR": str(self.store.logs_dir),
            "DEVAGENT_AGENT_VERSION": version,
        })
        return env

    def agent_log_file(self) -> Path:
        return self.store.logs_dir / f"agent-{datetime.now().strftime('%Y%m%d')}.log"

    async def _launch(
        self,
        record: InstallationRecord,
        executable: Path,
        mode: LaunchMode,
    ) -> Tuple[AgentProcess, ProcessHandle]:
        """Phase one: spawn the agent process."""
        env = self._agent_env(record.version)
        cwd = str(record.install_path)

        try:
            if mode is LaunchMode.DETACHED:
                log_file = self.agent_log_file()
                log_file.parent.mkdir(parents=True, exist_ok=True)
                with open(log_file, "a", encoding="utf-8") as log_fd:
                    proc: AgentProcess = subprocess.Popen(
                        [str(executable)],
                        stdin=subprocess.DEVNULL,
                        stdout=log_fd,
                        stderr=subprocess.STDOUT,
                        env=env,
                        cwd=cwd,
                        start_new_session=True,  # survive the CLI and its terminal
                        close_fds=True,
                    )
            else:
                proc = await asyncio.create_subprocess_exec(
                    str(executable),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    env=env,
                    cwd=cwd,
                    start_new_session=True,  # interrupts go to us, we stop the agent
                )
                self._foreground_proc = proc
        except OSError as e:
            self._state = AgentState.NOT_RUNNING
            raise AgentStartError(f"Failed to launch agent {executable}: {e}") from e

        try:
            create_time: Optional[float] = psutil.Process(proc.pid).create_time()
        except psutil.Error:
            create_time = None

        handle = ProcessHandle(
            pid=proc.pid,
            mode=mode,
            started_at=time.time(),
            create_time=create_time,
            version=record.version,
            executable=str(executable),
        )
        return proc, handle

    def _abort_launch(self, proc: AgentProcess) -> None:
        if _exit_code(proc) is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    async def _confirm_started(self, proc: AgentProcess, handle: ProcessHandle) -> None:
        """Phase two: the agent must stay alive for the startup grace period."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_grace

        while True:
            code = _exit_code(proc)
            if code is not None:
                hint = f"Check the agent log: {self.agent_log_file()}" if handle.mode is LaunchMode.DETACHED else None
                raise AgentStartError(f"Agent exited immediately with code {code}", hint=hint)
            if loop.time() >= deadline:
                return
            await asyncio.sleep(STARTUP_POLL_INTERVAL)

    # =========================================================================
    # FOREGROUND
    # =========================================================================

    async def _pump_output(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        while True:
            line = await proc.stdout.readline()
            if not line:
                break
            self.output(line.decode(errors="replace").rstrip("\n"))

    async def _run_foreground(
        self,
        proc: asyncio.subprocess.Process,
        handle: ProcessHandle,
        pump: Optional[asyncio.Task],
        interrupt: Optional[asyncio.Event],
    ) -> StartResult:
        """Block until the agent exits or an interrupt stops it."""
        interrupt = interrupt or asyncio.Event()
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, interrupt.set)
                installed.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Not on the main thread, or no signal support
                pass

        wait_task = asyncio.ensure_future(proc.wait())
        interrupt_task = asyncio.ensure_future(interrupt.wait())
        interrupted = False
        try:
            done, _ = await asyncio.wait({wait_task, interrupt_task}, return_when=asyncio.FIRST_COMPLETED)
            if wait_task not in done:
                interrupted = True
                logger.info("Interrupt received, stopping agent")
                await self.stop()
            exit_code = await wait_task
            if pump is not None:
                await pump
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            interrupt_task.cancel()
            self._foreground_proc = None
            self._state = AgentState.NOT_RUNNING
            current = self.store.read_handle()
            if current and current.get("pid") == handle.pid:
                self.store.clear_handle()

        logger.info("Agent exited with code %s", exit_code)
        return StartResult(handle=handle, exit_code=exit_code, interrupted=interrupted)

    # =========================================================================
    # STOP / RESTART
    # =========================================================================

    async def stop(self) -> bool:
        """Stop the agent. Idempotent.

        Returns:
            True if a running agent was stopped, False if none was running.

        Raises:
            AgentStopError: The process survived SIGTERM and SIGKILL. The
                            handle is kept.
        """
        async with self._lock():
            handle = self.current_handle()
            if handle is None:
                logger.info("Agent is not running")
                self._state = AgentState.NOT_RUNNING
                return False

            self._state = AgentState.STOPPING
            logger.info("Stopping agent (PID %d)", handle.pid)
            try:
                proc = self._foreground_proc
                if proc is not None and proc.pid == handle.pid:
                    await self._terminate_child(proc)
                else:
                    await self._terminate_pid(handle.pid)
            except AgentStopError:
                self._state = AgentState.RUNNING
                raise

            self.store.clear_handle()
            self._state = AgentState.NOT_RUNNING
            logger.info("Agent stopped")
            return True

    async def _terminate_pid(self, pid: int) -> None:
        try:
            proc = psutil.Process(pid)
            proc.terminate()
        except psutil.NoSuchProcess:
            return

        try:
            await asyncio.to_thread(proc.wait, self.stop_timeout)
            return
        except psutil.NoSuchProcess:
            return
        except psutil.TimeoutExpired:
            logger.warning("Agent (PID %d) did not exit within %.0fs, killing it", pid, self.stop_timeout)

        try:
            proc.kill()
            await asyncio.to_thread(proc.wait, KILL_TIMEOUT)
        except psutil.NoSuchProcess:
            return
        except psutil.TimeoutExpired as e:
            raise AgentStopError(f"Agent (PID {pid}) did not exit after SIGKILL") from e

    async def _terminate_child(self, proc: asyncio.subprocess.Process) -> None:
        # Our own child: wait through asyncio so its child watcher reaps it
        try:
            proc.terminate()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(proc.wait(), self.stop_timeout)
            return
        except asyncio.TimeoutError:
            logger.warning("Agent (PID %d) did not exit within %.0fs, killing it", proc.pid, self.stop_timeout)

        try:
            proc.kill()
            await asyncio.wait_for(proc.wait(), KILL_TIMEOUT)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError as e:
            raise AgentStopError(f"Agent (PID {proc.pid}) did not exit after SIGKILL") from e

    async def restart(
        self,
        mode: LaunchMode = LaunchMode.DETACHED,
        interrupt: Optional[asyncio.Event] = None,
    ) -> StartResult:
        """Stop the agent if it runs, then start it.

        Raises:
            RestartError: The agent was stopped but start() failed. No retry
                          is attempted.
        """
        stopped = False
        if self.is_running():
            stopped = await self.stop()
        else:
            logger.info("Agent is not running, starting it")

        try:
            return await self.start(mode, interrupt=interrupt)
        except Exception as e:
            if stopped:
                logger.error("Agent was stopped but failed to start again: %s", e)
                raise RestartError(e) from e
            raise

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_status(self) -> AgentStatus:
        """Running state plus the installed version, which is reported
        even when the agent is stopped."""
        record = self.store.read_installation()
        handle = self.current_handle()
        status = AgentStatus(
            running=handle is not None,
            version=record.version if record else None,
            install_path=str(record.install_path) if record else None,
        )
        if handle is not None:
            status.pid = handle.pid
            status.uptime = handle.uptime
            status.mode = handle.mode.value
            status.started_at = handle.started_at
            status.running_version = handle.version
        return status

    def get_latest_log_file(self) -> Optional[Path]:
        logs_dir = self.store.logs_dir
        if not logs_dir.exists():
            return None
        log_files = sorted(logs_dir.glob("agent-*.log"), reverse=True)
        return log_files[0] if log_files else None
