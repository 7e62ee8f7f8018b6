# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 The DevAgent Authors

"""
DevAgent Supervisor Tests

Tests for starting, stopping and tracking the agent process. These launch
real processes from installed test builds.
Run with: pytest tests/test_supervisor.py -v
"""

import asyncio
import fcntl
import subprocess
import sys
import time

import psutil
import pytest


def _alive(pid):
    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


# =============================================================================
# START
# =============================================================================

def test_start_not_installed(supervisor):
    """Test start fails clearly when nothing is installed."""
    from devagent.errors import NotInstalledError

    with pytest.raises(NotInstalledError) as exc:
        asyncio.run(supervisor.start())

    assert "devagent update" in exc.value.hint
    assert supervisor.is_running() is False


def test_start_detached(install, supervisor, store):
    """Test a detached start records a live handle and logs to a file."""
    from devagent.supervisor import AgentState, LaunchMode

    install("1.0.0")
    result = asyncio.run(supervisor.start(LaunchMode.DETACHED))

    assert result.already_running is False
    assert result.handle.version == "1.0.0"
    assert _alive(result.handle.pid)
    assert supervisor.is_running() is True
    assert supervisor.state is AgentState.RUNNING
    assert store.read_handle()["pid"] == result.handle.pid

    log_file = supervisor.get_latest_log_file()
    assert log_file is not None
    assert log_file.name.startswith("agent-")
    assert "agent 1.0.0 starting" in log_file.read_text()


def test_detached_start_releases_process_object(install, supervisor):
    """Test a detached agent is not reported as a leaked child process."""
    import gc
    import warnings

    install("1.0.0")
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always", ResourceWarning)
        pid = asyncio.run(supervisor.start()).handle.pid
        gc.collect()

    assert not [w for w in caught if "still running" in str(w.message)]
    assert _alive(pid)
    assert asyncio.run(supervisor.stop()) is True


def test_start_passes_environment(install, supervisor, store):
    """Test the agent receives its version and log directory."""
    install("1.0.0")
    store.set("authToken", "tok_abcdefgh1234")
    asyncio.run(supervisor.start())

    time.sleep(0.2)
    assert "reported version 1.0.0" in supervisor.get_latest_log_file().read_text()
    env = psutil.Process(supervisor.current_handle().pid).environ()
    assert env["DEVAGENT_API_KEY"] == "tok_abcdefgh1234"
    assert env["DEVAGENT_LOG_DIR"] == str(store.logs_dir)


def test_start_is_idempotent(install, supervisor):
    """Test a second start reports the running agent and spawns nothing."""
    install("1.0.0")
    first = asyncio.run(supervisor.start())
    second = asyncio.run(supervisor.start())

    assert second.already_running is True
    assert second.handle.pid == first.handle.pid


def test_concurrent_starts_spawn_one_agent(install, store, supervisor):
    """Test racing starts launch exactly one agent."""
    from devagent.supervisor import AgentSupervisor

    install("1.0.0")
    other = AgentSupervisor(store, startup_grace=0.5, lock_timeout=5.0)

    async def race():
        return await asyncio.gather(supervisor.start(), other.start())

    results = asyncio.run(race())

    assert sorted(r.already_running for r in results) == [False, True]
    assert results[0].handle.pid == results[1].handle.pid


def test_start_crashing_agent(install, supervisor, store):
    """Test an agent that dies during startup is a start failure."""
    from devagent.errors import AgentStartError
    from devagent.supervisor import AgentState

    install("1.0.0", behavior="crash")

    with pytest.raises(AgentStartError) as exc:
        asyncio.run(supervisor.start())

    assert "code 3" in str(exc.value)
    assert "agent-" in exc.value.hint
    assert store.read_handle() is None
    assert supervisor.is_running() is False
    assert supervisor.state is AgentState.NOT_RUNNING


def test_start_missing_executable(install, supervisor, store):
    """Test an install record pointing at a deleted build."""
    import shutil
    from devagent.errors import NotInstalledError

    record = install("1.0.0")
    shutil.rmtree(record.install_path)

    with pytest.raises(NotInstalledError) as exc:
        asyncio.run(supervisor.start())

    assert "--force" in exc.value.hint


def test_start_waits_for_lock(install, store):
    """Test start gives up when another invocation holds the lock."""
    from devagent.errors import SupervisorBusyError
    from devagent.supervisor import AgentSupervisor

    install("1.0.0")
    sup = AgentSupervisor(store, startup_grace=0.5, lock_timeout=0.3)
    store.lock_path.parent.mkdir(parents=True, exist_ok=True)

    with open(store.lock_path, "a+") as holder:
        fcntl.flock(holder.fileno(), fcntl.LOCK_EX)
        with pytest.raises(SupervisorBusyError):
            asyncio.run(sup.start())

    assert sup.is_running() is False


# =============================================================================
# STOP
# =============================================================================

def test_stop_running_agent(install, supervisor, store):
    """Test stop terminates the agent and clears the handle."""
    install("1.0.0")
    pid = asyncio.run(supervisor.start()).handle.pid

    assert asyncio.run(supervisor.stop()) is True

    assert not _alive(pid)
    assert store.read_handle() is None
    assert supervisor.is_running() is False


def test_stop_is_idempotent(supervisor):
    """Test stop with nothing running succeeds and reports it."""
    assert asyncio.run(supervisor.stop()) is False
    assert asyncio.run(supervisor.stop()) is False


def test_stop_kills_agent_ignoring_sigterm(supervisor, client, downloader, store):
    """Test an agent that ignores SIGTERM is killed after the grace period."""
    from devagent.supervisor import AgentSupervisor

    script = (
        f"#!{sys.executable}\n"
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "while True:\n"
        "    time.sleep(0.1)\n"
    )
    from conftest import make_agent_tarball
    client.publish("1.0.0", data=make_agent_tarball("1.0.0", members={"bin/devagent-agent": script.encode()}))
    asyncio.run(downloader.download_agent())

    sup = AgentSupervisor(store, startup_grace=0.5, stop_timeout=0.5)
    pid = asyncio.run(sup.start()).handle.pid

    assert asyncio.run(sup.stop()) is True
    assert not _alive(pid)


# =============================================================================
# STALE HANDLES
# =============================================================================

def test_stale_handle_dead_pid(store, supervisor):
    """Test a handle whose process is gone reads as not running."""
    dead = subprocess.Popen([sys.executable, "-c", "pass"])
    dead.wait()
    store.write_handle({"pid": dead.pid, "mode": "detached", "started_at": time.time()})

    assert supervisor.is_running() is False
    assert store.read_handle() is None


def test_stale_handle_reused_pid(store, supervisor):
    """Test a PID now owned by another process is not the agent."""
    me = psutil.Process()
    store.write_handle({
        "pid": me.pid,
        "mode": "detached",
        "started_at": time.time(),
        "create_time": me.create_time() - 3600,
    })

    assert supervisor.current_handle() is None
    assert store.read_handle() is None


def test_malformed_handle_discarded(store, supervisor):
    """Test a handle missing fields is discarded."""
    store.write_handle({"mode": "detached"})

    assert supervisor.is_running() is False
    assert store.read_handle() is None


def test_start_after_stale_handle(install, store, supervisor):
    """Test a stale handle does not block a new start."""
    install("1.0.0")
    dead = subprocess.Popen([sys.executable, "-c", "pass"])
    dead.wait()
    store.write_handle({"pid": dead.pid, "mode": "detached", "started_at": time.time()})

    result = asyncio.run(supervisor.start())

    assert result.already_running is False
    assert result.handle.pid != dead.pid
    assert _alive(result.handle.pid)


def test_externally_killed_agent(install, supervisor):
    """Test an agent killed behind our back is detected."""
    install("1.0.0")
    pid = asyncio.run(supervisor.start()).handle.pid

    proc = psutil.Process(pid)
    proc.kill()
    proc.wait(timeout=5)

    assert supervisor.is_running() is False
    assert asyncio.run(supervisor.stop()) is False


# =============================================================================
# RESTART & STATUS
# =============================================================================

def test_restart_gives_new_pid(install, supervisor):
    """Test restart stops the old process and starts a new one."""
    install("1.0.0")
    old_pid = asyncio.run(supervisor.start()).handle.pid

    result = asyncio.run(supervisor.restart())

    assert result.handle.pid != old_pid
    assert not _alive(old_pid)
    assert _alive(result.handle.pid)


def test_restart_when_stopped_starts(install, supervisor):
    """Test restart of a stopped agent is a plain start."""
    install("1.0.0")
    result = asyncio.run(supervisor.restart())
    assert _alive(result.handle.pid)


def test_restart_failure_after_stop(install, supervisor, store):
    """Test a failed start after stop raises RestartError."""
    from devagent.downloader import agent_executable_path
    from devagent.errors import AgentStartError, RestartError
    from conftest import agent_script

    record = install("1.0.0")
    asyncio.run(supervisor.start())
    agent_executable_path(record.install_path).write_text(agent_script("1.0.0", "crash"))

    with pytest.raises(RestartError) as exc:
        asyncio.run(supervisor.restart())

    assert isinstance(exc.value.cause, AgentStartError)
    assert supervisor.is_running() is False


def test_status_not_running(install, supervisor):
    """Test status reports the installed version while stopped."""
    install("1.0.0")
    status = supervisor.get_status()

    assert status.running is False
    assert status.version == "1.0.0"
    assert status.pid is None
    assert status.to_dict()["running"] is False


def test_status_running(install, supervisor):
    """Test status reports pid, mode and uptime while running."""
    install("1.0.0")
    pid = asyncio.run(supervisor.start()).handle.pid

    status = supervisor.get_status()

    assert status.running is True
    assert status.pid == pid
    assert status.mode == "detached"
    assert status.running_version == "1.0.0"
    assert status.uptime >= 0


def test_status_nothing_installed(supervisor):
    """Test status on a fresh machine."""
    status = supervisor.get_status()
    assert status.running is False
    assert status.version is None


# =============================================================================
# FOREGROUND
# =============================================================================

def test_foreground_streams_output_until_exit(install, supervisor, output_lines, store):
    """Test foreground mode relays output and returns the exit code."""
    from devagent.supervisor import LaunchMode

    install("1.0.0", behavior="short")
    result = asyncio.run(supervisor.start(LaunchMode.FOREGROUND))

    assert result.exit_code == 0
    assert result.interrupted is False
    assert "agent 1.0.0 working" in output_lines
    assert "agent 1.0.0 done" in output_lines
    assert store.read_handle() is None


def test_foreground_interrupt_stops_agent(install, supervisor, output_lines, store):
    """Test an interrupt stops the foreground agent before returning."""
    from devagent.supervisor import LaunchMode

    install("1.0.0")

    async def run():
        interrupt = asyncio.Event()
        asyncio.get_running_loop().call_later(1.0, interrupt.set)
        return await supervisor.start(LaunchMode.FOREGROUND, interrupt=interrupt)

    result = asyncio.run(run())

    assert result.interrupted is True
    assert not _alive(result.handle.pid)
    assert "agent 1.0.0 starting" in output_lines
    assert store.read_handle() is None
    assert supervisor.is_running() is False


def test_foreground_crash_is_start_error(install, supervisor):
    """Test a foreground agent dying during startup fails the start."""
    from devagent.errors import AgentStartError
    from devagent.supervisor import LaunchMode

    install("1.0.0", behavior="crash")

    with pytest.raises(AgentStartError):
        asyncio.run(supervisor.start(LaunchMode.FOREGROUND))


# =============================================================================
# HANDLE MODEL
# =============================================================================

def test_process_handle_roundtrip():
    """Test handles survive serialization."""
    from devagent.supervisor import LaunchMode, ProcessHandle

    handle = ProcessHandle(pid=42, mode=LaunchMode.FOREGROUND, started_at=100.0,
                           create_time=99.5, version="1.0.0", executable="/x/bin/devagent-agent")
    assert ProcessHandle.from_dict(handle.to_dict()) == handle


def test_process_handle_uptime():
    """Test uptime counts from the recorded start time."""
    from devagent.supervisor import LaunchMode, ProcessHandle

    handle = ProcessHandle(pid=42, mode=LaunchMode.DETACHED, started_at=time.time() - 90)
    assert 89 <= handle.uptime <= 95
