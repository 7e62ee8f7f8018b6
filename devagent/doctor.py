# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The DevAgent Authors

"""
DevAgent Diagnostics

Checks behind `devagent doctor`: platform, authentication, configuration,
agent installation and status, update server reachability, disk space and
write access to the DevAgent home. Each check reports pass, warn or fail
and never raises.
"""

import logging
import platform
import sys
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil

from .downloader import AgentDownloader
from .errors import DevAgentError
from .store import VersionStore
from .supervisor import AgentSupervisor
from .updater import UpdateCoordinator

logger = logging.getLogger(__name__)

MIN_FREE_BYTES = 1024 ** 3  # an agent build plus one rollback copy
SUPPORTED_PLATFORMS = ("linux", "darwin")
SUPPORTED_MACHINES = ("x86_64", "amd64", "arm64", "aarch64")
MIN_PYTHON = (3, 9)


class CheckStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass
class Diagnostic:
    """Result of a single check."""
    name: str
    status: CheckStatus
    message: str
    details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# CHECKS
# =============================================================================

def check_system() -> Diagnostic:
    system = sys.platform
    machine = platform.machine().lower()
    if system.startswith(SUPPORTED_PLATFORMS) and machine in SUPPORTED_MACHINES:
        return Diagnostic("System", CheckStatus.PASS, f"{system} {machine} ({platform.release()})")
    return Diagnostic(
        "System",
        CheckStatus.FAIL,
        f"Unsupported platform: {system} {machine}",
        "DevAgent supports Linux and macOS on x86_64 and arm64",
    )


def check_python() -> Diagnostic:
    version = platform.python_version()
    if sys.version_info >= MIN_PYTHON:
        return Diagnostic("Python", CheckStatus.PASS, version)
    return Diagnostic("Python", CheckStatus.FAIL, f"Unsupported version: {version}",
                      "DevAgent requires Python 3.9 or higher")


def check_authentication(store: VersionStore) -> Diagnostic:
    if store.is_authenticated():
        return Diagnostic("Authentication", CheckStatus.PASS, "API token configured")
    return Diagnostic("Authentication", CheckStatus.WARN, "Not authenticated",
                      'Run "devagent login" to authenticate')


def check_configuration(store: VersionStore) -> Diagnostic:
    config = store.read()
    if not store.config_path.exists():
        return Diagnostic("Configuration", CheckStatus.WARN, "No configuration found",
                          'Run "devagent login" to create one')
    if config.unknown_keys:
        return Diagnostic("Configuration", CheckStatus.WARN,
                          "Unrecognized keys: " + ", ".join(config.unknown_keys),
                          "These keys are kept but ignored")
    if not config.project_id:
        return Diagnostic("Configuration", CheckStatus.WARN, "Configuration exists but no project set",
                          'Run "devagent config set projectId <id>"')
    return Diagnostic("Configuration", CheckStatus.PASS, f"Project configured: {config.project_id}")


def check_installation(downloader: AgentDownloader) -> Diagnostic:
    if downloader.is_agent_installed():
        return Diagnostic("Agent Installation", CheckStatus.PASS,
                          f"Installed (version {downloader.get_installed_version()})")
    return Diagnostic("Agent Installation", CheckStatus.FAIL, "Agent not installed",
                      'Run "devagent update" to install the agent')


def check_agent_status(supervisor: AgentSupervisor) -> Diagnostic:
    status = supervisor.get_status()
    if status.running:
        return Diagnostic("Agent Status", CheckStatus.PASS, f"Running (PID: {status.pid})")
    return Diagnostic("Agent Status", CheckStatus.WARN, "Not running",
                      'Run "devagent start" to start the agent')


async def check_update_server(store: VersionStore, updater: UpdateCoordinator) -> Diagnostic:
    name = "API Connectivity"
    if not store.is_authenticated():
        return Diagnostic(name, CheckStatus.WARN, "Cannot check (not authenticated)",
                          "Authenticate first to test API connectivity")
    if not updater.downloader.is_agent_installed():
        return Diagnostic(name, CheckStatus.WARN, "Cannot check (agent not installed)")

    result = await updater.check_for_updates(silent=True)
    if result.failure is not None:
        return Diagnostic(name, CheckStatus.FAIL, "Failed to reach the update server",
                          f"{result.failure.reason}: {result.failure.error}")
    if result.update_available:
        return Diagnostic(name, CheckStatus.WARN, f"Connected, update available: {result.latest_version}",
                          'Run "devagent update" to install it')
    return Diagnostic(name, CheckStatus.PASS, "Connected, agent is up to date")


def _existing_ancestor(path: Path) -> Path:
    path = Path(path).expanduser().absolute()
    while not path.exists() and path != path.parent:
        path = path.parent
    return path


def check_disk_space(store: VersionStore) -> Diagnostic:
    target = _existing_ancestor(store.agent_dir)
    try:
        usage = psutil.disk_usage(str(target))
    except OSError as e:
        return Diagnostic("Disk Space", CheckStatus.WARN, "Could not check disk space", str(e))

    free_gb = usage.free / 1024 ** 3
    if usage.free >= MIN_FREE_BYTES:
        return Diagnostic("Disk Space", CheckStatus.PASS, f"{free_gb:.2f} GB available")
    return Diagnostic("Disk Space", CheckStatus.WARN, f"Only {free_gb:.2f} GB available",
                      "Low disk space may cause updates to fail")


def check_permissions(store: VersionStore) -> Diagnostic:
    try:
        store.home.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=store.home, prefix=".write-test-"):
            pass
    except OSError as e:
        return Diagnostic("File Permissions", CheckStatus.FAIL,
                          "Cannot write to the DevAgent home", str(e))
    return Diagnostic("File Permissions", CheckStatus.PASS, f"Write access verified ({store.home})")


# =============================================================================
# RUNNER
# =============================================================================

async def run_diagnostics(
    store: VersionStore,
    downloader: AgentDownloader,
    supervisor: AgentSupervisor,
    updater: UpdateCoordinator,
) -> List[Diagnostic]:
    """Run every check in order. A check that raises becomes a failure."""
    checks = [
        ("System", check_system),
        ("Python", check_python),
        ("Authentication", lambda: check_authentication(store)),
        ("Configuration", lambda: check_configuration(store)),
        ("Agent Installation", lambda: check_installation(downloader)),
        ("Agent Status", lambda: check_agent_status(supervisor)),
        ("API Connectivity", lambda: check_update_server(store, updater)),
        ("Disk Space", lambda: check_disk_space(store)),
        ("File Permissions", lambda: check_permissions(store)),
    ]

    results = []
    for name, check in checks:
        try:
            result = check()
            if not isinstance(result, Diagnostic):
                result = await result
        except DevAgentError as e:
            logger.debug("Diagnostic %s failed", name, exc_info=True)
            result = Diagnostic(name, CheckStatus.FAIL, str(e), e.hint)
        results.append(result)
    return results
