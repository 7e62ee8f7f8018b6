# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2026 The DevAgent Authors

"""
Shared fixtures for the DevAgent tests.

The agent builds served here are real tarballs whose bin/devagent-agent is a
small Python script, so the supervisor tests launch actual processes.
"""

import asyncio
import hashlib
import io
import sys
import tarfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from devagent.api import AgentRelease
from devagent.errors import ApiError, DownloadError


# =============================================================================
# AGENT BUILDS
# =============================================================================

AGENT_SCRIPTS = {
    # Runs until SIGTERM, then exits cleanly
    "sleep": """#!{python}
import os, signal, sys, time
signal.signal(signal.SIGTERM, lambda *args: sys.exit(0))
print("agent {version} starting", flush=True)
print("reported version " + os.environ.get("DEVAGENT_AGENT_VERSION", ""), flush=True)
while True:
    time.sleep(0.1)
""",
    # Dies during startup
    "crash": """#!{python}
import sys
print("agent {version} crashing", flush=True)
sys.exit(3)
""",
    # Outlives the startup grace period, then exits on its own
    "short": """#!{python}
import time
print("agent {version} working", flush=True)
time.sleep(1.5)
print("agent {version} done", flush=True)
""",
}


def agent_script(version: str, behavior: str = "sleep") -> str:
    return AGENT_SCRIPTS[behavior].replace("{python}", sys.executable).replace("{version}", version)


def make_agent_tarball(version: str, behavior: str = "sleep", members: Optional[Dict[str, bytes]] = None) -> bytes:
    """Build a gzipped agent archive wrapped in a top-level directory."""
    if members is None:
        members = {f"devagent-agent-{version}/bin/devagent-agent": agent_script(version, behavior).encode()}

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


# =============================================================================
# FAKE API CLIENT
# =============================================================================

@dataclass
class Artifact:
    data: bytes
    sha256: Optional[str]


class FakeApiClient:
    """In-memory update oracle and artifact server."""

    def __init__(self):
        self.artifacts: Dict[str, Artifact] = {}
        self.latest: Optional[str] = None
        self.check_error: Optional[Exception] = None
        self.check_delay = 0.0
        self.download_error: Optional[Exception] = None
        self.checks: List[str] = []
        self.downloads: List[str] = []

    @staticmethod
    def url_for(version: str) -> str:
        return f"https://downloads.test/agents/{version}/devagent-agent.tar.gz"

    def publish(self, version: str, behavior: str = "sleep", digest: Optional[str] = "auto",
                data: Optional[bytes] = None) -> None:
        """Make version the latest release. digest="auto" publishes the real SHA-256."""
        data = data if data is not None else make_agent_tarball(version, behavior)
        if digest == "auto":
            digest = hashlib.sha256(data).hexdigest()
        self.artifacts[version] = Artifact(data, digest)
        self.latest = version

    async def check_agent_update(self, current_version: str) -> AgentRelease:
        from devagent.updater import compare_versions

        self.checks.append(current_version)
        if self.check_delay:
            await asyncio.sleep(self.check_delay)
        if self.check_error is not None:
            raise self.check_error
        if self.latest is None:
            raise ApiError("Unable to fetch agent version information")

        return AgentRelease(
            version=self.latest,
            download_url=self.url_for(self.latest),
            update_available=compare_versions(self.latest, current_version) > 0,
            release_notes=f"Release {self.latest}",
            sha256=self.artifacts[self.latest].sha256,
        )

    async def download_file(self, url: str, dest: Path, on_progress=None) -> int:
        self.downloads.append(url)
        if self.download_error is not None:
            raise self.download_error
        version = url.split("/")[-2]
        if version not in self.artifacts:
            raise DownloadError("Download failed: HTTP 404 Not Found")
        data = self.artifacts[version].data
        Path(dest).write_bytes(data)
        if on_progress:
            on_progress(100)
        return len(data)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def home(tmp_path, monkeypatch):
    """Isolated DEVAGENT_HOME."""
    path = tmp_path / "devagent-home"
    monkeypatch.setenv("DEVAGENT_HOME", str(path))
    monkeypatch.delenv("DEVAGENT_API_URL", raising=False)
    return path


@pytest.fixture
def store(home):
    from devagent.store import VersionStore
    return VersionStore(home)


@pytest.fixture
def client():
    return FakeApiClient()


@pytest.fixture
def downloader(store, client):
    from devagent.downloader import AgentDownloader
    return AgentDownloader(store, client)


@pytest.fixture
def output_lines():
    return []


@pytest.fixture
def supervisor(store, output_lines):
    """Supervisor with short timeouts. Stops any agent left running."""
    from devagent.supervisor import AgentSupervisor

    sup = AgentSupervisor(store, startup_grace=0.5, stop_timeout=5.0, lock_timeout=5.0,
                          output=output_lines.append)
    yield sup
    asyncio.run(sup.stop())


@pytest.fixture
def install(downloader, client):
    """Publish and install an agent build."""
    def _install(version: str = "1.0.0", behavior: str = "sleep"):
        client.publish(version, behavior)
        return asyncio.run(downloader.download_agent(version))
    return _install
