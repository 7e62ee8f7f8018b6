# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The DevAgent Authors

"""
DevAgent Agent Downloader

Fetches a desktop agent build, verifies it and installs it into its own
versioned directory under <agent_dir>/versions/.

Install flow:
  1. Resolve the release (download URL and digest) from the update oracle
  2. Stream the tarball to downloads/<name>.tmp, rename when complete
  3. Verify the SHA-256 digest and the archive member paths
  4. Extract into a staging directory, then rename it to a fresh
     versions/<version>-<id> directory
  5. Point the installation record at the new directory
  6. Prune install directories that are neither current nor previous

The installation record is only rewritten after step 4, so a failed or
interrupted download leaves the previous install in effect.
"""

import asyncio
import hashlib
import logging
import os
import shutil
import tarfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Set

from .api import AgentRelease, ApiClient
from .errors import ApiError, DownloadError, VerificationError
from .store import InstallationRecord, VersionStore

logger = logging.getLogger(__name__)

AGENT_EXECUTABLE = "devagent-agent"
MAX_KEPT_INSTALLS = 2  # current + previous, so a rollback target exists
HASH_CHUNK_SIZE = 1024 * 1024


def agent_executable_name() -> str:
    return f"{AGENT_EXECUTABLE}.exe" if os.name == "nt" else AGENT_EXECUTABLE


def agent_executable_path(install_path: Path) -> Path:
    return Path(install_path) / "bin" / agent_executable_name()


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class AgentDownloader:
    """Installs agent builds and reports what is installed.

    Usage:
        downloader = AgentDownloader(store, client)
        if not downloader.is_agent_installed():
            await downloader.download_agent()
    """

    def __init__(
        self,
        store: VersionStore,
        client: ApiClient,
        on_progress: Optional[Callable[[int], None]] = None,
    ):
        self.store = store
        self.client = client
        self.on_progress = on_progress

    @property
    def versions_dir(self) -> Path:
        return self.store.agent_dir / "versions"

    @property
    def downloads_dir(self) -> Path:
        return self.store.agent_dir / "downloads"

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def is_agent_installed(self) -> bool:
        """True iff an installation record exists and its executable is present."""
        record = self.store.read_installation()
        if record is None:
            return False
        return agent_executable_path(record.install_path).is_file()

    def get_installed_version(self) -> Optional[str]:
        return self.store.get_installed_version()

    async def resolve_release(self, version: Optional[str] = None) -> AgentRelease:
        """Look up the download for version, or the latest build if None."""
        try:
            release = await self.client.check_agent_update(version or "0.0.0")
        except ApiError as e:
            raise DownloadError(f"Unable to fetch agent version information: {e}") from e

        if version and release.version != version.lstrip("v"):
            raise DownloadError(
                f"Agent version {version} is not available from the update server "
                f"(latest is {release.version})"
            )
        if not release.download_url:
            raise DownloadError(f"No download URL published for agent version {release.version}")
        return release

    async def download_agent(
        self,
        version: Optional[str] = None,
        release: Optional[AgentRelease] = None,
    ) -> InstallationRecord:
        """Download, verify and install an agent build.

        Args:
            version: Version to install. None installs the latest build.
            release: Already resolved release. Skips the oracle lookup.

        Returns:
            The new installation record.

        Raises:
            DownloadError: Network or storage failure.
            VerificationError: The artifact failed an integrity check.
        """
        if release is None:
            release = await self.resolve_release(version)

        target_version = release.version
        previous = self.store.read_installation()
        logger.info("Installing desktop agent %s", target_version)

        archive_name = f"{AGENT_EXECUTABLE}-{target_version}.tar.gz"
        archive = self.downloads_dir / archive_name
        temp_archive = archive.with_suffix(".tmp")
        staging = self.versions_dir / f".staging-{uuid.uuid4().hex[:8]}"

        try:
            self.downloads_dir.mkdir(parents=True, exist_ok=True)
            self.versions_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DownloadError(f"Cannot create agent directories: {e}") from e

        try:
            await self.client.download_file(release.download_url, temp_archive, self.on_progress)
            temp_archive.replace(archive)

            digest = await asyncio.to_thread(file_sha256, archive)
            if release.sha256 and digest.lower() != release.sha256.lower():
                raise VerificationError(
                    f"Checksum mismatch for agent {target_version}: "
                    f"expected {release.sha256}, got {digest}"
                )
            if not release.sha256:
                logger.warning("No checksum published for agent %s, skipping digest check", target_version)

            install_path = await asyncio.to_thread(self._install_archive, archive, staging, target_version)
        except OSError as e:
            raise DownloadError(f"Failed to install agent {target_version}: {e}") from e
        finally:
            for leftover in (temp_archive, archive):
                try:
                    leftover.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning("Failed to remove download %s: %s", leftover, e)
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        record = InstallationRecord(
            version=target_version,
            install_path=install_path,
            installed_at=datetime.now(timezone.utc).isoformat(),
            sha256=digest,
        )
        try:
            self.store.write_installation(record)
        except Exception:
            shutil.rmtree(install_path, ignore_errors=True)
            raise

        keep = {install_path}
        if previous is not None:
            keep.add(Path(previous.install_path))
        self._prune_installs(keep)

        logger.info("Successfully installed desktop agent %s at %s", target_version, install_path)
        return record

    def cleanup(self) -> None:
        """Remove the whole agent directory (pre-uninstall)."""
        agent_dir = self.store.agent_dir
        if agent_dir.exists():
            shutil.rmtree(agent_dir)
            logger.info("Cleaned up agent installation at %s", agent_dir)

    # =========================================================================
    # INSTALL
    # =========================================================================

    def _install_archive(self, archive: Path, staging: Path, version: str) -> Path:
        """Extract archive into staging and move it to a fresh install dir."""
        staging.mkdir(parents=True)

        try:
            with tarfile.open(archive, "r:gz") as tar:
                # Security: prevent path traversal attacks
                for member in tar.getmembers():
                    member_path = Path(member.name)
                    if member_path.is_absolute() or ".." in member_path.parts:
                        raise VerificationError(f"Unsafe path in agent archive: {member.name}")
                if hasattr(tarfile, "data_filter"):
                    tar.extractall(staging, filter="data")
                else:
                    tar.extractall(staging)
        except tarfile.TarError as e:
            raise VerificationError(f"Agent archive is not a valid tarball: {e}") from e

        # Archives usually wrap everything in one top-level directory
        root = staging
        entries = list(staging.iterdir())
        if len(entries) == 1 and entries[0].is_dir() and not (staging / "bin").exists():
            root = entries[0]

        executable = agent_executable_path(root)
        if not executable.is_file():
            raise VerificationError(f"Agent archive for {version} does not contain bin/{executable.name}")
        if os.name != "nt":
            executable.chmod(0o755)

        install_path = self.versions_dir / f"{version}-{uuid.uuid4().hex[:8]}"
        root.rename(install_path)
        return install_path

    def _prune_installs(self, keep: Set[Path]) -> None:
        """Remove install directories other than the ones in keep."""
        handle = self.store.read_handle()
        if handle and handle.get("executable"):
            # Never delete the build a live agent was launched from
            keep = keep | {Path(handle["executable"]).parent.parent}

        keep_resolved = {p.resolve() for p in keep}
        candidates = [
            entry for entry in self.versions_dir.iterdir()
            if entry.is_dir() and not entry.name.startswith(".") and entry.resolve() not in keep_resolved
        ]
        if len(keep_resolved) + len(candidates) <= MAX_KEPT_INSTALLS:
            return

        for old_install in candidates:
            try:
                shutil.rmtree(old_install)
                logger.info("Removed old agent install: %s", old_install)
            except OSError as e:
                logger.warning("Failed to remove old agent install %s: %s", old_install, e)
