# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The DevAgent Authors

"""
DevAgent Update Coordinator

Checks the update oracle for newer desktop agent builds and applies them
without leaving the machine without a working agent.

Update flow:
  1. Check the oracle for the latest version
  2. If the agent is running, ask the operator before stopping it
  3. Stop the agent
  4. Download, verify and install the new build
  5. Start the agent again if it was running

If step 4 fails, the previous build is still the installed one, so the
agent is started again on it and the original error is re-raised. If that
restart fails too, UpdateRollbackFailure reports both errors.

Automatic checks only notify. Replacing an agent that may be mid-task is
always an explicit operator action.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

import aiohttp

from .api import AgentRelease, ApiClient
from .downloader import AgentDownloader
from .errors import ApiError, DevAgentError, UpdateError, UpdateRollbackFailure
from .store import InstallationRecord
from .supervisor import AgentSupervisor, LaunchMode

logger = logging.getLogger(__name__)

NOT_INSTALLED = "not installed"
UNKNOWN_VERSION = "unknown"
CHECK_TIMEOUT = 10.0  # seconds for the whole oracle query

STOP_FOR_UPDATE_PROMPT = "Agent is currently running. Stop it for the update?"


# =============================================================================
# VERSION COMPARISON
# =============================================================================

_SEMVER_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-((?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*)?$"
)


def parse_version(version_str: str) -> Optional[Tuple[Any, ...]]:
    """Parse a semantic version into a precedence key, or None if malformed.

    Strips a leading 'v'. Build metadata is ignored. A pre-release sorts
    below the release it precedes, and its identifiers compare numerically
    when numeric and lexically otherwise.
    """
    if not isinstance(version_str, str):
        return None
    match = _SEMVER_RE.match(version_str.strip().lstrip("v"))
    if not match:
        return None

    major, minor, patch, prerelease = match.groups()
    core = (int(major), int(minor), int(patch))
    if prerelease is None:
        return core + (1, ())

    identifiers = []
    for ident in prerelease.split("."):
        if ident.isdigit():
            identifiers.append((0, int(ident), ""))
        else:
            identifiers.append((1, 0, ident))
    return core + (0, tuple(identifiers))


def is_valid_version(version: str) -> bool:
    return parse_version(version) is not None


def compare_versions(v1: str, v2: str) -> int:
    """Return 1 if v1 > v2, -1 if v1 < v2, 0 if equal or not comparable."""
    key1 = parse_version(v1)
    key2 = parse_version(v2)
    if key1 is None or key2 is None:
        logger.debug("Cannot compare versions %r and %r", v1, v2)
        return 0
    if key1 > key2:
        return 1
    if key1 < key2:
        return -1
    return 0


# =============================================================================
# DATA MODELS
# =============================================================================

@dataclass
class VersionCheckFailure:
    """Why the oracle could not be consulted."""
    reason: str  # timeout, api, network, malformed, unexpected
    error: str


@dataclass
class UpdateCheckResult:
    """Result of comparing the installed build with the oracle."""
    update_available: bool
    current_version: str
    latest_version: str
    release_notes: Optional[str] = None
    release: Optional[AgentRelease] = None
    failure: Optional[VersionCheckFailure] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "update_available": self.update_available,
            "current_version": self.current_version,
            "latest_version": self.latest_version,
            "release_notes": self.release_notes,
        }
        if self.failure:
            d["check_error"] = self.failure.error
        return d


@dataclass
class UpdateOutcome:
    """What update() did."""
    updated: bool
    previous_version: str
    installed_version: str
    restarted: bool = False
    reason: Optional[str] = None  # up-to-date, declined, not-installed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "updated": self.updated,
            "previous_version": self.previous_version,
            "installed_version": self.installed_version,
            "restarted": self.restarted,
            "reason": self.reason,
        }


def _decline(message: str) -> bool:
    return False


# =============================================================================
# UPDATE COORDINATOR
# =============================================================================

class UpdateCoordinator:
    """Orchestrates check, stop, download and restart of the agent.

    Usage:
        coordinator = UpdateCoordinator(downloader, supervisor, client, confirm=click.confirm)
        result = await coordinator.check_for_updates()
        if result.update_available:
            await coordinator.update()
    """

    def __init__(
        self,
        downloader: AgentDownloader,
        supervisor: AgentSupervisor,
        client: ApiClient,
        confirm: Optional[Callable[[str], bool]] = None,
        notify: Optional[Callable[[str], None]] = None,
        check_timeout: float = CHECK_TIMEOUT,
    ):
        """
        Args:
            downloader: Installs agent builds.
            supervisor: Stops and restarts the agent around an install.
            client: Update oracle.
            confirm: Asks the operator a yes/no question. Without one,
                     every question is answered "no".
            notify: Receives update-available notices from
                    auto_update_check(). Defaults to the log.
            check_timeout: Upper bound in seconds for an oracle query.
        """
        self.downloader = downloader
        self.supervisor = supervisor
        self.client = client
        self.confirm = confirm or _decline
        self.notify = notify or (lambda message: logger.info("%s", message))
        self.check_timeout = check_timeout

    compare_versions = staticmethod(compare_versions)
    is_valid_version = staticmethod(is_valid_version)

    # =========================================================================
    # CHECK
    # =========================================================================

    async def _query_latest(self, current_version: str) -> Union[AgentRelease, VersionCheckFailure]:
        try:
            return await asyncio.wait_for(
                self.client.check_agent_update(current_version),
                timeout=self.check_timeout,
            )
        except asyncio.TimeoutError:
            return VersionCheckFailure("timeout", f"no response within {self.check_timeout:.0f}s")
        except ApiError as e:
            return VersionCheckFailure("api", str(e))
        except aiohttp.ClientError as e:
            return VersionCheckFailure("network", str(e))
        except (KeyError, TypeError, ValueError) as e:
            return VersionCheckFailure("malformed", str(e))
        except Exception as e:
            logger.debug("Unexpected update check failure", exc_info=True)
            return VersionCheckFailure("unexpected", f"{type(e).__name__}: {e}")

    async def check_for_updates(self, silent: bool = False) -> UpdateCheckResult:
        """Compare the installed build with the oracle. Never raises for
        oracle failures; they come back as result.failure.

        Args:
            silent: Log failures at debug instead of warning level.
        """
        current_version = self.downloader.get_installed_version()
        if not current_version:
            return UpdateCheckResult(
                update_available=False,
                current_version=NOT_INSTALLED,
                latest_version=UNKNOWN_VERSION,
            )

        outcome = await self._query_latest(current_version)
        if isinstance(outcome, VersionCheckFailure):
            log = logger.debug if silent else logger.warning
            log("Unable to check for updates (%s): %s", outcome.reason, outcome.error)
            return UpdateCheckResult(
                update_available=False,
                current_version=current_version,
                latest_version=current_version,
                failure=outcome,
            )

        if outcome.update_available:
            logger.info("Update available: %s -> %s", current_version, outcome.version)
        else:
            logger.debug("Already up to date (%s)", current_version)

        return UpdateCheckResult(
            update_available=outcome.update_available,
            current_version=current_version,
            latest_version=outcome.version,
            release_notes=outcome.release_notes,
            release=outcome,
        )

    async def auto_update_check(self) -> UpdateCheckResult:
        """Silent check that only notifies. Never applies an update."""
        result = await self.check_for_updates(silent=True)
        if result.update_available:
            self.notify(
                f"New version available: {result.latest_version} "
                f"(current: {result.current_version})"
            )
            self.notify("Run 'devagent update' to upgrade")
        return result

    # =========================================================================
    # APPLY
    # =========================================================================

    async def install(self, version: Optional[str] = None) -> InstallationRecord:
        """First-time install of the latest (or a given) agent build."""
        return await self.downloader.download_agent(version)

    async def update(self, force: bool = False) -> UpdateOutcome:
        """Update the agent to the latest version.

        Args:
            force: Reinstall even if the oracle reports no update.

        Returns:
            UpdateOutcome. reason is "not-installed" when there is nothing
            to update; use install() for a first install.

        Raises:
            DownloadError / VerificationError: The install failed. The
                previous build is still installed and was restarted if it
                had been running.
            UpdateRollbackFailure: The install failed and the previous
                build could not be restarted. The agent is stopped.
            UpdateError: The new build installed but would not start.
        """
        check = await self.check_for_updates()
        current_version = check.current_version

        if current_version == NOT_INSTALLED:
            logger.info("Desktop agent not installed, nothing to update")
            return UpdateOutcome(
                updated=False,
                previous_version=NOT_INSTALLED,
                installed_version=NOT_INSTALLED,
                reason="not-installed",
            )

        if not force and not check.update_available:
            logger.info("Already on latest version (%s)", current_version)
            return UpdateOutcome(
                updated=False,
                previous_version=current_version,
                installed_version=current_version,
                reason="up-to-date",
            )

        target_version = check.latest_version
        release = check.release if check.release and check.release.download_url else None

        should_restart = False
        if self.supervisor.is_running():
            if not self.confirm(STOP_FOR_UPDATE_PROMPT):
                logger.warning("Cannot update while agent is running. Please stop the agent first.")
                return UpdateOutcome(
                    updated=False,
                    previous_version=current_version,
                    installed_version=current_version,
                    reason="declined",
                )
            await self.supervisor.stop()
            should_restart = True

        logger.info("Updating agent %s -> %s", current_version, target_version)
        try:
            record = await self.downloader.download_agent(target_version, release=release)
        except Exception as e:
            logger.error("Update to %s failed: %s", target_version, e)
            if should_restart:
                await self._recover(e)
            raise
        except BaseException as e:
            # Ctrl+C arrives here as CancelledError or KeyboardInterrupt
            logger.error("Update to %s interrupted (%s)", target_version, type(e).__name__)
            if should_restart:
                await asyncio.shield(self._recover(e))
            raise

        restarted = False
        if should_restart:
            try:
                await self.supervisor.start(LaunchMode.DETACHED)
                restarted = True
            except DevAgentError as e:
                logger.error("Agent %s installed but failed to start: %s", record.version, e)
                raise UpdateError(
                    f"Agent {record.version} was installed but failed to start: {e}",
                    hint="Run: devagent start",
                ) from e

        logger.info("Successfully updated to version %s", record.version)
        return UpdateOutcome(
            updated=True,
            previous_version=current_version,
            installed_version=record.version,
            restarted=restarted,
        )

    async def _recover(self, update_error: BaseException) -> None:
        """Restart whatever build is still installed after a failed update."""
        logger.info("Attempting to restart agent with previous version...")
        try:
            await self.supervisor.start(LaunchMode.DETACHED)
        except Exception as recovery_error:
            logger.error("Failed to restart agent after update failure: %s", recovery_error)
            raise UpdateRollbackFailure(update_error, recovery_error) from update_error
        logger.info("Agent restarted on version %s", self.downloader.get_installed_version())
