# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The DevAgent Authors

"""
DevAgent Errors

Typed failures raised by the store, downloader, supervisor and updater.
Only the CLI boundary turns these into operator messages and exit codes.
"""

from typing import Optional


class DevAgentError(Exception):
    """Base class for all DevAgent failures.

    Args:
        message: Human readable description.
        hint: Optional follow-up instruction shown to the operator.
    """

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint


class StorageError(DevAgentError):
    """Local state could not be read or written (corrupt file, permissions)."""
    pass


class ConfigError(DevAgentError):
    """A configuration key or value was rejected."""
    pass


class NotAuthenticatedError(DevAgentError):
    """No auth token is configured."""

    def __init__(self, message: str = "Not authenticated. Please login first.",
                 hint: Optional[str] = "Run: devagent login"):
        super().__init__(message, hint)


class NotInstalledError(DevAgentError):
    """The desktop agent has no usable installation."""

    def __init__(self, message: str = "Desktop agent not installed.",
                 hint: Optional[str] = "Run: devagent update"):
        super().__init__(message, hint)


class AlreadyRunningError(DevAgentError):
    """A live agent already exists. Treated as a soft, successful no-op."""

    def __init__(self, pid: int):
        super().__init__(f"Agent is already running (PID {pid})",
                         hint='Use "devagent stop" to stop it first')
        self.pid = pid


class StaleHandleError(DevAgentError):
    """The recorded PID no longer belongs to a live agent process."""

    def __init__(self, pid: int, reason: str):
        super().__init__(f"Stale agent handle for PID {pid}: {reason}")
        self.pid = pid
        self.reason = reason


class SupervisorBusyError(DevAgentError):
    """Another devagent invocation holds the supervisor lock."""
    pass


class AgentStartError(DevAgentError):
    """The agent could not be launched or died during startup."""
    pass


class AgentStopError(DevAgentError):
    """The agent process did not exit after SIGTERM and SIGKILL."""
    pass


class RestartError(DevAgentError):
    """The agent was stopped but could not be started again."""

    def __init__(self, cause: Exception):
        super().__init__(
            f"Restart failed after stop: {cause}",
            hint="The agent is stopped. Run: devagent start",
        )
        self.cause = cause


class ApiError(DevAgentError):
    """The RemoteDevAI API returned an error or an unusable payload."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class DownloadError(DevAgentError):
    """Fetching or storing an agent build failed."""

    def __init__(self, message: str, hint: Optional[str] = "Check your connection and retry: devagent update"):
        super().__init__(message, hint)


class VerificationError(DownloadError):
    """A downloaded agent build failed its integrity checks."""

    def __init__(self, message: str, hint: Optional[str] = "The download may be corrupt. Retry: devagent update --force"):
        super().__init__(message, hint)


class UpdateError(DevAgentError):
    """The update sequence did not complete."""
    pass


class UpdateRollbackFailure(UpdateError):
    """The update failed and the previous version could not be restarted.

    The agent is left stopped. This needs manual intervention.
    """

    def __init__(self, update_error: BaseException, recovery_error: Exception):
        super().__init__(
            f"Update failed ({str(update_error) or type(update_error).__name__}) and restarting the previous "
            f"version also failed ({recovery_error})",
            hint="The agent is stopped. Run: devagent start, or reinstall with: devagent update --force",
        )
        self.update_error = update_error
        self.recovery_error = recovery_error
