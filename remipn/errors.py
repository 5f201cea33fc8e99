"""Exception taxonomy shared by the store, backends, supervisor and front ends."""

from __future__ import annotations


class RemipnError(Exception):
    """Base class for every error surfaced to the front ends."""


class ProfileNotFoundError(RemipnError, LookupError):
    """Raised when no profile matches a name or alias."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Profile '{key}' not found.")
        self.key = key


class InvalidProfileError(RemipnError, ValueError):
    """Raised for malformed profile data (empty name, bad import input...)."""


class DuplicateProfileError(RemipnError, ValueError):
    """Base for uniqueness violations inside the profile store."""


class DuplicateNameError(DuplicateProfileError):
    def __init__(self, name: str) -> None:
        super().__init__(f"A profile named '{name}' already exists.")
        self.name = name


class DuplicateAliasError(DuplicateProfileError):
    def __init__(self, alias: str, owner: str) -> None:
        super().__init__(f"Alias '{alias}' is already used by profile '{owner}'.")
        self.alias = alias
        self.owner = owner


class BackendError(RemipnError, RuntimeError):
    """Raised when a platform tool cannot be invoked or reports failure."""


class InvocationFailed(BackendError):
    """The platform tool exited with a non-zero code."""

    def __init__(self, exit_code: int, stderr: str, *, message: str | None = None) -> None:
        detail = stderr.strip().splitlines()[0] if stderr.strip() else "no output"
        super().__init__(message or f"exit code {exit_code}: {detail}")
        self.exit_code = exit_code
        self.stderr = stderr


class BackendTimeout(BackendError):
    """The platform tool did not finish within its time bound and was killed."""

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(f"'{command}' timed out after {timeout:g}s")
        self.command = command
        self.timeout = timeout


class UnsupportedPlatformError(RemipnError, ValueError):
    """No backend exists for the host platform."""


class SupervisorBusyError(RemipnError):
    """The request queue is full."""


class SupervisorClosedError(RemipnError):
    """The supervisor was shut down before the request could run."""


__all__ = [
    "BackendError",
    "BackendTimeout",
    "DuplicateAliasError",
    "DuplicateNameError",
    "DuplicateProfileError",
    "InvalidProfileError",
    "InvocationFailed",
    "ProfileNotFoundError",
    "RemipnError",
    "SupervisorBusyError",
    "SupervisorClosedError",
    "UnsupportedPlatformError",
]
