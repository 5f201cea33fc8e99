"""Shared dataclasses used across the profile, backend and supervisor modules."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Mapping

DEFAULT_CATEGORY = "Uncategorized"


class SourceKind(str, Enum):
    """Where a profile came from."""

    MANUAL = "manual"
    IMPORTED = "imported"


@dataclass(frozen=True, slots=True)
class ProfileSource:
    """Origin of a profile; imported profiles keep the file they came from."""

    kind: SourceKind = SourceKind.MANUAL
    origin: str | None = None

    @classmethod
    def imported(cls, origin: str) -> ProfileSource:
        return cls(kind=SourceKind.IMPORTED, origin=origin)


@dataclass(frozen=True, slots=True)
class Profile:
    """Runtime representation of a VPN profile."""

    name: str
    category: str = DEFAULT_CATEGORY
    alias: str | None = None
    connection_params: Mapping[str, str] = field(default_factory=dict)
    source: ProfileSource = field(default_factory=ProfileSource)
    last_used: datetime | None = None
    auto_connect: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "alias", self.alias or None)
        object.__setattr__(self, "connection_params", MappingProxyType(dict(self.connection_params)))

    @property
    def server(self) -> str | None:
        return self.connection_params.get("server")

    @property
    def username(self) -> str | None:
        return self.connection_params.get("username")

    @property
    def protocol(self) -> str | None:
        return self.connection_params.get("protocol")

    def matches(self, key: str) -> bool:
        """True when ``key`` is this profile's name or alias."""

        return key == self.name or (self.alias is not None and key == self.alias)

    def with_changes(self, **changes: object) -> Profile:
        return replace(self, **changes)


class BackendStatus(str, Enum):
    """Normalized tri-state reported by a backend status query."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class StatusReport:
    """One status query result along with the raw tool output."""

    status: BackendStatus
    raw: str = ""
    address: str | None = None


class Phase(str, Enum):
    """Phases of the process-wide connection state machine."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    FAILED = "failed"


class FailureKind(str, Enum):
    """Why a connection ended up in the failed phase."""

    BACKEND = "backend"
    TIMEOUT = "timeout"
    NOT_CONFIRMED = "not_confirmed"
    NOT_DISCONNECTED = "not_disconnected"
    DROPPED = "dropped"
    SUPERSEDED = "superseded"
    CANCELLED = "cancelled"


_ACTIVE_PHASES = frozenset({Phase.CONNECTING, Phase.CONNECTED, Phase.DISCONNECTING})
_STABLE_PHASES = frozenset({Phase.IDLE, Phase.CONNECTED, Phase.FAILED})


@dataclass(frozen=True, slots=True)
class ConnectionState:
    """Snapshot of the single active (or last attempted) connection."""

    phase: Phase = Phase.IDLE
    profile_name: str | None = None
    since: datetime | None = None
    reason: str | None = None
    failure: FailureKind | None = None
    address: str | None = None
    attempt: int = 1
    attempts: int = 1

    @classmethod
    def idle(cls) -> ConnectionState:
        return cls()

    @classmethod
    def connecting(cls, profile_name: str, attempt: int = 1, attempts: int = 1) -> ConnectionState:
        return cls(Phase.CONNECTING, profile_name, attempt=attempt, attempts=attempts)

    @classmethod
    def connected(
        cls,
        profile_name: str,
        since: datetime | None = None,
        address: str | None = None,
    ) -> ConnectionState:
        return cls(Phase.CONNECTED, profile_name, since=since or datetime.now(tz=timezone.utc), address=address)

    @classmethod
    def disconnecting(cls, profile_name: str) -> ConnectionState:
        return cls(Phase.DISCONNECTING, profile_name)

    @classmethod
    def failed(cls, profile_name: str, reason: str, kind: FailureKind = FailureKind.BACKEND) -> ConnectionState:
        return cls(Phase.FAILED, profile_name, reason=reason, failure=kind)

    @property
    def is_active(self) -> bool:
        """Connecting, connected or disconnecting: the profile holds the VPN subsystem."""

        return self.phase in _ACTIVE_PHASES

    @property
    def is_stable(self) -> bool:
        return self.phase in _STABLE_PHASES

    @property
    def active_profile(self) -> str | None:
        return self.profile_name if self.is_active else None

    @property
    def label(self) -> str:
        if self.phase is Phase.IDLE:
            return "Idle"
        if self.phase is Phase.CONNECTING:
            if self.attempt > 1:
                return f"Retry {self.attempt - 1}/{self.attempts - 1}..."
            return "Connecting..."
        if self.phase is Phase.CONNECTED:
            return "Connected"
        if self.phase is Phase.DISCONNECTING:
            return "Disconnecting..."
        return f"Failed: {self.reason}" if self.reason else "Failed"

    def status_for(self, profile_name: str) -> str:
        """Per-profile label used by list views."""

        if self.profile_name != profile_name or self.phase is Phase.IDLE:
            return "Disconnected"
        if self.phase is Phase.FAILED:
            return "Error"
        return self.label

    def address_for(self, profile_name: str) -> str | None:
        if self.phase is Phase.CONNECTED and self.profile_name == profile_name:
            return self.address
        return None


@dataclass(frozen=True, slots=True)
class Event:
    """Entry of the bounded in-memory log shown by the front ends."""

    timestamp: datetime
    level: str
    message: str

    def format(self) -> str:
        return f"[{self.timestamp.astimezone().strftime('%H:%M:%S')}] {self.level:<7} {self.message}"


__all__ = [
    "DEFAULT_CATEGORY",
    "BackendStatus",
    "ConnectionState",
    "Event",
    "FailureKind",
    "Phase",
    "Profile",
    "ProfileSource",
    "SourceKind",
    "StatusReport",
]
