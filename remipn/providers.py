"""Command palette providers for core app features."""

from __future__ import annotations

from textual.command import DiscoveryHit, Hit, Hits, Provider
from textual.types import IgnoreReturnCallbackType

from .supervisor import ConnectionSupervisor


class ProfileConnectProvider(Provider):
    """Expose every profile as a "Connect to" command."""

    async def search(self, query: str) -> Hits:
        supervisor = self._supervisor
        if supervisor is None:
            return
        matcher = self.matcher(query)
        for profile in supervisor.list():
            label = f"Connect to {profile.name}"
            if profile.alias:
                label = f"{label} ({profile.alias})"
            match = matcher.match(label)
            if match > 0:
                yield Hit(
                    score=match,
                    match_display=matcher.highlight(label),
                    command=self._build_callback(profile.name),
                    help=f"{profile.category} · {profile.server or 'no server'}",
                )

    async def discover(self) -> Hits:
        supervisor = self._supervisor
        if supervisor is None:
            return
        for profile in supervisor.list():
            yield DiscoveryHit(
                display=f"Connect to {profile.name}",
                command=self._build_callback(profile.name),
                help="Disconnects the active VPN first when needed.",
            )

    @property
    def _supervisor(self) -> ConnectionSupervisor | None:
        supervisor = getattr(self.app, "supervisor", None)
        if isinstance(supervisor, ConnectionSupervisor):
            return supervisor
        return None

    def _build_callback(self, name: str) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            connect = getattr(self.app, "connect_profile", None)
            if connect is None:
                return
            connect(name)

        return _run


class ConnectionActionsProvider(Provider):
    """Expose disconnect and refresh for the active connection."""

    _ACTIONS = (
        ("Disconnect", "disconnect_active", "Disconnect the active VPN."),
        ("Refresh connection status", "refresh_status", "Query the backend for the current status."),
    )

    async def search(self, query: str) -> Hits:
        if self._supervisor is None:
            return
        matcher = self.matcher(query)
        for label, method, help_text in self._ACTIONS:
            score = matcher.match(label)
            if score > 0:
                yield Hit(
                    score=score,
                    match_display=matcher.highlight(label),
                    command=self._build_callback(method),
                    help=help_text,
                )

    async def discover(self) -> Hits:
        if self._supervisor is None:
            return
        for label, method, help_text in self._ACTIONS:
            yield DiscoveryHit(display=label, command=self._build_callback(method), help=help_text)

    @property
    def _supervisor(self) -> ConnectionSupervisor | None:
        supervisor = getattr(self.app, "supervisor", None)
        if isinstance(supervisor, ConnectionSupervisor):
            return supervisor
        return None

    def _build_callback(self, method: str) -> IgnoreReturnCallbackType:
        async def _run() -> None:
            handler = getattr(self.app, method, None)
            if handler is None:
                return
            handler()

        return _run


__all__ = ["ConnectionActionsProvider", "ProfileConnectProvider"]
