"""Status bar widget that mirrors the connection state."""

from __future__ import annotations

from typing import Callable

from textual.widgets import Static

from remipn.messages import StateChanged
from remipn.models import ConnectionState, Phase
from remipn.supervisor import ConnectionSupervisor


class StatusBar(Static):
    """Compact status strip rendered above Textual's footer."""

    DEFAULT_CSS = """
    StatusBar {
        height: 1;
        padding: 0 1;
        background: $surface-darken-3;
        color: $text;
    }
    StatusBar.-failed {
        background: $error 40%;
    }
    StatusBar.-connected {
        background: $success 30%;
    }
    """

    def __init__(self, supervisor: ConnectionSupervisor) -> None:
        super().__init__("", id="status-bar")
        self._supervisor = supervisor
        self._unsubscribe: Callable[[], None] | None = None
        self._hint = ""
        self._state = supervisor.state

    async def on_mount(self) -> None:
        self._unsubscribe = self._supervisor.subscribe(lambda state: self.post_message(StateChanged(state)))

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def on_state_changed(self, message: StateChanged) -> None:
        message.stop()
        self._state = message.state
        self._render_state()

    def set_hint(self, hint: str) -> None:
        """Trailing text such as the current sort order."""

        self._hint = hint
        self._render_state()

    def _render_state(self) -> None:
        state = self._state
        self.set_class(state.phase is Phase.FAILED, "-failed")
        self.set_class(state.phase is Phase.CONNECTED, "-connected")
        self.update(status_text(state, self._supervisor.backend.name, self._hint))


def status_text(state: ConnectionState, backend_name: str, hint: str = "") -> str:
    label = state.label.splitlines()[0] if state.label else ""
    parts = [f"Backend: {backend_name}", f"Status: {label[:80]}"]
    if state.profile_name:
        parts.append(f"Profile: {state.profile_name}")
    if state.phase is Phase.CONNECTED:
        if state.since:
            parts.append(f"Since: {state.since.astimezone().strftime('%H:%M:%S')}")
        if state.address:
            parts.append(f"IP: {state.address}")
    if hint:
        parts.append(hint)
    return " | ".join(parts)


__all__ = ["StatusBar", "status_text"]
