"""Scrolling view over the supervisor event log."""

from __future__ import annotations

from typing import Callable

from rich.text import Text
from textual.widgets import RichLog

from remipn.messages import EventLogged
from remipn.models import Event
from remipn.supervisor import ConnectionSupervisor

_LEVEL_STYLES = {
    "DEBUG": "dim",
    "INFO": "",
    "WARNING": "yellow",
    "ERROR": "bold red",
}


class LogPanel(RichLog):
    """Shows the most recent events; hidden until toggled."""

    DEFAULT_CSS = """
    LogPanel {
        height: 10;
        border-top: solid $primary 40%;
        display: none;
    }
    LogPanel.-visible {
        display: block;
    }
    """

    def __init__(self, supervisor: ConnectionSupervisor) -> None:
        super().__init__(id="log-panel", max_lines=supervisor.settings.event_log_size, wrap=True)
        self._supervisor = supervisor
        self._unsubscribe: Callable[[], None] | None = None

    async def on_mount(self) -> None:
        for event in self._supervisor.events:
            self._write_event(event)
        self._unsubscribe = self._supervisor.subscribe_events(lambda event: self.post_message(EventLogged(event)))

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def on_event_logged(self, message: EventLogged) -> None:
        message.stop()
        self._write_event(message.event)

    def toggle(self) -> bool:
        self.toggle_class("-visible")
        return self.has_class("-visible")

    def _write_event(self, event: Event) -> None:
        self.write(Text(event.format(), style=_LEVEL_STYLES.get(event.level, "")))


__all__ = ["LogPanel"]
