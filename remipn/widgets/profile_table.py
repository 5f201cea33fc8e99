"""Profile list rendered as a row-cursor data table."""

from __future__ import annotations

from typing import Iterable

from rich.text import Text
from textual.widgets import DataTable

from remipn.models import ConnectionState, Profile

_STATUS_STYLES = {
    "Connected": "bold green",
    "Error": "bold red",
    "Disconnected": "dim",
}


class ProfileTable(DataTable):
    """One row per profile, keyed by profile name."""

    DEFAULT_CSS = """
    ProfileTable {
        height: 1fr;
    }
    """

    COLUMNS = ("Name", "Alias", "Category", "Server", "Protocol", "Status", "IP address", "Last used")

    def __init__(self) -> None:
        super().__init__(id="profile-table", cursor_type="row", zebra_stripes=True)
        self._names: list[str] = []

    def on_mount(self) -> None:
        self._ensure_columns()

    def _ensure_columns(self) -> None:
        if not self.columns:
            self.add_columns(*self.COLUMNS)

    @property
    def profile_names(self) -> tuple[str, ...]:
        return tuple(self._names)

    @property
    def selected_profile(self) -> str | None:
        if not self._names:
            return None
        row = min(max(self.cursor_row, 0), len(self._names) - 1)
        return self._names[row]

    def show(self, profiles: Iterable[Profile], state: ConnectionState) -> None:
        """Replace the rows, keeping the cursor on the same profile when possible."""

        self._ensure_columns()
        selected = self.selected_profile
        self.clear()
        self._names = []
        for profile in profiles:
            status = state.status_for(profile.name)
            self.add_row(
                profile.name,
                profile.alias or "",
                profile.category,
                profile.server or "",
                profile.protocol or "",
                Text(status, style=_STATUS_STYLES.get(status, "bold yellow")),
                state.address_for(profile.name) or "",
                profile.last_used.astimezone().strftime("%Y-%m-%d %H:%M") if profile.last_used else "never",
                key=profile.name,
            )
            self._names.append(profile.name)
        if selected in self._names:
            self.move_cursor(row=self._names.index(selected))


__all__ = ["ProfileTable"]
