"""Widget library for the Textual UI."""

from __future__ import annotations

from .log_panel import LogPanel
from .profile_table import ProfileTable
from .status_bar import StatusBar

__all__ = ["LogPanel", "ProfileTable", "StatusBar"]
