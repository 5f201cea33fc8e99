"""Modal screens for editing profiles, browsing for imports and confirming destructive actions."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from textual import on
from textual.app import ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import Button, DirectoryTree, Input, Label, Static

from .importers import IMPORT_SUFFIXES
from .models import DEFAULT_CATEGORY, Profile

_MODAL_CSS = """
{name} {{
    align: center middle;
}}
{name} > Vertical {{
    width: 64;
    height: auto;
    padding: 1 2;
    border: thick $primary 60%;
    background: $surface;
}}
{name} .modal-title {{
    text-style: bold;
    margin-bottom: 1;
}}
{name} .modal-buttons {{
    height: auto;
    margin-top: 1;
    align-horizontal: right;
}}
{name} Button {{
    margin-left: 1;
}}
"""


FORM_PARAMS = ("server", "username", "protocol")


@dataclass(frozen=True, slots=True)
class ProfileFormResult:
    """Values collected by ``ProfileFormScreen``."""

    name: str
    category: str
    alias: str
    server: str
    username: str
    protocol: str

    def connection_params(self) -> dict[str, str]:
        values = {key: getattr(self, key) for key in FORM_PARAMS}
        return {key: value for key, value in values.items() if value}


class ProfileFormScreen(ModalScreen[ProfileFormResult | None]):
    """Add a new profile or edit an existing one (the name is fixed when editing)."""

    DEFAULT_CSS = _MODAL_CSS.format(name="ProfileFormScreen")
    BINDINGS = [Binding("escape", "cancel", "Cancel")]

    _FIELDS = (
        ("name", "Name"),
        ("category", "Category"),
        ("alias", "Alias"),
        ("server", "Server"),
        ("username", "Username"),
        ("protocol", "Protocol"),
    )

    def __init__(self, profile: Profile | None = None) -> None:
        super().__init__()
        self._profile = profile

    def compose(self) -> ComposeResult:
        title = f"Edit {self._profile.name}" if self._profile else "New profile"
        with Vertical():
            yield Static(title, classes="modal-title")
            for field_name, label in self._FIELDS:
                yield Label(label)
                yield Input(
                    value=self._initial(field_name),
                    placeholder=DEFAULT_CATEGORY if field_name == "category" else "",
                    id=f"field-{field_name}",
                    disabled=field_name == "name" and self._profile is not None,
                )
            yield Static("", id="form-error")
            with Horizontal(classes="modal-buttons"):
                yield Button("Save", id="save", variant="primary")
                yield Button("Cancel", id="cancel")

    def _initial(self, field_name: str) -> str:
        profile = self._profile
        if profile is None:
            return ""
        if field_name in ("name", "category", "alias"):
            return getattr(profile, field_name) or ""
        return profile.connection_params.get(field_name, "")

    def _value(self, field_name: str) -> str:
        return self.query_one(f"#field-{field_name}", Input).value.strip()

    @on(Button.Pressed, "#save")
    @on(Input.Submitted)
    def action_save(self) -> None:
        name = self._value("name")
        if not name:
            self.query_one("#form-error", Static).update("Name is required.")
            return
        self.dismiss(
            ProfileFormResult(
                name=name,
                category=self._value("category") or DEFAULT_CATEGORY,
                alias=self._value("alias"),
                server=self._value("server"),
                username=self._value("username"),
                protocol=self._value("protocol"),
            )
        )

    @on(Button.Pressed, "#cancel")
    def action_cancel(self) -> None:
        self.dismiss(None)


class PromptScreen(ModalScreen[str | None]):
    """Single-line prompt; returns the entered text or ``None`` when cancelled."""

    DEFAULT_CSS = _MODAL_CSS.format(name="PromptScreen")
    BINDINGS = [Binding("escape", "cancel", "Cancel")]

    def __init__(self, title: str, value: str = "", placeholder: str = "") -> None:
        super().__init__()
        self._title = title
        self._value = value
        self._placeholder = placeholder

    def compose(self) -> ComposeResult:
        with Vertical():
            yield Static(self._title, classes="modal-title")
            yield Input(value=self._value, placeholder=self._placeholder, id="prompt-input")
            with Horizontal(classes="modal-buttons"):
                yield Button("OK", id="ok", variant="primary")
                yield Button("Cancel", id="cancel")

    @on(Button.Pressed, "#ok")
    @on(Input.Submitted)
    def action_submit(self) -> None:
        self.dismiss(self.query_one("#prompt-input", Input).value.strip())

    @on(Button.Pressed, "#cancel")
    def action_cancel(self) -> None:
        self.dismiss(None)


class ConfirmScreen(ModalScreen[bool]):
    DEFAULT_CSS = _MODAL_CSS.format(name="ConfirmScreen")
    BINDINGS = [
        Binding("y", "confirm", "Yes"),
        Binding("n,escape", "cancel", "No"),
    ]

    def __init__(self, question: str) -> None:
        super().__init__()
        self._question = question

    def compose(self) -> ComposeResult:
        with Vertical():
            yield Static(self._question, classes="modal-title")
            with Horizontal(classes="modal-buttons"):
                yield Button("Yes", id="yes", variant="error")
                yield Button("No", id="no", variant="primary")

    @on(Button.Pressed, "#yes")
    def action_confirm(self) -> None:
        self.dismiss(True)

    @on(Button.Pressed, "#no")
    def action_cancel(self) -> None:
        self.dismiss(False)


def importable(paths: Iterable[Path]) -> list[Path]:
    """Folders and files the importers understand, hidden entries excluded."""

    return [
        path
        for path in paths
        if not path.name.startswith(".") and (path.is_dir() or path.suffix.lower() in IMPORT_SUFFIXES)
    ]


class ImportTree(DirectoryTree):
    def filter_paths(self, paths: Iterable[Path]) -> Iterable[Path]:
        return importable(paths)


class ImportScreen(ModalScreen[str | None]):
    """Browse for a profile export; picking a file imports it, picking a folder scans it."""

    DEFAULT_CSS = _MODAL_CSS.format(name="ImportScreen") + """
    ImportScreen > Vertical {
        width: 80;
    }
    ImportScreen ImportTree {
        height: 16;
        margin-bottom: 1;
    }
    """
    BINDINGS = [Binding("escape", "cancel", "Cancel")]

    def __init__(self, start: Path) -> None:
        super().__init__()
        self._start = start

    def compose(self) -> ComposeResult:
        root = self._start if self._start.is_dir() else Path.home()
        with Vertical():
            yield Static("Import from file or folder", classes="modal-title")
            yield ImportTree(root, id="import-tree")
            yield Input(value=str(self._start), placeholder="path/to/profile.xml", id="import-path")
            with Horizontal(classes="modal-buttons"):
                yield Button("Import", id="ok", variant="primary")
                yield Button("Cancel", id="cancel")

    @on(DirectoryTree.FileSelected)
    def _file_selected(self, event: DirectoryTree.FileSelected) -> None:
        event.stop()
        self.dismiss(str(event.path))

    @on(DirectoryTree.DirectorySelected)
    def _directory_selected(self, event: DirectoryTree.DirectorySelected) -> None:
        event.stop()
        self.query_one("#import-path", Input).value = str(event.path)

    @on(Button.Pressed, "#ok")
    @on(Input.Submitted, "#import-path")
    def action_submit(self) -> None:
        self.dismiss(self.query_one("#import-path", Input).value.strip())

    @on(Button.Pressed, "#cancel")
    def action_cancel(self) -> None:
        self.dismiss(None)


HELP_TEXT = """\
enter   connect / disconnect the selected profile
d       disconnect the active profile
r       refresh connection status
n       new profile
e       edit selected profile
a       set alias of selected profile
x       delete selected profile
i       browse for profiles to import (file or folder)
/       search (escape returns to the list)
s       cycle sort order
l       toggle the log panel
R       toggle auto-reconnect
ctrl+p  command palette
q       quit"""


class HelpScreen(ModalScreen[None]):
    DEFAULT_CSS = _MODAL_CSS.format(name="HelpScreen")
    BINDINGS = [Binding("escape,h,q", "close", "Close")]

    def compose(self) -> ComposeResult:
        with Vertical():
            yield Static("Keys", classes="modal-title")
            yield Static(HELP_TEXT)

    def action_close(self) -> None:
        self.dismiss(None)


__all__ = [
    "FORM_PARAMS",
    "ConfirmScreen",
    "HelpScreen",
    "ImportScreen",
    "ImportTree",
    "ProfileFormResult",
    "ProfileFormScreen",
    "PromptScreen",
    "importable",
]
