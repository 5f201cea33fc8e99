"""Textual application entry point for remipn."""

from __future__ import annotations

import logging
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Callable

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import DataTable, Footer, Header, Input

from .config import IMPORT_DIR, AppConfig, load_config, save_config
from .errors import RemipnError
from .importers import ProfileImportError, load_file, scan_directory
from .messages import ProfilesChanged, RequestFailed, StateChanged
from .models import ConnectionState, Phase, Profile
from .profiles import ImportOutcome, ProfilePatch, SortKey
from .providers import ConnectionActionsProvider, ProfileConnectProvider
from .screens import (
    FORM_PARAMS,
    ConfirmScreen,
    HelpScreen,
    ImportScreen,
    ProfileFormResult,
    ProfileFormScreen,
    PromptScreen,
)
from .supervisor import ConnectionSupervisor, build_supervisor
from .widgets import LogPanel, ProfileTable, StatusBar

LOG = logging.getLogger(__name__)

SORT_CYCLE: tuple[tuple[SortKey, bool], ...] = (
    (SortKey.NAME, False),
    (SortKey.NAME, True),
    (SortKey.CATEGORY, False),
    (SortKey.CATEGORY, True),
    (SortKey.LAST_USED, False),
    (SortKey.LAST_USED, True),
)


def _load_app_config(path: Path | None = None) -> AppConfig:
    """Load configuration with a small wrapper for future overrides."""

    return load_config(path)


class RemipnApp(App[None]):
    """Profile list with live connection status."""

    TITLE = "remipn"
    COMMANDS = App.COMMANDS | {ProfileConnectProvider, ConnectionActionsProvider}
    CSS = """
    Screen {
        layout: vertical;
    }
    #search {
        display: none;
        margin: 0 1;
    }
    #search.-visible {
        display: block;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("d", "disconnect", "Disconnect"),
        Binding("r", "refresh", "Refresh"),
        Binding("n", "add_profile", "New"),
        Binding("e", "edit_profile", "Edit"),
        Binding("a", "edit_alias", "Alias"),
        Binding("x", "delete_profile", "Delete"),
        Binding("i", "import_profiles", "Import"),
        Binding("slash", "search", "Search"),
        Binding("s", "cycle_sort", "Sort"),
        Binding("l", "toggle_logs", "Logs"),
        Binding("R", "toggle_auto_reconnect", "Auto-reconnect", show=False),
        Binding("h", "help", "Help"),
        Binding("escape", "clear_search", show=False),
        Binding("j", "cursor_down", show=False),
        Binding("k", "cursor_up", show=False),
        Binding("ctrl+p", "command_palette", "Command Palette", show=False),
    ]

    def __init__(
        self,
        *,
        config: AppConfig | None = None,
        supervisor: ConnectionSupervisor | None = None,
        config_path: Path | None = None,
        demo: bool = False,
    ) -> None:
        super().__init__()
        self._config_path = config_path
        self._config = config or _load_app_config(config_path)
        self._supervisor = supervisor or build_supervisor(self._config, demo=demo)
        self._sort_index = next(
            (index for index, (key, desc) in enumerate(SORT_CYCLE) if key.value == self._config.sort_key and not desc),
            0,
        )
        self._query = ""
        self._pending_notifications: list[tuple[str, str]] = []
        self._last_state: ConnectionState = self._supervisor.state
        self._unsubscribers: list[Callable[[], None]] = []
        self._unsubscribers.append(self._supervisor.store.subscribe(self._persist_profiles))

    def compose(self) -> ComposeResult:
        """Compose the root layout."""

        yield Header(show_clock=True)
        yield Input(placeholder="Search name, alias or category", id="search")
        yield ProfileTable()
        yield LogPanel(self._supervisor)
        yield StatusBar(self._supervisor)
        yield Footer()

    async def on_mount(self) -> None:
        self._install_listeners()
        self._flush_pending_notifications()
        self._refresh_table()
        self._update_hint()
        self.query_one(ProfileTable).focus()
        self._supervisor.start(reconcile=False)
        self._auto_import()
        self._submit("refresh", self._supervisor.submit_refresh, on_done=self._maybe_auto_connect)

    @property
    def supervisor(self) -> ConnectionSupervisor:
        """Expose the supervisor for providers and tests."""

        return self._supervisor

    @property
    def app_config(self) -> AppConfig:
        return self._config

    @property
    def sort_order(self) -> tuple[SortKey, bool]:
        return SORT_CYCLE[self._sort_index]

    @property
    def search_query(self) -> str:
        return self._query

    def visible_profiles(self) -> list[Profile]:
        key, descending = self.sort_order
        return list(self._supervisor.search(self._query, key, descending=descending))

    # -- connection commands -----------------------------------------------

    def connect_profile(self, name: str) -> Future[Any] | None:
        return self._submit(f"connect {name}", lambda: self._supervisor.submit_connect(name))

    def disconnect_active(self) -> Future[Any] | None:
        return self._submit("disconnect", self._supervisor.submit_disconnect)

    def refresh_status(self) -> Future[Any] | None:
        return self._submit("refresh", self._supervisor.submit_refresh)

    def toggle_connection(self, name: str) -> Future[Any] | None:
        """Disconnect ``name`` when it holds the VPN, otherwise connect to it."""

        state = self._supervisor.state
        if state.profile_name == name and state.phase in (Phase.CONNECTED, Phase.CONNECTING):
            return self._submit(f"disconnect {name}", lambda: self._supervisor.submit_disconnect(name))
        return self.connect_profile(name)

    def remove_profile(self, name: str) -> Future[Any] | None:
        return self._submit(f"remove {name}", lambda: self._supervisor.submit_remove(name))

    # -- profile commands --------------------------------------------------

    def save_new_profile(self, result: ProfileFormResult | None) -> Profile | None:
        if result is None:
            return None
        profile = Profile(
            name=result.name,
            category=result.category,
            alias=result.alias or None,
            connection_params=result.connection_params(),
        )
        try:
            self._supervisor.add(profile)
        except RemipnError as exc:
            self._safe_notify(str(exc), severity="error")
            return None
        self._safe_notify(f"Added {profile.name}.")
        return profile

    def save_profile_edit(self, name: str, result: ProfileFormResult | None) -> Profile | None:
        if result is None:
            return None
        try:
            current = self._supervisor.resolve(name)
            params = {key: value for key, value in current.connection_params.items() if key not in FORM_PARAMS}
            params.update(result.connection_params())
            patch = ProfilePatch(category=result.category, alias=result.alias, connection_params=params)
            return self._supervisor.update(name, patch)
        except RemipnError as exc:
            self._safe_notify(str(exc), severity="error")
            return None

    def set_alias(self, name: str, alias: str | None) -> Profile | None:
        if alias is None:
            return None
        try:
            profile = self._supervisor.update(name, ProfilePatch(alias=alias))
        except RemipnError as exc:
            self._safe_notify(str(exc), severity="error")
            return None
        message = f"{name} alias set to '{profile.alias}'." if profile.alias else f"Cleared alias of {name}."
        self._safe_notify(message)
        return profile

    def import_path(self, raw_path: str | None) -> list[ImportOutcome]:
        """Import a file, or every supported file of a folder."""

        if not raw_path:
            return []
        path = Path(raw_path).expanduser()
        errors: list[ProfileImportError] = []
        if path.is_dir():
            candidates, errors = scan_directory(path)
        else:
            try:
                candidates = load_file(path)
            except ProfileImportError as exc:
                self._safe_notify(str(exc), severity="error")
                return []
        outcomes = self._supervisor.store.import_many(candidates)
        accepted = sum(1 for outcome in outcomes if outcome.accepted)
        skipped = len(outcomes) - accepted
        severity = "information" if accepted or not (skipped or errors) else "warning"
        self._safe_notify(
            f"Imported {accepted} profile(s), skipped {skipped}, {len(errors)} unreadable file(s).",
            severity=severity,
        )
        return outcomes

    def set_auto_reconnect(self, enabled: bool) -> None:
        self._supervisor.set_auto_reconnect(enabled)
        self._config = self._config.with_settings(auto_reconnect=enabled)
        self._save()
        self._safe_notify(f"Auto-reconnect {'enabled' if enabled else 'disabled'}.")
        self._update_hint()

    # -- actions -----------------------------------------------------------

    def action_disconnect(self) -> None:
        self.disconnect_active()

    def action_refresh(self) -> None:
        self.refresh_status()

    def action_add_profile(self) -> None:
        self.push_screen(ProfileFormScreen(), self.save_new_profile)

    def action_edit_profile(self) -> None:
        profile = self._selected_profile()
        if profile is None:
            return
        self.push_screen(ProfileFormScreen(profile), lambda result: self.save_profile_edit(profile.name, result))

    def action_edit_alias(self) -> None:
        profile = self._selected_profile()
        if profile is None:
            return
        self.push_screen(
            PromptScreen(f"Alias for {profile.name} (empty clears it)", value=profile.alias or ""),
            lambda alias: self.set_alias(profile.name, alias),
        )

    def action_delete_profile(self) -> None:
        profile = self._selected_profile()
        if profile is None:
            return

        def _confirmed(answer: bool | None) -> None:
            if answer:
                self.remove_profile(profile.name)

        self.push_screen(ConfirmScreen(f"Delete profile '{profile.name}'?"), _confirmed)

    def action_import_profiles(self) -> None:
        self.push_screen(ImportScreen(IMPORT_DIR), self.import_path)

    def action_search(self) -> None:
        search = self.query_one("#search", Input)
        search.add_class("-visible")
        search.focus()

    def action_clear_search(self) -> None:
        search = self.query_one("#search", Input)
        search.value = ""
        search.remove_class("-visible")
        self.query_one(ProfileTable).focus()

    def action_cycle_sort(self) -> None:
        self._sort_index = (self._sort_index + 1) % len(SORT_CYCLE)
        key, descending = self.sort_order
        if not descending:
            self._config = self._config.with_sort_key(key.value)
            self._save()
        self._refresh_table()
        self._update_hint()

    def action_toggle_logs(self) -> None:
        self.query_one(LogPanel).toggle()

    def action_toggle_auto_reconnect(self) -> None:
        self.set_auto_reconnect(not self._supervisor.settings.auto_reconnect)

    def action_help(self) -> None:
        self.push_screen(HelpScreen())

    def action_cursor_down(self) -> None:
        self.query_one(ProfileTable).action_cursor_down()

    def action_cursor_up(self) -> None:
        self.query_one(ProfileTable).action_cursor_up()

    # -- message handlers --------------------------------------------------

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        if event.row_key.value is not None:
            self.toggle_connection(str(event.row_key.value))

    def on_input_changed(self, event: Input.Changed) -> None:
        if event.input.id != "search":
            return
        self._query = event.value
        self._refresh_table()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id == "search":
            self.query_one(ProfileTable).focus()

    def on_state_changed(self, message: StateChanged) -> None:
        self._handle_state(message.state)

    def on_profiles_changed(self, message: ProfilesChanged) -> None:
        self._refresh_table()

    def on_request_failed(self, message: RequestFailed) -> None:
        self._safe_notify(f"{message.action} failed: {message.error}", severity="error")

    # -- internals ---------------------------------------------------------

    async def _shutdown(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._supervisor.shutdown(timeout=self._supervisor.settings.command_timeout)
        await super()._shutdown()

    def _install_listeners(self) -> None:
        store = self._supervisor.store
        self._unsubscribers.append(store.subscribe(lambda profiles: self.post_message(ProfilesChanged(profiles))))
        self._unsubscribers.append(self._supervisor.subscribe(lambda state: self.post_message(StateChanged(state))))

    def _persist_profiles(self, profiles: tuple[Profile, ...]) -> None:
        self._config = self._config.with_profiles(profiles)
        self._save()

    def _save(self) -> None:
        save_config(self._config, self._config_path)

    def _submit(
        self,
        action: str,
        factory: Callable[[], Future[Any]],
        *,
        on_done: Callable[[Future[Any]], None] | None = None,
    ) -> Future[Any] | None:
        try:
            future = factory()
        except RemipnError as exc:
            self._safe_notify(str(exc), severity="error")
            return None

        def _done(done: Future[Any]) -> None:
            if done.cancelled():
                return
            error = done.exception()
            if error is not None:
                self.post_message(RequestFailed(action, error))
            elif on_done is not None:
                on_done(done)

        future.add_done_callback(_done)
        return future

    def _maybe_auto_connect(self, done: Future[Any]) -> None:
        # runs on the supervisor thread; only queues a request
        if self._supervisor.state.phase is not Phase.IDLE:
            return
        for profile in self._supervisor.list():
            if profile.auto_connect:
                self._submit(f"connect {profile.name}", lambda: self._supervisor.submit_connect(profile.name))
                return

    def _auto_import(self) -> None:
        candidates, _ = scan_directory(IMPORT_DIR)
        if not candidates:
            return
        outcomes = self._supervisor.store.import_many(candidates)
        accepted = [outcome.profile.name for outcome in outcomes if outcome.accepted]
        if accepted:
            self._safe_notify(f"Imported {len(accepted)} new profile(s) from {IMPORT_DIR}.")

    def _selected_profile(self) -> Profile | None:
        name = self.query_one(ProfileTable).selected_profile
        if name is None:
            self._safe_notify("No profile selected.", severity="warning")
            return None
        try:
            return self._supervisor.store.get(name)
        except RemipnError as exc:
            self._safe_notify(str(exc), severity="error")
            return None

    def _handle_state(self, state: ConnectionState) -> None:
        previous = self._last_state
        self._last_state = state
        self._refresh_table()
        if state == previous:
            return
        if state.phase is Phase.CONNECTED:
            self._safe_notify(f"Connected to {state.profile_name}.")
        elif state.phase is Phase.FAILED:
            self._safe_notify(f"{state.profile_name}: {state.reason}", severity="error")
        elif state.phase is Phase.IDLE and previous.profile_name:
            self._safe_notify(f"Disconnected from {previous.profile_name}.")

    def _refresh_table(self) -> None:
        if not self.is_running:
            return
        self.query_one(ProfileTable).show(self.visible_profiles(), self._supervisor.state)

    def _update_hint(self) -> None:
        if not self.is_running:
            return
        key, descending = self.sort_order
        arrow = "desc" if descending else "asc"
        reconnect = "on" if self._supervisor.settings.auto_reconnect else "off"
        self.query_one(StatusBar).set_hint(f"Sort: {key.value} {arrow} | Auto-reconnect: {reconnect}")

    def _safe_notify(self, message: str, *, severity: str = "information") -> None:
        if self.is_running:
            try:
                self.notify(message, severity=severity)
            except Exception:
                LOG.exception("Failed to display notification", extra={"notification": message})
        else:
            self._pending_notifications.append((message, severity))

    def _flush_pending_notifications(self) -> None:
        if not self._pending_notifications:
            return
        pending = list(self._pending_notifications)
        self._pending_notifications.clear()
        for message, severity in pending:
            try:
                self.notify(message, severity=severity)
            except Exception:
                LOG.exception("Failed to display queued notification", extra={"notification": message})


def configure_logging(level: str) -> None:
    """Send log records to the Textual devtools console instead of the terminal."""

    from textual.logging import TextualHandler

    logging.basicConfig(level=level.upper(), handlers=[TextualHandler()], force=True)


def main(config_path: Path | None = None, demo: bool = False, log_level: str = "info") -> None:
    """Invoke the Textual application."""

    configure_logging(log_level)
    RemipnApp(config_path=config_path, demo=demo).run()


if __name__ == "__main__":
    main()
