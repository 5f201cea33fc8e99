"""App-level tests for the Textual front end."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pytest
from textual.widgets import Input

from remipn.app import RemipnApp
from remipn.backends import DemoBackend
from remipn.config import AppConfig, ProfileConfig, SupervisorSettings, load_config
from remipn.models import ConnectionState, Phase
from remipn.profiles import SortKey
from remipn.providers import ConnectionActionsProvider, ProfileConnectProvider
from remipn.screens import ImportScreen, ProfileFormResult, importable
from remipn.supervisor import build_supervisor
from remipn.widgets import ProfileTable
from remipn.widgets.status_bar import status_text


class _DummyScreen:
    def __init__(self, app: RemipnApp) -> None:
        self.app = app
        self.focused = None


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def config() -> AppConfig:
    return AppConfig(
        settings=SupervisorSettings(poll_interval=0, health_check_interval=0),
        profiles=[
            ProfileConfig(name="Office", alias="o", category="work", server="office.example.com", cert_path="/c.pem"),
            ProfileConfig(name="Home", category="personal"),
        ],
    )


@pytest.fixture
def app(config: AppConfig, tmp_path: Path) -> Iterator[RemipnApp]:
    supervisor = build_supervisor(config, backend=DemoBackend())
    instance = RemipnApp(config=config, supervisor=supervisor, config_path=tmp_path / "config.toml")
    try:
        yield instance
    finally:
        supervisor.shutdown(timeout=2.0)


def _form(**overrides: str) -> ProfileFormResult:
    values = {"name": "Lab", "category": "work", "alias": "", "server": "", "username": "", "protocol": ""}
    values.update(overrides)
    return ProfileFormResult(**values)


def test_app_loads_config_through_loader(monkeypatch: pytest.MonkeyPatch, config: AppConfig) -> None:
    monkeypatch.setattr("remipn.app._load_app_config", lambda path=None: config)

    app = RemipnApp(demo=True)

    try:
        assert isinstance(app.supervisor.backend, DemoBackend)
        assert [p.name for p in app.visible_profiles()] == ["Home", "Office"]
    finally:
        app.supervisor.shutdown()


@pytest.mark.anyio
async def test_profile_connect_provider_connects(app: RemipnApp) -> None:
    provider = ProfileConnectProvider(_DummyScreen(app))  # type: ignore[arg-type]
    hits = [hit async for hit in provider.discover()]
    target = next(hit for hit in hits if "Office" in str(hit.display))

    await target.command()
    app.supervisor.refresh(timeout=2)

    assert app.supervisor.state.phase is Phase.CONNECTED
    assert app.supervisor.state.profile_name == "Office"


@pytest.mark.anyio
async def test_connection_actions_provider_disconnects(app: RemipnApp) -> None:
    app.supervisor.connect("Home", timeout=2)
    provider = ConnectionActionsProvider(_DummyScreen(app))  # type: ignore[arg-type]

    hits = [hit async for hit in provider.search("disconnect")]
    assert hits
    await hits[0].command()
    app.supervisor.refresh(timeout=2)

    assert app.supervisor.state.phase is Phase.IDLE


def test_toggle_connection_connects_then_disconnects(app: RemipnApp) -> None:
    first = app.toggle_connection("Office")
    assert first is not None
    assert first.result(2).phase is Phase.CONNECTED

    second = app.toggle_connection("Office")
    assert second is not None
    assert second.result(2).phase is Phase.IDLE


def test_save_new_profile_persists_and_reports_duplicates(app: RemipnApp, tmp_path: Path) -> None:
    created = app.save_new_profile(_form(server="lab.example.com", alias="l"))
    duplicate = app.save_new_profile(_form(name="Other", alias="o"))

    assert created is not None and created.server == "lab.example.com"
    assert duplicate is None
    message, severity = app._pending_notifications[-1]  # type: ignore[attr-defined]
    assert severity == "error"
    assert "Alias 'o'" in message
    saved = load_config(tmp_path / "config.toml")
    assert [entry.name for entry in saved.profiles] == ["Office", "Home", "Lab"]


def test_save_profile_edit_keeps_fields_not_on_the_form(app: RemipnApp) -> None:
    updated = app.save_profile_edit("o", _form(name="Office", category="hq", server="hq.example.com"))

    assert updated is not None
    assert updated.category == "hq"
    assert updated.alias is None
    assert dict(updated.connection_params) == {"cert_path": "/c.pem", "server": "hq.example.com"}


def test_set_alias_and_cancelled_prompt(app: RemipnApp) -> None:
    assert app.set_alias("Home", None) is None

    profile = app.set_alias("Home", "h")

    assert profile is not None
    assert app.supervisor.resolve("h").name == "Home"


def test_import_path_imports_folder(app: RemipnApp, tmp_path: Path) -> None:
    folder = tmp_path / "exports"
    folder.mkdir()
    (folder / "lab.ovpn").write_text("remote lab.example.com 1194 udp\n")
    (folder / "Home.ovpn").write_text("remote home.example.com\n")

    outcomes = app.import_path(str(folder))

    assert [(o.profile.name, o.accepted) for o in outcomes] == [("Home", False), ("lab", True)]
    assert app.supervisor.resolve("lab").protocol == "OpenVPN/UDP"
    assert app.import_path("") == []


def test_cycle_sort_persists_ascending_keys(app: RemipnApp, tmp_path: Path) -> None:
    app.action_cycle_sort()
    assert app.sort_order == (SortKey.NAME, True)
    assert [p.name for p in app.visible_profiles()] == ["Office", "Home"]

    app.action_cycle_sort()

    assert app.sort_order == (SortKey.CATEGORY, False)
    assert app.app_config.sort_key == "category"
    assert 'sort_key = "category"' in (tmp_path / "config.toml").read_text()


def test_auto_reconnect_toggle_updates_settings(app: RemipnApp) -> None:
    app.action_toggle_auto_reconnect()

    assert app.supervisor.settings.auto_reconnect is True
    assert app.app_config.settings.auto_reconnect is True


@pytest.mark.anyio
async def test_running_app_lists_profiles_and_auto_connects(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr("remipn.app.IMPORT_DIR", tmp_path / "imports")
    config = AppConfig(
        settings=SupervisorSettings(poll_interval=0, health_check_interval=0),
        profiles=[ProfileConfig(name="Office", auto_connect=True), ProfileConfig(name="Home")],
    )
    supervisor = build_supervisor(config, backend=DemoBackend())
    app = RemipnApp(config=config, supervisor=supervisor, config_path=tmp_path / "config.toml")

    async with app.run_test() as pilot:
        table = app.query_one(ProfileTable)
        assert table.profile_names == ("Home", "Office")
        for _ in range(100):
            if supervisor.state.phase is Phase.CONNECTED:
                break
            await pilot.pause(0.02)
        assert supervisor.state.profile_name == "Office"
        await pilot.press("s")
        assert app.sort_order == (SortKey.NAME, True)

    assert supervisor.backend.calls_for("connect") == ["Office"]


def test_importable_keeps_folders_and_supported_exports(tmp_path: Path) -> None:
    (tmp_path / "exports").mkdir()
    (tmp_path / ".cache").mkdir()
    for name in ("work.xml", "lab.OVPN", "notes.txt", ".hidden.ovpn"):
        (tmp_path / name).write_text("")

    kept = importable(sorted(tmp_path.iterdir()))

    assert [path.name for path in kept] == ["exports", "lab.OVPN", "work.xml"]


@pytest.mark.anyio
async def test_import_key_opens_file_browser(
    app: RemipnApp,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    imports = tmp_path / "imports"
    imports.mkdir()
    monkeypatch.setattr("remipn.app.IMPORT_DIR", imports)
    export = tmp_path / "lab.ovpn"
    export.write_text("remote lab.example.com 1194 udp\n")

    async with app.run_test(size=(120, 40)) as pilot:
        await pilot.press("i")
        await pilot.pause()
        assert isinstance(app.screen, ImportScreen)
        field = app.screen.query_one("#import-path", Input)
        assert field.value == str(imports)
        field.value = str(export)
        field.focus()
        await pilot.pause()
        await pilot.press("enter")
        await pilot.pause()
        assert not isinstance(app.screen, ImportScreen)

    assert app.supervisor.resolve("lab").server == "lab.example.com"


def test_status_text_uses_state_labels() -> None:
    since = datetime(2026, 1, 1, 9, 30, tzinfo=timezone.utc)

    connected = status_text(ConnectionState.connected("Office", since, "10.8.0.2"), "demo", "Sort: name")
    retrying = status_text(ConnectionState.connecting("Office", 2, 3), "nmcli")
    failed = status_text(ConnectionState.failed("Office", "no route\nexit code 1"), "nmcli")

    assert connected.startswith("Backend: demo | Status: Connected | Profile: Office | Since: ")
    assert connected.endswith(" | IP: 10.8.0.2 | Sort: name")
    assert retrying == "Backend: nmcli | Status: Retry 1/2... | Profile: Office"
    assert failed == "Backend: nmcli | Status: Failed: no route | Profile: Office"
    assert status_text(ConnectionState.idle(), "demo") == "Backend: demo | Status: Idle"
