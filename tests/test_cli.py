"""Tests for the command line front end."""

from __future__ import annotations

from pathlib import Path

import pytest

from remipn import cli as cli_module
from remipn.backends import DEMO_ADDRESS, DemoBackend
from remipn.cli import ExitCode, build_parser, exit_code_for_error, exit_code_for_state, main
from remipn.config import load_config
from remipn.errors import BackendTimeout, DuplicateAliasError, InvocationFailed, ProfileNotFoundError
from remipn.models import ConnectionState, FailureKind, Profile

FAST_SETTINGS = "[settings]\npoll_interval = 0\nhealth_check_interval = 0\n"


@pytest.fixture
def config_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setattr(cli_module, "configure_logging", lambda level: None)
    path = tmp_path / "config.toml"
    path.write_text(FAST_SETTINGS)
    return path


def _run(config_path: Path, *args: str) -> int:
    return main(["--demo", "--config", str(config_path), *args])


def test_parser_routes_commands_and_aliases() -> None:
    parser = build_parser()

    connect = parser.parse_args(["c", "work"])
    listing = parser.parse_args(["list", "--sort", "last_used", "--desc"])
    removal = parser.parse_args(["rm", "work"])
    bare = parser.parse_args([])

    assert connect.func is cli_module.run_connect
    assert connect.name == "work"
    assert listing.func is cli_module.run_list
    assert listing.sort == "last_used"
    assert listing.desc is True
    assert removal.func is cli_module.run_remove
    assert not hasattr(bare, "func")


def test_exit_code_mapping() -> None:
    assert exit_code_for_error(ProfileNotFoundError("x")) is ExitCode.NOT_FOUND
    assert exit_code_for_error(DuplicateAliasError("a", "x")) is ExitCode.DUPLICATE
    assert exit_code_for_error(BackendTimeout("nmcli", 5)) is ExitCode.TIMEOUT
    assert exit_code_for_error(InvocationFailed(1, "boom")) is ExitCode.BACKEND_ERROR
    assert exit_code_for_error(RuntimeError("boom")) is ExitCode.GENERAL_ERROR

    assert exit_code_for_state(ConnectionState.connected("x")) is ExitCode.SUCCESS
    assert exit_code_for_state(ConnectionState.failed("x", "slow", FailureKind.NOT_CONFIRMED)) is ExitCode.TIMEOUT
    assert exit_code_for_state(ConnectionState.failed("x", "no route")) is ExitCode.BACKEND_ERROR


def test_add_then_list_persists_profiles(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(config_path, "add", "Office", "--server", "office.example.com", "--alias", "o") == ExitCode.SUCCESS
    assert _run(config_path, "add", "Home", "--alias", "o") == ExitCode.DUPLICATE

    assert _run(config_path, "list") == ExitCode.SUCCESS

    out = capsys.readouterr()
    assert "Added profile Office." in out.out
    assert "Office" in out.out
    assert "Alias 'o' is already used" in out.err
    assert [entry.name for entry in load_config(config_path).profiles] == ["Office"]


def test_connect_by_alias_records_last_used(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(config_path, "add", "Office", "--alias", "o")

    assert _run(config_path, "connect", "o") == ExitCode.SUCCESS

    assert "Connected to Office." in capsys.readouterr().out
    assert load_config(config_path).profiles[0].last_used is not None


def test_connect_unknown_profile_exits_not_found(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(config_path, "connect", "nowhere") == ExitCode.NOT_FOUND

    assert "Profile 'nowhere' not found." in capsys.readouterr().err


def test_disconnect_when_idle_is_success(config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(config_path, "disconnect") == ExitCode.SUCCESS
    assert _run(config_path, "status") == ExitCode.SUCCESS

    out = capsys.readouterr().out
    assert "Nothing to disconnect." in out
    assert "Disconnected" in out


def test_edit_alias_and_remove(config_path: Path) -> None:
    _run(config_path, "add", "Office")

    assert _run(config_path, "edit", "Office") == ExitCode.INVALID_INPUT
    assert _run(config_path, "edit", "Office", "--category", "work", "--username", "sam") == ExitCode.SUCCESS
    assert _run(config_path, "alias", "Office", "off") == ExitCode.SUCCESS
    entry = load_config(config_path).profiles[0]
    assert (entry.category, entry.alias, entry.username) == ("work", "off", "sam")

    assert _run(config_path, "rm", "off") == ExitCode.SUCCESS
    assert load_config(config_path).profiles == []


def test_import_reports_duplicates_and_unreadable_files(config_path: Path, tmp_path: Path) -> None:
    export = tmp_path / "office.ovpn"
    export.write_text("remote office.example.com 1194\n")
    broken = tmp_path / "broken.xml"
    broken.write_text("<VpnProfiles/>")

    assert _run(config_path, "import", str(export)) == ExitCode.SUCCESS
    assert _run(config_path, "import", str(export)) == ExitCode.DUPLICATE
    assert _run(config_path, "import", str(broken)) == ExitCode.INVALID_INPUT

    profiles = load_config(config_path).build_profiles()
    assert [(p.name, p.server) for p in profiles] == [("office", "office.example.com")]


def test_status_reports_tunnel_address(
    config_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    real_build = cli_module.build_supervisor
    monkeypatch.setattr(
        cli_module,
        "build_supervisor",
        lambda config, demo=False: real_build(config, backend=DemoBackend(active=("Office",))),
    )
    _run(config_path, "add", "Office")

    assert _run(config_path, "status") == ExitCode.SUCCESS

    out = capsys.readouterr().out
    assert "Connected to Office since" in out
    assert f"IP address: {DEMO_ADDRESS}" in out


def test_profile_table_shows_address_of_connected_profile() -> None:
    state = ConnectionState.connected("Office", address="10.8.0.2")

    table = cli_module._profile_table([Profile(name="Office"), Profile(name="Home")], state)

    column = next(column for column in table.columns if column.header == "IP address")
    assert list(column.cells) == ["10.8.0.2", ""]
