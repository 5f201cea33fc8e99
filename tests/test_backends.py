"""Tests for the platform backends and their output parsers."""

from __future__ import annotations

import subprocess
from typing import Sequence

import pytest

from remipn import backends as backends_module
from remipn.backends import (
    CommandResult,
    DemoBackend,
    NmcliBackend,
    RasdialBackend,
    ScutilBackend,
    parse_nmcli_active,
    parse_nmcli_status,
    parse_rasdial_active,
    parse_rasdial_status,
    parse_scutil_list,
    parse_scutil_status,
    run_command,
    select_backend,
)
from remipn.errors import BackendTimeout, InvocationFailed, UnsupportedPlatformError
from remipn.models import BackendStatus, Profile


class _FakeRunner:
    """Replays canned results and records every invocation."""

    def __init__(self, *results: CommandResult) -> None:
        self._results = list(results)
        self.invocations: list[tuple[str, ...]] = []

    def __call__(self, args: Sequence[str], timeout: float) -> CommandResult:
        self.invocations.append(tuple(args))
        if not self._results:
            raise AssertionError(f"unexpected command: {args}")
        return self._results.pop(0)


def _result(returncode: int = 0, stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(args=(), returncode=returncode, stdout=stdout, stderr=stderr)


RASDIAL_CONNECTED = "Connected to\nWork VPN\nCommand completed successfully.\n"


def test_parse_nmcli_status_maps_states() -> None:
    output = "Wired connection 1:activated\nwork\\:vpn:activated\nlab:activating\n"

    assert parse_nmcli_status(output, "work:vpn").status is BackendStatus.CONNECTED
    assert parse_nmcli_status(output, "lab").status is BackendStatus.UNKNOWN
    assert parse_nmcli_status(output, "home").status is BackendStatus.DISCONNECTED
    assert parse_nmcli_status("", "home").status is BackendStatus.DISCONNECTED
    assert parse_nmcli_status("garbage", "home").status is BackendStatus.UNKNOWN


def test_parse_nmcli_status_reads_first_ipv4_address() -> None:
    output = "work:activated:10.8.0.6/24|10.9.0.1/32\nlab:activated:\n"

    assert parse_nmcli_status(output, "work").address == "10.8.0.6"
    assert parse_nmcli_status(output, "lab").address is None
    assert parse_nmcli_status("work:activated\n", "work").address is None


def test_parse_nmcli_active_keeps_vpn_connections_only() -> None:
    output = (
        "Wired connection 1:802-3-ethernet:activated\n"
        "work:vpn:activated\n"
        "wg0:wireguard:activated\n"
        "lab:vpn:activating\n"
    )

    assert parse_nmcli_active(output) == ("work", "wg0")


def test_parse_scutil_status_uses_first_line() -> None:
    assert parse_scutil_status("Connected\nExtended Status <dictionary> {\n}").status is BackendStatus.CONNECTED
    assert parse_scutil_status("Disconnected\n").status is BackendStatus.DISCONNECTED
    assert parse_scutil_status("No service\n").status is BackendStatus.DISCONNECTED
    assert parse_scutil_status("Connecting\n").status is BackendStatus.UNKNOWN
    assert parse_scutil_status("").status is BackendStatus.UNKNOWN


def test_parse_scutil_status_reads_tunnel_address() -> None:
    output = (
        "Connected\n"
        "Extended Status <dictionary> {\n"
        "  IPv4 : <dictionary> {\n"
        "    Addresses : <array> {\n"
        "      0 : 172.16.4.20\n"
        "    }\n"
        "    InterfaceName : utun3\n"
        "  }\n"
        "}\n"
    )

    assert parse_scutil_status(output).address == "172.16.4.20"
    assert parse_scutil_status("Connected\n").address is None


def test_parse_scutil_list_returns_connected_services() -> None:
    output = (
        "Available network connection services in the current set (*=enabled):\n"
        '* (Connected)      1A2B3C4D-0000 VPN (com.microsoft.AzureVpnMac) "Work VPN"   [VPN/com.microsoft]\n'
        '* (Disconnected)   5E6F7A8B-0000 VPN (com.microsoft.AzureVpnMac) "Home"       [VPN/com.microsoft]\n'
    )

    assert parse_scutil_list(output) == ("Work VPN",)


def test_parse_rasdial_output() -> None:
    assert parse_rasdial_active(RASDIAL_CONNECTED) == ("Work VPN",)
    assert parse_rasdial_active("No connections\nCommand completed successfully.\n") == ()
    assert parse_rasdial_active("something unexpected") is None

    assert parse_rasdial_status(RASDIAL_CONNECTED, "work vpn").status is BackendStatus.CONNECTED
    assert parse_rasdial_status(RASDIAL_CONNECTED, "Home").status is BackendStatus.DISCONNECTED
    assert parse_rasdial_status("???", "Home").status is BackendStatus.UNKNOWN


def test_nmcli_backend_builds_commands() -> None:
    runner = _FakeRunner(_result(), _result(), _result(stdout="work:activated:10.8.0.6/24\n"))
    backend = NmcliBackend(runner=runner)

    backend.connect(Profile(name="work"))
    backend.disconnect("work")
    report = backend.query_status("work")

    assert runner.invocations == [
        ("nmcli", "--wait", "0", "connection", "up", "id", "work"),
        ("nmcli", "connection", "down", "id", "work"),
        ("nmcli", "-t", "-f", "NAME,STATE,IP4.ADDRESS", "connection", "show", "--active"),
    ]
    assert report.status is BackendStatus.CONNECTED
    assert report.address == "10.8.0.6"


def test_nmcli_disconnect_of_inactive_connection_succeeds() -> None:
    runner = _FakeRunner(_result(10, stderr="Error: 'work' is not an active connection."))
    backend = NmcliBackend(runner=runner)

    backend.disconnect("work")

    assert len(runner.invocations) == 1


def test_disconnect_failure_rechecks_status() -> None:
    runner = _FakeRunner(_result(1, stderr="boom"), _result(stdout="Disconnected\n"))
    ScutilBackend(runner=runner).disconnect("work")

    runner = _FakeRunner(_result(1, stderr="boom"), _result(stdout="Connected\n"))
    with pytest.raises(InvocationFailed) as excinfo:
        ScutilBackend(runner=runner).disconnect("work")
    assert excinfo.value.exit_code == 1


def test_connect_failure_raises_invocation_failed() -> None:
    runner = _FakeRunner(_result(4, stderr="Error: Connection activation failed.\nmore"))

    with pytest.raises(InvocationFailed) as excinfo:
        NmcliBackend(runner=runner).connect(Profile(name="work"))

    assert str(excinfo.value) == "exit code 4: Error: Connection activation failed."


def test_scutil_connect_reports_missing_service_and_auth() -> None:
    backend = ScutilBackend(runner=_FakeRunner(_result(1, stderr="No service")))
    with pytest.raises(InvocationFailed, match="No system VPN service found for 'work'"):
        backend.connect(Profile(name="work"))

    backend = ScutilBackend(runner=_FakeRunner(_result(1, stderr="Authentication failed")))
    with pytest.raises(InvocationFailed, match="VPN authentication required"):
        backend.connect(Profile(name="work"))


def test_scutil_and_rasdial_pass_username() -> None:
    profile = Profile(name="work", connection_params={"username": "alice"})
    scutil_runner = _FakeRunner(_result())
    rasdial_runner = _FakeRunner(_result())

    ScutilBackend(runner=scutil_runner).connect(profile)
    RasdialBackend(runner=rasdial_runner).connect(profile)

    assert scutil_runner.invocations == [("scutil", "--nc", "start", "work", "--user", "alice")]
    assert rasdial_runner.invocations == [("rasdial", "work", "alice")]


def test_status_query_failure_is_unknown() -> None:
    backend = RasdialBackend(runner=_FakeRunner(_result(1, stderr="rasdial exploded")))

    report = backend.query_status("work")

    assert report.status is BackendStatus.UNKNOWN
    assert "exploded" in report.raw


def test_list_active_raises_on_failure() -> None:
    backend = NmcliBackend(runner=_FakeRunner(_result(8, stderr="NetworkManager is not running")))

    with pytest.raises(InvocationFailed):
        backend.list_active()


def test_run_command_maps_timeout_and_missing_tool(monkeypatch: pytest.MonkeyPatch) -> None:
    def _timeout(*args: object, **kwargs: object) -> None:
        raise subprocess.TimeoutExpired(cmd="nmcli", timeout=0.5)

    monkeypatch.setattr(backends_module.subprocess, "run", _timeout)
    with pytest.raises(BackendTimeout, match="timed out after 0.5s"):
        run_command(["nmcli", "connection", "up"], 0.5)

    def _missing(*args: object, **kwargs: object) -> None:
        raise FileNotFoundError("nmcli")

    monkeypatch.setattr(backends_module.subprocess, "run", _missing)
    with pytest.raises(InvocationFailed) as excinfo:
        run_command(["nmcli"], 1.0)
    assert excinfo.value.exit_code == 127


def test_run_command_tolerates_undecodable_output(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, object] = {}

    def _run(args: list[str], **kwargs: object) -> subprocess.CompletedProcess[str]:
        seen.update(kwargs)
        return subprocess.CompletedProcess(args, 0, stdout="Verbunden mit �\n", stderr=None)

    monkeypatch.setattr(backends_module.subprocess, "run", _run)
    result = run_command(["rasdial"], 1.0)

    assert seen["errors"] == "replace"
    assert seen["text"] is True
    assert result.stdout == "Verbunden mit �\n"
    assert result.stderr == ""


def test_run_command_maps_spawn_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def _broken(*args: object, **kwargs: object) -> None:
        raise ValueError("embedded null byte")

    monkeypatch.setattr(backends_module.subprocess, "run", _broken)
    with pytest.raises(InvocationFailed, match="embedded null byte") as excinfo:
        run_command(["nmcli", "bad\0name"], 1.0)
    assert excinfo.value.exit_code == 126

    def _denied(*args: object, **kwargs: object) -> None:
        raise PermissionError("permission denied")

    monkeypatch.setattr(backends_module.subprocess, "run", _denied)
    with pytest.raises(InvocationFailed, match="permission denied"):
        run_command(["scutil"], 1.0)


def test_demo_backend_settles_after_polls() -> None:
    backend = DemoBackend(settle_polls=2)

    backend.connect(Profile(name="work"))

    assert backend.query_status("work").status is BackendStatus.UNKNOWN
    assert backend.query_status("work").status is BackendStatus.UNKNOWN
    assert backend.query_status("work").status is BackendStatus.CONNECTED
    assert backend.list_active() == ("work",)

    backend.drop("work")
    assert backend.query_status("work").status is BackendStatus.DISCONNECTED
    backend.disconnect("work")
    assert backend.calls == [("connect", "work"), ("disconnect", "work")]


def test_demo_backend_failures() -> None:
    backend = DemoBackend(failures={"broken": "no route"})

    with pytest.raises(InvocationFailed, match="no route"):
        backend.connect(Profile(name="broken"))


def test_select_backend() -> None:
    assert isinstance(select_backend(platform="linux"), NmcliBackend)
    assert isinstance(select_backend(platform="darwin"), ScutilBackend)
    assert isinstance(select_backend(platform="win32"), RasdialBackend)
    assert isinstance(select_backend("demo"), DemoBackend)
    assert select_backend("scutil", timeout=2.0).timeout == 2.0
    with pytest.raises(UnsupportedPlatformError):
        select_backend(platform="freebsd13")
    with pytest.raises(UnsupportedPlatformError):
        select_backend("openvpn")
