"""Platform backends that drive the OS-native VPN tooling."""

from __future__ import annotations

import logging
import re
import subprocess
import sys
import threading
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence, runtime_checkable

from .errors import BackendError, BackendTimeout, InvocationFailed, UnsupportedPlatformError
from .models import BackendStatus, Profile, StatusReport

LOG = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


@runtime_checkable
class VpnBackend(Protocol):
    """Protocol implemented by platform backends."""

    name: str

    def connect(self, profile: Profile) -> None:
        """Ask the OS tool to bring the profile up; does not wait for the tunnel."""

    def disconnect(self, profile_name: str) -> None:
        """Bring the profile down; succeeds when it is already down."""

    def query_status(self, profile_name: str) -> StatusReport:
        """Return the OS-level status for the profile."""

    def list_active(self) -> tuple[str, ...]:
        """Names of the VPN services the OS currently reports as up."""


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Captured output of one tool invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


CommandRunner = Callable[[Sequence[str], float], CommandResult]


def run_command(args: Sequence[str], timeout: float) -> CommandResult:
    """Run a tool with a hard timeout; the child is killed when it expires."""

    command = " ".join(args)
    LOG.debug("Running %s", command)
    try:
        completed = subprocess.run(
            list(args),
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise BackendTimeout(command, timeout) from exc
    except FileNotFoundError as exc:
        raise InvocationFailed(127, f"{args[0]}: command not found") from exc
    except (OSError, ValueError) as exc:
        raise InvocationFailed(126, str(exc)) from exc
    return CommandResult(
        args=tuple(args),
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )


class SubprocessBackend:
    """Shared plumbing for backends that shell out to a platform tool."""

    name = "subprocess"

    def __init__(self, *, timeout: float = DEFAULT_TIMEOUT, runner: CommandRunner | None = None) -> None:
        self._timeout = timeout
        self._runner = runner or run_command

    @property
    def timeout(self) -> float:
        return self._timeout

    def connect(self, profile: Profile) -> None:
        result = self._run(self.connect_command(profile))
        if not result.ok:
            raise self.connect_error(profile, result)

    def disconnect(self, profile_name: str) -> None:
        result = self._run(self.disconnect_command(profile_name))
        if result.ok or self.is_not_active_error(result):
            return
        # Tools disagree on whether stopping an inactive service is an error.
        report = self.query_status(profile_name)
        if report.status is BackendStatus.DISCONNECTED:
            return
        raise InvocationFailed(result.returncode, result.stderr or result.stdout)

    def query_status(self, profile_name: str) -> StatusReport:
        result = self._run(self.status_command(profile_name))
        if not result.ok:
            return StatusReport(BackendStatus.UNKNOWN, result.output)
        return self.parse_status(result.stdout, profile_name)

    def list_active(self) -> tuple[str, ...]:
        result = self._run(self.list_command())
        if not result.ok:
            raise InvocationFailed(result.returncode, result.stderr or result.stdout)
        return self.parse_active(result.stdout)

    def connect_command(self, profile: Profile) -> list[str]:
        raise NotImplementedError

    def disconnect_command(self, profile_name: str) -> list[str]:
        raise NotImplementedError

    def status_command(self, profile_name: str) -> list[str]:
        raise NotImplementedError

    def list_command(self) -> list[str]:
        raise NotImplementedError

    def parse_status(self, output: str, profile_name: str) -> StatusReport:
        raise NotImplementedError

    def parse_active(self, output: str) -> tuple[str, ...]:
        raise NotImplementedError

    def connect_error(self, profile: Profile, result: CommandResult) -> BackendError:
        return InvocationFailed(result.returncode, result.stderr or result.stdout)

    def is_not_active_error(self, result: CommandResult) -> bool:
        return False

    def _run(self, args: Sequence[str]) -> CommandResult:
        return self._runner(args, self._timeout)


class NmcliBackend(SubprocessBackend):
    """NetworkManager backend (Linux)."""

    name = "nmcli"

    def connect_command(self, profile: Profile) -> list[str]:
        # return as soon as activation has been requested
        return ["nmcli", "--wait", "0", "connection", "up", "id", profile.name]

    def disconnect_command(self, profile_name: str) -> list[str]:
        return ["nmcli", "connection", "down", "id", profile_name]

    def status_command(self, profile_name: str) -> list[str]:
        return ["nmcli", "-t", "-f", "NAME,STATE,IP4.ADDRESS", "connection", "show", "--active"]

    def list_command(self) -> list[str]:
        return ["nmcli", "-t", "-f", "NAME,TYPE,STATE", "connection", "show", "--active"]

    def parse_status(self, output: str, profile_name: str) -> StatusReport:
        return parse_nmcli_status(output, profile_name)

    def parse_active(self, output: str) -> tuple[str, ...]:
        return parse_nmcli_active(output)

    def is_not_active_error(self, result: CommandResult) -> bool:
        # nmcli exits with 10 when the connection is not active.
        return result.returncode == 10 or "not an active connection" in result.output.lower()


class ScutilBackend(SubprocessBackend):
    """System configuration daemon backend (macOS)."""

    name = "scutil"

    def connect_command(self, profile: Profile) -> list[str]:
        args = ["scutil", "--nc", "start", profile.name]
        if profile.username:
            args += ["--user", profile.username]
        return args

    def disconnect_command(self, profile_name: str) -> list[str]:
        return ["scutil", "--nc", "stop", profile_name]

    def status_command(self, profile_name: str) -> list[str]:
        return ["scutil", "--nc", "status", profile_name]

    def list_command(self) -> list[str]:
        return ["scutil", "--nc", "list"]

    def parse_status(self, output: str, profile_name: str) -> StatusReport:
        return parse_scutil_status(output)

    def parse_active(self, output: str) -> tuple[str, ...]:
        return parse_scutil_list(output)

    def connect_error(self, profile: Profile, result: CommandResult) -> BackendError:
        combined = result.output
        lowered = combined.lower()
        if "no service" in lowered or "no such service" in lowered:
            return InvocationFailed(
                result.returncode,
                result.stderr,
                message=(
                    f"No system VPN service found for '{profile.name}'. Import the profile into the "
                    "Azure VPN Client (or System Settings) under the same name and try again."
                ),
            )
        if "authentication" in lowered or "login" in lowered:
            return InvocationFailed(
                result.returncode,
                result.stderr,
                message=(
                    "VPN authentication required. Check system pop-ups or run: "
                    f"scutil --nc start '{profile.name}'"
                ),
            )
        return super().connect_error(profile, result)


class RasdialBackend(SubprocessBackend):
    """Remote access dial-up backend (Windows)."""

    name = "rasdial"

    def connect_command(self, profile: Profile) -> list[str]:
        args = ["rasdial", profile.name]
        if profile.username:
            args.append(profile.username)
        return args

    def disconnect_command(self, profile_name: str) -> list[str]:
        return ["rasdial", profile_name, "/disconnect"]

    def status_command(self, profile_name: str) -> list[str]:
        return ["rasdial"]

    def list_command(self) -> list[str]:
        return ["rasdial"]

    def parse_status(self, output: str, profile_name: str) -> StatusReport:
        return parse_rasdial_status(output, profile_name)

    def parse_active(self, output: str) -> tuple[str, ...]:
        return parse_rasdial_active(output) or ()


def _split_nmcli_fields(line: str) -> list[str]:
    """Split terse nmcli output, honouring ``\\:`` escapes inside names."""

    fields = re.split(r"(?<!\\):", line)
    return [field.replace("\\:", ":").replace("\\\\", "\\") for field in fields]


def parse_nmcli_status(output: str, profile_name: str) -> StatusReport:
    """Map ``nmcli -t -f NAME,STATE,IP4.ADDRESS connection show --active`` output."""

    parsed_any = False
    for line in output.splitlines():
        if not line.strip():
            continue
        fields = _split_nmcli_fields(line)
        if len(fields) < 2:
            continue
        parsed_any = True
        name, state = fields[0], fields[1].strip().lower()
        if name != profile_name:
            continue
        if state == "activated":
            address = fields[2].split("|", 1)[0].split("/", 1)[0].strip() if len(fields) > 2 else ""
            return StatusReport(BackendStatus.CONNECTED, line, address or None)
        # activating / deactivating are transitional and not conclusive.
        return StatusReport(BackendStatus.UNKNOWN, line)
    if output.strip() and not parsed_any:
        return StatusReport(BackendStatus.UNKNOWN, output)
    return StatusReport(BackendStatus.DISCONNECTED, output)


def parse_nmcli_active(output: str) -> tuple[str, ...]:
    names: list[str] = []
    for line in output.splitlines():
        fields = _split_nmcli_fields(line)
        if len(fields) < 3:
            continue
        name, kind, state = fields[0], fields[1].lower(), fields[2].lower()
        if ("vpn" in kind or "wireguard" in kind) and state == "activated":
            names.append(name)
    return tuple(names)


_SCUTIL_ADDRESS = re.compile(
    r"IPv4\s*:\s*<dictionary>\s*\{.*?Addresses\s*:\s*<array>\s*\{\s*0\s*:\s*(?P<address>[0-9.]+)",
    re.DOTALL,
)


def parse_scutil_status(output: str) -> StatusReport:
    """Map the first line of ``scutil --nc status <name>``."""

    lines = output.strip().splitlines()
    first = lines[0].strip() if lines else ""
    if first == "Connected":
        match = _SCUTIL_ADDRESS.search(output)
        return StatusReport(BackendStatus.CONNECTED, output, match.group("address") if match else None)
    if first == "Disconnected" or first.startswith("No service"):
        return StatusReport(BackendStatus.DISCONNECTED, output)
    return StatusReport(BackendStatus.UNKNOWN, output)


_SCUTIL_LIST_LINE = re.compile(r"^\*?\s*\((?P<state>[^)]+)\).*?\"(?P<name>[^\"]+)\"")


def parse_scutil_list(output: str) -> tuple[str, ...]:
    names: list[str] = []
    for line in output.splitlines():
        match = _SCUTIL_LIST_LINE.search(line.strip())
        if match and match.group("state").strip() == "Connected":
            names.append(match.group("name"))
    return tuple(names)


def parse_rasdial_active(output: str) -> tuple[str, ...] | None:
    """Connection names from bare ``rasdial`` output, ``None`` when unparsable."""

    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if any(line.lower().startswith("no connections") for line in lines):
        return ()
    if not lines or not lines[0].lower().startswith("connected to"):
        return None
    names: list[str] = []
    for line in lines[1:]:
        if line.lower().startswith("command completed"):
            return tuple(names)
        names.append(line)
    return None


def parse_rasdial_status(output: str, profile_name: str) -> StatusReport:
    names = parse_rasdial_active(output)
    if names is None:
        return StatusReport(BackendStatus.UNKNOWN, output)
    if any(name.lower() == profile_name.lower() for name in names):
        return StatusReport(BackendStatus.CONNECTED, output)
    return StatusReport(BackendStatus.DISCONNECTED, output)


DEMO_ADDRESS = "10.8.0.2"


class DemoBackend:
    """In-memory backend that simulates a VPN subsystem.

    A connected profile reports ``UNKNOWN`` for ``settle_polls`` status
    queries before switching to ``CONNECTED``; ``drop`` simulates an
    external disconnect.
    """

    name = "demo"

    def __init__(
        self,
        *,
        settle_polls: int = 1,
        failures: dict[str, str] | None = None,
        active: Sequence[str] = (),
    ) -> None:
        self._settle_polls = settle_polls
        self._failures = dict(failures or {})
        self._lock = threading.Lock()
        self._active: set[str] = set(active)
        self._pending: dict[str, int] = {}
        self.calls: list[tuple[str, str]] = []
        self.status_queries: list[str] = []

    def connect(self, profile: Profile) -> None:
        with self._lock:
            self.calls.append(("connect", profile.name))
            reason = self._failures.get(profile.name)
            if reason is not None:
                raise InvocationFailed(1, reason)
            if profile.name in self._active:
                return
            if self._settle_polls <= 0:
                self._active.add(profile.name)
            else:
                self._pending[profile.name] = self._settle_polls

    def disconnect(self, profile_name: str) -> None:
        with self._lock:
            self.calls.append(("disconnect", profile_name))
            self._active.discard(profile_name)
            self._pending.pop(profile_name, None)

    def query_status(self, profile_name: str) -> StatusReport:
        with self._lock:
            self.status_queries.append(profile_name)
            if profile_name in self._active:
                return StatusReport(BackendStatus.CONNECTED, f"{profile_name}: connected", DEMO_ADDRESS)
            remaining = self._pending.get(profile_name)
            if remaining is None:
                return StatusReport(BackendStatus.DISCONNECTED, f"{profile_name}: disconnected")
            if remaining <= 1:
                self._pending.pop(profile_name)
                self._active.add(profile_name)
            else:
                self._pending[profile_name] = remaining - 1
            return StatusReport(BackendStatus.UNKNOWN, f"{profile_name}: negotiating")

    def list_active(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._active))

    def drop(self, profile_name: str) -> None:
        """Simulate the OS tearing the tunnel down (testing helper)."""

        with self._lock:
            self._active.discard(profile_name)
            self._pending.pop(profile_name, None)

    def calls_for(self, action: str) -> list[str]:
        return [name for kind, name in self.calls if kind == action]


_PLATFORM_BACKENDS: dict[str, type[SubprocessBackend]] = {
    "linux": NmcliBackend,
    "darwin": ScutilBackend,
    "win32": RasdialBackend,
}

_NAMED_BACKENDS: dict[str, type[SubprocessBackend]] = {
    NmcliBackend.name: NmcliBackend,
    ScutilBackend.name: ScutilBackend,
    RasdialBackend.name: RasdialBackend,
}


def select_backend(
    kind: str = "auto",
    *,
    timeout: float = DEFAULT_TIMEOUT,
    platform: str | None = None,
) -> VpnBackend:
    """Pick the single backend used for the whole session."""

    if kind == DemoBackend.name:
        return DemoBackend()
    if kind != "auto":
        try:
            return _NAMED_BACKENDS[kind](timeout=timeout)
        except KeyError:
            raise UnsupportedPlatformError(f"Unknown backend '{kind}'.") from None
    host = platform or sys.platform
    for prefix, backend_cls in _PLATFORM_BACKENDS.items():
        if host.startswith(prefix):
            LOG.info("Using %s backend for platform %s", backend_cls.name, host)
            return backend_cls(timeout=timeout)
    raise UnsupportedPlatformError(f"No VPN backend available for platform '{host}'.")


__all__ = [
    "CommandResult",
    "CommandRunner",
    "DEFAULT_TIMEOUT",
    "DEMO_ADDRESS",
    "DemoBackend",
    "NmcliBackend",
    "RasdialBackend",
    "ScutilBackend",
    "SubprocessBackend",
    "VpnBackend",
    "parse_nmcli_active",
    "parse_nmcli_status",
    "parse_rasdial_active",
    "parse_rasdial_status",
    "parse_scutil_list",
    "parse_scutil_status",
    "run_command",
    "select_backend",
]
