"""Command line front end."""

from __future__ import annotations

import argparse
import logging
import os
from enum import IntEnum
from pathlib import Path
from typing import Iterable

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table
from rich.theme import Theme

from .config import AppConfig, attach_persistence, load_config
from .errors import (
    BackendError,
    BackendTimeout,
    DuplicateProfileError,
    InvalidProfileError,
    ProfileNotFoundError,
    RemipnError,
    UnsupportedPlatformError,
)
from .importers import ProfileImportError, load_file, scan_directory
from .models import DEFAULT_CATEGORY, ConnectionState, FailureKind, Phase, Profile
from .profiles import ProfilePatch, SortKey
from .supervisor import ConnectionSupervisor, build_supervisor

LOG = logging.getLogger(__name__)

theme = Theme(
    {
        "info": "dim cyan",
        "warning": "yellow",
        "error": "bold red",
        "success": "bold green",
        "heading": "bold cyan",
    }
)

console = Console(theme=theme)
error_console = Console(theme=theme, stderr=True)


class ExitCode(IntEnum):
    """Process exit codes."""

    SUCCESS = 0
    GENERAL_ERROR = 1
    INVALID_INPUT = 2
    NOT_FOUND = 3
    BACKEND_ERROR = 4
    TIMEOUT = 5
    DUPLICATE = 6


_TIMEOUT_FAILURES = frozenset({FailureKind.TIMEOUT, FailureKind.NOT_CONFIRMED, FailureKind.NOT_DISCONNECTED})


def exit_code_for_error(exc: BaseException) -> ExitCode:
    if isinstance(exc, ProfileNotFoundError):
        return ExitCode.NOT_FOUND
    if isinstance(exc, DuplicateProfileError):
        return ExitCode.DUPLICATE
    if isinstance(exc, InvalidProfileError):
        return ExitCode.INVALID_INPUT
    if isinstance(exc, BackendTimeout):
        return ExitCode.TIMEOUT
    if isinstance(exc, (BackendError, UnsupportedPlatformError)):
        return ExitCode.BACKEND_ERROR
    return ExitCode.GENERAL_ERROR


def exit_code_for_state(state: ConnectionState) -> ExitCode:
    if state.phase is not Phase.FAILED:
        return ExitCode.SUCCESS
    if state.failure in _TIMEOUT_FAILURES:
        return ExitCode.TIMEOUT
    return ExitCode.BACKEND_ERROR


def print_error(message: str) -> None:
    """Print the one-line failure reason on stderr."""

    error_console.print(f"[error]Error:[/error] {escape(message)}", highlight=False)


def print_success(message: str) -> None:
    console.print(f"[success]✓[/success] {escape(message)}", highlight=False)


def configure_logging(level: str) -> None:
    """Route log records through rich on stderr."""

    handler = RichHandler(console=error_console, rich_tracebacks=False, show_path=False, markup=False)
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )


class CliContext:
    """Config plus the wired supervisor for one command invocation."""

    def __init__(self, config: AppConfig, config_path: Path | None, *, demo: bool) -> None:
        self.config = config
        self.config_path = config_path
        self.supervisor: ConnectionSupervisor = build_supervisor(config, demo=demo)
        self._unsubscribe = attach_persistence(self.supervisor.store, config, config_path)

    def close(self) -> None:
        self._unsubscribe()
        self.supervisor.shutdown()


def build_parser() -> argparse.ArgumentParser:
    from . import __version__

    parser = argparse.ArgumentParser(
        prog="remipn",
        description="Manage VPN profiles and keep at most one connection active. Run without a command for the TUI.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--demo", action="store_true", help="Use the in-memory demo backend")
    parser.add_argument(
        "--log-level",
        choices=("debug", "info", "warning", "error"),
        help="Log verbosity (or set REMIPN_LOG)",
    )
    parser.add_argument("--config", type=Path, help="Path to config.toml (or set REMIPN_CONFIG)")
    subparsers = parser.add_subparsers(dest="command")

    connect = subparsers.add_parser("connect", aliases=["c"], help="Connect to a profile")
    connect.add_argument("name", help="Profile name or alias")
    connect.set_defaults(func=run_connect)

    disconnect = subparsers.add_parser("disconnect", aliases=["d"], help="Disconnect the active VPN")
    disconnect.add_argument("name", nargs="?", help="Only disconnect if this profile is active")
    disconnect.set_defaults(func=run_disconnect)

    status = subparsers.add_parser("status", aliases=["s"], help="Show the connection status")
    status.set_defaults(func=run_status)

    list_parser = subparsers.add_parser("list", aliases=["l"], help="List profiles")
    _add_sort_arguments(list_parser)
    list_parser.set_defaults(func=run_list, query="")

    search = subparsers.add_parser("search", help="Search profiles by name, alias or category")
    search.add_argument("query")
    _add_sort_arguments(search)
    search.set_defaults(func=run_list)

    add = subparsers.add_parser("add", help="Add a profile")
    add.add_argument("name")
    _add_profile_arguments(add)
    add.set_defaults(func=run_add)

    edit = subparsers.add_parser("edit", help="Edit a profile")
    edit.add_argument("name", help="Profile name or alias")
    _add_profile_arguments(edit)
    edit.set_defaults(func=run_edit)

    alias = subparsers.add_parser("alias", help="Set or clear a profile alias")
    alias.add_argument("name", help="Profile name or alias")
    alias.add_argument("alias", nargs="?", default="", help="New alias; omit to clear")
    alias.set_defaults(func=run_alias)

    remove = subparsers.add_parser("remove", aliases=["rm"], help="Remove a profile (disconnects it first)")
    remove.add_argument("name", help="Profile name or alias")
    remove.set_defaults(func=run_remove)

    import_parser = subparsers.add_parser("import", help="Import profiles from XML/OVPN files")
    import_parser.add_argument("paths", nargs="*", type=Path, help="Files to import (default: the imports folder)")
    import_parser.set_defaults(func=run_import)

    return parser


def _add_sort_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--sort", choices=[key.value for key in SortKey], default=SortKey.NAME.value)
    parser.add_argument("--desc", action="store_true", help="Reverse the order")


def _add_profile_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--server")
    parser.add_argument("--category")
    parser.add_argument("--alias")
    parser.add_argument("--username")
    parser.add_argument("--protocol")
    parser.add_argument("--cert", dest="cert_path")
    parser.add_argument("--auto-connect", action=argparse.BooleanOptionalAction, default=None)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config_path: Path | None = args.config
    config = load_config(config_path)
    level = args.log_level or os.environ.get("REMIPN_LOG") or config.settings.log_level

    if not hasattr(args, "func"):
        from .app import main as run_tui

        run_tui(config_path=config_path, demo=args.demo, log_level=level)
        return ExitCode.SUCCESS

    configure_logging(level)
    try:
        context = CliContext(config, config_path, demo=args.demo)
    except UnsupportedPlatformError as exc:
        print_error(str(exc))
        return ExitCode.BACKEND_ERROR
    try:
        return int(args.func(args, context))
    except KeyboardInterrupt:
        return 130
    except RemipnError as exc:
        print_error(str(exc))
        return exit_code_for_error(exc)
    finally:
        context.close()


def run_connect(args: argparse.Namespace, context: CliContext) -> int:
    supervisor = context.supervisor
    profile = supervisor.resolve(args.name)
    supervisor.start(reconcile=True)
    state = supervisor.connect(profile.name)
    return _report_state(state)


def run_disconnect(args: argparse.Namespace, context: CliContext) -> int:
    supervisor = context.supervisor
    supervisor.start(reconcile=True)
    before = supervisor.state
    state = supervisor.disconnect(args.name)
    if state.phase is Phase.FAILED:
        return _report_state(state)
    if before.phase is not Phase.IDLE and state.phase is Phase.IDLE:
        print_success(f"Disconnected from {before.profile_name}.")
    else:
        print_success("Nothing to disconnect.")
    return ExitCode.SUCCESS


def run_status(args: argparse.Namespace, context: CliContext) -> int:
    supervisor = context.supervisor
    supervisor.start(reconcile=True)
    state = supervisor.state
    if state.phase is Phase.CONNECTED and state.profile_name:
        since = state.since.astimezone().strftime("%Y-%m-%d %H:%M:%S") if state.since else "unknown"
        console.print(f"[success]Connected[/success] to [heading]{state.profile_name}[/heading] since {since}")
        if state.address:
            console.print(f"IP address: {state.address}")
    elif state.phase is Phase.FAILED:
        console.print(f"[error]Failed[/error] {state.profile_name}: {state.reason}")
    else:
        console.print("[info]Disconnected[/info]")
    return ExitCode.SUCCESS


def run_list(args: argparse.Namespace, context: CliContext) -> int:
    supervisor = context.supervisor
    supervisor.start(reconcile=True)
    profiles = list(supervisor.search(args.query, SortKey(args.sort), descending=args.desc))
    if not profiles:
        console.print("[info]No profiles found.[/info]")
        return ExitCode.SUCCESS
    console.print(_profile_table(profiles, supervisor.state))
    return ExitCode.SUCCESS


def run_add(args: argparse.Namespace, context: CliContext) -> int:
    if not args.name.strip():
        raise InvalidProfileError("Profile name cannot be empty.")
    profile = Profile(
        name=args.name.strip(),
        category=args.category or DEFAULT_CATEGORY,
        alias=args.alias,
        connection_params=_params_from_args(args),
        auto_connect=bool(args.auto_connect),
    )
    context.supervisor.add(profile)
    print_success(f"Added profile {profile.name}.")
    return ExitCode.SUCCESS


def run_edit(args: argparse.Namespace, context: CliContext) -> int:
    supervisor = context.supervisor
    current = supervisor.resolve(args.name)
    changes = _params_from_args(args)
    params = {**current.connection_params, **changes} if changes else None
    patch = ProfilePatch(
        category=args.category,
        alias=args.alias,
        connection_params=params,
        auto_connect=args.auto_connect,
    )
    if patch == ProfilePatch():
        raise InvalidProfileError("Nothing to change; pass at least one option.")
    supervisor.update(current.name, patch)
    print_success(f"Updated profile {current.name}.")
    return ExitCode.SUCCESS


def run_alias(args: argparse.Namespace, context: CliContext) -> int:
    supervisor = context.supervisor
    profile = supervisor.update(args.name, ProfilePatch(alias=args.alias))
    if profile.alias:
        print_success(f"{profile.name} is now reachable as '{profile.alias}'.")
    else:
        print_success(f"Cleared the alias of {profile.name}.")
    return ExitCode.SUCCESS


def run_remove(args: argparse.Namespace, context: CliContext) -> int:
    supervisor = context.supervisor
    supervisor.start(reconcile=True)
    profile = supervisor.remove_profile(args.name)
    print_success(f"Removed profile {profile.name}.")
    return ExitCode.SUCCESS


def run_import(args: argparse.Namespace, context: CliContext) -> int:
    candidates, errors = _collect_candidates(args.paths)
    for error in errors:
        print_error(str(error))
    outcomes = context.supervisor.store.import_many(candidates)
    accepted = [outcome for outcome in outcomes if outcome.accepted]
    rejected = [outcome for outcome in outcomes if not outcome.accepted]
    for outcome in accepted:
        print_success(f"Imported {outcome.profile.name}.")
    for outcome in rejected:
        console.print(f"[warning]Skipped[/warning] {outcome.profile.name}: {outcome.reason}", highlight=False)
    console.print(f"{len(accepted)} imported, {len(rejected)} skipped, {len(errors)} unreadable.")
    if accepted or not (errors or rejected):
        return ExitCode.SUCCESS
    if errors:
        return ExitCode.INVALID_INPUT
    return ExitCode.DUPLICATE


def _collect_candidates(paths: Iterable[Path]) -> tuple[list[Profile], list[ProfileImportError]]:
    paths = list(paths)
    if not paths:
        return scan_directory()
    candidates: list[Profile] = []
    errors: list[ProfileImportError] = []
    for path in paths:
        try:
            candidates.extend(load_file(path))
        except ProfileImportError as exc:
            errors.append(exc)
    return candidates, errors


def _params_from_args(args: argparse.Namespace) -> dict[str, str]:
    params: dict[str, str] = {}
    for key in ("server", "username", "protocol", "cert_path"):
        value = getattr(args, key, None)
        if value:
            params[key] = value
    return params


def _profile_table(profiles: Iterable[Profile], state: ConnectionState) -> Table:
    table = Table(header_style="heading")
    table.add_column("Name", style="bold")
    table.add_column("Alias")
    table.add_column("Category")
    table.add_column("Server")
    table.add_column("Protocol")
    table.add_column("Status")
    table.add_column("IP address")
    table.add_column("Last used", style="info")
    for profile in profiles:
        status = state.status_for(profile.name)
        style = {"Connected": "success", "Error": "error", "Disconnected": ""}.get(status, "warning")
        table.add_row(
            profile.name,
            profile.alias or "",
            profile.category,
            profile.server or "",
            profile.protocol or "",
            f"[{style}]{status}[/{style}]" if style else status,
            state.address_for(profile.name) or "",
            profile.last_used.astimezone().strftime("%Y-%m-%d %H:%M") if profile.last_used else "never",
        )
    return table


def _report_state(state: ConnectionState) -> int:
    code = exit_code_for_state(state)
    if code is ExitCode.SUCCESS:
        print_success(f"Connected to {state.profile_name}.")
    else:
        print_error(f"{state.profile_name}: {state.reason}")
    return code


__all__ = [
    "CliContext",
    "ExitCode",
    "build_parser",
    "exit_code_for_error",
    "exit_code_for_state",
    "main",
]
