"""App configuration loading helpers."""

from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Literal

import tomllib

from pydantic import BaseModel, Field, ValidationError

from .models import DEFAULT_CATEGORY, Profile, ProfileSource, SourceKind
from .profiles import ProfileStore

LOG = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "remipn"
CONFIG_FILE = Path(os.environ["REMIPN_CONFIG"]) if os.environ.get("REMIPN_CONFIG") else CONFIG_DIR / "config.toml"
IMPORT_DIR = CONFIG_DIR / "imports"

# connection_params keys that survive a save/load cycle
PROFILE_PARAMS = ("server", "port", "username", "protocol", "cert_path")


class SupervisorSettings(BaseModel):
    """Tunables for the connection supervisor and its backend."""

    backend: Literal["auto", "nmcli", "scutil", "rasdial", "demo"] = "auto"
    command_timeout: float = Field(default=5.0, gt=0)
    poll_interval: float = Field(default=1.0, ge=0)
    poll_attempts: int = Field(default=20, ge=1)
    poll_backoff: float = Field(default=1.5, ge=1.0)
    poll_max_interval: float = Field(default=5.0, ge=0)
    connect_retries: int = Field(default=2, ge=0)
    retry_delay: float = Field(default=2.0, ge=0)
    switch_requires_disconnect: bool = True
    queue_size: int = Field(default=16, ge=1)
    event_log_size: int = Field(default=100, ge=1)
    health_check_interval: float = Field(default=5.0, ge=0)
    auto_reconnect: bool = False
    reconnect_delay: float = Field(default=30.0, ge=0)
    log_level: Literal["debug", "info", "warning", "error"] = "info"


class ProfileConfig(BaseModel):
    """Profile entry stored in config.toml."""

    name: str
    category: str = DEFAULT_CATEGORY
    alias: str | None = None
    server: str | None = None
    port: str | None = None
    username: str | None = None
    protocol: str | None = None
    cert_path: str | None = None
    source: SourceKind = SourceKind.MANUAL
    origin: str | None = None
    last_used: datetime | None = None
    auto_connect: bool = False

    def to_profile(self) -> Profile:
        params = {key: getattr(self, key) for key in PROFILE_PARAMS if getattr(self, key)}
        return Profile(
            name=self.name,
            category=self.category or DEFAULT_CATEGORY,
            alias=self.alias,
            connection_params=params,
            source=ProfileSource(kind=self.source, origin=self.origin),
            last_used=self.last_used,
            auto_connect=self.auto_connect,
        )

    @classmethod
    def from_profile(cls, profile: Profile) -> ProfileConfig:
        params = {key: profile.connection_params.get(key) for key in PROFILE_PARAMS}
        return cls(
            name=profile.name,
            category=profile.category,
            alias=profile.alias,
            source=profile.source.kind,
            origin=profile.source.origin,
            last_used=profile.last_used,
            auto_connect=profile.auto_connect,
            **params,
        )


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    theme: str = "dark"
    sort_key: Literal["name", "category", "last_used"] = "name"
    settings: SupervisorSettings = Field(default_factory=SupervisorSettings)
    profiles: list[ProfileConfig] = Field(default_factory=list)

    def build_profiles(self) -> list[Profile]:
        return [entry.to_profile() for entry in self.profiles]

    def with_profiles(self, profiles: Iterable[Profile]) -> AppConfig:
        """Return a copy holding the given runtime profiles."""

        return self.model_copy(update={"profiles": [ProfileConfig.from_profile(p) for p in profiles]})

    def with_settings(self, **updates: object) -> AppConfig:
        """Return a copy with supervisor settings changes applied."""

        settings = self.settings.model_copy(update=updates)
        return self.model_copy(update={"settings": settings})

    def with_sort_key(self, sort_key: str) -> AppConfig:
        return self.model_copy(update={"sort_key": sort_key})


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    target = path or CONFIG_FILE
    try:
        data = _read_config_file(target)
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError) as exc:
        LOG.warning("Ignoring unreadable config %s: %s", target, exc)
        return AppConfig()

    try:
        settings = SupervisorSettings(**data.get("settings", {}))  # type: ignore[arg-type]
    except ValidationError as exc:
        LOG.warning("Invalid [settings] in %s, using defaults: %s", target, exc)
        settings = SupervisorSettings()

    profiles: list[ProfileConfig] = []
    for entry in data.get("profiles", []):  # type: ignore[union-attr]
        try:
            profiles.append(ProfileConfig(**entry))
        except ValidationError as exc:
            LOG.warning("Skipping invalid profile entry in %s: %s", target, exc)

    return AppConfig(
        theme=data.get("theme", AppConfig.model_fields["theme"].default),
        sort_key=data.get("sort_key", AppConfig.model_fields["sort_key"].default),
        settings=settings,
        profiles=profiles,
    )


def save_config(config: AppConfig, path: Path | None = None) -> None:
    """Persist configuration to disk."""

    target = path or CONFIG_FILE
    target.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [
        f"theme = {_quote(config.theme)}",
        f"sort_key = {_quote(config.sort_key)}",
        "",
        "[settings]",
    ]
    for key, value in config.settings.model_dump().items():
        lines.append(f"{key} = {_value(value)}")
    lines.append("")
    for profile in config.profiles:
        lines.append("[[profiles]]")
        lines.append(f"name = {_quote(profile.name)}")
        lines.append(f"category = {_quote(profile.category)}")
        if profile.alias:
            lines.append(f"alias = {_quote(profile.alias)}")
        for key in PROFILE_PARAMS:
            value = getattr(profile, key)
            if value:
                lines.append(f"{key} = {_quote(value)}")
        lines.append(f"source = {_quote(profile.source.value)}")
        if profile.origin:
            lines.append(f"origin = {_quote(profile.origin)}")
        if profile.last_used is not None:
            lines.append(f"last_used = {profile.last_used.isoformat()}")
        if profile.auto_connect:
            lines.append("auto_connect = true")
        lines.append("")
    target.write_text("\n".join(lines) + "\n")


def attach_persistence(store: ProfileStore, config: AppConfig, path: Path | None = None) -> Callable[[], None]:
    """Save the config after every store mutation; returns the unsubscribe handle."""

    current = config

    def _persist(profiles: tuple[Profile, ...]) -> None:
        nonlocal current
        current = current.with_profiles(profiles)
        save_config(current, path)
        LOG.debug("Saved %d profile(s)", len(profiles))

    return store.subscribe(_persist)


def _read_config_file(path: Path) -> dict[str, object]:
    with path.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    theme = raw.get("theme")
    if isinstance(theme, str):
        data["theme"] = theme
    sort_key = raw.get("sort_key")
    if sort_key in ("name", "category", "last_used"):
        data["sort_key"] = sort_key
    settings = raw.get("settings")
    if isinstance(settings, dict):
        data["settings"] = {
            key: value for key, value in settings.items() if key in SupervisorSettings.model_fields
        }
    profiles = raw.get("profiles")
    if isinstance(profiles, list):
        parsed_profiles: list[dict[str, object]] = []
        for profile in profiles:
            if not isinstance(profile, dict):
                continue
            parsed = {key: value for key, value in profile.items() if key in ProfileConfig.model_fields}
            # older files stored the gateway under its own key
            gateway = profile.get("gateway_address")
            if "server" not in parsed and isinstance(gateway, str):
                parsed["server"] = gateway
            port = parsed.get("port")
            if isinstance(port, int):
                parsed["port"] = str(port)
            if parsed.get("name"):
                parsed_profiles.append(parsed)
        data["profiles"] = parsed_profiles
    return data


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


def _value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    return _quote(str(value))


__all__ = [
    "AppConfig",
    "CONFIG_FILE",
    "IMPORT_DIR",
    "ProfileConfig",
    "SupervisorSettings",
    "attach_persistence",
    "load_config",
    "save_config",
]
