"""Parse VPN client exports (Azure/VpnSettings XML, OpenVPN) into profiles."""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ElementTree
from pathlib import Path

from .config import IMPORT_DIR
from .errors import InvalidProfileError
from .models import DEFAULT_CATEGORY, Profile, ProfileSource

LOG = logging.getLogger(__name__)

IMPORT_SUFFIXES = (".xml", ".azvpn", ".ovpn")
DEFAULT_PROTOCOL = "IKEv2"

_NAME_TAGS = ("Name", "name")
_SERVER_TAGS = ("Server", "fqdn", "displayname")
_PROTOCOL_TAGS = ("Protocol", "transportprotocol")
_PROFILE_TAGS = ("VpnProfile", "AzVpnProfile")

_SECTION_RE = re.compile(
    r"<(?:\w+:)?(?P<tag>AzVpnProfile|VpnProfile)\b[^>]*>.*?</(?:\w+:)?(?P=tag)>",
    re.DOTALL,
)
_NAME_RE = re.compile(r"<(?:\w+:)?(Name|name)>(?P<value>.*?)</(?:\w+:)?\1>", re.DOTALL)
_SERVER_RE = re.compile(r"<(?:\w+:)?(Server|fqdn|displayname)>(?P<value>.*?)</(?:\w+:)?\1>", re.DOTALL)
_PROTOCOL_RE = re.compile(r"<(?:\w+:)?(Protocol|transportprotocol)>(?P<value>.*?)</(?:\w+:)?\1>", re.DOTALL)


class ProfileImportError(InvalidProfileError):
    """Raised when an import file contains no usable profile."""

    def __init__(self, source: str, detail: str) -> None:
        super().__init__(f"Cannot import {source}: {detail}")
        self.source = source


def parse_profiles(text: str, source_path: str | Path) -> list[Profile]:
    """Return candidate profiles found in ``text``; raises ``ProfileImportError``."""

    source = str(source_path)
    if text.lstrip().startswith("<"):
        profiles = _parse_xml(text, source)
    elif str(source_path).lower().endswith(".ovpn"):
        profiles = _parse_ovpn(text, source)
    else:
        raise ProfileImportError(source, "unsupported file format")
    if not profiles:
        raise ProfileImportError(source, "no VPN profile found")
    return profiles


def load_file(path: Path) -> list[Profile]:
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise ProfileImportError(str(path), exc.strerror or str(exc)) from exc
    return parse_profiles(text, path)


def scan_directory(directory: Path | None = None) -> tuple[list[Profile], list[ProfileImportError]]:
    """Parse every supported file in ``directory``; failures are collected, not raised."""

    target = directory or IMPORT_DIR
    profiles: list[Profile] = []
    errors: list[ProfileImportError] = []
    if not target.is_dir():
        LOG.debug("Import directory %s does not exist", target)
        return profiles, errors
    for path in sorted(target.iterdir()):
        if not path.is_file() or path.suffix.lower() not in IMPORT_SUFFIXES:
            continue
        try:
            profiles.extend(load_file(path))
        except ProfileImportError as exc:
            LOG.warning("%s", exc)
            errors.append(exc)
    return profiles, errors


def _parse_xml(text: str, source: str) -> list[Profile]:
    try:
        root = ElementTree.fromstring(text)
    except ElementTree.ParseError as exc:
        LOG.debug("Falling back to pattern scan for %s: %s", source, exc)
        return _scan_xml(text, source)

    sections = [element for element in root.iter() if _local(element.tag) in _PROFILE_TAGS]
    # AzVpnProfile exports usually hold the settings directly under the root
    if _local(root.tag) == "AzVpnProfile" and len(sections) > 1:
        sections = sections[1:]
    profiles: list[Profile] = []
    for section in sections:
        name = _first_text(section, _NAME_TAGS)
        server = _first_text(section, _SERVER_TAGS)
        if not name or not server:
            continue
        protocol = _first_text(section, _PROTOCOL_TAGS) or DEFAULT_PROTOCOL
        profiles.append(_build(name, server, protocol, source))
    return profiles or _scan_xml(text, source)


def _scan_xml(text: str, source: str) -> list[Profile]:
    profiles: list[Profile] = []
    for match in _SECTION_RE.finditer(text):
        section = match.group(0)
        name = _NAME_RE.search(section)
        server = _SERVER_RE.search(section)
        if name is None or server is None:
            continue
        protocol = _PROTOCOL_RE.search(section)
        profiles.append(
            _build(
                name.group("value").strip(),
                server.group("value").strip(),
                protocol.group("value").strip() if protocol else DEFAULT_PROTOCOL,
                source,
            )
        )
    return profiles


def _parse_ovpn(text: str, source: str) -> list[Profile]:
    server: str | None = None
    port: str | None = None
    proto: str | None = None
    for raw in text.splitlines():
        line = raw.split("#", 1)[0].split(";", 1)[0].strip()
        if not line:
            continue
        parts = line.split()
        if parts[0] == "remote" and len(parts) > 1 and server is None:
            server = parts[1]
            if len(parts) > 2:
                port = parts[2]
            if len(parts) > 3:
                proto = parts[3]
        elif parts[0] == "proto" and len(parts) > 1 and proto is None:
            proto = parts[1]
    if server is None:
        return []
    protocol = f"OpenVPN/{proto.upper()}" if proto else "OpenVPN"
    profile = _build(Path(source).stem, server, protocol, source)
    if port:
        profile = profile.with_changes(connection_params={**profile.connection_params, "port": port})
    return [profile]


def _build(name: str, server: str, protocol: str, source: str) -> Profile:
    return Profile(
        name=name,
        category=DEFAULT_CATEGORY,
        connection_params={"server": server, "protocol": protocol},
        source=ProfileSource.imported(source),
    )


def _local(tag: object) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit("}", 1)[-1].rsplit(":", 1)[-1]


def _first_text(element: ElementTree.Element, tags: tuple[str, ...]) -> str | None:
    for tag in tags:
        for child in element.iter():
            if child is not element and _local(child.tag) == tag and child.text and child.text.strip():
                return child.text.strip()
    return None


__all__ = [
    "IMPORT_DIR",
    "IMPORT_SUFFIXES",
    "ProfileImportError",
    "load_file",
    "parse_profiles",
    "scan_directory",
]
