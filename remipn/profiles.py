"""In-memory profile registry with uniqueness rules and search."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Iterator, Mapping

from .errors import (
    DuplicateAliasError,
    DuplicateNameError,
    DuplicateProfileError,
    InvalidProfileError,
    ProfileNotFoundError,
)
from .models import Profile

LOG = logging.getLogger(__name__)

StoreListener = Callable[[tuple[Profile, ...]], None]


class SortKey(str, Enum):
    """Orderings offered by ``ProfileStore.find``."""

    NAME = "name"
    CATEGORY = "category"
    LAST_USED = "last_used"

    def next(self) -> SortKey:
        members = list(SortKey)
        return members[(members.index(self) + 1) % len(members)]


@dataclass(frozen=True, slots=True)
class ProfilePatch:
    """Partial update for a profile; ``None`` leaves a field untouched.

    ``alias=""`` clears the alias.
    """

    category: str | None = None
    alias: str | None = None
    connection_params: Mapping[str, str] | None = None
    auto_connect: bool | None = None


@dataclass(frozen=True, slots=True)
class ImportOutcome:
    """Per-candidate result of ``ProfileStore.import_many``."""

    profile: Profile
    accepted: bool
    reason: str | None = None


class ProfileQuery:
    """Lazy, restartable view over the store; every iteration re-reads it."""

    def __init__(self, store: ProfileStore, query: str, sort: SortKey, descending: bool) -> None:
        self._store = store
        self.query = query
        self.sort = sort
        self.descending = descending

    def __iter__(self) -> Iterator[Profile]:
        needle = self.query.strip().casefold()
        matches = [profile for profile in self._store.profiles if _matches(profile, needle)]
        matches.sort(key=lambda profile: profile.name.casefold())
        if self.sort is SortKey.CATEGORY:
            matches.sort(key=lambda profile: profile.category.casefold(), reverse=self.descending)
        elif self.sort is SortKey.LAST_USED:
            used = [profile for profile in matches if profile.last_used is not None]
            unused = [profile for profile in matches if profile.last_used is None]
            used.sort(key=lambda profile: profile.last_used, reverse=not self.descending)
            matches = used + unused
        elif self.descending:
            matches.reverse()
        yield from matches


class ProfileStore:
    """Thread-safe registry of profiles keyed by name."""

    def __init__(self, profiles: Iterable[Profile] = ()) -> None:
        self._lock = threading.RLock()
        self._profiles: dict[str, Profile] = {}
        self._listeners: set[StoreListener] = set()
        for profile in profiles:
            try:
                self._validate_new(profile)
            except (DuplicateProfileError, InvalidProfileError) as exc:
                LOG.warning("Skipping invalid profile from config: %s", exc)
                continue
            self._profiles[profile.name] = profile

    @property
    def profiles(self) -> tuple[Profile, ...]:
        """Snapshot of all profiles in insertion order."""

        with self._lock:
            return tuple(self._profiles.values())

    def __len__(self) -> int:
        return len(self._profiles)

    def __contains__(self, name: object) -> bool:
        return name in self._profiles

    def get(self, name: str) -> Profile:
        with self._lock:
            try:
                return self._profiles[name]
            except KeyError:
                raise ProfileNotFoundError(name) from None

    def resolve(self, key: str) -> Profile:
        """Look a profile up by exact name, then by alias."""

        with self._lock:
            profile = self._profiles.get(key)
            if profile is not None:
                return profile
            for candidate in self._profiles.values():
                if candidate.alias is not None and candidate.alias == key:
                    return candidate
        raise ProfileNotFoundError(key)

    def add(self, profile: Profile) -> Profile:
        with self._lock:
            self._validate_new(profile)
            self._profiles[profile.name] = profile
        LOG.info("Added profile %s", profile.name)
        self._notify()
        return profile

    def update(self, name: str, patch: ProfilePatch) -> Profile:
        with self._lock:
            current = self.get(name)
            changes: dict[str, object] = {}
            if patch.category is not None:
                changes["category"] = patch.category
            if patch.alias is not None:
                alias = patch.alias.strip() or None
                if alias is not None:
                    self._check_alias(alias, exclude=name)
                changes["alias"] = alias
            if patch.connection_params is not None:
                changes["connection_params"] = patch.connection_params
            if patch.auto_connect is not None:
                changes["auto_connect"] = patch.auto_connect
            updated = current.with_changes(**changes)
            self._profiles[name] = updated
        LOG.info("Updated profile %s", name)
        self._notify()
        return updated

    def remove(self, name: str) -> Profile:
        with self._lock:
            try:
                profile = self._profiles.pop(name)
            except KeyError:
                raise ProfileNotFoundError(name) from None
        LOG.info("Removed profile %s", name)
        self._notify()
        return profile

    def mark_used(self, name: str, when: datetime) -> None:
        with self._lock:
            profile = self._profiles.get(name)
            if profile is None:
                return
            self._profiles[name] = profile.with_changes(last_used=when)
        self._notify()

    def find(self, query: str = "", sort: SortKey = SortKey.NAME, *, descending: bool = False) -> ProfileQuery:
        """Case-insensitive substring search over name, alias and category."""

        return ProfileQuery(self, query, sort, descending)

    def import_many(self, candidates: Iterable[Profile]) -> list[ImportOutcome]:
        """Add each candidate independently; existing names are never overwritten."""

        outcomes: list[ImportOutcome] = []
        with self._lock:
            for candidate in candidates:
                try:
                    self._validate_new(candidate)
                except (DuplicateProfileError, InvalidProfileError) as exc:
                    outcomes.append(ImportOutcome(candidate, accepted=False, reason=str(exc)))
                    continue
                self._profiles[candidate.name] = candidate
                outcomes.append(ImportOutcome(candidate, accepted=True))
        accepted = sum(1 for outcome in outcomes if outcome.accepted)
        LOG.info("Imported %d of %d candidate profile(s)", accepted, len(outcomes))
        if accepted:
            self._notify()
        return outcomes

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Subscribe to mutations; returns an unsubscribe handle."""

        self._listeners.add(listener)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def _validate_new(self, profile: Profile) -> None:
        if not profile.name.strip():
            raise InvalidProfileError("Profile name cannot be empty.")
        if profile.name in self._profiles:
            raise DuplicateNameError(profile.name)
        if profile.alias is not None:
            self._check_alias(profile.alias, exclude=None)

    def _check_alias(self, alias: str, *, exclude: str | None) -> None:
        for other in self._profiles.values():
            if other.name != exclude and other.alias == alias:
                raise DuplicateAliasError(alias, other.name)

    def _notify(self) -> None:
        snapshot = self.profiles
        for listener in tuple(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                LOG.exception("Profile store listener failed")


def _matches(profile: Profile, needle: str) -> bool:
    if not needle:
        return True
    return (
        needle in profile.name.casefold()
        or needle in profile.category.casefold()
        or (profile.alias is not None and needle in profile.alias.casefold())
    )


__all__ = [
    "ImportOutcome",
    "ProfilePatch",
    "ProfileQuery",
    "ProfileStore",
    "SortKey",
]
