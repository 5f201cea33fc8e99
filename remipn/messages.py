"""Textual messages bridging supervisor callbacks onto the UI thread.

Supervisor listeners run on its worker thread; ``post_message`` is safe to
call from there, so listeners only ever post one of these.
"""

from __future__ import annotations

from textual.message import Message

from .models import ConnectionState, Event, Profile


class StateChanged(Message):
    def __init__(self, state: ConnectionState) -> None:
        super().__init__()
        self.state = state


class EventLogged(Message):
    def __init__(self, event: Event) -> None:
        super().__init__()
        self.event = event


class ProfilesChanged(Message):
    def __init__(self, profiles: tuple[Profile, ...]) -> None:
        super().__init__()
        self.profiles = profiles


class RequestFailed(Message):
    """A queued request raised instead of resolving to a state."""

    def __init__(self, action: str, error: BaseException) -> None:
        super().__init__()
        self.action = action
        self.error = error


__all__ = ["EventLogged", "ProfilesChanged", "RequestFailed", "StateChanged"]
