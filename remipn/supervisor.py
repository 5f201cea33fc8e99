"""Connection supervisor: owns the single active VPN and the request queue."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from .backends import VpnBackend, select_backend
from .config import AppConfig, SupervisorSettings
from .errors import (
    BackendError,
    BackendTimeout,
    RemipnError,
    SupervisorBusyError,
    SupervisorClosedError,
)
from .models import BackendStatus, ConnectionState, Event, FailureKind, Phase, Profile, StatusReport
from .profiles import ProfilePatch, ProfileQuery, ProfileStore, SortKey

LOG = logging.getLogger(__name__)

StateListener = Callable[[ConnectionState], None]
EventListener = Callable[[Event], None]

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


class RequestKind(str, Enum):
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    REMOVE = "remove"
    REFRESH = "refresh"
    RECONCILE = "reconcile"


_TRANSITIONS = frozenset({RequestKind.CONNECT, RequestKind.DISCONNECT})


@dataclass(slots=True)
class _Request:
    kind: RequestKind
    profile_name: str | None
    future: Future[Any] = field(default_factory=Future)


@dataclass(frozen=True, slots=True)
class _PollResult:
    confirmed: bool
    attempts: int
    last: StatusReport | None = None
    cancelled: tuple[FailureKind, str] | None = None


@dataclass(frozen=True, slots=True)
class _Teardown:
    reason: str
    kind: FailureKind


class ConnectionSupervisor:
    """Serializes connect/disconnect requests and drives the backend.

    A single worker thread owns every state mutation. Front ends submit
    requests (which return futures) and read snapshots through ``state`` or
    the subscription hooks.
    """

    def __init__(
        self,
        store: ProfileStore,
        backend: VpnBackend,
        settings: SupervisorSettings | None = None,
    ) -> None:
        self._store = store
        self._backend = backend
        self._settings = settings or SupervisorSettings()
        self._cond = threading.Condition()
        self._queue: deque[_Request] = deque()
        self._closed = False
        self._worker: threading.Thread | None = None
        self._state = ConnectionState.idle()
        self._events: deque[Event] = deque(maxlen=self._settings.event_log_size)
        self._listeners: set[StateListener] = set()
        self._event_listeners: set[EventListener] = set()
        self._reconnect_name: str | None = None
        self._reconnect_at = 0.0

    # -- lifecycle ---------------------------------------------------------

    def start(self, *, reconcile: bool = True) -> None:
        """Start the worker; optionally adopt whatever the OS reports as active."""

        started = self._ensure_worker()
        if reconcile and started:
            self.reconcile()

    def shutdown(self, timeout: float | None = 5.0) -> None:
        """Cancel in-flight work, fail pending requests and join the worker."""

        with self._cond:
            if self._closed:
                return
            self._closed = True
            pending = list(self._queue)
            self._queue.clear()
            self._cond.notify_all()
        for request in pending:
            _fail_future(request.future, SupervisorClosedError("Supervisor shut down."))
        if self._worker is not None and self._worker is not threading.current_thread():
            self._worker.join(timeout)

    def __enter__(self) -> ConnectionSupervisor:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    # -- read side ---------------------------------------------------------

    @property
    def backend(self) -> VpnBackend:
        return self._backend

    @property
    def settings(self) -> SupervisorSettings:
        return self._settings

    @property
    def store(self) -> ProfileStore:
        return self._store

    @property
    def state(self) -> ConnectionState:
        with self._cond:
            return self._state

    def status(self) -> ConnectionState:
        return self.state

    @property
    def events(self) -> tuple[Event, ...]:
        with self._cond:
            return tuple(self._events)

    def list(self, sort: SortKey = SortKey.NAME, *, descending: bool = False) -> ProfileQuery:
        return self._store.find("", sort, descending=descending)

    def search(self, query: str, sort: SortKey = SortKey.NAME, *, descending: bool = False) -> ProfileQuery:
        return self._store.find(query, sort, descending=descending)

    def resolve(self, name_or_alias: str) -> Profile:
        return self._store.resolve(name_or_alias)

    def add(self, profile: Profile) -> Profile:
        return self._store.add(profile)

    def update(self, name_or_alias: str, patch: ProfilePatch) -> Profile:
        return self._store.update(self._store.resolve(name_or_alias).name, patch)

    def set_auto_reconnect(self, enabled: bool) -> None:
        with self._cond:
            self._settings = self._settings.model_copy(update={"auto_reconnect": enabled})
            if not enabled:
                self._reconnect_name = None
            self._cond.notify_all()

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Subscribe to state changes; the listener is called immediately."""

        self._listeners.add(listener)
        listener(self.state)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def subscribe_events(self, listener: EventListener) -> Callable[[], None]:
        self._event_listeners.add(listener)

        def _unsubscribe() -> None:
            self._event_listeners.discard(listener)

        return _unsubscribe

    # -- requests ----------------------------------------------------------

    def submit_connect(self, name_or_alias: str) -> Future[ConnectionState]:
        profile = self._store.resolve(name_or_alias)
        return self._submit(RequestKind.CONNECT, profile.name)

    def submit_disconnect(self, name_or_alias: str | None = None) -> Future[ConnectionState]:
        name = self._store.resolve(name_or_alias).name if name_or_alias else None
        return self._submit(RequestKind.DISCONNECT, name)

    def submit_remove(self, name_or_alias: str) -> Future[Profile]:
        profile = self._store.resolve(name_or_alias)
        return self._submit(RequestKind.REMOVE, profile.name)

    def submit_refresh(self) -> Future[ConnectionState]:
        return self._submit(RequestKind.REFRESH, None)

    def connect(self, name_or_alias: str, timeout: float | None = None) -> ConnectionState:
        return self.submit_connect(name_or_alias).result(timeout)

    def disconnect(self, name_or_alias: str | None = None, timeout: float | None = None) -> ConnectionState:
        return self.submit_disconnect(name_or_alias).result(timeout)

    def remove_profile(self, name_or_alias: str, timeout: float | None = None) -> Profile:
        return self.submit_remove(name_or_alias).result(timeout)

    def refresh(self, timeout: float | None = None) -> ConnectionState:
        return self.submit_refresh().result(timeout)

    def reconcile(self, timeout: float | None = None) -> ConnectionState:
        """Align the state with the VPNs the OS reports as active."""

        return self._submit(RequestKind.RECONCILE, None).result(timeout)

    def _submit(self, kind: RequestKind, profile_name: str | None) -> Future[Any]:
        self._ensure_worker()
        request = _Request(kind, profile_name)
        with self._cond:
            if self._closed:
                raise SupervisorClosedError("Supervisor is shut down.")
            if len(self._queue) >= self._settings.queue_size:
                raise SupervisorBusyError(
                    f"Request queue is full ({self._settings.queue_size} pending); try again shortly."
                )
            self._queue.append(request)
            self._cond.notify_all()
        LOG.debug("Queued %s %s", kind.value, profile_name or "")
        return request.future

    def _ensure_worker(self) -> bool:
        with self._cond:
            if self._worker is not None or self._closed:
                return False
            self._worker = threading.Thread(target=self._run, name="remipn-supervisor", daemon=True)
            self._worker.start()
        return True

    # -- worker ------------------------------------------------------------

    def _run(self) -> None:
        while True:
            with self._cond:
                request = self._next_request()
                if request is None and self._closed:
                    return
            if request is None:
                try:
                    self._on_idle()
                except Exception as exc:
                    LOG.exception("Supervisor idle check failed")
                    self._settle(exc)
            else:
                self._process(request)

    def _next_request(self) -> _Request | None:
        # caller holds self._cond
        while not self._queue and not self._closed:
            timeout = self._idle_timeout()
            if not self._cond.wait(timeout) and not self._queue:
                return None
        if self._closed:
            return None
        return self._queue.popleft()

    def _idle_timeout(self) -> float | None:
        if self._reconnect_name is not None:
            return max(0.0, self._reconnect_at - time.monotonic())
        interval = self._settings.health_check_interval
        if interval > 0 and self._state.phase is Phase.CONNECTED:
            return interval
        return None

    def _on_idle(self) -> None:
        if self._reconnect_name is not None:
            if time.monotonic() < self._reconnect_at:
                return
            name, self._reconnect_name = self._reconnect_name, None
            if name in self._store and self._state.phase is Phase.FAILED:
                self._emit("INFO", f"Reconnecting to {name}")
                self._do_connect(name)
            return
        if self._state.phase is Phase.CONNECTED:
            self._health_check()

    def _process(self, request: _Request) -> None:
        future = request.future
        if not future.set_running_or_notify_cancel():
            return
        self._reconnect_name = None
        if self._is_superseded(request):
            target = f" {request.profile_name}" if request.profile_name else ""
            self._emit("WARNING", f"Skipped {request.kind.value}{target}: superseded by a newer request")
            if request.kind is RequestKind.CONNECT and request.profile_name:
                skipped = ConnectionState.failed(
                    request.profile_name,
                    "superseded by a newer request",
                    FailureKind.SUPERSEDED,
                )
                future.set_result(skipped)
            else:
                future.set_result(self.state)
            return
        try:
            if request.kind is RequestKind.CONNECT:
                result: Any = self._do_connect(request.profile_name or "")
            elif request.kind is RequestKind.DISCONNECT:
                result = self._do_disconnect(request.profile_name)
            elif request.kind is RequestKind.REMOVE:
                result = self._do_remove(request.profile_name or "")
            elif request.kind is RequestKind.REFRESH:
                result = self._do_refresh()
            else:
                result = self._do_reconcile()
        except RemipnError as exc:
            self._settle(exc)
            future.set_exception(exc)
        except Exception as exc:
            LOG.exception("Supervisor request %s failed", request.kind.value)
            self._settle(exc)
            future.set_exception(exc)
        else:
            future.set_result(result)

    def _is_superseded(self, request: _Request) -> bool:
        """A later connect replaces any transition; a later disconnect only replaces its own target."""

        if request.kind not in _TRANSITIONS:
            return False
        with self._cond:
            for pending in self._queue:
                if pending.kind is RequestKind.CONNECT:
                    return True
                if (
                    request.kind is RequestKind.CONNECT
                    and pending.kind is RequestKind.DISCONNECT
                    and pending.profile_name in (None, request.profile_name)
                ):
                    return True
        return False

    def _settle(self, exc: BaseException) -> None:
        """Resolve a transitional phase left behind by an aborted request."""

        current = self.state
        if current.is_stable or current.profile_name is None:
            return
        self._fail(current.profile_name, f"unexpected error: {exc}", FailureKind.BACKEND)

    # -- transitions -------------------------------------------------------

    def _do_connect(self, name: str) -> ConnectionState:
        profile = self._store.get(name)
        current = self.state
        if current.phase is Phase.CONNECTED and current.profile_name == name:
            self._emit("INFO", f"Already connected to {name}")
            return current
        if current.phase is Phase.CONNECTED and current.profile_name is not None:
            previous = current.profile_name
            self._emit("INFO", f"Switching from {previous} to {name}")
            teardown = self._teardown(previous)
            if teardown is not None:
                if self._settings.switch_requires_disconnect:
                    return self._fail(name, f"could not disconnect {previous}: {teardown.reason}", teardown.kind)
                self._emit("WARNING", f"Could not disconnect {previous} ({teardown.reason}); connecting anyway")

        attempts = self._settings.connect_retries + 1
        failure = (FailureKind.BACKEND, "not attempted")
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                self._emit("WARNING", f"Retrying connection to {name} (attempt {attempt}/{attempts})")
                cancelled = self._wait(self._settings.retry_delay, name, True)
                if cancelled is not None:
                    return self._cancel_connect(name, cancelled)
            self._set_state(ConnectionState.connecting(name, attempt, attempts))
            outcome = self._attempt_connect(profile)
            if isinstance(outcome, ConnectionState):
                return outcome
            failure = outcome
        kind, reason = failure
        if attempts > 1:
            self._emit("ERROR", f"Failed to connect to {name} after {attempts} attempts")
        return self._fail(name, reason, kind)

    def _attempt_connect(self, profile: Profile) -> ConnectionState | tuple[FailureKind, str]:
        """Run one connect and confirmation cycle.

        Returns the final state when the cycle settles the request, or the
        failure to retry.
        """

        name = profile.name
        try:
            self._backend.connect(profile)
        except BackendTimeout as exc:
            return FailureKind.TIMEOUT, str(exc)
        except BackendError as exc:
            return FailureKind.BACKEND, str(exc)

        poll = self._poll(name, BackendStatus.CONNECTED, cancellable=True)
        if poll.cancelled is not None:
            return self._cancel_connect(name, poll.cancelled)
        if not poll.confirmed:
            last = poll.last.status.value if poll.last else "no status"
            return (
                FailureKind.NOT_CONFIRMED,
                f"not confirmed: timeout after {poll.attempts} status checks (last: {last})",
            )
        now = datetime.now(tz=timezone.utc)
        self._store.mark_used(name, now)
        address = poll.last.address if poll.last else None
        return self._set_state(ConnectionState.connected(name, now, address))

    def _cancel_connect(self, name: str, cancelled: tuple[FailureKind, str]) -> ConnectionState:
        kind, reason = cancelled
        self._abandon(name)
        return self._fail(name, reason, kind)

    def _do_disconnect(self, name: str | None) -> ConnectionState:
        current = self.state
        target = current.profile_name if current.phase in (Phase.CONNECTED, Phase.FAILED) else None
        if target is None or (name is not None and name != target):
            self._emit("DEBUG", "Nothing to disconnect")
            return current
        if current.phase is Phase.FAILED:
            try:
                self._backend.disconnect(target)
            except BackendError as exc:
                self._emit("WARNING", f"Cleanup disconnect of {target} failed: {exc}")
            return self._set_state(ConnectionState.idle())
        teardown = self._teardown(target)
        if teardown is not None:
            return self._fail(target, teardown.reason, teardown.kind)
        return self._set_state(ConnectionState.idle())

    def _do_remove(self, name: str) -> Profile:
        current = self.state
        if current.profile_name == name and current.phase is not Phase.IDLE:
            state = self._do_disconnect(name)
            if state.phase is not Phase.IDLE:
                raise BackendError(f"Profile '{name}' is still active ({state.reason}); not removed.")
        profile = self._store.remove(name)
        self._emit("INFO", f"Removed profile {name}")
        return profile

    def _do_refresh(self) -> ConnectionState:
        if self.state.phase is Phase.CONNECTED:
            return self._health_check()
        return self._do_reconcile()

    def _do_reconcile(self) -> ConnectionState:
        try:
            active = self._backend.list_active()
        except BackendError as exc:
            self._emit("WARNING", f"Could not list active VPNs: {exc}")
            return self.state
        known = [name for name in active if name in self._store]
        current = self.state
        if not known:
            if current.phase is Phase.CONNECTED and current.profile_name is not None:
                return self._drop(current.profile_name)
            return current
        if current.phase is Phase.CONNECTED and current.profile_name in known:
            keep = current.profile_name
        else:
            keep = known[0]
            self._emit("INFO", f"Adopting active VPN {keep}")
            self._set_state(ConnectionState.connected(keep, address=self._query(keep).address))
        for other in known:
            if other == keep:
                continue
            self._emit("WARNING", f"Disconnecting extra active VPN {other}")
            try:
                self._backend.disconnect(other)
            except BackendError as exc:
                self._emit("ERROR", f"Failed to disconnect {other}: {exc}")
        return self.state

    def _health_check(self) -> ConnectionState:
        current = self.state
        name = current.profile_name
        if current.phase is not Phase.CONNECTED or name is None:
            return current
        report = self._query(name)
        if report.status is BackendStatus.DISCONNECTED:
            return self._drop(name)
        if report.status is BackendStatus.CONNECTED and report.address and report.address != current.address:
            return self._set_state(ConnectionState.connected(name, current.since, report.address))
        return self.state

    def _drop(self, name: str) -> ConnectionState:
        state = self._fail(name, "dropped", FailureKind.DROPPED)
        if self._settings.auto_reconnect:
            self._reconnect_name = name
            self._reconnect_at = time.monotonic() + self._settings.reconnect_delay
            self._emit("INFO", f"Reconnect to {name} scheduled in {self._settings.reconnect_delay:g}s")
        return state

    def _teardown(self, name: str) -> _Teardown | None:
        """Disconnect ``name`` and wait until the backend confirms it is down."""

        self._set_state(ConnectionState.disconnecting(name))
        try:
            self._backend.disconnect(name)
        except BackendTimeout as exc:
            return _Teardown(str(exc), FailureKind.TIMEOUT)
        except BackendError as exc:
            return _Teardown(str(exc), FailureKind.BACKEND)
        poll = self._poll(name, BackendStatus.DISCONNECTED, cancellable=False)
        if poll.cancelled is not None:
            kind, reason = poll.cancelled
            return _Teardown(reason, kind)
        if not poll.confirmed:
            return _Teardown("disconnect not confirmed", FailureKind.NOT_DISCONNECTED)
        return None

    def _abandon(self, name: str) -> None:
        try:
            self._backend.disconnect(name)
        except BackendError as exc:
            self._emit("WARNING", f"Cleanup disconnect of {name} failed: {exc}")

    # -- polling -----------------------------------------------------------

    def _poll(self, name: str, wanted: BackendStatus, *, cancellable: bool) -> _PollResult:
        interval = self._settings.poll_interval
        last: StatusReport | None = None
        attempts = self._settings.poll_attempts
        for attempt in range(1, attempts + 1):
            cancelled = self._wait(interval if attempt > 1 else 0.0, name, cancellable)
            if cancelled is not None:
                return _PollResult(False, attempt - 1, last, cancelled)
            last = self._query(name)
            if last.status is wanted:
                return _PollResult(True, attempt, last)
            LOG.debug("%s: attempt %d/%d reported %s", name, attempt, attempts, last.status.value)
            if last.status is BackendStatus.UNKNOWN:
                interval = min(interval * self._settings.poll_backoff, self._settings.poll_max_interval)
        return _PollResult(False, attempts, last)

    def _query(self, name: str) -> StatusReport:
        try:
            return self._backend.query_status(name)
        except BackendError as exc:
            LOG.debug("Status query for %s failed: %s", name, exc)
            return StatusReport(BackendStatus.UNKNOWN, str(exc))

    def _wait(self, seconds: float, name: str, cancellable: bool) -> tuple[FailureKind, str] | None:
        deadline = time.monotonic() + seconds
        with self._cond:
            while True:
                cancelled = self._pending_cancellation(name, cancellable)
                if cancelled is not None:
                    return cancelled
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def _pending_cancellation(self, name: str, cancellable: bool) -> tuple[FailureKind, str] | None:
        # caller holds self._cond
        if self._closed:
            return FailureKind.CANCELLED, "cancelled"
        if not cancellable:
            return None
        for pending in self._queue:
            if pending.kind is RequestKind.CONNECT and pending.profile_name != name:
                return FailureKind.SUPERSEDED, "superseded"
            if pending.kind is RequestKind.DISCONNECT and pending.profile_name in (None, name):
                return FailureKind.CANCELLED, "cancelled"
            if pending.kind is RequestKind.REMOVE and pending.profile_name == name:
                return FailureKind.CANCELLED, "cancelled"
        return None

    # -- state & events ----------------------------------------------------

    def _fail(self, name: str, reason: str, kind: FailureKind) -> ConnectionState:
        return self._set_state(ConnectionState.failed(name, reason, kind))

    def _set_state(self, state: ConnectionState) -> ConnectionState:
        with self._cond:
            self._state = state
        self._emit("ERROR" if state.phase is Phase.FAILED else "INFO", _describe(state))
        for listener in tuple(self._listeners):
            try:
                listener(state)
            except Exception:
                LOG.exception("Connection state listener failed")
        return state

    def _emit(self, level: str, message: str) -> None:
        event = Event(datetime.now(tz=timezone.utc), level, message)
        LOG.log(_LEVELS.get(level, logging.INFO), message)
        with self._cond:
            self._events.append(event)
        for listener in tuple(self._event_listeners):
            try:
                listener(event)
            except Exception:
                LOG.exception("Event listener failed")


def _describe(state: ConnectionState) -> str:
    if state.phase is Phase.IDLE:
        return "Disconnected"
    if state.phase is Phase.CONNECTING:
        if state.attempt > 1:
            return f"Connecting to {state.profile_name} (attempt {state.attempt}/{state.attempts})"
        return f"Connecting to {state.profile_name}"
    if state.phase is Phase.CONNECTED:
        if state.address:
            return f"Connected to {state.profile_name} ({state.address})"
        return f"Connected to {state.profile_name}"
    if state.phase is Phase.DISCONNECTING:
        return f"Disconnecting from {state.profile_name}"
    return f"{state.profile_name} failed: {state.reason}"


def _fail_future(future: Future[Any], exc: BaseException) -> None:
    if future.set_running_or_notify_cancel():
        future.set_exception(exc)


def build_supervisor(
    config: AppConfig,
    *,
    demo: bool = False,
    backend: VpnBackend | None = None,
) -> ConnectionSupervisor:
    """Wire a store, the platform backend and the supervisor from config."""

    settings = config.settings
    if backend is None:
        kind = "demo" if demo else settings.backend
        backend = select_backend(kind, timeout=settings.command_timeout)
    return ConnectionSupervisor(ProfileStore(config.build_profiles()), backend, settings)


__all__ = [
    "ConnectionSupervisor",
    "EventListener",
    "RequestKind",
    "StateListener",
    "build_supervisor",
]
