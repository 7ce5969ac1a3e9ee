"""Connection lifecycle state machine shared by the broker adapters.

One ``ConnectionLifecycle`` per adapter instance owns the connection state.
Adapters feed it the events their transport emits; it validates the
transition, logs it and notifies the registered listeners. It never retries
or reconnects on its own.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from inspect import isawaitable

import asyncio
import typing as t

from unibroker.logger import get_logger

from ._base import BrokerClosedError, BrokerConnectionError

__all__ = [
    "ConnectionLifecycle",
    "ConnectionState",
    "LifecycleEvent",
    "LifecycleListener",
    "StateChange",
]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"
    CLOSING = "closing"
    CLOSED = "closed"


class LifecycleEvent(str, Enum):
    CONNECTED = "connected"
    CONNECT_FAILED = "connect-failed"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    ERROR = "error"
    CLOSED = "closed"


@dataclass(frozen=True)
class StateChange:
    broker: str
    event: LifecycleEvent | None
    previous: ConnectionState
    state: ConnectionState
    detail: str | None = None
    error: BaseException | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


LifecycleListener = t.Callable[[StateChange], t.Any]

_ALLOWED: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.CLOSING},
    ),
    ConnectionState.CONNECTING: frozenset(
        {
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
            ConnectionState.ERROR,
            ConnectionState.CLOSING,
        },
    ),
    ConnectionState.CONNECTED: frozenset(
        {
            ConnectionState.RECONNECTING,
            ConnectionState.DISCONNECTED,
            ConnectionState.ERROR,
            ConnectionState.CLOSING,
        },
    ),
    ConnectionState.RECONNECTING: frozenset(
        {
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
            ConnectionState.ERROR,
            ConnectionState.CLOSING,
        },
    ),
    ConnectionState.ERROR: frozenset(
        {
            ConnectionState.CONNECTING,
            ConnectionState.RECONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
            ConnectionState.CLOSING,
        },
    ),
    ConnectionState.CLOSING: frozenset({ConnectionState.CLOSED}),
    ConnectionState.CLOSED: frozenset(),
}

_PENDING = frozenset({ConnectionState.CONNECTING, ConnectionState.RECONNECTING})
_SHUT = frozenset({ConnectionState.CLOSING, ConnectionState.CLOSED})

_LOG_LEVELS: dict[LifecycleEvent, str] = {
    LifecycleEvent.CONNECTED: "INFO",
    LifecycleEvent.CONNECT_FAILED: "ERROR",
    LifecycleEvent.DISCONNECTED: "WARNING",
    LifecycleEvent.RECONNECTING: "WARNING",
    LifecycleEvent.ERROR: "ERROR",
    LifecycleEvent.CLOSED: "INFO",
}


class ConnectionLifecycle:
    """Single owner of an adapter's connection state.

    Operations call :meth:`guard` before touching the transport. While the
    transport is (re)connecting a guard either waits for ``CONNECTED`` or
    fails fast, depending on whether the backend can hold requests across a
    reconnect.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.endpoint: str | None = None
        self.close_error: BaseException | None = None
        self._state = ConnectionState.DISCONNECTED
        self._listeners: list[LifecycleListener] = []
        self._settled = asyncio.Event()
        self._settled.set()
        self._close_task: asyncio.Future[None] | None = None
        self._listener_tasks: set[asyncio.Future[t.Any]] = set()
        self._logger = get_logger(name)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def is_closed(self) -> bool:
        return self._state in _SHUT

    def add_listener(self, listener: LifecycleListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: LifecycleListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # Transport events

    def connecting(self, endpoint: str | None = None) -> None:
        if endpoint is not None:
            self.endpoint = endpoint
        self._transition(ConnectionState.CONNECTING)

    def connected(self, endpoint: str | None = None) -> None:
        if endpoint is not None:
            self.endpoint = endpoint
        self._transition(ConnectionState.CONNECTED, LifecycleEvent.CONNECTED)

    def connect_failed(self, error: BaseException) -> None:
        self._transition(
            ConnectionState.DISCONNECTED,
            LifecycleEvent.CONNECT_FAILED,
            error=error,
        )

    def disconnected(self, error: BaseException | None = None) -> None:
        self._transition(
            ConnectionState.DISCONNECTED,
            LifecycleEvent.DISCONNECTED,
            error=error,
        )

    def reconnecting(self, error: BaseException | None = None) -> None:
        self._transition(
            ConnectionState.RECONNECTING,
            LifecycleEvent.RECONNECTING,
            error=error,
        )

    def failed(self, error: BaseException) -> None:
        self._transition(ConnectionState.ERROR, LifecycleEvent.ERROR, error=error)

    # Operation guards

    def check_open(self) -> None:
        """Raise BrokerClosedError once close() has started."""
        if self._state in _SHUT:
            msg = f"{self.name} broker is closed"
            raise BrokerClosedError(msg)

    def check(self) -> None:
        """Raise unless the connection is usable right now."""
        self.check_open()
        if self._state is not ConnectionState.CONNECTED:
            msg = f"{self.name} broker is not connected (state={self._state.value})"
            raise BrokerConnectionError(msg)

    async def guard(self, wait: bool = False, timeout: float | None = None) -> None:
        """Check the connection, optionally waiting out a (re)connect."""
        if wait and self._state in _PENDING:
            try:
                await asyncio.wait_for(self._settled.wait(), timeout)
            except TimeoutError as e:
                msg = (
                    f"{self.name} broker did not reconnect within {timeout}s "
                    f"(state={self._state.value})"
                )
                raise BrokerConnectionError(msg, original_error=e) from e
        self.check()

    # Shutdown

    async def close(self, shutdown: t.Callable[[], t.Awaitable[None]]) -> None:
        """Run ``shutdown`` exactly once; every caller shares the outcome."""
        if self._close_task is None:
            self._close_task = asyncio.ensure_future(self._run_close(shutdown))
        await asyncio.shield(self._close_task)

    async def _run_close(self, shutdown: t.Callable[[], t.Awaitable[None]]) -> None:
        self._transition(ConnectionState.CLOSING)
        try:
            await shutdown()
        except Exception as e:
            self.close_error = e
            self._logger.opt(exception=e).error(
                f"{self.name} broker error while closing: {self.endpoint}"
            )
        finally:
            self._transition(
                ConnectionState.CLOSED,
                LifecycleEvent.CLOSED,
                error=self.close_error,
            )

    # Internals

    def _transition(
        self,
        state: ConnectionState,
        event: LifecycleEvent | None = None,
        error: BaseException | None = None,
    ) -> None:
        previous = self._state
        if state is previous:
            return
        if state not in _ALLOWED[previous]:
            self._logger.debug(
                f"Ignoring {self.name} transition {previous.value} -> {state.value}"
            )
            return

        self._state = state
        if state in _PENDING:
            self._settled.clear()
        else:
            self._settled.set()

        if event is None:
            self._logger.debug(f"{self.name} broker {previous.value} -> {state.value}")
            self._notify(StateChange(self.name, None, previous, state, error=error))
        else:
            self._emit(event, previous, error=error)

    def _emit(
        self,
        event: LifecycleEvent,
        previous: ConnectionState,
        detail: str | None = None,
        error: BaseException | None = None,
    ) -> None:
        message = f"{self.name} broker {event.value}: {self.endpoint or '-'}"
        if detail:
            message = f"{message} ({detail})"
        if error is not None:
            message = f"{message}: {error}"
        self._logger.log(_LOG_LEVELS[event], message)
        self._notify(
            StateChange(self.name, event, previous, self._state, detail, error),
        )

    def _notify(self, change: StateChange) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(change)
            except Exception as e:
                self._logger.opt(exception=e).warning(
                    f"Lifecycle listener {listener!r} failed"
                )
                continue
            if isawaitable(result):
                task = asyncio.ensure_future(result)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Future[t.Any]) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._logger.opt(exception=task.exception()).warning(
                "Async lifecycle listener failed"
            )
