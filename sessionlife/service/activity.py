from __future__ import annotations

from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol

from sessionlife.logging import get_logger
from sessionlife.service.clock import Clock, TimerHandle

logger = get_logger(__name__)

ActivityListener = Callable[[float], None]
SignalListener = Callable[[], None]


class SignalKind(str, Enum):
    POINTER = "pointer"
    KEYBOARD = "keyboard"
    TOUCH = "touch"
    SCROLL = "scroll"


class InputSurface(Protocol):
    def add_listener(self, kind: SignalKind, listener: SignalListener) -> None: ...

    def remove_listener(self, kind: SignalKind, listener: SignalListener) -> None: ...


class LocalInputSurface:
    """In-process source of raw interaction signals."""

    def __init__(self) -> None:
        self._listeners: Dict[SignalKind, List[SignalListener]] = {kind: [] for kind in SignalKind}

    def add_listener(self, kind: SignalKind, listener: SignalListener) -> None:
        if listener not in self._listeners[kind]:
            self._listeners[kind].append(listener)

    def remove_listener(self, kind: SignalKind, listener: SignalListener) -> None:
        try:
            self._listeners[kind].remove(listener)
        except ValueError:
            pass

    def listener_count(self, kind: Optional[SignalKind] = None) -> int:
        if kind is not None:
            return len(self._listeners[kind])
        return sum(len(listeners) for listeners in self._listeners.values())

    def emit(self, kind: SignalKind) -> None:
        for listener in list(self._listeners[kind]):
            listener()


class ActivityAggregator:
    """Coalesces raw interaction signals into debounced activity notifications.

    At most one notification is raised per ``debounce`` window: the first
    signal of a quiet period notifies at once, later signals inside the
    window collapse into one trailing notification when the window closes.
    ``last_activity`` is updated before any subscriber runs.
    """

    def __init__(self, clock: Clock, surface: InputSurface, *, debounce: float = 1.0) -> None:
        self.clock = clock
        self.surface = surface
        self.debounce = debounce
        self._last_activity = clock.now()
        self._last_emit: Optional[float] = None
        self._pending_signal_at: Optional[float] = None
        self._trailing: Optional[TimerHandle] = None
        self._subscribers: List[ActivityListener] = []
        self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def last_activity(self) -> float:
        return self._last_activity

    def subscribe(self, listener: ActivityListener) -> Callable[[], None]:
        self._subscribers.append(listener)

        def _unsubscribe() -> None:
            try:
                self._subscribers.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def enable(self) -> None:
        if self._enabled:
            return
        for kind in SignalKind:
            self.surface.add_listener(kind, self._on_signal)
        self._enabled = True
        logger.debug("activity_listeners_registered")

    def disable(self) -> None:
        if not self._enabled:
            return
        for kind in SignalKind:
            self.surface.remove_listener(kind, self._on_signal)
        self._cancel_trailing()
        self._pending_signal_at = None
        self._enabled = False
        logger.debug("activity_listeners_removed")

    def touch(self) -> None:
        """Stamp activity without notifying subscribers."""
        self._stamp(self.clock.now())

    def record_activity(self) -> None:
        """Stamp and notify immediately, bypassing the debounce."""
        now = self.clock.now()
        self._cancel_trailing()
        self._pending_signal_at = None
        self._emit(now)

    def _stamp(self, when: float) -> None:
        if when > self._last_activity:
            self._last_activity = when

    def _cancel_trailing(self) -> None:
        if self._trailing is not None:
            self._trailing.cancel()
            self._trailing = None

    def _on_signal(self) -> None:
        if not self._enabled:
            return
        now = self.clock.now()
        if self._last_emit is None or now - self._last_emit >= self.debounce:
            self._emit(now)
            return
        self._pending_signal_at = now
        if self._trailing is None:
            delay = self._last_emit + self.debounce - now
            self._trailing = self.clock.call_later(delay, self._flush_trailing)

    def _flush_trailing(self) -> None:
        self._trailing = None
        signal_at = self._pending_signal_at
        self._pending_signal_at = None
        if signal_at is None or not self._enabled:
            return
        self._emit(signal_at, emitted_at=self.clock.now())

    def _emit(self, when: float, *, emitted_at: Optional[float] = None) -> None:
        self._stamp(when)
        self._last_emit = emitted_at if emitted_at is not None else when
        stamp = self._last_activity
        for listener in list(self._subscribers):
            try:
                listener(stamp)
            except Exception as exc:
                logger.error(
                    "activity_subscriber_failed",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
