from __future__ import annotations

import math
from typing import Callable, List, Optional

from sessionlife.logging import get_logger
from sessionlife.service.activity import ActivityAggregator
from sessionlife.service.clock import Clock, TimerHandle
from sessionlife.storage.models import Phase, SessionPhase

logger = get_logger(__name__)

PhaseListener = Callable[[SessionPhase], None]


def format_remaining(seconds: Optional[int]) -> str:
    """Render a countdown value as ``M:SS``."""
    if not seconds:
        return "0:00"
    minutes, rest = divmod(int(seconds), 60)
    return f"{minutes}:{rest:02d}"


class InactivityMonitor:
    """Polls elapsed idle time and drives the Active/Warning/Expired phases.

    Polling on a short fixed tick keeps the countdown current and tolerates
    suspended timers: a single late tick that observes an elapsed time past
    the full timeout goes straight to Expired.
    """

    def __init__(
        self,
        clock: Clock,
        activity: ActivityAggregator,
        *,
        inactivity_timeout: float,
        warning_window: float,
        poll_interval: float = 1.0,
        refresh_at: Optional[float] = None,
        on_expired: Optional[Callable[[], None]] = None,
        on_refresh_due: Optional[Callable[[], None]] = None,
    ) -> None:
        self.clock = clock
        self.activity = activity
        self.inactivity_timeout = inactivity_timeout
        self.warning_window = warning_window
        self.poll_interval = poll_interval
        self.refresh_at = refresh_at
        self.on_expired = on_expired
        self.on_refresh_due = on_refresh_due
        self._phase = SessionPhase.active()
        self._ticker: Optional[TimerHandle] = None
        self._handed_off = False
        self._refreshed_for: Optional[float] = None
        self._listeners: List[PhaseListener] = []
        self._unsubscribe_activity: Optional[Callable[[], None]] = None

    @property
    def running(self) -> bool:
        return self._ticker is not None

    @property
    def warning_at(self) -> float:
        return self.inactivity_timeout - self.warning_window

    def current_phase(self) -> SessionPhase:
        return self._phase

    def subscribe(self, listener: PhaseListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def start(self) -> None:
        self.stop()
        self._handed_off = False
        self._refreshed_for = None
        self._set_phase(SessionPhase.active())
        self._unsubscribe_activity = self.activity.subscribe(self._on_activity)
        self._ticker = self.clock.call_every(self.poll_interval, self.tick)
        logger.debug(
            "inactivity_monitor_started",
            inactivity_timeout=self.inactivity_timeout,
            warning_window=self.warning_window,
        )

    def stop(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        if self._unsubscribe_activity is not None:
            self._unsubscribe_activity()
            self._unsubscribe_activity = None

    def suspend(self) -> None:
        """Stop watching and drop any countdown; tracking is off, not expired."""
        self.stop()
        if not self._handed_off:
            self._set_phase(SessionPhase.active())

    def mark_expired(self) -> None:
        """Force Expired without handing off again (expiry decided elsewhere)."""
        self._handed_off = True
        self.stop()
        self._set_phase(SessionPhase.expired())

    def tick(self) -> None:
        if self._ticker is None or self._handed_off:
            return
        # Read the shared timestamp on every tick; debounce callbacks may have run
        elapsed = self.clock.now() - self.activity.last_activity

        if elapsed >= self.inactivity_timeout:
            self._handed_off = True
            self.stop()
            self._set_phase(SessionPhase.expired())
            logger.info("session_inactivity_expired", elapsed=round(elapsed, 3))
            if self.on_expired is not None:
                self.on_expired()
            return

        if elapsed >= self.warning_at:
            remaining = math.ceil(self.inactivity_timeout - elapsed)
            if self._phase.kind is not Phase.WARNING:
                logger.info("session_warning_started", remaining_seconds=remaining)
            self._set_phase(SessionPhase.warning(remaining))
            return

        self._set_phase(SessionPhase.active())
        if (
            self.refresh_at is not None
            and elapsed >= self.refresh_at
            and self._refreshed_for != self.activity.last_activity
        ):
            self._refreshed_for = self.activity.last_activity
            logger.debug("session_refresh_threshold_reached", elapsed=round(elapsed, 3))
            if self.on_refresh_due is not None:
                self.on_refresh_due()

    def _on_activity(self, stamp: float) -> None:
        if self._handed_off:
            return
        if self._phase.kind is Phase.WARNING:
            logger.info("session_warning_cleared")
            self._set_phase(SessionPhase.active())

    def _set_phase(self, phase: SessionPhase) -> None:
        if phase == self._phase:
            return
        self._phase = phase
        for listener in list(self._listeners):
            try:
                listener(phase)
            except Exception as exc:
                logger.error(
                    "phase_listener_failed",
                    phase=phase.kind.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
