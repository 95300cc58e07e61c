from __future__ import annotations

from enum import Enum
from typing import Callable, Optional

from sessionlife.logging import get_logger
from sessionlife.service.activity import ActivityAggregator
from sessionlife.service.auth_client import AuthBackend
from sessionlife.service.clock import Clock, TimerHandle
from sessionlife.service.errors import RejectionError, VersionMismatchError
from sessionlife.storage.credentials import CredentialStore
from sessionlife.storage.errors import CredentialStoreError
from sessionlife.storage.models import Credential, RetryState, SessionEndReason

logger = get_logger(__name__)


class RenewalTrigger(str, Enum):
    INITIAL = "initial"
    INTERVAL = "interval"
    ACTIVITY = "activity"
    THRESHOLD = "threshold"
    EXPLICIT = "explicit"
    RETRY = "retry"


class KeepAliveScheduler:
    """Renews the credential on an interval, on activity, and before warnings.

    Only one renewal call is ever outstanding. A rejection hands off to the
    expiration callback at once; any other failure gets a single retry after
    ``retry_backoff`` and then waits for the normal cadence.
    """

    def __init__(
        self,
        clock: Clock,
        store: CredentialStore,
        backend: AuthBackend,
        activity: ActivityAggregator,
        *,
        interval: float,
        initial_delay: float = 1.0,
        min_spacing: float = 30.0,
        retry_backoff: float = 10.0,
        version_step: int = 1,
        on_rejected: Optional[Callable[[SessionEndReason], None]] = None,
    ) -> None:
        self.clock = clock
        self.store = store
        self.backend = backend
        self.activity = activity
        self.interval = interval
        self.initial_delay = initial_delay
        self.min_spacing = min_spacing
        self.retry_backoff = retry_backoff
        self.version_step = version_step
        self.on_rejected = on_rejected
        self.retry_state = RetryState()
        self._generation = 0
        self._running = False
        self._armed = False
        self._in_flight = False
        self._grace: Optional[TimerHandle] = None
        self._ticker: Optional[TimerHandle] = None
        self._retry: Optional[TimerHandle] = None
        self._unsubscribe_activity: Optional[Callable[[], None]] = None
        self.attempts = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def retry_pending(self) -> bool:
        return self._retry is not None and self._retry.active

    def start(self, credential: Credential) -> None:
        self.stop()
        self._generation += 1
        self._running = True
        self._armed = False
        self.retry_state = RetryState()
        if self.store.current() != credential:
            self.store.replace(credential)
        self._unsubscribe_activity = self.activity.subscribe(self._on_activity)
        self._grace = self.clock.call_later(self.initial_delay, self._on_grace_elapsed)
        logger.info(
            "keepalive_started",
            interval=self.interval,
            credential_version=credential.version,
            generation=self._generation,
        )

    def stop(self) -> None:
        was_running = self._running
        self._running = False
        self._armed = False
        # Results of a call still in flight belong to the old generation
        self._generation += 1
        self._in_flight = False
        for handle in (self._grace, self._ticker, self._retry):
            if handle is not None:
                handle.cancel()
        self._grace = self._ticker = self._retry = None
        if self._unsubscribe_activity is not None:
            self._unsubscribe_activity()
            self._unsubscribe_activity = None
        if was_running:
            logger.info("keepalive_stopped")

    def request_renewal(self, trigger: RenewalTrigger) -> bool:
        """Attempt a renewal unless the spacing floor says it is too soon."""
        if not self._armed:
            return False
        last = self.retry_state.last_attempt_at
        if last is not None and self.clock.now() - last < self.min_spacing:
            logger.debug("keepalive_spacing_skip", trigger=trigger.value)
            return False
        return self.attempt_renewal(trigger)

    def attempt_renewal(self, trigger: RenewalTrigger = RenewalTrigger.EXPLICIT) -> bool:
        if not self._running:
            return False
        if self._in_flight:
            logger.debug("keepalive_in_flight_skip", trigger=trigger.value)
            return False
        credential = self.store.current()
        if credential is None:
            logger.warning("keepalive_no_credential", trigger=trigger.value)
            return False
        # A newer attempt supersedes any scheduled retry
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None
        self._in_flight = True
        self.attempts += 1
        self.retry_state.last_attempt_at = self.clock.now()
        self.clock.spawn(self._renew(credential, trigger, self._generation))
        return True

    def _on_grace_elapsed(self) -> None:
        self._grace = None
        if not self._running:
            return
        self._armed = True
        self._ticker = self.clock.call_every(self.interval, self._on_interval)
        self.attempt_renewal(RenewalTrigger.INITIAL)

    def _on_interval(self) -> None:
        self.attempt_renewal(RenewalTrigger.INTERVAL)

    def _on_activity(self, stamp: float) -> None:
        self.request_renewal(RenewalTrigger.ACTIVITY)

    def _on_retry(self) -> None:
        self._retry = None
        self.attempt_renewal(RenewalTrigger.RETRY)

    async def _renew(self, credential: Credential, trigger: RenewalTrigger, generation: int) -> None:
        expected = credential.version + self.version_step
        try:
            renewed = await self.backend.renew_credential(credential)
            if generation != self._generation:
                logger.info("keepalive_stale_result_dropped", trigger=trigger.value)
                return
            if renewed.version != expected:
                raise VersionMismatchError(expected, renewed.version)
        except RejectionError as exc:
            if generation != self._generation:
                return
            self._in_flight = False
            reason = (
                SessionEndReason.VERSION_MISMATCH
                if isinstance(exc, VersionMismatchError)
                else SessionEndReason.REJECTED
            )
            self.retry_state.record_failure(exc.error_code)
            logger.warning(
                "keepalive_rejected",
                trigger=trigger.value,
                reason=reason.value,
                error=exc.message,
            )
            if self.on_rejected is not None:
                self.on_rejected(reason)
            return
        except Exception as exc:
            if generation != self._generation:
                return
            self._in_flight = False
            self.retry_state.record_failure(type(exc).__name__)
            logger.warning(
                "keepalive_failed",
                trigger=trigger.value,
                error_type=type(exc).__name__,
                error=str(exc),
                consecutive_failures=self.retry_state.consecutive_failures,
            )
            if trigger is not RenewalTrigger.RETRY and self._running:
                self._retry = self.clock.call_later(self.retry_backoff, self._on_retry)
            return

        self._in_flight = False
        try:
            self.store.replace(renewed)
        except CredentialStoreError as exc:
            # In-memory credential is already current; only the persisted copy is stale
            logger.error(
                "keepalive_persist_failed",
                credential_version=renewed.version,
                error=exc.message,
            )
        self.retry_state.record_success()
        logger.info(
            "keepalive_renewed",
            trigger=trigger.value,
            credential_version=renewed.version,
        )
