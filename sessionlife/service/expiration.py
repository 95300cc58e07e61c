from __future__ import annotations

import asyncio
from typing import Any, Callable, List, Optional, Protocol

from sessionlife.logging import get_logger
from sessionlife.service.auth_client import AuthBackend
from sessionlife.service.clock import Clock
from sessionlife.service.inactivity import InactivityMonitor
from sessionlife.service.keepalive import KeepAliveScheduler
from sessionlife.storage.credentials import CredentialStore
from sessionlife.storage.models import Credential, SessionEndReason

logger = get_logger(__name__)

SessionEndedListener = Callable[[SessionEndReason], None]


class Navigator(Protocol):
    """Routing layer; only the redirect to the unauthenticated entry point is needed."""

    def redirect_to_login(self, reason: SessionEndReason) -> None: ...


class SessionExpirationHandler:
    """Single exit path for a session instance.

    Local cleanup always happens first and synchronously; telling the
    server is best-effort and never delays or prevents it.
    """

    def __init__(
        self,
        clock: Clock,
        store: CredentialStore,
        backend: AuthBackend,
        navigator: Navigator,
        *,
        keepalive: KeepAliveScheduler,
        monitor: InactivityMonitor,
        clear_onboarding: Optional[Callable[[], None]] = None,
        logout_timeout: float = 5.0,
    ) -> None:
        self.clock = clock
        self.store = store
        self.backend = backend
        self.navigator = navigator
        self.keepalive = keepalive
        self.monitor = monitor
        self.clear_onboarding = clear_onboarding
        self.logout_timeout = logout_timeout
        self._expiring = False
        self._reason: Optional[SessionEndReason] = None
        self._generation = 0
        self._listeners: List[SessionEndedListener] = []

    @property
    def expiring(self) -> bool:
        return self._expiring

    @property
    def reason(self) -> Optional[SessionEndReason]:
        return self._reason

    def subscribe(self, listener: SessionEndedListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def reset(self) -> None:
        """Re-arm for a fresh login."""
        self._expiring = False
        self._reason = None
        self._generation += 1

    def expire(self, reason: SessionEndReason) -> "Optional[asyncio.Task[Any]]":
        """End the session; repeated calls while expiring are no-ops.

        Returns the task finishing the remote logout and redirect, or None
        when the call was a duplicate.
        """
        if self._expiring:
            logger.debug(
                "session_expire_duplicate",
                reason=reason.value,
                first_reason=self._reason.value if self._reason else None,
            )
            return None
        self._expiring = True
        self._reason = reason
        credential = self.store.current()
        logger.info("session_expiring", reason=reason.value)

        self.keepalive.stop()
        self.monitor.mark_expired()
        try:
            self.store.clear()
        except Exception as exc:
            logger.error("credential_clear_failed", error_type=type(exc).__name__, error=str(exc))
        if self.clear_onboarding is not None:
            self.clear_onboarding()
        self._notify(reason)
        return self.clock.spawn(self._finish(credential, reason, self._generation))

    def _notify(self, reason: SessionEndReason) -> None:
        for listener in list(self._listeners):
            try:
                listener(reason)
            except Exception as exc:
                logger.error(
                    "session_ended_listener_failed",
                    reason=reason.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

    async def _finish(
        self, credential: Optional[Credential], reason: SessionEndReason, generation: int
    ) -> None:
        if credential is not None:
            try:
                await asyncio.wait_for(
                    self.backend.invalidate_credential(credential), timeout=self.logout_timeout
                )
            except Exception as exc:
                logger.warning(
                    "remote_logout_failed",
                    reason=reason.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
        if generation != self._generation:
            # A fresh login re-armed the handler while the logout was pending
            logger.info("session_redirect_skipped", reason=reason.value)
            return
        try:
            self.navigator.redirect_to_login(reason)
        except Exception as exc:
            logger.error(
                "redirect_failed",
                reason=reason.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        logger.info("session_ended", reason=reason.value)
