from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional, Tuple

from sessionlife.config import CredentialBackend, Settings
from sessionlife.logging import get_logger, set_session_trace_id
from sessionlife.service.activity import ActivityAggregator, InputSurface, LocalInputSurface
from sessionlife.service.auth_client import AuthBackend, HttpAuthClient
from sessionlife.service.clock import AsyncioClock, Clock
from sessionlife.service.errors import RejectionError
from sessionlife.service.expiration import Navigator, SessionEndedListener, SessionExpirationHandler
from sessionlife.service.inactivity import InactivityMonitor, PhaseListener
from sessionlife.service.keepalive import KeepAliveScheduler, RenewalTrigger
from sessionlife.service.onboarding import GateState, OnboardingGate
from sessionlife.storage.credentials import (
    CredentialStore,
    FileCredentialStore,
    MemoryCredentialStore,
    RedisCredentialStore,
)
from sessionlife.storage.models import (
    Credential,
    OnboardingStep,
    SessionEndReason,
    SessionPhase,
)

logger = get_logger(__name__)


def build_credential_store(settings: Settings) -> CredentialStore:
    if settings.credential_backend is CredentialBackend.FILE:
        return FileCredentialStore(Path(settings.state_dir) / "credential.json")
    if settings.credential_backend is CredentialBackend.REDIS:
        return RedisCredentialStore(
            redis_url=settings.redis_url,
            key=settings.redis_key,
            ttl_seconds=int(settings.inactivity_timeout),
        )
    return MemoryCredentialStore()


class SessionController:
    """Owns one client's session lifecycle: keep-alive, inactivity and onboarding.

    Construct it once per application shell, feed it the routing layer's
    tracking flag, and ``dispose()`` it when the shell goes away. Nothing
    here is global; two controllers never share timers or state.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        backend: AuthBackend,
        navigator: Navigator,
        store: Optional[CredentialStore] = None,
        clock: Optional[Clock] = None,
        surface: Optional[InputSurface] = None,
        tracking_enabled: bool = True,
    ) -> None:
        self.settings = settings
        self.backend = backend
        self.navigator = navigator
        self.store = store if store is not None else MemoryCredentialStore()
        self.clock = clock if clock is not None else AsyncioClock()
        self.surface = surface if surface is not None else LocalInputSurface()

        self.activity = ActivityAggregator(
            self.clock, self.surface, debounce=settings.activity_debounce
        )
        self.keepalive = KeepAliveScheduler(
            self.clock,
            self.store,
            backend,
            self.activity,
            interval=settings.keep_alive_interval,
            initial_delay=settings.keep_alive_initial_delay,
            min_spacing=settings.min_renewal_spacing,
            retry_backoff=settings.retry_backoff,
            version_step=settings.version_step,
            on_rejected=self._end_session,
        )
        self.monitor = InactivityMonitor(
            self.clock,
            self.activity,
            inactivity_timeout=settings.inactivity_timeout,
            warning_window=settings.warning_window,
            poll_interval=settings.poll_interval,
            refresh_at=settings.refresh_at,
            on_expired=self._on_inactive,
            on_refresh_due=self._on_refresh_due,
        )
        self.gate = OnboardingGate(self.store, backend, on_rejected=self._end_session)
        self.expiration = SessionExpirationHandler(
            self.clock,
            self.store,
            backend,
            navigator,
            keepalive=self.keepalive,
            monitor=self.monitor,
            clear_onboarding=self.gate.reset,
            logout_timeout=settings.logout_timeout,
        )
        self.expiration.subscribe(self._on_session_ended)
        self._tracking_enabled = tracking_enabled
        self._disposed = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        navigator: Navigator,
        surface: Optional[InputSurface] = None,
        tracking_enabled: bool = True,
    ) -> "SessionController":
        backend = HttpAuthClient(settings.auth_base_url, timeout=settings.request_timeout)
        return cls(
            settings,
            backend=backend,
            navigator=navigator,
            store=build_credential_store(settings),
            surface=surface,
            tracking_enabled=tracking_enabled,
        )

    # -- lifecycle -------------------------------------------------------

    @property
    def session_active(self) -> bool:
        return self.store.current() is not None and not self.expiration.expiring

    @property
    def tracking_enabled(self) -> bool:
        return self._tracking_enabled

    async def login(self, credential: Credential) -> GateState:
        """Begin a fresh session instance and query onboarding status."""
        self._ensure_open()
        self._stop_components()
        trace_id = set_session_trace_id()
        self.expiration.reset()
        self.gate.reset()
        self.store.replace(credential)
        self.activity.touch()
        if self._tracking_enabled:
            self._start_tracking()
        self.keepalive.start(credential)
        logger.info("session_started", credential_version=credential.version, trace_id=trace_id)
        return await self.gate.refresh()

    async def resume(self) -> GateState:
        """Pick up a credential persisted by an earlier run, if it is still valid."""
        self._ensure_open()
        credential = self.store.current()
        if credential is None:
            return self.gate.state
        try:
            await self.backend.validate_credential(credential)
        except RejectionError as exc:
            logger.info("session_resume_rejected", error=exc.message)
            self.expiration.reset()
            task = self.expiration.expire(SessionEndReason.INVALID_ON_RESUME)
            if task is not None:
                await task
            return self.gate.state
        except Exception as exc:
            # Unknown validity; keep-alive settles it one way or the other
            logger.warning(
                "session_resume_unverified",
                error_type=type(exc).__name__,
                error=str(exc),
            )
        return await self.login(credential)

    def set_tracking_enabled(self, enabled: bool) -> None:
        """Routing layer switch: False on public pages, True elsewhere."""
        if enabled == self._tracking_enabled:
            return
        self._tracking_enabled = enabled
        if not self.session_active:
            return
        if enabled:
            self.activity.touch()
            self._start_tracking()
        else:
            self.activity.disable()
            self.monitor.suspend()
        logger.debug("session_tracking_toggled", enabled=enabled)

    def credential_rejected(self) -> None:
        """Report a 401 seen by any other request made with the credential."""
        if not self.session_active:
            return
        self._end_session(SessionEndReason.REJECTED)

    async def logout(self) -> None:
        await self._end_and_wait(SessionEndReason.LOGOUT)

    async def abandon_onboarding(self) -> None:
        await self._end_and_wait(SessionEndReason.ONBOARDING_ABANDONED)

    def dispose(self) -> None:
        """Detach from the input surface and cancel every timer."""
        if self._disposed:
            return
        self._stop_components()
        self._disposed = True
        logger.debug("session_controller_disposed")

    async def aclose(self) -> None:
        self.dispose()
        closer = getattr(self.backend, "aclose", None)
        if closer is not None:
            await closer()

    # -- queries exposed to the application ------------------------------

    def current_phase(self) -> SessionPhase:
        return self.monitor.current_phase()

    def extend_session(self) -> bool:
        """Counts as activity ("stay logged in") and renews immediately."""
        if not self.session_active or not self._tracking_enabled:
            return False
        self.activity.record_activity()
        self.keepalive.attempt_renewal(RenewalTrigger.EXPLICIT)
        return True

    def is_gated(self) -> bool:
        return self.gate.is_gated()

    def navigation_allowed(self) -> bool:
        return self.session_active and self.gate.navigation_allowed()

    def pending_steps(self) -> Tuple[OnboardingStep, ...]:
        return self.gate.pending_steps()

    def gate_state(self) -> GateState:
        return self.gate.state

    async def retry_onboarding_status(self) -> GateState:
        return await self.gate.refresh()

    async def submit_onboarding_step(self, step: OnboardingStep, payload: dict) -> GateState:
        return await self.gate.submit_step(step, payload)

    async def onboarding_step_completed(self, step: OnboardingStep) -> GateState:
        return await self.gate.step_completed(step)

    def on_session_ended(self, listener: SessionEndedListener) -> Callable[[], None]:
        return self.expiration.subscribe(listener)

    def on_phase_change(self, listener: PhaseListener) -> Callable[[], None]:
        return self.monitor.subscribe(listener)

    # -- internals -------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._disposed:
            raise RuntimeError("session controller has been disposed")

    def _start_tracking(self) -> None:
        self.activity.enable()
        self.monitor.start()

    def _stop_components(self) -> None:
        self.keepalive.stop()
        self.monitor.stop()
        self.activity.disable()

    def _end_session(self, reason: SessionEndReason) -> None:
        self.expiration.expire(reason)

    async def _end_and_wait(self, reason: SessionEndReason) -> None:
        task = self.expiration.expire(reason)
        if task is not None:
            await task

    def _on_inactive(self) -> None:
        self.expiration.expire(SessionEndReason.INACTIVITY)

    def _on_refresh_due(self) -> None:
        self.keepalive.request_renewal(RenewalTrigger.THRESHOLD)

    def _on_session_ended(self, reason: SessionEndReason) -> None:
        self.activity.disable()
