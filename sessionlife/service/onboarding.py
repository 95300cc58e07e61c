from __future__ import annotations

from enum import Enum
from typing import Callable, Optional, Tuple

from sessionlife.logging import get_logger, sanitize_error_message
from sessionlife.service.auth_client import AuthBackend
from sessionlife.service.errors import OnboardingOrderError, RejectionError
from sessionlife.storage.credentials import CredentialStore
from sessionlife.storage.models import OnboardingStatus, OnboardingStep, SessionEndReason

logger = get_logger(__name__)


class GateState(str, Enum):
    UNKNOWN = "unknown"
    CHECKING = "checking"
    GATED = "gated"
    UNGATED = "ungated"
    ERROR = "error"


class OnboardingGate:
    """Blocks normal navigation until every mandatory setup step is done.

    Status is only ever replaced by a full re-query, never patched locally.
    A failed query leaves the gate in ``ERROR``: navigation stays blocked and
    the caller offers a retry. ``UNGATED`` is terminal until ``reset()``.
    """

    def __init__(
        self,
        store: CredentialStore,
        backend: AuthBackend,
        *,
        on_rejected: Optional[Callable[[SessionEndReason], None]] = None,
    ) -> None:
        self.store = store
        self.backend = backend
        self.on_rejected = on_rejected
        self._state = GateState.UNKNOWN
        self._status: Optional[OnboardingStatus] = None
        self._error: Optional[str] = None
        self._acknowledged = False

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def status(self) -> Optional[OnboardingStatus]:
        return self._status

    @property
    def error(self) -> Optional[str]:
        return self._error

    def is_gated(self) -> bool:
        return self._state is GateState.GATED

    def navigation_allowed(self) -> bool:
        return self._state is GateState.UNGATED

    def pending_steps(self) -> Tuple[OnboardingStep, ...]:
        if self._status is None:
            return ()
        return self._status.ordered_pending

    def current_step(self) -> Optional[OnboardingStep]:
        steps = self.pending_steps()
        return steps[0] if steps else None

    def reset(self) -> None:
        """Forget everything; used on fresh login and on session end."""
        self._state = GateState.UNKNOWN
        self._status = None
        self._error = None
        self._acknowledged = False

    async def refresh(self) -> GateState:
        if self._state is GateState.UNGATED:
            return self._state
        credential = self.store.current()
        if credential is None:
            self.reset()
            return self._state

        self._state = GateState.CHECKING
        try:
            status = await self.backend.get_onboarding_status(credential)
        except RejectionError as exc:
            if self.store.current() != credential:
                logger.info("onboarding_stale_rejection_ignored")
                return self._state
            logger.warning("onboarding_status_rejected", error=exc.message)
            self.reset()
            if self.on_rejected is not None:
                self.on_rejected(SessionEndReason.REJECTED)
            return self._state
        except Exception as exc:
            if self.store.current() != credential:
                return self._state
            self._status = None
            self._error = sanitize_error_message(str(exc))
            self._state = GateState.ERROR
            logger.warning(
                "onboarding_status_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self._state

        if self.store.current() != credential:
            # Session replaced or ended while the query was in flight
            return self._state

        self._status = status
        self._error = None
        if status.is_complete:
            self._state = GateState.UNGATED
            logger.info("onboarding_ungated")
            await self._acknowledge(status)
        else:
            self._state = GateState.GATED
            logger.info(
                "onboarding_gated",
                pending=[step.value for step in status.ordered_pending],
            )
        return self._state

    def authorize_submission(self, step: OnboardingStep) -> None:
        """Raise unless ``step`` is the earliest pending step."""
        if self._state is not GateState.GATED:
            raise OnboardingOrderError(
                f"onboarding is not accepting submissions (state={self._state.value})",
                detail={"step": step.value, "state": self._state.value},
            )
        current = self.current_step()
        if step is not current:
            raise OnboardingOrderError(
                f"{step.value} cannot be completed before {current.value if current else 'none'}",
                detail={"step": step.value, "pending": [s.value for s in self.pending_steps()]},
            )

    async def submit_step(self, step: OnboardingStep, payload: dict) -> GateState:
        """Submit ``step`` and re-query status.

        A failed submission leaves the gate ``GATED`` with ``error`` set so the
        workflow can show it and let the user try again.
        """
        self.authorize_submission(step)
        credential = self.store.current()
        if credential is None:
            self.reset()
            return self._state
        try:
            await self.backend.complete_step(credential, step, payload)
        except RejectionError as exc:
            if self.store.current() != credential:
                logger.info("onboarding_stale_rejection_ignored", step=step.value)
                return self._state
            logger.warning("onboarding_step_rejected", step=step.value, error=exc.message)
            self.reset()
            if self.on_rejected is not None:
                self.on_rejected(SessionEndReason.REJECTED)
            return self._state
        except Exception as exc:
            if self.store.current() != credential:
                return self._state
            self._error = sanitize_error_message(str(exc))
            logger.warning(
                "onboarding_step_failed",
                step=step.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self._state
        if self.store.current() != credential:
            return self._state
        logger.info("onboarding_step_submitted", step=step.value)
        return await self.refresh()

    async def step_completed(self, step: OnboardingStep) -> GateState:
        """Completion signal from a workflow that submitted on its own."""
        self.authorize_submission(step)
        logger.info("onboarding_step_completed", step=step.value)
        return await self.refresh()

    async def _acknowledge(self, status: OnboardingStatus) -> None:
        if self._acknowledged or not status.is_first_login:
            return
        credential = self.store.current()
        if credential is None:
            return
        self._acknowledged = True
        try:
            await self.backend.acknowledge_onboarding(credential)
        except Exception as exc:
            logger.warning(
                "onboarding_acknowledge_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
