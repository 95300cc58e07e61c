from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credential:
    """Renewable token proving an authenticated session.

    Replaced as a whole on every renewal; never updated in place.
    """

    token: str
    version: int = 0
    issued_at: datetime = field(default_factory=_utcnow)
    subject: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "version": self.version,
            "issued_at": self.issued_at.isoformat(),
            "subject": self.subject,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Credential":
        issued_raw = data.get("issued_at")
        issued_at = datetime.fromisoformat(issued_raw) if issued_raw else _utcnow()
        if issued_at.tzinfo is None:
            issued_at = issued_at.replace(tzinfo=timezone.utc)
        return cls(
            token=data["token"],
            version=int(data.get("version", 0)),
            issued_at=issued_at,
            subject=data.get("subject"),
        )


class Phase(str, Enum):
    ACTIVE = "active"
    WARNING = "warning"
    EXPIRED = "expired"


@dataclass(frozen=True)
class SessionPhase:
    kind: Phase
    remaining_seconds: Optional[int] = None

    @classmethod
    def active(cls) -> "SessionPhase":
        return cls(Phase.ACTIVE)

    @classmethod
    def warning(cls, remaining_seconds: int) -> "SessionPhase":
        return cls(Phase.WARNING, remaining_seconds)

    @classmethod
    def expired(cls) -> "SessionPhase":
        return cls(Phase.EXPIRED)


class SessionEndReason(str, Enum):
    INACTIVITY = "inactivity"
    REJECTED = "rejected"
    VERSION_MISMATCH = "version_mismatch"
    LOGOUT = "logout"
    ONBOARDING_ABANDONED = "onboarding_abandoned"
    INVALID_ON_RESUME = "invalid_on_resume"


class OnboardingStep(str, Enum):
    """Mandatory account-setup steps, declared in precedence order."""

    PASSWORD_CHANGE = "password_change"
    PROFILE_COMPLETION = "profile_completion"

    @property
    def rank(self) -> int:
        return STEP_PRECEDENCE.index(self)


STEP_PRECEDENCE: Tuple[OnboardingStep, ...] = tuple(OnboardingStep)


@dataclass(frozen=True)
class OnboardingStatus:
    pending: FrozenSet[OnboardingStep] = frozenset()
    is_first_login: bool = False
    email: Optional[str] = None
    role: Optional[str] = None

    @property
    def ordered_pending(self) -> Tuple[OnboardingStep, ...]:
        return tuple(step for step in STEP_PRECEDENCE if step in self.pending)

    @property
    def requires_password_change(self) -> bool:
        return OnboardingStep.PASSWORD_CHANGE in self.pending

    @property
    def requires_profile_completion(self) -> bool:
        return OnboardingStep.PROFILE_COMPLETION in self.pending

    @property
    def is_complete(self) -> bool:
        return not self.pending


@dataclass
class RetryState:
    last_attempt_at: Optional[float] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.last_error = None

    def record_failure(self, error: str) -> None:
        self.consecutive_failures += 1
        self.last_error = error
