from __future__ import annotations

from typing import Optional


class SessionError(Exception):
    """Base class for session-lifecycle failures.

    Each subclass carries a stable ``error_code`` so hosts can branch on it
    without matching message text:
    - rejected (credential definitively invalid)
    - transient (network, timeout, 5xx)
    - version_mismatch (server advanced the credential version)
    - status_unavailable (onboarding status unknown)
    - onboarding_order (step submitted ahead of an earlier pending step)
    """

    error_code: str = "session_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class RejectionError(SessionError):
    """Credential rejected by the Authentication Service; never retried."""
    error_code = "rejected"


class VersionMismatchError(RejectionError):
    """Renewal succeeded but the server-reported version was not the expected one."""
    error_code = "version_mismatch"

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"credential version {actual} does not match expected {expected}",
            detail={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class TransientError(SessionError):
    """Network, timeout or server-side failure; eligible for one retry."""
    error_code = "transient"


class StatusQueryError(SessionError):
    """Onboarding status could not be obtained."""
    error_code = "status_unavailable"


class OnboardingOrderError(SessionError):
    """A later onboarding step was submitted while an earlier one is pending."""
    error_code = "onboarding_order"


__all__ = [
    "SessionError",
    "RejectionError",
    "VersionMismatchError",
    "TransientError",
    "StatusQueryError",
    "OnboardingOrderError",
]
