from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionlife.storage.models import OnboardingStatus, OnboardingStep


class KeepAliveResponse(BaseModel):
    """Body of a successful ``POST /auth/keep-alive``."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    token: str = Field(min_length=1)
    version: int = Field(alias="tokenVersion", ge=0)
    subject: Optional[str] = Field(default=None, alias="userId")

    @field_validator("subject", mode="before")
    @classmethod
    def _stringify_subject(cls, value: Any) -> Any:
        if value is None:
            return None
        return str(value)


class PendingSteps(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    requires_password_change: bool = Field(default=False, alias="requiresPasswordChange")
    requires_profile_completion: bool = Field(default=False, alias="requiresProfileCompletion")
    is_first_time_user: bool = Field(default=False, alias="isFirstTimeUser")


class OnboardingStatusPayload(BaseModel):
    """``data`` member of ``GET /users/onboarding-status``."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    is_first_login: bool = Field(default=False, alias="isFirstLogin")
    is_profile_completed: bool = Field(default=True, alias="isProfileCompleted")
    is_temporary_password: bool = Field(default=False, alias="isTemporaryPassword")
    email: Optional[str] = None
    role: Optional[str] = Field(default=None, alias="rol")
    pending_steps: PendingSteps = Field(alias="pendingSteps")

    def to_status(self) -> OnboardingStatus:
        pending = set()
        if self.pending_steps.requires_password_change:
            pending.add(OnboardingStep.PASSWORD_CHANGE)
        if self.pending_steps.requires_profile_completion:
            pending.add(OnboardingStep.PROFILE_COMPLETION)
        return OnboardingStatus(
            pending=frozenset(pending),
            is_first_login=self.is_first_login or self.pending_steps.is_first_time_user,
            email=self.email,
            role=self.role,
        )


class OnboardingStatusEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: Optional[str] = None
    data: OnboardingStatusPayload


class PasswordChangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(alias="currentPassword", min_length=1)
    new_password: str = Field(alias="newPassword", min_length=1)


class ProfileCompletionRequest(BaseModel):
    """Profile fields are owned by the profile workflow; passed through as-is."""

    model_config = ConfigDict(extra="allow")
