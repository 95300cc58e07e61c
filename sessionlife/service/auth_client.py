from __future__ import annotations

from typing import Any, Optional, Protocol

import httpx
from pydantic import ValidationError

from sessionlife.api.schemas import (
    KeepAliveResponse,
    OnboardingStatusEnvelope,
    PasswordChangeRequest,
    ProfileCompletionRequest,
)
from sessionlife.logging import get_logger
from sessionlife.service.errors import (
    RejectionError,
    SessionError,
    StatusQueryError,
    TransientError,
)
from sessionlife.storage.models import Credential, OnboardingStatus, OnboardingStep

logger = get_logger(__name__)

_REJECTION_STATUSES = {401, 403}
_TRANSIENT_STATUSES = {408, 425, 429}

# Submission route per onboarding step
STEP_ROUTES = {
    OnboardingStep.PASSWORD_CHANGE: "/users/change-password",
    OnboardingStep.PROFILE_COMPLETION: "/users/complete-profile",
}


class AuthBackend(Protocol):
    """Authentication and Onboarding Status services as seen by the client."""

    async def validate_credential(self, credential: Credential) -> None: ...

    async def renew_credential(self, credential: Credential) -> Credential: ...

    async def invalidate_credential(self, credential: Credential) -> None: ...

    async def get_onboarding_status(self, credential: Credential) -> OnboardingStatus: ...

    async def complete_step(
        self, credential: Credential, step: OnboardingStep, payload: dict
    ) -> None: ...

    async def acknowledge_onboarding(self, credential: Credential) -> None: ...


def classify_http_error(exc: Exception, *, operation: str) -> SessionError:
    """Map an httpx failure onto the rejection/transient taxonomy."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in _REJECTION_STATUSES:
            return RejectionError(f"{operation} rejected ({status})", status_code=status)
        if status >= 500 or status in _TRANSIENT_STATUSES:
            return TransientError(f"{operation} failed ({status})", status_code=status)
        return SessionError(f"{operation} failed ({status})", status_code=status)
    if isinstance(exc, httpx.TimeoutException):
        return TransientError(f"{operation} timed out")
    if isinstance(exc, httpx.TransportError):
        return TransientError(f"{operation} could not reach the server")
    return SessionError(f"{operation} failed: {type(exc).__name__}")


class HttpAuthClient:
    """``AuthBackend`` over HTTP using bearer credentials."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
                follow_redirects=False,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        credential: Credential,
        *,
        operation: str,
        json: Any = None,
    ) -> httpx.Response:
        client = await self._get_client()
        headers = {"Authorization": f"Bearer {credential.token}", "Accept": "application/json"}
        try:
            response = await client.request(method, path, headers=headers, json=json)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            error = classify_http_error(exc, operation=operation)
            logger.warning(
                "auth_request_failed",
                operation=operation,
                path=path,
                error_code=error.error_code,
                status_code=error.status_code,
                error=str(exc),
            )
            raise error from exc
        return response

    async def validate_credential(self, credential: Credential) -> None:
        await self._request("GET", "/users/me", credential, operation="validate")

    async def renew_credential(self, credential: Credential) -> Credential:
        response = await self._request("POST", "/auth/keep-alive", credential, operation="keep_alive")
        try:
            body = KeepAliveResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise TransientError("keep-alive returned an unreadable body") from exc
        return Credential(
            token=body.token,
            version=body.version,
            subject=body.subject or credential.subject,
        )

    async def invalidate_credential(self, credential: Credential) -> None:
        await self._request("POST", "/auth/logout", credential, operation="logout")

    async def get_onboarding_status(self, credential: Credential) -> OnboardingStatus:
        try:
            response = await self._request(
                "GET", "/users/onboarding-status", credential, operation="onboarding_status"
            )
        except RejectionError:
            raise
        except SessionError as exc:
            raise StatusQueryError(exc.message, status_code=exc.status_code) from exc
        try:
            envelope = OnboardingStatusEnvelope.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise StatusQueryError("onboarding status returned an unreadable body") from exc
        return envelope.data.to_status()

    async def complete_step(
        self, credential: Credential, step: OnboardingStep, payload: dict
    ) -> None:
        if step is OnboardingStep.PASSWORD_CHANGE:
            body = PasswordChangeRequest.model_validate(payload).model_dump(by_alias=True)
        else:
            body = ProfileCompletionRequest.model_validate(payload).model_dump()
        await self._request("POST", STEP_ROUTES[step], credential, operation=step.value, json=body)

    async def acknowledge_onboarding(self, credential: Credential) -> None:
        await self._request(
            "POST", "/users/complete-onboarding", credential, operation="complete_onboarding"
        )
