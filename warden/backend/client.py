"""
Persistence Service Client

Async HTTP client for the backend API that owns users, passkey credentials,
sessions and opaque access tokens. All calls are authenticated with the
internal API key.

Connection failures and timeouts raise UpstreamUnavailable; non-success
responses raise BackendError, except 404 on lookups which returns None.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, TypeVar
from urllib.parse import quote

import aiohttp
import structlog
from pydantic import BaseModel, ValidationError

from warden.backend.models import (
    ApiUser,
    CreatedSession,
    CredentialRecord,
    SessionValidation,
    TokenGrant,
    TokenValidation,
)
from warden.core.config import BackendSettings
from warden.errors import BackendError, UpstreamUnavailable

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class BackendClient:
    """
    Client for the remote persistence service.

    Implements both the session validator and the token validator used by
    the auth resolver.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self._logger = logger.bind(component="backend_client")

    @classmethod
    def from_settings(cls, settings: BackendSettings) -> "BackendClient":
        return cls(settings.base_url, api_key=settings.api_key, timeout=settings.timeout)

    async def initialize(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def shutdown(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    # =========================================================================
    # Users
    # =========================================================================

    async def get_user_by_id(self, user_id: str) -> Optional[ApiUser]:
        payload = await self._request("GET", f"/api/users/{quote(user_id, safe='')}", allow_not_found=True)
        if not payload or not payload.get("user"):
            return None
        return self._parse(ApiUser, payload.get("user"))

    async def get_user_by_email(self, email: str) -> Optional[ApiUser]:
        payload = await self._request(
            "GET", f"/api/users/by-email/{quote(email, safe='')}", allow_not_found=True
        )
        if not payload or not payload.get("user"):
            return None
        return self._parse(ApiUser, payload.get("user"))

    async def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        picture: Optional[str] = None,
        auth_method: str = "webauthn",
        provider: Optional[str] = None,
        provider_id: Optional[str] = None,
    ) -> ApiUser:
        """Create a user, or return the existing one for a known email."""
        body = {
            "email": email,
            "name": name,
            "picture": picture,
            "auth_method": auth_method,
            "provider": provider,
            "provider_id": provider_id,
        }
        payload = await self._request("POST", "/api/internal/users", json_body=body)
        return self._parse(ApiUser, payload.get("user"))

    # =========================================================================
    # Passkey credentials
    # =========================================================================

    async def list_credentials(self, user_id: str) -> List[CredentialRecord]:
        payload = await self._request(
            "GET",
            f"/api/webauthn/users/{quote(user_id, safe='')}/credentials",
            allow_not_found=True,
        )
        if not payload:
            return []
        return [self._parse(CredentialRecord, c) for c in payload.get("credentials", [])]

    async def get_credential(self, credential_id: str) -> Optional[CredentialRecord]:
        payload = await self._request(
            "GET",
            f"/api/webauthn/credentials/{quote(credential_id, safe='')}",
            allow_not_found=True,
        )
        if not payload or not payload.get("credential"):
            return None
        return self._parse(CredentialRecord, payload["credential"])

    async def store_credential(self, record: CredentialRecord) -> None:
        await self._request(
            "POST",
            "/api/webauthn/credentials",
            json_body=record.model_dump(mode="json", exclude_none=True),
        )

    async def update_credential_counter(
        self,
        credential_id: str,
        counter: int,
        last_used: datetime,
    ) -> None:
        await self._request(
            "PATCH",
            f"/api/webauthn/credentials/{quote(credential_id, safe='')}/counter",
            json_body={"counter": counter, "last_used": last_used.isoformat()},
        )

    async def delete_credential(self, credential_id: str) -> None:
        await self._request("DELETE", f"/api/webauthn/credentials/{quote(credential_id, safe='')}")

    async def rename_credential(self, credential_id: str, name: str) -> None:
        await self._request(
            "PATCH",
            f"/api/webauthn/credentials/{quote(credential_id, safe='')}",
            json_body={"name": name},
        )

    # =========================================================================
    # Sessions and tokens
    # =========================================================================

    async def create_session(self, user_id: str, platform: str = "web") -> CreatedSession:
        payload = await self._request(
            "POST",
            "/api/internal/sessions",
            json_body={"user_id": user_id, "platform": platform},
        )
        return self._parse(CreatedSession, payload)

    async def validate_session(self, session_token: str) -> SessionValidation:
        try:
            payload = await self._request(
                "POST",
                "/api/internal/sessions/validate",
                json_body={"session_token": session_token},
            )
        except BackendError as e:
            if e.status in (401, 404):
                return SessionValidation(valid=False)
            raise
        return self._parse(SessionValidation, payload)

    async def create_tokens(
        self,
        user_id: str,
        client_id: str,
        scope: str,
        platform: str = "ios",
    ) -> TokenGrant:
        payload = await self._request(
            "POST",
            "/api/internal/tokens",
            json_body={
                "user_id": user_id,
                "client_id": client_id,
                "scope": scope,
                "platform": platform,
            },
        )
        return self._parse(TokenGrant, payload)

    async def validate_access_token(self, token: str) -> TokenValidation:
        try:
            payload = await self._request(
                "POST",
                "/api/internal/tokens/validate",
                json_body={"token": token},
            )
        except BackendError as e:
            if e.status in (401, 404):
                return TokenValidation(valid=False)
            raise
        return self._parse(TokenValidation, payload)

    # =========================================================================
    # Transport
    # =========================================================================

    def _parse(self, model: Type[ModelT], data: Any) -> ModelT:
        """Validate a response body; a malformed body is a BackendError."""
        try:
            return model.model_validate(data)
        except ValidationError as e:
            self._logger.error(
                "Malformed backend response",
                model=model.__name__,
                errors=e.error_count(),
            )
            raise BackendError(502, f"Malformed {model.__name__} response") from e

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json_body: Optional[Dict[str, Any]] = None,
        allow_not_found: bool = False,
    ) -> Optional[Dict[str, Any]]:
        if self._session is None:
            await self.initialize()

        url = f"{self.base_url}{path}"
        try:
            async with self._session.request(
                method,
                url,
                json=json_body,
                headers=self._headers(),
            ) as response:
                text = await response.text()
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._logger.error("Backend request failed", method=method, path=path, error=str(e))
            raise UpstreamUnavailable("backend", str(e)) from e

        try:
            payload = json.loads(text) if text else {}
        except ValueError:
            payload = {}

        if status == 404 and allow_not_found:
            return None

        if status >= 400:
            message = ""
            if isinstance(payload, dict):
                message = payload.get("error") or payload.get("message") or ""
            raise BackendError(status, message or text or "request failed")

        return payload if isinstance(payload, dict) else {"data": payload}
