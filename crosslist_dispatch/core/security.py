from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httpx

from crosslist_dispatch.core.auth import AgentPrincipal, AuthUnavailableError, UnauthenticatedError
from crosslist_dispatch.core.config import Settings


class AgentAuthenticator:
    """Validates the ``userId``/``authToken`` pair the extension sends on every call.

    The user must exist in the store. When Supabase is configured the token is
    also resolved against ``/auth/v1/user`` and must belong to the same user.
    """

    def __init__(
        self,
        repository: Any,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.client = client

    async def authenticate(self, user_id: str | None, auth_token: str | None) -> AgentPrincipal:
        if not user_id or not auth_token:
            raise UnauthenticatedError("Missing authentication")

        if not await self.repository.user_exists(user_id):
            raise UnauthenticatedError("Invalid user")

        token_verified = False
        if self.settings.supabase_url and self.settings.supabase_anon_key:
            user = await self._fetch_supabase_user(auth_token)
            if user.get("id") != user_id:
                raise UnauthenticatedError("Invalid user")
            token_verified = True

        return AgentPrincipal(
            user_id=user_id,
            authenticated_at=datetime.now(timezone.utc),
            token_verified=token_verified,
        )

    async def _fetch_supabase_user(self, token: str) -> dict[str, Any]:
        assert self.settings.supabase_url is not None
        headers = {
            "Authorization": f"Bearer {token}",
            "apikey": self.settings.supabase_anon_key or "",
        }
        url = f"{self.settings.supabase_url.rstrip('/')}/auth/v1/user"

        try:
            if self.client is not None:
                response = await self.client.get(url, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.settings.auth_timeout_seconds) as client:
                    response = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:  # pragma: no cover - network dependent
            raise AuthUnavailableError("Supabase auth verification unavailable") from exc

        if response.status_code in {401, 403}:
            raise UnauthenticatedError("Invalid auth token")
        if response.status_code != 200:
            raise AuthUnavailableError("Supabase auth verification failed")

        payload = response.json()
        return payload if isinstance(payload, dict) else {}
