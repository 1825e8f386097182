from __future__ import annotations

import asyncio

import httpx
import pytest

from crosslist_dispatch.core.auth import AuthUnavailableError, UnauthenticatedError
from crosslist_dispatch.core.config import Settings
from crosslist_dispatch.core.security import AgentAuthenticator
from crosslist_dispatch.services.store import InMemoryStore


def _store() -> InMemoryStore:
    store = InMemoryStore()
    store.add_user("user-1")
    return store


def _supabase_settings() -> Settings:
    return Settings(supabase_url="https://example.supabase.co", supabase_anon_key="anon-key")


def _authenticate(handler, user_id: str = "user-1", token: str = "jwt") -> object:
    async def _call():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            authenticator = AgentAuthenticator(_store(), _supabase_settings(), client=client)
            return await authenticator.authenticate(user_id, token)

    return asyncio.run(_call())


def test_existing_user_is_accepted_without_identity_provider() -> None:
    authenticator = AgentAuthenticator(_store(), Settings(supabase_url=None, supabase_anon_key=None))
    principal = asyncio.run(authenticator.authenticate("user-1", "any-token"))

    assert principal.user_id == "user-1"
    assert principal.token_verified is False


def test_missing_identity_and_unknown_user_are_rejected() -> None:
    authenticator = AgentAuthenticator(_store(), Settings(supabase_url=None, supabase_anon_key=None))
    with pytest.raises(UnauthenticatedError, match="Missing authentication"):
        asyncio.run(authenticator.authenticate(None, "token"))
    with pytest.raises(UnauthenticatedError, match="Invalid user"):
        asyncio.run(authenticator.authenticate("user-9", "token"))


def test_token_must_belong_to_the_user() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer jwt"
        assert request.headers["apikey"] == "anon-key"
        assert request.url.path == "/auth/v1/user"
        return httpx.Response(200, json={"id": "user-1"})

    principal = _authenticate(handler)
    assert principal.token_verified is True

    def other_user(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "user-2"})

    with pytest.raises(UnauthenticatedError):
        _authenticate(other_user)


def test_rejected_and_unavailable_tokens() -> None:
    def rejected(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"msg": "invalid JWT"})

    with pytest.raises(UnauthenticatedError, match="Invalid auth token"):
        _authenticate(rejected)

    def broken(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    with pytest.raises(AuthUnavailableError):
        _authenticate(broken)
