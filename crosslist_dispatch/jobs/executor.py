from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from crosslist_dispatch.core.crypto import CredentialCipher, EncryptionError
from crosslist_dispatch.core.platforms import (
    LISTING_NOT_FOUND_MESSAGE,
    PLATFORM_NOT_CONNECTED_MESSAGE,
    has_usable_credentials,
)
from crosslist_dispatch.schemas.listings import Listing
from crosslist_dispatch.services.field_mapper import map_listing_for_platform
from crosslist_dispatch.services.repository import RepositoryUnavailableError

RETRYABLE_STATUS_CODES = {408, 425, 429}
CREDENTIALS_UNREADABLE_MESSAGE = "Failed to decrypt credentials. Please reconnect your account."


class ExecutionFailure(Exception):
    """An attempt failed and retrying will not help."""


class RecoverableExecutionError(ExecutionFailure):
    """An attempt failed for a reason that may clear up on retry."""


@dataclass(slots=True)
class ExecutionOutcome:
    platform_listing_id: str | None = None
    platform_url: str | None = None


PlatformExecutor = Callable[[dict[str, Any]], Awaitable[ExecutionOutcome]]


async def build_execution_request(
    store: Any,
    job: dict[str, Any],
    cipher: CredentialCipher | None = None,
) -> dict[str, Any]:
    connection = await store.get_connection(job["user_id"], job["platform"])
    if not connection or not connection["is_active"] or not has_usable_credentials(connection["encrypted_credentials"]):
        raise ExecutionFailure(PLATFORM_NOT_CONNECTED_MESSAGE)

    request: dict[str, Any] = {
        "job_id": job["job_id"],
        "user_id": job["user_id"],
        "listing_id": job["listing_id"],
        "platform": job["platform"],
        "operation": job["operation"],
        "encrypted_credentials": connection["encrypted_credentials"],
    }
    if cipher is not None:
        try:
            username, password = cipher.decrypt(request.pop("encrypted_credentials"))
        except EncryptionError as exc:
            raise ExecutionFailure(CREDENTIALS_UNREADABLE_MESSAGE) from exc
        request["credentials"] = {"username": username, "password": password}
    if job["operation"] == "DELETE":
        request["platform_listing_id"] = job["platform_listing_id"]
        return request

    row = await store.get_listing(job["listing_id"], job["user_id"])
    if row is None:
        raise ExecutionFailure(LISTING_NOT_FOUND_MESSAGE)
    request["listing_data"] = map_listing_for_platform(Listing.model_validate(row), job["platform"])
    return request


async def execute_job(
    job: dict[str, Any],
    *,
    store: Any,
    executors: Mapping[str, PlatformExecutor],
    cipher: CredentialCipher | None = None,
) -> ExecutionOutcome:
    executor = executors.get(job.get("platform", ""))
    if executor is None:
        raise ExecutionFailure(f"No executor configured for platform: {job.get('platform')}")
    try:
        request = await build_execution_request(store, job, cipher)
    except RepositoryUnavailableError as exc:
        raise RecoverableExecutionError(str(exc) or "job store unavailable") from exc
    return await executor(request)


class HttpAutomationExecutor:
    """Runs a job on the browser-automation service over HTTP."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.client = client

    async def __call__(self, request: dict[str, Any]) -> ExecutionOutcome:
        url = f"{self.base_url}/jobs/{request['platform']}"
        try:
            if self.client is not None:
                response = await self.client.post(url, json=request)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(url, json=request)
        except httpx.TransportError as exc:
            raise RecoverableExecutionError(f"automation service unreachable: {exc}") from exc

        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES:
            raise RecoverableExecutionError(f"automation service returned {response.status_code}")
        if response.status_code >= 400:
            raise ExecutionFailure(_error_detail(response))

        try:
            payload = response.json()
        except ValueError as exc:
            raise ExecutionFailure(
                f"automation service returned {response.status_code} with an unreadable body; "
                "check the marketplace before retrying"
            ) from exc
        if not isinstance(payload, dict):
            payload = {}
        if payload.get("success") is False:
            raise ExecutionFailure(str(payload.get("error") or "Unknown error occurred"))
        return ExecutionOutcome(
            platform_listing_id=_as_text(payload.get("platformListingId")),
            platform_url=_as_text(payload.get("platformUrl")),
        )


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"automation service returned {response.status_code}"
    if isinstance(payload, dict):
        detail = payload.get("error") or payload.get("detail")
        if isinstance(detail, str) and detail:
            return detail
    return f"automation service returned {response.status_code}"


def _as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None
