from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone
from typing import Any

from crosslist_dispatch.core.platforms import TERMINAL_STATUSES
from crosslist_dispatch.services.repository import (
    DELIST_PENDING_MESSAGE,
    DuplicateJobError,
    NewJob,
    PostgresRepository,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)


class InMemoryStore:
    """Process-local job store with the same contract as ``PostgresRepository``.

    Used for local development without a database and as the fixture store in
    tests. A single lock serializes mutations, which gives every conditional
    transition compare-and-swap semantics.
    """

    def __init__(self) -> None:
        self.users: dict[str, dict[str, Any]] = {}
        self.jobs: dict[str, dict[str, Any]] = {}
        self.connections: dict[tuple[str, str], dict[str, Any]] = {}
        self.listings: dict[str, dict[str, Any]] = {}
        self.platform_listings: list[dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        return None

    def add_user(self, user_id: str) -> None:
        self.users.setdefault(user_id, {"extension_connected": False, "extension_last_seen": None})

    def add_listing(self, listing: dict[str, Any]) -> None:
        self.listings[listing["id"]] = copy.deepcopy(listing)

    def add_connection(
        self,
        user_id: str,
        platform: str,
        *,
        encrypted_credentials: str | None,
        is_active: bool = True,
        platform_username: str | None = None,
    ) -> None:
        self.connections[(user_id, platform)] = {
            "platform": platform,
            "is_active": is_active,
            "encrypted_credentials": encrypted_credentials,
            "platform_username": platform_username,
        }

    async def user_exists(self, user_id: str) -> bool:
        return user_id in self.users

    async def touch_agent(self, user_id: str, *, connected: bool = False) -> None:
        async with self._lock:
            user = self.users.get(user_id)
            if user is None:
                return
            user["extension_connected"] = user["extension_connected"] or connected
            user["extension_last_seen"] = _now()

    async def get_agent_presence(self, user_id: str) -> dict[str, Any] | None:
        user = self.users.get(user_id)
        return dict(user) if user is not None else None

    async def create_job(self, job: NewJob) -> str:
        PostgresRepository._validate_new_job(job)
        async with self._lock:
            if job.job_id in self.jobs:
                raise DuplicateJobError(f"job {job.job_id} already exists")
            if job.operation == "DELETE" and self._open_delete_job(job.platform, job.platform_listing_id):
                raise RepositoryConflictError(DELIST_PENDING_MESSAGE)
            self.jobs[job.job_id] = {
                "job_id": job.job_id,
                "user_id": job.user_id,
                "listing_id": job.listing_id,
                "platform": job.platform,
                "operation": job.operation,
                "status": "queued",
                "platform_listing_id": job.platform_listing_id,
                "platform_url": None,
                "error_message": None,
                "attempts": 0,
                "created_at": job.created_at or _now(),
                "started_at": None,
                "completed_at": None,
            }
        return job.job_id

    async def get_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return dict(job)

    async def list_pending(
        self,
        *,
        user_id: str,
        platforms: list[str] | tuple[str, ...],
        since: datetime | None = None,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        rows = [
            job
            for job in self.jobs.values()
            if job["user_id"] == user_id
            and job["status"] == "queued"
            and job["platform"] in platforms
            and (since is None or job["created_at"] >= since)
        ]
        rows.sort(key=lambda job: (job["created_at"], job["job_id"]))
        return [dict(job) for job in rows[: max(1, limit)]]

    async def list_queued_for_platforms(self, platforms: list[str], limit: int) -> list[dict[str, Any]]:
        rows = [job for job in self.jobs.values() if job["status"] == "queued" and job["platform"] in platforms]
        rows.sort(key=lambda job: (job["created_at"], job["job_id"]))
        return [dict(job) for job in rows[: max(1, limit)]]

    async def transition(
        self,
        job_ids: list[str],
        from_status: str,
        to_status: str,
        fields: dict[str, Any] | None = None,
    ) -> list[str]:
        PostgresRepository._validate_transition(from_status, to_status, fields)
        error_message = (fields or {}).get("error_message")
        moved: list[str] = []
        async with self._lock:
            now = _now()
            for job_id in job_ids:
                job = self.jobs.get(job_id)
                if job is None or job["status"] != from_status:
                    continue
                job["status"] = to_status
                if error_message is not None:
                    job["error_message"] = error_message
                if to_status == "processing":
                    job["started_at"] = now
                if to_status in TERMINAL_STATUSES:
                    job["completed_at"] = now
                moved.append(job_id)
        return moved

    async def mark_terminal(
        self,
        job_id: str,
        status: str,
        *,
        platform_listing_id: str | None = None,
        platform_url: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        if status not in TERMINAL_STATUSES:
            raise RepositoryValidationError(f"{status} is not a terminal status")
        allowed_from = {"processing"} if status == "completed" else {"queued", "processing"}
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job["status"] not in allowed_from:
                return False
            job["status"] = status
            if platform_listing_id is not None:
                job["platform_listing_id"] = platform_listing_id
            if platform_url is not None:
                job["platform_url"] = platform_url
            job["error_message"] = error_message
            job["completed_at"] = _now()
            return True

    async def record_attempt(self, job_id: str, *, attempt: int, error_message: str | None) -> bool:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job["status"] != "processing":
                return False
            job["attempts"] = attempt
            job["error_message"] = error_message
            return True

    async def list_stale_processing(self, *, started_before: datetime, limit: int) -> list[dict[str, Any]]:
        rows = [
            job
            for job in self.jobs.values()
            if job["status"] == "processing" and job["started_at"] is not None and job["started_at"] <= started_before
        ]
        rows.sort(key=lambda job: job["started_at"])
        return [dict(job) for job in rows[: max(1, min(limit, 1000))]]

    async def get_active_connections(
        self,
        user_id: str,
        platforms: list[str] | tuple[str, ...],
    ) -> list[dict[str, Any]]:
        return [
            dict(connection)
            for (owner, platform), connection in self.connections.items()
            if owner == user_id and platform in platforms and connection["is_active"]
        ]

    async def get_connection(self, user_id: str, platform: str) -> dict[str, Any] | None:
        connection = self.connections.get((user_id, platform))
        return dict(connection) if connection is not None else None

    async def upsert_connection(
        self,
        *,
        user_id: str,
        platform: str,
        encrypted_credentials: str,
        platform_username: str,
    ) -> None:
        async with self._lock:
            self.connections[(user_id, platform)] = {
                "platform": platform,
                "is_active": True,
                "encrypted_credentials": encrypted_credentials,
                "platform_username": platform_username,
            }

    async def mark_connection_verified(self, *, user_id: str, platform: str, marker: str) -> None:
        async with self._lock:
            existing = self.connections.get((user_id, platform))
            if existing is None:
                self.connections[(user_id, platform)] = {
                    "platform": platform,
                    "is_active": True,
                    "encrypted_credentials": marker,
                    "platform_username": None,
                }
                return
            existing["is_active"] = True
            if not existing.get("encrypted_credentials"):
                existing["encrypted_credentials"] = marker

    async def get_listing(self, listing_id: str, user_id: str | None = None) -> dict[str, Any] | None:
        listing = self.listings.get(listing_id)
        if listing is None or (user_id is not None and listing["user_id"] != user_id):
            return None
        return copy.deepcopy(listing)

    async def find_platform_listing(
        self,
        *,
        platform: str,
        listing_id: str | None = None,
        platform_listing_id: str | None = None,
    ) -> dict[str, Any] | None:
        if listing_id is None and platform_listing_id is None:
            raise RepositoryValidationError("listing_id or platform_listing_id is required")
        for record in self.platform_listings:
            if record["platform"] != platform or record["status"] != "active":
                continue
            if listing_id is not None and record["listing_id"] != listing_id:
                continue
            if platform_listing_id is not None and record["platform_listing_id"] != platform_listing_id:
                continue
            return dict(record)
        return None

    async def record_platform_listing(
        self,
        *,
        listing_id: str,
        user_id: str,
        platform: str,
        platform_listing_id: str,
        platform_url: str | None,
    ) -> None:
        async with self._lock:
            self.platform_listings = [
                record
                for record in self.platform_listings
                if not (record["listing_id"] == listing_id and record["platform"] == platform)
            ]
            self.platform_listings.append(
                {
                    "listing_id": listing_id,
                    "user_id": user_id,
                    "platform": platform,
                    "platform_listing_id": platform_listing_id,
                    "platform_url": platform_url,
                    "status": "active",
                }
            )

    async def mark_platform_listing_delisted(self, *, platform: str, platform_listing_id: str) -> bool:
        async with self._lock:
            for record in self.platform_listings:
                if (
                    record["platform"] == platform
                    and record["platform_listing_id"] == platform_listing_id
                    and record["status"] == "active"
                ):
                    record["status"] = "delisted"
                    return True
            return False

    async def find_open_delete_job(self, *, platform: str, platform_listing_id: str) -> str | None:
        return self._open_delete_job(platform, platform_listing_id)

    def _open_delete_job(self, platform: str, platform_listing_id: str | None) -> str | None:
        for job in self.jobs.values():
            if (
                job["operation"] == "DELETE"
                and job["platform"] == platform
                and job["platform_listing_id"] == platform_listing_id
                and job["status"] in ("queued", "processing")
            ):
                return job["job_id"]
        return None


def _now() -> datetime:
    return datetime.now(timezone.utc)
