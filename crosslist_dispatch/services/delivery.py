from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from opentelemetry import trace
from pydantic import ValidationError

from crosslist_dispatch.core.crypto import CredentialCipher
from crosslist_dispatch.core.platforms import (
    AGENT_PLATFORMS,
    LISTING_NOT_FOUND_MESSAGE,
    PLATFORM_NOT_CONNECTED_MESSAGE,
    has_usable_credentials,
    session_verified_marker,
)
from crosslist_dispatch.core.security import AgentAuthenticator
from crosslist_dispatch.schemas.listings import Listing
from crosslist_dispatch.services.field_mapper import map_listing_for_platform
from crosslist_dispatch.services.repository import RepositoryError, RepositoryNotFoundError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class DeliveryError(Exception):
    """Base error for the agent delivery surface."""


class JobNotFoundError(DeliveryError):
    """Raised when a job id is unknown to the caller."""


class InvalidPlatformError(DeliveryError):
    """Raised for platform names the agent cannot serve."""


class EncryptionFailureError(DeliveryError):
    """Raised when credentials could not be encrypted."""


class JobResultConflictError(DeliveryError):
    """Raised when a result is reported for a job that is not processing."""


class VerificationRejectedError(DeliveryError):
    """Raised when a session verification is not trustworthy enough."""


@dataclass(slots=True)
class DeliveredJob:
    job_id: str
    platform: str
    operation: str
    listing_data: dict[str, Any] | None = None
    platform_listing_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "platform": self.platform,
            "operation": self.operation,
            "listing_data": self.listing_data,
            "platform_listing_id": self.platform_listing_id,
        }


class DeliveryCoordinator:
    """Hands queued jobs to the polling browser extension.

    ``register`` and ``poll`` share one claim protocol: filter out jobs whose
    platform connection is unusable (they fail immediately), then move the rest
    ``queued -> processing`` in one conditional update. Only jobs that update
    reports as moved are returned, so a job appears in at most one response
    no matter how many polls race for it.
    """

    def __init__(
        self,
        repository: Any,
        authenticator: AgentAuthenticator,
        cipher: CredentialCipher,
        *,
        register_page_size: int = 10,
        poll_page_size: int = 25,
        poll_window_seconds: int = 30,
        platforms: tuple[str, ...] = AGENT_PLATFORMS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.authenticator = authenticator
        self.cipher = cipher
        self.register_page_size = max(1, register_page_size)
        self.poll_page_size = max(1, poll_page_size)
        self.poll_window = timedelta(seconds=max(1, poll_window_seconds))
        self.platforms = platforms
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def register(self, user_id: str | None, auth_token: str | None) -> dict[str, Any]:
        principal = await self.authenticator.authenticate(user_id, auth_token)
        await self.repository.touch_agent(principal.user_id, connected=True)

        candidates = await self.repository.list_pending(
            user_id=principal.user_id,
            platforms=self.platforms,
            limit=self.register_page_size,
        )
        delivered = await self.claim(principal.user_id, candidates)
        message = f"{len(delivered)} pending jobs" if delivered else "No pending jobs"
        logger.info("agent registered user_id=%s delivered=%s", principal.user_id, len(delivered))
        return {
            "connected": True,
            "pending_jobs": [job.to_dict() for job in delivered],
            "message": message,
        }

    async def poll(self, user_id: str | None, auth_token: str | None) -> dict[str, Any]:
        principal = await self.authenticator.authenticate(user_id, auth_token)
        await self.repository.touch_agent(principal.user_id)

        candidates = await self.repository.list_pending(
            user_id=principal.user_id,
            platforms=self.platforms,
            since=self._clock() - self.poll_window,
            limit=self.poll_page_size,
        )
        delivered = await self.claim(principal.user_id, candidates)
        if delivered:
            logger.info("agent poll user_id=%s delivered=%s", principal.user_id, len(delivered))
        return {
            "has_new_jobs": bool(delivered),
            "jobs": [job.to_dict() for job in delivered],
        }

    async def claim(self, user_id: str, candidates: list[dict[str, Any]]) -> list[DeliveredJob]:
        if not candidates:
            return []

        with tracer.start_as_current_span("delivery.claim") as span:
            span.set_attribute("delivery.user_id", user_id)
            span.set_attribute("delivery.candidates", len(candidates))

            platforms = sorted({job["platform"] for job in candidates})
            connections = await self.repository.get_active_connections(user_id, platforms)
            deliverable_platforms = {
                connection["platform"]
                for connection in connections
                if connection["is_active"] and has_usable_credentials(connection["encrypted_credentials"])
            }

            deliverable = [job for job in candidates if job["platform"] in deliverable_platforms]
            unconnected_ids = [job["job_id"] for job in candidates if job["platform"] not in deliverable_platforms]

            # Listings are read before claiming so a read failure leaves every job queued.
            listings: dict[str, Listing | None] = {}
            for job in deliverable:
                if job["operation"] == "CREATE" and job["listing_id"] not in listings:
                    listings[job["listing_id"]] = await self._load_listing(job["listing_id"], user_id)

            if unconnected_ids:
                failed_ids = await self.repository.transition(
                    unconnected_ids,
                    "queued",
                    "failed",
                    {"error_message": PLATFORM_NOT_CONNECTED_MESSAGE},
                )
                if failed_ids:
                    logger.warning(
                        "failed jobs without a usable platform connection user_id=%s job_ids=%s",
                        user_id,
                        ",".join(failed_ids),
                    )

            claimable: list[dict[str, Any]] = []
            missing_listing_ids: list[str] = []
            for job in deliverable:
                if job["operation"] == "CREATE" and listings.get(job["listing_id"]) is None:
                    missing_listing_ids.append(job["job_id"])
                else:
                    claimable.append(job)

            if missing_listing_ids:
                await self.repository.transition(
                    missing_listing_ids,
                    "queued",
                    "failed",
                    {"error_message": LISTING_NOT_FOUND_MESSAGE},
                )

            claimed_ids = set(
                await self.repository.transition([job["job_id"] for job in claimable], "queued", "processing")
            )
            lost = len(claimable) - len(claimed_ids)
            if lost:
                logger.info("claim race lost user_id=%s jobs=%s", user_id, lost)
            span.set_attribute("delivery.claimed", len(claimed_ids))

            delivered: list[DeliveredJob] = []
            for job in claimable:
                if job["job_id"] not in claimed_ids:
                    continue
                delivered.append(self._build_delivery(job, listings.get(job["listing_id"])))
            return delivered

    async def get_job_status(self, job_id: str) -> dict[str, Any]:
        try:
            job = await self.repository.get_job(job_id)
        except RepositoryNotFoundError as exc:
            raise JobNotFoundError("Job not found") from exc
        return {
            "job_id": job["job_id"],
            "status": job["status"],
            "platform_listing_id": job["platform_listing_id"],
            "platform_url": job["platform_url"],
            "error_message": job["error_message"],
            "created_at": job["created_at"],
            "completed_at": job["completed_at"],
        }

    async def save_credentials(self, user_id: str, platform: str, username: str, password: str) -> dict[str, Any]:
        if platform not in self.platforms:
            raise InvalidPlatformError("Invalid platform")

        try:
            encrypted = self.cipher.encrypt(username, password)
        except Exception as exc:
            logger.exception("credential encryption failed user_id=%s platform=%s", user_id, platform)
            raise EncryptionFailureError("Failed to encrypt credentials") from exc

        await self.repository.upsert_connection(
            user_id=user_id,
            platform=platform,
            encrypted_credentials=encrypted,
            platform_username=username,
        )
        logger.info("saved platform credentials user_id=%s platform=%s", user_id, platform)
        return {"success": True, "message": "Credentials saved successfully"}

    async def verify_connection(self, user_id: str, platform: str, confidence: str) -> dict[str, Any]:
        if platform not in self.platforms:
            raise InvalidPlatformError("Invalid platform")
        if confidence == "low":
            raise VerificationRejectedError(
                "Verification confidence too low. Please ensure you are logged in to the platform."
            )

        marker = session_verified_marker(confidence, self._clock().isoformat())
        await self.repository.mark_connection_verified(user_id=user_id, platform=platform, marker=marker)
        return {"success": True, "message": f"{platform} connected successfully"}

    async def report_result(
        self,
        user_id: str | None,
        auth_token: str | None,
        *,
        job_id: str,
        success: bool,
        platform_listing_id: str | None = None,
        platform_url: str | None = None,
        error: str | None = None,
    ) -> dict[str, Any]:
        principal = await self.authenticator.authenticate(user_id, auth_token)
        try:
            job = await self.repository.get_job(job_id)
        except RepositoryNotFoundError as exc:
            raise JobNotFoundError("Job not found") from exc
        if job["user_id"] != principal.user_id:
            raise JobNotFoundError("Job not found")

        if success:
            changed = await self.repository.mark_terminal(
                job_id,
                "completed",
                platform_listing_id=platform_listing_id,
                platform_url=platform_url,
            )
        else:
            changed = await self.repository.mark_terminal(
                job_id,
                "failed",
                error_message=error or "Unknown error",
            )
        if not changed:
            raise JobResultConflictError("job is not processing")

        if success:
            try:
                if job["operation"] == "CREATE" and platform_listing_id:
                    await self.repository.record_platform_listing(
                        listing_id=job["listing_id"],
                        user_id=principal.user_id,
                        platform=job["platform"],
                        platform_listing_id=platform_listing_id,
                        platform_url=platform_url,
                    )
                elif job["operation"] == "DELETE" and job["platform_listing_id"]:
                    await self.repository.mark_platform_listing_delisted(
                        platform=job["platform"],
                        platform_listing_id=job["platform_listing_id"],
                    )
            except RepositoryError:
                # The job outcome is already recorded; the listing link can be repaired later.
                logger.exception("failed to update platform listing job_id=%s", job_id)

        logger.info("agent reported job_id=%s success=%s", job_id, success)
        return {"success": True}

    async def _load_listing(self, listing_id: str, user_id: str) -> Listing | None:
        row = await self.repository.get_listing(listing_id, user_id)
        if row is None:
            return None
        try:
            return Listing.model_validate(row)
        except ValidationError:
            logger.exception("listing snapshot is malformed listing_id=%s", listing_id)
            return None

    @staticmethod
    def _build_delivery(job: dict[str, Any], listing: Listing | None) -> DeliveredJob:
        if job["operation"] == "DELETE":
            return DeliveredJob(
                job_id=job["job_id"],
                platform=job["platform"],
                operation="DELETE",
                platform_listing_id=job["platform_listing_id"],
            )

        if listing is None:
            raise ValueError(f"CREATE job {job['job_id']} has no listing snapshot")
        return DeliveredJob(
            job_id=job["job_id"],
            platform=job["platform"],
            operation="CREATE",
            listing_data=map_listing_for_platform(listing, job["platform"]),
        )
