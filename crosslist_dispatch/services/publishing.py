from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from crosslist_dispatch.core.platforms import AGENT_PLATFORMS, ALL_PLATFORMS, has_usable_credentials
from crosslist_dispatch.schemas.listings import Listing
from crosslist_dispatch.services.delivery import InvalidPlatformError
from crosslist_dispatch.services.repository import DELIST_PENDING_MESSAGE, NewJob, RepositoryConflictError
from crosslist_dispatch.services.validation import format_validation_error, validate_listing_for_platform

logger = logging.getLogger(__name__)


class PublishRejectedError(Exception):
    """Raised when a listing cannot be queued for a platform."""


class ListingNotFoundError(PublishRejectedError):
    """Raised when the listing does not exist or belongs to another user."""


class ListingValidationError(PublishRejectedError):
    def __init__(self, message: str, missing_fields: list[str]) -> None:
        super().__init__(message)
        self.missing_fields = missing_fields


class PublishingService:
    def __init__(
        self,
        repository: Any,
        *,
        agent_active_window_seconds: int = 120,
        agent_platforms: tuple[str, ...] = AGENT_PLATFORMS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.agent_active_window = timedelta(seconds=max(1, agent_active_window_seconds))
        self.agent_platforms = agent_platforms
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def publish_listing(self, user_id: str, listing_id: str, platform: str) -> dict[str, Any]:
        platform = platform.strip().lower()
        if platform not in ALL_PLATFORMS:
            raise InvalidPlatformError("Invalid platform")

        row = await self.repository.get_listing(listing_id, user_id)
        if row is None:
            raise ListingNotFoundError("Listing not found")
        listing = Listing.model_validate(row)

        result = validate_listing_for_platform(platform, listing)
        if not result.is_valid:
            raise ListingValidationError(
                format_validation_error(platform.capitalize(), result.missing_fields),
                result.missing_fields,
            )

        label = platform.capitalize()
        connection = await self.repository.get_connection(user_id, platform)
        if connection is None or not connection["is_active"]:
            raise PublishRejectedError(f"{label} account not connected. Please connect your account in Settings.")
        if not has_usable_credentials(connection["encrypted_credentials"]):
            raise PublishRejectedError(f"{label} credentials not found. Please reconnect your account.")

        existing = await self.repository.find_platform_listing(platform=platform, listing_id=listing_id)
        if existing is not None:
            raise PublishRejectedError(f"This listing is already posted to {label}")

        if platform in self.agent_platforms:
            await self._require_active_agent(user_id)

        job_id = await self.repository.create_job(
            NewJob(
                job_id=str(uuid4()),
                user_id=user_id,
                listing_id=listing_id,
                platform=platform,
                operation="CREATE",
            )
        )
        logger.info("queued crosslisting job job_id=%s platform=%s listing_id=%s", job_id, platform, listing_id)
        return {
            "job_id": job_id,
            "message": f"{label} crosslisting job created. It will be processed shortly.",
        }

    async def delist_listing(self, user_id: str, platform_listing_id: str, platform: str) -> dict[str, Any]:
        platform = platform.strip().lower()
        if platform not in ALL_PLATFORMS:
            raise InvalidPlatformError("Invalid platform")

        record = await self.repository.find_platform_listing(
            platform=platform,
            platform_listing_id=platform_listing_id,
        )
        if record is None:
            raise ListingNotFoundError("Platform listing not found")
        if record["user_id"] != user_id:
            raise ListingNotFoundError("Listing not found or unauthorized")

        pending = await self.repository.find_open_delete_job(
            platform=platform,
            platform_listing_id=platform_listing_id,
        )
        if pending is not None:
            raise RepositoryConflictError(DELIST_PENDING_MESSAGE)

        job_id = await self.repository.create_job(
            NewJob(
                job_id=str(uuid4()),
                user_id=user_id,
                listing_id=record["listing_id"],
                platform=platform,
                operation="DELETE",
                platform_listing_id=platform_listing_id,
            )
        )
        logger.info("queued delist job job_id=%s platform=%s platform_listing_id=%s", job_id, platform, platform_listing_id)
        return {"job_id": job_id, "message": f"Delisting from {platform}..."}

    async def _require_active_agent(self, user_id: str) -> None:
        presence = await self.repository.get_agent_presence(user_id)
        if not presence or not presence.get("extension_connected"):
            raise PublishRejectedError(
                "Chrome extension not connected. Please install the extension and ensure it is running."
            )
        last_seen = presence.get("extension_last_seen")
        if last_seen is None or last_seen < self._clock() - self.agent_active_window:
            raise PublishRejectedError(
                "Chrome extension not active. It was last seen more than "
                f"{int(self.agent_active_window.total_seconds() // 60)} minutes ago."
            )
