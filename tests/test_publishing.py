from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from crosslist_dispatch.services.delivery import InvalidPlatformError
from crosslist_dispatch.services.publishing import (
    ListingNotFoundError,
    ListingValidationError,
    PublishingService,
    PublishRejectedError,
)
from crosslist_dispatch.services.repository import RepositoryConflictError
from crosslist_dispatch.services.store import InMemoryStore

NOW = datetime(2026, 5, 4, 10, 0, 0, tzinfo=timezone.utc)


def _store(*, last_seen: datetime | None = NOW - timedelta(seconds=30)) -> InMemoryStore:
    store = InMemoryStore()
    store.add_user("user-1")
    store.users["user-1"].update({"extension_connected": last_seen is not None, "extension_last_seen": last_seen})
    store.add_listing(
        {
            "id": "listing-1",
            "user_id": "user-1",
            "title": "Canvas tote",
            "description": "Never used",
            "price": 25.0,
            "category": "Bags",
            "photo_urls": ["https://cdn.example.com/tote.jpg"],
        }
    )
    store.add_connection("user-1", "depop", encrypted_credentials="aa:bb:cc")
    store.add_connection("user-1", "ebay", encrypted_credentials="dd:ee:ff")
    return store


def _service(store: InMemoryStore) -> PublishingService:
    return PublishingService(store, clock=lambda: NOW)


def test_publish_creates_queued_create_job() -> None:
    store = _store()
    result = asyncio.run(_service(store).publish_listing("user-1", "listing-1", "depop"))

    job = store.jobs[result["job_id"]]
    assert job["status"] == "queued"
    assert job["operation"] == "CREATE"
    assert job["platform"] == "depop"
    assert "Depop" in result["message"]


def test_publish_rejects_invalid_listing_with_formatted_message() -> None:
    store = _store()
    store.listings["listing-1"]["photo_urls"] = []
    store.listings["listing-1"]["price"] = None

    with pytest.raises(ListingValidationError) as exc_info:
        asyncio.run(_service(store).publish_listing("user-1", "listing-1", "depop"))

    assert str(exc_info.value) == "Missing required fields for Depop: Price and Photos"
    assert exc_info.value.missing_fields == ["Price", "Photos"]
    assert store.jobs == {}


def test_publish_requires_known_platform_and_owned_listing() -> None:
    store = _store()
    with pytest.raises(InvalidPlatformError):
        asyncio.run(_service(store).publish_listing("user-1", "listing-1", "grailed"))
    with pytest.raises(ListingNotFoundError):
        asyncio.run(_service(store).publish_listing("user-2", "listing-1", "depop"))


def test_publish_requires_usable_connection() -> None:
    store = _store()
    store.add_connection("user-1", "depop", encrypted_credentials="SESSION_VERIFIED:high:2026-05-01T00:00:00")

    with pytest.raises(PublishRejectedError, match="credentials not found"):
        asyncio.run(_service(store).publish_listing("user-1", "listing-1", "depop"))

    with pytest.raises(PublishRejectedError, match="not connected"):
        asyncio.run(_service(store).publish_listing("user-1", "listing-1", "mercari"))


def test_publish_requires_recent_agent_for_agent_platforms() -> None:
    stale = _store(last_seen=NOW - timedelta(minutes=5))
    with pytest.raises(PublishRejectedError, match="not active"):
        asyncio.run(_service(stale).publish_listing("user-1", "listing-1", "depop"))

    never = _store(last_seen=None)
    with pytest.raises(PublishRejectedError, match="extension not connected"):
        asyncio.run(_service(never).publish_listing("user-1", "listing-1", "depop"))

    # Server-executed platforms do not need the extension.
    result = asyncio.run(_service(never).publish_listing("user-1", "listing-1", "ebay"))
    assert never.jobs[result["job_id"]]["platform"] == "ebay"


def test_publish_rejects_already_posted_listing() -> None:
    store = _store()
    asyncio.run(
        store.record_platform_listing(
            listing_id="listing-1",
            user_id="user-1",
            platform="depop",
            platform_listing_id="dp-1",
            platform_url=None,
        )
    )
    with pytest.raises(PublishRejectedError, match="already posted"):
        asyncio.run(_service(store).publish_listing("user-1", "listing-1", "depop"))


def test_delist_creates_delete_job_for_owner_only() -> None:
    store = _store()
    asyncio.run(
        store.record_platform_listing(
            listing_id="listing-1",
            user_id="user-1",
            platform="depop",
            platform_listing_id="dp-1",
            platform_url=None,
        )
    )

    result = asyncio.run(_service(store).delist_listing("user-1", "dp-1", "depop"))
    job = store.jobs[result["job_id"]]
    assert job["operation"] == "DELETE"
    assert job["platform_listing_id"] == "dp-1"

    with pytest.raises(ListingNotFoundError):
        asyncio.run(_service(store).delist_listing("user-2", "dp-1", "depop"))
    with pytest.raises(ListingNotFoundError):
        asyncio.run(_service(store).delist_listing("user-1", "dp-missing", "depop"))


def _posted_store() -> InMemoryStore:
    store = _store()
    asyncio.run(
        store.record_platform_listing(
            listing_id="listing-1",
            user_id="user-1",
            platform="depop",
            platform_listing_id="dp-1",
            platform_url=None,
        )
    )
    return store


def test_delist_rejects_while_a_delete_is_pending() -> None:
    store = _posted_store()
    service = _service(store)
    first = asyncio.run(service.delist_listing("user-1", "dp-1", "depop"))

    with pytest.raises(RepositoryConflictError, match="already pending"):
        asyncio.run(service.delist_listing("user-1", "dp-1", "depop"))
    assert [job["job_id"] for job in store.jobs.values() if job["operation"] == "DELETE"] == [first["job_id"]]

    # A failed delete can be retried with a new request.
    asyncio.run(store.mark_terminal(first["job_id"], "failed", error_message="Item not found"))
    second = asyncio.run(service.delist_listing("user-1", "dp-1", "depop"))
    assert store.jobs[second["job_id"]]["status"] == "queued"


def test_delisted_listing_can_be_published_again() -> None:
    store = _posted_store()
    assert asyncio.run(store.mark_platform_listing_delisted(platform="depop", platform_listing_id="dp-1"))

    with pytest.raises(ListingNotFoundError):
        asyncio.run(_service(store).delist_listing("user-1", "dp-1", "depop"))

    result = asyncio.run(_service(store).publish_listing("user-1", "listing-1", "depop"))
    assert store.jobs[result["job_id"]]["operation"] == "CREATE"
