from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from crosslist_dispatch.core.platforms import has_usable_credentials, is_valid_transition
from crosslist_dispatch.services.repository import (
    DuplicateJobError,
    NewJob,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)
from crosslist_dispatch.services.store import InMemoryStore

BASE = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _store_with_jobs(*job_ids: str) -> InMemoryStore:
    store = InMemoryStore()
    store.add_user("user-1")
    for offset, job_id in enumerate(job_ids):
        asyncio.run(
            store.create_job(
                NewJob(
                    job_id=job_id,
                    user_id="user-1",
                    listing_id="listing-1",
                    platform="mercari",
                    created_at=BASE + timedelta(seconds=offset),
                )
            )
        )
    return store


def test_transition_moves_only_rows_in_from_status() -> None:
    store = _store_with_jobs("j1", "j2")
    asyncio.run(store.transition(["j1"], "queued", "processing"))

    moved = asyncio.run(store.transition(["j1", "j2", "missing"], "queued", "processing"))

    assert moved == ["j2"]
    assert asyncio.run(store.get_job("j2"))["started_at"] is not None


def test_concurrent_claims_move_each_job_once() -> None:
    store = _store_with_jobs("j1", "j2", "j3")

    async def race() -> list[list[str]]:
        return await asyncio.gather(
            *(store.transition(["j1", "j2", "j3"], "queued", "processing") for _ in range(5))
        )

    results = asyncio.run(race())
    claimed = [job_id for result in results for job_id in result]

    assert sorted(claimed) == ["j1", "j2", "j3"]


def test_terminal_states_are_monotonic() -> None:
    store = _store_with_jobs("j1")
    asyncio.run(store.transition(["j1"], "queued", "processing"))
    assert asyncio.run(store.mark_terminal("j1", "completed", platform_listing_id="m-1"))

    assert not asyncio.run(store.mark_terminal("j1", "failed", error_message="late"))
    with pytest.raises(RepositoryConflictError):
        asyncio.run(store.transition(["j1"], "completed", "queued"))

    job = asyncio.run(store.get_job("j1"))
    assert job["status"] == "completed"
    assert job["platform_listing_id"] == "m-1"
    assert job["completed_at"] is not None


def test_completed_requires_processing() -> None:
    store = _store_with_jobs("j1")
    assert not asyncio.run(store.mark_terminal("j1", "completed"))
    assert asyncio.run(store.mark_terminal("j1", "failed", error_message="rejected"))


def test_transition_rejects_unknown_fields() -> None:
    store = _store_with_jobs("j1")
    with pytest.raises(RepositoryValidationError):
        asyncio.run(store.transition(["j1"], "queued", "failed", {"status": "queued"}))


def test_list_pending_orders_oldest_first_and_since_is_inclusive() -> None:
    store = _store_with_jobs("j1", "j2", "j3")

    pending = asyncio.run(store.list_pending(user_id="user-1", platforms=("mercari",), limit=10))
    assert [job["job_id"] for job in pending] == ["j1", "j2", "j3"]

    recent = asyncio.run(
        store.list_pending(
            user_id="user-1",
            platforms=("mercari",),
            since=BASE + timedelta(seconds=1),
            limit=10,
        )
    )
    assert [job["job_id"] for job in recent] == ["j2", "j3"]

    assert asyncio.run(store.list_pending(user_id="user-1", platforms=("depop",), limit=10)) == []


def test_duplicate_job_and_missing_job() -> None:
    store = _store_with_jobs("j1")
    with pytest.raises(DuplicateJobError):
        asyncio.run(store.create_job(NewJob(job_id="j1", user_id="user-1", listing_id="l", platform="depop")))
    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(store.get_job("nope"))


def test_delete_jobs_need_platform_listing_id() -> None:
    store = InMemoryStore()
    with pytest.raises(RepositoryValidationError):
        asyncio.run(
            store.create_job(NewJob(job_id="d1", user_id="user-1", listing_id="l", platform="depop", operation="DELETE"))
        )


def test_record_attempt_only_while_processing() -> None:
    store = _store_with_jobs("j1")
    assert not asyncio.run(store.record_attempt("j1", attempt=1, error_message="boom"))

    asyncio.run(store.transition(["j1"], "queued", "processing"))
    assert asyncio.run(store.record_attempt("j1", attempt=2, error_message="boom"))
    job = asyncio.run(store.get_job("j1"))
    assert job["attempts"] == 2
    assert job["error_message"] == "boom"


def test_verified_session_keeps_real_credentials() -> None:
    store = InMemoryStore()
    store.add_connection("user-1", "depop", encrypted_credentials="aa:bb:cc", is_active=False)

    asyncio.run(store.mark_connection_verified(user_id="user-1", platform="depop", marker="SESSION_VERIFIED:high:now"))
    connection = asyncio.run(store.get_connection("user-1", "depop"))
    assert connection["is_active"] is True
    assert connection["encrypted_credentials"] == "aa:bb:cc"

    asyncio.run(store.mark_connection_verified(user_id="user-1", platform="mercari", marker="SESSION_VERIFIED:high:now"))
    assert asyncio.run(store.get_connection("user-1", "mercari"))["encrypted_credentials"].startswith("SESSION_VERIFIED:")


def test_state_machine_and_credential_rules() -> None:
    assert is_valid_transition("queued", "failed")
    assert not is_valid_transition("failed", "processing")
    assert not is_valid_transition("processing", "queued")

    assert has_usable_credentials("0a:1b:2c")
    assert not has_usable_credentials(None)
    assert not has_usable_credentials("   ")
    assert not has_usable_credentials("SESSION_VERIFIED:medium:2026-01-01T00:00:00")
    assert not has_usable_credentials("PLACEHOLDER")


def test_one_open_delete_per_platform_listing() -> None:
    store = InMemoryStore()
    store.add_user("user-1")
    delete = {
        "user_id": "user-1",
        "listing_id": "listing-1",
        "platform": "mercari",
        "operation": "DELETE",
        "platform_listing_id": "m1",
    }
    asyncio.run(store.create_job(NewJob(job_id="d1", **delete)))

    with pytest.raises(RepositoryConflictError):
        asyncio.run(store.create_job(NewJob(job_id="d2", **delete)))
    assert asyncio.run(store.find_open_delete_job(platform="mercari", platform_listing_id="m1")) == "d1"

    asyncio.run(store.transition(["d1"], "queued", "processing"))
    asyncio.run(store.mark_terminal("d1", "completed"))
    assert asyncio.run(store.find_open_delete_job(platform="mercari", platform_listing_id="m1")) is None
    asyncio.run(store.create_job(NewJob(job_id="d2", **delete)))


def test_delisted_rows_are_hidden_until_relisted() -> None:
    store = InMemoryStore()
    listing = {"listing_id": "listing-1", "user_id": "user-1", "platform": "depop", "platform_url": None}
    asyncio.run(store.record_platform_listing(platform_listing_id="dp-1", **listing))

    assert asyncio.run(store.mark_platform_listing_delisted(platform="depop", platform_listing_id="dp-1"))
    assert not asyncio.run(store.mark_platform_listing_delisted(platform="depop", platform_listing_id="dp-1"))
    assert asyncio.run(store.find_platform_listing(platform="depop", platform_listing_id="dp-1")) is None

    asyncio.run(store.record_platform_listing(platform_listing_id="dp-2", **listing))
    found = asyncio.run(store.find_platform_listing(platform="depop", listing_id="listing-1"))
    assert found["platform_listing_id"] == "dp-2"
    assert found["status"] == "active"
