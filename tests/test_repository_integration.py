from __future__ import annotations

import asyncio
import json
import os
import uuid
from collections.abc import Coroutine
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from crosslist_dispatch.services.repository import NewJob, PostgresRepository, RepositoryConflictError

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "sql" / "schema.sql"

T = TypeVar("T")


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("CD_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require CD_DATABASE_URL or DATABASE_URL")
    return url


async def _reset(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(SCHEMA_PATH.read_text())
        await conn.execute(
            "truncate crosslisting_jobs, platform_listings, platform_connections, listings, users cascade"
        )
    finally:
        await conn.close()


async def _seed(database_url: str, user_id: str, listing_id: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute("insert into users (id) values ($1::uuid)", user_id)
        await conn.execute(
            """
            insert into listings (id, user_id, title, description, price, photo_urls, platform_metadata)
            values ($1::uuid, $2::uuid, 'Denim jacket', 'Classic', 40, array['https://cdn.example.com/j.jpg'], $3::jsonb)
            """,
            listing_id,
            user_id,
            json.dumps({"mercari": {"category_id": "mc-3"}}),
        )
    finally:
        await conn.close()


@pytest.fixture
def seeded(database_url: str) -> dict[str, str]:
    user_id = str(uuid.uuid4())
    listing_id = str(uuid.uuid4())
    _run(_reset(database_url))
    _run(_seed(database_url, user_id, listing_id))
    return {"database_url": database_url, "user_id": user_id, "listing_id": listing_id}


def test_conditional_claim_and_terminal_monotonicity(seeded: dict[str, str]) -> None:
    async def scenario() -> None:
        repository = PostgresRepository(seeded["database_url"], 1, 4)
        try:
            for job_id in ("pg-1", "pg-2"):
                await repository.create_job(
                    NewJob(
                        job_id=job_id,
                        user_id=seeded["user_id"],
                        listing_id=seeded["listing_id"],
                        platform="mercari",
                    )
                )

            results = await asyncio.gather(
                *(repository.transition(["pg-1", "pg-2"], "queued", "processing") for _ in range(4))
            )
            claimed = sorted(job_id for result in results for job_id in result)
            assert claimed == ["pg-1", "pg-2"]

            assert await repository.record_attempt("pg-1", attempt=1, error_message=None)
            assert await repository.mark_terminal("pg-1", "completed", platform_listing_id="m-1")
            assert not await repository.mark_terminal("pg-1", "failed", error_message="late")

            job = await repository.get_job("pg-1")
            assert job["status"] == "completed"
            assert job["attempts"] == 1
            assert job["platform_listing_id"] == "m-1"

            listing = await repository.get_listing(seeded["listing_id"], seeded["user_id"])
            assert listing is not None
            assert listing["platform_metadata"]["mercari"]["category_id"] == "mc-3"
            assert listing["price"] == 40.0
        finally:
            await repository.close()

    _run(scenario())


def test_connections_and_presence(seeded: dict[str, str]) -> None:
    async def scenario() -> None:
        repository = PostgresRepository(seeded["database_url"], 1, 2)
        user_id = seeded["user_id"]
        try:
            await repository.upsert_connection(
                user_id=user_id,
                platform="depop",
                encrypted_credentials="aa:bb:cc",
                platform_username="seller",
            )
            await repository.mark_connection_verified(user_id=user_id, platform="depop", marker="SESSION_VERIFIED:x")
            connections = await repository.get_active_connections(user_id, ["depop", "mercari"])
            assert [row["encrypted_credentials"] for row in connections] == ["aa:bb:cc"]

            await repository.touch_agent(user_id, connected=True)
            presence = await repository.get_agent_presence(user_id)
            assert presence["extension_connected"] is True
            assert presence["extension_last_seen"] is not None
        finally:
            await repository.close()

    _run(scenario())


def test_delist_lifecycle(seeded: dict[str, str]) -> None:
    async def scenario() -> None:
        repository = PostgresRepository(seeded["database_url"], 1, 2)
        user_id = seeded["user_id"]
        listing_id = seeded["listing_id"]
        delete = {"user_id": user_id, "listing_id": listing_id, "platform": "mercari", "operation": "DELETE"}
        try:
            await repository.record_platform_listing(
                listing_id=listing_id,
                user_id=user_id,
                platform="mercari",
                platform_listing_id="m-7",
                platform_url=None,
            )
            await repository.create_job(NewJob(job_id="del-1", platform_listing_id="m-7", **delete))
            with pytest.raises(RepositoryConflictError):
                await repository.create_job(NewJob(job_id="del-2", platform_listing_id="m-7", **delete))
            assert await repository.find_open_delete_job(platform="mercari", platform_listing_id="m-7") == "del-1"

            assert await repository.mark_platform_listing_delisted(platform="mercari", platform_listing_id="m-7")
            assert await repository.find_platform_listing(platform="mercari", listing_id=listing_id) is None

            await repository.record_platform_listing(
                listing_id=listing_id,
                user_id=user_id,
                platform="mercari",
                platform_listing_id="m-8",
                platform_url=None,
            )
            relisted = await repository.find_platform_listing(platform="mercari", listing_id=listing_id)
            assert relisted["platform_listing_id"] == "m-8"
        finally:
            await repository.close()

    _run(scenario())
