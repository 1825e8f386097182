from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from crosslist_dispatch.core.config import get_settings
from crosslist_dispatch.core.platforms import ALL_PLATFORMS, TERMINAL_STATUSES, is_valid_transition


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class DuplicateJobError(RepositoryConflictError):
    """Raised when a job id is already taken."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


@dataclass(slots=True)
class NewJob:
    job_id: str
    user_id: str
    listing_id: str
    platform: str
    operation: str = "CREATE"
    platform_listing_id: str | None = None
    created_at: datetime | None = None


JOB_OPERATIONS = {"CREATE", "DELETE"}
JOB_STATUSES = {"queued", "processing", "completed", "failed"}
TRANSITION_FIELDS = {"error_message"}
OPEN_DELETE_INDEX = "crosslisting_jobs_open_delete_idx"
DELIST_PENDING_MESSAGE = "A delist job is already pending for this listing"

_JOB_COLUMNS = """
  job_id,
  user_id::text as user_id,
  listing_id::text as listing_id,
  platform,
  operation,
  status,
  platform_listing_id,
  platform_url,
  error_message,
  attempts,
  created_at,
  started_at,
  completed_at
"""


class PostgresRepository:
    """Durable job store backed by Postgres.

    Every status change is a single conditional ``update ... where status = $from``
    statement. Row locks make that a compare-and-swap per job, so concurrent
    claimers never both observe a row as changed.
    """

    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        command_timeout_seconds: float = 15.0,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout_seconds = command_timeout_seconds
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def user_exists(self, user_id: str) -> bool:
        pool = await self._get_pool()
        try:
            found = await self._run(pool.fetchval("select 1 from users where id = $1::uuid", user_id))
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return False
        return bool(found)

    async def touch_agent(self, user_id: str, *, connected: bool = False) -> None:
        pool = await self._get_pool()
        await self._run(
            pool.execute(
                """
                update users
                set
                  extension_connected = extension_connected or $2,
                  extension_last_seen = now()
                where id = $1::uuid
                """,
                user_id,
                connected,
            )
        )

    async def get_agent_presence(self, user_id: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await self._run(
            pool.fetchrow(
                """
                select extension_connected, extension_last_seen
                from users
                where id = $1::uuid
                """,
                user_id,
            )
        )
        if not row:
            return None
        return {
            "extension_connected": bool(row["extension_connected"]),
            "extension_last_seen": row["extension_last_seen"],
        }

    async def create_job(self, job: NewJob) -> str:
        self._validate_new_job(job)
        pool = await self._get_pool()
        try:
            await self._run(
                pool.execute(
                    """
                    insert into crosslisting_jobs (
                      job_id,
                      user_id,
                      listing_id,
                      platform,
                      operation,
                      status,
                      platform_listing_id,
                      created_at
                    )
                    values ($1, $2::uuid, $3::uuid, $4, $5, 'queued', $6, coalesce($7::timestamptz, now()))
                    """,
                    job.job_id,
                    job.user_id,
                    job.listing_id,
                    job.platform,
                    job.operation,
                    job.platform_listing_id,
                    job.created_at,
                )
            )
        except pg_exc.UniqueViolationError as exc:
            if exc.constraint_name == OPEN_DELETE_INDEX:
                raise RepositoryConflictError(DELIST_PENDING_MESSAGE) from exc
            raise DuplicateJobError(f"job {job.job_id} already exists") from exc
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryValidationError(str(exc)) from exc
        return job.job_id

    async def get_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await self._run(pool.fetchrow(f"select {_JOB_COLUMNS} from crosslisting_jobs where job_id = $1", job_id))
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def list_pending(
        self,
        *,
        user_id: str,
        platforms: list[str] | tuple[str, ...],
        since: datetime | None = None,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await self._run(
            pool.fetch(
                f"""
                select {_JOB_COLUMNS}
                from crosslisting_jobs
                where user_id = $1::uuid
                  and status = 'queued'
                  and platform = any($2::text[])
                  and ($3::timestamptz is null or created_at >= $3::timestamptz)
                order by created_at asc, job_id asc
                limit $4
                """,
                user_id,
                list(platforms),
                since,
                max(1, limit),
            )
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def list_queued_for_platforms(self, platforms: list[str], limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await self._run(
            pool.fetch(
                f"""
                select {_JOB_COLUMNS}
                from crosslisting_jobs
                where status = 'queued' and platform = any($1::text[])
                order by created_at asc, job_id asc
                limit $2
                """,
                list(platforms),
                max(1, limit),
            )
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def transition(
        self,
        job_ids: list[str],
        from_status: str,
        to_status: str,
        fields: dict[str, Any] | None = None,
    ) -> list[str]:
        """Move the jobs still in ``from_status`` and return the ids that moved."""
        self._validate_transition(from_status, to_status, fields)
        if not job_ids:
            return []
        error_message = (fields or {}).get("error_message")
        pool = await self._get_pool()
        rows = await self._run(
            pool.fetch(
                """
                update crosslisting_jobs
                set
                  status = $3,
                  error_message = coalesce($4, error_message),
                  started_at = case when $3 = 'processing' then now() else started_at end,
                  completed_at = case when $3 in ('completed', 'failed') then now() else completed_at end,
                  updated_at = now()
                where job_id = any($1::text[]) and status = $2
                returning job_id
                """,
                list(job_ids),
                from_status,
                to_status,
                error_message,
            )
        )
        return [row["job_id"] for row in rows]

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
        allowed_from = ["processing"] if status == "completed" else ["queued", "processing"]
        pool = await self._get_pool()
        row = await self._run(
            pool.fetchrow(
                """
                update crosslisting_jobs
                set
                  status = $2,
                  platform_listing_id = coalesce($3, platform_listing_id),
                  platform_url = coalesce($4, platform_url),
                  error_message = $5,
                  completed_at = now(),
                  updated_at = now()
                where job_id = $1 and status = any($6::text[])
                returning job_id
                """,
                job_id,
                status,
                platform_listing_id,
                platform_url,
                error_message,
                allowed_from,
            )
        )
        return row is not None

    async def record_attempt(self, job_id: str, *, attempt: int, error_message: str | None) -> bool:
        pool = await self._get_pool()
        row = await self._run(
            pool.fetchrow(
                """
                update crosslisting_jobs
                set attempts = $2, error_message = $3, updated_at = now()
                where job_id = $1 and status = 'processing'
                returning job_id
                """,
                job_id,
                attempt,
                error_message,
            )
        )
        return row is not None

    async def list_stale_processing(self, *, started_before: datetime, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await self._run(
            pool.fetch(
                f"""
                select {_JOB_COLUMNS}
                from crosslisting_jobs
                where status = 'processing'
                  and started_at is not null
                  and started_at <= $1::timestamptz
                order by started_at asc
                limit $2
                """,
                started_before,
                max(1, min(limit, 1000)),
            )
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def get_active_connections(
        self,
        user_id: str,
        platforms: list[str] | tuple[str, ...],
    ) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await self._run(
            pool.fetch(
                """
                select platform, is_active, encrypted_credentials, platform_username
                from platform_connections
                where user_id = $1::uuid
                  and is_active = true
                  and platform = any($2::text[])
                """,
                user_id,
                list(platforms),
            )
        )
        return [self._connection_row_to_dict(row) for row in rows]

    async def get_connection(self, user_id: str, platform: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await self._run(
            pool.fetchrow(
                """
                select platform, is_active, encrypted_credentials, platform_username
                from platform_connections
                where user_id = $1::uuid and platform = $2
                """,
                user_id,
                platform,
            )
        )
        return self._connection_row_to_dict(row) if row else None

    async def upsert_connection(
        self,
        *,
        user_id: str,
        platform: str,
        encrypted_credentials: str,
        platform_username: str,
    ) -> None:
        pool = await self._get_pool()
        await self._run(
            pool.execute(
                """
                insert into platform_connections (
                  user_id,
                  platform,
                  access_token,
                  encrypted_credentials,
                  platform_username,
                  is_active
                )
                values ($1::uuid, $2, '', $3, $4, true)
                on conflict (user_id, platform) do update
                set
                  encrypted_credentials = excluded.encrypted_credentials,
                  platform_username = excluded.platform_username,
                  is_active = true,
                  updated_at = now()
                """,
                user_id,
                platform,
                encrypted_credentials,
                platform_username,
            )
        )

    async def mark_connection_verified(self, *, user_id: str, platform: str, marker: str) -> None:
        pool = await self._get_pool()
        await self._run(
            pool.execute(
                """
                insert into platform_connections (user_id, platform, access_token, encrypted_credentials, is_active)
                values ($1::uuid, $2, '', $3, true)
                on conflict (user_id, platform) do update
                set
                  is_active = true,
                  encrypted_credentials = coalesce(platform_connections.encrypted_credentials, excluded.encrypted_credentials),
                  updated_at = now()
                """,
                user_id,
                platform,
                marker,
            )
        )

    async def get_listing(self, listing_id: str, user_id: str | None = None) -> dict[str, Any] | None:
        pool = await self._get_pool()
        try:
            row = await self._run(
                pool.fetchrow(
                    """
                    select *
                    from listings
                    where id = $1::uuid and ($2::uuid is null or user_id = $2::uuid)
                    """,
                    listing_id,
                    user_id,
                )
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return None
        return self._listing_row_to_dict(row) if row else None

    async def find_platform_listing(
        self,
        *,
        platform: str,
        listing_id: str | None = None,
        platform_listing_id: str | None = None,
    ) -> dict[str, Any] | None:
        if listing_id is None and platform_listing_id is None:
            raise RepositoryValidationError("listing_id or platform_listing_id is required")
        pool = await self._get_pool()
        row = await self._run(
            pool.fetchrow(
                """
                select
                  pl.listing_id::text as listing_id,
                  pl.user_id::text as user_id,
                  pl.platform,
                  pl.platform_listing_id,
                  pl.platform_url,
                  pl.status
                from platform_listings pl
                where pl.platform = $1
                  and pl.status = 'active'
                  and ($2::text is null or pl.listing_id::text = $2)
                  and ($3::text is null or pl.platform_listing_id = $3)
                limit 1
                """,
                platform,
                listing_id,
                platform_listing_id,
            )
        )
        return dict(row) if row else None

    async def record_platform_listing(
        self,
        *,
        listing_id: str,
        user_id: str,
        platform: str,
        platform_listing_id: str,
        platform_url: str | None,
    ) -> None:
        pool = await self._get_pool()
        await self._run(
            pool.execute(
                """
                insert into platform_listings (listing_id, user_id, platform, platform_listing_id, platform_url, status)
                values ($1::uuid, $2::uuid, $3, $4, $5, 'active')
                on conflict (listing_id, platform) do update
                set
                  platform_listing_id = excluded.platform_listing_id,
                  platform_url = excluded.platform_url,
                  status = 'active',
                  updated_at = now()
                """,
                listing_id,
                user_id,
                platform,
                platform_listing_id,
                platform_url,
            )
        )

    async def mark_platform_listing_delisted(self, *, platform: str, platform_listing_id: str) -> bool:
        pool = await self._get_pool()
        row = await self._run(
            pool.fetchrow(
                """
                update platform_listings
                set status = 'delisted', updated_at = now()
                where platform = $1 and platform_listing_id = $2 and status = 'active'
                returning listing_id
                """,
                platform,
                platform_listing_id,
            )
        )
        return row is not None

    async def find_open_delete_job(self, *, platform: str, platform_listing_id: str) -> str | None:
        """Return the id of a queued or processing DELETE job for this platform listing."""
        pool = await self._get_pool()
        return await self._run(
            pool.fetchval(
                """
                select job_id
                from crosslisting_jobs
                where platform = $1
                  and platform_listing_id = $2
                  and operation = 'DELETE'
                  and status in ('queued', 'processing')
                limit 1
                """,
                platform,
                platform_listing_id,
            )
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("CD_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=self.command_timeout_seconds,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    async def _run(awaitable: Any) -> Any:
        try:
            return await awaitable
        except (
            asyncpg.PostgresConnectionError,
            asyncpg.InterfaceError,
            pg_exc.QueryCanceledError,
            ConnectionError,
            TimeoutError,
        ) as exc:
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _validate_new_job(job: NewJob) -> None:
        if not job.job_id:
            raise RepositoryValidationError("job_id must be a non-empty string")
        if job.platform not in ALL_PLATFORMS:
            raise RepositoryValidationError(f"unsupported platform: {job.platform}")
        if job.operation not in JOB_OPERATIONS:
            raise RepositoryValidationError(f"unsupported operation: {job.operation}")
        if job.operation == "DELETE" and not job.platform_listing_id:
            raise RepositoryValidationError("DELETE jobs require platform_listing_id")

    @staticmethod
    def _validate_transition(from_status: str, to_status: str, fields: dict[str, Any] | None) -> None:
        if from_status not in JOB_STATUSES or to_status not in JOB_STATUSES:
            raise RepositoryValidationError(f"unknown job status: {from_status} -> {to_status}")
        if not is_valid_transition(from_status, to_status):
            raise RepositoryConflictError(f"transition {from_status} -> {to_status} is not allowed")
        unknown = set(fields or {}) - TRANSITION_FIELDS
        if unknown:
            raise RepositoryValidationError(f"unsupported transition fields: {', '.join(sorted(unknown))}")

    @staticmethod
    def _job_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "job_id": row["job_id"],
            "user_id": row["user_id"],
            "listing_id": row["listing_id"],
            "platform": row["platform"],
            "operation": row["operation"],
            "status": row["status"],
            "platform_listing_id": row["platform_listing_id"],
            "platform_url": row["platform_url"],
            "error_message": row["error_message"],
            "attempts": int(row["attempts"] or 0),
            "created_at": row["created_at"],
            "started_at": row["started_at"],
            "completed_at": row["completed_at"],
        }

    @staticmethod
    def _connection_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "platform": row["platform"],
            "is_active": bool(row["is_active"]),
            "encrypted_credentials": row["encrypted_credentials"],
            "platform_username": row["platform_username"],
        }

    @staticmethod
    def _listing_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        listing = dict(row)
        listing["id"] = str(listing["id"])
        listing["user_id"] = str(listing["user_id"])
        metadata = listing.get("platform_metadata")
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except json.JSONDecodeError:
                metadata = {}
        listing["platform_metadata"] = metadata if isinstance(metadata, dict) else {}
        for key in ("price", "original_price", "weight_lb", "weight_oz"):
            if listing.get(key) is not None:
                listing[key] = float(listing[key])
        return listing


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        command_timeout_seconds=settings.database_command_timeout_seconds,
    )
