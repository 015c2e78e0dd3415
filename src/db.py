"""
Database Manager - PostgreSQL storage for declared Sentry projects.

Holds each project's spec, status and finalizers, the scheduling columns the
controller uses to decide when to reconcile, and the reconciliation history.
"""

import asyncpg
import json
import logging
from typing import Any, Dict, List, Optional

from migrate import run_migrations
from models import SentryProject

logger = logging.getLogger(__name__)


class StaleResourceError(Exception):
    """A write lost an optimistic-concurrency race or its record vanished."""

    def __init__(self, name: str, resource_version: int):
        self.name = name
        self.resource_version = resource_version
        super().__init__(
            f"Project {name} changed since resource version {resource_version}"
        )


class DatabaseManager:
    """Manages PostgreSQL database operations for the operator."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Declared Project Methods ====================

    async def create_project(
        self,
        name: str,
        spec: Dict[str, Any],
        finalizers: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Declare a new Sentry project.

        Args:
            name: Resource key, unique across all declared projects
            spec: Declared spec (camelCase keys)
            finalizers: Initial finalizers; the reconciler adds its own

        Raises:
            asyncpg.UniqueViolationError: If the name is already taken
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO sentry_projects (
                    name, spec, status, finalizers, next_reconcile_time
                )
                VALUES ($1, $2, '{}'::jsonb, $3, NOW())
                RETURNING *
                """,
                name,
                json.dumps(spec),
                json.dumps(finalizers or []),
            )

            logger.info(f"Declared project {name} with ID {row['id']}")
            return self._parse_project_row(row)

    async def update_project_spec(
        self, name: str, spec: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """
        Replace a project's spec and bump its generation.

        Returns the updated record, or None if no live project has that name.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE sentry_projects
                SET spec = $2,
                    generation = generation + 1,
                    resource_version = resource_version + 1,
                    next_reconcile_time = NOW(),
                    updated_at = NOW()
                WHERE name = $1 AND deletion_timestamp IS NULL
                RETURNING *
                """,
                name,
                json.dumps(spec),
            )
            if not row:
                return None

            logger.info(f"Updated project {name} to generation {row['generation']}")
            return self._parse_project_row(row)

    async def delete_project(self, name: str) -> bool:
        """
        Request deletion by setting the deletion timestamp.

        The record stays until its finalizers are cleared. Repeated calls
        keep the original timestamp.
        """
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                """
                UPDATE sentry_projects
                SET deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                    resource_version = resource_version + 1,
                    next_reconcile_time = NOW(),
                    updated_at = NOW()
                WHERE name = $1
                RETURNING id
                """,
                name,
            )
            if result:
                logger.info(f"Marked project {name} for deletion")
                return True
            return False

    async def get_project_record(self, name: str) -> Optional[Dict[str, Any]]:
        """Get a project's raw record, including ones being deleted."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM sentry_projects WHERE name = $1",
                name,
            )
            if not row:
                return None
            return self._parse_project_row(row)

    async def get_project(self, name: str) -> Optional[SentryProject]:
        """Get a project by key for reconciliation."""
        record = await self.get_project_record(name)
        if record is None:
            return None
        return SentryProject.from_record(record)

    async def list_projects(
        self,
        phase: Optional[str] = None,
        organization: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """List declared projects with optional filters."""
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM sentry_projects WHERE 1=1"
            params = []
            param_count = 0

            if phase:
                param_count += 1
                query += (
                    f" AND COALESCE(status->>'phase', 'Uninitialized') = ${param_count}"
                )
                params.append(phase)

            if organization:
                param_count += 1
                query += f" AND spec->>'organization' = ${param_count}"
                params.append(organization)

            param_count += 1
            query += f" ORDER BY created_at DESC LIMIT ${param_count}"
            params.append(limit)

            rows = await conn.fetch(query, *params)
            return [self._parse_project_row(row) for row in rows]

    async def update_project_status(
        self, name: str, status: Dict[str, Any], resource_version: int
    ) -> int:
        """
        Write a project's observed status.

        Returns:
            The new resource version

        Raises:
            StaleResourceError: If the record changed since resource_version
        """
        async with self.pool.acquire() as conn:
            new_version = await conn.fetchval(
                """
                UPDATE sentry_projects
                SET status = $3,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE name = $1 AND resource_version = $2
                RETURNING resource_version
                """,
                name,
                resource_version,
                json.dumps(status),
            )
            if new_version is None:
                raise StaleResourceError(name, resource_version)
            return new_version

    async def update_project_finalizers(
        self, name: str, finalizers: List[str], resource_version: int
    ) -> int:
        """
        Replace a project's finalizer list.

        Returns:
            The new resource version

        Raises:
            StaleResourceError: If the record changed since resource_version
        """
        async with self.pool.acquire() as conn:
            new_version = await conn.fetchval(
                """
                UPDATE sentry_projects
                SET finalizers = $3,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE name = $1 AND resource_version = $2
                RETURNING resource_version
                """,
                name,
                resource_version,
                json.dumps(finalizers),
            )
            if new_version is None:
                raise StaleResourceError(name, resource_version)
            return new_version

    async def hard_delete_project(self, name: str) -> bool:
        """
        Permanently delete a project record.

        Only succeeds once deletion was requested and all finalizers are gone.
        """
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                """
                DELETE FROM sentry_projects
                WHERE name = $1
                  AND deletion_timestamp IS NOT NULL
                  AND finalizers = '[]'::jsonb
                RETURNING id
                """,
                name,
            )
            if result:
                logger.info(f"Hard-deleted project {name}")
                return True
            return False

    # ==================== Scheduling Methods ====================

    async def get_projects_needing_reconciliation(
        self, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """
        Get projects due for a reconciliation pass.

        Deletions first, then never-reconciled projects, then the rest by
        due time.
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM sentry_projects
                WHERE last_reconcile_time IS NULL
                   OR next_reconcile_time <= NOW()
                ORDER BY
                    CASE
                        WHEN deletion_timestamp IS NOT NULL THEN 0
                        WHEN last_reconcile_time IS NULL THEN 1
                        ELSE 2
                    END,
                    next_reconcile_time ASC NULLS FIRST
                LIMIT $1
                """,
                limit,
            )

            return [self._parse_project_row(row) for row in rows]

    async def mark_reconciled(self, name: str, resync_after: int) -> None:
        """Record a successful pass and schedule the next resync."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE sentry_projects
                SET last_reconcile_time = NOW(),
                    next_reconcile_time = NOW() + INTERVAL '1 second' * $2,
                    retry_count = 0
                WHERE name = $1
                """,
                name,
                resync_after,
            )

    async def schedule_retry(
        self,
        name: str,
        base_delay: int = 60,
        max_delay: int = 3600,
        jitter_factor: float = 0.1,
    ) -> None:
        """
        Record a failed pass and requeue it with exponential backoff and jitter.

        Args:
            name: Project key
            base_delay: Base delay in seconds
            max_delay: Maximum delay in seconds
            jitter_factor: Jitter factor ±X (0.1 = ±10%)
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE sentry_projects
                SET last_reconcile_time = NOW(),
                    retry_count = retry_count + 1,
                    next_reconcile_time = NOW() + (
                        INTERVAL '1 second' * LEAST(
                            $2 * POWER(2, LEAST(retry_count, 10)),
                            $3
                        ) * (1 + (random() * 2 - 1) * $4)
                    )
                WHERE name = $1
                """,
                name,
                base_delay,
                max_delay,
                jitter_factor,
            )

    async def mark_project_for_reconciliation(self, name: str) -> bool:
        """Manually trigger reconciliation for a project."""
        async with self.pool.acquire() as conn:
            result = await conn.fetchval(
                """
                UPDATE sentry_projects
                SET next_reconcile_time = NOW()
                WHERE name = $1
                RETURNING id
                """,
                name,
            )
            return result is not None

    # ==================== History Methods ====================

    async def record_reconciliation(
        self,
        name: str,
        success: bool,
        action: Optional[str] = None,
        phase: Optional[str] = None,
        message: Optional[str] = None,
        generation: Optional[int] = None,
        duration_seconds: Optional[float] = None,
        trigger_reason: Optional[str] = None,
    ):
        """Record a reconciliation pass in history."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO reconciliation_history (
                    project_name, generation, success, action, phase,
                    message, duration_seconds, trigger_reason
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                name,
                generation,
                success,
                action,
                phase,
                message,
                duration_seconds,
                trigger_reason,
            )

    async def get_reconciliation_history(
        self, name: str, limit: int = 10
    ) -> List[Dict[str, Any]]:
        """Get reconciliation history for a project, newest first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT *
                FROM reconciliation_history
                WHERE project_name = $1
                ORDER BY reconcile_time DESC
                LIMIT $2
                """,
                name,
                limit,
            )

            return [dict(row) for row in rows]

    def _parse_project_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """
        Parse a sentry_projects row, converting JSON fields.

        asyncpg hands jsonb columns back as strings unless a codec is set.
        """
        result = dict(row)
        result["spec"] = self._load_json(result.get("spec"), {})
        result["status"] = self._load_json(result.get("status"), {})
        result["finalizers"] = self._load_json(result.get("finalizers"), [])
        return result

    @staticmethod
    def _load_json(value: Any, default: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value)
        return value or default
