"""
Operator Controller - Delivers reconciliation passes.

Polls the store for projects that are due, runs one pass per project with
bounded concurrency, and turns each pass outcome into a schedule: resync
later on success, exponential backoff on failure, erase the record once it
has been finalized.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional, Set

from config import ControllerConfig
from db import DatabaseManager
from events import EventBus, EventType
from reconciler import ReconcileResult, SentryProjectReconciler

logger = logging.getLogger(__name__)


class Controller:
    """
    Main controller that implements the reconciliation loop.

    Passes for the same project never overlap; passes for different
    projects run concurrently up to ``max_concurrent_reconciles``.
    """

    def __init__(
        self,
        db_manager: DatabaseManager,
        reconciler: SentryProjectReconciler,
        config: Optional[ControllerConfig] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.db = db_manager
        self.reconciler = reconciler
        self.config = config or ControllerConfig()
        self.reconcile_interval = self.config.reconcile_interval
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.semaphore = asyncio.Semaphore(self.max_concurrent_reconciles)
        self.running = False
        self._event_bus = event_bus
        self._in_flight: Set[str] = set()

    async def start(self):
        """Run the reconciliation loop until stop() is called."""
        logger.info("Starting Sentry Project Operator controller")
        self.running = True
        await self._reconciliation_loop()

    async def stop(self):
        logger.info("Stopping Sentry Project Operator controller")
        self.running = False

    async def _reconciliation_loop(self):
        while self.running:
            try:
                projects = await self.db.get_projects_needing_reconciliation(
                    limit=self.max_concurrent_reconciles * 2
                )

                if projects:
                    logger.info(f"Found {len(projects)} projects needing reconciliation")
                    await asyncio.gather(
                        *(self._reconcile_project(p) for p in projects),
                        return_exceptions=True,
                    )

                await asyncio.sleep(self.reconcile_interval)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)
                await asyncio.sleep(10)  # Brief pause on error

    def _determine_trigger_reason(self, record: Dict[str, Any]) -> str:
        """Determine why this pass was triggered."""
        status = record.get("status") or {}
        if record.get("deletion_timestamp") is not None:
            return "deletion"
        elif record.get("last_reconcile_time") is None:
            return "initial"
        elif record.get("generation", 0) > status.get("observedGeneration", 0):
            return "spec_change"
        elif record.get("retry_count", 0) > 0:
            return "retry"
        else:
            return "scheduled"

    async def _reconcile_project(self, record: Dict[str, Any]) -> None:
        """Run one pass for a project and schedule the next one."""
        name = record["name"]
        if name in self._in_flight:
            logger.debug(f"Skipping {name}: a pass is already running")
            return

        self._in_flight.add(name)
        try:
            async with self.semaphore:
                trigger_reason = self._determine_trigger_reason(record)
                start_time = time.monotonic()
                result = await self.reconciler.reconcile_once(name)
                duration_seconds = time.monotonic() - start_time

                await self._schedule(name, result)
                await self.db.record_reconciliation(
                    name=name,
                    success=result.success,
                    action=result.action,
                    phase=result.phase,
                    message=result.message,
                    generation=record.get("generation"),
                    duration_seconds=duration_seconds,
                    trigger_reason=trigger_reason,
                )
        except Exception as e:
            logger.error(f"Error scheduling {name}: {e}", exc_info=True)
        finally:
            self._in_flight.discard(name)

    async def _schedule(self, name: str, result: ReconcileResult) -> None:
        if not result.success:
            logger.warning(f"Reconciliation of {name} failed: {result.message}")
            await self.db.schedule_retry(
                name,
                base_delay=self.config.backoff_base_delay,
                max_delay=self.config.backoff_max_delay,
                jitter_factor=self.config.backoff_jitter_factor,
            )
            return

        if result.finalized:
            record = await self.db.get_project_record(name)
            if await self.db.hard_delete_project(name):
                if self._event_bus:
                    await self._event_bus.publish_record(EventType.DELETED, record)
                return

        await self.db.mark_reconciled(name, self.config.resync_interval)
        if self._event_bus:
            updated = await self.db.get_project_record(name)
            await self._event_bus.publish_record(EventType.RECONCILED, updated)
