"""
Background token refresh scheduler.

Runs a sweep immediately on start and then at a fixed interval:
1. Refresh every active, refreshable connection whose token is stale, one at a
   time with a short pause between provider calls
2. Deactivate active connections whose token expired long ago

Each sweep step is isolated: a failure in the refresh step is logged and the
cleanup step still runs. Refreshes go through the TokenLifecycleManager so a
sweep and a request handler never exchange the same refresh token twice.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog

from ..config import Settings
from ..db import PlatformConnectionsRepository, utcnow, with_unit_of_work
from .token_manager import TokenLifecycleManager

logger = structlog.get_logger(__name__)


class TokenRefreshScheduler:
    """
    Periodic proactive refresh of expiring tokens plus cleanup of dead connections.

    Constructed once per process (in the application lifespan) with the shared
    TokenLifecycleManager; start() is idempotent.
    """

    def __init__(self, settings: Settings, manager: TokenLifecycleManager):
        self.settings = settings
        self.manager = manager

        self._background_task: Optional[asyncio.Task] = None

        self.interval_seconds = settings.token_refresh_interval_minutes * 60
        self.delay_seconds = settings.token_refresh_delay_ms / 1000
        self.retention = timedelta(days=settings.stale_connection_retention_days)

        # Statistics for monitoring
        self.stats = {
            "sweeps_completed": 0,
            "connections_processed": 0,
            "tokens_refreshed": 0,
            "refresh_failures": 0,
            "connections_deactivated": 0,
            "errors_encountered": 0,
            "avg_sweep_duration_ms": 0.0,
            "last_sweep_time": None,
        }

    @property
    def is_running(self) -> bool:
        return self._background_task is not None and not self._background_task.done()

    async def start(self) -> None:
        """Start the background loop. A second call while running does nothing."""
        if self.is_running:
            logger.warning("Token refresh scheduler already running")
            return

        self._background_task = asyncio.create_task(self._background_refresh_loop())

        logger.info(
            "Token refresh scheduler started",
            interval_minutes=self.settings.token_refresh_interval_minutes,
            delay_ms=self.settings.token_refresh_delay_ms,
        )

    async def stop(self) -> None:
        """Cancel the background loop. Does nothing when not running."""
        if self._background_task is None:
            return

        task, self._background_task = self._background_task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        logger.info("Token refresh scheduler stopped")

    async def _background_refresh_loop(self) -> None:
        """Sweep now, then every interval until cancelled."""
        logger.info("Background token refresh loop starting")

        while True:
            try:
                await self.run_sweep()
            except Exception as e:
                logger.error(
                    "Background refresh loop error",
                    error=str(e),
                    sweep_count=self.stats["sweeps_completed"],
                )
                self.stats["errors_encountered"] += 1

            await asyncio.sleep(self.interval_seconds)

    async def run_sweep(self) -> Dict[str, int]:
        """
        Perform one full sweep: bulk refresh, then stale-connection cleanup.

        Returns:
            Counts for this sweep (processed, refreshed, failed, deactivated)
        """
        sweep_start = time.time()
        summary = {"processed": 0, "refreshed": 0, "failed": 0, "deactivated": 0}

        try:
            refresh_summary = await self.refresh_expiring_connections()
            summary.update(refresh_summary)
        except Exception as e:
            logger.error("Background refresh step failed", error=str(e))
            self.stats["errors_encountered"] += 1

        try:
            summary["deactivated"] += await self.deactivate_stale_connections()
        except Exception as e:
            logger.error("Stale connection cleanup failed", error=str(e))
            self.stats["errors_encountered"] += 1

        self._update_sweep_statistics((time.time() - sweep_start) * 1000, summary)
        return summary

    async def refresh_expiring_connections(self) -> Dict[str, int]:
        """
        Refresh every active connection on a refreshable platform whose token
        expires before now + buffer. Sequential, one provider call at a time.
        """
        platforms = self.manager.registry.refreshable_platforms()
        threshold = self.manager.stale_before()

        async with with_unit_of_work(self.manager.session_factory) as session:
            candidates = await PlatformConnectionsRepository(
                session, self.manager.crypto
            ).find_connections_expiring_before(platforms, threshold)
            candidate_ids = [connection.id for connection in candidates]

        summary = {
            "processed": len(candidate_ids),
            "refreshed": 0,
            "failed": 0,
            "deactivated": 0,
        }

        if not candidate_ids:
            logger.debug("No connections require background refresh")
            return summary

        logger.info(
            "Background refresh sweep starting",
            total_candidates=len(candidate_ids),
            platforms=platforms,
        )

        for index, connection_id in enumerate(candidate_ids):
            if index and self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)

            result = await self.manager.refresh_connection(connection_id)

            if result.success:
                summary["refreshed"] += 1
            else:
                summary["failed"] += 1
                if result.is_terminal:
                    summary["deactivated"] += 1
                logger.warning(
                    "Background token refresh failed",
                    connection_id=str(connection_id),
                    classification=result.classification,
                    error=result.error,
                )

        return summary

    async def deactivate_stale_connections(self) -> int:
        """Deactivate active connections whose token expired more than the retention period ago."""
        cutoff = utcnow() - self.retention

        async with with_unit_of_work(self.manager.session_factory) as session:
            count = await PlatformConnectionsRepository(
                session, self.manager.crypto
            ).deactivate_connections_older_than(cutoff)

        if count:
            logger.info(
                "Deactivated stale connections",
                count=count,
                cutoff=cutoff.isoformat(),
            )
        return count

    def _update_sweep_statistics(self, duration_ms: float, summary: Dict[str, int]) -> None:
        """Update sweep statistics for monitoring."""
        self.stats["sweeps_completed"] += 1
        self.stats["connections_processed"] += summary["processed"]
        self.stats["tokens_refreshed"] += summary["refreshed"]
        self.stats["refresh_failures"] += summary["failed"]
        self.stats["connections_deactivated"] += summary["deactivated"]
        self.stats["last_sweep_time"] = datetime.now(timezone.utc).isoformat()

        # Rolling average of sweep duration
        current_avg = self.stats["avg_sweep_duration_ms"]
        sweep_count = self.stats["sweeps_completed"]
        self.stats["avg_sweep_duration_ms"] = (
            current_avg * (sweep_count - 1) + duration_ms
        ) / sweep_count

        logger.info(
            "Background refresh sweep completed",
            duration_ms=round(duration_ms, 2),
            connections_processed=summary["processed"],
            tokens_refreshed=summary["refreshed"],
            refresh_failures=summary["failed"],
            connections_deactivated=summary["deactivated"],
            total_sweeps=sweep_count,
        )

    def get_service_stats(self) -> Dict[str, Any]:
        """Scheduler statistics for the health endpoint."""
        return {
            **self.stats,
            "is_running": self.is_running,
            "config": {
                "interval_minutes": self.settings.token_refresh_interval_minutes,
                "delay_ms": self.settings.token_refresh_delay_ms,
                "buffer_minutes": self.settings.token_refresh_buffer_minutes,
                "retention_days": self.settings.stale_connection_retention_days,
            },
        }
