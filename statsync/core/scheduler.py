"""
Automated task scheduler for the statsync pipeline.

This module provides scheduled background jobs for:
- Injury reports
- Current-week games and per-game stats
- Current-week odds
- Nightly derived recompute (standings, matchups, season re-merge)

Scheduler: APScheduler (lightweight, FastAPI-compatible)
"""
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from statsync.core.config import settings
from statsync.services.sync.orchestrator import SyncOrchestrator
from statsync.utils.season import current_week

logger = logging.getLogger(__name__)


class AutomationScheduler:
    """
    Main scheduler for recurring incremental syncs.

    Every job logs and swallows its own failure so one bad run never stops
    the scheduler.
    """

    def __init__(self, orchestrator: SyncOrchestrator, timezone: Optional[str] = None):
        self.orchestrator = orchestrator
        self.timezone = timezone or settings.SCHEDULER_TIMEZONE
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.running = False

    def _season_and_week(self):
        season = settings.CURRENT_SEASON
        return season, current_week(season, settings.SEASON_START_DATE)

    async def start(self):
        """Start the scheduler."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting automation scheduler...")

        self.scheduler = AsyncIOScheduler(
            timezone=self.timezone,
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Only one instance of each job
                'misfire_grace_time': 300  # 5 minutes grace for misfires
            }
        )

        self._schedule_injury_updates()
        self._schedule_games_and_stats()
        self._schedule_odds_fetch()
        self._schedule_derived_recompute()

        self.scheduler.start()
        self.running = True

        logger.info("Scheduler started with %d jobs", len(self.scheduler.get_jobs()))
        self._log_scheduled_jobs()

    async def stop(self):
        """Stop the scheduler."""
        if not self.running:
            return

        logger.info("Stopping scheduler...")
        self.scheduler.shutdown(wait=True)
        self.running = False
        logger.info("Scheduler stopped")

    async def run_injuries(self):
        """Injury reports (current snapshot)."""
        try:
            result = await self.orchestrator.sync_injuries()
            step = result["steps"]["injuries"]
            logger.info(f"Injury sync: success={result['success']} ({result['duration_ms']}ms)")
            return step
        except Exception as e:
            logger.error(f"Injury sync failed: {e}")

    async def run_games_and_stats(self):
        """Current-week games, then per-game stats."""
        season, week = self._season_and_week()
        try:
            core = await self.orchestrator.sync_core(season, week)
            stats = await self.orchestrator.sync_stats(season, week)
            logger.info(
                f"Games/stats sync for {season} week {week}: "
                f"core={core['success']} stats={stats['success']}"
            )
            return {"core": core, "stats": stats}
        except Exception as e:
            logger.error(f"Games/stats sync failed: {e}")

    async def run_odds(self):
        """Current-week odds, per game."""
        season, week = self._season_and_week()
        try:
            result = await self.orchestrator.sync_odds(season, week)
            logger.info(f"Odds sync for {season} week {week}: {result['games']} games, success={result['success']}")
            return result
        except Exception as e:
            logger.error(f"Odds sync failed: {e}")

    async def run_derived(self):
        """Season re-merge, standings and matchups."""
        season = settings.CURRENT_SEASON
        try:
            result = self.orchestrator.compute_derived(season)
            logger.info(
                f"Derived recompute for {season}: {result['standings']} standings, "
                f"{result['matchups']} matchups ({result['duration_ms']}ms)"
            )
            return result
        except Exception as e:
            logger.error(f"Derived recompute failed: {e}")

    def _schedule_injury_updates(self):
        """
        Schedule: Sync injury reports.

        Frequency: Every 30 minutes
        Purpose: Keep injury statuses current (drives injury.update webhooks)
        """
        if self.scheduler is None:
            return

        self.scheduler.add_job(
            self.run_injuries,
            trigger=CronTrigger(minute='*/30', timezone=self.timezone),
            id='injury_sync',
            name='Sync Injury Reports',
            misfire_grace_time=600,
        )
        logger.info("Scheduled: Injury sync (every 30 minutes)")

    def _schedule_games_and_stats(self):
        """
        Schedule: Sync current-week games and per-game stats.

        Frequency: Every 6 hours (6AM, 12PM, 6PM, 12AM)
        Purpose: Pick up final scores and box scores; stats pages recompute
        canonical metrics as they land
        """
        if self.scheduler is None:
            return

        self.scheduler.add_job(
            self.run_games_and_stats,
            trigger=CronTrigger(hour='0,6,12,18', minute=15, timezone=self.timezone),
            id='games_stats_sync',
            name='Sync Games and Stats',
            misfire_grace_time=600,
        )
        logger.info("Scheduled: Games and stats sync (every 6 hours at :15)")

    def _schedule_odds_fetch(self):
        """
        Schedule: Sync odds for the current week, one game at a time.

        Frequency: Twice daily (12PM, 5PM)
        """
        if self.scheduler is None:
            return

        self.scheduler.add_job(
            self.run_odds,
            trigger=CronTrigger(hour='12,17', minute=0, timezone=self.timezone),
            id='odds_sync',
            name='Sync Odds',
            misfire_grace_time=600,
        )
        logger.info("Scheduled: Odds sync (twice daily at 12PM and 5PM)")

    def _schedule_derived_recompute(self):
        """
        Schedule: Recompute derived tables.

        Frequency: Daily at 3AM
        Purpose: Sweep re-merge plus standings and matchups, as a safety net
        for anything the incremental hooks missed
        """
        if self.scheduler is None:
            return

        self.scheduler.add_job(
            self.run_derived,
            trigger=CronTrigger(hour=3, minute=0, timezone=self.timezone),
            id='derived_recompute',
            name='Recompute Derived Data',
            misfire_grace_time=3600,
        )
        logger.info("Scheduled: Derived recompute (daily 3AM)")

    def _log_scheduled_jobs(self):
        """Log all scheduled jobs for visibility."""
        jobs = self.scheduler.get_jobs()

        logger.info("=" * 60)
        logger.info("SCHEDULED AUTOMATION JOBS")
        logger.info("=" * 60)

        for job in jobs:
            next_run = getattr(job, "next_run_time", None)
            next_run_str = next_run.strftime('%Y-%m-%d %I:%M %p %Z') if next_run else 'Pending'
            logger.info(f"  • {job.name}")
            logger.info(f"    ID: {job.id}")
            logger.info(f"    Next run: {next_run_str}")

        logger.info("=" * 60)
        logger.info(f"Total jobs scheduled: {len(jobs)}")
        logger.info("=" * 60)


# Global scheduler instance
_scheduler: Optional[AutomationScheduler] = None


async def start_scheduler(orchestrator: SyncOrchestrator) -> AutomationScheduler:
    """Start the global scheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = AutomationScheduler(orchestrator)
        await _scheduler.start()
    return _scheduler


async def stop_scheduler():
    """Stop the global scheduler."""
    global _scheduler
    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None


def get_scheduler() -> Optional[AutomationScheduler]:
    """Get the global scheduler instance."""
    return _scheduler
