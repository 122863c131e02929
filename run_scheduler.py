#!/usr/bin/env python3
"""
Standalone runner for the statsync automation scheduler.

Usage:
    python run_scheduler.py                       # Run the scheduler in the foreground
    python run_scheduler.py --trigger injury_sync # Run one scheduled job now and exit
    python run_scheduler.py --full-season 2024    # Full pipeline for one season and exit
    python run_scheduler.py --list-jobs           # Show the job table and exit
"""
import argparse
import asyncio
import json
import signal
import sys
from typing import Optional

from statsync.core.config import settings
from statsync.core.database import SessionLocal, init_db
from statsync.core.logging import configure_logging, get_logger
from statsync.core.scheduler import AutomationScheduler
from statsync.services.core.provider_client import ProviderClient
from statsync.services.sync.engine import SyncEngine
from statsync.services.sync.orchestrator import SyncOrchestrator

configure_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)
logger = get_logger(__name__)

TRIGGERS = {
    "injury_sync": "run_injuries",
    "games_stats_sync": "run_games_and_stats",
    "odds_sync": "run_odds",
    "derived_recompute": "run_derived",
}


def build_orchestrator(client: ProviderClient) -> SyncOrchestrator:
    engine = SyncEngine(
        SessionLocal,
        client,
        batch_size=settings.SYNC_BULK_BATCH_SIZE,
        page_delay=settings.page_delay_seconds,
        max_pages=settings.SYNC_MAX_PAGES,
    )
    return SyncOrchestrator(engine, SessionLocal, settings.SYNC_CONCURRENCY)


def build_client() -> ProviderClient:
    return ProviderClient(
        api_key=settings.PROVIDER_API_KEY,
        base_url=settings.PROVIDER_BASE_URL,
        per_page=settings.SYNC_PER_PAGE,
        timeout=settings.PROVIDER_TIMEOUT,
        max_retries=settings.PROVIDER_MAX_RETRIES,
    )


class SchedulerRunner:
    """Runner for the automation scheduler."""

    def __init__(self):
        self.scheduler: Optional[AutomationScheduler] = None
        self.shutdown = asyncio.Event()

    async def start(self):
        """Start the scheduler and run until a shutdown signal."""
        logger.info("Starting scheduler runner...")
        async with build_client() as client:
            self.scheduler = AutomationScheduler(build_orchestrator(client))
            await self.scheduler.start()
            logger.info("Scheduler is now running (Ctrl+C to stop)")

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self._set_shutdown)

            await self.shutdown.wait()
            await self.scheduler.stop()
        logger.info("Scheduler runner stopped")

    def _set_shutdown(self):
        logger.info("Shutdown signal received")
        self.shutdown.set()


async def run_trigger_job(job_id: str) -> bool:
    """Run one scheduled job immediately, outside the scheduler."""
    method = TRIGGERS.get(job_id)
    if method is None:
        print(f"Job '{job_id}' not found. Known: {', '.join(TRIGGERS)}")
        return False
    async with build_client() as client:
        scheduler = AutomationScheduler(build_orchestrator(client))
        result = await getattr(scheduler, method)()
    print(json.dumps(result, indent=2, default=str))
    return result is not None


async def run_full_season(season: int, include_extras: bool, include_injuries: bool) -> bool:
    async with build_client() as client:
        result = await build_orchestrator(client).run_full_season(
            season, include_extras=include_extras, include_injuries=include_injuries
        )
    print(json.dumps(result, indent=2, default=str))
    return result["success"]


def list_jobs() -> None:
    print("=" * 60)
    print("SCHEDULED AUTOMATION JOBS")
    print("=" * 60)
    for job_id, method in TRIGGERS.items():
        doc = (getattr(AutomationScheduler, method).__doc__ or "").strip()
        print(f"  {job_id}  ->  AutomationScheduler.{method}  {doc}")
    print("=" * 60)


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the statsync automation scheduler")
    parser.add_argument("--trigger", type=str, metavar="JOB_ID", help="Run one scheduled job now and exit")
    parser.add_argument("--full-season", type=int, metavar="SEASON", help="Run the full pipeline for a season")
    parser.add_argument("--include-extras", action="store_true", help="With --full-season: plays, odds, props")
    parser.add_argument("--include-injuries", action="store_true", help="With --full-season: injuries")
    parser.add_argument("--list-jobs", action="store_true", help="List scheduled jobs and exit")
    args = parser.parse_args()

    if args.list_jobs:
        list_jobs()
        return 0

    init_db()

    if args.trigger:
        return 0 if asyncio.run(run_trigger_job(args.trigger)) else 1

    if args.full_season:
        ok = asyncio.run(run_full_season(args.full_season, args.include_extras, args.include_injuries))
        return 0 if ok else 1

    try:
        asyncio.run(SchedulerRunner().start())
    except Exception as e:
        logger.error(f"Scheduler error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
