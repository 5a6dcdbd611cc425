"""
Background scheduler for result ingestion and scoring recovery

Two APScheduler jobs run inside the web process:

- sync_results pulls the external matches feed and finalizes matches that
  became finished
- score_pending sweeps finished matches that were never scored (a crash
  between recording a result and scoring it, or a scoring failure) and
  finalizes them
"""

import atexit
import logging
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from matchpicks import db
from matchpicks.services.ranking_service import get_ranking_propagator
from matchpicks.utils.data_sync import ResultSync

logger = logging.getLogger(__name__)


class SchedulerService:
    """Manages background jobs for result syncing and the pending-scoring sweep"""

    def __init__(self, app=None):
        self.scheduler = None
        self.app = app
        self.result_sync = None
        self.is_running = False
        self.sync_stats = self._empty_stats()

        if app:
            self.init_app(app)

    @staticmethod
    def _empty_stats(last_sync=None):
        return {
            "last_sync": last_sync,
            "total_syncs": 0,
            "successful_syncs": 0,
            "failed_syncs": 0,
            "last_error": None,
            "matches_scored": 0,
        }

    def init_app(self, app):
        """Initialize scheduler with Flask app"""
        self.app = app
        self.scheduler = BackgroundScheduler(daemon=True, timezone="UTC")

        with app.app_context():
            self.result_sync = ResultSync()

        # Register shutdown
        atexit.register(self.shutdown)

        # Start scheduler if enabled
        if app.config.get("SCHEDULER_ENABLED", True):
            self.start()

    def start(self):
        """Start the background scheduler"""
        if self.is_running:
            return

        try:
            self.scheduler.remove_all_jobs()
            self._add_core_jobs()
            self.scheduler.start()
            self.is_running = True

            logger.info("Scheduler started successfully")

        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}")
            raise

    def stop(self):
        """Stop the background scheduler"""
        if not self.is_running:
            return

        try:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Scheduler stopped")

        except Exception as e:
            logger.error(f"Error stopping scheduler: {e}")

    def shutdown(self):
        """Graceful shutdown"""
        self.stop()

    def _add_core_jobs(self):
        """Add core scheduled jobs"""
        config = self.app.config

        self.scheduler.add_job(
            func=self._sync_results,
            trigger=IntervalTrigger(minutes=config.get("RESULT_SYNC_MINUTES", 5)),
            id="sync_results",
            name="Sync Match Results",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
        )

        self.scheduler.add_job(
            func=self._score_pending,
            trigger=IntervalTrigger(minutes=config.get("SCORING_SWEEP_MINUTES", 10)),
            id="score_pending",
            name="Score Pending Matches",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )

    def _sync_results(self):
        """Pull the results feed and score newly finished matches"""
        with self.app.app_context():
            try:
                success, message = self.result_sync.sync_results()
                scored = self.result_sync.last_stats.get("scored", 0)
                self._update_stats(success, scored)
                if not success:
                    self.sync_stats["last_error"] = message

            except Exception as e:
                db.session.rollback()
                self._update_stats(False)
                self.sync_stats["last_error"] = str(e)
                logger.error(f"Error in result sync: {e}", exc_info=True)

    def _score_pending(self):
        """Finalize finished matches that were never scored"""
        with self.app.app_context():
            try:
                results, failed = get_ranking_propagator().score_pending_matches()
                scored = sum(1 for result in results if not result.already_scored)
                self._update_stats(not failed, scored)

                if failed:
                    self.sync_stats["last_error"] = (
                        f"Scoring failed for matches {failed}"
                    )
                elif scored:
                    logger.info(f"Pending sweep scored {scored} matches")

            except Exception as e:
                db.session.rollback()
                self._update_stats(False)
                self.sync_stats["last_error"] = str(e)
                logger.error(f"Error in pending scoring sweep: {e}", exc_info=True)

    def _update_stats(self, success, matches_scored=0):
        """Update sync statistics"""
        self.sync_stats["last_sync"] = datetime.now(timezone.utc)
        self.sync_stats["total_syncs"] += 1

        if success:
            self.sync_stats["successful_syncs"] += 1
            self.sync_stats["matches_scored"] += matches_scored
            self.sync_stats["last_error"] = None
        else:
            self.sync_stats["failed_syncs"] += 1

        # Keep counters bounded in long-running processes
        if self.sync_stats["total_syncs"] > 10000:
            self.sync_stats = self._empty_stats(self.sync_stats["last_sync"])

    def get_status(self):
        """Get scheduler status information"""
        jobs = []
        if self.scheduler:
            for job in self.scheduler.get_jobs():
                next_run = getattr(job, "next_run_time", None)
                jobs.append(
                    {
                        "id": job.id,
                        "name": job.name,
                        "next_run": next_run.isoformat() if next_run else None,
                        "trigger": str(job.trigger),
                    }
                )

        return {"is_running": self.is_running, "jobs": jobs, "stats": self.sync_stats}

    def force_sync(self, sync_type="results"):
        """Manually trigger a job"""
        if sync_type == "results":
            self._sync_results()
        elif sync_type == "pending":
            self._score_pending()
        else:
            return False, f"Unknown sync type: {sync_type}"

        if self.sync_stats["last_error"]:
            return False, f"Manual {sync_type} sync failed: {self.sync_stats['last_error']}"
        return True, f"Manual {sync_type} sync completed"
