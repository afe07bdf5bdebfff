"""
Background Scheduler for ledger reconciliation and data retention
credvault/tasks/scheduler.py

Runs periodic tasks:
- Reconcile drafts stuck in `uploaded`
- Daily retention sweep over consent records
- Daily cleanup of expired export files
- Role cache sync from ledger events
"""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
import logging

logger = logging.getLogger(__name__)

ROLE_SYNC_INTERVAL_SECONDS = 60


class CredVaultScheduler:
    def __init__(self, supervisor):
        self.supervisor = supervisor
        self.settings = supervisor.settings
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self.setup_jobs()

    def setup_jobs(self):
        """Setup all scheduled jobs"""

        # Drafts left in `uploaded` by a timeout or crash
        self.scheduler.add_job(
            self.reconcile_job,
            IntervalTrigger(seconds=self.settings.RECONCILE_INTERVAL_SECONDS),
            id='registration_reconciler',
            name='Registration Reconciler',
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        # Daily retention sweep
        self.scheduler.add_job(
            self.retention_sweep_job,
            CronTrigger(hour=self.settings.RETENTION_SWEEP_HOUR, minute=0, timezone='UTC'),
            id='daily_retention_sweep',
            name='Daily Retention Sweep',
            replace_existing=True
        )

        # Expired exports, an hour after the retention sweep
        self.scheduler.add_job(
            self.cleanup_exports_job,
            CronTrigger(hour=(self.settings.RETENTION_SWEEP_HOUR + 1) % 24, minute=0, timezone='UTC'),
            id='daily_export_cleanup',
            name='Daily Export Cleanup',
            replace_existing=True
        )

        # Pick up role changes made directly on the ledger
        self.scheduler.add_job(
            self.role_sync_job,
            IntervalTrigger(seconds=ROLE_SYNC_INTERVAL_SECONDS),
            id='role_cache_sync',
            name='Role Cache Sync',
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        logger.info("⏰ Scheduler jobs configured")

    async def reconcile_job(self):
        """Finalize or resubmit stale drafts"""
        try:
            summary = await self.supervisor.reconciler().reconcile_once()
            if summary["scanned"]:
                logger.info(f"🔄 Reconciler job completed: {summary}")
        except Exception as e:
            logger.error(f"❌ Error in reconciler job: {str(e)}")

    async def retention_sweep_job(self):
        """Open deletion requests for consents past their retention period"""
        try:
            logger.info("🧹 Starting retention sweep...")
            with self.supervisor.session() as db:
                stats = self.supervisor.privacy(db).check_retention_compliance()
            logger.info(f"🧹 Retention sweep completed: {stats}")
        except Exception as e:
            logger.error(f"❌ Error in retention sweep job: {str(e)}")

    async def cleanup_exports_job(self):
        """Expire export files past their TTL"""
        try:
            with self.supervisor.session() as db:
                expired = self.supervisor.privacy(db).cleanup_expired_exports()
            logger.info(f"🗑️ Export cleanup completed: {expired} expired")
        except Exception as e:
            logger.error(f"❌ Error in export cleanup job: {str(e)}")

    async def role_sync_job(self):
        """Mirror role events emitted since the last sync"""
        try:
            with self.supervisor.session() as db:
                await self.supervisor.roles(db).sync_from_ledger()
        except Exception as e:
            logger.error(f"❌ Error in role sync job: {str(e)}")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self):
        """Start the scheduler"""
        try:
            self.scheduler.start()
            self.supervisor.scheduler = self
            logger.info("✅ Scheduler started")
        except Exception as e:
            logger.error(f"❌ Failed to start scheduler: {str(e)}")

    def shutdown(self):
        """Shutdown the scheduler"""
        try:
            if self.scheduler.running:
                self.scheduler.shutdown(wait=False)
            logger.info("🛑 Scheduler stopped")
        except Exception as e:
            logger.error(f"❌ Error shutting down scheduler: {str(e)}")


def start_scheduler(supervisor) -> CredVaultScheduler:
    """Start scheduler on application startup"""
    scheduler = CredVaultScheduler(supervisor)
    scheduler.start()
    return scheduler


def stop_scheduler(scheduler: CredVaultScheduler):
    """Stop scheduler on application shutdown"""
    scheduler.shutdown()
