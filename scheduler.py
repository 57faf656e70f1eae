import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import session_scope
from services import LedgerAuditService, PeriodRolloverService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def roll_envelopes(source: str) -> int:
    with session_scope() as session:
        count = PeriodRolloverService(session).run()
    logger.info(f"rollover_run: source={source} envelopes_rolled={count}")
    return count


def audit_ledger(source: str) -> bool:
    """Report drift without repairing it; repairs stay an explicit action."""
    with session_scope() as session:
        report = LedgerAuditService(session).audit()
    if report.is_clean:
        logger.info(
            f"ledger_audit: source={source} allocations={report.allocations_checked} clean"
        )
        return True
    logger.warning(
        f"ledger_audit: source={source} drifts={len(report.drifts)} "
        f"foreign_links={len(report.foreign_links)} "
        f"amount_mismatches={len(report.amount_mismatches)}"
    )
    return False


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.rollover_hour = settings.rollover_hour
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _jobs(self):
        hour = self.rollover_hour
        return [
            (
                "rollover_daily",
                roll_envelopes,
                CronTrigger(hour=hour, minute=5),
                f"daily_{hour:02d}:05",
                3600,
            ),
            (
                "rollover_hourly_safety",
                roll_envelopes,
                IntervalTrigger(hours=1),
                "hourly_safety_net",
                300,
            ),
            (
                "ledger_audit_nightly",
                audit_ledger,
                CronTrigger(hour=(hour + 1) % 24, minute=30),
                "nightly",
                3600,
            ),
        ]

    def start(self) -> None:
        roll_envelopes("startup")

        for job_id, func, trigger, source, grace in self._jobs():
            self.scheduler.add_job(
                func,
                trigger,
                args=[source],
                id=job_id,
                replace_existing=True,
                misfire_grace_time=grace,
            )

        self.scheduler.start()
        logger.info(
            f"Scheduler started: jobs={','.join(job.id for job in self.scheduler.get_jobs())}"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
