from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from .monitor import ChatPoller, LivenessScheduler, PollReport
from .settings import settings


POLL_JOB_ID = "liveness_poll"


class PollScheduler:
    """Runs the liveness poll in-process and re-arms itself at the recommended interval."""

    def __init__(self, liveness: LivenessScheduler, chat: ChatPoller | None = None) -> None:
        self.scheduler = BackgroundScheduler(timezone=settings.market_timezone)
        self.liveness = liveness
        self.chat = chat if settings.chat_polling_enabled else None
        self.interval_minutes = settings.off_hours_poll_minutes

    def start(self) -> None:
        self.interval_minutes = self.liveness.recommended_interval().poll_interval_minutes
        self.scheduler.add_job(
            self.run_cycle,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=POLL_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        logger.info("Poll scheduler started, every {} min", self.interval_minutes)

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Poll scheduler stopped")

    def run_cycle(self) -> PollReport:
        report = self.liveness.poll()
        if self.chat is not None and not report.skipped:
            for check in report.live_streams:
                channel = self.liveness.channel(check.channel_id)
                if channel is not None:
                    self.chat.poll_stream(channel)

        interval = self.liveness.recommended_interval().poll_interval_minutes
        if interval != self.interval_minutes and self.scheduler.running:
            self.scheduler.reschedule_job(POLL_JOB_ID, trigger=IntervalTrigger(minutes=interval))
            logger.info("Poll interval changed {} -> {} min", self.interval_minutes, interval)
        self.interval_minutes = interval
        return report
