import atexit
import threading
import time
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler

from app.extensions import db

REMINDER_JOB_ID = "booking-reminder-scan"


class ReminderScheduler:
    """
    Runs the reminder scan on an interval and on demand.

    Both entry points go through ``_run_cycle``. Cycles never overlap: a tick
    that fires while another cycle is still running is skipped.
    """

    def __init__(
        self,
        app,
        scanner,
        interval_minutes=5,
        cycle_deadline_seconds=240,
        clock=datetime.now,
    ):
        self.app = app
        self.scanner = scanner
        self.interval_minutes = interval_minutes
        self.cycle_deadline_seconds = cycle_deadline_seconds
        self.clock = clock
        self._cycle_lock = threading.Lock()
        self._scheduler = BackgroundScheduler()

    @property
    def running(self):
        return self._scheduler.running

    def start(self):
        """Schedule the interval job; its first run happens immediately."""
        if self._scheduler.running:
            self.app.logger.info(
                "[SCHEDULER] Scheduler already running (skipping duplicate start)"
            )
            return

        self._scheduler.add_job(
            self._run_cycle,
            "interval",
            minutes=self.interval_minutes,
            id=REMINDER_JOB_ID,
            next_run_time=datetime.now(),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        self.app.logger.info(
            f"[SCHEDULER] Reminder scan scheduled every {self.interval_minutes} minute(s)"
        )

    def shutdown(self):
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            self.app.logger.info("[SCHEDULER] Scheduler stopped")

    def run_once_now(self, now=None):
        """Run one cycle in the calling thread. Returns None if one is running."""
        return self._run_cycle(now)

    def _run_cycle(self, now=None):
        if not self._cycle_lock.acquire(blocking=False):
            self.app.logger.warning(
                "[SCHEDULER] Previous reminder scan still running; skipping this tick"
            )
            return None

        try:
            with self.app.app_context():
                now = now or self.clock()
                stamp = now.strftime("%Y-%m-%d %H:%M:%S")
                deadline = time.monotonic() + self.cycle_deadline_seconds
                try:
                    report = self.scanner.run_cycle(now, deadline)
                except Exception as e:
                    db.session.rollback()
                    self.app.logger.error(
                        f"[SCHEDULER] {stamp} - Reminder scan failed: {e}"
                    )
                    return None

                self.app.logger.info(
                    f"[SCHEDULER] {stamp} - Reminder scan: {report.sent} sent, "
                    f"{report.already_sent} already sent, "
                    f"{len(report.failures)} failed"
                )
                if report.deadline_reached:
                    self.app.logger.warning(
                        f"[SCHEDULER] {stamp} - Cycle deadline reached; "
                        "remaining reminders left for the next tick"
                    )
                return report
        finally:
            self._cycle_lock.release()


def init_scheduler(app, scanner):
    """Build the reminder scheduler, start it when enabled, stop it at exit."""
    scheduler = ReminderScheduler(
        app,
        scanner,
        interval_minutes=app.config["REMINDER_SCAN_INTERVAL_MINUTES"],
        cycle_deadline_seconds=app.config["REMINDER_CYCLE_DEADLINE_SECONDS"],
    )
    app.extensions["reminder_scheduler"] = scheduler

    if app.config.get("SCHEDULER_ENABLED"):
        scheduler.start()
        # Shut down the scheduler when exiting the app
        atexit.register(scheduler.shutdown)
    return scheduler


def get_scheduler(app):
    return app.extensions["reminder_scheduler"]
