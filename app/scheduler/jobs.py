"""
app/scheduler/jobs.py

APScheduler-based scheduler for recurring log ingestion.

Schedule (crontab expressions, scheduler timezone, Asia/Shanghai by default)
-----------------------------------------------------------------------------
  realtime: */15 * * * *   today's newest files
  hourly:   0 * * * *      today, plus yesterday before 06:00
  daily:    0 2 * * *      full rescan of the last three days
  startup:  once, a few seconds after ``start()``, same scope as realtime

Single flight
-------------
At most one run executes at a time, whoever triggered it. The decision to
run and entering the running state happen in one non-blocking lock acquire;
the lock is released in ``finally``. Recurring triggers that find a run in
progress skip silently; manual triggers raise ``IngestionAlreadyRunningError``.

Lifecycle
----------
Build one ``IngestionScheduler`` on app boot and call ``start()``; call
``shutdown(wait=True)`` on app shutdown. It is wired into FastAPI via the
``lifespan`` context in main.py.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from app.config import (
    IngestionSettings,
    SchedulerSettings,
    get_ingestion_settings,
    get_log_source_settings,
    get_scheduler_settings,
    get_share_settings,
)
from app.domain.membership_log import ProgressEvent, RunMode, RunState, RunSummary
from app.services.ingestion_run import IngestionRun, ProgressCallback, dates_for_mode

logger = logging.getLogger(__name__)

RunFactory = Callable[[ProgressCallback | None], IngestionRun]

_STREAM_END = object()


class IngestionAlreadyRunningError(RuntimeError):
    """
    Raised when a manual trigger arrives while another run is in progress.
    """


def build_run_factory() -> RunFactory:
    """
    Return a factory wiring a fresh connector, correlator and gateway per run.
    """

    from app.connectors.factory import build_share_connector
    from app.parsing.stream_correlator import StreamCorrelator
    from app.repositories.persistence_gateway import SQLAlchemyPersistenceGateway

    ingestion_settings = get_ingestion_settings()
    log_source = get_log_source_settings()
    scheduler_settings = get_scheduler_settings()

    def _factory(progress: ProgressCallback | None) -> IngestionRun:
        return IngestionRun(
            connector=build_share_connector(get_share_settings()),
            correlator=StreamCorrelator(log_source),
            gateway=SQLAlchemyPersistenceGateway(
                timezone_name=scheduler_settings.timezone,
                batch_size=ingestion_settings.batch_size,
            ),
            settings=ingestion_settings,
            log_source=log_source,
            progress=progress,
        )

    return _factory


class IngestionScheduler:
    """
    Owns the recurring triggers and the single-flight run state.
    """

    def __init__(
        self,
        *,
        run_factory: RunFactory,
        settings: SchedulerSettings | None = None,
        ingestion_settings: IngestionSettings | None = None,
        scheduler: BackgroundScheduler | None = None,
    ) -> None:
        self._run_factory = run_factory
        self._settings = settings or SchedulerSettings()
        self._ingestion_settings = ingestion_settings or IngestionSettings()
        self._zone = ZoneInfo(self._settings.timezone)
        self._scheduler = scheduler or BackgroundScheduler(timezone=self._zone)
        self._run_lock = threading.Lock()
        self._last_process_time: datetime | None = None
        self._trigger_names: list[str] = []

    def start(self) -> None:
        """
        Register the recurring and startup jobs, then start the scheduler.
        """

        for job_id, name, expression, mode in (
            ("realtime", "Realtime log ingestion", self._settings.realtime_cron, RunMode.REALTIME),
            ("hourly", "Hourly log ingestion", self._settings.hourly_cron, RunMode.RECENT),
            ("daily", "Daily log rescan", self._settings.daily_cron, RunMode.DAILY),
        ):
            self._scheduler.add_job(
                self.trigger_recurring,
                trigger=CronTrigger.from_crontab(expression, timezone=self._zone),
                args=[mode],
                id=job_id,
                name=name,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=self._settings.misfire_grace_seconds,
            )

        self._scheduler.add_job(
            self.trigger_recurring,
            trigger="date",
            run_date=datetime.now(tz=self._zone) + timedelta(seconds=self._settings.startup_delay_seconds),
            args=[RunMode.REALTIME],
            id="startup",
            name="Startup log ingestion",
            replace_existing=True,
        )

        self._trigger_names = ["realtime", "hourly", "daily"]
        self._scheduler.start()
        logger.info(
            "Ingestion scheduler started jobs=%s timezone=%s",
            [job.id for job in self._scheduler.get_jobs()],
            self._settings.timezone,
        )

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
        self._trigger_names = []
        logger.info("Ingestion scheduler shut down")

    def status(self) -> RunState:
        return RunState(
            is_running=self._run_lock.locked(),
            last_process_time=self._last_process_time,
            scheduled_trigger_names=list(self._trigger_names),
        )

    def trigger_recurring(self, mode: str) -> RunSummary | None:
        """
        Scheduler entry point. Skips when busy; never raises.
        """

        if not self._run_lock.acquire(blocking=False):
            logger.info("Scheduler: %s skipped, a run is already in progress", mode)
            return None

        logger.info("Scheduler: %s starting", mode)
        try:
            summary = self._execute(mode=mode)
        except Exception as exc:  # noqa: BLE001
            logger.error("Scheduler: %s failed: %s", mode, exc)
            return None
        finally:
            self._run_lock.release()

        logger.info(
            "Scheduler: %s complete processed_files=%d new_records=%d",
            mode,
            summary.processed_files,
            summary.total_new_records,
        )
        return summary

    def trigger_manual(self, date_token: str | None = None) -> RunSummary:
        """
        Run one date (today by default) on the caller's thread.

        Raises IngestionAlreadyRunningError when busy; run errors propagate.
        """

        if not self._run_lock.acquire(blocking=False):
            raise IngestionAlreadyRunningError("Log ingestion is already running; try again later.")

        logger.info("Manual ingestion starting date=%s", date_token or "today")
        try:
            return self._execute(mode=RunMode.MANUAL, date_token=date_token)
        finally:
            self._run_lock.release()

    def trigger_manual_stream(self, date_token: str | None = None) -> Iterator[ProgressEvent]:
        """
        Run on a worker thread and yield its progress events as they happen.

        Without a date the run covers yesterday and today. Records at or
        before the processing watermark are skipped either way. The stream
        always ends with a ``completed`` or ``error`` event.
        """

        if not self._run_lock.acquire(blocking=False):
            yield ProgressEvent(
                event="error",
                message="Log ingestion is already running; try again later.",
                data={"reason": "already_running"},
            )
            return

        events: queue.Queue[object] = queue.Queue()
        mode = RunMode.MANUAL if date_token else RunMode.LATEST

        def _worker() -> None:
            try:
                self._execute(
                    mode=mode,
                    date_token=date_token,
                    apply_watermark=True,
                    progress=events.put,
                )
            except Exception as exc:  # noqa: BLE001
                logger.error("Streamed ingestion failed mode=%s: %s", mode, exc)
            finally:
                self._run_lock.release()
                events.put(_STREAM_END)

        worker = threading.Thread(target=_worker, name="log-ingestion-stream", daemon=True)
        try:
            worker.start()
        except RuntimeError:
            self._run_lock.release()
            raise

        terminated = False
        while True:
            item = events.get()
            if item is _STREAM_END:
                break
            if isinstance(item, ProgressEvent):
                terminated = terminated or item.is_terminal
                yield item

        if not terminated:
            yield ProgressEvent(event="error", message="Log ingestion ended unexpectedly.")

    def _execute(
        self,
        *,
        mode: str,
        date_token: str | None = None,
        apply_watermark: bool = False,
        progress: ProgressCallback | None = None,
    ) -> RunSummary:
        # Callers hold the run lock.
        now = datetime.now(tz=self._zone).replace(tzinfo=None)
        dates = dates_for_mode(mode, now, settings=self._ingestion_settings, date_token=date_token)
        file_limit = self._ingestion_settings.realtime_file_limit if mode == RunMode.REALTIME else None
        run = self._run_factory(progress)
        summary = run.execute(
            dates,
            mode=mode,
            apply_watermark=apply_watermark or mode == RunMode.LATEST,
            file_limit=file_limit,
            now=now,
        )
        self._last_process_time = datetime.now(tz=self._zone).replace(tzinfo=None)
        return summary


def build_scheduler() -> IngestionScheduler:
    """
    Build the ingestion scheduler from environment settings. Not yet started.
    """

    return IngestionScheduler(
        run_factory=build_run_factory(),
        settings=get_scheduler_settings(),
        ingestion_settings=get_ingestion_settings(),
    )
