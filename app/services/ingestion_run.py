"""
app/services/ingestion_run.py

One end-to-end ingestion pass: attach to the share, locate each date's log
files, correlate them and persist the records.

A run owns its connector for its whole lifetime and always detaches in
``finally``. Files are processed sequentially in locator order; a failing
file is marked ``failed`` in the progress history and the run moves on.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any

from app.config import IngestionSettings, LogSourceSettings
from app.connectors.base import ShareConnectionError, ShareConnector
from app.domain.membership_log import (
    CorrelatedRecord,
    FileDescriptor,
    FileProgress,
    FileProgressStatus,
    ProgressEvent,
    RunMode,
    RunSummary,
)
from app.parsing.file_locator import FileLocator
from app.parsing.stream_correlator import LogFileReadError, StreamCorrelator
from app.repositories.persistence_gateway import PersistenceGateway
from db.repositories.errors import PersistenceError

logger = logging.getLogger(__name__)

DATE_TOKEN_FORMAT = "%Y%m%d"

ProgressCallback = Callable[[ProgressEvent], None]


def dates_for_mode(
    mode: str,
    now: datetime,
    *,
    settings: IngestionSettings | None = None,
    date_token: str | None = None,
) -> list[str]:
    """
    Resolve the ``YYYYMMDD`` folders one run of ``mode`` covers.

    realtime  today
    recent    today, plus yesterday while before the early-morning cut-off hour
    daily     today and the preceding days of the lookback window, newest first
    manual    the given date, or today
    latest    yesterday and today
    """

    resolved = settings or IngestionSettings()
    today = now.strftime(DATE_TOKEN_FORMAT)
    yesterday = (now - timedelta(days=1)).strftime(DATE_TOKEN_FORMAT)

    if mode == RunMode.REALTIME:
        return [today]
    if mode == RunMode.RECENT:
        if now.hour < resolved.recent_yesterday_until_hour:
            return [today, yesterday]
        return [today]
    if mode == RunMode.DAILY:
        return [
            (now - timedelta(days=offset)).strftime(DATE_TOKEN_FORMAT)
            for offset in range(resolved.daily_lookback_days)
        ]
    if mode == RunMode.MANUAL:
        return [date_token or today]
    if mode == RunMode.LATEST:
        return [yesterday, today]
    raise ValueError(f"Unsupported run mode: {mode!r}")


class IngestionRun:
    """
    Executes a single ingestion pass over a set of dates.
    """

    def __init__(
        self,
        *,
        connector: ShareConnector,
        correlator: StreamCorrelator,
        gateway: PersistenceGateway,
        settings: IngestionSettings | None = None,
        log_source: LogSourceSettings | None = None,
        locator: FileLocator | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        self._connector = connector
        self._correlator = correlator
        self._gateway = gateway
        self._settings = settings or IngestionSettings()
        self._log_source = log_source or LogSourceSettings()
        self._locator = locator or FileLocator(connector, max_slices=self._log_source.max_slices)
        self._progress = progress

    def execute(
        self,
        dates: Sequence[str],
        *,
        mode: str = RunMode.MANUAL,
        apply_watermark: bool = False,
        file_limit: int | None = None,
        now: datetime | None = None,
    ) -> RunSummary:
        """
        Ingest every located file for ``dates``.

        ``apply_watermark`` drops records at or before the processing cutoff
        for every file; otherwise the cutoff only applies to files already
        completed earlier (except in ``daily`` mode, which rescans fully).

        Raises ShareConnectionError when the share cannot be attached and no
        fixture fallback applies (realtime mode only), and
        ShareProbeTimeoutError when file discovery for a date times out.
        """

        started_at = now or datetime.now()
        self._emit("start", "Ingestion run started", data={"mode": mode, "dates": list(dates)})

        try:
            summary = self._execute(
                dates,
                mode=mode,
                apply_watermark=apply_watermark,
                file_limit=file_limit,
                started_at=started_at,
            )
        except Exception as exc:
            self._emit("error", f"Ingestion run failed: {exc}", data={"mode": mode})
            raise

        self._emit("completed", "Ingestion run completed", data=summary.to_dict())
        return summary

    def _execute(
        self,
        dates: Sequence[str],
        *,
        mode: str,
        apply_watermark: bool,
        file_limit: int | None,
        started_at: datetime,
    ) -> RunSummary:
        self._emit("progress", "Connecting to log share", step="connect")
        if not self._connector.connect():
            self._connector.disconnect()
            if self._settings.fixture_fallback and mode == RunMode.REALTIME:
                self._emit(
                    "warning",
                    "Log share unavailable, ingesting bundled sample data instead",
                    step="connect",
                )
                return self._ingest_fixture(mode=mode, started_at=started_at)
            raise ShareConnectionError(f"Unable to connect to share {self._connector.root}")

        try:
            watermark = self._gateway.get_watermark()
            cutoff = watermark.cutoff(now=started_at)
            logger.info(
                "Ingestion run started mode=%s dates=%s cutoff=%s apply_watermark=%s",
                mode,
                list(dates),
                cutoff.isoformat(),
                apply_watermark,
            )

            processed_files = failed_files = total_records = total_new_records = 0
            for date_token in dates:
                folder = self._connector.date_folder_path(date_token)
                if not self._connector.file_exists(folder):
                    logger.info("Skipping date without log folder date=%s folder=%s", date_token, folder)
                    continue

                files = self._locator.locate(folder, self._log_source.base_name)
                if file_limit is not None:
                    files = files[:file_limit]
                self._emit(
                    "progress",
                    f"Processing {len(files)} file(s) for {date_token}",
                    step="date",
                    data={"date": date_token, "files": [descriptor.name for descriptor in files]},
                )

                for descriptor in files:
                    outcome = self._process_file(
                        descriptor,
                        mode=mode,
                        cutoff=cutoff,
                        apply_watermark=apply_watermark,
                    )
                    if outcome is None:
                        failed_files += 1
                        continue
                    records, inserted = outcome
                    processed_files += 1
                    total_records += records
                    total_new_records += inserted
        finally:
            self._connector.disconnect()

        summary = RunSummary(
            mode=mode,
            dates=list(dates),
            processed_files=processed_files,
            failed_files=failed_files,
            total_records=total_records,
            total_new_records=total_new_records,
            time_range_from=cutoff,
            time_range_to=started_at,
        )
        logger.info(
            "Ingestion run finished mode=%s processed_files=%d failed_files=%d "
            "total_records=%d new_records=%d",
            mode,
            processed_files,
            failed_files,
            total_records,
            total_new_records,
        )
        return summary

    def _process_file(
        self,
        descriptor: FileDescriptor,
        *,
        mode: str,
        cutoff: datetime,
        apply_watermark: bool,
    ) -> tuple[int, int] | None:
        """
        Parse and persist one file; returns (records, inserted) or None on failure.
        """

        try:
            existing = self._gateway.get_file_progress(descriptor.name)
            previously_completed = (
                existing is not None and existing.status == FileProgressStatus.COMPLETED
            )
            filter_by_cutoff = apply_watermark or (previously_completed and mode != RunMode.DAILY)

            self._emit(
                "progress",
                f"Parsing {descriptor.name}",
                step="file",
                data={
                    "file": descriptor.name,
                    "size_bytes": descriptor.size_bytes,
                    "previously_completed": previously_completed,
                },
            )

            records = self._correlator.parse(
                descriptor.path,
                opener=self._connector.open_binary,
                file_source=descriptor.name,
            )
            parsed_count = len(records)
            if filter_by_cutoff:
                records = [record for record in records if record.request_datetime > cutoff]
            inserted, failed = self._persist(records, file_name=descriptor.name)
            self._gateway.record_file_progress(
                FileProgress(
                    file_name=descriptor.name,
                    file_path=descriptor.path,
                    size_bytes=descriptor.size_bytes,
                    total_records=parsed_count,
                    processed_records=len(records) - failed,
                    status=FileProgressStatus.COMPLETED,
                )
            )
        except (LogFileReadError, PersistenceError) as exc:
            logger.error("File ingestion failed file=%s error=%s", descriptor.name, exc)
            self._record_failure(descriptor)
            return None
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected file ingestion failure file=%s error=%s", descriptor.name, exc)
            self._record_failure(descriptor)
            return None

        logger.info(
            "File ingested file=%s parsed=%d kept=%d inserted=%d failed=%d filtered=%s",
            descriptor.name,
            parsed_count,
            len(records),
            inserted,
            failed,
            filter_by_cutoff,
        )
        return len(records), inserted

    def _persist(self, records: Sequence[CorrelatedRecord], *, file_name: str) -> tuple[int, int]:
        inserted = failed = 0
        batch_size = max(1, self._settings.batch_size)
        for start in range(0, len(records), batch_size):
            batch = records[start : start + batch_size]
            result = self._gateway.batch_upsert(batch)
            inserted += result.inserted
            failed += result.failed
            self._emit(
                "progress",
                f"Stored {min(start + batch_size, len(records))}/{len(records)} records from {file_name}",
                step="batch",
                data={
                    "file": file_name,
                    "inserted": result.inserted,
                    "updated": result.updated,
                    "failed": result.failed,
                },
            )
        return inserted, failed

    def _record_failure(self, descriptor: FileDescriptor) -> None:
        try:
            self._gateway.record_file_progress(
                FileProgress(
                    file_name=descriptor.name,
                    file_path=descriptor.path,
                    size_bytes=descriptor.size_bytes,
                    total_records=0,
                    processed_records=0,
                    status=FileProgressStatus.FAILED,
                )
            )
        except PersistenceError as exc:
            logger.error("Could not mark file failed file=%s error=%s", descriptor.name, exc)
        self._emit(
            "warning",
            f"File {descriptor.name} failed and was skipped",
            step="file",
            data={"file": descriptor.name},
        )

    def _ingest_fixture(self, *, mode: str, started_at: datetime) -> RunSummary:
        """
        Ingest the bundled sample log so the pipeline can be demonstrated offline.
        """

        fixture_path = os.path.abspath(self._settings.fixture_path)
        if not os.path.isfile(fixture_path):
            raise ShareConnectionError(
                f"Unable to connect to share {self._connector.root} and no sample data at {fixture_path}"
            )

        records = self._correlator.parse(
            fixture_path,
            max_records=self._settings.fixture_max_records,
        )
        inserted, _ = self._persist(records, file_name=os.path.basename(fixture_path))
        logger.warning(
            "Sample data ingested instead of share logs path=%s records=%d inserted=%d",
            fixture_path,
            len(records),
            inserted,
        )
        return RunSummary(
            mode=mode,
            dates=[],
            processed_files=1,
            failed_files=0,
            total_records=len(records),
            total_new_records=inserted,
            time_range_from=None,
            time_range_to=started_at,
            used_fixture=True,
        )

    def _emit(
        self,
        event: str,
        message: str,
        *,
        step: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        if self._progress is None:
            return
        try:
            self._progress(ProgressEvent(event=event, message=message, step=step, data=data or {}))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Progress callback failed event=%s error=%s", event, exc)
