"""
tests/test_ingestion_run.py

Pytest tests for IngestionRun and date selection.

The share is a LocalShareConnector over tmp_path and persistence is the
in-memory gateway from tests.helpers, so no network or database is needed.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import BinaryIO

import pytest

from app.config import IngestionSettings
from app.connectors.base import ShareConnectionError, ShareProbeTimeoutError
from app.connectors.local_connector import LocalShareConnector
from app.domain.membership_log import (
    FileProgress,
    FileProgressStatus,
    ProgressEvent,
    RunMode,
)
from app.parsing.stream_correlator import StreamCorrelator
from app.services.ingestion_run import IngestionRun, dates_for_mode
from db.repositories.errors import PersistenceError
from tests.helpers import (
    InMemoryGateway,
    error_line,
    log_file_path,
    request_line,
    response_line,
    write_log,
)

NOW = datetime(2024, 8, 11, 12, 0, 0)
SAMPLE_LOG = Path(__file__).resolve().parents[1] / "demo-data" / "sample-log.txt"

CURRENT_LINES = [
    request_line("2024-08-11 10:30:00,000", "粤A12345"),
    response_line("2024-08-11 10:30:01,200", True),
    request_line("2024-08-11 10:35:12,003", "粤B67890"),
    response_line("2024-08-11 10:35:12,880", False, "非会员车辆"),
]
SLICE_LINES = [
    request_line("2024-08-11 08:00:00,000", "粤C24680"),
    error_line("2024-08-11 08:00:03,000"),
]


class FailingOpenConnector(LocalShareConnector):
    """Local connector whose reads fail for one file name."""

    def __init__(self, *, root: str, failing_name: str) -> None:
        super().__init__(root=root)
        self._failing_name = failing_name

    def open_binary(self, path: str) -> BinaryIO:
        if path.endswith(self._failing_name):
            raise OSError("network name is no longer available")
        return super().open_binary(path)


class UnresponsiveSliceConnector(LocalShareConnector):
    """Local connector whose existence check times out for one file name."""

    def __init__(self, *, root: str, stalled_name: str) -> None:
        super().__init__(root=root)
        self._stalled_name = stalled_name

    def file_exists(self, path: str) -> bool:
        if path.endswith(self._stalled_name):
            raise ShareProbeTimeoutError(path, 0.2)
        return super().file_exists(path)


class ProgressLookupFailingGateway(InMemoryGateway):
    """In-memory gateway whose progress lookup fails for one file name."""

    def __init__(self, failing_name: str) -> None:
        super().__init__()
        self._failing_name = failing_name

    def get_file_progress(self, file_name: str) -> FileProgress | None:
        if file_name == self._failing_name:
            raise PersistenceError("Failed to read progress: server closed the connection")
        return super().get_file_progress(file_name)


@pytest.fixture()
def share(tmp_path: Path) -> Path:
    write_log(log_file_path(tmp_path, "20240811", 0), CURRENT_LINES)
    write_log(log_file_path(tmp_path, "20240811", 1), SLICE_LINES)
    return tmp_path


def _run(
    connector: LocalShareConnector,
    gateway: InMemoryGateway,
    *,
    settings: IngestionSettings | None = None,
    events: list[ProgressEvent] | None = None,
) -> IngestionRun:
    return IngestionRun(
        connector=connector,
        correlator=StreamCorrelator(),
        gateway=gateway,
        settings=settings or IngestionSettings(batch_size=2),
        progress=events.append if events is not None else None,
    )


# ---------------------------------------------------------------------------
# Date selection
# ---------------------------------------------------------------------------


class TestDatesForMode:
    def test_realtime_is_today(self) -> None:
        assert dates_for_mode(RunMode.REALTIME, NOW) == ["20240811"]

    def test_recent_includes_yesterday_early_in_the_morning(self) -> None:
        assert dates_for_mode(RunMode.RECENT, datetime(2024, 8, 11, 5, 59)) == ["20240811", "20240810"]
        assert dates_for_mode(RunMode.RECENT, datetime(2024, 8, 11, 6, 0)) == ["20240811"]

    def test_daily_covers_lookback_window(self) -> None:
        assert dates_for_mode(RunMode.DAILY, datetime(2024, 3, 1, 2, 0)) == [
            "20240301",
            "20240229",
            "20240228",
        ]

    def test_manual_uses_given_date_or_today(self) -> None:
        assert dates_for_mode(RunMode.MANUAL, NOW, date_token="20240801") == ["20240801"]
        assert dates_for_mode(RunMode.MANUAL, NOW) == ["20240811"]

    def test_latest_is_yesterday_then_today(self) -> None:
        assert dates_for_mode(RunMode.LATEST, NOW) == ["20240810", "20240811"]

    def test_unknown_mode(self) -> None:
        with pytest.raises(ValueError):
            dates_for_mode("weekly", NOW)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class TestIngestionRun:
    def test_ingests_every_located_file(self, share: Path) -> None:
        gateway = InMemoryGateway()
        connector = LocalShareConnector(root=str(share))

        summary = _run(connector, gateway).execute(["20240811"], mode=RunMode.MANUAL, now=NOW)

        assert summary.processed_files == 2
        assert summary.failed_files == 0
        assert summary.total_records == 3
        assert summary.total_new_records == 3
        assert len(gateway.records) == 3
        assert {progress.status for progress in gateway.progress.values()} == {
            FileProgressStatus.COMPLETED
        }
        assert gateway.progress["JieLink_Center_Comm_20240811.log"].total_records == 2
        assert connector.is_connected is False

    def test_rerun_does_not_duplicate_records(self, share: Path) -> None:
        gateway = InMemoryGateway()

        first = _run(LocalShareConnector(root=str(share)), gateway).execute(
            ["20240811"], mode=RunMode.DAILY, now=NOW
        )
        second = _run(LocalShareConnector(root=str(share)), gateway).execute(
            ["20240811"], mode=RunMode.DAILY, now=NOW
        )

        assert first.total_new_records == 3
        assert second.total_records == 3
        assert second.total_new_records == 0
        assert len(gateway.records) == 3

    def test_completed_files_are_filtered_by_watermark(self, share: Path) -> None:
        gateway = InMemoryGateway()
        _run(LocalShareConnector(root=str(share)), gateway).execute(
            ["20240811"], mode=RunMode.MANUAL, now=NOW
        )

        second = _run(LocalShareConnector(root=str(share)), gateway).execute(
            ["20240811"], mode=RunMode.MANUAL, now=NOW
        )

        assert second.total_records == 0
        assert second.total_new_records == 0

    def test_apply_watermark_keeps_only_newer_records(self, share: Path) -> None:
        gateway = InMemoryGateway(last_record_time=datetime(2024, 8, 11, 10, 31, 0))

        summary = _run(LocalShareConnector(root=str(share)), gateway).execute(
            ["20240811"], mode=RunMode.LATEST, apply_watermark=True, now=NOW
        )

        assert summary.total_new_records == 1
        assert [key[0] for key in gateway.records] == ["粤B67890"]
        assert summary.time_range_from == datetime(2024, 8, 11, 10, 31, 0)
        assert summary.time_range_to == NOW
        assert gateway.progress["JieLink_Center_Comm_20240811.log"].total_records == 2

    def test_missing_date_folder_is_skipped(self, share: Path) -> None:
        gateway = InMemoryGateway()

        summary = _run(LocalShareConnector(root=str(share)), gateway).execute(
            ["20240810", "20240811"], mode=RunMode.LATEST, now=NOW
        )

        assert summary.processed_files == 2
        assert summary.dates == ["20240810", "20240811"]

    def test_file_limit_caps_files_per_date(self, share: Path) -> None:
        gateway = InMemoryGateway()

        summary = _run(LocalShareConnector(root=str(share)), gateway).execute(
            ["20240811"], mode=RunMode.REALTIME, file_limit=1, now=NOW
        )

        assert summary.processed_files == 1
        assert list(gateway.progress) == ["JieLink_Center_Comm_20240811.log"]

    def test_failing_file_is_marked_and_run_continues(self, share: Path) -> None:
        gateway = InMemoryGateway()
        connector = FailingOpenConnector(root=str(share), failing_name=".log.1")

        summary = _run(connector, gateway).execute(["20240811"], mode=RunMode.MANUAL, now=NOW)

        assert summary.processed_files == 1
        assert summary.failed_files == 1
        assert gateway.progress["JieLink_Center_Comm_20240811.log.1"].status == FileProgressStatus.FAILED
        assert gateway.progress["JieLink_Center_Comm_20240811.log"].status == FileProgressStatus.COMPLETED
        assert len(gateway.records) == 2

    def test_progress_lookup_failure_marks_file_and_run_continues(self, share: Path) -> None:
        gateway = ProgressLookupFailingGateway("JieLink_Center_Comm_20240811.log")

        summary = _run(LocalShareConnector(root=str(share)), gateway).execute(
            ["20240811"], mode=RunMode.MANUAL, now=NOW
        )

        assert summary.failed_files == 1
        assert summary.processed_files == 1
        assert gateway.progress["JieLink_Center_Comm_20240811.log"].status == FileProgressStatus.FAILED
        assert gateway.progress["JieLink_Center_Comm_20240811.log.1"].status == FileProgressStatus.COMPLETED
        assert [record.plate_number for record in gateway.records.values()] == ["粤C24680"]

    def test_timed_out_slice_check_fails_the_run(self, share: Path) -> None:
        write_log(log_file_path(share, "20240811", 2), SLICE_LINES)
        gateway = InMemoryGateway()
        events: list[ProgressEvent] = []
        connector = UnresponsiveSliceConnector(root=str(share), stalled_name=".log.2")

        with pytest.raises(ShareProbeTimeoutError):
            _run(connector, gateway, events=events).execute(["20240811"], mode=RunMode.MANUAL, now=NOW)

        assert events[-1].event == "error"
        assert gateway.progress == {}
        assert gateway.records == {}

    def test_records_are_upserted_in_batches(self, share: Path) -> None:
        gateway = InMemoryGateway()

        _run(
            LocalShareConnector(root=str(share)),
            gateway,
            settings=IngestionSettings(batch_size=1),
        ).execute(["20240811"], mode=RunMode.MANUAL, now=NOW)

        assert gateway.upsert_calls == 3

    def test_unreachable_share_raises(self, tmp_path: Path) -> None:
        events: list[ProgressEvent] = []
        run = _run(LocalShareConnector(root=str(tmp_path / "offline")), InMemoryGateway(), events=events)

        with pytest.raises(ShareConnectionError):
            run.execute(["20240811"], mode=RunMode.MANUAL, now=NOW)

        assert events[0].event == "start"
        assert events[-1].event == "error"

    def test_realtime_falls_back_to_sample_data(self, tmp_path: Path) -> None:
        gateway = InMemoryGateway()
        settings = IngestionSettings(
            fixture_fallback=True,
            fixture_path=str(SAMPLE_LOG),
            fixture_max_records=3,
        )

        summary = _run(
            LocalShareConnector(root=str(tmp_path / "offline")),
            gateway,
            settings=settings,
        ).execute(["20240811"], mode=RunMode.REALTIME, now=NOW)

        assert summary.used_fixture is True
        assert summary.total_records == 3
        assert len(gateway.records) == 3

    def test_fallback_is_not_used_outside_realtime(self, tmp_path: Path) -> None:
        settings = IngestionSettings(fixture_fallback=True, fixture_path=str(SAMPLE_LOG))
        run = _run(LocalShareConnector(root=str(tmp_path / "offline")), InMemoryGateway(), settings=settings)

        with pytest.raises(ShareConnectionError):
            run.execute(["20240811"], mode=RunMode.DAILY, now=NOW)

    def test_progress_events_bracket_the_run(self, share: Path) -> None:
        events: list[ProgressEvent] = []

        _run(LocalShareConnector(root=str(share)), InMemoryGateway(), events=events).execute(
            ["20240811"], mode=RunMode.MANUAL, now=NOW
        )

        assert events[0].event == "start"
        assert events[-1].event == "completed"
        assert events[-1].data["total_new_records"] == 3
        steps = {event.step for event in events if event.event == "progress"}
        assert {"connect", "date", "file", "batch"} <= steps

    def test_previous_progress_is_overwritten(self, share: Path) -> None:
        gateway = InMemoryGateway()
        gateway.record_file_progress(
            FileProgress(
                file_name="JieLink_Center_Comm_20240811.log.1",
                file_path="old",
                size_bytes=0,
                total_records=0,
                processed_records=0,
                status=FileProgressStatus.FAILED,
            )
        )

        _run(LocalShareConnector(root=str(share)), gateway).execute(
            ["20240811"], mode=RunMode.MANUAL, now=NOW
        )

        assert gateway.progress["JieLink_Center_Comm_20240811.log.1"].status == FileProgressStatus.COMPLETED
