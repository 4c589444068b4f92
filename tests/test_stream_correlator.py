"""
tests/test_stream_correlator.py

Pytest unit tests for StreamCorrelator.

All tests are pure Python: log content is built in memory (or in tmp_path)
and GBK-encoded exactly as the car-park controller writes it.

Coverage
--------
- Request/response pairing and the nearest-preceding-request rule
- Match window and negative gaps
- Structured error responses, matched and unmatched
- Malformed payloads, foreign error payloads and noise lines
- max_records early stop
- Repeatable parsing of identical content
- File-level parse, read errors and the bundled sample log
- Reason synthesis and the operator report
"""

from __future__ import annotations

import io
from datetime import datetime
from pathlib import Path

import pytest

from app.config import LogSourceSettings
from app.domain.membership_log import UNMATCHED_PLATE, LogLine, RecordKind
from app.parsing.stream_correlator import (
    RESPONSE_MARKER,
    LogFileReadError,
    ParseStats,
    StreamCorrelator,
    format_error_reason,
    format_records,
    read_log_line,
)
from tests.helpers import error_line, gbk_bytes, request_line, response_line, write_log

SAMPLE_LOG = Path(__file__).resolve().parents[1] / "demo-data" / "sample-log.txt"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def correlator() -> StreamCorrelator:
    return StreamCorrelator(LogSourceSettings())


def _correlate(correlator: StreamCorrelator, lines: list[str], **kwargs):
    return list(
        correlator.iter_records(io.BytesIO(gbk_bytes(lines)), file_source="test.log", **kwargs)
    )


# ---------------------------------------------------------------------------
# Normal responses
# ---------------------------------------------------------------------------


class TestNormalResponses:
    def test_pairs_request_with_following_response(self, correlator: StreamCorrelator) -> None:
        records = _correlate(
            correlator,
            [
                request_line("2024-08-11 10:30:00,000", "粤A12345"),
                "2024-08-11 10:30:00,500 [12] INFO  CenterComm - heartbeat ok",
                response_line("2024-08-11 10:30:01,200", True),
            ],
        )

        assert len(records) == 1
        record = records[0]
        assert record.plate_number == "粤A12345"
        assert record.free_parking is True
        assert record.request_timestamp == "2024-08-11 10:30:00,000"
        assert record.response_timestamp == "2024-08-11 10:30:01,200"
        assert record.record_kind == RecordKind.NORMAL
        assert record.file_source == "test.log"
        assert record.request_line == 1
        assert record.response_line == 3

    def test_reject_reason_is_kept_verbatim(self, correlator: StreamCorrelator) -> None:
        records = _correlate(
            correlator,
            [
                request_line("2024-08-11 10:35:12,003", "粤B67890"),
                response_line("2024-08-11 10:35:12,880", False, "非会员车辆"),
            ],
        )

        assert records[0].free_parking is False
        assert records[0].reject_reason == "非会员车辆"

    def test_response_takes_nearest_preceding_request(self, correlator: StreamCorrelator) -> None:
        records = _correlate(
            correlator,
            [
                request_line("2024-08-11 10:00:00,000", "粤A00001"),
                request_line("2024-08-11 10:00:30,000", "粤A00002"),
                response_line("2024-08-11 10:00:40,000", True),
                response_line("2024-08-11 10:00:50,000", False),
            ],
        )

        assert [record.plate_number for record in records] == ["粤A00002", "粤A00001"]

    def test_matched_request_is_consumed(self, correlator: StreamCorrelator) -> None:
        records = _correlate(
            correlator,
            [
                request_line("2024-08-11 10:00:00,000", "粤A00001"),
                response_line("2024-08-11 10:00:01,000", True),
                response_line("2024-08-11 10:00:02,000", True),
            ],
        )

        assert len(records) == 1

    def test_response_outside_window_is_dropped(self, correlator: StreamCorrelator) -> None:
        records = _correlate(
            correlator,
            [
                request_line("2024-08-11 10:00:00,000", "粤A00001"),
                response_line("2024-08-11 10:05:00,001", True),
            ],
        )

        assert records == []

    def test_response_at_window_edge_is_matched(self, correlator: StreamCorrelator) -> None:
        records = _correlate(
            correlator,
            [
                request_line("2024-08-11 10:00:00,000", "粤A00001"),
                response_line("2024-08-11 10:05:00,000", True),
            ],
        )

        assert len(records) == 1

    def test_request_after_response_never_matches(self, correlator: StreamCorrelator) -> None:
        records = _correlate(
            correlator,
            [
                request_line("2024-08-11 10:05:00,000", "粤A00001"),
                response_line("2024-08-11 10:04:59,000", True),
            ],
        )

        assert records == []

    def test_configurable_match_window(self) -> None:
        narrow = StreamCorrelator(LogSourceSettings(match_window_seconds=1))
        records = _correlate(
            narrow,
            [
                request_line("2024-08-11 10:00:00,000", "粤A00001"),
                response_line("2024-08-11 10:00:02,000", True),
            ],
        )

        assert records == []

    def test_matched_response_never_precedes_request(self, correlator: StreamCorrelator) -> None:
        records = _correlate(
            correlator,
            [
                request_line("2024-08-11 10:00:00,000", "粤A00001"),
                request_line("2024-08-11 10:00:03,000", "粤A00002"),
                response_line("2024-08-11 10:00:02,000", True),
                response_line("2024-08-11 10:00:04,000", True),
            ],
        )

        assert len(records) == 2
        for record in records:
            assert record.response_datetime >= record.request_datetime


# ---------------------------------------------------------------------------
# Structured error responses
# ---------------------------------------------------------------------------


class TestErrorResponses:
    def test_matched_error_carries_request_plate(self, correlator: StreamCorrelator) -> None:
        records = _correlate(
            correlator,
            [
                request_line("2024-08-11 10:41:05,120", "粤C24680"),
                error_line("2024-08-11 10:41:08,300"),
            ],
        )

        assert len(records) == 1
        record = records[0]
        assert record.plate_number == "粤C24680"
        assert record.record_kind == RecordKind.JSON_ERROR
        assert record.free_parking is False
        assert record.reject_reason == (
            "message: 会员服务超时 | code: E504 | latency: 3012ms | trace_id: 7f3a9c21"
        )
        assert record.error_code == "E504"
        assert record.trace_id == "7f3a9c21"
        assert record.response_time_ms == 3012

    def test_unmatched_error_is_emitted_with_placeholder_plate(
        self, correlator: StreamCorrelator
    ) -> None:
        records = _correlate(
            correlator,
            [error_line("2024-08-11 11:02:30,500", returnCode="E401", message="签名校验失败")],
        )

        assert len(records) == 1
        record = records[0]
        assert record.plate_number == UNMATCHED_PLATE
        assert not record.is_matched
        assert "code: E401" in record.reject_reason
        assert record.request_timestamp == record.response_timestamp == "2024-08-11 11:02:30,500"

    def test_error_from_other_application_is_ignored(self, correlator: StreamCorrelator) -> None:
        records = _correlate(
            correlator,
            [
                request_line("2024-08-11 10:00:00,000", "粤A00001"),
                error_line("2024-08-11 10:00:01,000", appName="billing-service"),
            ],
        )

        assert records == []

    def test_malformed_error_payload_is_skipped(self, correlator: StreamCorrelator) -> None:
        stats = ParseStats()
        records = _correlate(
            correlator,
            [
                request_line("2024-08-11 10:00:00,000", "粤A00001"),
                "2024-08-11 10:00:01,000 [12] ERROR CenterComm - "
                f'{RESPONSE_MARKER}{{"code":"ERROR","appName":"members-parking-service","message":',
                response_line("2024-08-11 10:00:02,000", True),
            ],
            stats=stats,
        )

        assert stats.malformed_payloads == 1
        assert len(records) == 1
        assert records[0].plate_number == "粤A00001"
        assert records[0].record_kind == RecordKind.NORMAL

    def test_error_without_response_marker_is_ignored(self, correlator: StreamCorrelator) -> None:
        line = error_line("2024-08-11 10:00:01,000").replace(RESPONSE_MARKER, "")
        assert _correlate(correlator, [line]) == []


# ---------------------------------------------------------------------------
# Stream behaviour
# ---------------------------------------------------------------------------


class TestStreamBehaviour:
    def test_lines_without_timestamp_are_discarded(self, correlator: StreamCorrelator) -> None:
        records = _correlate(
            correlator,
            [
                request_line("2024-08-11 10:00:00,000", "粤A00001"),
                response_line("2024-08-11 10:00:01,000", True)[len("2024-08-11 10:00:01,000") :],
                "   at Parking.Center.Query()",
            ],
        )

        assert records == []

    def test_read_log_line_extracts_timestamp(self) -> None:
        text = request_line("2024-08-11 10:00:00,250", "粤A00001")

        entry = read_log_line(text, 7)

        assert entry == LogLine(
            text=text,
            line_number=7,
            timestamp="2024-08-11 10:00:00,250",
            logged_at=datetime(2024, 8, 11, 10, 0, 0, 250000),
        )

    def test_read_log_line_rejects_invalid_timestamp(self) -> None:
        assert read_log_line("   at Parking.Center.Query()", 1) is None
        assert read_log_line("2024-13-40 10:00:00,000 INFO bad month", 2) is None

    def test_max_records_stops_early(self, correlator: StreamCorrelator) -> None:
        lines: list[str] = []
        for index in range(5):
            lines.append(request_line(f"2024-08-11 10:0{index}:00,000", f"粤A0000{index}"))
            lines.append(response_line(f"2024-08-11 10:0{index}:01,000", True))

        stats = ParseStats()
        records = _correlate(correlator, lines, max_records=2, stats=stats)

        assert len(records) == 2
        assert stats.lines == 4

    def test_undecodable_bytes_do_not_abort_parsing(self, correlator: StreamCorrelator) -> None:
        payload = (
            b"\xff\xfe garbage line\r\n"
            + gbk_bytes(
                [
                    request_line("2024-08-11 10:00:00,000", "粤A00001"),
                    response_line("2024-08-11 10:00:01,000", True),
                ]
            )
        )
        records = list(correlator.iter_records(io.BytesIO(payload), file_source="test.log"))

        assert len(records) == 1

    def test_parsing_is_repeatable(self, correlator: StreamCorrelator) -> None:
        lines = [
            request_line("2024-08-11 10:00:00,000", "粤A00001"),
            response_line("2024-08-11 10:00:01,000", True),
            error_line("2024-08-11 10:00:05,000"),
        ]

        assert _correlate(correlator, lines) == _correlate(correlator, lines)

    def test_stream_is_left_open(self, correlator: StreamCorrelator) -> None:
        stream = io.BytesIO(gbk_bytes([request_line("2024-08-11 10:00:00,000", "粤A00001")]))
        list(correlator.iter_records(stream, file_source="test.log"))

        assert not stream.closed


# ---------------------------------------------------------------------------
# File-level parsing
# ---------------------------------------------------------------------------


class TestParseFile:
    def test_parse_uses_file_name_as_source(
        self, correlator: StreamCorrelator, tmp_path: Path
    ) -> None:
        path = write_log(
            tmp_path / "JieLink_Center_Comm_20240811.log",
            [
                request_line("2024-08-11 10:00:00,000", "粤A00001"),
                response_line("2024-08-11 10:00:01,000", True),
            ],
        )

        records = correlator.parse(str(path))

        assert [record.file_source for record in records] == ["JieLink_Center_Comm_20240811.log"]

    def test_missing_file_raises_read_error(
        self, correlator: StreamCorrelator, tmp_path: Path
    ) -> None:
        missing = tmp_path / "absent.log"

        with pytest.raises(LogFileReadError) as exc_info:
            correlator.parse(str(missing))

        assert exc_info.value.file_path == str(missing)

    def test_bundled_sample_log(self, correlator: StreamCorrelator) -> None:
        records = correlator.parse(str(SAMPLE_LOG))

        assert [record.plate_number for record in records] == [
            "粤A12345",
            "粤B67890",
            "粤C24680",
            "粤A13579",
            UNMATCHED_PLATE,
        ]
        assert [record.record_kind for record in records].count(RecordKind.JSON_ERROR) == 2


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


class TestFormatting:
    def test_reason_includes_only_present_parts(self) -> None:
        assert format_error_reason({"code": "ERROR", "message": "boom"}) == (
            "message: boom | code: ERROR"
        )

    def test_reason_prefers_return_code(self) -> None:
        reason = format_error_reason({"code": "ERROR", "returnCode": "E500", "responseTime": "42"})
        assert reason == "code: E500 | latency: 42ms"

    def test_report_for_no_records(self) -> None:
        assert format_records([]) == "No membership query records found."

    def test_report_lists_each_record(self, correlator: StreamCorrelator) -> None:
        records = _correlate(
            correlator,
            [
                request_line("2024-08-11 10:00:00,000", "粤A00001"),
                response_line("2024-08-11 10:00:01,000", False, "非会员车辆"),
            ],
        )

        report = format_records(records)

        assert "Membership query records (1)" in report
        assert "粤A00001" in report
        assert "非会员车辆" in report
