"""
app/parsing/stream_correlator.py

Streaming parser that pairs membership-query responses with their requests.

Line classification (after GBK decoding and timestamp extraction):

  request:  contains the outbound query marker and a ``licensePlateNbr``
              parameter; stored in a per-file pending map keyed by timestamp.
  response: contains the query result marker and a ``freeParking`` flag.
  error:    contains the query result marker, no ``freeParking`` flag, and
              an embedded JSON object with ``code == "ERROR"`` issued by the
              membership service.

Each response is matched to the pending request with the smallest
non-negative time gap, provided the gap stays within the match window.
Matched requests are consumed. Unmatched normal responses are dropped;
unmatched errors are still emitted under the ``UNMATCHED`` plate.

Parsing is a pure function of the file content: the pending map lives only
for one pass over one file.
"""

from __future__ import annotations

import io
import json
import logging
import re
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, BinaryIO

from app.config import LogSourceSettings
from app.domain.membership_log import (
    UNMATCHED_PLATE,
    CorrelatedRecord,
    LogLine,
    RecordKind,
    RequestEvent,
    parse_log_timestamp,
)

logger = logging.getLogger(__name__)

REQUEST_MARKER = "查询山姆是否会员，请求地址＝"
RESPONSE_MARKER = "查询山姆是否会员，返回结果＝"
ERROR_SENTINEL = "ERROR"
REASON_DELIMITER = " | "

_TIMESTAMP_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}(?:,\d{3})?")
_PLATE_PATTERN = re.compile(r'"licensePlateNbr"\s*:\s*"([^"]+)"')
_FREE_PARKING_PATTERN = re.compile(r'"freeParking"\s*:\s*(true|false)')
_REJECT_REASON_PATTERN = re.compile(r'"rejectReason"\s*:\s*"([^"]*)"')
_ERROR_CODE_PATTERN = re.compile(r'"code"\s*:\s*"' + ERROR_SENTINEL + '"')
_PATH_SEPARATORS = re.compile(r"[\\/]")


class LogFileReadError(RuntimeError):
    """
    Raised when a log file cannot be read to the end.
    """

    def __init__(self, file_path: str, cause: BaseException) -> None:
        super().__init__(f"Failed to read log file {file_path}: {cause}")
        self.file_path = file_path


@dataclass
class ParseStats:
    """
    Counters collected during one file pass.
    """

    lines: int = 0
    requests: int = 0
    responses: int = 0
    json_errors: int = 0
    unmatched_responses: int = 0
    malformed_payloads: int = 0
    records: int = 0


def file_name_from_path(file_path: str) -> str:
    """
    Last path component for both UNC (``\\``) and POSIX paths.
    """

    return _PATH_SEPARATORS.split(file_path)[-1]


def read_log_line(text: str, line_number: int) -> LogLine | None:
    """
    Wrap a decoded line; None when it does not start with a valid timestamp.
    """

    match = _TIMESTAMP_PATTERN.match(text)
    if match is None:
        return None
    try:
        logged_at = parse_log_timestamp(match.group(0))
    except ValueError:
        return None
    return LogLine(text=text, line_number=line_number, timestamp=match.group(0), logged_at=logged_at)


def format_error_reason(payload: dict[str, Any]) -> str:
    """
    Build one human-readable reason from a structured error payload.
    """

    parts: list[str] = []
    message = payload.get("message")
    if message:
        parts.append(f"message: {message}")
    code = payload.get("returnCode") or payload.get("code")
    if code:
        parts.append(f"code: {code}")
    latency = _coerce_int(payload.get("responseTime"))
    if latency is not None:
        parts.append(f"latency: {latency}ms")
    trace_id = payload.get("traceId")
    if trace_id:
        parts.append(f"trace_id: {trace_id}")
    return REASON_DELIMITER.join(parts)


def _coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class StreamCorrelator:
    """
    Decode a log file as a stream and emit correlated records.
    """

    def __init__(self, settings: LogSourceSettings | None = None) -> None:
        resolved = settings or LogSourceSettings()
        self._encoding = resolved.encoding
        self._match_window = timedelta(seconds=resolved.match_window_seconds)
        self._error_app_name = resolved.error_app_name
        self._app_name_pattern = re.compile(
            r'"appName"\s*:\s*"' + re.escape(resolved.error_app_name) + '"'
        )
        self._json_decoder = json.JSONDecoder()

    def parse(
        self,
        file_path: str,
        max_records: int = 0,
        *,
        opener: Callable[[str], BinaryIO] | None = None,
        file_source: str | None = None,
    ) -> list[CorrelatedRecord]:
        """
        Parse one file. ``max_records > 0`` stops reading once that many
        records have been produced.

        Raises LogFileReadError when the file cannot be opened or read.
        """

        open_binary = opener or _open_binary
        source = file_source or file_name_from_path(file_path)
        stats = ParseStats()
        started = time.monotonic()

        logger.info("Parsing log file file=%s max_records=%s", source, max_records)
        try:
            with open_binary(file_path) as raw_stream:
                records = list(
                    self.iter_records(
                        raw_stream,
                        file_source=source,
                        max_records=max_records,
                        stats=stats,
                    )
                )
        except OSError as exc:
            logger.error("Log file read failed file=%s error=%s", source, exc)
            raise LogFileReadError(file_path, exc) from exc

        logger.info(
            "Log file parsed file=%s lines=%d requests=%d responses=%d json_errors=%d "
            "unmatched=%d malformed=%d records=%d duration_ms=%d",
            source,
            stats.lines,
            stats.requests,
            stats.responses,
            stats.json_errors,
            stats.unmatched_responses,
            stats.malformed_payloads,
            stats.records,
            int((time.monotonic() - started) * 1000),
        )
        return records

    def iter_records(
        self,
        stream: BinaryIO,
        *,
        file_source: str,
        max_records: int = 0,
        stats: ParseStats | None = None,
    ) -> Iterator[CorrelatedRecord]:
        """
        Lazily correlate records from a binary stream. The stream is not closed.
        """

        counters = stats if stats is not None else ParseStats()
        pending: dict[str, tuple[datetime, RequestEvent]] = {}
        text_stream = io.TextIOWrapper(stream, encoding=self._encoding, errors="replace")

        try:
            for line_number, raw_line in enumerate(text_stream, start=1):
                counters.lines = line_number
                entry = read_log_line(raw_line.rstrip("\r\n"), line_number)
                if entry is None:
                    continue
                try:
                    record = self._process_line(
                        entry,
                        pending=pending,
                        file_source=file_source,
                        counters=counters,
                    )
                except Exception as exc:  # noqa: BLE001
                    logger.warning(
                        "Skipping log line file=%s line=%d error=%s",
                        file_source,
                        line_number,
                        exc,
                    )
                    continue

                if record is None:
                    continue
                counters.records += 1
                yield record
                if max_records > 0 and counters.records >= max_records:
                    return
        finally:
            try:
                text_stream.detach()
            except ValueError:
                pass

    def _process_line(
        self,
        entry: LogLine,
        *,
        pending: dict[str, tuple[datetime, RequestEvent]],
        file_source: str,
        counters: ParseStats,
    ) -> CorrelatedRecord | None:
        line = entry.text
        if REQUEST_MARKER in line:
            plate_match = _PLATE_PATTERN.search(line)
            if plate_match is not None:
                pending[entry.timestamp] = (
                    entry.logged_at,
                    RequestEvent(
                        timestamp=entry.timestamp,
                        plate_number=plate_match.group(1),
                        line_number=entry.line_number,
                    ),
                )
                counters.requests += 1
            return None

        if RESPONSE_MARKER not in line:
            return None

        free_parking_match = _FREE_PARKING_PATTERN.search(line)
        if free_parking_match is not None:
            return self._correlate_normal(
                entry,
                free_parking=free_parking_match.group(1) == "true",
                pending=pending,
                file_source=file_source,
                counters=counters,
            )

        if _ERROR_CODE_PATTERN.search(line) and self._app_name_pattern.search(line):
            return self._correlate_error(
                entry,
                pending=pending,
                file_source=file_source,
                counters=counters,
            )
        return None

    def _correlate_normal(
        self,
        entry: LogLine,
        *,
        free_parking: bool,
        pending: dict[str, tuple[datetime, RequestEvent]],
        file_source: str,
        counters: ParseStats,
    ) -> CorrelatedRecord | None:
        request = self._take_matching_request(pending, entry.logged_at)
        if request is None:
            counters.unmatched_responses += 1
            logger.debug(
                "Dropping response without matching request file=%s line=%d timestamp=%s",
                file_source,
                entry.line_number,
                entry.timestamp,
            )
            return None

        reason_match = _REJECT_REASON_PATTERN.search(entry.text)
        counters.responses += 1
        return CorrelatedRecord(
            plate_number=request.plate_number,
            request_timestamp=request.timestamp,
            response_timestamp=entry.timestamp,
            free_parking=free_parking,
            reject_reason=reason_match.group(1) if reason_match else "",
            file_source=file_source,
            record_kind=RecordKind.NORMAL,
            request_line=request.line_number,
            response_line=entry.line_number,
        )

    def _correlate_error(
        self,
        entry: LogLine,
        *,
        pending: dict[str, tuple[datetime, RequestEvent]],
        file_source: str,
        counters: ParseStats,
    ) -> CorrelatedRecord | None:
        payload = self._decode_error_payload(entry.text)
        if payload is None:
            counters.malformed_payloads += 1
            logger.warning(
                "Malformed error payload skipped file=%s line=%d content=%s",
                file_source,
                entry.line_number,
                entry.text[:200],
            )
            return None

        request = self._take_matching_request(pending, entry.logged_at)
        if request is None:
            counters.unmatched_responses += 1
            logger.warning(
                "Error response without matching request file=%s line=%d timestamp=%s",
                file_source,
                entry.line_number,
                entry.timestamp,
            )

        counters.json_errors += 1
        error_code = payload.get("returnCode") or payload.get("code")
        return CorrelatedRecord(
            plate_number=request.plate_number if request else UNMATCHED_PLATE,
            request_timestamp=request.timestamp if request else entry.timestamp,
            response_timestamp=entry.timestamp,
            free_parking=False,
            reject_reason=format_error_reason(payload),
            file_source=file_source,
            record_kind=RecordKind.JSON_ERROR,
            request_line=request.line_number if request else entry.line_number,
            response_line=entry.line_number,
            error_code=str(error_code) if error_code is not None else None,
            trace_id=str(payload["traceId"]) if payload.get("traceId") else None,
            response_time_ms=_coerce_int(payload.get("responseTime")),
        )

    def _take_matching_request(
        self,
        pending: dict[str, tuple[datetime, RequestEvent]],
        responded_at: datetime,
    ) -> RequestEvent | None:
        """
        Pop the pending request closest before ``responded_at`` within the window.
        """

        best_key: str | None = None
        best_gap: timedelta | None = None
        for key, (requested_at, _) in pending.items():
            gap = responded_at - requested_at
            if gap < timedelta(0):
                continue
            if best_gap is None or gap < best_gap:
                best_key, best_gap = key, gap

        if best_key is None or best_gap is None:
            return None
        if best_gap > self._match_window:
            logger.debug(
                "Nearest request outside match window gap_minutes=%.2f",
                best_gap.total_seconds() / 60,
            )
            return None
        return pending.pop(best_key)[1]

    def _decode_error_payload(self, line: str) -> dict[str, Any] | None:
        """
        Find the embedded JSON object carrying the membership service error.
        """

        position = line.find("{")
        while position != -1:
            try:
                payload, _ = self._json_decoder.raw_decode(line, position)
            except json.JSONDecodeError:
                payload = None
            if (
                isinstance(payload, dict)
                and payload.get("code") == ERROR_SENTINEL
                and payload.get("appName") == self._error_app_name
            ):
                return payload
            position = line.find("{", position + 1)
        return None


def format_records(records: Iterable[CorrelatedRecord]) -> str:
    """
    Render records as a plain-text report for operators.
    """

    rendered = list(records)
    if not rendered:
        return "No membership query records found."

    rule = "=" * 60
    lines = [rule, f"Membership query records ({len(rendered)})", rule]
    for index, record in enumerate(rendered, start=1):
        lines.extend(
            [
                f"--- record {index} ---",
                f"plate:          {record.plate_number}",
                f"kind:           {record.record_kind}",
                f"requested at:   {record.request_timestamp}",
                f"responded at:   {record.response_timestamp}",
                f"free parking:   {'yes' if record.free_parking else 'no'}",
                f"reject reason:  {record.reject_reason or '-'}",
                f"request line:   {record.request_line}",
                f"response line:  {record.response_line}",
            ]
        )
    lines.append(rule)
    return "\n".join(lines)


def _open_binary(path: str) -> BinaryIO:
    return open(path, "rb")  # noqa: SIM115 - closed by the caller's with-block
