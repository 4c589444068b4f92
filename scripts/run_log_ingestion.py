"""
Run membership log ingestion from CLI.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
from datetime import datetime

from app.config import get_ingestion_settings, get_log_source_settings, get_scheduler_settings
from app.domain.membership_log import RunMode
from app.parsing.stream_correlator import StreamCorrelator, format_records
from app.scheduler.jobs import IngestionScheduler, build_run_factory

_CLI_MODES = (RunMode.MANUAL, RunMode.REALTIME, RunMode.RECENT, RunMode.DAILY, RunMode.LATEST)


def main() -> int:
    parser = argparse.ArgumentParser(description="Ingest membership-service logs from the file share.")
    parser.add_argument(
        "--date",
        dest="date",
        default=None,
        help="Log folder date as YYYYMMDD (manual mode; defaults to today).",
    )
    parser.add_argument(
        "--mode",
        dest="mode",
        choices=_CLI_MODES,
        default=RunMode.MANUAL,
        help="Date selection: manual (one date), realtime, recent, daily or latest.",
    )
    parser.add_argument(
        "--dry-run",
        dest="dry_run",
        default=None,
        metavar="FILE",
        help="Parse one local log file and print the records; nothing is stored.",
    )
    parser.add_argument(
        "--max-records",
        dest="max_records",
        type=int,
        default=0,
        help="Stop parsing after this many records (dry run only; 0 = no limit).",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").strip().upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    if args.dry_run:
        correlator = StreamCorrelator(get_log_source_settings())
        records = correlator.parse(args.dry_run, max_records=max(0, args.max_records))
        print(format_records(records))
        return 0

    if args.date is not None:
        try:
            datetime.strptime(args.date, "%Y%m%d")
        except ValueError:
            parser.error(f"--date must be YYYYMMDD, got {args.date!r}")

    scheduler = IngestionScheduler(
        run_factory=build_run_factory(),
        settings=get_scheduler_settings(),
        ingestion_settings=get_ingestion_settings(),
    )
    if args.mode == RunMode.MANUAL:
        summary = scheduler.trigger_manual(args.date)
    else:
        summary = scheduler.trigger_recurring(args.mode)
        if summary is None:
            return 1

    print(json.dumps(summary.to_dict(), indent=2, ensure_ascii=False))
    return 0 if summary.failed_files == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
