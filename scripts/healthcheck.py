"""
Container health check for the log ingestion API.

Exits non-zero when /health is unreachable, reports a non-ok status, or
(with HEALTHCHECK_REQUIRE_SCHEDULER=1) the recurring triggers are not registered.
"""

from __future__ import annotations

import json
import os
import sys
from urllib.error import URLError
from urllib.request import urlopen


def main() -> int:
    port = os.getenv("PORT", "8000")
    path = os.getenv("HEALTHCHECK_PATH", "/health")
    require_scheduler = os.getenv("HEALTHCHECK_REQUIRE_SCHEDULER", "0").strip().lower() in {"1", "true", "yes"}
    url = f"http://127.0.0.1:{port}{path}"

    try:
        with urlopen(url, timeout=2) as response:
            if not 200 <= response.status < 400:
                return 1
            body = json.loads(response.read().decode("utf-8") or "{}")
    except (URLError, TimeoutError, ValueError):
        return 1

    if body.get("status") != "ok":
        print(f"health status={body.get('status')}", file=sys.stderr)
        return 1
    if require_scheduler and not body.get("scheduler_running"):
        print("ingestion scheduler is not running", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
