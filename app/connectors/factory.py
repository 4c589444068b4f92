"""
app/connectors/factory.py

Builds the configured share connector.
"""

from __future__ import annotations

from app.config import SHARE_BACKEND_LOCAL, ShareSettings, get_share_settings
from app.connectors.base import ShareConnector
from app.connectors.local_connector import LocalShareConnector
from app.connectors.net_use_connector import NetUseShareConnector


def build_share_connector(settings: ShareSettings | None = None) -> ShareConnector:
    """
    Return a fresh connector for one run; connections are never shared across runs.
    """

    resolved = settings or get_share_settings()
    if resolved.backend == SHARE_BACKEND_LOCAL:
        return LocalShareConnector(
            root=resolved.share_path,
            probe_timeout_seconds=resolved.probe_timeout_seconds,
        )
    return NetUseShareConnector(settings=resolved)
