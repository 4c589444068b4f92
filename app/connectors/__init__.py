"""
app/connectors package marker.
"""

from app.connectors.base import ShareCommandError, ShareConnectionError, ShareConnector, ShareProbeTimeoutError
from app.connectors.factory import build_share_connector
from app.connectors.local_connector import LocalShareConnector
from app.connectors.net_use_connector import (
    CommandResult,
    NetUseShareConnector,
    connection_error_suggestions,
    run_command,
)

__all__ = [
    "CommandResult",
    "LocalShareConnector",
    "NetUseShareConnector",
    "ShareCommandError",
    "ShareConnectionError",
    "ShareConnector",
    "ShareProbeTimeoutError",
    "build_share_connector",
    "connection_error_suggestions",
    "run_command",
]
