"""
app/connectors/local_connector.py

Connector for a share that is already reachable as a local directory
(a CIFS/SMB mount managed by the OS, or the bundled fixture dataset).
"""

from __future__ import annotations

import logging
import os

from app.connectors.base import ShareConnector

logger = logging.getLogger(__name__)


class LocalShareConnector(ShareConnector):
    """
    Treat a local directory as the share root; nothing to authenticate.
    """

    path_module = os.path

    def connect(self) -> bool:
        try:
            available = self._bounded(lambda: os.path.isdir(self.root))
        except (OSError, TimeoutError) as exc:
            logger.error("Local share root unavailable path=%s error=%s", self.root, exc)
            available = False

        if not available:
            logger.error("Local share root does not exist path=%s", self.root)
        else:
            logger.info("Local share attached path=%s", self.root)
        self.is_connected = available
        return available

    def disconnect(self) -> None:
        self.is_connected = False
        self._release_executor()
