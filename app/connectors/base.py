"""
app/connectors/base.py

Share connector abstraction and shared file-access mechanics.

Concrete connectors decide how the share gets attached (``net use`` session,
pre-mounted directory, ...). Once attached, the share is reachable through
ordinary filesystem paths, so the file primitives live here. Each primitive is
bounded by a timeout because the remote host may be slow or unreachable.
"""

from __future__ import annotations

import logging
import os
import posixpath
import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from types import ModuleType
from typing import BinaryIO, TypeVar

logger = logging.getLogger(__name__)

_DATE_TOKEN_PATTERN = re.compile(r"^\d{8}$")
_T = TypeVar("_T")


class ShareConnectionError(RuntimeError):
    """
    Raised when the remote share cannot be attached for a run.
    """


class ShareProbeTimeoutError(ShareConnectionError):
    """
    Raised when the share does not answer an existence check in time.
    """

    def __init__(self, path: str, timeout_seconds: float) -> None:
        super().__init__(f"Existence check timed out after {timeout_seconds:.1f}s path={path}")
        self.path = path


class ShareCommandError(RuntimeError):
    """
    Raised when one share management command fails.
    """

    def __init__(self, message: str, *, returncode: int | None = None, output: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output = output

    @property
    def is_credential_conflict(self) -> bool:
        # System error 1219: multiple connections to one server with different credentials.
        return "1219" in self.output


class ShareConnector(ABC):
    """
    Connector interface for attaching to a log share and inspecting its files.
    """

    path_module: ModuleType = posixpath

    def __init__(self, *, root: str, probe_timeout_seconds: float = 5.0) -> None:
        self.root = root
        self._probe_timeout_seconds = probe_timeout_seconds
        self._executor: ThreadPoolExecutor | None = None
        self.is_connected = False

    @abstractmethod
    def connect(self) -> bool:
        """
        Attach to the share. Returns False on failure instead of raising.
        """

    @abstractmethod
    def disconnect(self) -> None:
        """
        Detach from the share. Never raises.
        """

    def __enter__(self) -> ShareConnector:
        if not self.connect():
            raise ShareConnectionError(f"Unable to connect to share {self.root}")
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()

    def date_folder_path(self, date_token: str) -> str:
        """
        Return the folder holding one day's logs (``<root>/<YYYYMMDD>``).
        """

        if not _DATE_TOKEN_PATTERN.match(date_token):
            raise ValueError(f"Invalid date token {date_token!r}; expected YYYYMMDD.")
        return self.path_module.join(self.root, date_token)

    def join(self, *parts: str) -> str:
        return self.path_module.join(*parts)

    def file_exists(self, path: str) -> bool:
        """
        Raises ShareProbeTimeoutError when the share does not answer in time.
        """

        try:
            exists = self._bounded(lambda: os.path.exists(path))
        except TimeoutError as exc:
            logger.warning("Share existence check timed out path=%s error=%s", path, exc)
            raise ShareProbeTimeoutError(path, self._probe_timeout_seconds) from exc
        except OSError as exc:
            logger.debug("Share existence probe failed path=%s error=%s", path, exc)
            return False
        logger.debug("Share existence probe path=%s exists=%s", path, exists)
        return exists

    def list_files(self, directory: str) -> list[str]:
        """
        List plain file names (no directories) in ``directory``, sorted.
        """

        def _list() -> list[str]:
            with os.scandir(directory) as entries:
                return sorted(entry.name for entry in entries if entry.is_file())

        try:
            files = self._bounded(_list)
        except (OSError, TimeoutError) as exc:
            logger.error("Share directory listing failed path=%s error=%s", directory, exc)
            return []
        logger.info("Share directory listed path=%s file_count=%s", directory, len(files))
        return files

    def file_size(self, path: str) -> int:
        try:
            size = self._bounded(lambda: os.stat(path).st_size)
        except (OSError, TimeoutError) as exc:
            logger.warning("Share file size lookup failed path=%s error=%s", path, exc)
            return 0
        logger.debug("Share file size path=%s size_mb=%.2f", path, size / (1024 * 1024))
        return size

    def open_binary(self, path: str) -> BinaryIO:
        return open(path, "rb")  # noqa: SIM115 - caller owns the handle

    def _bounded(self, operation: Callable[[], _T]) -> _T:
        """
        Run one blocking filesystem call with the probe timeout.
        """

        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="share-probe")
        future = self._executor.submit(operation)
        try:
            return future.result(timeout=self._probe_timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            # The stuck worker cannot be interrupted; start a fresh one next time.
            self._executor.shutdown(wait=False)
            self._executor = None
            raise TimeoutError(
                f"Share operation exceeded {self._probe_timeout_seconds:.1f}s"
            ) from exc

    def _release_executor(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
