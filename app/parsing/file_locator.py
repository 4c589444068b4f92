"""
app/parsing/file_locator.py

Discovers one day's log file and its rotation slices on the share.

Layout on the share::

    <root>/<YYYYMMDD>/<base>_<YYYYMMDD>.log      current file  (index 0)
    <root>/<YYYYMMDD>/<base>_<YYYYMMDD>.log.1    first slice   (index 1)
    <root>/<YYYYMMDD>/<base>_<YYYYMMDD>.log.2    ...

Rotation never leaves gaps, so probing stops at the first missing slice. A
check the share does not answer in time raises ShareProbeTimeoutError rather
than ending the slice sequence.
"""

from __future__ import annotations

import logging
import re

from app.connectors.base import ShareConnector, ShareProbeTimeoutError
from app.domain.membership_log import FileDescriptor, FileKind

logger = logging.getLogger(__name__)

_FOLDER_DATE_PATTERN = re.compile(r"(\d{8})[\\/]*$")
DEFAULT_MAX_SLICES = 20


class FileLocator:
    """
    Enumerate the current log file plus its slices, in ascending sequence order.
    """

    def __init__(self, connector: ShareConnector, *, max_slices: int = DEFAULT_MAX_SLICES) -> None:
        self._connector = connector
        self._max_slices = max(0, max_slices)

    def locate(self, date_folder: str, base_name: str) -> list[FileDescriptor]:
        """
        Return descriptors for ``date_folder``; an empty list when there is
        nothing to read for that date.

        Raises ShareProbeTimeoutError when an existence check times out.
        """

        match = _FOLDER_DATE_PATTERN.search(date_folder)
        if match is None:
            logger.error("Cannot derive date token from folder path=%s", date_folder)
            return []
        date_token = match.group(1)

        if not self._exists(date_folder, date_token):
            logger.info("Log folder absent date=%s folder=%s", date_token, date_folder)
            return []

        current_name = f"{base_name}_{date_token}.log"
        current_path = self._connector.join(date_folder, current_name)
        if not self._exists(current_path, date_token):
            logger.info("Current log file absent date=%s path=%s", date_token, current_path)
            return []

        files = [self._describe(current_path, current_name, FileKind.CURRENT, 0)]
        for index in range(1, self._max_slices + 1):
            slice_name = f"{current_name}.{index}"
            slice_path = f"{current_path}.{index}"
            if not self._exists(slice_path, date_token):
                break
            files.append(self._describe(slice_path, slice_name, FileKind.SLICE, index))

        files.sort(key=lambda descriptor: descriptor.sequence_index)
        logger.info(
            "Located log files date=%s count=%d names=%s",
            date_token,
            len(files),
            [descriptor.name for descriptor in files],
        )
        return files

    def _exists(self, path: str, date_token: str) -> bool:
        try:
            return self._connector.file_exists(path)
        except ShareProbeTimeoutError:
            logger.warning("Log file discovery interrupted date=%s path=%s", date_token, path)
            raise

    def _describe(self, path: str, name: str, kind: str, index: int) -> FileDescriptor:
        return FileDescriptor(
            path=path,
            name=name,
            kind=kind,
            sequence_index=index,
            size_bytes=self._connector.file_size(path),
        )
