"""
app/connectors/net_use_connector.py

Windows share connector driven by ``net use`` sessions.

The share is authenticated with ``net use <share> <password> /user:<user>``.
Windows refuses a second session to the same server under different
credentials (system error 1219); that case triggers an aggressive cleanup of
mounts, IPC$ sessions and cached credentials, followed by exactly one retry.
"""

from __future__ import annotations

import logging
import ntpath
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from app.config import ShareSettings
from app.connectors.base import ShareCommandError, ShareConnector

logger = logging.getLogger(__name__)

_PASSWORD_MASK = "******"


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()


CommandRunner = Callable[[Sequence[str], float], CommandResult]


def run_command(args: Sequence[str], timeout: float) -> CommandResult:
    """
    Run one console command and capture its output.

    Console output on Chinese-locale Windows is GBK; undecodable bytes are
    replaced rather than raising.
    """

    completed = subprocess.run(  # noqa: S603 - arguments are never shell-interpreted
        list(args),
        capture_output=True,
        timeout=timeout,
        check=False,
    )
    return CommandResult(
        returncode=completed.returncode,
        stdout=completed.stdout.decode("gbk", errors="replace"),
        stderr=completed.stderr.decode("gbk", errors="replace"),
    )


def connection_error_suggestions(message: str) -> list[str]:
    """
    Map well-known ``net use`` failure codes to operator hints.
    """

    suggestions: list[str] = []
    lowered = message.lower()
    if "1219" in message:
        suggestions.append("Error 1219: run 'net use * /delete /y' to clear existing sessions.")
        suggestions.append("Make sure no other program holds a session to the server.")
    if "1326" in message:
        suggestions.append("Error 1326: user name or password is incorrect.")
        suggestions.append("Confirm the account is not locked.")
    if "error 53" in lowered or "系统错误 53" in message:
        suggestions.append("Error 53: network path not found; check host reachability and firewall.")
    if "timeout" in lowered or "timed out" in lowered or "超时" in message:
        suggestions.append("Network timeout: check link stability or raise SHARE_CONNECT_TIMEOUT_SECONDS.")
    if not suggestions:
        suggestions.append("Check network connectivity and share credentials.")
    return suggestions


class NetUseShareConnector(ShareConnector):
    """
    Attach to ``\\\\host\\share`` through ``net use`` and read files by UNC path.
    """

    path_module = ntpath

    def __init__(
        self,
        *,
        settings: ShareSettings,
        runner: CommandRunner | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(root=settings.share_path, probe_timeout_seconds=settings.probe_timeout_seconds)
        self.host = settings.host
        self._username = settings.username or ""
        self._password = settings.password or ""
        self._connect_timeout = settings.connect_timeout_seconds
        self._command_timeout = settings.command_timeout_seconds
        self._cleanup_timeout = settings.probe_timeout_seconds
        self._retry_delay = settings.retry_delay_seconds
        self._runner = runner or run_command
        self._sleep = sleep

    def connect(self) -> bool:
        logger.info(
            "Connecting to share host=%s path=%s user=%s",
            self.host,
            self.root,
            self._username,
        )
        self._cleanup_stale_connections()

        started = time.monotonic()
        try:
            self._mount()
        except ShareCommandError as exc:
            if exc.is_credential_conflict:
                logger.warning("Share connect hit error 1219; forcing cleanup and retrying once")
                self._cleanup_all_connections()
                self._sleep(self._retry_delay)
                try:
                    self._mount()
                except ShareCommandError as retry_exc:
                    logger.error(
                        "Share connect retry failed host=%s original_error=%s retry_error=%s",
                        self.host,
                        exc,
                        retry_exc,
                    )
                    return self._connect_failed(retry_exc)
                logger.info("Share connect succeeded on retry host=%s", self.host)
                self.is_connected = True
                return True
            return self._connect_failed(exc)

        self.is_connected = True
        logger.info(
            "Share connected host=%s duration_ms=%d",
            self.host,
            int((time.monotonic() - started) * 1000),
        )
        return True

    def disconnect(self) -> None:
        try:
            self._run(["net", "use", self.root, "/delete", "/y"], self._command_timeout)
            logger.info("Share disconnected path=%s", self.root)
        except ShareCommandError as exc:
            # Usually means there was no session left to delete.
            logger.debug("Share disconnect non-fatal error path=%s error=%s", self.root, exc)
        finally:
            self.is_connected = False
            self._release_executor()

    def check_connection(self) -> bool:
        """
        Verify the session is still usable by listing the share root.
        """

        if not self.is_connected:
            return False
        try:
            self._run(["cmd", "/c", "dir", self.root, "/b"], self._cleanup_timeout)
        except ShareCommandError as exc:
            logger.warning("Share connection check failed path=%s error=%s", self.root, exc)
            self.is_connected = False
            return False
        return True

    def _mount(self) -> None:
        args = [
            "net",
            "use",
            self.root,
            self._password,
            f"/user:{self._username}",
            "/persistent:no",
        ]
        logger.debug("Running share mount command=%s", " ".join(self._masked(args)))
        self._run(args, self._connect_timeout)

    def _connect_failed(self, exc: ShareCommandError) -> bool:
        logger.error(
            "Share connect failed host=%s returncode=%s error=%s suggestions=%s",
            self.host,
            exc.returncode,
            exc,
            connection_error_suggestions(f"{exc} {exc.output}"),
        )
        self.is_connected = False
        return False

    def _cleanup_stale_connections(self) -> None:
        """
        Best-effort removal of earlier sessions to the same host.
        """

        for args in (
            ["net", "use", self.root, "/delete", "/y"],
            ["net", "use", f"\\\\{self.host}", "/delete", "/y"],
        ):
            self._run_quietly(args, self._cleanup_timeout)

    def _cleanup_all_connections(self) -> None:
        """
        Drop every mount, the IPC$ session, cached credentials and SMB sessions.
        """

        for args in (
            ["net", "use", "*", "/delete", "/y"],
            ["net", "use", f"\\\\{self.host}\\IPC$", "/delete", "/y"],
            ["cmdkey", f"/delete:{self.host}"],
            ["net", "session", "/delete", "/y"],
        ):
            self._run_quietly(args, self._command_timeout)
        logger.info("Forced share cleanup finished host=%s", self.host)

    def _run_quietly(self, args: Sequence[str], timeout: float) -> None:
        try:
            self._run(args, timeout)
        except ShareCommandError as exc:
            logger.debug("Share cleanup command failed command=%s error=%s", " ".join(args), exc)

    def _run(self, args: Sequence[str], timeout: float) -> CommandResult:
        masked = " ".join(self._masked(args))
        try:
            result = self._runner(args, timeout)
        except subprocess.TimeoutExpired as exc:
            raise ShareCommandError(f"Command timed out after {timeout:.0f}s: {masked}") from exc
        except OSError as exc:
            raise ShareCommandError(f"Command could not be started: {masked}: {exc}") from exc
        if result.returncode != 0:
            raise ShareCommandError(
                f"Command failed with exit code {result.returncode}: {masked}",
                returncode=result.returncode,
                output=result.output,
            )
        return result

    def _masked(self, args: Sequence[str]) -> list[str]:
        if not self._password:
            return list(args)
        return [_PASSWORD_MASK if arg == self._password else arg for arg in args]
