"""Perforce command line access and Swarm gateway construction."""

from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from types import TracebackType
from typing import Any

from swarm_scm.config import SourceConfig
from swarm_scm.logging import get_logger
from swarm_scm.swarm_client import (
    SwarmAuthError,
    SwarmCredentials,
    SwarmGateway,
    build_swarm_client,
    get_swarm_credentials_with_source,
    get_swarm_url_override,
)

DEFAULT_P4_EXECUTABLE = "p4"
SWARM_URL_PROPERTY = "P4.Swarm.URL"
# -Mj message severities at or above this are failures (E_FAILED, E_FATAL)
P4_ERROR_SEVERITY = 3

logger = get_logger(__name__)


class P4CommandError(RuntimeError):
    """Raised when a p4 command fails."""

    def __init__(self, message: str, *, command: Sequence[str], returncode: int) -> None:
        super().__init__(message)
        self.command = tuple(command)
        self.returncode = returncode


def _run_process(args: list[str]) -> subprocess.CompletedProcess[str]:
    """Run a subprocess (wrapped for deterministic tests)."""
    return subprocess.run(args, capture_output=True, text=True, check=False)


def _is_message_record(record: dict[str, Any]) -> bool:
    """Return whether a -Mj record is a server message rather than data."""
    return "generic" in record and "severity" in record


def run_p4(args: Sequence[str], *, global_options: Sequence[str] = ()) -> list[dict[str, Any]]:
    """Run a p4 command with tagged JSON output and return its data records."""
    command = [DEFAULT_P4_EXECUTABLE, "-ztag", "-Mj", *global_options, *args]
    # Never log the ticket passed with -P.
    logged_command = list(args)
    logger.debug("p4_command", args=logged_command)

    try:
        completed = _run_process(command)
    except FileNotFoundError as error:
        raise P4CommandError(
            "p4 executable not found on PATH.", command=logged_command, returncode=127
        ) from error

    records: list[dict[str, Any]] = []
    for line in completed.stdout.splitlines():
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as error:
            raise P4CommandError(
                f"Unparseable p4 output: {line[:80]!r}",
                command=logged_command,
                returncode=completed.returncode,
            ) from error
        if not isinstance(record, dict):
            continue
        if _is_message_record(record):
            if int(record["severity"]) >= P4_ERROR_SEVERITY:
                raise P4CommandError(
                    str(record.get("data", "")).strip() or "p4 command failed.",
                    command=logged_command,
                    returncode=completed.returncode,
                )
            continue
        records.append(record)

    if completed.returncode != 0:
        raise P4CommandError(
            completed.stderr.strip() or f"p4 exited with status {completed.returncode}.",
            command=logged_command,
            returncode=completed.returncode,
        )
    return records


class P4Connection:
    """A p4 session bound to one user and ticket.

    Use as a context manager: acquire, run commands, release.
    """

    def __init__(
        self,
        *,
        port: str | None = None,
        user: str | None = None,
        ticket: str | None = None,
    ) -> None:
        self._global_options: list[str] = []
        if port:
            self._global_options += ["-p", port]
        if user:
            self._global_options += ["-u", user]
        if ticket:
            self._global_options += ["-P", ticket]
        self._open = False

    def __enter__(self) -> P4Connection:
        self._open = True
        logger.debug("p4_connection_acquired")
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self._open = False
        logger.debug("p4_connection_released")

    def run(self, *args: str) -> list[dict[str, Any]]:
        if not self._open:
            raise P4CommandError("p4 connection is not open.", command=args, returncode=-1)
        return run_p4(args, global_options=self._global_options)

    def swarm_url(self) -> str | None:
        """Return the Swarm URL advertised by the server, if any."""
        records = self.run("property", "-l", "-n", SWARM_URL_PROPERTY)
        for record in records:
            value = record.get("value")
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None


def discover_swarm_url(credentials: SwarmCredentials) -> str:
    """Return the Swarm base URL.

    SWARM_URL takes precedence; otherwise the URL is read from the
    P4.Swarm.URL server property.
    """
    base_url = get_swarm_url_override()
    if base_url is None:
        with P4Connection(user=credentials.user, ticket=credentials.ticket) as p4:
            base_url = p4.swarm_url()
    if base_url is None:
        raise SwarmAuthError(
            f"Swarm URL not found. Set SWARM_URL or the {SWARM_URL_PROPERTY} server property."
        )
    return base_url


def connect_swarm_gateway(config: SourceConfig) -> SwarmGateway:
    """Build an authenticated gateway from stored credentials."""
    credentials = get_swarm_credentials_with_source()
    base_url = discover_swarm_url(credentials)

    logger.info("swarm_gateway_connected", base_url=base_url, user=credentials.user)
    client = build_swarm_client(base_url, credentials, timeout_seconds=config.timeout_seconds)
    return SwarmGateway(client, api_version=config.api_version)
