"""Perforce change log queries and the build-script branch scanner."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

from swarm_scm.connection import P4Connection
from swarm_scm.heads import ChangeRef, P4Ref
from swarm_scm.logging import get_logger

DEPOT_FILE_KEY_PATTERN = re.compile(r"^depotFile(?P<index>\d+)$")
DEFAULT_LABEL_FILE_LIMIT = 50

logger = get_logger(__name__)


class ChangeLog(Protocol):
    """Read access to the depot change history."""

    def latest_change(self, path: str) -> int:
        """Return the newest submitted change under a depot path, 0 if none."""

    def changed_files(self, ref: P4Ref) -> tuple[str, ...]:
        """Return depot files affected by a change (or labelled by a label)."""

    def file_exists(self, depot_path: str, ref: P4Ref) -> bool:
        """Return whether a depot file exists, undeleted, at a revision."""


@dataclass(frozen=True, slots=True)
class ScanResult:
    """Branch located from a change's files; both fields None when not found."""

    project_root: str | None
    branch: str | None


class BranchScanner(Protocol):
    def scan(self, ref: P4Ref) -> ScanResult: ...


class P4ChangeLog:
    """ChangeLog backed by the p4 command line client."""

    def __init__(
        self,
        *,
        port: str | None = None,
        user: str | None = None,
        ticket: str | None = None,
    ) -> None:
        self._port = port
        self._user = user
        self._ticket = ticket

    def _run(self, *args: str) -> list[dict[str, object]]:
        with P4Connection(port=self._port, user=self._user, ticket=self._ticket) as p4:
            return p4.run(*args)

    def latest_change(self, path: str) -> int:
        records = self._run("changes", "-m1", "-s", "submitted", path)
        if not records:
            return 0
        return int(str(records[0]["change"]))

    def changed_files(self, ref: P4Ref) -> tuple[str, ...]:
        if isinstance(ref, ChangeRef):
            records = self._run("describe", "-s", str(ref.change))
            if not records:
                return ()
            indexed: list[tuple[int, str]] = []
            for key, value in records[0].items():
                match = DEPOT_FILE_KEY_PATTERN.match(key)
                if match is not None and isinstance(value, str):
                    indexed.append((int(match.group("index")), value))
            return tuple(path for _index, path in sorted(indexed))

        records = self._run("files", "-e", "-m", str(DEFAULT_LABEL_FILE_LIMIT), f"//...@{ref}")
        return tuple(str(record["depotFile"]) for record in records if "depotFile" in record)

    def file_exists(self, depot_path: str, ref: P4Ref) -> bool:
        records = self._run("files", "-e", f"{depot_path}@{ref}")
        return any("depotFile" in record for record in records)


class P4BranchScanner:
    """Find the branch of a change by locating the build script above its files.

    The first directory, walking up from the first affected file, that holds
    the build script is the branch; its parent is the project root.
    """

    def __init__(self, change_log: ChangeLog, *, script_path: str) -> None:
        self._change_log = change_log
        self._script_path = script_path

    def scan(self, ref: P4Ref) -> ScanResult:
        files = self._change_log.changed_files(ref)
        if not files:
            logger.info("branch_scan_no_files", ref=str(ref))
            return ScanResult(project_root=None, branch=None)

        directory = files[0].rsplit("/", 1)[0]
        # stop at the depot root ("//depot")
        while directory.count("/") > 2:
            if self._change_log.file_exists(f"{directory}/{self._script_path}", ref):
                project_root, branch = directory.rsplit("/", 1)
                logger.debug(
                    "branch_scan_found", ref=str(ref), project_root=project_root, branch=branch
                )
                return ScanResult(project_root=project_root, branch=branch)
            directory = directory.rsplit("/", 1)[0]

        logger.info("branch_scan_no_script", ref=str(ref), file=files[0])
        return ScanResult(project_root=None, branch=None)
