"""Helix Swarm multi-branch source.

Lists branch and review heads of one Swarm project, resolves heads and
inbound events to revisions, and composes the client view a head is
checked out with.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from types import TracebackType
from typing import Any

import httpx

from swarm_scm.changes import BranchScanner, ChangeLog, P4BranchScanner, P4ChangeLog
from swarm_scm.config import SourceConfig
from swarm_scm.connection import P4CommandError, connect_swarm_gateway
from swarm_scm.events import CheckoutEvent, CheckoutStatus
from swarm_scm.heads import (
    BranchHead,
    ChangeRef,
    ChangeRequestHead,
    Head,
    P4Path,
    Revision,
    SwarmPath,
    parse_change,
    parse_ref,
)
from swarm_scm.logging import get_logger
from swarm_scm.swarm_client import SwarmError, SwarmGateway, SwarmInputError
from swarm_scm.view import ManualWorkspace, WorkspaceSpec, client_view

logger = get_logger(__name__)

GatewayFactory = Callable[[], SwarmGateway]


class SwarmSource:
    """Multi-branch source over one Swarm project.

    The gateway is created on first use from ``gateway_factory`` and reused
    for the life of the source. Gateway responses are never cached.
    """

    def __init__(
        self,
        config: SourceConfig,
        *,
        gateway_factory: GatewayFactory,
        change_log: ChangeLog,
        scanner_factory: Callable[[ChangeLog, str], BranchScanner] | None = None,
    ) -> None:
        self.config = config
        self._gateway_factory = gateway_factory
        self._gateway: SwarmGateway | None = None
        self._gateway_lock = threading.Lock()
        self._change_log = change_log
        self._scanner_factory = scanner_factory or (
            lambda change_log, script_path: P4BranchScanner(change_log, script_path=script_path)
        )

    @property
    def project(self) -> str:
        return self.config.project

    @property
    def gateway(self) -> SwarmGateway:
        with self._gateway_lock:
            if self._gateway is None:
                self._gateway = self._gateway_factory()
            return self._gateway

    def close(self) -> None:
        with self._gateway_lock:
            if self._gateway is not None:
                self._gateway.close()
                self._gateway = None

    def __enter__(self) -> SwarmSource:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def list_heads(self) -> list[BranchHead]:
        """Return one head per branch of the project."""
        branches = self.gateway.list_branches(self.project)
        heads = [BranchHead(name=branch.id, path=branch.swarm_path) for branch in branches]
        logger.info("heads_listed", project=self.project, count=len(heads))
        return heads

    def list_tags(self) -> list[ChangeRequestHead]:
        """Return one change request head per (active review, touched branch)."""
        tags: list[ChangeRequestHead] = []
        for review in self.gateway.list_active_reviews(self.project):
            review_id = str(review.id)
            for branch in self._branches_in_review(review_id):
                # first Swarm path; it must include the build script
                path = self._path_of_branch(branch)
                name = f"{branch}-{review_id}"
                target = BranchHead(name=branch, path=path)
                tags.append(
                    ChangeRequestHead(name=name, review=review_id, path=path, target=target)
                )

        logger.info("tags_listed", project=self.project, count=len(tags))
        return tags

    def resolve(self, head: Head) -> Revision:
        """Resolve a head to its latest revision."""
        if isinstance(head, ChangeRequestHead):
            change = self._last_change_in_review(head.review)
            logger.debug("review_resolved", review=head.review, change=change)
            return Revision(head=head, ref=ChangeRef(change))
        return self._resolve_branch(head)

    def resolve_from_event(self, payload: Mapping[str, Any] | CheckoutEvent) -> Revision | None:
        """Resolve an event payload to a revision, or None when it names none.

        Raises:
            ChangeParseError: a submitted/committed event carries a change
                that is not a positive integer
        """
        if isinstance(payload, CheckoutEvent):
            event = payload
        else:
            event = CheckoutEvent.from_payload(payload)

        if event.change is None:
            return None

        # Not a Swarm event for this project: scan the change itself.
        if event.project is None or event.project.lower() != self.project.lower():
            logger.debug("event_foreign_project", event_project=event.project, change=event.change)
            ref = parse_ref(event.change)
            scan = self._scanner_factory(self._change_log, self.config.script_path).scan(ref)
            if scan.project_root is None or scan.branch is None:
                return None
            return Revision.for_scanned_branch(scan.project_root, scan.branch, ref)

        status = event.checkout_status
        if event.branch is None or event.path is None or status is None:
            return None

        if status in (CheckoutStatus.SUBMITTED, CheckoutStatus.COMMITTED):
            return Revision.for_branch(event.path, event.branch, parse_change(event.change))
        if status is CheckoutStatus.SHELVED:
            # TODO: map shelved changes to their review head via get_review
            logger.debug("event_shelved_ignored", change=event.change)
            return None
        return None

    def includes(self, path: str) -> bool:
        """Return whether a depot path falls under any branch of the project."""
        try:
            branches = self.gateway.list_branches(self.project)
        except (SwarmError, SwarmInputError, httpx.HTTPError, P4CommandError) as error:
            logger.warning("include_check_failed", path=path, error=str(error))
            return False

        for branch in branches:
            for branch_path in branch.paths:
                if branch_path.startswith("-"):
                    continue
                if path.startswith(branch_path.removesuffix("...")):
                    return True
        return False

    def build_workspace(self, head: Head | None, path: P4Path | None = None) -> ManualWorkspace:
        """Build the manual workspace for a head (or an explicit Swarm path)."""
        if path is None and head is not None:
            path = head.path
        if not isinstance(path, SwarmPath):
            raise ValueError("missing Swarm path")

        client = self.config.format
        jenkins_path = f"{path.path}/{self.config.script_path}"
        jenkins_view = client_view(jenkins_path, client)
        mappings_view = client_view(path.mappings, client)
        view = jenkins_view + "\n" + mappings_view

        spec = WorkspaceSpec(view=view, stream_view=None)
        return ManualWorkspace(charset=self.config.charset, pin_host=False, name=client, spec=spec)

    def _resolve_branch(self, head: BranchHead) -> Revision:
        if head.path is None:
            raise ValueError(f"Head '{head.name}' has no depot path.")
        change = self._change_log.latest_change(f"{head.path.path}/...")
        logger.debug("branch_resolved", head=head.name, change=change)
        return Revision(head=head, ref=ChangeRef(change))

    def _branches_in_review(self, review_id: str) -> tuple[str, ...]:
        detail = self.gateway.get_review(review_id)
        return detail.branches_in_project(self.project)

    def _last_change_in_review(self, review_id: str) -> int:
        return self.gateway.get_review(review_id).last_change

    def _path_of_branch(self, branch_id: str) -> SwarmPath | None:
        for branch in self.gateway.list_branches(self.project):
            if branch.id == branch_id:
                return branch.swarm_path
        logger.warning("tag_branch_missing", branch=branch_id)
        return None


def create_swarm_source(config: SourceConfig) -> SwarmSource:
    """Wire a source to the live Swarm server and the p4 command line client."""
    return SwarmSource(
        config,
        gateway_factory=lambda: connect_swarm_gateway(config),
        change_log=P4ChangeLog(),
    )
