"""Shared pytest fixtures and test-run configuration."""

from __future__ import annotations

import os
from collections.abc import Callable

import pytest
from swarm_scm.config import SourceConfig
from swarm_scm.heads import P4Ref
from swarm_scm.source import SwarmSource
from swarm_scm.swarm_client import SwarmBranch, SwarmReviewDetail, SwarmReviewSummary


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom pytest options for integration test execution."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run tests marked as integration (live Swarm server).",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip integration tests unless explicitly enabled."""
    run_integration = config.getoption("--run-integration")
    env_enabled = os.getenv("RUN_INTEGRATION_TESTS") == "1"
    if run_integration or env_enabled:
        return

    skip_marker = pytest.mark.skip(
        reason=(
            "Integration tests are disabled by default. "
            "Use --run-integration or set RUN_INTEGRATION_TESTS=1."
        )
    )
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_marker)


class FakeGateway:
    """In-memory Swarm gateway that records every call."""

    def __init__(
        self,
        *,
        branches: tuple[SwarmBranch, ...] = (),
        reviews: tuple[SwarmReviewSummary, ...] = (),
        details: dict[str, SwarmReviewDetail] | None = None,
    ) -> None:
        self.branches = branches
        self.reviews = reviews
        self.details = dict(details or {})
        self.calls: list[tuple[str, str]] = []
        self.failure: Exception | None = None
        self.closed = False

    def _record(self, name: str, argument: str) -> None:
        self.calls.append((name, argument))
        if self.failure is not None:
            raise self.failure

    def list_branches(self, project: str) -> tuple[SwarmBranch, ...]:
        self._record("list_branches", project)
        return self.branches

    def list_active_reviews(self, project: str) -> tuple[SwarmReviewSummary, ...]:
        self._record("list_active_reviews", project)
        return self.reviews

    def get_review(self, review_id: int | str) -> SwarmReviewDetail:
        self._record("get_review", str(review_id))
        return self.details[str(review_id)]

    def close(self) -> None:
        self.closed = True


class FakeChangeLog:
    """In-memory change log keyed by depot path and ref string."""

    def __init__(self) -> None:
        self.latest: dict[str, int] = {}
        self.files: dict[str, tuple[str, ...]] = {}
        self.existing: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    def latest_change(self, path: str) -> int:
        self.calls.append(("latest_change", path))
        return self.latest.get(path, 0)

    def changed_files(self, ref: P4Ref) -> tuple[str, ...]:
        self.calls.append(("changed_files", str(ref)))
        return self.files.get(str(ref), ())

    def file_exists(self, depot_path: str, ref: P4Ref) -> bool:
        key = f"{depot_path}@{ref}"
        self.calls.append(("file_exists", key))
        return key in self.existing


@pytest.fixture
def fake_gateway() -> FakeGateway:
    """Project proj1: branch main, active review 42 on main with three changes."""
    return FakeGateway(
        branches=(SwarmBranch(id="main", name="Main", paths=("//depot/main/...",)),),
        reviews=(SwarmReviewSummary(id=42, state="needsReview", changes=(100, 250, 180)),),
        details={
            "42": SwarmReviewDetail(
                id=42,
                state="needsReview",
                projects={"proj1": ("main",)},
                changes=(100, 250, 180),
            )
        },
    )


@pytest.fixture
def fake_change_log() -> FakeChangeLog:
    return FakeChangeLog()


@pytest.fixture
def make_source(
    fake_gateway: FakeGateway, fake_change_log: FakeChangeLog
) -> Callable[..., SwarmSource]:
    """Build a SwarmSource over the fake gateway and change log."""

    def _make(project: str = "proj1", **config_overrides: object) -> SwarmSource:
        config = SourceConfig(project=project, format="jenkins-ws", **config_overrides)
        return SwarmSource(
            config,
            gateway_factory=lambda: fake_gateway,  # type: ignore[arg-type,return-value]
            change_log=fake_change_log,
        )

    return _make
