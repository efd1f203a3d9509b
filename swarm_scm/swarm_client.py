"""Helix Swarm API wrapper and auth helpers."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx
from dotenv import load_dotenv

from swarm_scm.heads import SwarmPath
from swarm_scm.logging import get_logger

DEFAULT_SWARM_API_VERSION = "4"
SWARM_MAX_RETRIES = 3
DEFAULT_RETRY_BACKOFF_SECONDS = 0.5
DEFAULT_REVIEWS_PAGE_SIZE = 100
ACTIVE_REVIEW_STATES = ("needsReview", "needsRevision", "approved:isPending")
SWARM_USER_ENV_VARS = ("SWARM_USER", "P4USER")
SWARM_TICKET_ENV_VARS = ("SWARM_TICKET", "P4TICKET", "P4PASSWD")
SWARM_URL_ENV_VAR = "SWARM_URL"

logger = get_logger(__name__)


class SwarmError(RuntimeError):
    """Base class for Swarm gateway failures."""


class SwarmAuthError(SwarmError):
    """Raised when required Swarm credentials are missing."""


class SwarmInputError(ValueError):
    """Raised when project or review input values are invalid."""


class SwarmApiError(SwarmError):
    """Raised when a Swarm API request fails."""

    def __init__(self, message: str, *, status_code: int, endpoint: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


@dataclass(frozen=True, slots=True)
class SwarmCredentials:
    """Perforce user and ticket used for Swarm basic auth."""

    user: str
    ticket: str
    user_source: str
    ticket_source: str


@dataclass(frozen=True, slots=True)
class SwarmBranch:
    """One branch of a Swarm project."""

    id: str
    name: str
    paths: tuple[str, ...]

    @property
    def swarm_path(self) -> SwarmPath:
        """Workspace path keyed off the first declared path."""
        first = self.paths[0]
        if first.endswith("/..."):
            first = first[: -len("/...")]
        return SwarmPath(path=first, mappings=self.paths)


@dataclass(frozen=True, slots=True)
class SwarmReviewSummary:
    """Active review row from the reviews listing."""

    id: int
    state: str
    changes: tuple[int, ...]


@dataclass(frozen=True, slots=True)
class SwarmReviewDetail:
    """Review detail: touched branches per project and change history."""

    id: int
    state: str
    projects: dict[str, tuple[str, ...]]
    changes: tuple[int, ...]

    def branches_in_project(self, project: str) -> tuple[str, ...]:
        """Return branch ids this review touches within one project."""
        return self.projects.get(project, ())

    @property
    def last_change(self) -> int:
        """Highest change number in the review, 0 when there are none."""
        return max(self.changes, default=0)


def _ensure_mapping(value: object, *, context: str) -> dict[str, Any]:
    """Ensure a response fragment is a JSON object."""
    if not isinstance(value, dict):
        raise SwarmApiError(
            f"Expected JSON object for {context}.",
            status_code=500,
            endpoint=context,
        )
    return value


def _require_str(payload: dict[str, Any], *, key: str, endpoint: str) -> str:
    """Read a required string field from payload."""
    value = payload.get(key)
    if not isinstance(value, str):
        raise SwarmApiError(
            f"Expected string field '{key}' in Swarm response.",
            status_code=500,
            endpoint=endpoint,
        )
    return value


def _require_int(payload: dict[str, Any], *, key: str, endpoint: str) -> int:
    """Read a required integer field from payload."""
    value = payload.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise SwarmApiError(
            f"Expected integer field '{key}' in Swarm response.",
            status_code=500,
            endpoint=endpoint,
        )
    return value


def _require_object(payload: dict[str, Any], *, key: str, endpoint: str) -> dict[str, Any]:
    """Read a required object field from payload."""
    value = payload.get(key)
    if not isinstance(value, dict):
        raise SwarmApiError(
            f"Expected object field '{key}' in Swarm response.",
            status_code=500,
            endpoint=endpoint,
        )
    return value


def _require_list(payload: dict[str, Any], *, key: str, endpoint: str) -> list[Any]:
    """Read a required array field from payload."""
    value = payload.get(key)
    if not isinstance(value, list):
        raise SwarmApiError(
            f"Expected array field '{key}' in Swarm response.",
            status_code=500,
            endpoint=endpoint,
        )
    return value


def _change_numbers(values: list[Any], *, endpoint: str) -> tuple[int, ...]:
    """Normalize a change list; Swarm may return numbers or numeric strings."""
    changes: list[int] = []
    for value in values:
        if isinstance(value, int) and not isinstance(value, bool):
            changes.append(value)
        elif isinstance(value, str) and value.isdigit():
            changes.append(int(value))
        else:
            raise SwarmApiError(
                f"Expected change number in Swarm response, got {value!r}.",
                status_code=500,
                endpoint=endpoint,
            )
    return tuple(changes)


def _is_retryable_status(status_code: int) -> bool:
    """Return whether a status code is retryable under policy."""
    return status_code == 429 or 500 <= status_code < 600


def _parse_retry_after_seconds(response: httpx.Response) -> float | None:
    """Parse Retry-After header as seconds if present and valid."""
    retry_after = response.headers.get("Retry-After")
    if retry_after is None:
        return None
    try:
        parsed_value = float(retry_after)
    except ValueError:
        return None
    if parsed_value < 0:
        return None
    return parsed_value


def _compute_retry_delay_seconds(response: httpx.Response, *, attempt_number: int) -> float:
    """Compute retry delay from Retry-After header or exponential backoff."""
    retry_after_seconds = _parse_retry_after_seconds(response)
    if retry_after_seconds is not None:
        return retry_after_seconds
    return DEFAULT_RETRY_BACKOFF_SECONDS * (2 ** (attempt_number - 1))


def _sleep_for_retry(seconds: float) -> None:
    """Sleep helper for retry delays (wrapped for deterministic tests)."""
    time.sleep(seconds)


def _raise_http_error(response: httpx.Response, endpoint: str) -> None:
    """Raise a typed error for a non-success Swarm API response."""
    raise SwarmApiError(
        f"Swarm API request failed with status {response.status_code} for '{endpoint}'.",
        status_code=response.status_code,
        endpoint=endpoint,
    )


def _request_with_retries(
    client: httpx.Client,
    endpoint: str,
    *,
    params: list[tuple[str, str]] | None = None,
    max_attempts: int = SWARM_MAX_RETRIES,
) -> httpx.Response:
    """Perform a GET request with retry handling for 429/5xx responses."""
    for attempt_number in range(1, max_attempts + 1):
        response = client.get(endpoint, params=params)
        if response.status_code < 400:
            return response

        should_retry = _is_retryable_status(response.status_code) and attempt_number < max_attempts
        if not should_retry:
            _raise_http_error(response, endpoint)

        delay_seconds = _compute_retry_delay_seconds(response, attempt_number=attempt_number)
        logger.warning(
            "swarm_request_retry",
            endpoint=endpoint,
            status_code=response.status_code,
            attempt=attempt_number,
            delay_seconds=delay_seconds,
        )
        _sleep_for_retry(delay_seconds)

    raise RuntimeError("Unexpected retry loop exit without a response.")


def _request_json(
    client: httpx.Client,
    endpoint: str,
    *,
    params: list[tuple[str, str]] | None = None,
) -> dict[str, Any]:
    """Perform a JSON request against the Swarm API."""
    response = _request_with_retries(client, endpoint, params=params)
    try:
        payload = response.json()
    except ValueError as error:
        raise SwarmApiError(
            "Swarm response is not valid JSON.",
            status_code=500,
            endpoint=endpoint,
        ) from error
    return _ensure_mapping(payload, context=endpoint)


def validate_project(project: str) -> str:
    """Validate and normalize a Swarm project id."""
    normalized = project.strip()
    if not normalized or "/" in normalized:
        raise SwarmInputError(f"Invalid project '{project}'. Expected a Swarm project id.")
    return normalized


def validate_review_id(review_id: int | str) -> int:
    """Validate and normalize a review id."""
    try:
        normalized = int(review_id)
    except (TypeError, ValueError) as error:
        raise SwarmInputError(
            f"Invalid review id '{review_id}'. Expected a positive integer."
        ) from error
    if normalized <= 0:
        raise SwarmInputError(f"Invalid review id '{review_id}'. Expected a positive integer.")
    return normalized


def validate_api_version(api_version: str) -> str:
    """Validate a Swarm API version string such as '4' or 'v9'."""
    normalized = api_version.strip().lstrip("v")
    if not normalized.isdigit():
        raise SwarmInputError(f"Invalid Swarm API version '{api_version}'.")
    return normalized


def _parse_branch(row: dict[str, Any], *, endpoint: str) -> SwarmBranch:
    """Parse one branch row from a project payload."""
    paths = _require_list(row, key="paths", endpoint=endpoint)
    if not paths or not all(isinstance(path, str) for path in paths):
        raise SwarmApiError(
            "Expected non-empty string list 'paths' in Swarm branch.",
            status_code=500,
            endpoint=endpoint,
        )
    branch_id = _require_str(row, key="id", endpoint=endpoint)
    name = row.get("name")
    return SwarmBranch(
        id=branch_id,
        name=name if isinstance(name, str) else branch_id,
        paths=tuple(paths),
    )


def fetch_branches_in_project(
    *,
    client: httpx.Client,
    project: str,
    api_version: str = DEFAULT_SWARM_API_VERSION,
) -> tuple[SwarmBranch, ...]:
    """Fetch every branch declared in a Swarm project."""
    normalized_project = validate_project(project)
    endpoint = (
        f"/api/v{validate_api_version(api_version)}/projects/{quote(normalized_project, safe='')}"
    )
    payload = _request_json(client, endpoint, params=[("fields", "branches")])
    project_payload = _require_object(payload, key="project", endpoint=endpoint)
    rows = project_payload.get("branches") or []
    if not isinstance(rows, list):
        raise SwarmApiError(
            "Expected array field 'branches' in Swarm response.",
            status_code=500,
            endpoint=endpoint,
        )
    return tuple(
        _parse_branch(_ensure_mapping(row, context=endpoint), endpoint=endpoint) for row in rows
    )


def fetch_active_reviews(
    *,
    client: httpx.Client,
    project: str,
    api_version: str = DEFAULT_SWARM_API_VERSION,
    page_size: int = DEFAULT_REVIEWS_PAGE_SIZE,
) -> tuple[SwarmReviewSummary, ...]:
    """Fetch all active reviews for a project, following lastSeen pagination."""
    normalized_project = validate_project(project)
    endpoint = f"/api/v{validate_api_version(api_version)}/reviews"
    base_params = [("project[]", normalized_project)]
    base_params.extend(("state[]", state) for state in ACTIVE_REVIEW_STATES)
    base_params.extend([("fields", "id,state,changes"), ("max", str(page_size))])

    reviews: list[SwarmReviewSummary] = []
    after: int | None = None
    while True:
        params = list(base_params)
        if after is not None:
            params.append(("after", str(after)))
        payload = _request_json(client, endpoint, params=params)
        rows = _require_list(payload, key="reviews", endpoint=endpoint)

        for row in rows:
            review = _ensure_mapping(row, context=endpoint)
            reviews.append(
                SwarmReviewSummary(
                    id=_require_int(review, key="id", endpoint=endpoint),
                    state=str(review.get("state") or ""),
                    changes=_change_numbers(review.get("changes") or [], endpoint=endpoint),
                )
            )

        last_seen = payload.get("lastSeen")
        if len(rows) < page_size or not isinstance(last_seen, int):
            break
        after = last_seen

    return tuple(reviews)


def fetch_review(
    *,
    client: httpx.Client,
    review_id: int | str,
    api_version: str = DEFAULT_SWARM_API_VERSION,
) -> SwarmReviewDetail:
    """Fetch one review with its project branches and change history."""
    normalized_review_id = validate_review_id(review_id)
    endpoint = f"/api/v{validate_api_version(api_version)}/reviews/{normalized_review_id}"
    payload = _request_json(client, endpoint)
    review = _require_object(payload, key="review", endpoint=endpoint)

    # An empty PHP map serializes as [].
    projects_payload = review.get("projects") or {}
    if isinstance(projects_payload, list) and not projects_payload:
        projects_payload = {}
    projects_payload = _ensure_mapping(projects_payload, context=endpoint)

    projects: dict[str, tuple[str, ...]] = {}
    for project_id, branch_ids in projects_payload.items():
        if not isinstance(branch_ids, list) or not all(isinstance(b, str) for b in branch_ids):
            raise SwarmApiError(
                f"Expected branch id list for project '{project_id}' in Swarm review.",
                status_code=500,
                endpoint=endpoint,
            )
        projects[project_id] = tuple(branch_ids)

    return SwarmReviewDetail(
        id=_require_int(review, key="id", endpoint=endpoint),
        state=str(review.get("state") or ""),
        projects=projects,
        changes=_change_numbers(review.get("changes") or [], endpoint=endpoint),
    )


def fetch_swarm_version(*, client: httpx.Client) -> str:
    """Fetch the Swarm server version; used to validate credentials."""
    endpoint = "/api/version"
    payload = _request_json(client, endpoint)
    return _require_str(payload, key="version", endpoint=endpoint)


class SwarmGateway:
    """Project, branch and review queries against one Swarm server."""

    def __init__(
        self, client: httpx.Client, *, api_version: str = DEFAULT_SWARM_API_VERSION
    ) -> None:
        self._client = client
        self._api_version = validate_api_version(api_version)

    @property
    def base_url(self) -> str:
        return str(self._client.base_url).rstrip("/")

    def list_branches(self, project: str) -> tuple[SwarmBranch, ...]:
        return fetch_branches_in_project(
            client=self._client, project=project, api_version=self._api_version
        )

    def list_active_reviews(self, project: str) -> tuple[SwarmReviewSummary, ...]:
        return fetch_active_reviews(
            client=self._client, project=project, api_version=self._api_version
        )

    def get_review(self, review_id: int | str) -> SwarmReviewDetail:
        return fetch_review(
            client=self._client, review_id=review_id, api_version=self._api_version
        )

    def close(self) -> None:
        self._client.close()


def _first_env(names: tuple[str, ...]) -> tuple[str, str] | None:
    """Return the first set environment variable and its name."""
    for name in names:
        value = os.getenv(name)
        if value:
            return value, name
    return None


def get_swarm_credentials_with_source() -> SwarmCredentials:
    """Read Swarm user and ticket from the environment and fail fast if missing."""
    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)

    user = _first_env(SWARM_USER_ENV_VARS)
    if user is None:
        raise SwarmAuthError("Missing Swarm user. Set SWARM_USER (preferred) or P4USER.")

    ticket = _first_env(SWARM_TICKET_ENV_VARS)
    if ticket is None:
        raise SwarmAuthError(
            "Missing Swarm ticket. Set SWARM_TICKET (preferred), P4TICKET or P4PASSWD."
        )

    return SwarmCredentials(
        user=user[0],
        ticket=ticket[0],
        user_source=user[1],
        ticket_source=ticket[1],
    )


def get_swarm_url_override() -> str | None:
    """Return SWARM_URL from the environment (or .env), if set."""
    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    return os.getenv(SWARM_URL_ENV_VAR) or None


def build_swarm_client(
    base_url: str,
    credentials: SwarmCredentials,
    timeout_seconds: int = 20,
    *,
    trust_env: bool = True,
) -> httpx.Client:
    """Build an authenticated Swarm HTTP client."""
    if not base_url.startswith(("http://", "https://")):
        raise SwarmInputError(f"Invalid Swarm URL '{base_url}'. Expected http(s)://host.")
    return httpx.Client(
        base_url=base_url.rstrip("/"),
        auth=(credentials.user, credentials.ticket),
        headers={"Accept": "application/json"},
        timeout=timeout_seconds,
        trust_env=trust_env,
    )
