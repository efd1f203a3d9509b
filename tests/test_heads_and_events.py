"""Unit tests for head types, change references and event payloads."""

from __future__ import annotations

import pytest
from pydantic import ValidationError
from swarm_scm.events import CheckoutEvent, CheckoutStatus
from swarm_scm.heads import (
    BranchHead,
    ChangeParseError,
    ChangeRef,
    ChangeRequestHead,
    LabelRef,
    Revision,
    SwarmPath,
    parse_change,
    parse_ref,
)


@pytest.mark.unit
def test_change_request_flag_distinguishes_head_kinds() -> None:
    branch = BranchHead(name="main", path=None)
    review = ChangeRequestHead(name="main-42", review="42", path=None, target=branch)

    assert branch.is_change_request is False
    assert review.is_change_request is True


@pytest.mark.unit
@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("1234", ChangeRef(1234)),
        ("@1234", ChangeRef(1234)),
        (" 77 ", ChangeRef(77)),
        ("release-1.0", LabelRef("release-1.0")),
        ("@now", LabelRef("now")),
    ],
)
def test_parse_ref(value: str, expected: object) -> None:
    assert parse_ref(value) == expected


@pytest.mark.unit
def test_refs_render_as_revision_specifiers() -> None:
    assert str(ChangeRef(250)) == "250"
    assert str(LabelRef("release-1.0")) == "release-1.0"


@pytest.mark.unit
def test_parse_change_accepts_positive_numbers() -> None:
    assert parse_change("1234") == ChangeRef(1234)


@pytest.mark.unit
@pytest.mark.parametrize("value", ["", "abc", "12x", "0", "-5", "1.5"])
def test_parse_change_rejects_non_positive_or_non_numeric(value: str) -> None:
    with pytest.raises(ChangeParseError):
        parse_change(value)


@pytest.mark.unit
def test_change_parse_error_is_a_value_error() -> None:
    assert issubclass(ChangeParseError, ValueError)


@pytest.mark.unit
def test_revision_for_branch_builds_single_mapping_path() -> None:
    revision = Revision.for_branch("//depot/main/...", "main", ChangeRef(99))

    assert revision.head == BranchHead(
        name="main", path=SwarmPath(path="//depot/main", mappings=("//depot/main/...",))
    )
    assert revision.change == 99


@pytest.mark.unit
def test_revision_for_scanned_branch_joins_root_and_branch() -> None:
    revision = Revision.for_scanned_branch("//depot/proj/", "dev", LabelRef("nightly"))

    assert revision.head.name == "dev"
    assert revision.head.path == SwarmPath(
        path="//depot/proj/dev", mappings=("//depot/proj/dev/...",)
    )
    assert revision.change is None


@pytest.mark.unit
@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("submitted", CheckoutStatus.SUBMITTED),
        ("COMMITTED", CheckoutStatus.COMMITTED),
        (" Shelved ", CheckoutStatus.SHELVED),
        ("deleted", CheckoutStatus.OTHER),
    ],
)
def test_checkout_status_parse(value: str, expected: CheckoutStatus) -> None:
    assert CheckoutStatus.parse(value) is expected


@pytest.mark.unit
def test_event_coerces_numbers_and_ignores_unknown_keys() -> None:
    event = CheckoutEvent.from_payload(
        {"change": 1234, "project": "proj1", "status": "submitted", "user": "bruno"}
    )

    assert event.change == "1234"
    assert event.project == "proj1"
    assert event.branch is None
    assert event.checkout_status is CheckoutStatus.SUBMITTED


@pytest.mark.unit
def test_event_treats_blank_values_as_absent() -> None:
    event = CheckoutEvent.from_payload({"change": "  ", "status": ""})

    assert event.change is None
    assert event.checkout_status is None


@pytest.mark.unit
def test_event_rejects_nested_values() -> None:
    with pytest.raises(ValidationError):
        CheckoutEvent.from_payload({"change": {"id": 1}})


@pytest.mark.unit
def test_event_is_immutable() -> None:
    event = CheckoutEvent.from_payload({"change": "1"})

    with pytest.raises(ValidationError):
        event.change = "2"  # type: ignore[misc]
