"""Heads, depot paths, change references and revisions."""

from __future__ import annotations

from dataclasses import dataclass


class ChangeParseError(ValueError):
    """Raised when an event change value is not a positive change number."""


@dataclass(frozen=True, slots=True)
class DepotPath:
    """Plain depot path without client-view mappings."""

    path: str


@dataclass(frozen=True, slots=True)
class SwarmPath:
    """Branch root plus the declared branch paths used as view mappings."""

    path: str
    mappings: tuple[str, ...]


P4Path = DepotPath | SwarmPath


@dataclass(frozen=True, slots=True)
class ChangeRef:
    """Reference to a numbered change."""

    change: int

    def __str__(self) -> str:
        return str(self.change)


@dataclass(frozen=True, slots=True)
class LabelRef:
    """Reference to a label or other non-numeric revision specifier."""

    label: str

    def __str__(self) -> str:
        return self.label


P4Ref = ChangeRef | LabelRef


def parse_ref(value: str) -> P4Ref:
    """Build a change reference for digits, a label reference otherwise."""
    normalized = value.strip().lstrip("@")
    if normalized.isdigit():
        return ChangeRef(int(normalized))
    return LabelRef(normalized)


def parse_change(value: str) -> ChangeRef:
    """Parse a change number that must be a positive integer."""
    try:
        change = int(value)
    except (TypeError, ValueError) as error:
        raise ChangeParseError(f"Invalid change '{value}'. Expected a positive integer.") from error
    if change <= 0:
        raise ChangeParseError(f"Invalid change '{value}'. Expected a positive integer.")
    return ChangeRef(change)


@dataclass(frozen=True, slots=True)
class BranchHead:
    """A branch of the project."""

    name: str
    path: P4Path | None

    @property
    def is_change_request(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class ChangeRequestHead:
    """A review against one branch; ``target`` is the branch head it diffs against.

    ``path`` is None when the review names a branch the project no longer lists.
    """

    name: str
    review: str
    path: P4Path | None
    target: BranchHead

    @property
    def is_change_request(self) -> bool:
        return True


Head = BranchHead | ChangeRequestHead


@dataclass(frozen=True, slots=True)
class Revision:
    """A head pinned to one change (or label)."""

    head: Head
    ref: P4Ref

    @property
    def change(self) -> int | None:
        if isinstance(self.ref, ChangeRef):
            return self.ref.change
        return None

    @classmethod
    def for_branch(cls, path: str, branch: str, ref: P4Ref) -> Revision:
        """Revision for a branch whose root path came with the event."""
        root = path.removesuffix("/...")
        head = BranchHead(name=branch, path=SwarmPath(path=root, mappings=(f"{root}/...",)))
        return cls(head=head, ref=ref)

    @classmethod
    def for_scanned_branch(cls, project_root: str, branch: str, ref: P4Ref) -> Revision:
        """Revision for a branch discovered by scanning a change's files."""
        return cls.for_branch(f"{project_root.rstrip('/')}/{branch}", branch, ref)
