"""Client view mapping and manual workspace descriptors."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class WorkspaceSpec:
    """Client spec fields this source controls."""

    view: str
    stream_view: str | None = None


@dataclass(frozen=True, slots=True)
class ManualWorkspace:
    """Manual (non-stream) workspace built from an explicit client view."""

    charset: str
    pin_host: bool
    name: str
    spec: WorkspaceSpec


def _quote(path: str) -> str:
    if " " in path and not path.startswith('"'):
        return f'"{path}"'
    return path


def _split_view_line(line: str) -> list[str]:
    """Split a view line into its sides, honoring double-quoted paths."""
    sides: list[str] = []
    remaining = line.strip()
    while remaining:
        if remaining.startswith('"') or remaining[:2] in ('-"', '+"'):
            prefix = "" if remaining.startswith('"') else remaining[0]
            body = remaining[len(prefix) + 1 :]
            closing = body.find('"')
            if closing < 0:
                sides.append(prefix + body)
                break
            sides.append(prefix + body[:closing])
            remaining = body[closing + 1 :].strip()
        else:
            side, _, remaining = remaining.partition(" ")
            sides.append(side)
            remaining = remaining.strip()
    return sides


def client_view_line(line: str, client: str) -> str:
    """Map one depot view line onto the client workspace root."""
    sides = _split_view_line(line)
    depot = sides[0]
    modifier = ""
    if depot[:1] in ("-", "+"):
        modifier, depot = depot[0], depot[1:]

    if len(sides) > 1:
        # keep the declared client path, re-rooted on this client
        client_rest = sides[1].lstrip("/").partition("/")[2]
    else:
        client_rest = depot.lstrip("/")

    return f"{_quote(modifier + depot)} {_quote(f'//{client}/{client_rest}')}"


def client_view(depot_view: str | Sequence[str], client: str) -> str:
    """Build client view lines for a depot view (newline separated or a sequence)."""
    lines = depot_view.splitlines() if isinstance(depot_view, str) else list(depot_view)
    return "\n".join(client_view_line(line, client) for line in lines if line.strip())
