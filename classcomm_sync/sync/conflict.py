"""
Last-write-wins conflict resolution.

Used on both sides of the wire: the server resolves an incoming
operation against the authoritative row, the client resolves a pulled
change log entry against its local row. Both sides must pick the same
winner without talking to each other, so the rule is a total order:

1. higher ``_version`` wins
2. on equal version, later ``_updatedAt`` wins
3. on equal timestamp, the lexicographically greater ``_clientId`` wins

Tombstones get no special treatment. A later update with a higher
version undeletes the record.

The rule can silently drop the losing side of a concurrent edit; there
is no field-level merge.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .version import RecordVersion


class Resolution(Enum):
    """Outcome of comparing a candidate version with the stored one."""

    CANDIDATE_WINS = "candidate_wins"
    STORED_WINS = "stored_wins"
    IDENTICAL = "identical"  # Same version, timestamp and client: a replay


@dataclass(frozen=True)
class ConflictDecision:
    """Resolution plus the field that decided it (for logging)."""

    resolution: Resolution
    decided_by: str  # "absent", "version", "updated_at", "client_id" or "identical"

    @property
    def candidate_wins(self) -> bool:
        return self.resolution is Resolution.CANDIDATE_WINS


def resolve(candidate: RecordVersion, stored: RecordVersion | None) -> ConflictDecision:
    """Decide whether ``candidate`` replaces ``stored``.

    Pure function of the two versions; evaluated per record, never per batch.

    Args:
        candidate: Incoming version (pushed operation or pulled entry)
        stored: Currently stored version, or None if the record is unknown

    Returns:
        ConflictDecision describing the winner
    """
    if stored is None:
        return ConflictDecision(Resolution.CANDIDATE_WINS, "absent")

    if candidate.version != stored.version:
        winner = (
            Resolution.CANDIDATE_WINS
            if candidate.version > stored.version
            else Resolution.STORED_WINS
        )
        return ConflictDecision(winner, "version")

    if candidate.updated_at != stored.updated_at:
        winner = (
            Resolution.CANDIDATE_WINS
            if candidate.updated_at > stored.updated_at
            else Resolution.STORED_WINS
        )
        return ConflictDecision(winner, "updated_at")

    if candidate.client_id != stored.client_id:
        winner = (
            Resolution.CANDIDATE_WINS
            if candidate.client_id > stored.client_id
            else Resolution.STORED_WINS
        )
        return ConflictDecision(winner, "client_id")

    return ConflictDecision(Resolution.IDENTICAL, "identical")


def resolve_records(
    candidate: dict[str, Any],
    stored: dict[str, Any] | None,
) -> ConflictDecision:
    """Convenience wrapper comparing two record dicts."""
    return resolve(
        RecordVersion.from_record(candidate),
        RecordVersion.from_record(stored) if stored is not None else None,
    )


def pick_winner(a: dict[str, Any], b: dict[str, Any]) -> dict[str, Any]:
    """Return whichever of two record dicts wins. Symmetric in its arguments."""
    decision = resolve_records(a, b)
    return a if decision.candidate_wins else b
