"""Errors raised by the venue deduplication engine.

Only genuine failures are exceptions. Expected outcomes (no authoritative
name, a rename that would collide, an exclusion that already exists) are
returned as values by the component that produces them.
"""

from __future__ import annotations

from typing import Optional


class DedupError(Exception):
    """Base class for deduplication engine errors."""


class VenueNotFoundError(DedupError):
    """A referenced venue does not exist."""

    def __init__(self, venue_id: int, role: str = "venue"):
        self.venue_id = venue_id
        self.role = role
        label = "Venue" if role == "venue" else f"{role.capitalize()} venue"
        super().__init__(f"{label} {venue_id} not found")


class SourceNotFoundError(VenueNotFoundError):
    """The source of a merge does not exist."""

    def __init__(self, venue_id: int):
        super().__init__(venue_id, role="source")


class MergeConflictError(SourceNotFoundError):
    """The merge source was already consumed by another merge."""

    def __init__(self, venue_id: int, merged_into: Optional[int] = None):
        super().__init__(venue_id)
        self.merged_into = merged_into
        self.args = (
            f"Source venue {venue_id} was already merged"
            + (f" into {merged_into}" if merged_into is not None else ""),
        )


class InvalidPairError(DedupError, ValueError):
    """Both sides of a pair refer to the same venue."""

    def __init__(self, venue_id: int, operation: str):
        self.venue_id = venue_id
        self.operation = operation
        super().__init__(f"Cannot {operation} venue {venue_id} with itself")
