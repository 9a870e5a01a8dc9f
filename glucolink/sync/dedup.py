"""Deduplication logic for glucose reading ingestion.

A reading's identity is its whole-second timestamp (``Reading.epoch_second``),
never its id.  The same key decides which fetched readings are new, groups
stored duplicates for repair and detects in-batch collisions.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable

from glucolink.libreview.base import Reading

logger = logging.getLogger("glucolink.sync.dedup")


@dataclass(frozen=True)
class DedupeReport:
    """Outcome of a store repair pass."""

    survivor_count: int
    removed_count: int


@dataclass(frozen=True)
class DuplicateDiagnosis:
    """Read-only summary of duplicate timestamps in the store.

    Attributes:
        total_readings:    Rows currently stored.
        unique_timestamps: Distinct timestamp seconds.
        duplicate_groups:  Seconds held by more than one row.
        duplicate_rows:    Rows that a repair pass would delete.
        examples:          Up to ten ``(second, count)`` pairs, largest first.
    """

    total_readings: int
    unique_timestamps: int
    duplicate_groups: int
    duplicate_rows: int
    examples: list[tuple[int, int]] = field(default_factory=list)


def nudge_collisions(readings: Iterable[Reading], step_seconds: int = 1) -> list[Reading]:
    """Separate readings that collide on the same second within one batch.

    The first reading at a given second is kept as-is; the n-th later one is
    moved forward by ``n * step_seconds``.  A nudged timestamp that lands on an
    occupied second keeps moving forward until it is unique, so the returned
    batch never holds two readings within the same second.

    Args:
        readings:     Batch in arrival order.
        step_seconds: Offset per occurrence.

    Returns:
        New list in the same order with collisions resolved.
    """
    batch = list(readings)
    occupied = {r.epoch_second for r in batch}
    seen: set[int] = set()
    occurrences: dict[int, int] = defaultdict(int)
    result: list[Reading] = []

    for reading in batch:
        second = reading.epoch_second
        if second not in seen:
            seen.add(second)
            result.append(reading)
            continue

        occurrences[second] += 1
        offset = occurrences[second] * step_seconds
        nudged = reading.shifted(offset)
        while nudged.epoch_second in seen or nudged.epoch_second in occupied:
            nudged = nudged.shifted(step_seconds)
        seen.add(nudged.epoch_second)
        logger.debug(
            "Nudged colliding reading %s by %ss", reading.id,
            (nudged.timestamp - reading.timestamp).total_seconds(),
        )
        result.append(nudged)

    return result


def new_readings(fetched: Iterable[Reading], existing_keys: set[int]) -> list[Reading]:
    """Return the fetched readings whose timestamp second is not yet stored.

    Args:
        fetched:       Readings from the upstream window.
        existing_keys: ``epoch_second`` of every persisted reading.

    Returns:
        Readings absent from the store, in input order.
    """
    return [r for r in fetched if r.epoch_second not in existing_keys]


def group_by_second(readings: Iterable[Reading]) -> dict[int, list[Reading]]:
    """Group readings by whole-second timestamp, preserving input order."""
    groups: dict[int, list[Reading]] = defaultdict(list)
    for reading in readings:
        groups[reading.epoch_second].append(reading)
    return dict(groups)
