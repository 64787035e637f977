"""
Observation Chunker - Size-aware observation batching.

Splits a signal's points into InsertObservation batches so that no single
request exceeds the configured observation count.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

from sos_exporter.models import TimePoint


@dataclass
class ObservationChunk:
    """A batch of points ready for one InsertObservation request."""

    points: list[TimePoint]
    start_offset: int
    end_offset: int

    @property
    def point_count(self) -> int:
        return len(self.points)


class ObservationChunker:
    """
    Observation batch builder.

    Points without a value are skipped since the SOS cannot store a
    measurement without a result.

    Example:
        chunker = ObservationChunker(max_observations=1000)

        for chunk in chunker.chunk_points(signal.points):
            sos.post_observations(offering, chunk.points)
    """

    def __init__(self, max_observations: int) -> None:
        if max_observations < 1:
            raise ValueError("max_observations must be positive")
        self.max_observations = max_observations

    def chunk_points(
        self,
        points: list[TimePoint],
        start_offset: int = 0,
    ) -> Iterator[ObservationChunk]:
        """
        Split points into chunks of at most max_observations.

        Args:
            points: Time-ordered points
            start_offset: Offset of the first point (for progress reporting)

        Yields:
            ObservationChunk objects
        """
        current: list[TimePoint] = []
        chunk_start = start_offset

        for i, point in enumerate(points):
            if point.value is None:
                continue
            if not current:
                chunk_start = start_offset + i
            current.append(point)

            if len(current) >= self.max_observations:
                yield ObservationChunk(current, chunk_start, start_offset + i + 1)
                current = []

        if current:
            yield ObservationChunk(current, chunk_start, start_offset + len(points))
