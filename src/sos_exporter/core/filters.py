"""
Export filters.

- Include/exclude evaluation shared by every filter list
- Validation of approval, grade, qualifier and location filters against
  the source server's configuration
- Time-series identifier filtering
- Point filtering by approval level, grade code and qualifier
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Callable, Iterable, Sequence, TypeVar

from sos_exporter.config import (
    ApprovalFilter,
    Comparison,
    FilterConfig,
    FilterItem,
    GradeFilter,
    QualifierFilter,
    TimeSeriesFilter,
)
from sos_exporter.connectors.aquarius import AquariusClient
from sos_exporter.exceptions import ExpectedError
from sos_exporter.models import MetadataRange, Signal, TimeSeriesDescription
from sos_exporter.utils.logger import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=FilterItem)
R = TypeVar("R", bound=MetadataRange)


def is_filtered(filters: Sequence[F], matches: Callable[[F], bool]) -> bool:
    """
    True when an item should be dropped.

    An item is dropped if it matches any exclude filter, or if include
    filters exist and it matches none of them.
    """
    includes = [f for f in filters if not f.exclude]
    excludes = [f for f in filters if f.exclude]

    if any(matches(f) for f in excludes):
        return True

    return bool(includes) and not any(matches(f) for f in includes)


def compare(value: int | None, comparison: Comparison, target: int | None) -> bool:
    if value is None or target is None:
        return False
    if comparison == Comparison.LESS_THAN:
        return value < target
    if comparison == Comparison.LESS_THAN_EQUAL:
        return value <= target
    if comparison == Comparison.GREATER_THAN_EQUAL:
        return value >= target
    if comparison == Comparison.GREATER_THAN:
        return value > target
    return value == target


def filter_time_series(
    descriptions: list[TimeSeriesDescription],
    filters: list[TimeSeriesFilter],
) -> list[TimeSeriesDescription]:
    """Apply identifier regex filters, preserving order."""
    if not filters:
        return descriptions

    patterns: dict[str, re.Pattern[str]] = {}
    for f in filters:
        try:
            patterns[f.text] = re.compile(f.text, re.IGNORECASE)
        except re.error as e:
            raise ExpectedError(f"Invalid time-series filter '{f.text}': {e}") from e

    return [
        d for d in descriptions
        if not is_filtered(filters, lambda f: patterns[f.text].search(d.identifier) is not None)
    ]


def _range_at(ranges: Iterable[R], timestamp: datetime) -> R | None:
    for item in ranges:
        if item.contains(timestamp):
            return item
    return None


class PointFilter:
    """
    Drops points whose approval, grade or qualifiers are filtered out.

    Filters must already be validated so that approval levels and grade
    codes are resolved.
    """

    def __init__(self, filters: FilterConfig) -> None:
        self.approvals = filters.approvals
        self.grades = filters.grades
        self.qualifiers = filters.qualifiers

    @property
    def enabled(self) -> bool:
        return bool(self.approvals or self.grades or self.qualifiers)

    def filter_signal(self, signal: Signal) -> tuple[Signal, int]:
        """
        Returns:
            The filtered signal and the number of points removed
        """
        if not self.enabled or not signal.points:
            return signal, 0

        remaining = [
            p for p in signal.points
            if not self._is_point_filtered(signal, p.timestamp)
        ]
        return signal.with_points(remaining), signal.num_points - len(remaining)

    def _is_point_filtered(self, signal: Signal, timestamp: datetime) -> bool:
        if self.approvals:
            approval = _range_at(signal.approvals, timestamp)
            level = approval.approval_level if approval else None
            if is_filtered(self.approvals, lambda f: compare(level, f.comparison, f.approval_level)):
                return True

        if self.grades:
            grade = _range_at(signal.grades, timestamp)
            code = grade.grade_code if grade else None
            if is_filtered(self.grades, lambda f: compare(code, f.comparison, f.grade_code)):
                return True

        if self.qualifiers:
            identifiers = {q.identifier.lower() for q in signal.qualifiers if q.contains(timestamp)}
            if is_filtered(self.qualifiers, lambda f: f.text.lower() in identifiers):
                return True

        return False


class FilterResolver:
    """
    Validates configured filters against the source server.

    Human-readable names are resolved to canonical identifiers in place.
    Unknown names raise ExpectedError before anything is exported.
    """

    def __init__(self, aquarius: AquariusClient, filters: FilterConfig) -> None:
        self.aquarius = aquarius
        self.filters = filters

    def validate(self) -> None:
        self.validate_approvals(self.filters.approvals)
        self.validate_grades(self.filters.grades)
        self.validate_qualifiers(self.filters.qualifiers)

    def validate_approvals(self, approval_filters: list[ApprovalFilter]) -> None:
        if not approval_filters:
            return

        logger.info("Fetching approval configuration ...")
        approvals = self.aquarius.get_approvals()

        for approval_filter in approval_filters:
            metadata = _single_match(
                approvals, approval_filter.text, ("DisplayName", "Identifier")
            )
            if metadata is None:
                raise ExpectedError(f"Unknown approval '{approval_filter.text}'")

            approval_filter.text = metadata["DisplayName"]
            approval_filter.approval_level = int(metadata["Identifier"])

    def validate_grades(self, grade_filters: list[GradeFilter]) -> None:
        if not grade_filters:
            return

        logger.info("Fetching grade configuration ...")
        grades = self.aquarius.get_grades()

        for grade_filter in grade_filters:
            metadata = _single_match(grades, grade_filter.text, ("DisplayName", "Identifier"))
            if metadata is None:
                raise ExpectedError(f"Unknown grade '{grade_filter.text}'")

            grade_filter.text = metadata["DisplayName"]
            grade_filter.grade_code = int(metadata["Identifier"])

    def validate_qualifiers(self, qualifier_filters: list[QualifierFilter]) -> None:
        if not qualifier_filters:
            return

        logger.info("Fetching qualifier configuration ...")
        qualifiers = self.aquarius.get_qualifiers()

        for qualifier_filter in qualifier_filters:
            metadata = _single_match(qualifiers, qualifier_filter.text, ("Identifier", "Code"))
            if metadata is None:
                raise ExpectedError(f"Unknown qualifier '{qualifier_filter.text}'")

            qualifier_filter.text = metadata["Identifier"]

    def resolve_location_identifier(self) -> str | None:
        """Canonical identifier of the configured location filter."""
        location_identifier = self.filters.location_identifier
        if not location_identifier:
            return None

        descriptions = self.aquarius.get_location_descriptions(location_identifier)
        if len(descriptions) != 1:
            raise ExpectedError(f"Location '{location_identifier}' does not exist.")

        return descriptions[0].identifier


def _single_match(items: list[dict], text: str, keys: tuple[str, ...]) -> dict | None:
    """The one item whose keys case-insensitively equal text, if exactly one exists."""
    wanted = text.lower()
    matches = [
        item for item in items
        if any(str(item.get(key, "")).lower() == wanted for key in keys)
    ]
    return matches[0] if len(matches) == 1 else None
