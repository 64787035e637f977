"""Per-run memoization of location metadata."""

from __future__ import annotations

from sos_exporter.connectors.aquarius import AquariusClient
from sos_exporter.exceptions import ExpectedError
from sos_exporter.models import LocationInfo


class LocationCache:
    """
    Location description and data, fetched once per location per run.

    Owned by the run and discarded with it, so entries are never invalidated.
    """

    def __init__(self, aquarius: AquariusClient) -> None:
        self.aquarius = aquarius
        self._entries: dict[str, LocationInfo] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, location_identifier: object) -> bool:
        return location_identifier in self._entries

    def get(self, location_identifier: str) -> LocationInfo:
        cached = self._entries.get(location_identifier)
        if cached is not None:
            return cached

        descriptions = self.aquarius.get_location_descriptions(location_identifier)
        if len(descriptions) != 1:
            raise ExpectedError(
                f"Expected one location '{location_identifier}' but found {len(descriptions)}"
            )

        info = LocationInfo(
            description=descriptions[0],
            data=self.aquarius.get_location_data(location_identifier),
        )
        self._entries[location_identifier] = info
        return info
