"""Server connectors for SOS Exporter."""

from sos_exporter.connectors.aquarius import AquariusClient
from sos_exporter.connectors.sos import SosClient

__all__ = ["AquariusClient", "SosClient"]
