"""SOS Exporter - AQUARIUS time-series to 52°North SOS synchronization tool."""

__version__ = "1.0.0"
__author__ = "SOS Exporter Contributors"

from sos_exporter.config import ComputationPeriod, Settings

__all__ = ["ComputationPeriod", "Settings", "__version__"]
