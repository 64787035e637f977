"""Utility modules for SOS Exporter."""

from sos_exporter.utils.logger import setup_logging, get_logger

__all__ = ["setup_logging", "get_logger"]
