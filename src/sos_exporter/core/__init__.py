"""Core export engine components for SOS Exporter.

Import components from their modules; the connectors depend on this
package, so nothing is re-exported here.
"""
