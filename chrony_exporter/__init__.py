"""Prometheus exporter for the chrony NTP daemon."""

__version__ = "0.1.0"
