"""Lookout - live presence registry for monitored machines."""

__version__ = "0.1.0"
