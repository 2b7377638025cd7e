"""Migrate legacy MASP data-ref events in CometBFT state stores to MASP events."""

__version__ = "0.1.0"