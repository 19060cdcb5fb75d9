"""Koordi: shared activity calendars with owners, travel windows and per-user mirrors."""

__version__ = "0.1.0"
