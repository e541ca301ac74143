"""Mission Control backend: audit trail, live stream and agent control API."""

__version__ = "1.0.0"
