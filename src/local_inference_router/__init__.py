"""Local inference router: route, size and stream chat turns to a local model."""

__version__ = "0.1.0"
