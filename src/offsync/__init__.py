"""offsync - offline-first sync engine for field clients."""

__version__ = "1.0.0"
