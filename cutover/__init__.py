"""Zero-downtime, symlink-based release orchestrator."""

__version__ = "0.1.0"
