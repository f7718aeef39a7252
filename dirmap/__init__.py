"""dirmap - incremental directory-structure snapshots for AI assistants."""

__version__ = "1.0.0"
