# dirmap/services/errors.py
"""Exceptions raised inside the generation pipeline.

Most of them never leave their module: callers convert them into the
pessimistic fallback (full rescan, skipped path) and log a warning.
"""


class DirmapError(Exception):
    """Base exception for dirmap"""
    pass


class ConfigError(DirmapError):
    """Startup configuration cannot be used"""
    pass


class StructureScanError(DirmapError):
    """Project root cannot be walked"""
    pass


class GitUnavailableError(DirmapError):
    """git binary missing or path is not inside a repository"""
    pass


class GitDiffError(DirmapError):
    """History diff between two references failed"""
    def __init__(self, message: str, old_ref: str = "", new_ref: str = ""):
        super().__init__(message)
        self.old_ref = old_ref
        self.new_ref = new_ref
