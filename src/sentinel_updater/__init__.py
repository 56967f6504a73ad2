"""
SentinelGo Updater - companion service that keeps the sentinel agent current.

This package locates the installed agent binary, compares it against the
latest published version, and performs a transactional, rollback-capable
upgrade through the host's native service manager.
"""

__version__ = "0.1.0"
