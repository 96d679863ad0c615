"""
rsync-backup: Periodic, change-driven backup of a directory using rsync.

This package decides whether a source tree changed since the last successful
backup, runs rsync when it did, retries transient failures and records the
new state only after rsync completed.
"""

__version__ = "0.1.0"
