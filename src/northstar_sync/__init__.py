"""
Northstar Sync - offline-first synchronization engine for notes and groups.
This package keeps a durable local store of notes organized into groups, queues
every local mutation, and reconciles the store with a shared remote backend
used by the same owner from several devices.

This version uses synchronous operations with a single background sync worker.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("northstar-sync")
except PackageNotFoundError:
    __version__ = "0.3.0"
