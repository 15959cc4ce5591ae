"""Core components of vcshub: registry, ledger, locks and garbage collection."""

from vcshub.core.gc import GarbageCollector
from vcshub.core.ledger import CommitLedger, apply_file_changes
from vcshub.core.locks import LockCoordinator, find_lock_conflicts
from vcshub.core.registry import ProjectRegistry
from vcshub.core.service import Dependencies, VCSCore

__all__ = [
    "GarbageCollector",
    "CommitLedger",
    "apply_file_changes",
    "LockCoordinator",
    "find_lock_conflicts",
    "ProjectRegistry",
    "Dependencies",
    "VCSCore",
]
