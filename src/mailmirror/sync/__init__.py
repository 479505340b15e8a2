"""Synchronization: conflict resolution, sync cycles and scheduling."""

from mailmirror.sync.engine import CycleReport, SyncEngine
from mailmirror.sync.resolver import Resolution, ResolvedState, resolve
from mailmirror.sync.scheduler import SyncScheduler
from mailmirror.sync.undo import UndoableEdit, UndoHistory

__all__ = [
    "CycleReport",
    "Resolution",
    "ResolvedState",
    "SyncEngine",
    "SyncScheduler",
    "UndoHistory",
    "UndoableEdit",
    "resolve",
]
