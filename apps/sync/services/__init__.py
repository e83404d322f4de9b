"""
Sync service layer.

Views stay thin; the push applier, pull streamer and conflict registry hold
the synchronization rules.
"""
from .conflicts import ConflictFilter, ConflictRegistry, Resolution
from .pull import PullResult, PullStreamer, resolve_limits
from .push import ChangeEntry, ChangeResult, PushApplier

__all__ = [
    "ChangeEntry",
    "ChangeResult",
    "ConflictFilter",
    "ConflictRegistry",
    "PullResult",
    "PullStreamer",
    "PushApplier",
    "Resolution",
    "resolve_limits",
]
