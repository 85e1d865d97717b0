"""Engine module - sync pipeline, run-lock and cycle scheduling."""

from msgvault.engine.lock import RunLock
from msgvault.engine.pipeline import CheckpointTracker, SyncPipeline
from msgvault.engine.scheduler import SyncScheduler

__all__ = ["CheckpointTracker", "RunLock", "SyncPipeline", "SyncScheduler"]
