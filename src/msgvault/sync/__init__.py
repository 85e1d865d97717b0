"""Sync module for batching, transmission and durable sync state."""

from msgvault.sync.batching import Batcher
from msgvault.sync.retry import BackoffPolicy
from msgvault.sync.state import SyncStateStore
from msgvault.sync.transmitter import Transmitter

__all__ = ["BackoffPolicy", "Batcher", "SyncStateStore", "Transmitter"]
