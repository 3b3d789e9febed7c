"""
Local state snapshots and their transport.

This package defines the snapshot schema, the two local store
interfaces, the (de)serializer and the S3 upload orchestrator.
"""

from .models import ChunkedEnvelope, ChunkedValue, Snapshot, SnapshotMetadata

__all__ = ["ChunkedEnvelope", "ChunkedValue", "Snapshot", "SnapshotMetadata"]
