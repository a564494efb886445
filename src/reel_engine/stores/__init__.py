"""Store contracts and their Redis, SQL and in-memory implementations."""

from reel_engine.stores.interfaces import (
    JobRecordStore,
    ProgressCache,
    ProgressSnapshot,
    QueueEntry,
    SubjectDirectory,
    SubjectRef,
    WorkQueue,
    merge_artifacts,
)

__all__ = [
    "JobRecordStore",
    "ProgressCache",
    "ProgressSnapshot",
    "QueueEntry",
    "SubjectDirectory",
    "SubjectRef",
    "WorkQueue",
    "merge_artifacts",
]
