"""Runtime collaborators: step runners, status publishers, cleanup scopes."""
from nodeflow.runtime.cleanup import CleanupScope
from nodeflow.runtime.contracts import (
    ExecutorInput,
    NodeStatus,
    StatusPublisher,
    StepRunner,
)
from nodeflow.runtime.publisher import NullStatusPublisher, RedisStatusPublisher
from nodeflow.runtime.steps import (
    CheckpointedStepRunner,
    InlineStepRunner,
    InMemoryCheckpointStore,
    RedisCheckpointStore,
)

__all__ = [
    "CheckpointedStepRunner",
    "CleanupScope",
    "ExecutorInput",
    "InlineStepRunner",
    "InMemoryCheckpointStore",
    "NodeStatus",
    "NullStatusPublisher",
    "RedisCheckpointStore",
    "RedisStatusPublisher",
    "StatusPublisher",
    "StepRunner",
]
