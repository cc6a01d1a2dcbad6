"""Consistency and durability: transactions, sagas and checkpoints."""

from .checkpoints import (
    Checkpoint,
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
)
from .transactions import (
    IsolationLevel,
    SagaContext,
    SagaResult,
    SagaStatus,
    SagaStepDefinition,
    StepStatus,
    TransactionContext,
    TransactionManager,
    TransactionStatus,
)

__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
    "IsolationLevel",
    "SagaContext",
    "SagaResult",
    "SagaStatus",
    "SagaStepDefinition",
    "StepStatus",
    "TransactionContext",
    "TransactionManager",
    "TransactionStatus",
]
