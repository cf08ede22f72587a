"""Mutation Coordinator and its saga machinery."""

from .coordinator import (
    ExpiryScheduler,
    MutationCoordinator,
    MutationResult,
    Outcome,
    RouteStatus,
    build_coordinator,
)
from .saga import LogEntry, Saga, SagaState, TransactionLog

__all__ = [
    "MutationCoordinator",
    "MutationResult",
    "Outcome",
    "RouteStatus",
    "ExpiryScheduler",
    "build_coordinator",
    "Saga",
    "SagaState",
    "TransactionLog",
    "LogEntry",
]
