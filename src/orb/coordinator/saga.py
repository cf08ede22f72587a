"""Compensating-transaction bookkeeping for one coordinator call."""

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..common.exceptions import CompensationFailure, StepFailure
from ..common.logging import get_logger

logger = get_logger(__name__)


class SagaState(str, Enum):
    """Progress of a mutation through its steps."""

    IDLE = "idle"
    LOCK_HELD = "lock_held"
    ROUTE_APPLIED = "route_applied"
    DNS_APPLIED = "dns_applied"
    POLICY_APPLIED = "policy_applied"
    SERVICE_RESTARTED = "service_restarted"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"
    FAILED_DIRTY = "failed_dirty"


@dataclass
class LogEntry:
    """One applied step and how to undo it."""

    step: str
    system: str
    prior_state: Any
    compensate: Callable[[], Any]


@dataclass
class TransactionLog:
    """LIFO stack of compensations; never persisted."""

    entries: list[LogEntry] = field(default_factory=list)

    def push(self, entry: LogEntry) -> None:
        self.entries.append(entry)

    def pop(self) -> LogEntry:
        return self.entries.pop()

    def clear(self) -> None:
        self.entries.clear()

    def __len__(self) -> int:
        return len(self.entries)


class StepContext:
    """Handle passed to the body of :meth:`Saga.step`."""

    def __init__(self, saga: "Saga", name: str):
        self._saga = saga
        self.name = name

    def compensate(
        self, undo: Callable[[], Any], system: str, prior_state: Any = None
    ) -> None:
        """Register the undo for this step; it runs if any later step fails."""
        self._saga.log.push(LogEntry(self.name, system, prior_state, undo))


class Saga:
    """Runs steps in order and unwinds applied ones on failure.

    Example:
        saga = Saga("expose")
        with saga.step("route", SagaState.ROUTE_APPLIED) as step:
            store.save(new_routes)
            step.compensate(lambda: store.restore(snapshot), "route file")
        saga.commit()
    """

    def __init__(self, operation: str):
        self.operation = operation
        self.state = SagaState.IDLE
        self.log = TransactionLog()
        self.reverted: list[str] = []
        self._log = logger.bind(operation=operation)

    def transition(self, state: SagaState) -> None:
        self._log.debug("Saga state change", previous=self.state.value, state=state.value)
        self.state = state

    @contextmanager
    def step(self, name: str, applied_state: SagaState | None = None) -> Iterator[StepContext]:
        """Run a step body; on error roll back and raise.

        Interrupts such as KeyboardInterrupt also roll back, then propagate
        unchanged.

        Raises:
            StepFailure: The step failed and every undo succeeded
            CompensationFailure: The step failed and some undo also failed
        """
        context = StepContext(self, name)
        self._log.debug("Saga step starting", step=name)
        try:
            yield context
        except BaseException as e:
            self._log.error("Saga step failed", step=name, error=str(e))
            self.rollback(name, e)
        if applied_state is not None:
            self.transition(applied_state)

    def rollback(self, failed_step: str, cause: BaseException) -> None:
        """Undo every logged step in reverse order, then raise."""
        self.transition(SagaState.ROLLING_BACK)
        unreverted: dict[str, str] = {}
        self.reverted = []

        while self.log:
            entry = self.log.pop()
            try:
                entry.compensate()
            except Exception as e:
                # Not retried; reported for manual follow-up.
                self._log.error(
                    "Compensation failed", step=entry.step, system=entry.system, error=str(e)
                )
                unreverted[entry.system] = str(e)
            else:
                self._log.info("Compensated", step=entry.step, system=entry.system)
                self.reverted.append(entry.system)

        if not isinstance(cause, Exception):
            self.transition(SagaState.FAILED_DIRTY if unreverted else SagaState.FAILED)
            if unreverted:
                self._log.error("Rollback incomplete", step=failed_step, unreverted=unreverted)
            raise cause

        if unreverted:
            self.transition(SagaState.FAILED_DIRTY)
            raise CompensationFailure(
                self.operation, failed_step, cause, unreverted, self.reverted
            ) from cause

        self.transition(SagaState.FAILED)
        raise StepFailure(self.operation, failed_step, cause, self.reverted) from cause

    def commit(self) -> None:
        """Forget all compensations; the change is final."""
        self.log.clear()
        self.transition(SagaState.COMMITTED)
        self._log.debug("Saga committed")
