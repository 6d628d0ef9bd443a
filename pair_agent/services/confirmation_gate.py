"""
Confirmation Gate - hold planned changes until the user accepts or rejects them

States: EMPTY -> PENDING -> APPLIED | DISCARDED -> EMPTY. This is the only
place that writes to the filesystem.
"""

from __future__ import annotations

from enum import Enum

import structlog

from pair_agent.errors import FileSystemError, NoPendingConfirmationError
from pair_agent.models.modification import (
    ConfirmationResult,
    DeleteOp,
    OperationResult,
    Outcome,
    PendingConfirmation,
    PlannedChange,
)
from pair_agent.services.filesystem import FileSystem

logger = structlog.get_logger(__name__)


class GateState(str, Enum):
    EMPTY = "empty"
    PENDING = "pending"
    APPLIED = "applied"
    DISCARDED = "discarded"


class ConfirmationGate:
    """Single-batch confirmation state machine"""

    def __init__(self, filesystem: FileSystem, unsafe_auto_apply: bool = False):
        self.filesystem = filesystem
        self.unsafe_auto_apply = unsafe_auto_apply
        self._state = GateState.EMPTY
        self._pending: PendingConfirmation | None = None
        self.last_result: ConfirmationResult | None = None

    @property
    def state(self) -> GateState:
        return self._state

    @property
    def pending(self) -> PendingConfirmation | None:
        return self._pending

    def _transition(self, state: GateState) -> None:
        logger.debug("gate_transition", old=self._state.value, new=state.value)
        self._state = state

    def propose(self, changes: list[PlannedChange]) -> PendingConfirmation | ConfirmationResult:
        """Hold `changes` as the pending batch, replacing any unresolved one"""
        if not changes:
            raise ValueError("A confirmation batch needs at least one change")

        batch = PendingConfirmation(changes=changes)
        if self._pending is not None:
            logger.info("batch_replaced", old_batch=self._pending.id, new_batch=batch.id)
        self._pending = batch

        if self.unsafe_auto_apply:
            logger.warning("unsafe_auto_apply", batch=batch.id, changes=len(changes))
            return self._resolve(Outcome.APPLIED)

        self._transition(GateState.PENDING)
        logger.info("batch_pending", batch=batch.id, changes=len(changes), unresolved=len(batch.unresolved))
        return batch

    def apply(self) -> ConfirmationResult:
        """Execute every change in order; failures are reported and do not stop the rest"""
        return self._resolve(Outcome.APPLIED)

    def discard(self) -> ConfirmationResult:
        """Drop the pending batch without touching the filesystem"""
        return self._resolve(Outcome.DISCARDED)

    def _resolve(self, outcome: Outcome) -> ConfirmationResult:
        batch = self._pending
        if batch is None:
            raise NoPendingConfirmationError("No changes are waiting for confirmation")
        self._pending = None

        if outcome is Outcome.APPLIED:
            results = [self._execute(change) for change in batch.changes]
            self._transition(GateState.APPLIED)
        else:
            results = []
            self._transition(GateState.DISCARDED)

        result = ConfirmationResult(batch_id=batch.id, outcome=outcome, results=results)
        self.last_result = result
        logger.info(
            "batch_resolved",
            batch=batch.id,
            outcome=outcome.value,
            succeeded=len(results) - len(result.failures),
            failed=len(result.failures),
        )
        self._transition(GateState.EMPTY)
        return result

    def _execute(self, change: PlannedChange) -> OperationResult:
        op = change.operation
        if not change.resolved or change.diff is None:
            return OperationResult(operation=op, success=False, message=f"not applied: {change.unresolved_reason}")

        diff = change.diff
        try:
            try:
                current = self.filesystem.read(op.path)
            except FileNotFoundError:
                current = None

            if current is None and diff.old_content:
                return self._failed(change, "file no longer exists")
            if current is not None and current != diff.old_content:
                return self._failed(change, "file changed since the diff was built")

            if isinstance(op, DeleteOp):
                self.filesystem.delete(op.path)
                return OperationResult(operation=op, success=True, message=f"deleted {op.path}")

            self.filesystem.write(op.path, diff.new_content)
            verb = "created" if current is None else "updated"
            return OperationResult(operation=op, success=True, message=f"{verb} {op.path}")
        except (FileSystemError, OSError) as e:
            return self._failed(change, str(e))

    def _failed(self, change: PlannedChange, reason: str) -> OperationResult:
        logger.warning("operation_failed", path=change.operation.path, kind=change.operation.kind, reason=reason)
        return OperationResult(operation=change.operation, success=False, message=reason)
