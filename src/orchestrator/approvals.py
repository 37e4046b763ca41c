"""Approval Gate.

Holds the actions awaiting human sign-off and suspends the turn that asked
for them until a decision arrives.

Rules:
- ``enqueue`` is the only way an approval enters the queue (FIFO order)
- Items may be resolved in any order
- Resolving an id twice reports the first outcome, it never errors
- Discarding is explicit and produces a ``discarded`` outcome per item
- There is no timeout on the human
- Only the most recent resolved outcomes are remembered
"""

import asyncio
from collections import OrderedDict
from typing import Any, Optional, Union

from pydantic import ValidationError

from shared.errors import ApprovalNotFoundError, InvalidApprovalEdit
from shared.logging import get_logger
from shared.models import (
    ApprovalDecision,
    ApprovalOutcome,
    ApprovalStatus,
    PendingApproval,
    ToolInvocation,
)

logger = get_logger(__name__)


class ApprovalGate:
    """Queue of pending approvals for one conversation session."""

    def __init__(self, max_resolved: int = 200) -> None:
        self.max_resolved = max_resolved
        self._queue: dict[str, PendingApproval] = {}
        self._outcomes: OrderedDict[str, ApprovalOutcome] = OrderedDict()
        self._waiters: dict[str, asyncio.Future] = {}
        self._enqueued_invocations: set[str] = set()

    @property
    def pending(self) -> list[PendingApproval]:
        """Pending approvals in creation order."""
        return [approval.model_copy(deep=True) for approval in self._queue.values()]

    def get(self, approval_id: str) -> Optional[PendingApproval]:
        approval = self._queue.get(approval_id)
        return approval.model_copy(deep=True) if approval else None

    def outcome(self, approval_id: str) -> Optional[ApprovalOutcome]:
        outcome = self._outcomes.get(approval_id)
        return outcome.model_copy(deep=True) if outcome else None

    def enqueue(self, invocation: ToolInvocation, description: str) -> PendingApproval:
        """
        Queue an action for human approval.

        Args:
            invocation: The planned action
            description: Human-readable summary shown to the user

        Returns:
            The new pending approval

        Raises:
            ValueError: If this invocation was already queued
        """
        if invocation.id in self._enqueued_invocations:
            raise ValueError(f"Invocation {invocation.id} already has an approval")

        approval = PendingApproval(invocation=invocation, description=description)
        self._queue[approval.id] = approval
        self._enqueued_invocations.add(invocation.id)

        logger.info(
            "Approval requested",
            approval_id=approval.id,
            tool=invocation.tool_name,
            queue_length=len(self._queue),
        )
        return approval.model_copy(deep=True)

    async def wait(self, approval_id: str) -> ApprovalOutcome:
        """Suspend until the approval is resolved or discarded."""
        if approval_id in self._outcomes:
            return self._outcomes[approval_id].model_copy(deep=True)
        if approval_id not in self._queue:
            raise ApprovalNotFoundError(approval_id)

        future = self._waiters.get(approval_id)
        if future is None or future.cancelled():
            future = asyncio.get_running_loop().create_future()
            self._waiters[approval_id] = future
        outcome = await future
        return outcome.model_copy(deep=True)

    def resolve(
        self,
        approval_id: str,
        decision: Union[ApprovalDecision, str],
        parameters: Optional[dict[str, Any]] = None,
        reason: Optional[str] = None
    ) -> ApprovalOutcome:
        """
        Record a human decision.

        Args:
            approval_id: Approval to resolve
            decision: approve, reject or edit
            parameters: Edited parameters, merged over the planned ones
            reason: Optional free-text reason (mostly for rejections)

        Returns:
            The outcome; the first outcome again if already resolved

        Raises:
            ApprovalNotFoundError: If the id was never enqueued here
            InvalidApprovalEdit: If edited parameters do not validate
        """
        previous = self._outcomes.get(approval_id)
        if previous is not None:
            logger.info(
                "Approval already resolved",
                approval_id=approval_id,
                status=previous.status.value,
            )
            return previous.model_copy(deep=True)

        approval = self._queue.get(approval_id)
        if approval is None:
            raise ApprovalNotFoundError(approval_id)

        decision = ApprovalDecision(decision)
        invocation = approval.invocation

        if decision == ApprovalDecision.REJECT:
            status = ApprovalStatus.REJECTED
        else:
            if decision == ApprovalDecision.EDIT and not parameters:
                raise InvalidApprovalEdit(approval_id, ["an edit needs the changed parameters"])
            if parameters:
                invocation = self._apply_edit(approval, parameters)
            status = ApprovalStatus.APPROVED

        outcome = ApprovalOutcome(
            approval_id=approval_id,
            status=status,
            invocation=invocation,
            reason=reason,
        )
        self._finish(approval_id, outcome)

        logger.info(
            "Approval resolved",
            approval_id=approval_id,
            tool=invocation.tool_name,
            status=status.value,
            edited=bool(parameters) and status == ApprovalStatus.APPROVED,
        )
        return outcome.model_copy(deep=True)

    def discard_all(self, reason: str = "conversation cleared") -> list[PendingApproval]:
        """
        Drop every pending approval.

        Waiters are woken with a ``discarded`` outcome; nothing is approved or
        rejected on the user's behalf.

        Returns:
            The discarded approvals, with their final status
        """
        discarded = []
        for approval_id, approval in list(self._queue.items()):
            outcome = ApprovalOutcome(
                approval_id=approval_id,
                status=ApprovalStatus.DISCARDED,
                invocation=approval.invocation,
                reason=reason,
            )
            discarded.append(approval.model_copy(update={
                "status": ApprovalStatus.DISCARDED,
                "resolved_at": outcome.resolved_at,
                "reason": reason,
            }, deep=True))
            self._finish(approval_id, outcome)

        if discarded:
            logger.info("Approvals discarded", count=len(discarded), reason=reason)
        return discarded

    def _finish(self, approval_id: str, outcome: ApprovalOutcome) -> None:
        del self._queue[approval_id]
        self._outcomes[approval_id] = outcome
        while len(self._outcomes) > self.max_resolved:
            _, oldest = self._outcomes.popitem(last=False)
            self._enqueued_invocations.discard(oldest.invocation.id)

        future = self._waiters.pop(approval_id, None)
        if future is not None and not future.done():
            future.set_result(outcome)

    @staticmethod
    def _apply_edit(approval: PendingApproval, edits: dict[str, Any]) -> ToolInvocation:
        """Validate edited parameters and build the invocation to execute."""
        if "tool" in edits and edits["tool"] != approval.invocation.tool_name:
            raise InvalidApprovalEdit(approval.id, ["the tool itself cannot be changed"])

        record = type(approval.invocation.parameters)
        merged = {**approval.invocation.arguments(), **edits}
        try:
            parameters = record.model_validate(merged)
        except ValidationError as e:
            raise InvalidApprovalEdit(
                approval.id,
                [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
            )

        return approval.invocation.model_copy(update={"parameters": parameters})
