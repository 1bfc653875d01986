"""Approval gate for commands and file edits awaiting a human decision."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Protocol

from termpilot.agent.diff import FileDiff
from termpilot.agent.models import FileChange
from termpilot.shell.classifier import ApprovalPolicy, should_auto_approve

LOGGER = logging.getLogger(__name__)

ApprovalKind = Literal["command", "file_edit"]


class Notifier(Protocol):
    def notify(self, message: str) -> None: ...


class LoggingNotifier:
    """Default notifier that only writes to the log."""

    def notify(self, message: str) -> None:
        LOGGER.info("approval_notification", extra={"notification": message})


class ApprovalState(str, Enum):
    PROPOSED = "proposed"
    AUTO_APPROVED = "auto_approved"
    AWAITING_DECISION = "awaiting_decision"
    APPROVED = "approved"
    PARTIALLY_APPROVED = "partially_approved"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


@dataclass(frozen=True, slots=True)
class ApprovalDecision:
    """Outcome of an approval request; ``hunk_ids`` of ``None`` means every hunk."""

    approved: bool
    hunk_ids: frozenset[int] | None = None
    reason: str | None = None
    withdrawn: bool = False

    @property
    def partial(self) -> bool:
        return self.approved and self.hunk_ids is not None


@dataclass(slots=True)
class PendingApproval:
    id: int
    kind: ApprovalKind
    payload: str | FileChange
    requested_at: datetime
    state: ApprovalState = ApprovalState.PROPOSED
    decision: ApprovalDecision | None = None
    diff: FileDiff | None = None
    consumed: bool = False
    _future: asyncio.Future[ApprovalDecision] | None = field(default=None, repr=False)

    @property
    def summary(self) -> str:
        if isinstance(self.payload, FileChange):
            change = self.payload
            diff_summary = f" ({self.diff.summary})" if self.diff else ""
            return f"{change.operation_type.value} {change.file_path}{diff_summary}"
        return self.payload


RequestCallback = Callable[[PendingApproval], None]


class ApprovalGate:
    """Decides per action whether it proceeds now or waits for a decision.

    Waiting requests suspend only the coroutine that asked; decisions may be
    delivered from any other task on the same event loop.
    """

    def __init__(
        self,
        policy: ApprovalPolicy,
        *,
        require_file_edit_approval: bool = False,
        notifier: Notifier | None = None,
        on_request: RequestCallback | None = None,
    ) -> None:
        self.policy = policy
        self.require_file_edit_approval = require_file_edit_approval
        self.notifier = notifier or LoggingNotifier()
        self.on_request = on_request
        self.history: list[PendingApproval] = []
        self._pending: dict[int, PendingApproval] = {}
        self._ids = itertools.count(1)

    def needs_command_approval(self, command: str) -> bool:
        return not should_auto_approve(command, self.policy)

    def needs_file_approval(self, change: FileChange) -> bool:
        return change.operation_type.is_destructive or self.require_file_edit_approval

    async def request_command(self, command: str) -> ApprovalDecision:
        request = self._propose("command", command)
        if not self.needs_command_approval(command):
            return self._auto_approve(request)
        return await self._await_decision(request)

    async def request_file_edit(self, change: FileChange, diff: FileDiff) -> ApprovalDecision:
        request = self._propose("file_edit", change, diff=diff)
        if not self.needs_file_approval(change):
            return self._auto_approve(request)
        return await self._await_decision(request)

    def outstanding(self) -> list[PendingApproval]:
        return list(self._pending.values())

    def approve(self, request_id: int) -> bool:
        return self._resolve(request_id, ApprovalState.APPROVED, ApprovalDecision(approved=True))

    def approve_partial(self, request_id: int, hunk_ids: Iterable[int]) -> bool:
        decision = ApprovalDecision(approved=True, hunk_ids=frozenset(hunk_ids))
        return self._resolve(request_id, ApprovalState.PARTIALLY_APPROVED, decision)

    def reject(self, request_id: int, reason: str | None = None) -> bool:
        decision = ApprovalDecision(approved=False, reason=reason or "Rejected by user.")
        return self._resolve(request_id, ApprovalState.REJECTED, decision)

    def withdraw_all(self) -> int:
        """Cancel every outstanding request; returns how many were withdrawn."""
        decision = ApprovalDecision(approved=False, reason="Run cancelled.", withdrawn=True)
        withdrawn = 0
        for request_id in list(self._pending):
            if self._resolve(request_id, ApprovalState.WITHDRAWN, decision):
                withdrawn += 1
        return withdrawn

    def _propose(
        self, kind: ApprovalKind, payload: str | FileChange, *, diff: FileDiff | None = None
    ) -> PendingApproval:
        request = PendingApproval(
            id=next(self._ids),
            kind=kind,
            payload=payload,
            requested_at=datetime.now(timezone.utc),
            diff=diff,
        )
        self.history.append(request)
        return request

    def _auto_approve(self, request: PendingApproval) -> ApprovalDecision:
        decision = ApprovalDecision(approved=True)
        request.state = ApprovalState.AUTO_APPROVED
        request.decision = decision
        request.consumed = True
        LOGGER.debug(
            "approval_auto_approved",
            extra={"approval_id": request.id, "kind": request.kind},
        )
        return decision

    async def _await_decision(self, request: PendingApproval) -> ApprovalDecision:
        future: asyncio.Future[ApprovalDecision] = asyncio.get_running_loop().create_future()
        request._future = future
        request.state = ApprovalState.AWAITING_DECISION
        self._pending[request.id] = request
        LOGGER.info(
            "approval_requested",
            extra={"approval_id": request.id, "kind": request.kind, "summary": request.summary},
        )
        self.notifier.notify(f"Approval needed: {request.summary}")
        try:
            if self.on_request is not None:
                self.on_request(request)
            decision = await future
        finally:
            self._pending.pop(request.id, None)
            request._future = None
        request.consumed = True
        return decision

    def _resolve(self, request_id: int, state: ApprovalState, decision: ApprovalDecision) -> bool:
        request = self._pending.get(request_id)
        if request is None or request._future is None or request._future.done():
            return False
        request.state = state
        request.decision = decision
        request._future.set_result(decision)
        LOGGER.info(
            "approval_resolved",
            extra={"approval_id": request_id, "state": state.value},
        )
        return True
