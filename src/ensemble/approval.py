from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Literal

from ensemble.config import ApprovalConfig
from ensemble.models import TaskNode

logger = logging.getLogger(__name__)

ApprovalState = Literal["approved", "pending_approval", "rejected"]
Operator = Callable[[TaskNode], bool | Awaitable[bool]]


class ApprovalGate:
    """Holds flagged tasks until an operator approves or rejects them.

    A task is gated when it sets ``requires_approval``, its role or one of its tags is in the
    configured policy, or the optional predicate returns True. Everything else passes straight
    through. Decisions are final: a rejected task never runs.
    """

    def __init__(
        self,
        roles: Iterable[str] = (),
        tags: Iterable[str] = (),
        predicate: Callable[[TaskNode], bool] | None = None,
        operator: Operator | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.roles = set(roles)
        self.tags = set(tags)
        self.predicate = predicate
        self.operator = operator
        self.event_hook = event_hook
        self.on_decision: Callable[[str, bool], None] | None = None
        # Set when an operator's decision could not be recorded; the scheduler re-raises it.
        self.failure: Exception | None = None
        self._pending: dict[str, TaskNode] = {}
        self._decisions: dict[str, bool] = {}
        self._asking: dict[str, asyncio.Task[None]] = {}
        self._operator_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: ApprovalConfig, **kwargs: Any) -> ApprovalGate:
        return cls(roles=config.roles, tags=config.tags, **kwargs)

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @property
    def has_operator(self) -> bool:
        return self.operator is not None

    def requires_approval(self, task: TaskNode) -> bool:
        if task.requires_approval:
            return True
        if task.agent_role in self.roles:
            return True
        if self.tags.intersection(task.tags):
            return True
        return bool(self.predicate and self.predicate(task))

    def pending(self) -> list[str]:
        return list(self._pending)

    def decision(self, task_id: str) -> bool | None:
        return self._decisions.get(task_id)

    def submit(self, task: TaskNode) -> ApprovalState:
        decided = self._decisions.get(task.id)
        if decided is not None:
            return "approved" if decided else "rejected"
        if not self.requires_approval(task):
            return "approved"
        if task.id in self._pending:
            return "pending_approval"

        self._pending[task.id] = task
        self._emit(
            {
                "type": "approval_requested",
                "task_id": task.id,
                "agent_id": task.agent_role,
                "source": "approval",
                "message": f"Approval required: {task.title}",
                "metadata": {"from": "proposed", "to": "pending_approval", "tags": task.tags},
            }
        )
        logger.info("Task %s is waiting for approval", task.id)
        if self.operator is not None:
            self._asking[task.id] = asyncio.create_task(
                self._ask_operator(task), name=f"ensemble-approval-{task.id}"
            )
        return "pending_approval"

    async def _ask_operator(self, task: TaskNode) -> None:
        operator = self.operator
        if operator is None:
            return
        async with self._operator_lock:
            try:
                if inspect.iscoroutinefunction(operator):
                    answer = await operator(task)
                else:
                    answer = await asyncio.to_thread(operator, task)
                    if inspect.isawaitable(answer):
                        answer = await answer
            except Exception as exc:
                logger.warning("Approval operator failed for %s: %s; rejecting", task.id, exc)
                answer = False
        self._asking.pop(task.id, None)
        if task.id not in self._pending:
            return
        try:
            self.decide(task.id, bool(answer))
        except Exception as exc:
            logger.error("Could not record approval decision for %s: %s", task.id, exc)
            self.failure = exc
            if self.on_decision is not None:
                self.on_decision(task.id, False)

    def decide(self, task_id: str, approved: bool) -> None:
        """Record the decision for a held task; the event is written before any state changes."""
        if task_id not in self._pending:
            if task_id in self._decisions:
                raise ValueError(f"Task '{task_id}' was already decided.")
            raise KeyError(f"Task '{task_id}' is not awaiting approval.")
        self._emit(
            {
                "type": "approval_decided",
                "task_id": task_id,
                "source": "approval",
                "success": approved,
                "level": "info" if approved else "warn",
                "message": "Approved" if approved else "Rejected",
                "metadata": {
                    "from": "pending_approval",
                    "to": "approved" if approved else "rejected",
                },
            }
        )
        self._pending.pop(task_id)
        self._decisions[task_id] = approved
        if self.on_decision is not None:
            self.on_decision(task_id, approved)

    async def close(self) -> None:
        tasks = list(self._asking.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._asking.clear()
