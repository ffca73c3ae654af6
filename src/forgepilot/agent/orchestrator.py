"""
agent/orchestrator.py — Agent Orchestrator

Drives one task at a time through plan → approve → execute → observe.

State machine:
    IDLE → PLANNING (start_task) → AWAITING_APPROVAL (plan ready)
         → EXECUTING (approve_plan) ⇄ AWAITING_APPROVAL (approval-gated tool)
         → OBSERVING (action completed) → EXECUTING (next action)
         → COMPLETE (every action complete) | ERROR (retries exhausted / stuck)
    non-terminal → CANCELLED (cancel) → IDLE
    ERROR / CANCELLED / COMPLETE → IDLE (reset)

Approval gates are a suspended state, not a blocking wait: the loop
returns with `pending_action` / `pending_tool` set and resumes only when
approve_action() or reject_action() is called.

Usage:
    orc = AgentOrchestrator(planner, registry, context=provider,
                            on_action_needs_approval=ask_user)
    plan = await orc.start_task("Add a dark-mode toggle to settings.js")
    await orc.approve_plan()
    ...
    if orc.state is AgentState.AWAITING_APPROVAL:
        await orc.approve_action()
"""

from __future__ import annotations

import inspect
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Optional

from forgepilot.agent.plan import Action, ActionStatus, Plan, Task
from forgepilot.agent.planner import PlanGenerator
from forgepilot.agent.recovery import GiveUp, RetryPolicy, failure_indicator, is_recoverable_output
from forgepilot.brain.llm_client import LLMError
from forgepilot.context.provider import ContextProvider
from forgepilot.exceptions import (
    AgentError,
    ApprovalError,
    InvalidStateError,
    PlanParseError,
    ToolExecutionError,
    UnknownToolError,
)
from forgepilot.observability.logger import bind_task, clear_task, get_logger
from forgepilot.tools.registry import ToolRegistry
from forgepilot.tools.types import Tool

log = get_logger(__name__)

Callback = Optional[Callable[..., Any]]

_SNIPPETS_FOR_PLANNING = 3


class AgentState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING = "executing"
    OBSERVING = "observing"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"


_RESETTABLE = {AgentState.IDLE, AgentState.ERROR, AgentState.CANCELLED, AgentState.COMPLETE}


class AgentOrchestrator:
    """
    Sequential execution loop over one Plan.

    Inject all dependencies via the constructor; from_settings() wires
    the configured limits.
    """

    def __init__(
        self,
        planner: PlanGenerator,
        registry: ToolRegistry,
        context: Optional[ContextProvider] = None,
        max_retries: int = 3,
        require_approval: bool = True,
        max_history_entries: int = 200,
        on_state_change: Callback = None,
        on_plan_ready: Callback = None,
        on_action_complete: Callback = None,
        on_action_needs_approval: Callback = None,
        on_error: Callback = None,
        on_complete: Callback = None,
    ):
        self._planner = planner
        self._registry = registry
        self._context = context
        self.require_approval = require_approval

        self.on_state_change = on_state_change
        self.on_plan_ready = on_plan_ready
        self.on_action_complete = on_action_complete
        self.on_action_needs_approval = on_action_needs_approval
        self.on_error = on_error
        self.on_complete = on_complete

        self.state = AgentState.IDLE
        self.task: Optional[Task] = None
        self.plan: Optional[Plan] = None
        self.queue: list[Action] = []
        self.pending_action: Optional[Action] = None
        self.pending_tool: Optional[Tool] = None
        self.history: deque[dict[str, Any]] = deque(maxlen=max_history_entries)
        self.retry_policy = RetryPolicy(max_retries)

        # Bumped on every new task and on cancel; results from an older
        # generation are dropped when their await resumes.
        self._generation = 0

    @classmethod
    def from_settings(
        cls,
        settings,
        planner: PlanGenerator,
        registry: ToolRegistry,
        context: Optional[ContextProvider] = None,
        **callbacks,
    ) -> "AgentOrchestrator":
        return cls(
            planner=planner,
            registry=registry,
            context=context,
            max_retries=settings.agent.max_retries,
            require_approval=settings.agent.require_approval_for_writes,
            max_history_entries=settings.agent.max_history_entries,
            **callbacks,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────────

    async def _emit(self, name: str, *args: Any) -> None:
        callback = getattr(self, name)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            log.error("orchestrator.callback_failed", callback=name, error=str(e), error_type=type(e).__name__)

    async def _transition(self, new: AgentState) -> None:
        prev = self.state
        self.state = new
        log.info("orchestrator.state_change", new=new.value, prev=prev.value)
        await self._emit("on_state_change", new, prev)

    def _record(self, kind: str, **fields: Any) -> None:
        self.history.append({"type": kind, "timestamp": time.time(), **fields})

    def _is_stale(self, generation: int) -> bool:
        if generation != self._generation:
            log.info("orchestrator.stale_result_ignored", generation=generation, current=self._generation)
            return True
        return False

    def _next_ready(self) -> Optional[Action]:
        by_id = {a.id: a for a in self.queue}
        for action in self.queue:
            if action.status != ActionStatus.PENDING:
                continue
            if all(
                dep in by_id and by_id[dep].status == ActionStatus.COMPLETE
                for dep in action.depends_on
            ):
                return action
        return None

    async def _fail(self, error: BaseException, action: Optional[Action] = None) -> None:
        await self._transition(AgentState.ERROR)
        log.error(
            "orchestrator.task_failed",
            action_id=action.id if action else None,
            error=str(error),
            error_type=type(error).__name__,
        )
        await self._emit("on_error", error, action)
        clear_task()

    def _clear_task_state(self) -> None:
        self.task = None
        self.plan = None
        self.queue = []
        self.pending_action = None
        self.pending_tool = None
        self.retry_policy.reset()

    # ─────────────────────────────────────────────────────────────────────────
    # Planning
    # ─────────────────────────────────────────────────────────────────────────

    async def start_task(self, description: str) -> Plan:
        """
        Plan a new task and pause for plan approval.

        Only allowed from IDLE. Planning failures move the agent to ERROR,
        fire on_error and re-raise.
        """
        if self.state != AgentState.IDLE:
            raise InvalidStateError("start_task", self.state.value)

        self._clear_task_state()
        self._generation += 1
        generation = self._generation
        self.task = Task(description=description)
        bind_task(self.task.id)
        log.info("orchestrator.task_started", description=description[:120])
        await self._transition(AgentState.PLANNING)

        try:
            files: list[str] = []
            snippets: list[Any] = []
            if self._context is not None:
                files = await self._context.known_files()
                snippets = await self._context.relevant_snippets(description, limit=_SNIPPETS_FOR_PLANNING)
            plan = await self._planner.generate_plan(self.task, self._registry.describe(), files, snippets)
        except (PlanParseError, LLMError) as e:
            if not self._is_stale(generation):
                await self._fail(e)
            raise

        if self._is_stale(generation):
            return plan

        self.plan = plan
        self.queue = [action.copy() for action in plan.steps]
        await self._transition(AgentState.AWAITING_APPROVAL)
        await self._emit("on_plan_ready", plan)
        return plan

    async def approve_plan(self) -> None:
        if self.state != AgentState.AWAITING_APPROVAL or self.plan is None or self.pending_action is not None:
            raise InvalidStateError("approve_plan", self.state.value, "No plan awaiting approval")
        self._record("plan_approved", steps=len(self.queue))
        await self._transition(AgentState.EXECUTING)
        await self.execute_next_action()

    async def reject_plan(self, reason: str = "User rejected") -> None:
        if self.state != AgentState.AWAITING_APPROVAL or self.plan is None or self.pending_action is not None:
            raise InvalidStateError("reject_plan", self.state.value, "No plan awaiting approval")
        log.info("orchestrator.plan_rejected", reason=reason)
        self._record("plan_rejected", reason=reason)
        self._generation += 1
        await self._transition(AgentState.CANCELLED)
        await self._reset()

    # ─────────────────────────────────────────────────────────────────────────
    # Execution loop
    # ─────────────────────────────────────────────────────────────────────────

    async def execute_next_action(self) -> None:
        """
        Run ready actions in plan order until the plan finishes, fails or
        suspends.

        Unknown tools fail their action and the loop moves on. An
        approval-gated tool suspends the loop in AWAITING_APPROVAL. A
        cancel from any callback stops the loop at the next step.
        """
        generation = self._generation
        while self.state == AgentState.EXECUTING and not self._is_stale(generation):
            action = self._next_ready()
            if action is None:
                await self._finish()
                return

            try:
                tool = self._registry.get(action.tool)
            except UnknownToolError as e:
                action.status = ActionStatus.FAILED
                action.error = str(e)
                log.warning("orchestrator.unknown_tool", action_id=action.id, tool=action.tool)
                self._record("action_failed", action=action.id, tool=action.tool, error=str(e))
                continue

            if tool.requires_approval and self.require_approval:
                self.pending_action = action
                self.pending_tool = tool
                await self._transition(AgentState.AWAITING_APPROVAL)
                await self._emit("on_action_needs_approval", action, tool)
                return

            if not await self._run_action(action):
                return

    async def _finish(self) -> None:
        if all(a.status == ActionStatus.COMPLETE for a in self.queue):
            await self._transition(AgentState.COMPLETE)
            summary = self.execution_summary()
            log.info("orchestrator.task_complete", actions=len(self.queue))
            await self._emit("on_complete", summary)
            clear_task()
            return

        stuck = [a.id for a in self.queue if a.status == ActionStatus.PENDING]
        unfinished = [a.id for a in self.queue if a.status != ActionStatus.COMPLETE]
        await self._fail(AgentError(f"Execution stopped: actions {unfinished} did not complete (stuck: {stuck})"))

    async def approve_action(self) -> None:
        if self.pending_action is None:
            raise ApprovalError("No action pending approval")
        action = self.pending_action
        self.pending_action = None
        self.pending_tool = None
        self._record("action_approved", action=action.id, tool=action.tool)
        await self._transition(AgentState.EXECUTING)
        await self.execute_action(action)

    async def reject_action(self, reason: str = "User rejected") -> None:
        if self.pending_action is None:
            raise ApprovalError("No action pending approval")
        action = self.pending_action
        action.status = ActionStatus.REJECTED
        action.error = reason
        self.pending_action = None
        self.pending_tool = None
        log.info("orchestrator.action_rejected", action_id=action.id, reason=reason)
        self._record("action_rejected", action=action.id, tool=action.tool, reason=reason)
        await self._transition(AgentState.EXECUTING)
        await self.execute_next_action()

    async def execute_action(self, action: Action) -> None:
        """Run one action (with its retries), then resume the loop."""
        if await self._run_action(action):
            await self.execute_next_action()

    async def _run_action(self, action: Action) -> bool:
        """
        Execute `action`, re-running it in place for each granted retry.

        Returns True when the loop may advance to the next action; False
        when the task failed or was cancelled/replaced meanwhile.
        """
        generation = self._generation
        if self.state != AgentState.EXECUTING:
            return False
        tool = self._registry.get(action.tool)

        while True:
            action.status = ActionStatus.EXECUTING
            action.started_at = time.time()
            log.info("orchestrator.action_start", action_id=action.id, tool=action.tool)

            try:
                self._registry.validate_params(action.tool, action.params)
                result = await tool.execute(action.params)
            except Exception as e:
                if self._is_stale(generation):
                    return False
                action.status = ActionStatus.FAILED
                action.error = str(e)
                log.warning(
                    "orchestrator.action_failed",
                    action_id=action.id,
                    tool=action.tool,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                self._record("action_failed", action=action.id, tool=action.tool, error=str(e))
                retry = await self.handle_action_error(action, e)
                if retry and not self._is_stale(generation):
                    continue
                return False

            if self._is_stale(generation):
                return False

            action.status = ActionStatus.COMPLETE
            action.result = result
            action.error = None
            action.completed_at = time.time()
            log.info(
                "orchestrator.action_complete",
                action_id=action.id,
                tool=action.tool,
                duration_ms=round((action.completed_at - action.started_at) * 1000, 1),
            )
            self._record("action_complete", action=action.id, tool=action.tool, result=result)
            await self._emit("on_action_complete", action)
            if self._is_stale(generation):
                return False
            await self._transition(AgentState.OBSERVING)
            if self._is_stale(generation):
                return False

            retry = await self.observe_and_continue(action)
            if self._is_stale(generation):
                return False
            if not retry:
                return True

    # ─────────────────────────────────────────────────────────────────────────
    # Recovery
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_action_error(self, action: Action, error: BaseException) -> bool:
        """
        Ask for a fix while the shared retry budget lasts; otherwise fail the task.

        Returns True when the action was reset to pending with the fix's
        params merged in and should be re-executed.
        """
        wrapped = error if isinstance(error, AgentError) else ToolExecutionError(action.tool, error)
        if self.retry_policy.exhausted:
            log.warning("orchestrator.retries_exhausted", action_id=action.id, attempts=self.retry_policy.attempts)
            await self._fail(wrapped, action)
            return False

        generation = self._generation
        decision = await self._planner.suggest_fix(action, error)
        if self._is_stale(generation):
            return False

        if not self.retry_policy.allows(decision):
            reason = decision.reason if isinstance(decision, GiveUp) else "retry budget exhausted"
            log.info("orchestrator.giving_up", action_id=action.id, reason=reason)
            await self._fail(wrapped, action)
            return False

        attempt = self.retry_policy.consume()
        action.params = {**action.params, **decision.new_params}
        action.status = ActionStatus.PENDING
        action.error = None
        log.info("orchestrator.retrying", action_id=action.id, attempt=attempt, reason=decision.reason)
        self._record("action_retry", action=action.id, attempt=attempt, reason=decision.reason)
        await self._transition(AgentState.EXECUTING)
        return True

    async def observe_and_continue(self, action: Action) -> bool:
        """
        Inspect a completed action's result and move back to EXECUTING.

        A result reporting a transient failure resets the action to
        pending while the retry budget lasts; returns True in that case
        so the caller re-runs it. Otherwise the loop advances.
        """
        if self.state != AgentState.OBSERVING:
            return False

        retry = False
        failure = failure_indicator(action.result)
        if failure is not None:
            log.info("orchestrator.result_reports_failure", action_id=action.id, tool=action.tool)
            if not self.retry_policy.exhausted and is_recoverable_output(failure):
                attempt = self.retry_policy.consume()
                action.status = ActionStatus.PENDING
                log.info("orchestrator.retrying_recoverable", action_id=action.id, attempt=attempt)
                self._record("action_retry", action=action.id, attempt=attempt, reason=failure[:200])
                retry = True

        await self._transition(AgentState.EXECUTING)
        return retry

    # ─────────────────────────────────────────────────────────────────────────
    # Cancel / reset
    # ─────────────────────────────────────────────────────────────────────────

    async def cancel(self) -> bool:
        """
        Abandon the current task. Returns False when there is nothing to
        cancel (IDLE or a terminal state). An in-flight tool call is not
        interrupted; its result is discarded when it returns.
        """
        if self.state in _RESETTABLE:
            return False
        self._generation += 1
        log.info("orchestrator.cancelled", task_id=self.task.id if self.task else None)
        await self._transition(AgentState.CANCELLED)
        self._record("cancelled")
        await self._reset()
        return True

    async def reset(self) -> None:
        if self.state not in _RESETTABLE:
            raise InvalidStateError("reset", self.state.value, "Cancel the running task before resetting")
        await self._reset()

    async def _reset(self) -> None:
        self._clear_task_state()
        clear_task()
        if self.state != AgentState.IDLE:
            await self._transition(AgentState.IDLE)

    # ─────────────────────────────────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────────────────────────────────

    def execution_summary(self) -> dict[str, Any]:
        def count(status: ActionStatus) -> int:
            return sum(1 for a in self.queue if a.status == status)

        return {
            "state": self.state.value,
            "task": (
                {"id": self.task.id, "description": self.task.description, "startedAt": self.task.started_at}
                if self.task
                else None
            ),
            "plan": self.plan.to_dict() if self.plan else None,
            "progress": {
                "total": len(self.queue),
                "completed": count(ActionStatus.COMPLETE),
                "failed": count(ActionStatus.FAILED),
                "rejected": count(ActionStatus.REJECTED),
                "pending": count(ActionStatus.PENDING),
            },
            "history": list(self.history),
        }

    def __repr__(self) -> str:
        return f"<AgentOrchestrator state={self.state.value} actions={len(self.queue)}>"
