"""
agent/planner.py — Plan Generator

Turns a task description plus the tool catalog into a validated Plan
using the AI completion service. Also asks the model for a fix
suggestion when an action fails.

A response that is not a JSON object with a `steps` list raises
PlanParseError; there is no fallback plan.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from forgepilot.agent.plan import Action, Plan, Task
from forgepilot.agent.recovery import GiveUp, Retry, RetryDecision
from forgepilot.brain.llm_client import BaseLLMClient, LLMError
from forgepilot.brain.model_selector import Intent, ModelSelector
from forgepilot.brain.types import LLMConfig, Message, Purpose
from forgepilot.exceptions import PlanParseError
from forgepilot.observability.logger import get_logger

log = get_logger(__name__)

_PLAN_SYSTEM = "You are a planning AI that generates structured execution plans in JSON format."

_FIX_SYSTEM = "You diagnose failed steps of a coding plan and answer in JSON format."

_PLAN_PROMPT = """\
You are an AI coding assistant planning a task. Generate a structured plan.

TASK: {task}

AVAILABLE TOOLS:
{tools}

PROJECT FILES:
{files}
{snippets}
Generate a plan in this JSON format:
{{
  "summary": "Brief description of the plan",
  "steps": [
    {{
      "id": 1,
      "description": "What this step does",
      "tool": "tool_id",
      "params": {{}},
      "dependsOn": []
    }}
  ],
  "estimatedActions": 5,
  "requiresApproval": true
}}

IMPORTANT:
- Break complex tasks into small, atomic steps
- Use read operations before write operations
- List in dependsOn the ids of steps that must complete first
- Group related changes together

Respond ONLY with valid JSON, no markdown or explanation."""

_FIX_PROMPT = """\
An action failed during execution. Suggest a fix.

ACTION: {description}
TOOL: {tool}
PARAMS: {params}
ERROR: {error}

Should we retry? If yes, provide updated parameters.
Respond ONLY with JSON:
{{"retry": true, "reason": "explanation", "newParams": {{}}}}"""


class PlanGenerator:
    """Uses the completion service to build Plans and retry decisions."""

    def __init__(
        self,
        llm_client: BaseLLMClient,
        model: str = "deepseek/deepseek-chat-v3-0324:free",
        selector: Optional[ModelSelector] = None,
        temperature: float = 0.3,
        max_tokens: int = 2000,
    ):
        self._llm = llm_client
        self._model = model
        self._selector = selector
        self._temperature = temperature
        self._max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings, llm_client: BaseLLMClient, selector: Optional[ModelSelector] = None) -> "PlanGenerator":
        return cls(
            llm_client=llm_client,
            model=settings.llm.default_model,
            selector=selector,
            temperature=settings.llm.planning_temperature,
            max_tokens=settings.llm.max_tokens,
        )

    # ── Completion ────────────────────────────────────────────────────────────

    def _pick_model(self, text: str, file_count: int = 0) -> str:
        if self._selector is None:
            return self._model
        return self._selector.select(text, file_count=file_count, intent=Intent.PLANNING).model

    async def _complete(self, prompt: str, model: str, purpose: Purpose = Purpose.PLAN) -> str:
        config = LLMConfig(model=model, purpose=purpose, temperature=self._temperature, max_tokens=self._max_tokens)
        instructions = _PLAN_SYSTEM if purpose == Purpose.PLAN else _FIX_SYSTEM
        messages = Message.exchange(instructions, prompt)
        try:
            response = await self._llm.generate(messages=messages, config=config)
        except LLMError:
            if self._selector is not None:
                self._selector.record_failure(model)
            raise
        if self._selector is not None:
            self._selector.record_success(model)
        if response.is_truncated:
            log.warning("planner.response_truncated", purpose=purpose.value, model=model, max_tokens=self._max_tokens)
        return response.text

    # ── Planning ──────────────────────────────────────────────────────────────

    async def generate_plan(
        self,
        task: Task | str,
        tool_catalog: list[dict[str, Any]],
        known_files: list[str],
        snippets: Optional[list[Any]] = None,
    ) -> Plan:
        """
        Ask the model for a plan and validate it.

        Raises PlanParseError for malformed output and lets LLMError from
        the completion service propagate.
        """
        if isinstance(task, str):
            task = Task(description=task)

        tools_text = "\n".join(
            f"- {t['id']}: {t['description']} "
            f"({'requires approval' if t.get('requiresApproval') else 'auto-approved'})"
            for t in tool_catalog
        ) or "(none)"
        snippet_text = ""
        if snippets:
            snippet_text = "\nRELEVANT CODE:\n" + "\n\n".join(
                f"--- {s.filename} (lines {s.start_line}-{s.end_line})\n{s.text}" for s in snippets
            ) + "\n"
        prompt = _PLAN_PROMPT.format(
            task=task.description,
            tools=tools_text,
            files="\n".join(known_files) or "(empty project)",
            snippets=snippet_text,
        )

        model = self._pick_model(task.description, file_count=len(known_files))
        log.info("planner.generate_plan", task_id=task.id, model=model, tools=len(tool_catalog), files=len(known_files))
        raw = await self._complete(prompt, model)

        approval_by_tool = {t["id"]: bool(t.get("requiresApproval")) for t in tool_catalog}
        plan = parse_plan(raw, task.id, approval_by_tool)
        log.info("planner.plan_ready", task_id=task.id, steps=len(plan.steps), requires_approval=plan.requires_approval)
        return plan

    # ── Recovery ──────────────────────────────────────────────────────────────

    async def suggest_fix(self, action: Action, error: BaseException | str) -> RetryDecision:
        """Ask the model whether a failed action is worth retrying. Never raises."""
        prompt = _FIX_PROMPT.format(
            description=action.description,
            tool=action.tool,
            params=json.dumps(action.params, default=str),
            error=str(error),
        )
        try:
            raw = await self._complete(prompt, self._pick_model(action.description), Purpose.FIX)
            data = json.loads(_strip_fences(raw))
            if not isinstance(data, dict):
                raise ValueError("fix suggestion is not an object")
        except Exception as e:
            log.warning("planner.suggest_fix_failed", action_id=action.id, error=str(e), error_type=type(e).__name__)
            return GiveUp(reason=f"Failed to get AI suggestion: {e}")

        reason = str(data.get("reason") or "")
        if not data.get("retry"):
            return GiveUp(reason=reason or "model advised against retrying")
        new_params = data.get("newParams", data.get("new_params")) or {}
        if not isinstance(new_params, dict):
            new_params = {}
        return Retry(new_params=new_params, reason=reason)


# ─────────────────────────────────────────────────────────────────────────────
# Parsing
# ─────────────────────────────────────────────────────────────────────────────


def _as_id(value: Any, raw: str) -> int:
    if isinstance(value, bool):
        raise PlanParseError(f"Invalid step id: {value!r}", raw=raw)
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise PlanParseError(f"Invalid step id: {value!r}", raw=raw)


def parse_plan(raw: str, task_id: str, approval_by_tool: Optional[dict[str, bool]] = None) -> Plan:
    """Validate a model response and build a Plan whose actions are all pending."""
    content = _strip_fences(raw)
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        log.warning("planner.parse_failed", error=str(e), raw=content[:200])
        raise PlanParseError(f"Plan is not valid JSON: {e}", raw=raw) from e

    if not isinstance(data, dict):
        raise PlanParseError("Plan must be a JSON object", raw=raw)
    steps_raw = data.get("steps")
    if not isinstance(steps_raw, list):
        raise PlanParseError("Invalid plan: missing steps array", raw=raw)
    for step in steps_raw:
        if not isinstance(step, dict):
            raise PlanParseError(f"Invalid plan step: {step!r}", raw=raw)

    explicit: list[int] = []
    for step in steps_raw:
        if step.get("id") is not None:
            step_id = _as_id(step["id"], raw)
            if step_id in explicit:
                raise PlanParseError(f"Duplicate step id: {step_id}", raw=raw)
            explicit.append(step_id)

    used = set(explicit)
    next_id = 1
    actions: list[Action] = []
    for step in steps_raw:
        if step.get("id") is not None:
            step_id = _as_id(step["id"], raw)
        else:
            while next_id in used:
                next_id += 1
            step_id = next_id
            used.add(step_id)

        deps_raw = step.get("dependsOn", step.get("depends_on")) or []
        if not isinstance(deps_raw, list):
            deps_raw = [deps_raw]
        depends_on = [d for d in (_as_id(d, raw) for d in deps_raw) if d != step_id]

        params = step.get("params")
        actions.append(
            Action(
                id=step_id,
                description=str(step.get("description") or ""),
                tool=str(step.get("tool") or ""),
                params=params if isinstance(params, dict) else {},
                depends_on=depends_on,
            )
        )

    approval_by_tool = approval_by_tool or {}
    requires_approval = data.get("requiresApproval")
    if not isinstance(requires_approval, bool):
        requires_approval = any(approval_by_tool.get(a.tool, False) for a in actions)

    estimated = data.get("estimatedActions")
    if not isinstance(estimated, int) or isinstance(estimated, bool):
        estimated = len(actions)

    return Plan(
        task_id=task_id,
        summary=str(data.get("summary") or ""),
        steps=actions,
        estimated_actions=estimated,
        requires_approval=requires_approval,
    )


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = text.splitlines()
        end = len(lines) - 1 if lines[-1].strip() == "```" else len(lines)
        text = "\n".join(lines[1:end])
    return text.strip()
