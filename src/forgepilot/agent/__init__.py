from forgepilot.agent.orchestrator import AgentOrchestrator, AgentState
from forgepilot.agent.plan import Action, ActionStatus, Plan, Task
from forgepilot.agent.planner import PlanGenerator, parse_plan
from forgepilot.agent.recovery import GiveUp, Retry, RetryDecision, RetryPolicy

__all__ = [
    "Action",
    "ActionStatus",
    "AgentOrchestrator",
    "AgentState",
    "GiveUp",
    "Plan",
    "PlanGenerator",
    "Retry",
    "RetryDecision",
    "RetryPolicy",
    "Task",
    "parse_plan",
]
