"""
brain/model_selector.py — Model Selector

Chooses which completion model serves a request. Rules are layered:
  1. Intent classification by regex pattern + keyword scores
  2. Complexity scoring (keywords, file count, message length)
  3. Tier choice: fast / standard / powerful
  4. Within a tier, the first model without recent failures wins;
     a fully-failing tier falls back to the next tier down.

Usage:
    selector = ModelSelector(tiers={"fast": [...], "standard": [...], "powerful": [...]})
    choice = selector.select("Refactor the auth module across all files", file_count=6)
    llm_config = LLMConfig(model=choice.model)

    selector.record_failure(choice.model)   # after an LLMError
"""

from __future__ import annotations

import re
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from forgepilot.observability.logger import get_logger

log = get_logger(__name__)


class Intent(str, Enum):
    SIMPLE_QUESTION = "simple_question"
    CODE_EXPLANATION = "code_explanation"
    CODE_GENERATION = "code_generation"
    CODE_REFACTOR = "code_refactor"
    BUG_FIX = "bug_fix"
    MULTI_FILE = "multi_file"
    PLANNING = "planning"
    TERMINAL = "terminal"
    CHAT = "chat"


class Tier(str, Enum):
    FAST = "fast"
    STANDARD = "standard"
    POWERFUL = "powerful"


@dataclass(frozen=True)
class _IntentRule:
    patterns: tuple[re.Pattern, ...]
    keywords: tuple[str, ...]
    weight: int


def _rx(*patterns: str) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


_INTENT_RULES: dict[Intent, _IntentRule] = {
    Intent.SIMPLE_QUESTION: _IntentRule(
        _rx(r"^what\s+(is|are|does|do)\b", r"^how\s+do\s+i\b", r"^where\s+(is|are|can)\b"),
        ("what", "why", "where", "which"),
        1,
    ),
    Intent.CODE_EXPLANATION: _IntentRule(
        _rx(r"explain\s+(this|the|how)", r"walk\s+me\s+through", r"break\s+down\s+(this|the)"),
        ("explain", "understand", "walk through"),
        2,
    ),
    Intent.CODE_GENERATION: _IntentRule(
        _rx(
            r"^(create|write|generate|make|build|implement)\s+(a|an|the)?\s*"
            r"(function|class|component|module|api|endpoint)",
            r"^add\s+(a|an|the)?\s*(new)?\s*(function|feature|component)",
        ),
        ("create", "write", "generate", "build", "implement"),
        3,
    ),
    Intent.CODE_REFACTOR: _IntentRule(
        _rx(r"refactor\s+(this|the)", r"clean\s+up\s+(this|the)", r"simplify\s+(this|the)"),
        ("refactor", "optimize", "clean up", "simplify", "restructure"),
        3,
    ),
    Intent.BUG_FIX: _IntentRule(
        _rx(r"fix\s+(this|the|a|an)?\s*(error|bug|issue|problem)", r"not\s+working", r"doesn'?t\s+work"),
        ("fix", "debug", "error", "bug", "broken", "failing"),
        3,
    ),
    Intent.MULTI_FILE: _IntentRule(
        _rx(r"multiple\s+files", r"all\s+(the\s+)?files", r"across\s+(the\s+)?(project|codebase)"),
        ("multiple files", "all files", "entire project", "whole codebase"),
        4,
    ),
    Intent.PLANNING: _IntentRule(
        _rx(r"^(plan|design|architect)\b", r"create\s+(a\s+)?plan", r"project\s+(structure|architecture)"),
        ("plan", "design", "architect", "strategy"),
        4,
    ),
    Intent.TERMINAL: _IntentRule(
        _rx(r"terminal\s+command", r"npm\s+(install|run|start)", r"git\s+(add|commit|push|pull)"),
        ("terminal", "command", "npm", "git", "shell"),
        2,
    ),
    Intent.CHAT: _IntentRule(
        _rx(r"^(hi|hello|hey|thanks|thank you)\b"),
        ("hello", "thanks"),
        1,
    ),
}

_HIGH_COMPLEXITY_KEYWORDS = (
    "full application", "entire project", "from scratch", "complex",
    "comprehensive", "complete system", "architecture", "scalable",
)
_HIGH_COMPLEXITY_PATTERNS = _rx(
    r"(create|build)\s+(a\s+)?(full|complete|entire)",
    r"implement\s+(the\s+)?(whole|entire)",
)
_MEDIUM_COMPLEXITY_KEYWORDS = (
    "function", "component", "class", "module", "feature",
    "endpoint", "api", "refactor", "update",
)

_FALLBACK_TIER = {Tier.POWERFUL: Tier.STANDARD, Tier.STANDARD: Tier.FAST, Tier.FAST: None}


@dataclass(frozen=True)
class Complexity:
    score: int
    level: str                     # low | medium | high
    factors: tuple[str, ...] = ()


@dataclass(frozen=True)
class ModelChoice:
    model: str
    tier: Tier
    intent: Intent
    complexity: Complexity


@dataclass
class _ModelStats:
    successes: int = 0
    failures: list[float] = field(default_factory=list)


class ModelSelector:
    """Routes a request to a tier and picks a healthy model from it."""

    def __init__(
        self,
        tiers: dict[str, list[str]],
        failure_window_seconds: float = 60.0,
        max_failures_before_skip: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._tiers: dict[Tier, list[str]] = {Tier(k): list(v) for k, v in tiers.items() if v}
        if not self._tiers:
            raise ValueError("ModelSelector needs at least one non-empty tier")
        self._window = failure_window_seconds
        self._max_failures = max_failures_before_skip
        self._clock = clock
        self._stats: dict[str, _ModelStats] = defaultdict(_ModelStats)

    # ── Classification ───────────────────────────────────────────────────────

    def classify_intent(self, message: str) -> Intent:
        lower = message.lower()
        best, best_score = Intent.CHAT, 0
        for intent, rule in _INTENT_RULES.items():
            score = sum(rule.weight * 2 for p in rule.patterns if p.search(message))
            score += sum(rule.weight for kw in rule.keywords if kw in lower)
            if score > best_score:
                best, best_score = intent, score
        return best

    def score_complexity(self, message: str, file_count: int = 0) -> Complexity:
        lower = message.lower()
        score = 0
        factors: list[str] = []

        for kw in _HIGH_COMPLEXITY_KEYWORDS:
            if kw in lower:
                score += 3
                factors.append(f"keyword: {kw}")
        for p in _HIGH_COMPLEXITY_PATTERNS:
            if p.search(message):
                score += 4
                factors.append("complex pattern match")
        score += sum(1 for kw in _MEDIUM_COMPLEXITY_KEYWORDS if kw in lower)

        if file_count > 5:
            score += 3
            factors.append(f"many files: {file_count}")
        elif file_count > 2:
            score += 1

        if len(message) > 500:
            score += 2
            factors.append("long message")
        elif len(message) > 200:
            score += 1

        level = "high" if score >= 8 else "medium" if score >= 4 else "low"
        return Complexity(score=score, level=level, factors=tuple(factors))

    @staticmethod
    def determine_tier(intent: Intent, complexity: Complexity) -> Tier:
        if complexity.level == "high":
            return Tier.POWERFUL
        if intent in (Intent.MULTI_FILE, Intent.PLANNING):
            return Tier.POWERFUL
        if intent in (Intent.CODE_GENERATION, Intent.CODE_REFACTOR, Intent.BUG_FIX):
            return Tier.POWERFUL if complexity.level == "medium" else Tier.STANDARD
        if intent in (Intent.CODE_EXPLANATION, Intent.TERMINAL):
            return Tier.STANDARD
        return Tier.FAST

    # ── Selection ────────────────────────────────────────────────────────────

    def select(
        self,
        message: str,
        file_count: int = 0,
        intent: Optional[Intent] = None,
    ) -> ModelChoice:
        intent = intent or self.classify_intent(message)
        complexity = self.score_complexity(message, file_count)
        tier = self.determine_tier(intent, complexity)
        model, served_tier = self._pick(tier)
        log.debug(
            "model_selector.selected",
            intent=intent.value,
            complexity=complexity.level,
            tier=served_tier.value,
            model=model,
        )
        return ModelChoice(model=model, tier=served_tier, intent=intent, complexity=complexity)

    def _pick(self, tier: Tier) -> tuple[str, Tier]:
        current: Optional[Tier] = tier
        while current is not None:
            for model in self._tiers.get(current, []):
                if not self.is_failing(model):
                    return model, current
            if current in self._tiers:
                log.warning("model_selector.tier_failing", tier=current.value)
            current = _FALLBACK_TIER[current]

        # Every model is failing: hand back the first configured one anyway
        for t in (Tier.FAST, Tier.STANDARD, Tier.POWERFUL):
            if self._tiers.get(t):
                return self._tiers[t][0], t
        raise RuntimeError("unreachable: no models configured")

    # ── Health tracking ──────────────────────────────────────────────────────

    def record_success(self, model: str) -> None:
        self._stats[model].successes += 1

    def record_failure(self, model: str) -> None:
        self._stats[model].failures.append(self._clock())

    def is_failing(self, model: str) -> bool:
        stats = self._stats.get(model)
        if stats is None:
            return False
        now = self._clock()
        stats.failures = [t for t in stats.failures if now - t < self._window]
        return len(stats.failures) >= self._max_failures
