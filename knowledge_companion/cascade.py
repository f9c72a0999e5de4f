"""Recursive cascade brainstorm.

Breadth-first expansion of a trigger thought. Each depth expands every
pending thought, scores the expansions, prunes weak ones and keeps at most
``beam_width`` for the next depth. The run stops when the best confidence
reaches the satisfaction threshold, the depth limit is hit, or nothing is
left to expand.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from knowledge_companion.config import CascadeConfig
from knowledge_companion.logging import get_logger

log = get_logger(__name__)

Expander = Callable[[str, int], list[str]]
Evaluator = Callable[[str, int], float]


@dataclass
class CascadeStep:
    depth: int
    thought: str
    triggered_thoughts: list[str]
    confidence: float


@dataclass
class CascadeResult:
    trigger: str
    final_synthesis: str
    all_thoughts: list[str] = field(default_factory=list)
    steps: list[CascadeStep] = field(default_factory=list)
    depths_explored: int = 0
    thoughts_processed: int = 0
    max_satisfaction: float = 0.0
    termination_reason: str = ""
    execution_time_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def template_expander(thought: str, depth: int) -> list[str]:
    """Default expansion: broad angles first, then deeper, then specifics."""
    if depth == 0:
        expansions = [
            f"{thought} - Innovation opportunities",
            f"{thought} - Potential challenges",
            f"{thought} - Market applications",
            f"{thought} - Technical implementation",
        ]
    elif depth == 1:
        expansions = [
            f"Building on {thought}: Consider scaling strategies",
            f"Building on {thought}: User experience implications",
            f"Building on {thought}: Revenue models to explore",
        ]
    else:
        expansions = [
            f"Implementation detail: {thought}",
            f"Risk analysis: {thought}",
            f"Success metrics: {thought}",
        ]
    if depth < 3:
        expansions.append(f"Further explore: {thought}")
    return expansions


def keyword_evaluator(text: str, depth: int) -> float:
    """Default confidence: deeper and more concrete thoughts score higher."""
    score = 0.5
    if depth >= 3:
        score += 0.3
    if depth >= 4:
        score += 0.2
    if "innovation" in text or "strateg" in text:
        score += 0.15
    if "implement" in text or "technical" in text:
        score += 0.1
    if "revenue" in text or "market" in text:
        score += 0.1
    if "risk" in text or "challenge" in text:
        score += 0.05
    return min(1.0, score)


def cascade_brainstorm(
    trigger: str,
    config: CascadeConfig | None = None,
    expander: Expander = template_expander,
    evaluator: Evaluator = keyword_evaluator,
) -> CascadeResult:
    """Run the cascade for one trigger thought."""
    cfg = config or CascadeConfig()
    started = time.monotonic()

    thoughts = [trigger]
    depth = 0
    satisfaction = 0.0
    all_thoughts: list[str] = []
    steps: list[CascadeStep] = []
    seen: set[tuple[str, int]] = set()

    while satisfaction < cfg.satisfaction_threshold and depth < cfg.max_depth and thoughts:
        next_thoughts: list[str] = []
        for thought in thoughts:
            if cfg.enable_memoization:
                key = (thought, depth)
                if key in seen:
                    continue
                seen.add(key)

            triggered = expander(thought, depth)
            all_thoughts.append(thought)

            for candidate in triggered:
                confidence = evaluator(candidate, depth)
                satisfaction = max(satisfaction, confidence)
                if not cfg.enable_pruning or confidence >= cfg.prune_threshold:
                    next_thoughts.append(candidate)

            steps.append(
                CascadeStep(
                    depth=depth,
                    thought=thought,
                    triggered_thoughts=list(triggered),
                    confidence=satisfaction,
                )
            )

        if cfg.beam_width is not None:
            next_thoughts = next_thoughts[: cfg.beam_width]
        thoughts = next_thoughts
        depth += 1

    if depth >= cfg.max_depth:
        reason = "max_depth_reached"
    elif satisfaction >= cfg.satisfaction_threshold:
        reason = "satisfaction_reached"
    else:
        reason = "no_more_thoughts"

    synthesis = (
        f"Cascade Result (depth {depth}):\n" + "\n".join(all_thoughts)
        if all_thoughts
        else trigger
    )
    log.info(
        "Cascade complete",
        depth=depth,
        thoughts=len(all_thoughts),
        satisfaction=round(satisfaction, 3),
        reason=reason,
    )
    return CascadeResult(
        trigger=trigger,
        final_synthesis=synthesis,
        all_thoughts=all_thoughts,
        steps=steps,
        depths_explored=depth,
        thoughts_processed=len(all_thoughts),
        max_satisfaction=satisfaction,
        termination_reason=reason,
        execution_time_ms=int((time.monotonic() - started) * 1000),
    )
