"""WAMA memory admission scoring.

A weighted multi-criterion keyword heuristic that decides whether content
is worth sending to the long-term knowledge store. Scoring averages the
weights of the criteria that matched (not all criteria), adds context
boosts, clamps to [0, 1] and maps the result onto five ordered bands.
"""

from dataclasses import dataclass, field
from enum import Enum

from knowledge_companion.config import WamaConfig
from knowledge_companion.logging import get_logger

log = get_logger(__name__)


class SaveDecision(str, Enum):
    """Admission bands, highest first."""

    IMMEDIATE_CASCADE = "IMMEDIATE_CASCADE"
    PRIORITY_SAVE = "PRIORITY_SAVE"
    BATCH_QUEUE = "BATCH_QUEUE"
    CONSIDER = "CONSIDER"
    LET_FADE = "LET_FADE"

    @property
    def persists(self) -> bool:
        return self is not SaveDecision.LET_FADE


@dataclass
class WamaScore:
    """Outcome of scoring one piece of content."""

    decision: SaveDecision
    score: float
    matched: list[str] = field(default_factory=list)

    def as_tuple(self) -> tuple[SaveDecision, float]:
        return self.decision, self.score


class MemoryScorer:
    """Score content against the configured criteria."""

    def __init__(self, config: WamaConfig | None = None):
        self.config = config or WamaConfig()

    def decide(self, score: float) -> SaveDecision:
        """Map a score onto its band."""
        cfg = self.config
        if score >= cfg.immediate_cascade_threshold:
            return SaveDecision.IMMEDIATE_CASCADE
        if score >= cfg.priority_save_threshold:
            return SaveDecision.PRIORITY_SAVE
        if score >= cfg.batch_queue_threshold:
            return SaveDecision.BATCH_QUEUE
        if score >= cfg.consider_threshold:
            return SaveDecision.CONSIDER
        return SaveDecision.LET_FADE

    def evaluate(self, content: str) -> WamaScore:
        """Score content and report which criteria matched."""
        cfg = self.config
        text = content or ""
        lowered = text.lower()

        matched: list[str] = []
        total_weight = 0.0
        for criterion in cfg.criteria:
            if len(text) < criterion.min_length:
                continue
            if any(keyword.lower() in lowered for keyword in criterion.keywords):
                matched.append(criterion.name)
                total_weight += criterion.weight

        if not matched:
            log.debug("WAMA decision", decision=SaveDecision.LET_FADE.value, score=0.0)
            return WamaScore(decision=SaveDecision.LET_FADE, score=0.0)

        score = min(1.0, total_weight / len(matched))

        if any(keyword in lowered for keyword in cfg.personal_keywords):
            score += cfg.personal_boost
        if any(keyword in lowered for keyword in cfg.emphasis_keywords):
            score += cfg.emphasis_boost
        if len(text) > cfg.length_threshold:
            score += cfg.length_boost
        score = max(0.0, min(1.0, score))

        decision = self.decide(score)
        log.debug("WAMA decision", decision=decision.value, score=round(score, 3), matched=matched)
        return WamaScore(decision=decision, score=score, matched=matched)

    def score(self, content: str) -> tuple[SaveDecision, float]:
        """Return ``(decision, score)`` for content."""
        return self.evaluate(content).as_tuple()
