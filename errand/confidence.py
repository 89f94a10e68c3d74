"""Per-step confidence scores, graduation and correction pattern inference."""

from __future__ import annotations

import logging
import os
import re
from collections import Counter, defaultdict
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from .constants import (
    APPROVAL_INCREMENT,
    AUTONOMOUS_THRESHOLD,
    CORRECTION_DECREMENT,
    MAX_RECENT_CORRECTIONS,
    MIN_CORRECTIONS_FOR_PATTERN,
    MIN_RUNS_FOR_GRADUATION,
    SKIP_DECREMENT,
)
from .persistence.models import CorrectionRecord
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)

ACTIONS = {
    "output_filter": "filter",
    "output_edit": "rename",
    "param_edit": "replace",
}

_MIN_FEATURE_LENGTH = 3


def clamp(value: float) -> float:
    """Keep a score inside ``[0, 1]``."""
    return round(min(1.0, max(0.0, value)), 6)


class Pattern(BaseModel):
    """A recurring correction that could be applied automatically."""

    pattern: str
    action: str
    support: int
    confidence: float = Field(ge=0.0, le=1.0)


class GraduationStatus(BaseModel):
    ready: bool
    reasons: List[str] = Field(default_factory=list)
    confidence: float
    run_count: int
    recent_corrections: int


def pattern_confidence(support: int) -> float:
    bonus = 0.1 * min(support - MIN_CORRECTIONS_FOR_PATTERN, 5)
    return round(min(0.5 + bonus, 0.9), 6)


def _features(value: str) -> List[str]:
    features = []
    ext = os.path.splitext(os.path.basename(value))[1]
    if len(ext) > 1:
        features.append(f"*{ext.lower()}")
    prefix = re.split(r"[_\-/ ]", value, maxsplit=1)[0]
    if len(prefix) >= _MIN_FEATURE_LENGTH and prefix != value:
        features.append(f"{prefix}*")
    return features


def longest_common_substring(values: List[str]) -> Optional[str]:
    """Longest substring shared by every value, or ``None`` below 3 chars."""
    if not values:
        return None
    shortest = min(values, key=len)
    for length in range(len(shortest), _MIN_FEATURE_LENGTH - 1, -1):
        for start in range(len(shortest) - length + 1):
            candidate = shortest[start : start + length]
            if all(candidate in v for v in values):
                return candidate
    return None


def correction_rows(
    correction_type: str, original: Any, corrected: Any
) -> List[Tuple[Any, Any]]:
    """Split one user correction into the rows worth remembering.

    A parameter edit keeps only the keys whose value changed, and a filtered
    list output keeps one row per removed item.
    """
    if correction_type == "param_edit" and isinstance(original, dict) and isinstance(
        corrected, dict
    ):
        changed = [
            (original.get(key), value)
            for key, value in corrected.items()
            if original.get(key) != value
        ]
        return changed or [(original, corrected)]
    if correction_type == "output_filter" and isinstance(original, list) and isinstance(
        corrected, list
    ):
        removed = [(item, "") for item in original if item not in corrected]
        return removed or [(original, corrected)]
    return [(original, corrected)]


def infer_patterns_from(corrections: List[CorrectionRecord]) -> List[Pattern]:
    """Find features shared by at least three corrections."""
    if len(corrections) < MIN_CORRECTIONS_FOR_PATTERN:
        return []

    # param edits are learned from their corrected values below
    outputs = [c for c in corrections if c.correction_type != "param_edit"]
    grouped: Dict[str, List[CorrectionRecord]] = defaultdict(list)
    for correction in outputs:
        for feature in _features(correction.original_value):
            grouped[feature].append(correction)

    originals = [c.original_value for c in outputs if c.original_value]
    if len(originals) >= MIN_CORRECTIONS_FOR_PATTERN and len(originals) == len(outputs):
        common = longest_common_substring(originals)
        if common and not any(common.strip(".") in f for f in grouped):
            grouped[f"*{common}*"] = list(outputs)

    patterns: List[Pattern] = []
    for feature, members in grouped.items():
        if len(members) < MIN_CORRECTIONS_FOR_PATTERN:
            continue
        dominant = Counter(c.correction_type for c in members).most_common(1)[0][0]
        patterns.append(
            Pattern(
                pattern=feature,
                action=ACTIONS.get(dominant, "filter"),
                support=len(members),
                confidence=pattern_confidence(len(members)),
            )
        )

    edits = Counter(
        c.corrected_value for c in corrections if c.correction_type == "param_edit"
    )
    if edits:
        value, support = edits.most_common(1)[0]
        if support >= MIN_CORRECTIONS_FOR_PATTERN:
            patterns.append(
                Pattern(
                    pattern=value,
                    action="replace",
                    support=support,
                    confidence=pattern_confidence(support),
                )
            )

    patterns.sort(key=lambda p: (-p.support, p.pattern))
    return patterns


class ConfidenceTracker:
    """Feedback transitions for one workflow step.

    ``step_order=None`` tracks the workflow as a whole, which only affects
    which corrections are considered for recent counts and patterns.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        workflow_id: str,
        step_order: Optional[int] = None,
    ) -> None:
        self.repository = repository
        self.workflow_id = workflow_id
        self.step_order = step_order

    # Transitions -------------------------------------------------------
    def on_approval(self, confidence: float) -> float:
        return clamp(confidence + APPROVAL_INCREMENT)

    async def on_correction(
        self,
        confidence: float,
        correction_type: str,
        original: Any,
        corrected: Any,
    ) -> float:
        """Record the correction, then lower the score once."""
        for before, after in correction_rows(correction_type, original, corrected):
            await self.repository.record_correction(
                self.workflow_id,
                self.step_order or 0,
                correction_type,
                before,
                after,
            )
        return clamp(confidence - CORRECTION_DECREMENT)

    def on_skip(self, confidence: float) -> float:
        return clamp(confidence - SKIP_DECREMENT)

    # Queries -----------------------------------------------------------
    @staticmethod
    def is_autonomous(confidence: float) -> bool:
        return confidence >= AUTONOMOUS_THRESHOLD

    @staticmethod
    def ready_for_graduation(
        confidence: float, run_count: int, recent_corrections: int
    ) -> bool:
        return (
            confidence >= AUTONOMOUS_THRESHOLD
            and run_count >= MIN_RUNS_FOR_GRADUATION
            and recent_corrections <= MAX_RECENT_CORRECTIONS
        )

    @staticmethod
    def graduation_status(
        confidence: float, run_count: int, recent_corrections: int
    ) -> GraduationStatus:
        reasons = []
        if confidence < AUTONOMOUS_THRESHOLD:
            reasons.append(
                f"Confidence {confidence:.0%} below threshold ({AUTONOMOUS_THRESHOLD:.0%})"
            )
        if run_count < MIN_RUNS_FOR_GRADUATION:
            reasons.append(f"Only {run_count} runs (need {MIN_RUNS_FOR_GRADUATION})")
        if recent_corrections > MAX_RECENT_CORRECTIONS:
            reasons.append(
                f"{recent_corrections} recent corrections (need {MAX_RECENT_CORRECTIONS})"
            )
        return GraduationStatus(
            ready=not reasons,
            reasons=reasons,
            confidence=confidence,
            run_count=run_count,
            recent_corrections=recent_corrections,
        )

    async def get_corrections(self) -> List[CorrectionRecord]:
        return await self.repository.list_corrections(self.workflow_id, self.step_order)

    async def recent_correction_count(
        self, window_runs: int = MIN_RUNS_FOR_GRADUATION
    ) -> int:
        """Corrections made since the start of the N-th most recent run."""
        corrections = await self.get_corrections()
        runs = await self.repository.list_runs(self.workflow_id, limit=window_runs)
        if not runs:
            return len(corrections)
        cutoff = runs[-1].started_at
        return sum(1 for c in corrections if c.created_at >= cutoff)

    async def evaluate_graduation(
        self, confidence: float, run_count: int
    ) -> GraduationStatus:
        recent = await self.recent_correction_count()
        return self.graduation_status(confidence, run_count, recent)

    async def infer_patterns(self) -> List[Pattern]:
        patterns = infer_patterns_from(await self.get_corrections())
        if patterns:
            logger.info(
                f"Inferred {len(patterns)} correction patterns for workflow {self.workflow_id}"
            )
        return patterns
