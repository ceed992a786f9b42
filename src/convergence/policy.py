"""Per-round decision logic of the convergence loop (pure functions).

Provides:
    - categorize_iteration(): Score delta → IterationCategory
    - suggest_strategy(): Score + history → StrategyRecommendation
    - best_iteration(): Highest-scoring record (first occurrence on ties)
    - build_iteration_record(): IterationRecord constructor with timestamp

Decision order of suggest_strategy() (first match wins):
    1. score >= threshold                  → stop (success)
    2. len(history) >= max_iterations      → stop (max_iterations)
    3. last 3 records all 'stalled'        → stop (converged)
    4. last recorded score > score         → roll back to the best iteration,
                                             flip the last record's strategy
    5. otherwise                           → full_regen below
                                             patch_switch_threshold,
                                             surgical_patch at or above

``history`` passed to suggest_strategy() holds the PREVIOUS rounds only;
the caller appends the current round's record after deciding.

No I/O, no clock except build_iteration_record()'s default timestamp.
"""

import time
from typing import Optional, Sequence

from ..utils.validators import ComparisonConfig
from .types import (
    IterationCategory,
    IterationRecord,
    PatchStrategy,
    StopReason,
    StrategyRecommendation,
)

STALL_WINDOW = 3


def categorize_iteration(
    current: float,
    previous: Optional[float],
    threshold: float,
    improvement_threshold: float
) -> IterationCategory:
    """Categorize a round relative to the previous one.

    Precedence: first > achieved > improved > regressed > stalled.

    Examples
    --------
    >>> categorize_iteration(0.5, None, 0.95, 0.01)
    <IterationCategory.FIRST: 'first'>
    >>> categorize_iteration(0.96, 0.8, 0.95, 0.01)
    <IterationCategory.ACHIEVED: 'achieved'>
    >>> categorize_iteration(0.8, 0.85, 0.95, 0.01)
    <IterationCategory.REGRESSED: 'regressed'>
    """
    if previous is None:
        return IterationCategory.FIRST
    if current >= threshold:
        return IterationCategory.ACHIEVED
    if current - previous > improvement_threshold:
        return IterationCategory.IMPROVED
    if current < previous:
        return IterationCategory.REGRESSED
    return IterationCategory.STALLED


def best_iteration(history: Sequence[IterationRecord]) -> Optional[IterationRecord]:
    """Highest-scoring record; the earliest one wins ties. None if empty."""
    best = None
    for record in history:
        if best is None or record.score > best.score:
            best = record
    return best


def suggest_strategy(
    score: float,
    history: Sequence[IterationRecord],
    cfg: ComparisonConfig
) -> StrategyRecommendation:
    """Decide what the loop does after a round.

    Parameters
    ----------
    score : float
        Composite score of the current round
    history : Sequence[IterationRecord]
        Records of all previous rounds, oldest first
    cfg : ComparisonConfig
        threshold, max_iterations, patch_switch_threshold

    Returns
    -------
    StrategyRecommendation
    """
    if score >= cfg.threshold:
        return StrategyRecommendation(
            strategy=PatchStrategy.SURGICAL_PATCH,
            reason="Target threshold reached",
            should_stop=True,
            stop_reason=StopReason.SUCCESS,
        )

    if len(history) >= cfg.max_iterations:
        return StrategyRecommendation(
            strategy=PatchStrategy.SURGICAL_PATCH,
            reason="Maximum iterations reached",
            should_stop=True,
            stop_reason=StopReason.MAX_ITERATIONS,
        )

    recent = list(history)[-STALL_WINDOW:]
    if len(recent) == STALL_WINDOW and all(r.category is IterationCategory.STALLED for r in recent):
        return StrategyRecommendation(
            strategy=PatchStrategy.SURGICAL_PATCH,
            reason=f"Score converged: {STALL_WINDOW} consecutive iterations without improvement",
            should_stop=True,
            stop_reason=StopReason.CONVERGED,
        )

    if history:
        last = history[-1]
        if last.score > score:
            best = best_iteration(history)
            return StrategyRecommendation(
                strategy=PatchStrategy(last.strategy).flipped(),
                reason=(
                    f"Score regressed from {last.score:.3f} to {score:.3f}, "
                    f"rolling back to iteration {best.iteration}"
                ),
                should_rollback=True,
                rollback_to=best.iteration,
            )

    if score < cfg.patch_switch_threshold:
        return StrategyRecommendation(
            strategy=PatchStrategy.FULL_REGEN,
            reason=f"Score {score:.3f} below patch threshold {cfg.patch_switch_threshold}",
        )
    return StrategyRecommendation(
        strategy=PatchStrategy.SURGICAL_PATCH,
        reason=f"Score {score:.3f} above patch threshold, using surgical fixes",
    )


def build_iteration_record(
    iteration: int,
    score: float,
    strategy: PatchStrategy,
    files_modified: Sequence[str],
    elapsed_ms: int,
    category: IterationCategory,
    timestamp: Optional[float] = None
) -> IterationRecord:
    """Create an IterationRecord (timestamp defaults to now, epoch seconds)."""
    return IterationRecord(
        iteration=int(iteration),
        score=float(score),
        strategy=PatchStrategy(strategy),
        files_modified=tuple(files_modified),
        elapsed_ms=int(elapsed_ms),
        category=IterationCategory(category),
        timestamp=time.time() if timestamp is None else float(timestamp),
    )
