"""Pure transition function of the convergence loop.

Provides:
    - LoopState: Immutable loop state
    - Events: GenerationStarted, CodeGenerated, CaptureStarted,
      ScreenshotCaptured, Compared, Analyzed, PatchApplied, RoundFailed, Stopped
    - transition(state, event) → new LoopState
    - snapshot(state, ...) → IterationState for observers

Phase graph:

    idle ──GenerationStarted──▶ generating ──CodeGenerated──▶ waiting_hmr
    idle | waiting_hmr ──CaptureStarted──▶ capturing
    capturing ──ScreenshotCaptured──▶ comparing ──Compared──▶ analyzing
    analyzing ──Analyzed──▶ patching        (done if the recommendation stops)
    patching ──PatchApplied──▶ waiting_hmr
    capturing | comparing | analyzing | patching ──RoundFailed──▶ idle
    any phase except done ──Stopped──▶ done

Any other (phase, event) pair raises InvalidTransition. The driver
(controller.py) performs all I/O; this module only folds events into state.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Tuple

from ..utils.errors import InvalidTransition
from .types import (
    IterationRecord,
    IterationState,
    LoopPhase,
    PatchStrategy,
    StopReason,
    StrategyRecommendation,
)


@dataclass(frozen=True)
class LoopState:
    """Immutable state of one run.

    ``failed_rounds`` counts consecutive failures and resets once a round
    completes with a patch applied.
    """

    phase: LoopPhase = LoopPhase.IDLE
    iteration: int = 0
    score: float = 0.0
    strategy: PatchStrategy = PatchStrategy.FULL_REGEN
    history: Tuple[IterationRecord, ...] = ()
    stop_reason: Optional[StopReason] = None
    diff_count: int = 0
    failed_rounds: int = 0
    files_modified: Tuple[str, ...] = ()

    @property
    def previous_score(self) -> Optional[float]:
        """Score of the latest round recorded before the current iteration."""
        for record in reversed(self.history):
            if record.iteration < self.iteration:
                return record.score
        return None

    @property
    def done(self) -> bool:
        return self.phase is LoopPhase.DONE


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GenerationStarted:
    pass


@dataclass(frozen=True)
class CodeGenerated:
    files_modified: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CaptureStarted:
    iteration: int


@dataclass(frozen=True)
class ScreenshotCaptured:
    pass


@dataclass(frozen=True)
class Compared:
    score: float
    diff_count: int


@dataclass(frozen=True)
class Analyzed:
    record: IterationRecord
    recommendation: StrategyRecommendation


@dataclass(frozen=True)
class PatchApplied:
    files_modified: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RoundFailed:
    error: str = ""


@dataclass(frozen=True)
class Stopped:
    reason: StopReason


_ROUND_PHASES = (LoopPhase.CAPTURING, LoopPhase.COMPARING, LoopPhase.ANALYZING, LoopPhase.PATCHING)


def transition(state: LoopState, event) -> LoopState:
    """Fold one event into the state.

    Raises
    ------
    InvalidTransition
        If ``event`` is not accepted in ``state.phase``
    """
    phase = state.phase

    if isinstance(event, Stopped) and phase is not LoopPhase.DONE:
        return replace(state, phase=LoopPhase.DONE, stop_reason=StopReason(event.reason))

    if isinstance(event, GenerationStarted) and phase is LoopPhase.IDLE:
        return replace(state, phase=LoopPhase.GENERATING, strategy=PatchStrategy.FULL_REGEN)

    if isinstance(event, CodeGenerated) and phase is LoopPhase.GENERATING:
        return replace(state, phase=LoopPhase.WAITING_HMR, files_modified=tuple(event.files_modified))

    if isinstance(event, CaptureStarted) and phase in (LoopPhase.IDLE, LoopPhase.WAITING_HMR):
        if event.iteration <= state.iteration:
            raise InvalidTransition(phase, event)
        return replace(state, phase=LoopPhase.CAPTURING, iteration=event.iteration, diff_count=0)

    if isinstance(event, ScreenshotCaptured) and phase is LoopPhase.CAPTURING:
        return replace(state, phase=LoopPhase.COMPARING)

    if isinstance(event, Compared) and phase is LoopPhase.COMPARING:
        return replace(state, phase=LoopPhase.ANALYZING, score=float(event.score),
                       diff_count=int(event.diff_count))

    if isinstance(event, Analyzed) and phase is LoopPhase.ANALYZING:
        rec = event.recommendation
        history = state.history + (event.record,)
        if rec.should_stop:
            return replace(state, phase=LoopPhase.DONE, history=history,
                           score=event.record.score, stop_reason=rec.stop_reason)
        return replace(state, phase=LoopPhase.PATCHING, history=history,
                       score=event.record.score, strategy=rec.strategy)

    if isinstance(event, PatchApplied) and phase is LoopPhase.PATCHING:
        return replace(state, phase=LoopPhase.WAITING_HMR, failed_rounds=0,
                       files_modified=tuple(event.files_modified))

    if isinstance(event, RoundFailed) and phase in _ROUND_PHASES:
        return replace(state, phase=LoopPhase.IDLE, failed_rounds=state.failed_rounds + 1)

    raise InvalidTransition(phase, event)


def snapshot(state: LoopState, max_iterations: int, elapsed_ms: int) -> IterationState:
    """Observer view of ``state``."""
    previous = state.previous_score
    return IterationState(
        iteration=state.iteration,
        max_iterations=max_iterations,
        status=state.phase,
        score=state.score,
        previous_score=previous,
        improvement=state.score - previous if previous is not None else 0.0,
        strategy=state.strategy,
        stop_reason=state.stop_reason,
        diff_count=state.diff_count,
        elapsed_ms=int(elapsed_ms),
        history=state.history,
    )
