"""Records and enumerations of the convergence loop.

IterationRecord is the loop's only memory across rounds: immutable and
appended once per successfully analyzed round. StrategyRecommendation is
recomputed every round and never stored. IterationState is an observer
snapshot emitted on every phase transition. LoopResult is what a run returns.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple

from ..visual_diff.types import PatchStrategy

__all__ = [
    'IterationCategory',
    'IterationRecord',
    'IterationState',
    'LoopPhase',
    'LoopResult',
    'PatchResult',
    'PatchStrategy',
    'StopReason',
    'StrategyRecommendation',
]


class StopReason(str, enum.Enum):
    SUCCESS = "success"
    MAX_ITERATIONS = "max_iterations"
    TIMEOUT = "timeout"
    CONVERGED = "converged"
    CANCELLED = "cancelled"
    ERROR = "error"


class IterationCategory(str, enum.Enum):
    """How a round's score relates to the previous round."""

    FIRST = "first"
    IMPROVED = "improved"
    STALLED = "stalled"
    REGRESSED = "regressed"
    ACHIEVED = "achieved"


class LoopPhase(str, enum.Enum):
    IDLE = "idle"
    GENERATING = "generating"
    CAPTURING = "capturing"
    COMPARING = "comparing"
    ANALYZING = "analyzing"
    PATCHING = "patching"
    WAITING_HMR = "waiting_hmr"
    DONE = "done"


@dataclass(frozen=True)
class IterationRecord:
    """One analyzed round.

    Parameters
    ----------
    iteration : int
        1-based round number
    score : float
        Composite score of the code that was on disk during this round
    strategy : PatchStrategy
        Strategy in effect when the round was scored
    files_modified : tuple[str, ...]
        Files written by the generation / patch that produced this code
    elapsed_ms : int
        Run wall-clock at the time the round was recorded
    category : IterationCategory
        Relation to the previous round's score
    timestamp : float
        Epoch seconds
    """

    iteration: int
    score: float
    strategy: PatchStrategy
    files_modified: Tuple[str, ...]
    elapsed_ms: int
    category: IterationCategory
    timestamp: float


@dataclass(frozen=True)
class StrategyRecommendation:
    strategy: PatchStrategy
    reason: str
    should_stop: bool = False
    stop_reason: Optional[StopReason] = None
    should_rollback: bool = False
    rollback_to: Optional[int] = None


@dataclass(frozen=True)
class PatchResult:
    """Output of the code-generation collaborator.

    ``new_code`` maps project-relative paths to full file contents; files not
    listed keep their current contents.
    """

    new_code: Dict[str, str]
    files_modified: Tuple[str, ...] = ()


@dataclass(frozen=True)
class IterationState:
    """Observer snapshot of the loop, one per phase transition."""

    iteration: int
    max_iterations: int
    status: LoopPhase
    score: float
    previous_score: Optional[float]
    improvement: float
    strategy: PatchStrategy
    stop_reason: Optional[StopReason]
    diff_count: int
    elapsed_ms: int
    history: Tuple[IterationRecord, ...]


@dataclass(frozen=True)
class LoopResult:
    final_score: float
    total_iterations: int
    stop_reason: StopReason
    final_code: Dict[str, str]
    report_dir: Path
    history: Tuple[IterationRecord, ...] = ()
    elapsed_ms: int = 0
    failed_rounds: int = 0
