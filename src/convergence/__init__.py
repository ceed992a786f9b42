"""Convergence loop: iterate code until its rendering matches the design.

Each round captures the rendered UI, compares it with the design
(src.visual_diff), records the score and decides whether to stop, roll back
to the best earlier code, or switch between full regeneration and surgical
patching.

Modules:
    - types: IterationRecord, StrategyRecommendation, LoopResult, enums
    - policy: categorize_iteration, suggest_strategy (pure decisions)
    - state_machine: LoopState + transition(state, event) (pure)
    - controller: ConvergenceController (effectful driver)
    - collaborators: Renderer / CodeGenerator / CodeStore / VisionScorer protocols
    - store: FileCodeStore (backups), ArtifactWriter (reports)

Invariants:
    - History is append-only and bounded by max_iterations
    - Backup N holds the code scored in round N; backups are write-once
    - Timeout and cancellation are stop reasons, never exceptions
    - Only one round is in flight at a time
"""

from .collaborators import CancellationToken, CodeGenerator, CodeStore, Renderer, VisionScorer
from .controller import ConvergenceController
from .policy import best_iteration, build_iteration_record, categorize_iteration, suggest_strategy
from .state_machine import LoopState, transition
from .store import ArtifactWriter, FileCodeStore
from .types import (
    IterationCategory,
    IterationRecord,
    IterationState,
    LoopPhase,
    LoopResult,
    PatchResult,
    PatchStrategy,
    StopReason,
    StrategyRecommendation,
)

__all__ = [
    'ArtifactWriter',
    'CancellationToken',
    'CodeGenerator',
    'CodeStore',
    'ConvergenceController',
    'FileCodeStore',
    'LoopState',
    'Renderer',
    'VisionScorer',
    'best_iteration',
    'build_iteration_record',
    'categorize_iteration',
    'suggest_strategy',
    'transition',
    # Records
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
