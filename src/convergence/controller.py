"""Effectful driver of the convergence loop.

Runs capture → compare → analyze → patch rounds until a stop reason is
reached. Every decision is delegated to policy.py and every state change is
folded through state_machine.transition(); this module only performs I/O
and emits observer snapshots.

Round N:
    1. Stop checks: overall timeout, cancellation
    2. Capture the route, fit the screenshot to the design's dimensions
    3. compare_images(); optional vision score (only when SSIM < ceiling)
    4. Categorize, recommend, record; save iteration-N / heatmap-N
    5. Stop if recommended, or with 'max_iterations' after the last allowed
       round (a patch nothing would score is never generated)
    6. Back up the scored code as backup N of this run
    7. Roll back to the best iteration's backup on regression
    8. Ask the code generator for a patch with the chosen strategy, write it

Failure handling:
    - CaptureTimeout / DecodeError / PatchGenerationError abort the round;
      the iteration slot is consumed and the run continues
    - max_failed_rounds consecutive failures stop the run with 'error'
    - Vision scorer failures are logged at WARNING and ignored
    - A rollback target this run never backed up (or whose backup is
      unreadable) is logged at WARNING; the current code is kept and the
      flipped strategy still applies
    - Any other exception stops the run with 'error', writes summary.yaml
      and propagates

Usage:
    controller = ConvergenceController(
        design="design.png", renderer=renderer, generator=generator,
        store=FileCodeStore(project_dir), cfg=cfg, project_dir=project_dir,
    )
    result = controller.run()
"""

import logging
import time
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Union

from ..utils import metrics
from ..utils.errors import ROUND_ERRORS, PatchGenerationError
from ..utils.logging_config import context_scope
from ..utils.profiler import Stopwatch
from ..utils.validators import ConvergeConfigV1
from ..visual_diff.aligner import ImageSource, decode_image, resize_to_match
from ..visual_diff.analyzer import analyze_differences
from ..visual_diff.comparator import compare_images
from ..visual_diff.types import ComparisonResult, RasterImage, VisionAnalysis
from . import policy
from .collaborators import CancellationToken, CodeGenerator, CodeStore, Renderer, VisionScorer
from .state_machine import (
    Analyzed,
    CaptureStarted,
    CodeGenerated,
    Compared,
    GenerationStarted,
    LoopState,
    PatchApplied,
    RoundFailed,
    ScreenshotCaptured,
    Stopped,
    snapshot,
    transition,
)
from .store import ArtifactWriter
from .types import IterationState, LoopResult, StopReason

logger = logging.getLogger(__name__)


class ConvergenceController:
    """Drive rendered code toward a design image.

    Parameters
    ----------
    design : ImageSource
        Target design (path, PNG bytes or raster)
    renderer : Renderer
        Screenshot collaborator
    generator : CodeGenerator
        Code-generation collaborator
    store : CodeStore
        Persistence collaborator (FileCodeStore on disk)
    cfg : ConvergeConfigV1
        Validated configuration
    project_dir : Union[str, Path]
        Project root; reports go to ``{project_dir}/.converge/reports``
    vision : VisionScorer, optional
        Model-based scorer; SSIM-only composite when None
    existing_code : Mapping[str, str], optional
        Code already on disk; skips the initial generation
    on_progress : Callable[[IterationState], None], optional
        Observer called on every phase transition
    cancel_token : CancellationToken, optional
        Checked at phase boundaries
    artifacts : ArtifactWriter, optional
        Report writer, default one per run under project_dir
    clock : Callable[[], float]
        Monotonic clock in seconds (injectable for timeout tests)
    """

    def __init__(
        self,
        design: ImageSource,
        renderer: Renderer,
        generator: CodeGenerator,
        store: CodeStore,
        cfg: ConvergeConfigV1,
        project_dir: Union[str, Path],
        vision: Optional[VisionScorer] = None,
        existing_code: Optional[Mapping[str, str]] = None,
        on_progress: Optional[Callable[[IterationState], None]] = None,
        cancel_token: Optional[CancellationToken] = None,
        artifacts: Optional[ArtifactWriter] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.design = decode_image(design)
        self.renderer = renderer
        self.generator = generator
        self.store = store
        self.cfg = cfg
        self.project_dir = Path(project_dir)
        self.vision = vision
        self.on_progress = on_progress
        self.cancel_token = cancel_token
        self.artifacts = artifacts or ArtifactWriter(self.project_dir)
        self.route = cfg.rendering.route

        self._stopwatch = Stopwatch(clock)
        self._code: Dict[str, str] = dict(existing_code) if existing_code else {}
        self._state = LoopState()
        self._failed_total = 0
        self._backed_up = set()

    # ------------------------------------------------------------------
    # State plumbing
    # ------------------------------------------------------------------

    @property
    def state(self) -> LoopState:
        return self._state

    def _emit(self, event) -> LoopState:
        previous = self._state.phase
        self._state = transition(self._state, event)
        if self._state.phase is not previous:
            logger.info(f"Phase {previous.value} → {self._state.phase.value}")
        if self.on_progress is not None:
            self.on_progress(snapshot(
                self._state, self.cfg.comparison.max_iterations, self._stopwatch.elapsed_ms()
            ))
        return self._state

    def _cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.cancelled

    def _stop(self, reason: StopReason) -> None:
        if not self._state.done:
            self._emit(Stopped(reason))

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self) -> LoopResult:
        """Run the loop to completion.

        Returns
        -------
        LoopResult
            Final score, iterations used, stop reason, final code, report
            directory, full history

        Raises
        ------
        Exception
            Anything outside the round failure taxonomy (e.g. ValueError for
            a patch path escaping the project); the run is stopped with
            'error' and summary.yaml is written first
        """
        self._stopwatch.reset()
        self._backed_up.clear()
        cmp_cfg = self.cfg.comparison

        with context_scope(run=self.artifacts.run_id):
            logger.info(
                f"Starting convergence: design {self.design.width}x{self.design.height}, "
                f"threshold={cmp_cfg.threshold}, max_iterations={cmp_cfg.max_iterations}"
            )
            try:
                self.store.start_run(self.artifacts.run_id)
                self._loop()
            except Exception:
                logger.exception("Convergence run aborted by an unexpected error")
                self._stop(StopReason.ERROR)
                self._finish()
                raise

            return self._finish()

    def _loop(self) -> None:
        cmp_cfg = self.cfg.comparison

        if not self._code and not self._generate_initial():
            return

        for iteration in range(1, cmp_cfg.max_iterations + 1):
            if self._stopwatch.exceeded(self.cfg.timeouts.overall):
                logger.warning(f"Overall timeout of {self.cfg.timeouts.overall}s exceeded")
                self._stop(StopReason.TIMEOUT)
                break
            if self._cancelled():
                self._stop(StopReason.CANCELLED)
                break

            self._emit(CaptureStarted(iteration))
            with context_scope(iteration=iteration):
                try:
                    self._round(iteration)
                except ROUND_ERRORS as e:
                    self._fail_round(iteration, e)

            if self._state.done:
                break
            if self._state.failed_rounds >= cmp_cfg.max_failed_rounds:
                logger.error(f"{self._state.failed_rounds} consecutive failed rounds, giving up")
                self._stop(StopReason.ERROR)
                break

        self._stop(StopReason.MAX_ITERATIONS)

    def _generate_initial(self) -> bool:
        if self._cancelled():
            self._stop(StopReason.CANCELLED)
            return False

        self._emit(GenerationStarted())
        try:
            code = self.generator.generate_initial()
        except PatchGenerationError as e:
            logger.error(f"Initial code generation failed: {e}")
            self._failed_total += 1
            self._stop(StopReason.ERROR)
            return False

        self.store.write_files(code)
        self._code = dict(code)
        self._emit(CodeGenerated(tuple(sorted(code))))
        logger.info(f"Initial code generated: {len(code)} file(s)")
        return True

    def _round(self, iteration: int) -> None:
        cmp_cfg = self.cfg.comparison

        # Capture
        raw = self.renderer.capture(self.route)
        screenshot = resize_to_match(raw, self.design.width, self.design.height)
        self._emit(ScreenshotCaptured())
        if self._cancelled():
            self._stop(StopReason.CANCELLED)
            return

        # Compare
        comparison = compare_images(self.design, screenshot, self.cfg.diff)
        vision = self._vision_analysis(screenshot, comparison)
        score = metrics.composite_score(
            comparison.ssim.mssim,
            vision=vision.similarity_score if vision is not None else None,
        )
        self._emit(Compared(score=score, diff_count=len(comparison.diff_regions)))

        # Analyze and decide
        report = analyze_differences(comparison, vision)
        category = policy.categorize_iteration(
            score, self._state.previous_score, cmp_cfg.threshold, cmp_cfg.improvement_threshold
        )
        recommendation = policy.suggest_strategy(score, self._state.history, cmp_cfg)
        record = policy.build_iteration_record(
            iteration,
            score,
            self._state.strategy,
            self._state.files_modified,
            self._stopwatch.elapsed_ms(),
            category,
        )
        self._save_artifacts(iteration, screenshot, comparison)
        logger.info(
            f"Round {iteration}: score={score:.4f} ssim={comparison.ssim.mssim:.4f} "
            f"regions={len(comparison.diff_regions)} category={category.value} | "
            f"{recommendation.reason}"
        )
        self._emit(Analyzed(record=record, recommendation=recommendation))
        if self._state.done:
            return
        if iteration >= cmp_cfg.max_iterations:
            logger.info(f"Iteration cap {cmp_cfg.max_iterations} reached, keeping the scored code")
            self._stop(StopReason.MAX_ITERATIONS)
            return

        self._backup(iteration)
        if recommendation.should_rollback and recommendation.rollback_to is not None:
            self._rollback(recommendation.rollback_to)

        if self._cancelled():
            self._stop(StopReason.CANCELLED)
            return

        # Patch
        strategy = self._state.strategy
        patch = self.generator.generate_patch(strategy, dict(self._code), comparison, report)
        self.store.write_files(patch.new_code)
        self._code.update(patch.new_code)
        files = tuple(patch.files_modified) or tuple(sorted(patch.new_code))
        self._emit(PatchApplied(files))
        logger.info(f"Applied {strategy.value} patch to {len(files)} file(s)")

    def _fail_round(self, iteration: int, error: Exception) -> None:
        self._failed_total += 1
        logger.error(f"Round {iteration} failed ({type(error).__name__}): {error}")
        self._emit(RoundFailed(str(error)))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _vision_analysis(
        self,
        screenshot: RasterImage,
        comparison: ComparisonResult
    ) -> Optional[VisionAnalysis]:
        if self.vision is None or comparison.ssim.mssim >= self.cfg.diff.vision_ssim_ceiling:
            return None
        try:
            result = self.vision.score(self.design, screenshot, comparison.heatmap)
            if isinstance(result, VisionAnalysis):
                return result
            return VisionAnalysis(similarity_score=float(result))
        except Exception as e:
            logger.warning(f"Vision scoring failed, using SSIM only: {e}")
            return None

    def _save_artifacts(self, iteration: int, screenshot: RasterImage, comparison: ComparisonResult) -> None:
        try:
            self.artifacts.save_iteration(iteration, screenshot, comparison.heatmap)
        except (OSError, RuntimeError) as e:
            logger.warning(f"Could not save artifacts for iteration {iteration}: {e}")

    def _backup(self, iteration: int) -> None:
        try:
            self.store.backup_files(sorted(self._code), iteration)
        except (OSError, RuntimeError) as e:
            logger.warning(f"Backup of iteration {iteration} failed: {e}")
            return
        self._backed_up.add(iteration)

    def _rollback(self, target: int) -> None:
        if target not in self._backed_up or not self.store.has_backup(target):
            logger.warning(f"No backup for iteration {target}; keeping current code")
            return
        try:
            restored = self.store.restore_backup(target)
        except (OSError, ValueError) as e:
            logger.warning(f"Rollback to iteration {target} failed, keeping current code: {e}")
            return
        self._code = dict(restored)
        logger.info(f"Rolled back to iteration {target}")

    def _finish(self) -> LoopResult:
        state = self._state
        result = LoopResult(
            final_score=state.history[-1].score if state.history else 0.0,
            total_iterations=state.iteration,
            stop_reason=state.stop_reason or StopReason.ERROR,
            final_code=dict(self._code),
            report_dir=self.artifacts.report_dir,
            history=state.history,
            elapsed_ms=self._stopwatch.elapsed_ms(),
            failed_rounds=self._failed_total,
        )
        try:
            self.artifacts.write_summary(result, self.cfg, design=self.design)
        except (OSError, RuntimeError) as e:
            logger.warning(f"Could not write run summary: {e}")

        logger.info(
            f"Finished: {result.stop_reason.value} after {result.total_iterations} iteration(s), "
            f"score={result.final_score:.4f}"
        )
        return result
