"""Test the convergence loop end to end with scripted collaborators.

Tests for src.convergence.controller.ConvergenceController:
    - Success on the first matching screenshot
    - Regression → rollback to the best iteration's backup, flipped strategy
    - Backup N holds the code scored in round N, in this run's namespace:
      a second run in the same project rolls back to its own backups
    - Three stalled rounds → converged
    - Iteration cap → max_iterations, the last round's code is never patched
    - Overall timeout (manual clock) → timeout, never an exception
    - Cancellation before and during a run → cancelled
    - Capture / patch failures consume the round, run continues
    - max_failed_rounds consecutive failures → error
    - Initial generation (and its failure)
    - Vision scorer blending, vision failure falls back to SSIM
    - Missing rollback backup → warning, current code kept
    - Failed backup is never restored, even if the store reports one
    - Unexpected error → run stopped with error, summary written, re-raised
    - Observer snapshots, per-iteration artifacts and summary.yaml

Score fixtures (128×128 design, black box at 20..59):
    - design itself            → SSIM 1.0
    - one extra 16×16 block    → SSIM ≈ 0.984 (4 of 256 windows differ)
    - blank white page         → SSIM ≈ 0.86

Run:
    pytest tests/test_controller.py -v
"""

import logging

import pytest

from conftest import FixedVision, ManualClock, RecordingGenerator, ScriptedRenderer, solid, with_rect
from src.convergence import ArtifactWriter, CancellationToken, ConvergenceController, FileCodeStore
from src.convergence.types import LoopPhase, PatchResult, PatchStrategy, StopReason
from src.utils import fs, hashing, metrics, validators
from src.utils.errors import CaptureTimeout, PatchGenerationError
from src.visual_diff import compare_images

PAGE = "src/app/page.tsx"


@pytest.fixture
def near(design_with_box):
    """Almost the design: one extra window-aligned block."""
    return with_rect(design_with_box, (80, 80, 95, 95))


@pytest.fixture
def blank():
    return solid(128, 128)


def _cfg(**sections):
    overrides = {"comparison": {"max_iterations": 5}}
    for section, values in sections.items():
        overrides = validators.deep_merge(overrides, {section: values})
    return validators.load_convergence_config(overrides=overrides, environ={})


def _controller(project_dir, design, frames, cfg=None, generator=None, store=None,
                existing=True, **kwargs):
    store = store or FileCodeStore(project_dir)
    existing_code = None
    if existing:
        existing_code = existing if isinstance(existing, dict) else {PAGE: "v0"}
        store.write_files(existing_code)
    controller = ConvergenceController(
        design=design,
        renderer=kwargs.pop("renderer", None) or ScriptedRenderer(frames),
        generator=generator or RecordingGenerator(),
        store=store,
        cfg=cfg or _cfg(),
        project_dir=project_dir,
        existing_code=existing_code,
        **kwargs,
    )
    return controller


# ============================================================================
# STOP REASONS
# ============================================================================

def test_success_first_round(project_dir, design_with_box):
    generator = RecordingGenerator()
    controller = _controller(project_dir, design_with_box, [design_with_box], generator=generator)
    result = controller.run()

    assert result.stop_reason is StopReason.SUCCESS
    assert result.total_iterations == 1
    assert result.final_score == pytest.approx(1.0)
    assert result.final_code == {PAGE: "v0"}
    assert generator.patch_calls == []
    assert controller.state.phase is LoopPhase.DONE


def test_success_after_patch(project_dir, design_with_box, blank):
    generator = RecordingGenerator()
    controller = _controller(project_dir, design_with_box, [blank, design_with_box], generator=generator)
    result = controller.run()

    assert result.stop_reason is StopReason.SUCCESS
    assert result.total_iterations == 2
    assert [r.iteration for r in result.history] == [1, 2]
    assert result.history[0].score < 0.95
    assert len(generator.patch_calls) == 1
    assert generator.patch_calls[0] == (PatchStrategy.SURGICAL_PATCH, {PAGE: "v0"})
    assert result.final_code == {PAGE: "v1"}
    assert (project_dir / PAGE).read_text() == "v1"


def test_regression_rolls_back(project_dir, design_with_box, near, blank):
    cfg = _cfg(comparison={"threshold": 0.99})
    generator = RecordingGenerator()
    store = FileCodeStore(project_dir)
    controller = _controller(project_dir, design_with_box, [near, blank, design_with_box],
                             cfg=cfg, generator=generator, store=store)
    result = controller.run()

    assert result.stop_reason is StopReason.SUCCESS
    assert result.total_iterations == 3
    assert result.history[1].score < result.history[0].score

    # Round 2 regressed: code restored to the round-1 backup before patching
    strategy, code_seen = generator.patch_calls[1]
    assert code_seen == {PAGE: "v0"}
    assert strategy is PatchStrategy.SURGICAL_PATCH

    # Backup N holds exactly the code scored in round N
    assert store.load_backup(1) == {PAGE: "v0"}
    assert store.load_backup(2) == {PAGE: "v1"}
    assert result.final_code == {PAGE: "v2"}


@pytest.mark.parametrize("run_ids", [("run-1", "run-2"), ("run-1", "run-1")])
def test_second_run_rolls_back_to_its_own_backup(project_dir, design_with_box, near, blank, run_ids):
    cfg = _cfg(comparison={"threshold": 0.99})
    first = _controller(project_dir, design_with_box, [blank, design_with_box], cfg=cfg,
                        existing={PAGE: "OLD-RUN"},
                        artifacts=ArtifactWriter(project_dir, run_id=run_ids[0]))
    assert first.run().stop_reason is StopReason.SUCCESS

    generator = RecordingGenerator()
    store = FileCodeStore(project_dir)
    second = _controller(project_dir, design_with_box, [near, blank, design_with_box], cfg=cfg,
                         generator=generator, store=store,
                         artifacts=ArtifactWriter(project_dir, run_id=run_ids[1]))
    result = second.run()

    assert result.stop_reason is StopReason.SUCCESS
    # Round 2 regressed: rolled back to this run's iteration 1, not the old run's
    assert generator.patch_calls[1][1] == {PAGE: "v0"}
    assert store.run_id == run_ids[1]
    assert store.load_backup(1) == {PAGE: "v0"}


def test_converged_after_three_stalled_rounds(project_dir, design_with_box, near):
    cfg = _cfg(comparison={"threshold": 0.99})
    generator = RecordingGenerator()
    controller = _controller(project_dir, design_with_box, [near] * 5, cfg=cfg, generator=generator)
    result = controller.run()

    assert result.stop_reason is StopReason.CONVERGED
    assert result.total_iterations == 5
    assert [r.category.value for r in result.history] == [
        "first", "stalled", "stalled", "stalled", "stalled"
    ]
    assert len(generator.patch_calls) == 4


def test_max_iterations(project_dir, design_with_box, near, blank):
    cfg = _cfg(comparison={"threshold": 0.99, "max_iterations": 2})
    generator = RecordingGenerator()
    store = FileCodeStore(project_dir)
    controller = _controller(project_dir, design_with_box, [blank, near], cfg=cfg,
                             generator=generator, store=store)
    result = controller.run()

    assert result.stop_reason is StopReason.MAX_ITERATIONS
    assert result.total_iterations == 2
    assert len(result.history) == 2
    assert result.final_score == pytest.approx(result.history[-1].score)

    # The last round's code is the scored code: no unscored patch after it
    assert len(generator.patch_calls) == 1
    assert result.final_code == {PAGE: "v1"}
    assert (project_dir / PAGE).read_text() == "v1"
    assert not store.has_backup(2)


def test_timeout_is_a_stop_reason(project_dir, design_with_box, blank):
    clock = ManualClock()

    class SlowRenderer(ScriptedRenderer):
        def capture(self, route):
            clock.advance(6.0)
            return super().capture(route)

    cfg = _cfg(timeouts={"overall": 10})
    controller = _controller(
        project_dir, design_with_box, None, cfg=cfg,
        renderer=SlowRenderer([blank] * 5), clock=clock,
    )
    result = controller.run()

    assert result.stop_reason is StopReason.TIMEOUT
    assert result.total_iterations == 2
    assert result.elapsed_ms == 12000


def test_cancel_before_start(project_dir, design_with_box):
    token = CancellationToken()
    token.cancel()
    renderer = ScriptedRenderer([design_with_box])
    controller = _controller(project_dir, design_with_box, None, renderer=renderer, cancel_token=token)
    result = controller.run()

    assert result.stop_reason is StopReason.CANCELLED
    assert result.total_iterations == 0
    assert result.final_score == 0.0
    assert renderer.routes == []


def test_cancel_during_capture(project_dir, design_with_box, blank):
    token = CancellationToken()

    class CancellingRenderer(ScriptedRenderer):
        def capture(self, route):
            if len(self.routes) == 1:
                token.cancel("stop requested")
            return super().capture(route)

    generator = RecordingGenerator()
    controller = _controller(
        project_dir, design_with_box, None, generator=generator,
        renderer=CancellingRenderer([blank, blank, blank]), cancel_token=token,
    )
    result = controller.run()

    assert result.stop_reason is StopReason.CANCELLED
    assert result.total_iterations == 2
    assert len(result.history) == 1
    assert len(generator.patch_calls) == 1
    assert token.reason == "stop requested"


# ============================================================================
# FAILURES
# ============================================================================

def test_capture_failure_consumes_round(project_dir, design_with_box):
    controller = _controller(project_dir, design_with_box,
                             [CaptureTimeout("page never settled"), design_with_box])
    result = controller.run()

    assert result.stop_reason is StopReason.SUCCESS
    assert result.total_iterations == 2
    assert result.failed_rounds == 1
    assert [r.iteration for r in result.history] == [2]


def test_max_failed_rounds_stops_with_error(project_dir, design_with_box):
    frames = [CaptureTimeout("timeout")] * 3 + [design_with_box]
    controller = _controller(project_dir, design_with_box, frames)
    result = controller.run()

    assert result.stop_reason is StopReason.ERROR
    assert result.total_iterations == 3
    assert result.failed_rounds == 3
    assert result.history == ()


def test_patch_failure_consumes_round(project_dir, design_with_box, blank):
    generator = RecordingGenerator(patch_errors=[PatchGenerationError("model unavailable")])
    controller = _controller(project_dir, design_with_box, [blank, blank, design_with_box],
                             generator=generator)
    result = controller.run()

    assert result.stop_reason is StopReason.SUCCESS
    assert result.failed_rounds == 1
    assert len(result.history) == 3
    # The failed round's code stays on disk
    assert generator.patch_calls[1][1] == {PAGE: "v0"}


def test_decode_failure_consumes_round(project_dir, design_with_box):
    controller = _controller(project_dir, design_with_box, [b"garbage", design_with_box])
    result = controller.run()

    assert result.stop_reason is StopReason.SUCCESS
    assert result.failed_rounds == 1


def test_missing_backup_keeps_current_code(project_dir, design_with_box, near, blank, caplog):
    class NoBackupStore(FileCodeStore):
        def backup_files(self, paths, iteration):
            raise OSError("disk full")

    cfg = _cfg(comparison={"threshold": 0.99})
    generator = RecordingGenerator()
    controller = _controller(project_dir, design_with_box, [near, blank, design_with_box],
                             cfg=cfg, generator=generator, store=NoBackupStore(project_dir))

    with caplog.at_level(logging.WARNING, logger="src.convergence.controller"):
        result = controller.run()

    assert result.stop_reason is StopReason.SUCCESS
    strategy, code_seen = generator.patch_calls[1]
    assert code_seen == {PAGE: "v1"}
    assert strategy is PatchStrategy.SURGICAL_PATCH
    assert "No backup for iteration 1" in caplog.text


def test_failed_backup_never_restored(project_dir, design_with_box, near, blank, caplog):
    class LeftoverStore(FileCodeStore):
        """Backups fail, yet every iteration looks backed up."""

        def backup_files(self, paths, iteration):
            raise OSError("disk full")

        def has_backup(self, iteration):
            return True

        def restore_backup(self, iteration):
            raise AssertionError("restored a backup this run never wrote")

    cfg = _cfg(comparison={"threshold": 0.99})
    generator = RecordingGenerator()
    controller = _controller(project_dir, design_with_box, [near, blank, design_with_box],
                             cfg=cfg, generator=generator, store=LeftoverStore(project_dir))

    with caplog.at_level(logging.WARNING, logger="src.convergence.controller"):
        result = controller.run()

    assert result.stop_reason is StopReason.SUCCESS
    assert generator.patch_calls[1][1] == {PAGE: "v1"}
    assert "Backup of iteration 1 failed" in caplog.text
    assert "No backup for iteration 1" in caplog.text


def test_unexpected_error_stops_run_and_writes_summary(project_dir, design_with_box, blank):
    class EscapingGenerator(RecordingGenerator):
        def generate_patch(self, strategy, current_code, comparison, report):
            super().generate_patch(strategy, current_code, comparison, report)
            return PatchResult(new_code={"../outside.tsx": "x"}, files_modified=("../outside.tsx",))

    controller = _controller(project_dir, design_with_box, [blank, design_with_box],
                             generator=EscapingGenerator())

    with pytest.raises(ValueError, match="escapes project directory"):
        controller.run()

    assert controller.state.phase is LoopPhase.DONE
    assert controller.state.stop_reason is StopReason.ERROR
    assert not (project_dir.parent / "outside.tsx").exists()
    summary = fs.load_yaml(controller.artifacts.report_dir / "summary.yaml")
    assert summary["stop_reason"] == "error"
    assert summary["total_iterations"] == 1


# ============================================================================
# GENERATION AND VISION
# ============================================================================

def test_initial_generation(project_dir, design_with_box):
    generator = RecordingGenerator(initial={PAGE: "initial", "src/app/layout.tsx": "layout"})
    controller = _controller(project_dir, design_with_box, [design_with_box],
                             generator=generator, existing=False)
    result = controller.run()

    assert generator.initial_calls == 1
    assert result.stop_reason is StopReason.SUCCESS
    assert (project_dir / PAGE).read_text() == "initial"
    assert result.history[0].strategy is PatchStrategy.FULL_REGEN
    assert result.history[0].files_modified == ("src/app/layout.tsx", PAGE)


def test_initial_generation_failure(project_dir, design_with_box):
    class FailingGenerator(RecordingGenerator):
        def generate_initial(self):
            raise PatchGenerationError("no model")

    renderer = ScriptedRenderer([design_with_box])
    controller = _controller(project_dir, design_with_box, None, renderer=renderer,
                             generator=FailingGenerator(), existing=False)
    result = controller.run()

    assert result.stop_reason is StopReason.ERROR
    assert result.total_iterations == 0
    assert result.failed_rounds == 1
    assert renderer.routes == []


def test_vision_score_blended(project_dir, design_with_box, blank):
    cfg = _cfg(comparison={"threshold": 0.9})
    vision = FixedVision(score=1.0)
    controller = _controller(project_dir, design_with_box, [blank], cfg=cfg, vision=vision)
    result = controller.run()

    ssim = compare_images(design_with_box, blank).ssim.mssim
    assert vision.calls == 1
    assert result.history[0].score == pytest.approx(metrics.composite_score(ssim, vision=1.0))
    assert result.stop_reason is StopReason.SUCCESS


def test_vision_skipped_above_ceiling(project_dir, design_with_box):
    vision = FixedVision(score=0.0)
    controller = _controller(project_dir, design_with_box, [design_with_box], vision=vision)
    result = controller.run()

    assert vision.calls == 0
    assert result.final_score == pytest.approx(1.0)


def test_vision_failure_falls_back(project_dir, design_with_box, blank, caplog):
    vision = FixedVision(error=RuntimeError("api unavailable"))
    controller = _controller(project_dir, design_with_box, [blank, design_with_box], vision=vision)

    with caplog.at_level(logging.WARNING, logger="src.convergence.controller"):
        result = controller.run()

    ssim = compare_images(design_with_box, blank).ssim.mssim
    assert result.stop_reason is StopReason.SUCCESS
    assert result.history[0].score == pytest.approx(ssim)
    assert "Vision scoring failed" in caplog.text


# ============================================================================
# OBSERVERS AND ARTIFACTS
# ============================================================================

def test_progress_snapshots(project_dir, design_with_box, blank):
    snapshots = []
    controller = _controller(project_dir, design_with_box, [blank, design_with_box],
                             on_progress=snapshots.append)
    controller.run()

    statuses = [s.status for s in snapshots]
    assert statuses[0] is LoopPhase.CAPTURING
    assert statuses[-1] is LoopPhase.DONE
    assert LoopPhase.PATCHING in statuses
    assert LoopPhase.WAITING_HMR in statuses
    assert all(s.max_iterations == 5 for s in snapshots)

    second_round = [s for s in snapshots if s.iteration == 2 and s.status is LoopPhase.ANALYZING]
    assert second_round[0].previous_score == pytest.approx(snapshots[-1].history[0].score)
    assert second_round[0].improvement > 0


def test_artifacts_and_summary(project_dir, design_with_box, blank):
    controller = _controller(project_dir, design_with_box, [blank, design_with_box])
    result = controller.run()

    report_dir = result.report_dir
    assert report_dir.parent == project_dir / ".converge" / "reports"
    for name in ("iteration-1.png", "heatmap-1.png", "iteration-2.png", "heatmap-2.png"):
        assert (report_dir / name).is_file()

    summary = fs.load_yaml(report_dir / "summary.yaml")
    assert summary["stop_reason"] == "success"
    assert summary["total_iterations"] == 2
    assert len(summary["history"]) == 2
    assert summary["config"]["comparison.threshold"] == 0.95
    assert summary["design_sha256"] == hashing.sha256_image(design_with_box)


def test_route_from_config(project_dir, design_with_box):
    renderer = ScriptedRenderer([design_with_box])
    cfg = _cfg(rendering={"route": "/pricing"})
    _controller(project_dir, design_with_box, None, cfg=cfg, renderer=renderer).run()
    assert renderer.routes == ["/pricing"]
