#!/usr/bin/env python3
"""Compare a design image with a screenshot and report the differences.

Runs the visual diff pipeline once, outside the convergence loop:
    1. Load config (configs/converge.v1.yaml by default, if present) and
       configure logging from its logging: section
    2. compare_images(design, screenshot) with the diff: section settings
    3. analyze_differences() → prioritized report
    4. Print the report text
    5. Optionally save heatmap, diff image, region crops and report.yaml

Refactored architecture:
    - compare_main(design, screenshot, ...) → dict
        * Callable function (used by tests and other tooling)
        * Returns: {comparison, report, report_text, passed, outputs}
    - CLI entry point: if __name__ == "__main__"

CLI:
    python scripts/compare.py design.png screenshot.png
    python scripts/compare.py design.png screenshot.png --output out/ --threshold 0.9

Output structure (with --output):
    <output_dir>/
        heatmap.png
        diff.png
        crop-{n}-design.png
        crop-{n}-screenshot.png
        report.yaml

Exit codes:
    0: Composite score >= threshold
    1: Composite score below threshold
    2: Input or configuration error
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.utils import fs, validators
from src.utils.errors import ConfigValidationError, DecodeError
from src.utils.logging_config import install_excepthook, setup_logging
from src.utils.validators import ConvergeConfigV1
from src.visual_diff import analyze_differences, compare_images, generate_report_text

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path("configs/converge.v1.yaml")


def _load_config(config_path: Optional[str], threshold: Optional[float]) -> ConvergeConfigV1:
    overrides = {"comparison": {"threshold": threshold}} if threshold is not None else None
    return validators.load_convergence_config(config_path, overrides=overrides)


def compare_main(
    design_path: str,
    screenshot_path: str,
    output_dir: Optional[str] = None,
    config_path: Optional[str] = None,
    threshold: Optional[float] = None,
    cfg: Optional[ConvergeConfigV1] = None,
) -> Dict[str, Any]:
    """Compare two image files.

    Parameters
    ----------
    design_path : str
        Design image file
    screenshot_path : str
        Screenshot image file
    output_dir : str, optional
        Where to save heatmap, diff, crops and report.yaml; nothing saved if None
    config_path : str, optional
        converge.v1 config; defaults when None
    threshold : float, optional
        Pass threshold override (comparison.threshold)
    cfg : ConvergeConfigV1, optional
        Already loaded config; config_path and threshold are ignored when given

    Returns
    -------
    Dict[str, Any]
        - comparison: ComparisonResult
        - report: DiffReport
        - report_text: str
        - passed: bool (composite score >= threshold)
        - outputs: dict of saved file paths

    Raises
    ------
    FileNotFoundError
        If an image or the config file does not exist
    DecodeError
        If an image cannot be decoded
    ConfigValidationError
        If the config or threshold override is invalid
    """
    if cfg is None:
        cfg = _load_config(config_path, threshold)

    comparison = compare_images(design_path, screenshot_path, cfg.diff)
    report = analyze_differences(comparison)
    report_text = generate_report_text(report)
    passed = comparison.composite_score >= cfg.comparison.threshold

    outputs: Dict[str, str] = {}
    if output_dir is not None:
        out = fs.ensure_dir(output_dir)
        fs.atomic_save_image(comparison.heatmap, out / "heatmap.png")
        fs.atomic_save_image(comparison.pixel_diff.diff_image, out / "diff.png")
        outputs["heatmap"] = str(out / "heatmap.png")
        outputs["diff"] = str(out / "diff.png")

        for n, pair in enumerate(comparison.crop_pairs, start=1):
            fs.atomic_save_image(pair.design, out / f"crop-{n}-design.png")
            fs.atomic_save_image(pair.screenshot, out / f"crop-{n}-screenshot.png")

        fs.atomic_yaml_dump(
            {
                "design": str(design_path),
                "screenshot": str(screenshot_path),
                "composite_score": round(comparison.composite_score, 6),
                "ssim": round(comparison.ssim.mssim, 6),
                "diff_percentage": round(comparison.pixel_diff.diff_percentage, 6),
                "threshold": cfg.comparison.threshold,
                "passed": passed,
                "summary": report.summary,
                "suggested_strategy": report.suggested_strategy.value,
                "regions": [
                    {
                        "x": r.region.x,
                        "y": r.region.y,
                        "width": r.region.width,
                        "height": r.region.height,
                        "diff_intensity": round(r.region.diff_intensity, 6),
                        "pixel_count": r.region.pixel_count,
                        "classification": r.classification.value,
                        "priority": r.priority.value,
                    }
                    for r in report.regions
                ],
            },
            out / "report.yaml",
        )
        outputs["report"] = str(out / "report.yaml")
        logger.info(f"Saved comparison artifacts to {out}")

    return {
        "comparison": comparison,
        "report": report,
        "report_text": report_text,
        "passed": passed,
        "outputs": outputs,
    }


def main(argv=None) -> int:
    """CLI entrypoint."""
    parser = argparse.ArgumentParser(
        description="Compare a design image with a rendered screenshot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/compare.py design.png screenshot.png
  python scripts/compare.py design.png screenshot.png --output out/ --threshold 0.9
""",
    )
    parser.add_argument("design", type=Path, help="Design image (PNG, JPEG, ...)")
    parser.add_argument("screenshot", type=Path, help="Screenshot image")
    parser.add_argument(
        "--output",
        "-o",
        type=Path,
        default=None,
        help="Directory for heatmap, diff, crops and report.yaml",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"converge.v1 config (default: {DEFAULT_CONFIG} if it exists)",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Pass threshold for the composite score (overrides config)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging (overrides logging.log_level)",
    )

    args = parser.parse_args(argv)

    config_path = args.config
    if config_path is None and DEFAULT_CONFIG.exists():
        config_path = DEFAULT_CONFIG

    try:
        cfg = _load_config(str(config_path) if config_path else None, args.threshold)
    except (FileNotFoundError, ConfigValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    log_kwargs = cfg.logging.setup_kwargs()
    if args.verbose:
        log_kwargs["log_level"] = "DEBUG"
    setup_logging(**log_kwargs, context={"app": "compare"})
    install_excepthook()

    try:
        result = compare_main(
            str(args.design),
            str(args.screenshot),
            output_dir=str(args.output) if args.output else None,
            cfg=cfg,
        )
    except (FileNotFoundError, DecodeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    print(result["report_text"])
    return 0 if result["passed"] else 1


if __name__ == "__main__":
    sys.exit(main())
