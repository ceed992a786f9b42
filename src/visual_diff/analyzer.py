"""Difference classification and report building.

Provides:
    - classify_region(): Region → Classification (vision label or heuristics)
    - assign_priority(): Classification → Priority
    - analyze_differences(): ComparisonResult (+ optional vision) → DiffReport
    - generate_report_text(): Plain-text rendering of a DiffReport

Classification rules:
    - A vision-model label, when present, maps 1:1 onto Classification;
      unrecognised labels become UNKNOWN
    - Otherwise: width or height > 200 px → POSITION,
      diff_intensity > 0.5 → COLOR, else UNKNOWN

Priority:
    missing, extra, position → high
    size, spacing            → medium
    color, font, unknown     → low

Strategy hint: FULL_REGEN when the overall score is below 0.7, otherwise
SURGICAL_PATCH.
"""

from typing import Optional

from .types import (
    AnalyzedRegion,
    Classification,
    ComparisonResult,
    DiffRegion,
    DiffReport,
    PatchStrategy,
    Priority,
    VisionAnalysis,
    VisionDifference,
    priority_for,
)

LARGE_REGION_PX = 200
COLOR_INTENSITY = 0.5
FULL_REGEN_BELOW = 0.7

_PRIORITY_ORDER = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}
_BADGES = {Priority.HIGH: "[HIGH]", Priority.MEDIUM: "[MED]", Priority.LOW: "[LOW]"}


def classify_region(
    region: DiffRegion,
    vision_difference: Optional[VisionDifference] = None
) -> Classification:
    """Classify one region.

    Parameters
    ----------
    region : DiffRegion
        Region to classify
    vision_difference : VisionDifference, optional
        Model-provided difference paired with this region

    Returns
    -------
    Classification
    """
    if vision_difference is not None:
        try:
            return Classification(str(vision_difference.type).lower())
        except ValueError:
            return Classification.UNKNOWN

    if region.width > LARGE_REGION_PX or region.height > LARGE_REGION_PX:
        return Classification.POSITION
    if region.diff_intensity > COLOR_INTENSITY:
        return Classification.COLOR
    return Classification.UNKNOWN


def assign_priority(classification: Classification) -> Priority:
    return priority_for(classification)


def _summary(high: int, medium: int, low: int) -> str:
    total = high + medium + low
    if total == 0:
        return "No significant differences found."
    plural = "s" if total > 1 else ""
    return (
        f"Found {total} difference{plural}: "
        f"{high} high, {medium} medium, {low} low priority."
    )


def analyze_differences(
    comparison: ComparisonResult,
    vision: Optional[VisionAnalysis] = None
) -> DiffReport:
    """Build a prioritized difference report.

    Parameters
    ----------
    comparison : ComparisonResult
        Output of compare_images()
    vision : VisionAnalysis, optional
        Vision-model analysis; difference ``i`` is paired with region ``i``

    Returns
    -------
    DiffReport
        Regions sorted high → medium → low (stable within a priority),
        overall score (vision similarity if given, else composite score),
        summary and suggested strategy

    Examples
    --------
    >>> report = analyze_differences(result)
    >>> report.summary
    'Found 2 differences: 1 high, 0 medium, 1 low priority.'
    """
    differences = vision.differences if vision is not None else ()

    analyzed = []
    for i, region in enumerate(comparison.diff_regions):
        paired = differences[i] if i < len(differences) else None
        description = paired.description if paired is not None and paired.description else None
        analyzed.append(AnalyzedRegion(
            region=region,
            classification=classify_region(region, paired),
            description=description or f"Difference in region at ({region.x}, {region.y})",
            fix_suggestion=paired.fix_suggestion if paired is not None else None,
        ))

    # sorted() is stable: equal priorities keep intensity order
    analyzed.sort(key=lambda r: _PRIORITY_ORDER[r.priority])

    score = vision.similarity_score if vision is not None else comparison.composite_score
    strategy = PatchStrategy.FULL_REGEN if score < FULL_REGEN_BELOW else PatchStrategy.SURGICAL_PATCH

    counts = {p: sum(1 for r in analyzed if r.priority is p) for p in Priority}

    return DiffReport(
        overall_score=float(score),
        region_count=len(analyzed),
        regions=tuple(analyzed),
        summary=_summary(counts[Priority.HIGH], counts[Priority.MEDIUM], counts[Priority.LOW]),
        suggested_strategy=strategy,
    )


def generate_report_text(report: DiffReport) -> str:
    """Render a report as plain text.

    Format::

        Overall Score: 0.873 | Differences: 2 regions

        1. [HIGH] Difference in region at (0, 64)
           Fix: increase the header height
        2. [LOW] Difference in region at (320, 0)
    """
    lines = [
        f"Overall Score: {report.overall_score:.3f} | Differences: {report.region_count} regions",
        "",
    ]

    if not report.regions:
        lines.append("No significant differences found.")
        return "\n".join(lines)

    for i, region in enumerate(report.regions, start=1):
        lines.append(f"{i}. {_BADGES[region.priority]} {region.description}")
        if region.fix_suggestion:
            lines.append(f"   Fix: {region.fix_suggestion}")

    return "\n".join(lines)
