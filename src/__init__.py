"""Design Convergence: drive rendered UI toward a target design image.

This package measures how close a rendered screenshot is to a design image
and runs the generate → render → compare → patch loop that closes the gap.

Architecture layers (strict one-way dependency):
    scripts/ → src/convergence/ → src/visual_diff/ → src/utils/

Key invariants:
    - All scores in [0, 1]; higher is closer to the design
    - Per-pixel comparison only on aligned (same-size) image pairs
    - Records are immutable; the controller owns the iteration history
    - YAML-only configs, no JSON
    - Rendering, code generation and vision scoring are injected collaborators
"""

__version__ = "0.1.0"
