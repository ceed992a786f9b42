"""Interfaces of the collaborators the convergence loop drives.

The loop core performs no browser automation, LLM calls or network I/O
itself. Those capabilities are injected as objects satisfying these
protocols (structural typing, no inheritance required):

    - Renderer: screenshot capture of a route
    - CodeGenerator: initial code and per-round patches
    - CodeStore: write / backup / restore of project files, per run
      (store.FileCodeStore is the on-disk implementation)
    - VisionScorer: optional model-based similarity score

Failure contract:
    - Renderer.capture may raise CaptureTimeout (round fails, run continues)
    - CodeGenerator methods may raise PatchGenerationError (round fails)
    - VisionScorer may raise anything; the loop falls back to SSIM only
"""

import threading
from typing import Dict, Iterable, Mapping, Optional, Protocol, Union, runtime_checkable

from ..visual_diff.types import ComparisonResult, DiffReport, RasterImage, VisionAnalysis
from .types import PatchResult, PatchStrategy


@runtime_checkable
class Renderer(Protocol):
    def capture(self, route: str) -> Union[RasterImage, bytes]:
        """Screenshot of ``route`` after the page settles (PNG bytes or raster)."""
        ...


@runtime_checkable
class CodeGenerator(Protocol):
    def generate_initial(self) -> Dict[str, str]:
        """Full first version of the code: relative path → contents."""
        ...

    def generate_patch(
        self,
        strategy: PatchStrategy,
        current_code: Mapping[str, str],
        comparison: ComparisonResult,
        report: DiffReport,
    ) -> PatchResult:
        ...


@runtime_checkable
class CodeStore(Protocol):
    def start_run(self, run_id: str) -> object:
        """Scope backups to one run; a new run never sees older backups."""
        ...

    def write_files(self, code: Mapping[str, str]) -> object:
        ...

    def backup_files(self, paths: Iterable[str], iteration: int) -> object:
        ...

    def has_backup(self, iteration: int) -> bool:
        ...

    def restore_backup(self, iteration: int) -> Dict[str, str]:
        ...


@runtime_checkable
class VisionScorer(Protocol):
    def score(
        self,
        design: RasterImage,
        rendered: RasterImage,
        heatmap: RasterImage,
    ) -> Union[float, VisionAnalysis]:
        """Similarity in [0, 1], or a full VisionAnalysis."""
        ...


class CancellationToken:
    """Thread-safe cancel flag checked by the loop at phase boundaries.

    Examples
    --------
    >>> token = CancellationToken()
    >>> threading.Thread(target=controller.run).start()
    >>> token.cancel()  # loop stops with reason 'cancelled' at the next boundary
    """

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "user abort") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
