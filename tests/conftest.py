"""Shared fixtures: synthetic Pillow images and fake loop collaborators.

Image factories build small deterministic rasters so tests never depend on
files in the repository. Fake collaborators script the convergence loop:
the renderer returns a queued sequence of screenshots (or raises), the
generator records every call.
"""

import io
import logging
import sys
from pathlib import Path

import numpy as np
import pytest
from PIL import Image, ImageDraw

from src.convergence.types import PatchResult
from src.utils import logging_config, validators
from src.utils.errors import CaptureTimeout
from src.visual_diff.types import RasterImage


@pytest.fixture(autouse=True)
def restore_root_logging():
    """Undo setup_logging() / install_excepthook() side effects of a test."""
    root = logging.getLogger()
    level = root.level
    excepthook = sys.excepthook
    yield
    sys.excepthook = excepthook
    logging_config.pop_context()
    for handler in list(root.handlers):
        if isinstance(handler.formatter, logging_config.ContextFormatter):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


# ============================================================================
# IMAGE FACTORIES
# ============================================================================

def solid(width, height, color=(255, 255, 255, 255)):
    """Solid RGBA RasterImage."""
    if len(color) == 3:
        color = tuple(color) + (255,)
    return RasterImage(Image.new("RGBA", (width, height), color))


def with_rect(image, box, color=(0, 0, 0, 255)):
    """Copy of ``image`` with a filled rectangle (left, top, right, bottom)."""
    img = image.pixels.copy()
    ImageDraw.Draw(img).rectangle(box, fill=color)
    return RasterImage(img)


def png_bytes(image):
    buf = io.BytesIO()
    image.pixels.save(buf, format="PNG")
    return buf.getvalue()


def gradient(width, height):
    """Horizontal gray ramp, fully opaque."""
    row = np.linspace(0, 255, width).astype(np.uint8)
    gray = np.tile(row, (height, 1))
    rgba = np.stack([gray, gray, gray, np.full_like(gray, 255)], axis=-1)
    return RasterImage.from_array(rgba)


@pytest.fixture
def white_128():
    return solid(128, 128)


@pytest.fixture
def design_with_box():
    """128×128 white design with a black 40×40 box at (20, 20)."""
    return with_rect(solid(128, 128), (20, 20, 59, 59))


# ============================================================================
# CONFIG
# ============================================================================

@pytest.fixture
def cfg():
    """Validated default config, fast settings for loop tests."""
    return validators.load_convergence_config(
        overrides={"comparison": {"max_iterations": 5}},
        environ={},
    )


# ============================================================================
# FAKE COLLABORATORS
# ============================================================================

class ScriptedRenderer:
    """Returns queued screenshots in order; exceptions in the queue are raised."""

    def __init__(self, frames):
        self.frames = list(frames)
        self.routes = []

    def capture(self, route):
        self.routes.append(route)
        if not self.frames:
            raise CaptureTimeout("no more frames")
        frame = self.frames.pop(0)
        if isinstance(frame, Exception):
            raise frame
        return frame


class RecordingGenerator:
    """Produces versioned code and records every patch request."""

    def __init__(self, initial=None, patch_errors=None):
        self.initial = initial if initial is not None else {"src/app/page.tsx": "v0"}
        self.patch_errors = list(patch_errors or [])
        self.initial_calls = 0
        self.patch_calls = []

    def generate_initial(self):
        self.initial_calls += 1
        return dict(self.initial)

    def generate_patch(self, strategy, current_code, comparison, report):
        self.patch_calls.append((strategy, dict(current_code)))
        if self.patch_errors:
            error = self.patch_errors.pop(0)
            if error is not None:
                raise error
        version = f"v{len(self.patch_calls)}"
        return PatchResult(
            new_code={"src/app/page.tsx": version},
            files_modified=("src/app/page.tsx",),
        )


class FixedVision:
    """Vision scorer returning a constant score (or raising)."""

    def __init__(self, score=None, error=None):
        self.value = score
        self.error = error
        self.calls = 0

    def score(self, design, rendered, heatmap):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.value


class ManualClock:
    """Clock advanced explicitly by tests."""

    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def project_dir(tmp_path) -> Path:
    d = tmp_path / "project"
    d.mkdir()
    return d
