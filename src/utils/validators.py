"""YAML schema validation and config loading.

Provides centralized validation of the convergence configuration using pydantic:
    - Convergence schema (converge.v1.yaml): stop thresholds, iteration caps,
      diff pipeline tuning, captured route, timeouts, logging

All entrypoints must load configs through these validators for fail-fast error
detection with actionable messages (offending keys, expected ranges).
Validation failures raise ConfigValidationError; they are fatal at startup and
never raised mid-run.

Precedence (lowest → highest):
    schema defaults → YAML file → CONVERGE_* environment variables → explicit overrides

Units:
    - Scores: [0.0, 1.0]
    - Timeouts: seconds
    - Geometry: pixels

Usage:
    from src.utils import validators

    cfg = validators.load_convergence_config("configs/converge.v1.yaml")
    cfg = validators.load_convergence_config(overrides={"comparison": {"threshold": 0.9}})
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigValidationError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "converge.v1"


# ============================================================================
# CONVERGENCE SCHEMA V1
# ============================================================================

class ComparisonConfig(BaseModel):
    """Stop and strategy-switch thresholds of the convergence loop."""
    model_config = ConfigDict(extra="forbid")

    threshold: float = Field(0.95, ge=0.8, le=0.99, description="Composite score that counts as success")
    max_iterations: int = Field(10, ge=1, le=50, description="Hard cap on rounds per run")
    improvement_threshold: float = Field(
        0.01, ge=0.0, le=0.1, description="Score delta at or below which a round is 'stalled'"
    )
    patch_switch_threshold: float = Field(
        0.7, ge=0.3, le=0.95, description="Below: full regeneration; at or above: surgical patch"
    )
    max_failed_rounds: int = Field(
        3, ge=1, le=10, description="Consecutive failed rounds before the run stops with 'error'"
    )

    @model_validator(mode='after')
    def validate_switch_below_threshold(self) -> 'ComparisonConfig':
        if self.patch_switch_threshold > self.threshold:
            raise ValueError(
                f"patch_switch_threshold ({self.patch_switch_threshold}) must not exceed "
                f"threshold ({self.threshold})"
            )
        return self


class DiffConfig(BaseModel):
    """Tuning of the pixel diff / region / crop pipeline."""
    model_config = ConfigDict(extra="forbid")

    pixel_threshold: float = Field(0.1, ge=0.0, le=1.0, description="Per-pixel YIQ distance threshold")
    include_aa: bool = Field(False, description="Count anti-aliased pixels as differences")
    alpha: float = Field(0.1, ge=0.0, le=1.0, description="Opacity of unchanged pixels in the diff image")
    min_region_size: int = Field(100, ge=1, description="Minimum active pixels per region")
    grid_size: int = Field(32, ge=4, le=256, description="Region grid cell size (px)")
    max_crops: int = Field(5, ge=0, le=20, description="Region crop pairs kept per comparison")
    crop_padding: int = Field(20, ge=0, description="Padding around cropped regions (px)")
    ssim_window: int = Field(8, ge=2, le=64, description="SSIM window size (px)")
    vision_ssim_ceiling: float = Field(
        0.98, ge=0.0, le=1.0, description="Vision scoring only runs when SSIM is below this value"
    )


class RenderingConfig(BaseModel):
    """What the controller asks the rendering collaborator to capture."""
    model_config = ConfigDict(extra="forbid")

    route: str = Field("/", description="Route passed to Renderer.capture() each round")

    @field_validator('route')
    @classmethod
    def validate_route(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"route must start with '/', got '{v}'")
        return v


class TimeoutsConfig(BaseModel):
    """Wall-clock budgets (seconds)."""
    model_config = ConfigDict(extra="forbid")

    overall: float = Field(1800.0, gt=0, description="Whole-run budget; exceeding it stops with 'timeout'")


class LoggingConfig(BaseModel):
    """Arguments forwarded to logging_config.setup_logging()."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    log_level: str = Field("INFO")
    log_file: Optional[str] = Field(None)
    json_format: bool = Field(False, alias="json")
    color: bool = Field(True)

    @field_validator('log_level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got '{v}'")
        return v.upper()

    def setup_kwargs(self) -> Dict[str, Any]:
        return {
            "log_level": self.log_level,
            "log_file": self.log_file,
            "json": self.json_format,
            "color": self.color,
        }


class ConvergeConfigV1(BaseModel):
    """Convergence configuration (converge.v1.yaml schema)."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    schema_version: str = Field(SCHEMA_VERSION, alias="schema", description="Schema version")
    comparison: ComparisonConfig = Field(default_factory=ComparisonConfig)
    diff: DiffConfig = Field(default_factory=DiffConfig)
    rendering: RenderingConfig = Field(default_factory=RenderingConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('schema_version')
    @classmethod
    def validate_schema(cls, v: str) -> str:
        if v != SCHEMA_VERSION:
            raise ValueError(f"Expected schema '{SCHEMA_VERSION}', got '{v}'")
        return v


# ============================================================================
# LOADING
# ============================================================================

# env var → (section, key, parser)
ENV_OVERRIDES = {
    "CONVERGE_THRESHOLD": ("comparison", "threshold", float),
    "CONVERGE_MAX_ITERATIONS": ("comparison", "max_iterations", int),
    "CONVERGE_ROUTE": ("rendering", "route", str),
    "CONVERGE_TIMEOUT": ("timeouts", "overall", float),
    "CONVERGE_LOG_LEVEL": ("logging", "log_level", str),
}


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``.

    Nested mappings merge key by key; any other value (including lists and
    explicit None) replaces the base value.
    """
    result = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(result.get(key), Mapping):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Collect CONVERGE_* environment overrides as a nested dict.

    Raises
    ------
    ConfigValidationError
        If a variable cannot be parsed as its target type
    """
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for var, (section, key, parse) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw == "":
            continue
        try:
            value = parse(raw)
        except ValueError as e:
            raise ConfigValidationError(f"Invalid value for {var}={raw!r}: {e}") from e
        overrides.setdefault(section, {})[key] = value
    return overrides


def _format_validation_error(err: ValidationError) -> str:
    lines = []
    for item in err.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "<root>"
        lines.append(f"{loc}: {item.get('msg')}")
    return "; ".join(lines)


def validate_convergence_config(data: Mapping[str, Any], source: str = "<dict>") -> ConvergeConfigV1:
    """Validate a raw mapping against the converge.v1 schema.

    Raises
    ------
    ConfigValidationError
        With every offending key path and message
    """
    try:
        return ConvergeConfigV1.model_validate(dict(data))
    except ValidationError as e:
        raise ConfigValidationError(
            f"Convergence config validation failed at {source}: {_format_validation_error(e)}"
        ) from e


def load_convergence_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ConvergeConfigV1:
    """Load and validate the convergence config.

    Parameters
    ----------
    path : Union[str, Path], optional
        converge.v1.yaml file; None uses schema defaults only
    overrides : Mapping, optional
        Highest-priority nested overrides (e.g. from CLI flags)
    environ : Mapping, optional
        Environment to read CONVERGE_* variables from (default os.environ)

    Returns
    -------
    ConvergeConfigV1
        Validated configuration

    Raises
    ------
    FileNotFoundError
        If ``path`` is given but doesn't exist
    ConfigValidationError
        If validation fails (with actionable error message)
    """
    from . import fs

    data: Dict[str, Any] = {}
    source = "<defaults>"
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Convergence config not found: {path}")
        loaded = fs.load_yaml(path)
        if not isinstance(loaded, Mapping):
            raise ConfigValidationError(
                f"Convergence config at {path} must be a mapping, got {type(loaded).__name__}"
            )
        data = dict(loaded)
        source = str(path)

    data = deep_merge(data, env_overrides(environ))
    if overrides:
        data = deep_merge(data, overrides)

    cfg = validate_convergence_config(data, source)
    logger.debug(f"Loaded convergence config from {source}")
    return cfg


def flatten_config(cfg: Union[Mapping[str, Any], BaseModel], parent_key: str = "", sep: str = ".") -> Dict[str, Any]:
    """Flatten nested config to dotted keys (for run summaries).

    Examples
    --------
    >>> flatten_config(cfg)["comparison.threshold"]
    0.95
    """
    if isinstance(cfg, BaseModel):
        cfg = cfg.model_dump(by_alias=True)

    items: Dict[str, Any] = {}
    for k, v in cfg.items():
        new_key = f"{parent_key}{sep}{k}" if parent_key else k
        if isinstance(v, Mapping):
            items.update(flatten_config(v, new_key, sep=sep))
        else:
            items[new_key] = v
    return items
