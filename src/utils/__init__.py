"""Cross-cutting utilities (lowest dependency layer).

This package provides shared primitives for:
    - Config validation (validators)
    - Atomic I/O (fs)
    - Image similarity metrics and score blending (metrics)
    - Profiling (profiler)
    - Hashing for provenance (hashing)
    - Unified logging (logging_config)
    - Exception taxonomy (errors)

No module in utils/ may import from upper layers (visual_diff, convergence).

Convenience imports:
    from src.utils import fs, metrics, validators
    from src.utils.logging_config import setup_logging, get_logger
"""

# Re-export commonly used modules for convenience
from . import errors
from . import fs
from . import hashing
from . import logging_config
from . import metrics
from . import profiler
from . import validators

# Common functions for direct import
from .logging_config import get_logger, push_context, setup_logging

__all__ = [
    # Modules
    'errors',
    'fs',
    'hashing',
    'logging_config',
    'metrics',
    'profiler',
    'validators',
    # Direct exports
    'setup_logging',
    'get_logger',
    'push_context',
]
