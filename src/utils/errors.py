"""Exception taxonomy for the diff pipeline and convergence loop.

Scope of each error:
    - DecodeError: malformed image input, aborts the current comparison only
    - CaptureTimeout: raised by the rendering collaborator, aborts the current round
    - PatchGenerationError: raised by the code-generation collaborator, aborts
      the current round (previously written code stays on disk)
    - ConfigValidationError: fatal at startup, never raised mid-run
    - InvalidTransition: programming error in the loop driver (phase/event mismatch)

Regression, wall-clock timeout and user cancellation are NOT exceptions:
they are ordinary stop reasons / state transitions of the controller.
"""


class ConvergeError(Exception):
    """Base class for all errors raised by this package."""


class DecodeError(ConvergeError):
    """Image bytes or file could not be decoded into a raster."""


class CaptureTimeout(ConvergeError):
    """Screenshot capture did not settle within its bounded timeout."""


class PatchGenerationError(ConvergeError):
    """Code generation collaborator failed to produce a patch."""


class ConfigValidationError(ConvergeError, ValueError):
    """Configuration failed schema validation."""


class InvalidTransition(ConvergeError):
    """Event is not accepted in the current loop phase."""

    def __init__(self, phase, event):
        self.phase = phase
        self.event = event
        super().__init__(
            f"Event {type(event).__name__} not allowed in phase '{getattr(phase, 'value', phase)}'"
        )


# Errors that abort one round of the loop without ending the run
ROUND_ERRORS = (DecodeError, CaptureTimeout, PatchGenerationError)
