"""Exception types shared by the build stages."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base class for errors raised by the image build pipeline."""


class ConfigurationError(PipelineError):
    """A required tool, model, or setting is missing; the run cannot continue."""


class ToolInvocationError(PipelineError):
    """An external upscaler exited non-zero or produced no output."""

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class IntegrityViolation(PipelineError):
    """The canonical metadata file changed while the pipeline was running."""
