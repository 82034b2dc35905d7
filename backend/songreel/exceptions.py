"""Exception taxonomy for the songreel pipeline.

StageFailure, ProviderUnavailable and unexpected errors end a run. SegmentGenerationError
and AnalysisParseError are recovered locally by the stage that raises them.
RunConflict and ProjectNotFound are reported synchronously to the caller and
never change project state. RunSuperseded stops a run quietly.
"""

import uuid


class SongreelError(Exception):
    """Base class for all songreel errors."""


class ProjectNotFound(SongreelError):
    """Raised when an operation targets a project id that does not exist."""

    def __init__(self, project_id: uuid.UUID):
        super().__init__(f"Project {project_id} not found")
        self.project_id = project_id


class RunConflict(SongreelError):
    """Raised when a run cannot start because of the project's current status."""

    def __init__(self, project_id: uuid.UUID, status: str):
        super().__init__(f"Project {project_id} is already being processed (status: {status})")
        self.project_id = project_id
        self.status = status


class ProviderUnavailable(SongreelError):
    """Content provider could not be reached or refused the request."""


class AnalysisParseError(SongreelError):
    """Content provider answered but the analysis payload could not be parsed."""


class SegmentGenerationError(SongreelError):
    """Synthesis or encoding failed for a single segment."""


class EncoderError(SongreelError):
    """Media encoder invocation failed."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class StageFailure(SongreelError):
    """A pipeline stage failed in a way that ends the run."""


class NoClipsToAssemble(StageFailure):
    """Assembly was requested for a project without any clips."""


class AssemblyFailed(StageFailure):
    """The media encoder could not produce the final video."""


class RunSuperseded(SongreelError):
    """The run lost ownership of its project (deleted, or claimed by another caller)."""
