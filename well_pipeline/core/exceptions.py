"""
Exception Hierarchy

Job-level errors are caught by the stage that raised them and turned into a
failure message for the correlator; they never cross a task boundary.
Setup errors are fatal at startup.
"""

from typing import Optional, Dict, Any

from well_pipeline.core.logging import job_id_var


class WellPipelineException(Exception):
    """Base exception for the well pipeline."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        job_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.job_id = job_id or job_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "error_type": type(self).__name__,
            "code": self.code,
            "job_id": self.job_id,
            "stage": self.stage,
            "details": self.details,
        }


# =============================================================================
# Per-job errors
# =============================================================================

class JobError(WellPipelineException):
    """Raised when a single job cannot be processed. Other jobs are unaffected."""

    def __init__(self, message: str, stage: str, **kwargs):
        kwargs.setdefault("code", 422)
        super().__init__(message, stage=stage, **kwargs)


class DecodeError(JobError):
    """Raised when the image could not be fetched or decoded."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, stage="image_loading", code=400, **kwargs)


class InferenceError(JobError):
    """Raised when the inference engine failed for an image."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, stage="inference", code=500, **kwargs)


class NoRegionFound(JobError):
    """Raised when no circular well could be located in the image."""

    def __init__(self, message: str = "No circles found in image", **kwargs):
        super().__init__(message, stage="well_centering", **kwargs)


class NoPrimaryInstance(JobError):
    """Raised when the prediction contains no drop instance."""

    def __init__(self, message: str = "No drop instances in prediction", **kwargs):
        super().__init__(message, stage="postprocessing", **kwargs)


class NoValidInteriorPoint(JobError):
    """Raised when no pixel of the drop is clear of crystals."""

    def __init__(self, message: str = "No valid insertion points", **kwargs):
        super().__init__(message, stage="postprocessing", **kwargs)


class JobTimeoutError(JobError):
    """Raised when a job did not complete within the configured window."""

    def __init__(self, timeout_ms: int, **kwargs):
        super().__init__(
            f"Job did not complete within {timeout_ms}ms",
            stage="correlator",
            code=504,
            **kwargs
        )
        self.details["timeout_ms"] = timeout_ms


# =============================================================================
# Setup and internal errors
# =============================================================================

class TransportError(WellPipelineException):
    """Raised when the job queue cannot be reached."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=503, **kwargs)


class ModelLoadError(WellPipelineException):
    """Raised when the inference model cannot be loaded."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, stage="inference", **kwargs)


class ChannelClosedError(WellPipelineException):
    """Raised when receiving from a channel which has been permanently closed."""

    def __init__(self, message: str = "Channel closed", **kwargs):
        super().__init__(message, code=500, **kwargs)


class ProtocolViolation(WellPipelineException):
    """Raised when a result arrives for a job with no recorded reply destination."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, stage="correlator", **kwargs)
