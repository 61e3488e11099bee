"""
Pipeline Schemas

Wire models exchanged over the job queue, and the in-process types handed
between pipeline stages.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Literal, Union

import numpy as np
from pydantic import BaseModel, Field


# =============================================================================
# Wire models
# =============================================================================

class JobRequest(BaseModel):
    """A job descriptor as received from the job queue."""
    id: str = Field(..., min_length=1)
    image_reference: str = Field(..., min_length=1, description="URL or path of the image to process")


class Point(BaseModel):
    """A point in image pixel coordinates."""
    x: int
    y: int


class Circle(BaseModel):
    """A circle, defined by its center point and radius."""
    center: Point
    radius: float


class BBox(BaseModel):
    """An axis aligned bounding box."""
    left: float
    top: float
    right: float
    bottom: float


class ResponseStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class SuccessResponse(BaseModel):
    """The image was processed successfully, producing the contained predictions."""
    status: Literal[ResponseStatus.SUCCESS] = ResponseStatus.SUCCESS
    job_id: str
    insertion_point: Point
    region_of_interest: Circle
    primary_box: BBox
    secondary_boxes: List[BBox] = Field(default_factory=list)


class FailureResponse(BaseModel):
    """Image processing failed, with the contained error."""
    status: Literal[ResponseStatus.FAILURE] = ResponseStatus.FAILURE
    job_id: str
    error: str


Response = Union[SuccessResponse, FailureResponse]


# =============================================================================
# In-process types
# =============================================================================

@dataclass(frozen=True)
class Job:
    """One unit of work, immutable once received."""
    id: str
    image_reference: str
    reply_to: str


@dataclass
class PreparedImage:
    """
    The two tensors derived from one job's image.

    chimp_image is RGB, float32 in [0, 1], laid out [C, H, W] at the model
    input size. well_image is the single channel uint8 image at its original
    resolution.
    """
    chimp_image: np.ndarray
    well_image: np.ndarray


@dataclass
class RawDetections:
    """Unprocessed per-instance output of the inference engine for one image."""
    boxes: np.ndarray   # [N, 4] left, top, right, bottom
    labels: np.ndarray  # [N]
    scores: np.ndarray  # [N]
    masks: np.ndarray   # [N, H, W]

    def __post_init__(self):
        count = len(self.labels)
        if not (len(self.boxes) == len(self.scores) == len(self.masks) == count):
            raise ValueError(
                f"Detection arrays differ in length: boxes={len(self.boxes)}, "
                f"labels={count}, scores={len(self.scores)}, masks={len(self.masks)}"
            )

    def __len__(self) -> int:
        return len(self.labels)


@dataclass
class Contents:
    """The predicted contents of a well image."""
    insertion_point: Point
    drop: BBox
    crystals: List[BBox] = field(default_factory=list)


def success_response(job: Job, well_location: Circle, contents: Contents) -> SuccessResponse:
    return SuccessResponse(
        job_id=job.id,
        insertion_point=contents.insertion_point,
        region_of_interest=well_location,
        primary_box=contents.drop,
        secondary_boxes=contents.crystals,
    )


def failure_response(job: Job, error: Exception) -> FailureResponse:
    return FailureResponse(job_id=job.id, error=str(error))
