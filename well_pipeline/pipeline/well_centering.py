"""
Well Centering

Locates the circular well in the grayscale image with a Hough circle
transform.
"""

import asyncio

import cv2
import numpy as np

from well_pipeline.core.exceptions import JobError, NoRegionFound
from well_pipeline.core.logging import LogContext, get_logger
from well_pipeline.core.metrics import track_stage_latency
from well_pipeline.pipeline.messages import MessageBus, RegionFound, StageFailed
from well_pipeline.pipeline.schemas import Circle, Job, Point

logger = get_logger(__name__)

# Hough gradient parameters
HOUGH_DP = 4.0
HOUGH_MIN_DIST = 1.0
CANNY_THRESHOLD = 100.0
ACCUMULATOR_THRESHOLD = 100.0


def find_well_location(image: np.ndarray) -> Circle:
    """
    Localise a circle of high contrast in the image.

    The circle is assumed to have a radius in [3/8 l, 1/2 l), where l is the
    shortest edge length of the image. The circle with the most accumulator
    votes is selected.

    Raises NoRegionFound if no circles were found.
    """
    min_side = min(image.shape[:2])
    circles = cv2.HoughCircles(
        image,
        cv2.HOUGH_GRADIENT,
        dp=HOUGH_DP,
        minDist=HOUGH_MIN_DIST,
        param1=CANNY_THRESHOLD,
        param2=ACCUMULATOR_THRESHOLD,
        minRadius=min_side * 3 // 8,
        maxRadius=min_side // 2,
    )
    if circles is None or circles.size == 0:
        raise NoRegionFound()

    circles = circles.reshape(-1, circles.shape[-1])
    # Circles come back ordered by votes; use the vote column when present
    best = circles[int(np.argmax(circles[:, 3]))] if circles.shape[1] > 3 else circles[0]

    return Circle(
        center=Point(x=int(best[0]), y=int(best[1])),
        radius=float(best[2]),
    )


async def well_centering(image: np.ndarray, job: Job, bus: MessageBus):
    """
    Find the well center and radius for a job.

    Publishes RegionFound on success, or StageFailed if no circle was found.
    """
    with LogContext(job_id=job.id, stage="well_centering"):
        logger.info("well_centering_started")
        try:
            with track_stage_latency("well_centering"):
                well_location = await asyncio.to_thread(find_well_location, image)
        except JobError as e:
            logger.warning("well_centering_failed", error=e.message)
            bus.publish(StageFailed(job, e))
            return
        except Exception as e:
            logger.exception("well_centering_crashed")
            bus.publish(StageFailed(job, JobError(f"Well centering failed: {e}", stage="well_centering", code=500)))
            return

        logger.info(
            "well_centering_completed",
            center_x=well_location.center.x,
            center_y=well_location.center.y,
            radius=well_location.radius,
        )
        bus.publish(RegionFound(job, well_location))
