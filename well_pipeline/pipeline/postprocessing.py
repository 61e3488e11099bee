"""
Inference Postprocessing

Turns the raw Mask R-CNN detections for one image into the drop and
crystal bounding boxes and the optimal point at which solvent should be
inserted.
"""

import asyncio
from typing import List, Tuple

import cv2
import numpy as np

from well_pipeline.core.exceptions import JobError, NoPrimaryInstance, NoValidInteriorPoint
from well_pipeline.core.logging import LogContext, get_logger
from well_pipeline.core.metrics import track_stage_latency
from well_pipeline.pipeline.messages import ContentsReady, MessageBus, StageFailed
from well_pipeline.pipeline.schemas import BBox, Contents, Job, Point, RawDetections

logger = get_logger(__name__)

# Threshold applied to the raw mask probabilities to get a binary mask
PREDICTION_THRESHOLD = 0.5

DROP_LABEL = 1
CRYSTAL_LABEL = 2


def insertion_mask(drop_mask: np.ndarray, crystal_masks: List[np.ndarray]) -> np.ndarray:
    """Mask of valid insertion positions: the drop minus every crystal."""
    mask = drop_mask > PREDICTION_THRESHOLD
    for crystal_mask in crystal_masks:
        mask &= crystal_mask < PREDICTION_THRESHOLD
    return mask


def optimal_insert_position(mask: np.ndarray) -> Point:
    """
    Find the point of the mask furthest from any invalid pixel.

    Uses an L1 distance transform with a 3x3 mask. Ties go to the first
    maximum in row-major order.

    Raises NoValidInteriorPoint if the mask has no valid pixel.
    """
    if mask.size == 0:
        raise NoValidInteriorPoint()
    mask = np.where(mask, np.uint8(255), np.uint8(0)).astype(np.uint8)
    distances = cv2.distanceTransform(mask, cv2.DIST_L1, cv2.DIST_MASK_3, dstType=cv2.CV_8U)
    index = int(np.argmax(distances))
    if distances.flat[index] == 0:
        raise NoValidInteriorPoint()
    y, x = np.unravel_index(index, distances.shape)
    return Point(x=int(x), y=int(y))


def bbox_from_array(bbox: np.ndarray) -> BBox:
    return BBox(
        left=float(bbox[0]),
        top=float(bbox[1]),
        right=float(bbox[2]),
        bottom=float(bbox[3]),
    )


def find_drop_instance(detections: RawDetections) -> Tuple[BBox, np.ndarray]:
    """The first instance labelled as a drop. Raises NoPrimaryInstance if there is none."""
    for label, bbox, mask in zip(detections.labels, detections.boxes, detections.masks):
        if label == DROP_LABEL:
            return bbox_from_array(bbox), mask
    raise NoPrimaryInstance()


def find_crystal_instances(detections: RawDetections) -> List[Tuple[BBox, np.ndarray]]:
    return [
        (bbox_from_array(bbox), mask)
        for label, bbox, mask in zip(detections.labels, detections.boxes, detections.masks)
        if label == CRYSTAL_LABEL
    ]


def postprocess_inference(detections: RawDetections) -> Contents:
    """
    Extract the drop, the crystals and the insertion point from the detections.

    Raises NoPrimaryInstance if no drop was predicted, or NoValidInteriorPoint
    if the crystals cover the whole drop.
    """
    drop, drop_mask = find_drop_instance(detections)
    crystals = find_crystal_instances(detections)
    mask = insertion_mask(drop_mask, [crystal_mask for _, crystal_mask in crystals])
    return Contents(
        insertion_point=optimal_insert_position(mask),
        drop=drop,
        crystals=[crystal for crystal, _ in crystals],
    )


async def inference_postprocessing(detections: RawDetections, job: Job, bus: MessageBus):
    """
    Postprocess the detections of one job.

    Publishes ContentsReady on success, StageFailed otherwise.
    """
    with LogContext(job_id=job.id, stage="postprocessing"):
        logger.info("postprocessing_started", instances=len(detections))
        try:
            with track_stage_latency("postprocessing"):
                contents = await asyncio.to_thread(postprocess_inference, detections)
        except JobError as e:
            logger.warning("postprocessing_failed", error=e.message)
            bus.publish(StageFailed(job, e))
            return
        except Exception as e:
            logger.exception("postprocessing_crashed")
            bus.publish(StageFailed(job, JobError(f"Postprocessing failed: {e}", stage="postprocessing", code=500)))
            return

        logger.info(
            "postprocessing_completed",
            insertion_x=contents.insertion_point.x,
            insertion_y=contents.insertion_point.y,
            crystals=len(contents.crystals),
        )
        bus.publish(ContentsReady(job, contents))
