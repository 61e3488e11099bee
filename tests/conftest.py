import cv2
import numpy as np
import pytest
from typing import Callable, List, Optional

from well_pipeline.pipeline.inference import InferenceEngine
from well_pipeline.pipeline.schemas import Job, RawDetections


class FakeInferenceEngine(InferenceEngine):
    """Deterministic engine which records every batch it is given."""

    def __init__(
        self,
        batch_size: int = 4,
        height: int = 32,
        width: int = 32,
        detections: Optional[Callable[[int, np.ndarray], object]] = None
    ):
        self._input_shape = (batch_size, 3, height, width)
        self._detections = detections or (lambda index, image: drop_detections(height, width))
        self.batches: List[np.ndarray] = []

    @property
    def input_shape(self):
        return self._input_shape

    def infer(self, batch: np.ndarray):
        self.batches.append(batch)
        return [self._detections(index, image) for index, image in enumerate(batch)]


def disk_mask(height: int, width: int, center, radius: int) -> np.ndarray:
    mask = np.zeros((height, width), dtype=np.float32)
    cv2.circle(mask, center, radius, 1.0, -1)
    return mask


def drop_detections(height: int = 32, width: int = 32) -> RawDetections:
    """A single drop covering a disk in the middle of the image."""
    return RawDetections(
        boxes=np.array([[4.0, 4.0, 28.0, 28.0]], dtype=np.float32),
        labels=np.array([1], dtype=np.int64),
        scores=np.array([0.98], dtype=np.float32),
        masks=disk_mask(height, width, (width // 2, height // 2), min(height, width) // 3)[None],
    )


@pytest.fixture
def fake_engine_factory():
    return FakeInferenceEngine


@pytest.fixture
def make_job():
    def _make_job(job_id: str = "job-1", image_reference: str = "/tmp/image.png", reply_to: str = "replies") -> Job:
        return Job(id=job_id, image_reference=image_reference, reply_to=reply_to)
    return _make_job


@pytest.fixture
def image_file(tmp_path):
    """Write a small BGR test image to disk and return its path."""
    def _image_file(name: str = "well.png", height: int = 48, width: int = 64) -> str:
        rng = np.random.default_rng(0)
        image = rng.integers(0, 255, (height, width, 3), dtype=np.uint8)
        path = tmp_path / name
        cv2.imwrite(str(path), image)
        return str(path)
    return _image_file


@pytest.fixture(name="drop_detections")
def drop_detections_fixture():
    return drop_detections
