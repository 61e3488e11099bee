"""
Inference Stage

Collects prepared images into micro-batches, runs them through the
inference engine and fans the per-image detections back out.

Batching policy: block for the first image, then take whatever else is
already queued, up to the engine's batch size. Never wait for a batch to
fill. The engine takes a fixed batch shape, so short batches are padded by
repeating real images and the padding outputs are dropped.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Tuple, Union

import numpy as np

from well_pipeline.core.exceptions import ChannelClosedError, InferenceError, ModelLoadError
from well_pipeline.core.logging import get_logger
from well_pipeline.core.metrics import batch_size_histogram, track_stage_latency
from well_pipeline.pipeline.channel import BoundedChannel
from well_pipeline.pipeline.messages import DetectionsReady, MessageBus, StageFailed
from well_pipeline.pipeline.schemas import Job, RawDetections

logger = get_logger(__name__)

BatchItem = Tuple[np.ndarray, Job]
InferenceResult = Union[RawDetections, Exception]


class InferenceEngine(ABC):
    """Interface for the neural network execution backend."""

    @property
    @abstractmethod
    def input_shape(self) -> Tuple[int, int, int, int]:
        """Declared model input shape as (batch, channels, height, width)."""
        pass

    @property
    def batch_size(self) -> int:
        return self.input_shape[0]

    @property
    def input_width(self) -> int:
        return self.input_shape[3]

    @property
    def input_height(self) -> int:
        return self.input_shape[2]

    @abstractmethod
    def infer(self, batch: np.ndarray) -> List[InferenceResult]:
        """
        Run inference on a [B, C, H, W] batch.

        Returns one entry per batch item: the detections, or the exception
        describing why that item failed.
        """
        pass


class OnnxInferenceEngine(InferenceEngine):
    """Mask R-CNN exported to ONNX, executed with ONNX Runtime."""

    def __init__(self, model_path: Path, threads: int = 0):
        import onnxruntime as ort

        logger.info("model_loading", model_path=str(model_path))
        opts = ort.SessionOptions()
        opts.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
        opts.intra_op_num_threads = threads
        try:
            self._session = ort.InferenceSession(
                str(model_path), opts, providers=["CPUExecutionProvider"]
            )
        except Exception as e:
            raise ModelLoadError(f"Could not load model {model_path}: {e}")

        model_input = self._session.get_inputs()[0]
        self._input_name = model_input.name
        shape = tuple(model_input.shape)
        if len(shape) != 4 or not all(isinstance(dim, int) for dim in shape):
            raise ModelLoadError(
                f"Model input must have a fixed [B, C, H, W] shape, got {shape}"
            )
        self._input_shape = shape
        logger.info("model_loaded", input_shape=shape, providers=self._session.get_providers())

    @property
    def input_shape(self) -> Tuple[int, int, int, int]:
        return self._input_shape

    def infer(self, batch: np.ndarray) -> List[InferenceResult]:
        boxes, labels, scores, masks = self._session.run(
            None, {self._input_name: batch.astype(np.float32)}
        )[:4]
        results: List[InferenceResult] = []
        for item in range(batch.shape[0]):
            try:
                item_masks = masks[item]
                if item_masks.ndim == 4:
                    item_masks = item_masks[:, 0]
                results.append(RawDetections(
                    boxes=boxes[item],
                    labels=labels[item].astype(np.int64),
                    scores=scores[item],
                    masks=item_masks,
                ))
            except (IndexError, ValueError) as e:
                results.append(e)
        return results


def pad_batch(images: List[np.ndarray], capacity: int) -> np.ndarray:
    """Stack images into a batch of exactly `capacity`, repeating them cyclically."""
    return np.stack([images[index % len(images)] for index in range(capacity)])


class BatchAccumulator:
    """Single worker feeding micro-batches from the channel to the engine."""

    def __init__(self, engine: InferenceEngine, channel: BoundedChannel[BatchItem], bus: MessageBus):
        self.engine = engine
        self.channel = channel
        self.bus = bus
        self.capacity = engine.batch_size

    async def next_batch(self) -> List[BatchItem]:
        """Wait for one item, then take any others already queued, up to capacity."""
        items = [await self.channel.receive()]
        while len(items) < self.capacity:
            item = self.channel.receive_nowait()
            if item is None:
                break
            items.append(item)
        return items

    async def process_batch(self, items: List[BatchItem]):
        images = [image for image, _ in items]
        jobs = [job for _, job in items]
        batch = pad_batch(images, self.capacity)
        batch_size_histogram.observe(len(items))
        logger.info("batch_started", batch_size=len(items), capacity=self.capacity)

        try:
            with track_stage_latency("inference"):
                results = await asyncio.to_thread(self.engine.infer, batch)
        except Exception as e:
            logger.exception("batch_failed", batch_size=len(items))
            results = [e] * len(items)

        if len(results) < len(items):
            logger.error("batch_results_missing", expected=len(items), received=len(results))
            results = list(results) + [
                InferenceError(f"Inference returned {len(results)} results for {len(items)} images")
            ] * (len(items) - len(results))

        # Padding outputs beyond the real items are dropped here
        for job, result in zip(jobs, results):
            if isinstance(result, Exception):
                error = result if isinstance(result, InferenceError) else InferenceError(
                    f"Inference failed: {result}", job_id=job.id
                )
                self.bus.publish(StageFailed(job, error))
            else:
                self.bus.publish(DetectionsReady(job, result))

        logger.info("batch_completed", batch_size=len(items))

    async def run(self):
        """
        Process batches until cancelled.

        Raises ChannelClosedError when the input channel is closed, which is
        fatal for the worker.
        """
        logger.info("inference_worker_started", capacity=self.capacity)
        while True:
            try:
                items = await self.next_batch()
            except ChannelClosedError:
                logger.error("inference_channel_closed")
                raise
            await self.process_batch(items)
