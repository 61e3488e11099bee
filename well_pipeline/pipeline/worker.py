"""
Worker Runner

Wires the channel, the bus, the inference stage and the correlator
together and runs them until the correlator stops or the inference stage
dies.
"""

import asyncio
from typing import Optional

from well_pipeline.core.logging import get_logger
from well_pipeline.core.transport import JobTransport
from well_pipeline.pipeline.channel import BoundedChannel
from well_pipeline.pipeline.correlator import Correlator
from well_pipeline.pipeline.image_loading import ImageLoader
from well_pipeline.pipeline.inference import BatchAccumulator, InferenceEngine
from well_pipeline.pipeline.messages import MessageBus

logger = get_logger(__name__)


async def run_worker(
    transport: JobTransport,
    engine: InferenceEngine,
    image_loader: ImageLoader,
    idle_timeout_ms: Optional[int] = None,
    job_timeout_ms: Optional[int] = None
) -> Correlator:
    """
    Process jobs until the worker goes idle or the transport is exhausted.

    Raises whatever killed the inference stage; that is fatal for the process.
    """
    channel = BoundedChannel(engine.batch_size)
    bus = MessageBus()
    accumulator = BatchAccumulator(engine, channel, bus)
    correlator = Correlator(
        transport,
        image_loader,
        channel,
        bus,
        idle_timeout_ms=idle_timeout_ms,
        job_timeout_ms=job_timeout_ms,
    )

    inference_task = asyncio.create_task(accumulator.run(), name="inference")
    correlator_task = asyncio.create_task(correlator.run(), name="correlator")

    try:
        done, _ = await asyncio.wait(
            {inference_task, correlator_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if correlator_task in done:
            correlator_task.result()
            channel.close()
        else:
            logger.error("inference_worker_stopped")
            correlator_task.cancel()
            await asyncio.gather(correlator_task, return_exceptions=True)
            inference_task.result()
    finally:
        for task in (inference_task, correlator_task):
            if not task.done():
                task.cancel()
        await asyncio.gather(inference_task, correlator_task, return_exceptions=True)
        await correlator.shutdown()

    logger.info("worker_stopped")
    return correlator
