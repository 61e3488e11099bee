import asyncio

import numpy as np
import pytest

from well_pipeline.core.exceptions import ChannelClosedError, InferenceError
from well_pipeline.pipeline.channel import BoundedChannel
from well_pipeline.pipeline.inference import BatchAccumulator, pad_batch
from well_pipeline.pipeline.messages import MessageBus, MessageKind


def image(value: float, height: int = 32, width: int = 32) -> np.ndarray:
    return np.full((3, height, width), value, dtype=np.float32)


async def queue(channel: BoundedChannel, *items):
    for item in items:
        permit = await channel.reserve()
        permit.send(item)


def drain(bus: MessageBus):
    messages = []
    while len(bus):
        messages.append(bus.poll(MessageKind))
    return messages


def test_pad_batch_repeats_cyclically():
    images = [image(0), image(1), image(2)]

    batch = pad_batch(images, 8)

    assert batch.shape == (8, 3, 32, 32)
    assert [float(item[0, 0, 0]) for item in batch] == [0, 1, 2, 0, 1, 2, 0, 1]


def test_pad_batch_full_batch_is_unchanged():
    images = [image(0), image(1)]

    batch = pad_batch(images, 2)

    np.testing.assert_array_equal(batch, np.stack(images))


@pytest.mark.asyncio
async def test_two_ready_jobs_share_one_inference_call(fake_engine_factory, make_job):
    # Arrange
    engine = fake_engine_factory(batch_size=4)
    channel = BoundedChannel(engine.batch_size)
    bus = MessageBus()
    accumulator = BatchAccumulator(engine, channel, bus)
    first, second = make_job("a"), make_job("b")
    await queue(channel, (image(1), first), (image(2), second))

    # Act
    items = await accumulator.next_batch()
    await accumulator.process_batch(items)

    # Assert
    assert len(engine.batches) == 1
    assert engine.batches[0].shape == (4, 3, 32, 32)
    messages = drain(bus)
    assert [message.kind for message in messages] == [MessageKind.DETECTIONS_READY] * 2
    assert [message.job.id for message in messages] == ["a", "b"]


@pytest.mark.asyncio
async def test_batch_is_limited_to_capacity(fake_engine_factory, make_job):
    engine = fake_engine_factory(batch_size=2)
    channel = BoundedChannel(3)
    bus = MessageBus()
    accumulator = BatchAccumulator(engine, channel, bus)
    await queue(channel, *[(image(i), make_job(str(i))) for i in range(3)])

    items = await accumulator.next_batch()

    assert [job.id for _, job in items] == ["0", "1"]
    assert len(channel) == 1


@pytest.mark.asyncio
async def test_accumulator_does_not_wait_for_a_full_batch(fake_engine_factory, make_job):
    engine = fake_engine_factory(batch_size=4)
    channel = BoundedChannel(engine.batch_size)
    bus = MessageBus()
    accumulator = BatchAccumulator(engine, channel, bus)
    worker = asyncio.create_task(accumulator.run())

    await queue(channel, (image(1), make_job("only")))
    for _ in range(100):
        if len(bus):
            break
        await asyncio.sleep(0.01)

    worker.cancel()
    await asyncio.gather(worker, return_exceptions=True)
    assert len(engine.batches) == 1
    messages = drain(bus)
    assert len(messages) == 1
    assert messages[0].job.id == "only"


@pytest.mark.asyncio
async def test_engine_failure_fails_every_real_item(fake_engine_factory, make_job):
    engine = fake_engine_factory(batch_size=4)

    def broken(batch):
        raise RuntimeError("session crashed")

    engine.infer = broken
    channel = BoundedChannel(engine.batch_size)
    bus = MessageBus()
    accumulator = BatchAccumulator(engine, channel, bus)
    await queue(channel, (image(1), make_job("a")), (image(2), make_job("b")))

    await accumulator.process_batch(await accumulator.next_batch())

    messages = drain(bus)
    assert [message.kind for message in messages] == [MessageKind.STAGE_FAILED] * 2
    assert all(isinstance(message.error, InferenceError) for message in messages)
    assert "session crashed" in str(messages[0].error)


@pytest.mark.asyncio
async def test_item_failure_is_isolated(fake_engine_factory, make_job, drop_detections):
    engine = fake_engine_factory(
        batch_size=2,
        detections=lambda index, batch_image: ValueError("bad output") if index == 0 else drop_detections(),
    )
    channel = BoundedChannel(engine.batch_size)
    bus = MessageBus()
    accumulator = BatchAccumulator(engine, channel, bus)
    await queue(channel, (image(1), make_job("bad")), (image(2), make_job("good")))

    await accumulator.process_batch(await accumulator.next_batch())

    messages = {message.job.id: message for message in drain(bus)}
    assert messages["bad"].kind == MessageKind.STAGE_FAILED
    assert isinstance(messages["bad"].error, InferenceError)
    assert messages["good"].kind == MessageKind.DETECTIONS_READY


@pytest.mark.asyncio
async def test_closed_channel_is_fatal(fake_engine_factory):
    engine = fake_engine_factory()
    channel = BoundedChannel(engine.batch_size)
    accumulator = BatchAccumulator(engine, channel, MessageBus())

    channel.close()

    with pytest.raises(ChannelClosedError):
        await accumulator.run()
