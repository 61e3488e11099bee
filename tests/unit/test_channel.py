import asyncio

import pytest

from well_pipeline.core.exceptions import ChannelClosedError
from well_pipeline.pipeline.channel import BoundedChannel


@pytest.mark.asyncio
async def test_reserve_blocks_at_capacity():
    # Arrange
    channel = BoundedChannel(2)
    first = await channel.reserve()
    await channel.reserve()

    # Act
    blocked = asyncio.create_task(channel.reserve())
    await asyncio.sleep(0.01)

    # Assert
    assert not blocked.done()
    assert channel.occupancy == 2

    first.release()
    permit = await asyncio.wait_for(blocked, timeout=1)
    assert channel.occupancy == 2
    permit.release()


@pytest.mark.asyncio
async def test_slot_is_held_until_item_is_received():
    channel = BoundedChannel(1)
    permit = await channel.reserve()
    permit.send("item")

    blocked = asyncio.create_task(channel.reserve())
    await asyncio.sleep(0.01)
    assert not blocked.done()

    assert await channel.receive() == "item"
    next_permit = await asyncio.wait_for(blocked, timeout=1)
    assert channel.occupancy == 1
    next_permit.release()
    assert channel.occupancy == 0


@pytest.mark.asyncio
async def test_occupancy_never_exceeds_capacity():
    channel = BoundedChannel(3)
    observed = []

    async def producer(value):
        permit = await channel.reserve()
        observed.append(channel.occupancy)
        await asyncio.sleep(0)
        permit.send(value)

    producers = [asyncio.create_task(producer(value)) for value in range(10)]
    received = []
    while len(received) < 10:
        received.append(await channel.receive())
        observed.append(channel.occupancy)
    await asyncio.gather(*producers)

    assert sorted(received) == list(range(10))
    assert max(observed) <= 3


@pytest.mark.asyncio
async def test_receive_nowait_returns_queued_items_only():
    channel = BoundedChannel(2)
    assert channel.receive_nowait() is None

    permit = await channel.reserve()
    permit.send(1)

    assert channel.receive_nowait() == 1
    assert channel.receive_nowait() is None


@pytest.mark.asyncio
async def test_release_is_idempotent_and_send_once():
    channel = BoundedChannel(1)
    permit = await channel.reserve()
    permit.release()
    permit.release()
    assert channel.occupancy == 0

    with pytest.raises(RuntimeError):
        permit.send("late")


@pytest.mark.asyncio
async def test_closed_channel():
    channel = BoundedChannel(2)
    permit = await channel.reserve()
    permit.send("last")
    waiting = await channel.reserve()

    channel.close()

    assert await channel.receive() == "last"
    with pytest.raises(ChannelClosedError):
        await channel.receive()
    with pytest.raises(ChannelClosedError):
        await channel.reserve()
    with pytest.raises(ChannelClosedError):
        waiting.send("too late")
    assert channel.occupancy == 0


@pytest.mark.asyncio
async def test_close_wakes_waiting_receiver():
    channel = BoundedChannel(1)
    receiver = asyncio.create_task(channel.receive())
    await asyncio.sleep(0.01)

    channel.close()

    with pytest.raises(ChannelClosedError):
        await asyncio.wait_for(receiver, timeout=1)


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        BoundedChannel(0)
