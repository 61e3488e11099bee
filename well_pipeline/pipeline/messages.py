"""
Message Bus

Every stage task reports back to the correlator by publishing one of the
typed messages below. The bus keeps a FIFO per message kind so the
correlator can poll kinds in a fixed priority order.
"""

import asyncio
from collections import deque
from dataclasses import dataclass
from enum import IntEnum
from typing import ClassVar, Deque, Dict, Iterable, Optional, Union

import numpy as np

from well_pipeline.core.exceptions import JobError
from well_pipeline.pipeline.schemas import Circle, Contents, Job, RawDetections


class MessageKind(IntEnum):
    """Message kinds, lowest value is handled first."""
    JOB_SUBMITTED = 0
    STAGE_FAILED = 1
    REGION_FOUND = 2
    CONTENTS_READY = 3
    WELL_IMAGE_READY = 4
    DETECTIONS_READY = 5


@dataclass
class JobSubmitted:
    kind: ClassVar[MessageKind] = MessageKind.JOB_SUBMITTED
    job: Job


@dataclass
class StageFailed:
    kind: ClassVar[MessageKind] = MessageKind.STAGE_FAILED
    job: Job
    error: JobError


@dataclass
class RegionFound:
    kind: ClassVar[MessageKind] = MessageKind.REGION_FOUND
    job: Job
    well_location: Circle


@dataclass
class ContentsReady:
    kind: ClassVar[MessageKind] = MessageKind.CONTENTS_READY
    job: Job
    contents: Contents


@dataclass
class WellImageReady:
    kind: ClassVar[MessageKind] = MessageKind.WELL_IMAGE_READY
    job: Job
    well_image: np.ndarray


@dataclass
class DetectionsReady:
    kind: ClassVar[MessageKind] = MessageKind.DETECTIONS_READY
    job: Job
    detections: RawDetections


Message = Union[
    JobSubmitted,
    StageFailed,
    RegionFound,
    ContentsReady,
    WellImageReady,
    DetectionsReady,
]


class MessageBus:
    """
    Unbounded multi-producer, single-consumer bus.

    Must only be used from the event loop thread; stage code running in a
    worker thread returns to its task before publishing.
    """

    def __init__(self):
        self._queues: Dict[MessageKind, Deque[Message]] = {kind: deque() for kind in MessageKind}
        self._ready = asyncio.Event()

    def publish(self, message: Message):
        self._queues[message.kind].append(message)
        self._ready.set()

    def poll(self, kinds: Iterable[MessageKind]) -> Optional[Message]:
        """Pop the oldest message of the highest priority kind among `kinds`."""
        for kind in sorted(kinds):
            queue = self._queues[kind]
            if queue:
                message = queue.popleft()
                if not len(self):
                    self._ready.clear()
                return message
        return None

    async def wait(self):
        """Wait until at least one message is available."""
        await self._ready.wait()

    def pending(self, kind: MessageKind) -> int:
        return len(self._queues[kind])

    def __len__(self) -> int:
        return sum(len(queue) for queue in self._queues.values())
