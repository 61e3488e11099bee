"""
Job Queue Transport

Provides a small interface for receiving job descriptors and publishing
one response per job, with a kombu implementation (AMQP or Redis brokers)
and an in-memory implementation for local runs and tests.

Jobs are acknowledged as soon as they are received; acknowledgement is not
tied to job completion.
"""

import asyncio
import concurrent.futures
from abc import ABC, abstractmethod
from typing import Optional

from kombu import Connection
from pydantic import ValidationError

from well_pipeline.core.exceptions import TransportError
from well_pipeline.core.logging import get_logger
from well_pipeline.pipeline.schemas import Job, JobRequest, Response

logger = get_logger(__name__)


class JobTransport(ABC):
    """Interface for job queue operations."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once no further jobs will ever be received."""
        pass

    @abstractmethod
    async def receive(self) -> Optional[Job]:
        """
        Wait for the next job and acknowledge it.

        Returns None once the transport has been closed.
        """
        pass

    @abstractmethod
    async def publish(self, reply_to: str, response: Response):
        """Publish a response to the given reply destination."""
        pass

    async def close(self):
        pass


def parse_job(body, reply_to: Optional[str]) -> Optional[Job]:
    """Build a Job from a raw message, or None if the message is unusable."""
    try:
        if isinstance(body, (bytes, str)):
            request = JobRequest.model_validate_json(body)
        else:
            request = JobRequest.model_validate(body)
    except ValidationError as e:
        logger.error("job_malformed", error=str(e))
        return None
    if not reply_to:
        logger.error("job_missing_reply_to", job_id=request.id)
        return None
    return Job(id=request.id, image_reference=request.image_reference, reply_to=reply_to)


class KombuJobTransport(JobTransport):
    """
    kombu backed transport.

    kombu connections are not thread safe, so consuming and publishing each
    own a connection and a dedicated thread. Publishing a response never
    waits behind a blocking poll for the next job. Only one receiver polls
    the queue at a time, and a message is acknowledged by the same call
    that fetched it.
    """

    def __init__(
        self,
        url: str,
        queue_name: str,
        poll_interval: float = 1.0,
        connect_retries: int = 3
    ):
        self.url = url
        self.queue_name = queue_name
        self.poll_interval = poll_interval
        self.connect_retries = connect_retries
        self._consumer_executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="kombu-consumer"
        )
        self._producer_executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="kombu-producer"
        )
        self._receive_lock = asyncio.Lock()
        self._consumer_connection: Optional[Connection] = None
        self._producer_connection: Optional[Connection] = None
        self._queue = None
        self._producer = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @staticmethod
    async def _run(executor: concurrent.futures.Executor, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(executor, func, *args)

    def _open(self) -> Connection:
        connection = Connection(self.url)
        try:
            connection.ensure_connection(max_retries=self.connect_retries)
        except Exception as e:
            connection.release()
            raise TransportError(f"Could not connect to {connection.as_uri()}: {e}")
        return connection

    def _connect_consumer(self):
        self._consumer_connection = self._open()
        self._queue = self._consumer_connection.SimpleQueue(self.queue_name)

    def _connect_producer(self):
        self._producer_connection = self._open()
        self._producer = self._producer_connection.Producer(serializer="json")

    async def connect(self):
        await self._run(self._consumer_executor, self._connect_consumer)
        await self._run(self._producer_executor, self._connect_producer)
        logger.info("queue_connected", queue=self.queue_name)

    def _get(self):
        try:
            message = self._queue.get(block=True, timeout=self.poll_interval)
        except self._queue.Empty:
            return None
        message.ack()
        return message

    async def receive(self) -> Optional[Job]:
        async with self._receive_lock:
            while not self._closed:
                message = await self._run(self._consumer_executor, self._get)
                if message is None:
                    continue
                body = message.payload if message.content_type else message.body
                job = parse_job(body, message.properties.get("reply_to"))
                if job is not None:
                    logger.info("job_received", job_id=job.id, reply_to=job.reply_to)
                    return job
        return None

    def _publish(self, reply_to: str, body: dict):
        self._producer.publish(
            body,
            exchange="",
            routing_key=reply_to,
            serializer="json",
            retry=True,
        )

    async def publish(self, reply_to: str, response: Response):
        await self._run(
            self._producer_executor, self._publish, reply_to, response.model_dump(mode="json")
        )

    def _release_consumer(self):
        if self._queue is not None:
            self._queue.close()
        if self._consumer_connection is not None:
            self._consumer_connection.release()

    def _release_producer(self):
        if self._producer_connection is not None:
            self._producer_connection.release()

    async def close(self):
        self._closed = True
        await self._run(self._producer_executor, self._release_producer)
        await self._run(self._consumer_executor, self._release_consumer)
        self._producer_executor.shutdown(wait=False)
        self._consumer_executor.shutdown(wait=False)


class InMemoryJobTransport(JobTransport):
    """Transport backed by asyncio queues, for local runs and tests."""

    def __init__(self):
        self._jobs: asyncio.Queue = asyncio.Queue()
        self.responses: asyncio.Queue = asyncio.Queue()
        self._exhausted = False

    @property
    def closed(self) -> bool:
        return self._exhausted

    def submit(self, request: JobRequest, reply_to: str = "replies"):
        self._jobs.put_nowait(Job(id=request.id, image_reference=request.image_reference, reply_to=reply_to))

    def finish(self):
        """No further jobs will be submitted; receivers return None once drained."""
        self._jobs.put_nowait(None)

    async def receive(self) -> Optional[Job]:
        if self._exhausted:
            return None
        job = await self._jobs.get()
        if job is None:
            self._exhausted = True
            # Wake the next waiting receiver as well
            self._jobs.put_nowait(None)
        return job

    async def publish(self, reply_to: str, response: Response):
        await self.responses.put((reply_to, response))
