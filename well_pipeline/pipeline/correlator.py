"""
Correlator

The single long-lived control loop of the worker. It records where each
job's response must go, joins the well location and the drop contents of a
job as they arrive (in either order), turns stage failures into failure
responses and admits new jobs whenever the inference channel has room.

All pending job state lives here and is only touched from this loop, so no
locks are needed. Stage tasks report back exclusively through the bus.
"""

import asyncio
import time
from collections import OrderedDict
from typing import Coroutine, Dict, Optional, Set

from well_pipeline.core.exceptions import JobTimeoutError, ProtocolViolation, TransportError
from well_pipeline.core.logging import get_logger
from well_pipeline.core.metrics import pending_jobs_gauge, record_protocol_violation
from well_pipeline.core.transport import JobTransport
from well_pipeline.pipeline.channel import BoundedChannel, Permit
from well_pipeline.pipeline.image_loading import ImageLoader
from well_pipeline.pipeline.jobs import consume_job, produce_response
from well_pipeline.pipeline.messages import (
    ContentsReady,
    DetectionsReady,
    JobSubmitted,
    MessageBus,
    MessageKind,
    RegionFound,
    StageFailed,
    WellImageReady,
)
from well_pipeline.pipeline.postprocessing import inference_postprocessing
from well_pipeline.pipeline.schemas import (
    Circle,
    Contents,
    Job,
    failure_response,
    success_response,
)
from well_pipeline.pipeline.well_centering import well_centering

logger = get_logger(__name__)

# Bookkeeping and joins, drained before new work is admitted
CONTROL_KINDS = (
    MessageKind.JOB_SUBMITTED,
    MessageKind.STAGE_FAILED,
    MessageKind.REGION_FOUND,
    MessageKind.CONTENTS_READY,
)
# Hand-offs which spawn analysis tasks, drained after new work is admitted
WORK_KINDS = (
    MessageKind.WELL_IMAGE_READY,
    MessageKind.DETECTIONS_READY,
)

# How many failed job ids to remember, so late results for them are not
# mistaken for results of jobs that were never submitted
FAILED_JOBS_LIMIT = 4096


class Correlator:
    """
    Joins independently produced partial results into one response per job.

    Each loop iteration handles exactly one event, picked in priority order:
    job submissions, stage failures, well locations, drop contents, a free
    inference channel slot, then well images and detections awaiting
    analysis. The loop exits when no job is pending and no event occurs
    within the idle timeout, or when the transport is closed and no work
    remains. A TransportError raised by an intake task stops the loop.
    """

    def __init__(
        self,
        transport: JobTransport,
        image_loader: ImageLoader,
        channel: BoundedChannel,
        bus: MessageBus,
        idle_timeout_ms: Optional[int] = None,
        job_timeout_ms: Optional[int] = None
    ):
        self.transport = transport
        self.image_loader = image_loader
        self.channel = channel
        self.bus = bus
        self.idle_timeout_ms = idle_timeout_ms
        self.job_timeout_ms = job_timeout_ms

        self.response_targets: Dict[str, Job] = {}
        self.well_locations: Dict[str, Circle] = {}
        self.well_contents: Dict[str, Contents] = {}
        self._deadlines: Dict[str, float] = {}
        self._failed_jobs: "OrderedDict[str, None]" = OrderedDict()

        self.tasks: Set[asyncio.Task] = set()
        self._response_tasks: Set[asyncio.Task] = set()
        self._fatal: Optional[BaseException] = None

    # =========================================================================
    # Task management
    # =========================================================================

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def respond(self, coro: Coroutine) -> asyncio.Task:
        task = self.spawn(coro)
        self._response_tasks.add(task)
        return task

    def _task_done(self, task: asyncio.Task):
        self.tasks.discard(task)
        self._response_tasks.discard(task)
        if task.cancelled() or task.exception() is None:
            return
        error = task.exception()
        if isinstance(error, TransportError):
            # The job source is gone; the loop re-raises this on its next pass
            if self._fatal is None:
                self._fatal = error
            return
        logger.error("task_crashed", error=str(error), error_type=type(error).__name__)

    # =========================================================================
    # Event handlers
    # =========================================================================

    def on_job_submitted(self, message: JobSubmitted):
        job = message.job
        if job.id in self.response_targets:
            logger.warning("job_resubmitted", job_id=job.id)
        self._failed_jobs.pop(job.id, None)
        self.response_targets[job.id] = job
        if self.job_timeout_ms is not None:
            self._deadlines[job.id] = time.monotonic() + self.job_timeout_ms / 1000
        pending_jobs_gauge.set(len(self.response_targets))

    def on_stage_failed(self, message: StageFailed):
        if not self._is_known(message.job.id, "stage_failed"):
            return
        job = self._complete(message.job)
        self._remember_failed(job.id)
        self.well_locations.pop(job.id, None)
        self.well_contents.pop(job.id, None)
        self.respond(produce_response(
            self.transport,
            job.reply_to,
            failure_response(job, message.error),
            failure_stage=message.error.stage or "unknown",
        ))

    def on_region_found(self, message: RegionFound):
        job_id = message.job.id
        if not self._is_known(job_id, "region_found"):
            return
        if job_id in self.well_contents:
            contents = self.well_contents.pop(job_id)
            job = self._complete(message.job)
            self.respond(produce_response(
                self.transport, job.reply_to, success_response(job, message.well_location, contents)
            ))
        else:
            self.well_locations[job_id] = message.well_location

    def on_contents_ready(self, message: ContentsReady):
        job_id = message.job.id
        if not self._is_known(job_id, "contents_ready"):
            return
        if job_id in self.well_locations:
            well_location = self.well_locations.pop(job_id)
            job = self._complete(message.job)
            self.respond(produce_response(
                self.transport, job.reply_to, success_response(job, well_location, message.contents)
            ))
        else:
            self.well_contents[job_id] = message.contents

    def on_permit(self, permit: Permit):
        self.spawn(consume_job(self.transport, self.image_loader, permit, self.bus))

    def on_well_image(self, message: WellImageReady):
        self.spawn(well_centering(message.well_image, message.job, self.bus))

    def on_detections(self, message: DetectionsReady):
        self.spawn(inference_postprocessing(message.detections, message.job, self.bus))

    def dispatch(self, message):
        handlers = {
            MessageKind.JOB_SUBMITTED: self.on_job_submitted,
            MessageKind.STAGE_FAILED: self.on_stage_failed,
            MessageKind.REGION_FOUND: self.on_region_found,
            MessageKind.CONTENTS_READY: self.on_contents_ready,
            MessageKind.WELL_IMAGE_READY: self.on_well_image,
            MessageKind.DETECTIONS_READY: self.on_detections,
        }
        handlers[message.kind](message)

    def _is_known(self, job_id: str, kind: str) -> bool:
        """
        True if the job is awaiting its outcome.

        A result for a job already answered with a failure is expected, as
        the other stage may still have been running; it is dropped quietly.
        Anything else is a protocol violation.
        """
        if job_id in self.response_targets:
            return True
        if job_id in self._failed_jobs:
            logger.debug("late_result_dropped", job_id=job_id, kind=kind)
        else:
            self._violation(kind, job_id)
        return False

    def _complete(self, job: Job) -> Job:
        """Remove and return the response target of a known job."""
        target = self.response_targets.pop(job.id)
        self._deadlines.pop(job.id, None)
        pending_jobs_gauge.set(len(self.response_targets))
        return target

    def _remember_failed(self, job_id: str):
        self._failed_jobs[job_id] = None
        self._failed_jobs.move_to_end(job_id)
        while len(self._failed_jobs) > FAILED_JOBS_LIMIT:
            self._failed_jobs.popitem(last=False)

    def _violation(self, kind: str, job_id: str):
        error = ProtocolViolation(f"Received {kind} for job with no response target", job_id=job_id)
        record_protocol_violation(kind)
        logger.error("protocol_violation", **error.to_dict())

    def expire_jobs(self) -> int:
        """Fail every job past its deadline. Returns how many were failed."""
        if not self._deadlines:
            return 0
        now = time.monotonic()
        expired = [job_id for job_id, deadline in self._deadlines.items() if deadline <= now]
        for job_id in expired:
            job = self.response_targets[job_id]
            logger.warning("job_timed_out", job_id=job_id, timeout_ms=self.job_timeout_ms)
            self.on_stage_failed(StageFailed(job, JobTimeoutError(self.job_timeout_ms, job_id=job_id)))
        return len(expired)

    # =========================================================================
    # Event loop
    # =========================================================================

    def is_pending(self, job_id: str) -> bool:
        return (
            job_id in self.response_targets
            or job_id in self.well_locations
            or job_id in self.well_contents
        )

    def _finished(self) -> bool:
        return (
            self.transport.closed
            and not self.tasks
            and not len(self.bus)
            and not self.response_targets
        )

    def _idle_timer_armed(self) -> bool:
        # A job still awaiting its outcome is in flight somewhere, however
        # long its current stage takes
        return self.idle_timeout_ms is not None and not self.response_targets

    def _next_timeout(self, last_activity: float) -> Optional[float]:
        now = time.monotonic()
        timeouts = []
        if self._idle_timer_armed():
            timeouts.append(last_activity + self.idle_timeout_ms / 1000 - now)
        if self._deadlines:
            timeouts.append(min(self._deadlines.values()) - now)
        return max(min(timeouts), 0) if timeouts else None

    async def run(self):
        logger.info(
            "correlator_started",
            capacity=self.channel.capacity,
            idle_timeout_ms=self.idle_timeout_ms,
            job_timeout_ms=self.job_timeout_ms,
        )
        reserve_task: Optional[asyncio.Task] = None
        bus_task: Optional[asyncio.Task] = None
        last_activity = time.monotonic()

        try:
            while True:
                if self._fatal is not None:
                    logger.error("correlator_stopping", reason="transport_failed", error=str(self._fatal))
                    raise self._fatal

                message = self.bus.poll(CONTROL_KINDS)
                if message is not None:
                    self.dispatch(message)
                    last_activity = time.monotonic()
                    continue

                if reserve_task is None and not self.transport.closed:
                    reserve_task = asyncio.create_task(self.channel.reserve())
                if reserve_task is not None and reserve_task.done():
                    permit = reserve_task.result()
                    reserve_task = None
                    self.on_permit(permit)
                    last_activity = time.monotonic()
                    continue

                message = self.bus.poll(WORK_KINDS)
                if message is not None:
                    self.dispatch(message)
                    last_activity = time.monotonic()
                    continue

                if self.expire_jobs():
                    last_activity = time.monotonic()
                    continue

                if self._finished():
                    logger.info("correlator_stopping", reason="transport_closed")
                    break

                if bus_task is None:
                    bus_task = asyncio.create_task(self.bus.wait())
                waiters = {bus_task}
                if reserve_task is not None:
                    waiters.add(reserve_task)
                # Completed tasks also wake the loop, to notice the finished state
                waiters.update(self.tasks)

                done, _ = await asyncio.wait(
                    waiters,
                    timeout=self._next_timeout(last_activity),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if bus_task in done:
                    bus_task = None
                if not done and self._idle_timer_armed():
                    idle_for = time.monotonic() - last_activity
                    if idle_for * 1000 >= self.idle_timeout_ms:
                        logger.info(
                            "correlator_stopping",
                            reason="idle_timeout",
                            idle_timeout_ms=self.idle_timeout_ms,
                        )
                        break
        finally:
            for task in (reserve_task, bus_task):
                if task is not None and not task.done():
                    task.cancel()
            if reserve_task is not None and reserve_task.done() and not reserve_task.cancelled():
                if reserve_task.exception() is None:
                    reserve_task.result().release()

        if self.response_targets:
            logger.warning("correlator_unanswered_jobs", job_ids=sorted(self.response_targets))

    async def shutdown(self):
        """Cancel intake and analysis tasks and let in-flight responses finish publishing."""
        tasks = list(self.tasks)
        for task in tasks:
            if task not in self._response_tasks:
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
