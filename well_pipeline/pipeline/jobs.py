"""
Job Intake and Response Publishing
"""

from well_pipeline.core.exceptions import JobError, TransportError
from well_pipeline.core.logging import LogContext, get_logger
from well_pipeline.core.metrics import record_job_completion
from well_pipeline.core.transport import JobTransport
from well_pipeline.pipeline.channel import Permit
from well_pipeline.pipeline.image_loading import ImageLoader
from well_pipeline.pipeline.messages import JobSubmitted, MessageBus, StageFailed, WellImageReady
from well_pipeline.pipeline.schemas import Response, SuccessResponse

logger = get_logger(__name__)


async def consume_job(
    transport: JobTransport,
    image_loader: ImageLoader,
    permit: Permit,
    bus: MessageBus
):
    """
    Take one job from the queue and feed it into the pipeline.

    The permit reserves the job's slot in the inference channel; it is used
    for the model input or released if the image cannot be prepared.

    Raises TransportError if the job queue fails, which stops the worker.
    """
    try:
        job = await transport.receive()
    except TransportError:
        permit.release()
        raise
    except Exception as e:
        permit.release()
        raise TransportError(f"Receiving a job failed: {e}") from e
    except BaseException:
        permit.release()
        raise
    if job is None:
        permit.release()
        return

    bus.publish(JobSubmitted(job))

    with LogContext(job_id=job.id, stage="image_loading"):
        try:
            image = await image_loader.load(job.image_reference)
        except JobError as e:
            permit.release()
            logger.warning("image_loading_failed", error=e.message)
            bus.publish(StageFailed(job, e))
            return
        except Exception as e:
            permit.release()
            logger.exception("image_loading_crashed")
            bus.publish(StageFailed(job, JobError(f"Image loading failed: {e}", stage="image_loading", code=500)))
            return
        except BaseException:
            permit.release()
            raise

        permit.send((image.chimp_image, job))
        bus.publish(WellImageReady(job, image.well_image))


async def produce_response(transport: JobTransport, reply_to: str, response: Response, failure_stage: str = "none"):
    """Publish the outcome of a job to its reply destination."""
    with LogContext(job_id=response.job_id, stage="respond"):
        try:
            await transport.publish(reply_to, response)
        except Exception:
            logger.exception("response_publish_failed", reply_to=reply_to)
            return

        if isinstance(response, SuccessResponse):
            record_job_completion("completed")
            logger.info("job_completed", reply_to=reply_to)
        else:
            record_job_completion("failed", failure_stage=failure_stage)
            logger.info("job_failed", reply_to=reply_to, error=response.error)
