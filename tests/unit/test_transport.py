import asyncio
import json
import uuid

import pytest
from kombu import Connection

from well_pipeline.core.transport import InMemoryJobTransport, KombuJobTransport, parse_job
from well_pipeline.pipeline.schemas import (
    BBox,
    Circle,
    FailureResponse,
    JobRequest,
    Point,
    SuccessResponse,
)


class TestParseJob:
    def test_valid_json_body(self):
        body = json.dumps({"id": "job-7", "image_reference": "https://images.test/7.png"})

        job = parse_job(body, "reply-7")

        assert job.id == "job-7"
        assert job.image_reference == "https://images.test/7.png"
        assert job.reply_to == "reply-7"

    def test_decoded_payload(self):
        job = parse_job({"id": "job-8", "image_reference": "/data/8.png"}, "reply-8")

        assert job.id == "job-8"

    @pytest.mark.parametrize("body", [
        b"not json",
        json.dumps({"id": "job-9"}),
        json.dumps({"id": "", "image_reference": "/data/9.png"}),
    ])
    def test_malformed_body_is_dropped(self, body):
        assert parse_job(body, "reply") is None

    def test_missing_reply_to_is_dropped(self):
        body = json.dumps({"id": "job-10", "image_reference": "/data/10.png"})

        assert parse_job(body, None) is None
        assert parse_job(body, "") is None


class TestResponseWireFormat:
    def test_success(self):
        response = SuccessResponse(
            job_id="job-1",
            insertion_point=Point(x=3, y=4),
            region_of_interest=Circle(center=Point(x=5, y=6), radius=7.5),
            primary_box=BBox(left=1, top=2, right=3, bottom=4),
            secondary_boxes=[BBox(left=1.5, top=2.5, right=2.5, bottom=3.5)],
        )

        assert response.model_dump(mode="json") == {
            "status": "success",
            "job_id": "job-1",
            "insertion_point": {"x": 3, "y": 4},
            "region_of_interest": {"center": {"x": 5, "y": 6}, "radius": 7.5},
            "primary_box": {"left": 1.0, "top": 2.0, "right": 3.0, "bottom": 4.0},
            "secondary_boxes": [{"left": 1.5, "top": 2.5, "right": 2.5, "bottom": 3.5}],
        }

    def test_failure(self):
        response = FailureResponse(job_id="job-2", error="No circles found in image")

        assert response.model_dump(mode="json") == {
            "status": "failure",
            "job_id": "job-2",
            "error": "No circles found in image",
        }


@pytest.mark.asyncio
async def test_in_memory_transport_closes_after_drain():
    transport = InMemoryJobTransport()
    transport.submit(JobRequest(id="a", image_reference="/a.png"), reply_to="r")
    transport.finish()

    first = await transport.receive()
    assert first.id == "a"
    assert not transport.closed

    assert await transport.receive() is None
    assert transport.closed
    # Every later receiver also sees the end of the queue
    assert await asyncio.wait_for(transport.receive(), timeout=1) is None


@pytest.mark.asyncio
async def test_kombu_publish_does_not_wait_behind_polling_receivers():
    # Arrange
    job_queue = f"jobs-{uuid.uuid4().hex}"
    reply_queue = f"replies-{uuid.uuid4().hex}"
    transport = KombuJobTransport("memory://", job_queue, poll_interval=1.0)
    await transport.connect()
    receivers = [asyncio.create_task(transport.receive()) for _ in range(4)]
    await asyncio.sleep(0.05)

    # Act
    started = asyncio.get_running_loop().time()
    await asyncio.wait_for(
        transport.publish(reply_queue, FailureResponse(job_id="job-1", error="No circles found in image")),
        timeout=0.5,
    )
    elapsed = asyncio.get_running_loop().time() - started

    # Assert
    assert elapsed < 0.5
    with Connection("memory://") as connection:
        replies = connection.SimpleQueue(reply_queue)
        message = replies.get(block=True, timeout=1)
        assert message.payload == {
            "status": "failure",
            "job_id": "job-1",
            "error": "No circles found in image",
        }
        message.ack()
        replies.close()

    await transport.close()
    assert await asyncio.wait_for(asyncio.gather(*receivers), timeout=5) == [None] * 4


@pytest.mark.asyncio
async def test_kombu_receive_reads_reply_to():
    job_queue = f"jobs-{uuid.uuid4().hex}"
    transport = KombuJobTransport("memory://", job_queue, poll_interval=0.1)
    await transport.connect()
    with Connection("memory://") as connection:
        jobs = connection.SimpleQueue(job_queue)
        jobs.put({"id": "job-2", "image_reference": "/data/2.png"}, reply_to="reply-2")
        jobs.close()

    job = await asyncio.wait_for(transport.receive(), timeout=5)
    await transport.close()

    assert (job.id, job.image_reference, job.reply_to) == ("job-2", "/data/2.png", "reply-2")
