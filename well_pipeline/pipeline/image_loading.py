"""
Image Preparation

Fetches the raw image bytes for a job and derives the two tensors the
pipeline needs: the normalized model input and the grayscale well image.
"""

import asyncio
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import cv2
import httpx
import numpy as np

from well_pipeline.core.exceptions import DecodeError
from well_pipeline.core.logging import get_logger
from well_pipeline.core.metrics import track_stage_latency
from well_pipeline.pipeline.schemas import PreparedImage

logger = get_logger(__name__)


def decode_image(image_bytes: bytes) -> np.ndarray:
    """Decode encoded image bytes into a BGR image."""
    if not image_bytes:
        raise DecodeError("Image payload is empty")
    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    try:
        image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    except cv2.error as e:
        raise DecodeError(f"Image could not be decoded: {e}")
    if image is None or image.size == 0:
        raise DecodeError("No image data was loaded")
    return image


def prepare_chimp(image: np.ndarray, width: int, height: int) -> np.ndarray:
    """
    Convert a BGR [H, W, C] image into the model input layout.

    The image is resized to the model input size, converted to RGB, scaled to
    [0, 1] and transposed to [C, H, W].
    """
    resized = cv2.resize(image, (width, height), interpolation=cv2.INTER_LINEAR)
    rgb = cv2.cvtColor(resized, cv2.COLOR_BGR2RGB)
    scaled = rgb.astype(np.float32) / 255.0
    return np.ascontiguousarray(scaled.transpose(2, 0, 1))


def prepare_well(image: np.ndarray) -> np.ndarray:
    """Convert a BGR image to grayscale."""
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def prepare_image(image_bytes: bytes, width: int, height: int) -> PreparedImage:
    image = decode_image(image_bytes)
    return PreparedImage(
        chimp_image=prepare_chimp(image, width, height),
        well_image=prepare_well(image),
    )


class ImageLoader:
    """
    Loads job images from http(s) URLs or the local filesystem.

    Decoding runs in a worker thread so the event loop stays responsive.
    """

    def __init__(
        self,
        width: int,
        height: int,
        max_image_size_bytes: int = 10485760,
        fetch_timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.width = width
        self.height = height
        self.max_image_size_bytes = max_image_size_bytes
        self._client = client or httpx.AsyncClient(timeout=fetch_timeout, follow_redirects=True)

    async def fetch(self, image_reference: str) -> bytes:
        scheme = urlparse(image_reference).scheme
        if scheme in ("http", "https"):
            image_bytes = await self._fetch_http(image_reference)
        elif scheme in ("", "file"):
            image_bytes = await asyncio.to_thread(self._read_file, image_reference)
        else:
            raise DecodeError(f"Unsupported image reference scheme: {scheme}")

        if len(image_bytes) > self.max_image_size_bytes:
            raise DecodeError(
                f"Image of {len(image_bytes)} bytes exceeds the {self.max_image_size_bytes} byte limit",
                details={"size": len(image_bytes)}
            )
        return image_bytes

    async def _fetch_http(self, url: str) -> bytes:
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DecodeError(
                f"Image download failed with status {e.response.status_code}",
                details={"http_status": e.response.status_code}
            )
        except httpx.HTTPError as e:
            raise DecodeError(f"Image download failed: {e}")
        return response.content

    @staticmethod
    def _read_file(image_reference: str) -> bytes:
        path = Path(urlparse(image_reference).path) if image_reference.startswith("file:") else Path(image_reference)
        try:
            return path.read_bytes()
        except OSError as e:
            raise DecodeError(f"Image could not be read: {e}")

    async def load(self, image_reference: str) -> PreparedImage:
        """Fetch and prepare an image. Raises DecodeError on any failure."""
        with track_stage_latency("image_loading"):
            image_bytes = await self.fetch(image_reference)
            prepared = await asyncio.to_thread(prepare_image, image_bytes, self.width, self.height)
        logger.debug(
            "image_prepared",
            input_size=len(image_bytes),
            well_dimensions=prepared.well_image.shape,
        )
        return prepared

    async def aclose(self):
        await self._client.aclose()
