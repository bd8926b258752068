"""
Utility toolkit for raster decoding, encoding and channel access.

Rasters are numpy arrays in OpenCV's BGR order. Every piece of code that
needs a channel or a single pixel goes through this module so that the
layout is described in one place.
"""

import hashlib
import logging
from dataclasses import dataclass

# pylint: disable=no-member
import cv2
import numpy as np

from captcha_service.errors import ImageDecodeError

logger = logging.getLogger("captcha-service.image-toolkit")

# OpenCV stores color rasters as B, G, R.
CHANNEL_INDEX = {"B": 0, "G": 1, "R": 2}


@dataclass(frozen=True)
class RasterInfo:
    """Explicit shape descriptor for a decoded raster."""

    width: int
    height: int
    channels: int

    @property
    def pixels(self) -> int:
        return self.width * self.height

    @classmethod
    def of(cls, img: np.ndarray) -> "RasterInfo":
        height, width = img.shape[:2]
        channels = 1 if img.ndim == 2 else img.shape[2]
        return cls(width=width, height=height, channels=channels)


class ImageToolkit:
    @staticmethod
    def decode_image(image_bytes: bytes) -> np.ndarray:
        """
        Decodes raw image bytes into a 3-channel BGR numpy array.
        Raises ImageDecodeError on empty or malformed input.
        """
        if not image_bytes:
            raise ImageDecodeError("Empty image content")
        nparr = np.frombuffer(image_bytes, np.uint8)
        img = cv2.imdecode(nparr, cv2.IMREAD_COLOR)
        if img is None:
            logger.error("Failed to decode image bytes (%d bytes)", len(image_bytes))
            raise ImageDecodeError(
                "Corrupted or unsupported image format",
                details={"size": len(image_bytes)},
            )
        return img

    @staticmethod
    def encode_png(img: np.ndarray) -> bytes:
        success, buf = cv2.imencode(".png", img)
        if not success:
            raise ImageDecodeError("Failed to encode raster as PNG")
        return buf.tobytes()

    @staticmethod
    def digest(image_bytes: bytes) -> str:
        """Content hash used to tell challenge images apart."""
        return hashlib.sha256(image_bytes).hexdigest()

    @staticmethod
    def pixel(img: np.ndarray, x: int, y: int, channel: int = 0) -> int:
        """Single indexing helper: value of (x, y) in the given channel."""
        if img.ndim == 2:
            return int(img[y, x])
        return int(img[y, x, channel])

    @staticmethod
    def channel(img: np.ndarray, name: str) -> np.ndarray:
        """
        Extracts a named plane from a BGR raster: "R", "G", "B" or "Y"
        (luminance, 0.299R + 0.587G + 0.114B).
        """
        if img.ndim == 2:
            return img.copy()
        if name == "Y":
            return ImageToolkit.luminance(img)
        return img[:, :, CHANNEL_INDEX[name]].copy()

    @staticmethod
    def luminance(img: np.ndarray) -> np.ndarray:
        if img.ndim == 2:
            return img.copy()
        b, g, r = (img[:, :, i].astype(np.float32) for i in range(3))
        lum = 0.299 * r + 0.587 * g + 0.114 * b
        return np.clip(np.rint(lum), 0, 255).astype(np.uint8)

    @staticmethod
    def upscale_to_width(img: np.ndarray, min_width: int = 280) -> np.ndarray:
        """Upsamples narrow captures so glyph strokes survive preprocessing."""
        info = RasterInfo.of(img)
        if info.width >= min_width:
            return img
        scale = min_width / info.width
        return cv2.resize(
            img,
            (min_width, int(round(info.height * scale))),
            interpolation=cv2.INTER_LANCZOS4,
        )
