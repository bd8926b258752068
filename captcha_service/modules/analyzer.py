"""
Background color and contrast estimation for challenge images.
"""

import logging

import numpy as np

from .image_toolkit import CHANNEL_INDEX, ImageToolkit, RasterInfo
from .models import ColorProfile, DominantColor

__all__ = ["ImageAnalyzer"]

logger = logging.getLogger("captcha-service.analyzer")


class ImageAnalyzer:
    """
    Classifies the dominant background color from channel means.
    Rules are checked in order; the first match wins, gray otherwise.
    """

    @staticmethod
    def classify(mean_r: float, mean_g: float, mean_b: float) -> DominantColor:
        if mean_r > 180 and mean_g > 150 and mean_b < 120:
            return DominantColor.YELLOW
        if mean_g > 150 and mean_r < 120 and mean_b < 120:
            return DominantColor.GREEN
        if mean_b > 150 and mean_r < 120 and mean_g < 120:
            return DominantColor.BLUE
        if mean_r > 180 and mean_b > 120 and mean_g < 150:
            return DominantColor.PINK
        if mean_r > 180 and mean_g < 120 and mean_b < 120:
            return DominantColor.RED
        return DominantColor.GRAY

    @staticmethod
    def _luminance(img: np.ndarray, info: RasterInfo) -> np.ndarray:
        if info.channels == 1:
            return img.astype(np.float32)
        r = img[:, :, CHANNEL_INDEX["R"]].astype(np.float32)
        g = img[:, :, CHANNEL_INDEX["G"]].astype(np.float32)
        b = img[:, :, CHANNEL_INDEX["B"]].astype(np.float32)
        return 0.299 * r + 0.587 * g + 0.114 * b

    def analyze(self, img: np.ndarray) -> ColorProfile:
        """Computes the ColorProfile of a decoded BGR raster."""
        info = RasterInfo.of(img)
        if info.channels == 1:
            mean_r = mean_g = mean_b = float(img.mean())
        else:
            means = img.reshape(-1, info.channels).mean(axis=0)
            mean_r = float(means[CHANNEL_INDEX["R"]])
            mean_g = float(means[CHANNEL_INDEX["G"]])
            mean_b = float(means[CHANNEL_INDEX["B"]])

        lum = self._luminance(img, info)

        profile = ColorProfile(
            dominant_color=self.classify(mean_r, mean_g, mean_b),
            mean_brightness=float(lum.mean()),
            contrast=float(lum.max() - lum.min()),
        )
        logger.debug(
            "Color profile | dominant: %s | brightness: %.0f | contrast: %.0f",
            profile.dominant_color.value,
            profile.mean_brightness,
            profile.contrast,
        )
        return profile

    def analyze_bytes(self, image_bytes: bytes) -> ColorProfile:
        return self.analyze(ImageToolkit.decode_image(image_bytes))
