"""
Candidate generation: alternative renditions of a challenge image, each a
hypothesis about which transform isolates the characters best.
"""

import logging
from typing import Optional

import numpy as np

from .analyzer import ImageAnalyzer
from .enhance import ImageEnhancer
from .image_toolkit import ImageToolkit
from .models import Candidate, ColorProfile, DominantColor

__all__ = ["CandidateGenerator", "PRIMARY_CHANNELS", "LOW_CONTRAST_FLOOR"]

logger = logging.getLogger("captcha-service.candidates")

# Background color -> (channel, label) that separates the glyphs best.
PRIMARY_CHANNELS: dict[DominantColor, tuple[str, str]] = {
    DominantColor.YELLOW: ("B", "RGB-B-Blue"),
    DominantColor.GREEN: ("R", "RGB-R-Red"),
    DominantColor.BLUE: ("R", "RGB-R-Red"),
    DominantColor.PINK: ("G", "RGB-G-Green"),
    DominantColor.RED: ("G", "RGB-G-Green"),
    DominantColor.GRAY: ("Y", "Luminance"),
}

LOW_CONTRAST_FLOOR = 80.0


class CandidateGenerator:
    """
    Produces the ordered candidate list for one challenge image.

    The list always holds the color baseline, the primary channel, the
    high-contrast luminance, the noise-line-suppressed grayscale and its
    gap-repaired variant. A backup channel is appended for low contrast
    images.
    """

    def __init__(
        self,
        enhancer: Optional[ImageEnhancer] = None,
        analyzer: Optional[ImageAnalyzer] = None,
        low_contrast_floor: float = LOW_CONTRAST_FLOOR,
        repair_passes: int = 2,
    ):
        self.enhancer = enhancer or ImageEnhancer()
        self.analyzer = analyzer or ImageAnalyzer()
        self.low_contrast_floor = low_contrast_floor
        self.repair_passes = repair_passes

    def generate_from_bytes(self, image_bytes: bytes) -> list[Candidate]:
        img = ImageToolkit.decode_image(image_bytes)
        return self.generate(img, self.analyzer.analyze(img))

    def generate(self, img: np.ndarray, profile: ColorProfile) -> list[Candidate]:
        """Builds candidates from a decoded BGR raster and its ColorProfile."""
        enh = self.enhancer
        candidates: list[Candidate] = []

        def emit(image: np.ndarray, label: str, description: str) -> np.ndarray:
            candidates.append(
                Candidate(
                    buffer=ImageToolkit.encode_png(image),
                    image=image,
                    channel_label=label,
                    description=description,
                    color_profile=profile,
                    contrast_score=profile.contrast,
                )
            )
            return image

        # Baseline: full color, lightly cleaned.
        emit(
            enh.normalize(enh.blur_then_sharpen(img)),
            "RGB-Color",
            "Full color image, blurred then sharpened",
        )

        # Primary channel picked from the background color.
        channel_name, label = PRIMARY_CHANNELS[profile.dominant_color]
        plane = ImageToolkit.channel(img, channel_name)
        equalized = enh.equalize_local(plane)
        binarized, outcome = enh.adaptive_threshold(equalized, profile.mean_brightness)
        emit(
            binarized,
            label,
            f"Channel tuned for {profile.dominant_color.value} background ({outcome})",
        )

        luminance = ImageToolkit.channel(img, "Y")
        emit(
            enh.sharpen(enh.linear(enh.normalize(luminance), 1.5, -20), sigma=1.0),
            "Luminance-High-Contrast",
            "Luminance with strong contrast stretch",
        )

        # Aggressive sharpening wipes out thin crossing lines.
        denoised = emit(
            enh.sharpen(
                enh.linear(enh.normalize(enh.to_gray(img)), 1.8, -30),
                sigma=1.2,
                amount=2.0,
            ),
            "Noise-Lines-Removed",
            "Grayscale tuned to suppress thin noise lines",
        )
        emit(
            enh.repair_gaps(denoised, passes=self.repair_passes),
            "Noise-Lines-Removed-Repaired",
            "Noise lines removed, stroke gaps closed by dilation",
        )

        if profile.contrast < self.low_contrast_floor:
            backup_channel, backup_label = (
                ("R", "RGB-R-Backup")
                if profile.dominant_color == DominantColor.YELLOW
                else ("B", "RGB-B-Backup")
            )
            logger.info(
                "Low contrast (%.0f) | Adding backup channel %s",
                profile.contrast,
                backup_label,
            )
            backup = ImageToolkit.channel(img, backup_channel)
            emit(
                enh.sharpen(enh.linear(enh.normalize(backup), 1.6, -25), sigma=1.2),
                backup_label,
                "Backup channel for low contrast images",
            )

        logger.info(
            "Generated %d candidates | Dominant color: %s",
            len(candidates),
            profile.dominant_color.value,
        )
        return candidates
