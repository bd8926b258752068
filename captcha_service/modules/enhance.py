"""
Image enhancement helpers: grayscale, sharpening, contrast stretching,
local equalization, validated binarization and gap repair.
"""

import logging

import cv2
import numpy as np

from .image_toolkit import RasterInfo

logger = logging.getLogger("captcha-service.enhance")

# Luminance above which a pixel counts as background in a binarized image.
BACKGROUND_LEVEL = 200
# Split point between light and dark pixels for gap repair.
INK_LEVEL = 128


class ImageEnhancer:
    """
    Handles image preprocessing for CAPTCHA recognition.
    """

    @staticmethod
    def to_gray(img: np.ndarray) -> np.ndarray:
        """
        Converts an image to grayscale if it is in color.
        """
        if len(img.shape) == 3:
            return cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        return img

    @staticmethod
    def normalize(img: np.ndarray) -> np.ndarray:
        """
        Min-max stretch to the full 0-255 range.
        Flat images are returned untouched.
        """
        if int(img.max()) == int(img.min()):
            return img.copy()
        return cv2.normalize(img, None, 0, 255, cv2.NORM_MINMAX)

    @staticmethod
    def linear(img: np.ndarray, gain: float, offset: float) -> np.ndarray:
        """Applies out = gain * in + offset, saturating to uint8."""
        out = img.astype(np.float32) * gain + offset
        return np.clip(out, 0, 255).astype(np.uint8)

    @staticmethod
    def sharpen(img: np.ndarray, sigma: float = 1.0, amount: float = 1.0) -> np.ndarray:
        """
        Unsharp mask: adds back the difference between the image and a
        Gaussian-blurred copy of itself.
        """
        blurred = cv2.GaussianBlur(img, (0, 0), sigma)
        return cv2.addWeighted(img, 1.0 + amount, blurred, -amount, 0)

    @staticmethod
    def blur_then_sharpen(img: np.ndarray) -> np.ndarray:
        """Light blur removes aliasing, the sharpen pass restores edges."""
        softened = cv2.GaussianBlur(img, (0, 0), 0.5)
        return ImageEnhancer.sharpen(softened, sigma=0.8)

    @staticmethod
    def equalize_local(img_gray: np.ndarray, clip_limit: float = 2.0) -> np.ndarray:
        """
        CLAHE with a mild clip limit followed by a light contrast boost.
        """
        clahe = cv2.createCLAHE(clipLimit=clip_limit, tileGridSize=(8, 8))
        equalized = clahe.apply(img_gray)
        return ImageEnhancer.linear(equalized, 1.2, -8)

    @staticmethod
    def background_ratio(img_gray: np.ndarray) -> float:
        return float(np.count_nonzero(img_gray > BACKGROUND_LEVEL)) / img_gray.size

    @staticmethod
    def adaptive_threshold(
        img_gray: np.ndarray,
        mean_brightness: float,
        block_size: int = 21,
        max_background: float = 0.90,
        min_background: float = 0.05,
    ) -> tuple[np.ndarray, str]:
        """
        Block-wise mean thresholding with a brightness dependent offset.

        The result validates itself: a binarization that is almost all
        background carries no signal and is replaced by the equalized input;
        one that is almost all foreground is inverted, so the equalized input
        is negated instead. Returns the image and a short outcome tag.
        """
        offset = 5 if mean_brightness > 180 else 2
        equalized = ImageEnhancer.normalize(img_gray)
        binary = cv2.adaptiveThreshold(
            equalized,
            255,
            cv2.ADAPTIVE_THRESH_MEAN_C,
            cv2.THRESH_BINARY,
            block_size,
            offset,
        )

        ratio = ImageEnhancer.background_ratio(binary)
        if ratio > max_background:
            logger.debug("Binarization rejected: %.1f%% background", ratio * 100)
            return equalized, "equalized"
        if ratio < min_background:
            logger.debug("Binarization rejected: %.1f%% background (inverted)", ratio * 100)
            return cv2.bitwise_not(equalized), "negated"
        return binary, "binary"

    @staticmethod
    def repair_gaps(img_gray: np.ndarray, passes: int = 1) -> np.ndarray:
        """
        Closes holes left in glyph strokes by noise-line removal.

        Each pass turns every light interior pixel that has at least one dark
        pixel in its 4-neighbourhood dark. Neighbours are read from the input
        of the pass, never from pixels recolored during it. Border pixels are
        left as they are.
        """
        current = img_gray.copy()
        info = RasterInfo.of(current)
        if info.width < 3 or info.height < 3:
            return current

        for _ in range(passes):
            dark = current < INK_LEVEL
            neighbours = (
                dark[1:-1, 2:] | dark[1:-1, :-2] | dark[2:, 1:-1] | dark[:-2, 1:-1]
            )
            light = current[1:-1, 1:-1] > INK_LEVEL
            repaired = current.copy()
            repaired[1:-1, 1:-1][light & neighbours] = 0
            current = repaired
        return current
