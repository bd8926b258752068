"""
Host page adapters. The resolution state machine talks to the page that
shows the CAPTCHA only through the HostUI interface.
"""

import asyncio
import base64
import binascii
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from selenium.common.exceptions import (
    NoSuchElementException,
    StaleElementReferenceException,
    TimeoutException,
    WebDriverException,
)
from selenium.webdriver.common.by import By
from selenium.webdriver.support import expected_conditions as EC
from selenium.webdriver.support.ui import WebDriverWait

from captcha_service.errors import HostUIError

__all__ = ["HostUI", "SeleniumHostUI"]

logger = logging.getLogger("captcha-service.host-ui")

# Modal of the portal's CAPTCHA prompt (old and new page layouts).
MODAL_XPATH = (
    "((/html/body/div[8]/div[2]) | "
    '(//*[@id="modal-recaptcha_modal-label"]/ancestor::div[contains(@class,"dtp-modal")]))'
)
IMAGE_XPATH = f'{MODAL_XPATH}//img[contains(@src,"data:image")]'
INPUT_XPATH = f'{MODAL_XPATH}//input[@type="text" or @maxlength>=4]'
CONFIRM_XPATH = (
    f"{MODAL_XPATH}//button[contains(translate(normalize-space(.),"
    "'CONFIRMAR','confirmar'),'confirmar')]"
)
DATA_URI_PREFIX = "data:image/png;base64,"

_TRANSIENT = (
    NoSuchElementException,
    StaleElementReferenceException,
    TimeoutException,
    WebDriverException,
)


class HostUI(ABC):
    """
    The page that shows the challenge and accepts the answer. Calls are never
    made concurrently, and each one must return in bounded time even when its
    caller has stopped waiting.
    """

    @abstractmethod
    async def capture(self) -> Optional[bytes]:
        """Current challenge image, or None when no image is shown."""

    @abstractmethod
    async def is_challenge_visible(self) -> bool:
        """True while the challenge prompt is on screen."""

    @abstractmethod
    async def submit(self, text: str) -> None:
        """Types the answer and confirms it. Raises HostUIError on transient failure."""


class SeleniumHostUI(HostUI):
    """
    HostUI over a Selenium WebDriver. WebDriver calls block, so each one runs
    in a worker thread.
    """

    def __init__(self, driver: Any, wait_timeout: float = 5.0):
        self.driver = driver
        self.wait_timeout = wait_timeout

    def _wait(self, timeout: Optional[float] = None) -> WebDriverWait:
        return WebDriverWait(self.driver, timeout or self.wait_timeout)

    def _visible_sync(self) -> bool:
        elements = self.driver.find_elements(By.XPATH, MODAL_XPATH)
        return any(el.is_displayed() for el in elements)

    def _capture_sync(self) -> Optional[bytes]:
        if not self._visible_sync():
            return None
        img = self._wait().until(EC.presence_of_element_located((By.XPATH, IMAGE_XPATH)))
        src = img.get_attribute("src") or ""
        if src.startswith(DATA_URI_PREFIX):
            try:
                return base64.b64decode(src[len(DATA_URI_PREFIX) :])
            except (binascii.Error, ValueError):
                logger.warning("Malformed data URI on challenge image, using screenshot")
        return img.screenshot_as_png

    def _submit_sync(self, text: str) -> None:
        field = self._wait().until(EC.element_to_be_clickable((By.XPATH, INPUT_XPATH)))
        field.clear()
        field.send_keys(text)
        self._wait().until(EC.element_to_be_clickable((By.XPATH, CONFIRM_XPATH))).click()

    async def is_challenge_visible(self) -> bool:
        try:
            return await asyncio.to_thread(self._visible_sync)
        except _TRANSIENT as e:
            raise HostUIError(f"Visibility check failed: {e}") from e

    async def capture(self) -> Optional[bytes]:
        try:
            image = await asyncio.to_thread(self._capture_sync)
        except _TRANSIENT as e:
            raise HostUIError(f"Capture failed: {e}") from e
        if image is not None:
            logger.debug("Captured challenge image (%d bytes)", len(image))
        return image

    async def submit(self, text: str) -> None:
        try:
            await asyncio.to_thread(self._submit_sync, text)
        except _TRANSIENT as e:
            raise HostUIError(f"Submit failed: {e}", details={"text": text}) from e
        logger.debug("Typed and confirmed %s", text)
