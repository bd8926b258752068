import asyncio
import base64
from unittest.mock import MagicMock

import pytest
from selenium.common.exceptions import StaleElementReferenceException

from captcha_service.errors import HostUIError
from captcha_service.services.host_ui import (
    CONFIRM_XPATH,
    IMAGE_XPATH,
    INPUT_XPATH,
    SeleniumHostUI,
)


def _element(**attrs):
    element = MagicMock()
    element.is_displayed.return_value = True
    element.is_enabled.return_value = True
    for key, value in attrs.items():
        setattr(element, key, value)
    return element


@pytest.fixture
def page():
    """A fake driver showing the modal with a data URI image."""
    modal = _element()
    image = _element()
    image.get_attribute.return_value = "data:image/png;base64," + base64.b64encode(
        b"png-bytes"
    ).decode("ascii")
    field = _element()
    confirm = _element()
    by_xpath = {IMAGE_XPATH: image, INPUT_XPATH: field, CONFIRM_XPATH: confirm}

    driver = MagicMock()
    driver.find_elements.return_value = [modal]
    driver.find_element.side_effect = lambda _by, xpath: by_xpath[xpath]
    return driver, modal, image, field, confirm


def test_capture_decodes_data_uri(page):
    driver, *_ = page

    assert asyncio.run(SeleniumHostUI(driver).capture()) == b"png-bytes"


def test_capture_falls_back_to_element_screenshot(page):
    driver, _modal, image, *_ = page
    image.get_attribute.return_value = "https://portal.example/captcha.jpg"
    image.screenshot_as_png = b"screenshot"

    assert asyncio.run(SeleniumHostUI(driver).capture()) == b"screenshot"


def test_capture_without_modal_returns_none(page):
    driver, modal, *_ = page
    modal.is_displayed.return_value = False

    host = SeleniumHostUI(driver)

    assert asyncio.run(host.capture()) is None
    assert asyncio.run(host.is_challenge_visible()) is False
    driver.find_element.assert_not_called()


def test_submit_types_and_confirms(page):
    driver, _modal, _image, field, confirm = page

    asyncio.run(SeleniumHostUI(driver).submit("AB12"))

    field.clear.assert_called_once()
    field.send_keys.assert_called_once_with("AB12")
    confirm.click.assert_called_once()


def test_stale_elements_become_host_errors(page):
    driver, *_ = page
    driver.find_elements.side_effect = StaleElementReferenceException("gone")

    host = SeleniumHostUI(driver)

    with pytest.raises(HostUIError):
        asyncio.run(host.capture())
    with pytest.raises(HostUIError):
        asyncio.run(host.is_challenge_visible())
