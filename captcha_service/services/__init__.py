from .host_ui import HostUI, SeleniumHostUI
from .resolution import CaptchaResolutionService
from .statistics import StatisticsAccumulator

__all__ = [
    "CaptchaResolutionService",
    "HostUI",
    "SeleniumHostUI",
    "StatisticsAccumulator",
]
