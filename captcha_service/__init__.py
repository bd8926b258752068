"""captcha_service package: image CAPTCHA resolution engine and its HTTP surface."""

__version__ = "1.0.0"
