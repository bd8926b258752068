#!/usr/bin/env python3
"""
CLI tool to run the CAPTCHA solver on an image file.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

# Add project root to sys.path for local development
sys.path.append(str(Path(__file__).parent.parent))

from captcha_service.errors import ImageDecodeError
from captcha_service.modules.ai_providers import GeminiVisionProvider
from captcha_service.modules.ocr_config import EngineConfig
from captcha_service.modules.ocr_engine import TesseractRecognizer
from captcha_service.modules.solver import CaptchaSolver
from captcha_service.modules.vision_fallback import VisionFallback
from captcha_service.utils.custom_logging import setup_logging


async def main():
    parser = argparse.ArgumentParser(description="CAPTCHA solver CLI")
    parser.add_argument("image_path", help="Path to the CAPTCHA image")
    parser.add_argument(
        "--vision",
        action="store_true",
        help="Ask Gemini when the local ensemble is unsure",
    )
    parser.add_argument(
        "--api-key",
        help="Gemini API Key (overrides GEMINI_API_KEY env var)",
    )
    parser.add_argument("--tesseract-cmd", help="Path to the tesseract binary")
    parser.add_argument("--workers", type=int, default=1, help="Recognition workers")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    setup_logging(level=logging.DEBUG if args.verbose else logging.WARNING)

    if not os.path.exists(args.image_path):
        print("Error: Image file not found at", args.image_path)
        sys.exit(1)

    vision = None
    if args.vision:
        api_key = args.api_key or os.environ.get("GEMINI_API_KEY")
        if not api_key:
            print(
                "Error: GEMINI_API_KEY is not set in your environment "
                "and --api-key was not provided."
            )
            sys.exit(1)
        vision = VisionFallback({"gemini": GeminiVisionProvider(api_key=api_key)})

    solver = CaptchaSolver(
        EngineConfig(recognition_workers=args.workers),
        engine=TesseractRecognizer(args.tesseract_cmd),
        vision=vision,
    )

    with open(args.image_path, "rb") as f:
        image_bytes = f.read()

    try:
        outcome = await solver.solve(image_bytes)
    except ImageDecodeError as e:
        print("Error:", e)
        sys.exit(2)
    finally:
        await solver.close()

    print(
        json.dumps(
            {
                "text": outcome.text,
                "confidence": round(outcome.confidence, 1),
                "method": outcome.method.value,
                "padded": outcome.padded,
                "candidate": outcome.candidate_label,
                "segmentation_mode": outcome.segmentation_mode,
                "dominant_color": (
                    outcome.dominant_color.value if outcome.dominant_color else None
                ),
                "alternatives": outcome.alternatives,
            },
            indent=2,
        )
    )


if __name__ == "__main__":
    asyncio.run(main())
