import asyncio

import pytest

from captcha_service.errors import ImageDecodeError
from captcha_service.modules.models import ResolutionMethod, is_valid_captcha
from captcha_service.modules.ocr_engine import RecognitionOutput
from captcha_service.modules.candidates import CandidateGenerator
from captcha_service.modules.solver import CaptchaSolver
from captcha_service.modules.vision_fallback import VisionClient

from .fakes import FakeEngine

PNG_MAGIC = b"\x89PNG"


class RecordingVision(VisionClient):
    def __init__(self, answer=None):
        self.answer = answer
        self.buffers = []

    async def solve_image(self, buffer):
        self.buffers.append(buffer)
        return self.answer


def test_confident_read_skips_vision(yellow_captcha_png):
    vision = RecordingVision(answer="ZZZZ")
    engine = FakeEngine(default=RecognitionOutput("K7P2", 95))
    solver = CaptchaSolver(engine=engine, vision=vision)

    outcome = asyncio.run(solver.solve(yellow_captcha_png))

    assert outcome.text == "K7P2"
    assert outcome.method == ResolutionMethod.OCR_ENSEMBLE
    assert outcome.confidence == pytest.approx(95)
    assert outcome.candidate_label == "RGB-Color"
    assert outcome.dominant_color.value == "yellow"
    assert vision.buffers == []


def test_unsure_read_is_replaced_by_vision_answer(yellow_captcha_png):
    vision = RecordingVision(answer="K7P2")
    engine = FakeEngine(default=RecognitionOutput("K7P2", 50))
    solver = CaptchaSolver(engine=engine, vision=vision)

    outcome = asyncio.run(solver.solve(yellow_captcha_png))

    assert outcome.text == "K7P2"
    assert outcome.method == ResolutionMethod.API
    assert outcome.confidence == pytest.approx(90)
    # The winning candidate rendition is sent, not the raw capture.
    assert len(vision.buffers) == 1
    assert vision.buffers[0].startswith(PNG_MAGIC)
    assert vision.buffers[0] != yellow_captcha_png
    # The locally corrected read stays available as an alternative.
    assert outcome.alternatives == ["KTPZ"]


def test_unusable_vision_answer_keeps_local_result(yellow_captcha_png):
    vision = RecordingVision(answer=None)
    engine = FakeEngine(default=RecognitionOutput("AB12", 70))
    solver = CaptchaSolver(engine=engine, vision=vision)

    outcome = asyncio.run(solver.solve(yellow_captcha_png))

    assert outcome.text == "AB12"
    assert outcome.method == ResolutionMethod.OCR_ENSEMBLE
    assert len(vision.buffers) == 1


def test_no_result_sends_raw_image_and_pads(yellow_captcha_png):
    vision = RecordingVision(answer=None)
    solver = CaptchaSolver(engine=FakeEngine(), vision=vision)

    outcome = asyncio.run(solver.solve(yellow_captcha_png))

    assert vision.buffers == [yellow_captcha_png]
    assert outcome.padded
    assert outcome.confidence == 0
    assert is_valid_captcha(outcome.text)


def test_alternatives_are_distinct_corrected_reads(yellow_captcha_png):
    engine = FakeEngine(
        by_psm={
            7: RecognitionOutput("AB12", 65),
            8: RecognitionOutput("AB12", 64),
            5: RecognitionOutput("CD34", 63),
        }
    )
    solver = CaptchaSolver(engine=engine)

    outcome = asyncio.run(solver.solve(yellow_captcha_png))

    assert outcome.texts == ["AB12", "CD34"]


def test_decode_errors_propagate():
    solver = CaptchaSolver(engine=FakeEngine())

    with pytest.raises(ImageDecodeError):
        asyncio.run(solver.solve(b"not an image"))


class FailingVision(VisionClient):
    async def solve_image(self, buffer):
        raise ConnectionError("net down")


def test_vision_client_errors_keep_local_result(yellow_captcha_png):
    engine = FakeEngine(default=RecognitionOutput("AB12", 70))
    solver = CaptchaSolver(engine=engine, vision=FailingVision())

    outcome = asyncio.run(solver.solve(yellow_captcha_png))

    assert outcome.text == "AB12"
    assert outcome.method == ResolutionMethod.OCR_ENSEMBLE


@pytest.mark.parametrize("answer", ["ERRO", "ab", "AB123", "", "A?"])
def test_malformed_vision_answers_are_ignored(yellow_captcha_png, answer):
    engine = FakeEngine(default=RecognitionOutput("AB12", 70))
    solver = CaptchaSolver(engine=engine, vision=RecordingVision(answer=answer))

    outcome = asyncio.run(solver.solve(yellow_captcha_png))

    assert outcome.text == "AB12"
    assert outcome.method == ResolutionMethod.OCR_ENSEMBLE
    assert is_valid_captcha(outcome.text)


def test_vision_answer_is_normalized(yellow_captcha_png):
    engine = FakeEngine(default=RecognitionOutput("AB12", 70))
    solver = CaptchaSolver(engine=engine, vision=RecordingVision(answer=" k7p2\n"))

    outcome = asyncio.run(solver.solve(yellow_captcha_png))

    assert outcome.text == "K7P2"
    assert outcome.method == ResolutionMethod.API


def test_same_image_gives_same_candidates(yellow_captcha_png):
    generator = CandidateGenerator()

    first = generator.generate_from_bytes(yellow_captcha_png)
    second = generator.generate_from_bytes(yellow_captcha_png)

    assert [c.channel_label for c in first] == [c.channel_label for c in second]
    assert [c.buffer for c in first] == [c.buffer for c in second]


def test_same_image_gives_same_answer(yellow_captcha_png):
    by_psm = {
        7: RecognitionOutput("AB1", 90),
        8: RecognitionOutput("XY2Z", 62),
        5: RecognitionOutput("XY2Z", 61),
    }

    outcomes = [
        asyncio.run(CaptchaSolver(engine=FakeEngine(by_psm=by_psm)).solve(yellow_captcha_png))
        for _ in range(2)
    ]

    first, second = outcomes
    assert first.text == second.text == "XY2Z"
    assert first.candidate_label == second.candidate_label == "RGB-Color"
    assert first.segmentation_mode == second.segmentation_mode == "PSM-8-SingleWord"
    assert first.confidence == second.confidence
    assert first.alternatives == second.alternatives
