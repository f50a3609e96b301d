"""Test the two-round detection protocol.

Network calls go through httpx.MockTransport; the parsing helpers are
tested on their own.
"""
from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from textwipe.config import DetectionConfig
from textwipe.domain.models import TextRegion
from textwipe.services.detector import (
    DetectionAPIError,
    DetectionError,
    DetectionParseError,
    DetectionTransportError,
    GeminiDetector,
    StaticDetector,
    create_detector,
    extract_response_text,
    is_valid_detection_text,
    parse_structured_regions,
    parse_structured_styles,
    strip_code_fence,
)

VALID_ROUND1 = """I ran the analysis.
```json
[{"box_2d": [100, 200, 150, 400], "label": "Hello"}]
```"""

ANALYZED_ROUND1 = """Let me measure the text first.
```python
print(image.size)
```
Here is the result:
```json
[{"box_2d": [100, 200, 150, 400], "label": "Hello"}]
```"""

STRUCTURED = json.dumps({
    "regions": [
        {"box_2d": [100, 200, 150, 400], "label": "Hello", "polygon": []},
        {"box_2d": [160, 200, 210, 380], "label": "World", "polygon": [[160, 200], [160, 380], [210, 380]]},
    ]
})


def reply(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def kind(request: httpx.Request) -> str:
    """Classify a request as round1, round2 or styles."""
    body = json.loads(request.content)
    if "tools" in body:
        return "round1"
    schema = body["generationConfig"]["responseSchema"]
    return "styles" if "styles" in schema["properties"] else "round2"


class ScriptedGemini:
    """Mock Gemini endpoint answering each request kind from a script."""

    def __init__(self, **script):
        self.script = {name: list(responses) for name, responses in script.items()}
        self.requests: list[tuple[str, httpx.Request]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        name = kind(request)
        self.requests.append((name, request))
        responses = self.script[name]
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)

    def calls(self, name: str) -> list[httpx.Request]:
        return [request for kind_, request in self.requests if kind_ == name]


def run_detector(config: DetectionConfig, handler, action):
    """Run ``action(detector)`` against a mock transport."""
    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await action(GeminiDetector(config, client=client))
    return asyncio.run(main())


@pytest.fixture
def detection_config(app_config) -> DetectionConfig:
    return app_config.detection


# ═══════════════════════════════════════════════════════════════════════════════
# PARSING
# ═══════════════════════════════════════════════════════════════════════════════

class TestCodeFence:
    def test_json_fence(self):
        assert strip_code_fence('```json\n[1, 2]\n```') == "[1, 2]"

    def test_bare_fence_inside_prose(self):
        assert strip_code_fence('Result:\n```\n{"a": 1}\n```\nDone.') == '{"a": 1}'

    def test_no_fence(self):
        assert strip_code_fence("  plain  \n") == "plain"

    def test_json_fence_after_code_block(self):
        assert strip_code_fence(ANALYZED_ROUND1) == '[{"box_2d": [100, 200, 150, 400], "label": "Hello"}]'


class TestValidity:
    """Test the heuristic that decides whether round 1 found boxes."""

    @pytest.mark.parametrize(
        "text",
        [
            '[{"box_2d": [1, 2, 3, 4], "label": "a"}]',
            '{"box_2d": [1, 2, 3, 4]}',
            VALID_ROUND1,
            ANALYZED_ROUND1,
            '[{"label": "no box"}, {"box_2d": [1, 2, 3, 4]}]',
        ],
    )
    def test_valid(self, text):
        assert is_valid_detection_text(text)

    @pytest.mark.parametrize(
        "text",
        [
            "There is some text in the image.",
            "I would report box_2d values but cannot.",
            '[{"label": "box_2d"}]',
            '"box_2d"',
            "",
        ],
    )
    def test_invalid(self, text):
        assert not is_valid_detection_text(text)


class TestResponseText:
    def test_first_part_only(self):
        payload = {"candidates": [{"content": {"parts": [{"text": "a"}, {"text": "b"}]}}]}
        assert extract_response_text(payload) == "a"

    def test_joined_parts_skip_code_parts(self):
        payload = {
            "candidates": [{
                "content": {
                    "parts": [
                        {"executableCode": {"code": "print(1)"}},
                        {"text": "first"},
                        {"codeExecutionResult": {"output": "1"}},
                        {"text": "second"},
                    ]
                }
            }]
        }
        assert extract_response_text(payload, join_parts=True) == "first\nsecond"

    @pytest.mark.parametrize(
        "payload",
        [{}, {"candidates": []}, {"candidates": [{"content": {"parts": []}}]}, {"candidates": [{}]}],
    )
    def test_missing_text(self, payload):
        assert extract_response_text(payload) is None


class TestStructuredParsing:
    def test_regions(self):
        regions = parse_structured_regions(STRUCTURED)

        assert [r.label for r in regions] == ["Hello", "World"]
        assert regions[0].box == (100, 200, 150, 400)
        assert not regions[0].has_polygon()
        assert regions[1].has_polygon()

    def test_fenced_regions(self):
        assert len(parse_structured_regions(f"```json\n{STRUCTURED}\n```")) == 2

    @pytest.mark.parametrize(
        "text",
        ["not json", '{"items": []}', '{"regions": {}}', '{"regions": [{"label": "no box"}]}'],
    )
    def test_bad_regions(self, text):
        with pytest.raises(DetectionParseError):
            parse_structured_regions(text)

    def test_styles(self):
        styles = parse_structured_styles(
            '{"styles": [{"index": 0, "color_hex": "#FF0000", "font_size": 18, "is_bold": true}]}'
        )
        assert styles[0].color_hex == "#FF0000"
        assert styles[0].font_size == 18
        assert styles[0].is_bold

    def test_bad_styles(self):
        with pytest.raises(DetectionParseError):
            parse_structured_styles('{"styles": [{"index": -1}]}')


class TestErrorConversion:
    def test_timeout(self):
        error = DetectionError.from_exception(httpx.ReadTimeout("slow"))
        assert isinstance(error, DetectionTransportError)

    def test_json(self):
        error = DetectionError.from_exception(json.JSONDecodeError("Expecting value", "{", 1))
        assert isinstance(error, DetectionParseError)

    def test_passthrough(self):
        error = DetectionAPIError("bad", status_code=400)
        assert DetectionError.from_exception(error) is error


# ═══════════════════════════════════════════════════════════════════════════════
# PROTOCOL
# ═══════════════════════════════════════════════════════════════════════════════

class TestGeminiDetector:
    """Test both detection rounds against a scripted endpoint."""

    def test_retry_then_normalize(self, detection_config):
        gemini = ScriptedGemini(
            round1=[httpx.Response(500, text="overloaded"), reply(VALID_ROUND1)],
            round2=[reply(STRUCTURED)],
        )

        outcome = run_detector(detection_config, gemini, lambda d: d.detect(b"png-bytes"))

        assert [r.label for r in outcome.regions] == ["Hello", "World"]
        assert outcome.raw_text == VALID_ROUND1
        assert len(gemini.calls("round1")) == 2
        assert len(gemini.calls("round2")) == 1

    def test_request_shape(self, detection_config):
        gemini = ScriptedGemini(round1=[reply(VALID_ROUND1)], round2=[reply(STRUCTURED)])

        run_detector(detection_config, gemini, lambda d: d.detect(b"png-bytes"))

        round1 = gemini.calls("round1")[0]
        assert round1.url.path == "/v1beta/models/gemini-2.5-flash:generateContent"
        assert round1.url.params["key"] == "test-key"
        body = json.loads(round1.content)
        assert body["tools"] == [{"codeExecution": {}}]
        assert body["generationConfig"]["thinkingConfig"] == {"thinkingLevel": "high"}
        assert body["contents"][0]["parts"][1]["inlineData"]["data"] == "cG5nLWJ5dGVz"

        round2 = json.loads(gemini.calls("round2")[0].content)
        assert VALID_ROUND1 in round2["contents"][0]["parts"][0]["text"]
        assert round2["generationConfig"]["responseMimeType"] == "application/json"

    def test_code_before_result_is_accepted_first_time(self, detection_config):
        gemini = ScriptedGemini(round1=[reply(ANALYZED_ROUND1)], round2=[reply(STRUCTURED)])

        raw = run_detector(detection_config, gemini, lambda d: d.detect_freeform(b"png-bytes"))

        assert raw.is_valid
        assert raw.text == ANALYZED_ROUND1
        assert len(gemini.calls("round1")) == 1

    def test_prose_is_forwarded_to_round_two(self, detection_config):
        """Round 1 without boxes is retried, then still normalized."""
        prose = "The image contains the word Hello near the top."
        gemini = ScriptedGemini(round1=[reply(prose)], round2=[reply(STRUCTURED)])

        outcome = run_detector(detection_config, gemini, lambda d: d.detect("aGVsbG8="))

        assert len(outcome.regions) == 2
        assert outcome.raw_text == prose
        assert len(gemini.calls("round1")) == detection_config.max_retries
        round2 = json.loads(gemini.calls("round2")[0].content)
        assert prose in round2["contents"][0]["parts"][0]["text"]

    def test_last_text_wins_over_later_failures(self, detection_config):
        gemini = ScriptedGemini(
            round1=[reply("first prose"), reply("second prose"), httpx.Response(503)],
            round2=[reply(STRUCTURED)],
        )

        raw = run_detector(detection_config, gemini, lambda d: d.detect_freeform(b"x"))

        assert raw.text == "second prose"
        assert not raw.is_valid

    def test_exhausted_retries_raise_api_error(self, detection_config):
        gemini = ScriptedGemini(round1=[httpx.Response(503, text="unavailable")], round2=[reply(STRUCTURED)])

        with pytest.raises(DetectionAPIError) as excinfo:
            run_detector(detection_config, gemini, lambda d: d.detect(b"x"))

        assert excinfo.value.status_code == 503
        assert len(gemini.calls("round1")) == detection_config.max_retries
        assert gemini.calls("round2") == []

    def test_transport_failure(self, detection_config):
        gemini = ScriptedGemini(round1=[httpx.ConnectError("connection refused")], round2=[reply(STRUCTURED)])

        with pytest.raises(DetectionTransportError):
            run_detector(detection_config, gemini, lambda d: d.detect(b"x"))

    def test_error_body(self, detection_config):
        gemini = ScriptedGemini(round1=[{"error": {"message": "quota exceeded"}}], round2=[reply(STRUCTURED)])

        with pytest.raises(DetectionAPIError, match="quota exceeded"):
            run_detector(detection_config, gemini, lambda d: d.detect(b"x"))

    def test_empty_responses(self, detection_config):
        gemini = ScriptedGemini(round1=[{"candidates": []}], round2=[reply(STRUCTURED)])

        with pytest.raises(DetectionError, match="no usable response"):
            run_detector(detection_config, gemini, lambda d: d.detect(b"x"))

        assert len(gemini.calls("round1")) == detection_config.max_retries

    def test_unparsable_round_two(self, detection_config):
        gemini = ScriptedGemini(round1=[reply(VALID_ROUND1)], round2=[reply("Sorry, I cannot do that.")])

        with pytest.raises(DetectionParseError):
            run_detector(detection_config, gemini, lambda d: d.detect(b"x"))

    def test_round_two_without_content(self, detection_config):
        gemini = ScriptedGemini(round1=[reply(VALID_ROUND1)], round2=[{"candidates": []}])

        with pytest.raises(DetectionAPIError, match="Round 2"):
            run_detector(detection_config, gemini, lambda d: d.detect(b"x"))


class TestStyles:
    def test_extract_styles(self, detection_config):
        gemini = ScriptedGemini(
            styles=[reply('{"styles": [{"index": 0, "color_hex": "#112233", "font_size": 20, "is_bold": false}]}')]
        )
        regions = [TextRegion(box_2d=[0, 0, 10, 10], label="A" * 100)]

        styles = run_detector(detection_config, gemini, lambda d: d.extract_styles(b"x", regions))

        assert styles[0].color_hex == "#112233"
        prompt = json.loads(gemini.calls("styles")[0].content)["contents"][0]["parts"][0]["text"]
        assert "0. " + "A" * 40 + "\n" in prompt
        assert "A" * 41 not in prompt

    def test_no_regions_makes_no_request(self, detection_config):
        gemini = ScriptedGemini()

        styles = run_detector(detection_config, gemini, lambda d: d.extract_styles(b"x", []))

        assert styles == []
        assert gemini.requests == []


class TestFactory:
    def test_static_detector(self):
        region = TextRegion(box_2d=[1, 2, 3, 4], label="x")
        detector = StaticDetector([region])

        outcome = asyncio.run(detector.detect(b"anything"))

        assert outcome.regions == [region]
        assert asyncio.run(detector.extract_styles(b"anything", [region])) == []

    def test_create_detector(self, detection_config):
        detector = create_detector(detection_config)
        assert isinstance(detector, GeminiDetector)
        assert detector.endpoint == "https://gemini.test/v1beta/models/gemini-2.5-flash:generateContent"

    def test_create_detector_without_key(self):
        assert isinstance(create_detector(DetectionConfig()), GeminiDetector)
