import json

import httpx
import openai
import pytest

from app.ai.analysis import classify_openai_error, parse_analysis_content
from app.core.exceptions import PermanentFailureError, TransientUpstreamError

from conftest import ANALYSIS_RESULT


def _reply(data):
    body = {k: v for k, v in data.items() if k not in ("media_type", "frames_analyzed", "model")}
    return json.dumps(body)


def test_parses_plain_json():
    analysis = parse_analysis_content(_reply(ANALYSIS_RESULT), "image", 1)
    assert analysis.overall.grade == "C"
    assert set(analysis.problems_by_id()) == {"p1", "p2", "p3"}


def test_parses_fenced_json_and_fills_missing_problem_ids():
    data = json.loads(_reply(ANALYSIS_RESULT))
    for problem in data["dimensions"]["lighting"]["problems"]:
        del problem["problem_id"]
    analysis = parse_analysis_content(f"```json\n{json.dumps(data)}\n```", "video", 4)

    assert analysis.media_type == "video"
    assert analysis.frames_analyzed == 4
    assert {"lighting_1", "lighting_2", "p3"} == set(analysis.problems_by_id())


@pytest.mark.parametrize("content", ["", "I can't analyze this image.", "[1, 2]", '{"overall": {"score": 500}}'])
def test_unusable_replies_are_permanent_failures(content):
    with pytest.raises(PermanentFailureError):
        parse_analysis_content(content, "image", 1)


def test_duplicate_problem_ids_are_rejected():
    data = json.loads(_reply(ANALYSIS_RESULT))
    data["dimensions"]["clutter"]["problems"][0]["problem_id"] = "p1"
    with pytest.raises(PermanentFailureError):
        parse_analysis_content(json.dumps(data), "image", 1)


def _status_error(cls, code):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(code, request=request)
    return cls("upstream", response=response, body=None)


def test_openai_errors_are_classified():
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    assert isinstance(classify_openai_error(openai.APITimeoutError(request=request)), TransientUpstreamError)
    assert isinstance(classify_openai_error(_status_error(openai.RateLimitError, 429)), TransientUpstreamError)
    assert isinstance(classify_openai_error(_status_error(openai.InternalServerError, 500)), TransientUpstreamError)
    assert isinstance(classify_openai_error(_status_error(openai.BadRequestError, 400)), PermanentFailureError)
    assert isinstance(classify_openai_error(_status_error(openai.AuthenticationError, 401)), PermanentFailureError)
