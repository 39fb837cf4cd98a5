"""OpenAI vision analysis of uploaded media."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI
from pydantic import ValidationError

from app.ai.models import DIMENSIONS, MediaAnalysis
from app.core.config import get_settings
from app.core.exceptions import PermanentFailureError, TransientUpstreamError

settings = get_settings()
logger = logging.getLogger(__name__)


ANALYSIS_PROMPT = """You are an expert interior designer and photographer reviewing a room.
You are given {frame_note}.

Score the space on these dimensions: {dimensions}.
For each dimension list concrete, visible problems and a practical solution for each.

Return a JSON object with exactly this structure:
{{
    "overall": {{"score": 0-100, "grade": "A|B|C|D|F", "summary": "one or two sentences"}},
    "dimensions": {{
        "<dimension>": {{
            "score": 0-100,
            "status": "excellent|good|needs_improvement|poor",
            "problems": [
                {{"problem_id": "<dimension>_1", "title": "...", "description": "...",
                  "impact": "...", "severity": "low|medium|high"}}
            ],
            "solutions": [
                {{"problem_id": "<dimension>_1", "title": "...", "description": "...",
                  "steps": ["..."], "difficulty": "easy|medium|hard"}}
            ]
        }}
    }}
}}

Problem ids must be unique across all dimensions.
Return ONLY the JSON object, no other text."""


@dataclass(frozen=True)
class AnalysisOutcome:
    analysis: MediaAnalysis
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None


def classify_openai_error(e: Exception) -> Exception:
    """Map an OpenAI SDK error to a retryable or permanent job failure."""
    if isinstance(e, (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError)):
        # APITimeoutError is an APIConnectionError.
        return TransientUpstreamError(f"OpenAI unavailable: {type(e).__name__}")
    if isinstance(e, openai.APIStatusError):
        return PermanentFailureError(f"OpenAI rejected the request ({e.status_code}): {e.message}")
    return PermanentFailureError(f"OpenAI error: {e}")


def parse_analysis_content(content: str, media_type: str, frames: int) -> MediaAnalysis:
    """Parse the model's JSON reply into a validated MediaAnalysis."""
    content = (content or "").strip()
    if not content:
        raise PermanentFailureError("OpenAI returned an empty response")

    json_match = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", content)
    if json_match:
        content = json_match.group(1).strip()

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise PermanentFailureError(f"Failed to parse analysis as JSON: {e}. Response: {content[:200]}")
    if not isinstance(data, dict):
        raise PermanentFailureError("Analysis response is not a JSON object")

    dimensions = data.get("dimensions") or {}
    if isinstance(dimensions, dict):
        for name, dim in dimensions.items():
            if not isinstance(dim, dict):
                continue
            # Fill in ids the model left out so fixes can reference every problem.
            for i, problem in enumerate(dim.get("problems") or [], start=1):
                if isinstance(problem, dict) and not problem.get("problem_id"):
                    problem["problem_id"] = f"{name}_{i}"

    try:
        return MediaAnalysis.model_validate(
            {**data, "media_type": media_type, "frames_analyzed": frames, "model": settings.OPENAI_MODEL}
        )
    except ValidationError as e:
        raise PermanentFailureError(f"Analysis response has an unexpected shape: {e}")


class MediaAnalysisService:
    """Handles OpenAI API interactions for media analysis."""

    _instance: "MediaAnalysisService" = None

    def __new__(cls):
        """Singleton pattern for OpenAI client."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            # Retries are owned by the worker pipeline.
            cls._instance.client = OpenAI(
                api_key=settings.OPENAI_API_KEY,
                timeout=float(settings.AI_REQUEST_TIMEOUT_SECONDS),
                max_retries=0,
            )
            cls._instance.model = settings.OPENAI_MODEL
        return cls._instance

    def analyze(self, media_urls: List[str], media_type: str) -> AnalysisOutcome:
        """
        Analyze one image, or a set of representative video frames, by URL.

        Raises TransientUpstreamError for failures worth retrying and
        PermanentFailureError for everything else.
        """
        if not media_urls:
            raise PermanentFailureError("No media to analyze")

        if media_type == "video":
            frame_note = f"{len(media_urls)} frames sampled from a walkthrough video of the room"
        else:
            frame_note = "a photo of the room"
        prompt = ANALYSIS_PROMPT.format(frame_note=frame_note, dimensions=", ".join(DIMENSIONS))

        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        content.extend({"type": "image_url", "image_url": {"url": url, "detail": "high"}} for url in media_urls)

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": content}],
                max_tokens=2500,
                temperature=0.3,
                response_format={"type": "json_object"},
            )
        except openai.OpenAIError as e:
            raise classify_openai_error(e) from e

        if not response.choices:
            raise PermanentFailureError("OpenAI returned no choices")

        analysis = parse_analysis_content(response.choices[0].message.content, media_type, len(media_urls))
        usage = getattr(response, "usage", None)
        return AnalysisOutcome(
            analysis=analysis,
            tokens_in=getattr(usage, "prompt_tokens", None),
            tokens_out=getattr(usage, "completion_tokens", None),
        )
