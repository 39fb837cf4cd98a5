"""HTTP client for the media transform service (frame extraction and fixes)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

import httpx

from app.core.config import get_settings
from app.core.exceptions import PermanentFailureError, TransientUpstreamError

settings = get_settings()
logger = logging.getLogger(__name__)

MAX_VIDEO_FRAMES = 6


class MediaTransformClient:
    """Talks to the transform service; every call is bounded by TRANSFORM_TIMEOUT_SECONDS."""

    _instance: "MediaTransformClient" = None

    def __new__(cls):
        """Singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance.base_url = (settings.TRANSFORM_SERVICE_URL or "").rstrip("/")
            cls._instance.timeout = float(settings.TRANSFORM_TIMEOUT_SECONDS)
        return cls._instance

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if not self.base_url:
            raise PermanentFailureError("TRANSFORM_SERVICE_URL is not configured.")

        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout) as client:
                response = client.post(path, json=body)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429 or status >= 500:
                raise TransientUpstreamError(f"Transform service returned {status}") from e
            raise PermanentFailureError(f"Transform service rejected the request ({status}): {e.response.text[:300]}") from e
        except httpx.TransportError as e:
            # Timeouts and connection failures.
            raise TransientUpstreamError(f"Transform service unavailable: {type(e).__name__}") from e
        except ValueError as e:
            raise PermanentFailureError(f"Transform service returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise PermanentFailureError("Transform service returned an unexpected payload")
        return data

    def extract_frames(self, input_ref: str, max_frames: int = MAX_VIDEO_FRAMES) -> List[str]:
        """Sample representative frames of a video; returns S3 keys of the frame images."""
        data = self._post("/frames", {"input_ref": input_ref, "max_frames": max_frames})
        frames = [f for f in (data.get("frame_refs") or []) if isinstance(f, str) and f]
        if not frames:
            raise PermanentFailureError("No frames could be extracted from the video")
        return frames[:max_frames]

    def apply_fixes(self, media_type: str, input_ref: str, problems: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Produce a fixed rendition of the media addressing `problems`.
        Returns at least `output_ref` and `thumbnail_ref`.
        """
        data = self._post(
            "/fixes",
            {"media_type": media_type, "input_ref": input_ref, "problems": problems},
        )
        if not data.get("output_ref"):
            raise PermanentFailureError("Transform service returned no output_ref")
        logger.info(f"Transform produced {data['output_ref']} for {input_ref}")
        return data
