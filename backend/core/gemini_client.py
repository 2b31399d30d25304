from __future__ import annotations

import base64
import json
import logging
import os
import time
from typing import Any, Optional

import google.genai as genai
import httpx
from google.genai import errors

from exceptions import ProviderUnavailable
from models import ClassificationFrame
from providers import frame_from_dict

logger = logging.getLogger("smartspecs.gemini_client")


class GeminiClassifier:
    """Classifier provider backed by Gemini vision (google-genai SDK).

    Uses Vertex AI with service-account credentials pointed to by
    GOOGLE_APPLICATION_CREDENTIALS. Each camera frame is sent as a single
    JSON-mode request and the answer is parsed into a ClassificationFrame
    for the HazardDetector; debouncing stays in the core.
    """

    SYSTEM_PROMPT = (
        "You are the perception module of Smart Specs, assistive glasses for "
        "blind and low-vision users.\n"
        "For each camera frame list every object that could be a hazard to a "
        "pedestrian: people, vehicles, bicycles, poles, stairs, curbs, "
        "drop-offs, doors, furniture, wet floors, low branches.\n"
        "Estimate each object's distance from the camera in metres and your "
        "confidence between 0 and 1.\n"
        "ALWAYS RESPOND IN VALID JSON FORMAT following the schema in the user message."
    )

    PROMPT = (
        "Frame #{frame_id}. Identify hazards.\n\n"
        "OUTPUT:\n"
        "{{\n"
        '  "objects": [\n'
        '    {{"label": "bicycle", "confidence": 0.87, "distance_m": 2.4}}\n'
        "  ]\n"
        "}}"
    )

    def __init__(
        self,
        model: Optional[str] = None,
        region: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        self.model = model or os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
        self.region = region or os.getenv("GCP_REGION", "us-central1")
        self.project = os.getenv("GCP_PROJECT_ID", "smartspecs")
        self._client = client or genai.Client(
            vertexai=True,
            project=self.project,
            location=self.region,
        )

    async def classify(
        self,
        image_b64: str,
        frame_id: str,
        timestamp: Optional[float] = None,
        image_mime: str = "image/jpeg",
    ) -> ClassificationFrame:
        contents = [
            genai.types.Content(role="user", parts=[
                genai.types.Part(text=self.PROMPT.format(frame_id=frame_id)),
                genai.types.Part(
                    inline_data=genai.types.Blob(
                        mime_type=image_mime,
                        data=base64.b64decode(image_b64),
                    )
                ),
            ])
        ]
        config = genai.types.GenerateContentConfig(
            system_instruction=self.SYSTEM_PROMPT,
            temperature=0.2,
            max_output_tokens=500,
            response_mime_type="application/json",
        )

        try:
            response = await self._client.aio.models.generate_content(
                model=self.model,
                contents=contents,
                config=config,
            )
        except errors.APIError as exc:
            logger.warning("Gemini API error for frame %s: %s", frame_id, exc)
            raise ProviderUnavailable("classifier", str(exc)) from exc
        except (httpx.HTTPError, OSError) as exc:
            logger.warning("Gemini transport error for frame %s: %s", frame_id, exc)
            raise ProviderUnavailable("classifier", f"transport error: {exc}") from exc

        data = parse_json_response(response.text or "")
        if data is None:
            logger.warning("Non-JSON classifier response for frame %s", frame_id)
            raise ProviderUnavailable("classifier", "unparseable response")

        data["frame_id"] = frame_id
        data["timestamp"] = timestamp or time.time()
        try:
            frame = frame_from_dict(data)
        except ValueError as exc:
            logger.warning("Malformed classifier response for frame %s: %s", frame_id, exc)
            raise ProviderUnavailable("classifier", "malformed response") from exc
        logger.debug("Frame %s: %d object(s)", frame_id, len(frame.objects))
        return frame


def parse_json_response(text: str) -> Optional[dict]:
    """Parse a model reply, tolerating markdown code fences."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [l for l in lines if not l.strip().startswith("```")]
        cleaned = "\n".join(lines).strip()
    if not cleaned:
        return None
    try:
        result = json.loads(cleaned)
    except json.JSONDecodeError:
        return None
    if isinstance(result, list):
        return {"objects": result}
    return result if isinstance(result, dict) else None


__all__ = ["GeminiClassifier", "parse_json_response", "errors"]
