"""Gemini content provider using the google-genai SDK.

Audio analysis sends the track inline with a JSON-only instruction; frame
synthesis asks the image model for a single IMAGE modality response.
Works against Google AI Studio (API key) or Vertex AI (Application Default
Credentials) depending on ProviderConfig.use_vertex_ai.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from google import genai
from google.genai import types
from google.genai.errors import ClientError, ServerError
from pydantic import ValidationError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from songreel.config import ProviderConfig
from songreel.exceptions import AnalysisParseError, ProviderUnavailable, SegmentGenerationError
from songreel.schemas.analysis import AnalysisResult, FrameRequest, VisualFrame
from songreel.services.providers.base import ContentProvider

# Load .env for GOOGLE_API_KEY / GOOGLE_APPLICATION_CREDENTIALS
load_dotenv(Path.cwd() / ".env")

logger = logging.getLogger(__name__)

_RESPONSE_FORMAT = (
    'Respond with JSON only: { "lyrics": "transcribed lyrics, or empty string", '
    '"mood": "one-line mood description", "energy": "low|medium|high", '
    '"visual_prompt": "detailed cinematic visual description", '
    '"sections": [{"name": "intro", "start_percent": 0, "end_percent": 10, '
    '"visual_hint": "description"}] }'
)

_AUTO_STYLE_PROMPT = f"""You are an expert creative director and music analyst.
Analyze this audio track thoroughly. Determine:
- Energy level (low/medium/high)
- Mood (e.g., calm, melancholic, dark, upbeat, aggressive, dreamy, euphoric)
- Genre feel and tempo
- Section changes you can detect (intro, verse, chorus, bridge, outro)
- Emotional arc from start to finish

Based on your analysis, write a visual prompt for a music video that uses abstract,
cinematic, atmospheric visuals (no people or text), keeps one color palette that
matches the mood, moves the camera with the tempo, and evolves with the sections.

{_RESPONSE_FORMAT}"""

_DIRECTED_STYLE_PROMPT = """You are an expert creative director and music analyst.
Analyze this audio track. The user wants this visual style: "{intent}"

Determine the song's mood, energy, tempo and structure. Then write a refined,
production-ready visual prompt that honors the requested style, adapts it to the
music's energy and sections, names concrete visual elements, colors and camera
movements, and keeps visual continuity across many short clips.

{response_format}"""


def _is_retriable(exc: BaseException) -> bool:
    """Return True only for transient errors worth retrying."""
    if isinstance(exc, ServerError):
        return True
    if isinstance(exc, ClientError):
        return getattr(exc, "code", 0) == 429
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return True
    return False


def build_analysis_prompt(user_intent: str) -> str:
    """Analysis instruction for auto-style (empty intent) or directed style."""
    if not user_intent:
        return _AUTO_STYLE_PROMPT
    return _DIRECTED_STYLE_PROMPT.format(intent=user_intent, response_format=_RESPONSE_FORMAT)


def parse_analysis(raw_text: Optional[str]) -> AnalysisResult:
    """Parse a model response into an AnalysisResult.

    Tolerates markdown code fences around the JSON.

    Raises:
        AnalysisParseError: If the text is not a JSON object matching the schema.
    """
    text = (raw_text or "").replace("```json", "").replace("```", "").strip()
    try:
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        return AnalysisResult.model_validate(data)
    except (ValueError, ValidationError) as e:
        raise AnalysisParseError(f"Unparseable analysis response: {e}") from e


class GeminiProvider(ContentProvider):
    """Content provider backed by Gemini models."""

    name = "gemini"

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config
        self._client: Optional[genai.Client] = None

    @property
    def client(self) -> genai.Client:
        """Create the SDK client on first use so construction never needs credentials."""
        if self._client is None:
            if self._config.use_vertex_ai:
                self._client = genai.Client(
                    vertexai=True,
                    project=self._config.project_id,
                    location=self._config.location,
                )
            elif self._config.api_key:
                self._client = genai.Client(api_key=self._config.api_key)
            else:
                # Falls back to GOOGLE_API_KEY / GEMINI_API_KEY from the environment
                self._client = genai.Client()
        return self._client

    def _retrying(self):
        return retry(
            stop=stop_after_attempt(self._config.retry_max_attempts),
            wait=wait_exponential(multiplier=2, min=2, max=60) + wait_random(0, 2),
            retry=retry_if_exception(_is_retriable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def analyze(
        self,
        audio: bytes,
        mime_type: str,
        user_intent: str = "",
    ) -> AnalysisResult:
        @self._retrying()
        async def _call() -> Optional[str]:
            audio_part = types.Part.from_bytes(data=audio, mime_type=mime_type)
            response = await self.client.aio.models.generate_content(
                model=self._config.analysis_model,
                contents=[audio_part, build_analysis_prompt(user_intent)],
                config=types.GenerateContentConfig(
                    temperature=0.7,
                    response_mime_type="application/json",
                ),
            )
            return response.text

        try:
            raw_text = await _call()
        except Exception as e:
            raise ProviderUnavailable(f"Audio analysis request failed: {type(e).__name__}: {e}") from e

        return parse_analysis(raw_text)

    async def synthesize_frame(self, request: FrameRequest) -> VisualFrame:
        @self._retrying()
        async def _call() -> types.Blob:
            response = await self.client.aio.models.generate_content(
                model=self._config.image_model,
                contents=f"{request.prompt}. Widescreen 16:9 composition, no text or watermarks.",
                config=types.GenerateContentConfig(
                    response_modalities=["IMAGE"],
                ),
            )
            for part in response.candidates[0].content.parts:
                if part.inline_data:
                    return part.inline_data
            raise ValueError("No image generated in response")

        try:
            blob = await _call()
        except Exception as e:
            raise SegmentGenerationError(
                f"Frame {request.index + 1}/{request.total} synthesis failed: {type(e).__name__}: {e}"
            ) from e

        return VisualFrame(
            image_bytes=blob.data,
            mime_type=blob.mime_type or "image/png",
            width=request.width,
            height=request.height,
        )
