"""Offline content provider that renders gradient frames with Pillow.

Useful for development and demos without provider credentials: analysis
returns a fixed four-section structure and every frame is a two-color
vertical gradient whose palette is derived from the prompt.
"""

import asyncio
import colorsys
import hashlib
import io
import logging

from PIL import Image, ImageDraw

from songreel.schemas.analysis import (
    GENERIC_VISUAL_PROMPT,
    AnalysisResult,
    FrameRequest,
    SectionHint,
    VisualFrame,
)
from songreel.services.providers.base import ContentProvider

logger = logging.getLogger(__name__)

_DEFAULT_SECTIONS = [
    SectionHint(name="intro", start_percent=0, end_percent=15, visual_hint="slow fade in from darkness"),
    SectionHint(name="verse", start_percent=15, end_percent=50, visual_hint="drifting light trails"),
    SectionHint(name="chorus", start_percent=50, end_percent=85, visual_hint="bright bursts of color"),
    SectionHint(name="outro", start_percent=85, end_percent=100, visual_hint="colors dissolving to black"),
]


def _palette(prompt: str, index: int, total: int) -> tuple[tuple[int, int, int], tuple[int, int, int]]:
    """Two RGB colors for a frame: base hue from the prompt, drifting with position."""
    digest = hashlib.md5(prompt.encode("utf-8")).digest()
    base_hue = digest[0] / 255
    drift = index / max(total, 1) * 0.25
    top = colorsys.hls_to_rgb((base_hue + drift) % 1.0, 0.25, 0.7)
    bottom = colorsys.hls_to_rgb((base_hue + drift + 0.15) % 1.0, 0.55, 0.8)
    return (
        tuple(round(c * 255) for c in top),
        tuple(round(c * 255) for c in bottom),
    )


def render_gradient(width: int, height: int, top: tuple, bottom: tuple) -> bytes:
    """Render a vertical gradient PNG."""
    image = Image.new("RGB", (width, height), top)
    draw = ImageDraw.Draw(image)
    for y in range(height):
        t = y / max(height - 1, 1)
        color = tuple(round(a + (b - a) * t) for a, b in zip(top, bottom))
        draw.line([(0, y), (width, y)], fill=color)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class LocalProvider(ContentProvider):
    """Content provider that needs no network access."""

    name = "local"

    async def analyze(
        self,
        audio: bytes,
        mime_type: str,
        user_intent: str = "",
    ) -> AnalysisResult:
        logger.info(f"Local analysis of {len(audio)} bytes ({mime_type})")
        return AnalysisResult(
            mood="cinematic",
            energy="medium",
            lyrics="",
            visual_prompt=user_intent or GENERIC_VISUAL_PROMPT,
            sections=list(_DEFAULT_SECTIONS),
        )

    async def synthesize_frame(self, request: FrameRequest) -> VisualFrame:
        top, bottom = _palette(request.prompt, request.index, request.total)
        data = await asyncio.to_thread(
            render_gradient, request.width, request.height, top, bottom
        )
        return VisualFrame(
            image_bytes=data,
            mime_type="image/png",
            width=request.width,
            height=request.height,
        )
