"""Content provider abstraction layer.

Usage:
    from songreel.services.providers import get_provider

    provider = get_provider()
    analysis = await provider.analyze(audio_bytes, "audio/mpeg", "neon city at night")
"""

from songreel.services.providers.base import ContentProvider
from songreel.services.providers.registry import get_provider

__all__ = ["ContentProvider", "get_provider"]
