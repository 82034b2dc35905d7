"""Provider registry for content providers.

Maps the configured provider name to an implementation. The instance is
built once at startup (API lifespan or CLI invocation) and passed to the
pipeline drivers.
"""

import logging
from typing import Optional

from songreel.config import ProviderConfig, settings
from songreel.services.providers.base import ContentProvider

logger = logging.getLogger(__name__)


def get_provider(config: Optional[ProviderConfig] = None) -> ContentProvider:
    """Return the content provider named in the configuration.

    Routing logic:
    - "gemini" -> GeminiProvider (Google AI Studio or Vertex AI)
    - "local"  -> LocalProvider (Pillow gradients, no network)

    Args:
        config: Provider section of the settings; defaults to settings.provider.

    Returns:
        Configured ContentProvider instance.

    Raises:
        ValueError: If the provider name is unknown.
    """
    config = config or settings.provider
    name = config.name.lower()

    if name == "gemini":
        from songreel.services.providers.gemini_provider import GeminiProvider

        logger.debug(
            "Routing to GeminiProvider (analysis=%s, image=%s, vertex=%s)",
            config.analysis_model,
            config.image_model,
            config.use_vertex_ai,
        )
        return GeminiProvider(config)

    if name == "local":
        from songreel.services.providers.local_provider import LocalProvider

        logger.debug("Routing to LocalProvider")
        return LocalProvider()

    raise ValueError(f"Unknown content provider: {config.name!r}")
