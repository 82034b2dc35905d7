"""Abstract base class for content providers.

A content provider turns audio into an AnalysisResult and prompts into
still frames. Implementations are swappable; the pipeline only sees this
interface.
"""

from abc import ABC, abstractmethod

from songreel.schemas.analysis import AnalysisResult, FrameRequest, VisualFrame


class ContentProvider(ABC):
    """Abstract base class for content providers.

    analyze() raises AnalysisParseError when the provider answered but the
    payload could not be understood, and ProviderUnavailable when the provider
    could not be reached at all. synthesize_frame() raises
    SegmentGenerationError for any per-frame failure.
    """

    name: str = "base"

    @abstractmethod
    async def analyze(
        self,
        audio: bytes,
        mime_type: str,
        user_intent: str = "",
    ) -> AnalysisResult:
        """Analyze an audio track.

        Args:
            audio: Raw audio bytes.
            mime_type: MIME type of the audio (e.g., "audio/mpeg").
            user_intent: Style direction from the user; empty asks the
                provider to choose a style from the music itself.

        Returns:
            Validated AnalysisResult.
        """
        ...

    @abstractmethod
    async def synthesize_frame(self, request: FrameRequest) -> VisualFrame:
        """Render one still frame for a segment.

        Args:
            request: Prompt, target resolution and segment position.

        Returns:
            VisualFrame with encoded image bytes.
        """
        ...
