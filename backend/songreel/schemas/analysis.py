"""Pydantic schemas for content provider input and output.

Providers return JSON that is validated into AnalysisResult. Validators are
lenient about shape (lists for strings, camelCase keys, unknown energy
levels) because model output drifts.
"""

from typing import Annotated, Any, Optional

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field

GENERIC_VISUAL_PROMPT = (
    "Abstract cinematic visuals with flowing light, deep colors, and smooth motion"
)

ENERGY_LEVELS = ("low", "medium", "high")


def _coerce_to_str(v: Any) -> str:
    """Coerce list/non-str values to comma-separated string.

    Models occasionally return arrays for fields declared as string
    (e.g. several moods); joining them keeps validation from failing.
    """
    if v is None:
        return ""
    if isinstance(v, list):
        return ", ".join(str(item) for item in v)
    return v


def _coerce_energy(v: Any) -> str:
    """Normalise energy to one of low/medium/high, defaulting to medium."""
    if isinstance(v, str) and v.strip().lower() in ENERGY_LEVELS:
        return v.strip().lower()
    return "medium"


CoercedStr = Annotated[str, BeforeValidator(_coerce_to_str)]
Energy = Annotated[str, BeforeValidator(_coerce_energy)]


class SectionHint(BaseModel):
    """A labelled span of the track with an optional visual direction.

    Bounds are percentages of the track length; a missing bound covers the
    start or end of the track.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: CoercedStr = Field(
        default="",
        description="Section label such as 'intro', 'verse', 'chorus', 'bridge', 'outro'",
    )
    start_percent: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("start_percent", "startPercent"),
        description="Where the section starts, as a percentage (0-100) of the track length",
    )
    end_percent: Optional[float] = Field(
        default=None,
        validation_alias=AliasChoices("end_percent", "endPercent"),
        description="Where the section ends, as a percentage (0-100) of the track length",
    )
    visual_hint: Optional[CoercedStr] = Field(
        default=None,
        validation_alias=AliasChoices("visual_hint", "visualHint"),
        description="Short visual direction for this section (imagery, palette, motion)",
    )

    def covers(self, position: float) -> bool:
        """True if position (0.0-1.0) falls inside this section, bounds inclusive."""
        start = (self.start_percent if self.start_percent is not None else 0) / 100
        end = (self.end_percent if self.end_percent is not None else 100) / 100
        return start <= position <= end

    @property
    def hint(self) -> str:
        return self.visual_hint or self.name


class AnalysisResult(BaseModel):
    """Structured audio analysis returned by a content provider."""

    # camelCase keys are accepted as well; models drift between the two
    model_config = ConfigDict(populate_by_name=True)

    mood: CoercedStr = Field(
        default="cinematic",
        description="Overall mood of the track in a few words (e.g. 'melancholic, dreamy')",
    )
    energy: Energy = Field(
        default="medium",
        description="Energy level of the track: exactly one of 'low', 'medium', 'high'",
    )
    lyrics: CoercedStr = Field(
        default="",
        validation_alias=AliasChoices("lyrics", "transcription"),
        description="Transcribed lyrics, or an empty string for instrumental tracks",
    )
    visual_prompt: CoercedStr = Field(
        default="",
        validation_alias=AliasChoices("visual_prompt", "visualPrompt"),
        description="A vivid visual description for the whole music video. If the user "
        "gave a style direction, honor it and adapt it to the music",
    )
    sections: list[SectionHint] = Field(
        default_factory=list,
        description="Song sections in playback order with percentage bounds",
    )

    @classmethod
    def fallback(cls, user_intent: str = "") -> "AnalysisResult":
        """Defaults used when the provider answered with something unparseable."""
        return cls(
            mood="cinematic",
            energy="medium",
            lyrics="",
            visual_prompt=user_intent or GENERIC_VISUAL_PROMPT,
            sections=[],
        )

    def section_at(self, position: float) -> Optional[SectionHint]:
        """First section covering position (0.0-1.0), or None."""
        for section in self.sections:
            if section.covers(position):
                return section
        return None


class FrameRequest(BaseModel):
    """Parameters for synthesizing one still frame."""

    prompt: str
    width: int
    height: int
    quality: str = "fast"
    index: int = 0
    total: int = 1


class VisualFrame(BaseModel):
    """A synthesized still image ready to be encoded into a segment."""

    image_bytes: bytes
    mime_type: str = "image/png"
    width: int
    height: int
