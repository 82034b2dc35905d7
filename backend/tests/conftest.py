"""Pytest fixtures for songreel backend tests.

Storage and database settings are pointed at a throwaway directory before
songreel is imported, so the module-level engine and settings singletons
never touch a developer's real songreel.db. The content provider and media
encoder are replaced by in-process fakes; no network access and no ffmpeg
binary are needed.
"""

import os
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, Optional

_TEST_ROOT = Path(tempfile.mkdtemp(prefix="songreel-tests-"))
os.environ["SONGREEL_STORAGE__DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_ROOT / 'test.db'}"
os.environ["SONGREEL_STORAGE__TMP_DIR"] = str(_TEST_ROOT / "artifacts")
os.environ["SONGREEL_STORAGE__UPLOADS_DIR"] = str(_TEST_ROOT / "uploads")
os.environ["SONGREEL_PROVIDER__NAME"] = "local"
os.environ["SONGREEL_PIPELINE__SEGMENT_CONCURRENCY"] = "1"

import pytest

from songreel.db import Base, async_session, engine
from songreel.exceptions import AnalysisParseError, EncoderError, ProviderUnavailable, SegmentGenerationError
from songreel.schemas.analysis import AnalysisResult, FrameRequest, SectionHint, VisualFrame
from songreel.services.file_manager import FileManager
from songreel.services.media_encoder import AudioInfo, MediaEncoder
from songreel.services.providers.base import ContentProvider


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeProvider(ContentProvider):
    """Scriptable content provider.

    fail_frames: segment indices whose synthesis raises SegmentGenerationError
    parse_error / unavailable: make analyze() raise the matching error
    on_frame: async hook awaited before each frame (index) is synthesized
    """

    name = "fake"

    def __init__(
        self,
        analysis: Optional[AnalysisResult] = None,
        fail_frames: Optional[set[int]] = None,
        parse_error: bool = False,
        unavailable: bool = False,
        on_frame: Optional[Callable[[int], Awaitable[None]]] = None,
    ):
        self.analysis = analysis or AnalysisResult(
            mood="dreamy",
            energy="high",
            lyrics="la la la",
            visual_prompt="neon rain over a quiet city",
            sections=[
                SectionHint(name="intro", start_percent=0, end_percent=20, visual_hint="slow fade in"),
                SectionHint(name="chorus", start_percent=20, end_percent=100),
            ],
        )
        self.fail_frames = fail_frames or set()
        self.parse_error = parse_error
        self.unavailable = unavailable
        self.on_frame = on_frame
        self.analyze_calls: list[tuple[str, str]] = []
        self.frame_requests: list[FrameRequest] = []

    async def analyze(self, audio: bytes, mime_type: str, user_intent: str = "") -> AnalysisResult:
        self.analyze_calls.append((mime_type, user_intent))
        if self.unavailable:
            raise ProviderUnavailable("provider offline")
        if self.parse_error:
            raise AnalysisParseError("not json")
        return self.analysis

    async def synthesize_frame(self, request: FrameRequest) -> VisualFrame:
        if self.on_frame is not None:
            await self.on_frame(request.index)
        self.frame_requests.append(request)
        if request.index in self.fail_frames:
            raise SegmentGenerationError(f"frame {request.index} refused")
        return VisualFrame(
            image_bytes=b"\x89PNG fake",
            mime_type="image/png",
            width=request.width,
            height=request.height,
        )


class FakeEncoder(MediaEncoder):
    """Media encoder that writes marker bytes instead of running ffmpeg."""

    def __init__(
        self,
        duration: int = 30,
        bpm: int = 128,
        fail_assemble: bool = False,
        fail_placeholder: bool = False,
        fail_probe: bool = False,
    ):
        self.duration = duration
        self.bpm = bpm
        self.fail_assemble = fail_assemble
        self.fail_placeholder = fail_placeholder
        self.fail_probe = fail_probe
        self.stills: list[Path] = []
        self.placeholders: list[tuple[int, Path]] = []
        self.assembled: list[list[Path]] = []

    async def render_still(self, frame, output_path, duration, quality):
        output_path.write_bytes(b"still-segment")
        self.stills.append(output_path)
        return output_path

    async def render_placeholder(self, hue, output_path, duration, quality):
        if self.fail_placeholder:
            raise EncoderError("placeholder encode failed", "lavfi error")
        output_path.write_bytes(b"placeholder-segment")
        self.placeholders.append((hue, output_path))
        return output_path

    async def assemble(self, clip_paths, audio_path, output_path, list_path):
        self.assembled.append(list(clip_paths))
        if self.fail_assemble:
            output_path.write_bytes(b"partial")
            raise EncoderError("ffmpeg exited with status 1", "concat failed")
        output_path.write_bytes(b"final-video")
        return output_path

    async def probe_audio(self, audio_path):
        if self.fail_probe:
            raise EncoderError("ffprobe exited with status 1")
        return AudioInfo(duration=self.duration, bpm=self.bpm)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def fresh_database():
    """Recreate the schema for every test and drop pooled connections afterwards."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture
async def session(fresh_database):
    async with async_session() as s:
        yield s


@pytest.fixture
def file_mgr(tmp_path) -> FileManager:
    return FileManager(tmp_path / "artifacts", tmp_path / "uploads")


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def encoder() -> FakeEncoder:
    return FakeEncoder()


@pytest.fixture
def audio_bytes() -> bytes:
    return b"ID3" + bytes(range(256)) * 8
