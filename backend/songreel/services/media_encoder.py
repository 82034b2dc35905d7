"""Media encoding with ffmpeg.

MediaEncoder is the seam the pipeline talks to; FfmpegEncoder implements it
by shelling out to ffmpeg/ffprobe in a worker thread. Command construction
lives in plain functions so the argument policy (codec, CRF, length policy)
is visible and testable without running ffmpeg.
"""

import asyncio
import colorsys
import json
import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from songreel.config import settings
from songreel.exceptions import EncoderError
from songreel.schemas.analysis import VisualFrame

logger = logging.getLogger(__name__)

FRAME_RATE = 30
RESOLUTIONS = {
    "fast": (1280, 720),
    "high": (1920, 1080),
}
CRF = {
    "fast": 23,
    "high": 18,
}
DEFAULT_BPM = 120

_IMAGE_SUFFIXES = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
}


def resolution_for(quality: str) -> tuple[int, int]:
    """Frame size for a quality tier; anything but 'high' is 'fast'."""
    return RESOLUTIONS["high" if quality == "high" else "fast"]


def crf_for(quality: str) -> int:
    return CRF["high" if quality == "high" else "fast"]


def placeholder_color(hue: int) -> str:
    """Deterministic ffmpeg color (0xRRGGBB) for a hue in degrees."""
    r, g, b = colorsys.hls_to_rgb((hue % 360) / 360, 0.3, 0.6)
    return f"0x{round(r * 255):02x}{round(g * 255):02x}{round(b * 255):02x}"


def _x264_args(quality: str) -> list[str]:
    return [
        "-r", str(FRAME_RATE),
        "-c:v", "libx264",
        "-tune", "stillimage",
        "-crf", str(crf_for(quality)),
        "-pix_fmt", "yuv420p",
    ]


def build_still_command(
    image_path: Path, output_path: Path, duration: int, quality: str
) -> list[str]:
    """Loop one still image for duration seconds, scaled and padded to the tier size."""
    width, height = resolution_for(quality)
    video_filter = (
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2,setsar=1"
    )
    return [
        "ffmpeg", "-y",
        "-loop", "1",
        "-i", str(image_path),
        "-t", str(duration),
        "-vf", video_filter,
        *_x264_args(quality),
        str(output_path),
    ]


def build_placeholder_command(
    hue: int, output_path: Path, duration: int, quality: str
) -> list[str]:
    """Solid-color segment generated by the lavfi color source."""
    width, height = resolution_for(quality)
    source = f"color=c={placeholder_color(hue)}:s={width}x{height}:d={duration}:r={FRAME_RATE}"
    return [
        "ffmpeg", "-y",
        "-f", "lavfi",
        "-i", source,
        "-t", str(duration),
        *_x264_args(quality),
        str(output_path),
    ]


def build_assemble_command(list_path: Path, audio_path: Path, output_path: Path) -> list[str]:
    """Concatenate segments and mux them against the track.

    Length policy: the shorter of the two streams wins (-shortest). Audio is
    never stretched and video is never looped to cover a mismatch.
    """
    return [
        "ffmpeg", "-y",
        "-f", "concat",
        "-safe", "0",  # absolute paths in the list file
        "-i", str(list_path),
        "-i", str(audio_path),
        "-c:v", "libx264",
        "-c:a", "aac",
        "-map", "0:v:0",
        "-map", "1:a:0",
        "-shortest",
        "-pix_fmt", "yuv420p",
        "-movflags", "+faststart",
        str(output_path),
    ]


def write_concat_list(clip_paths: Sequence[Path], list_path: Path) -> None:
    """Write an ffmpeg concat demuxer list with absolute, quoted paths."""
    with open(list_path, "w") as f:
        for clip_path in clip_paths:
            escaped = str(Path(clip_path).resolve()).replace("'", "'\\''")
            f.write(f"file '{escaped}'\n")


@dataclass
class AudioInfo:
    """Metadata probed from an uploaded track."""

    duration: int = 0
    bpm: int = DEFAULT_BPM


class MediaEncoder(ABC):
    """Abstract media encoder used by the segment and assembly stages."""

    @abstractmethod
    async def render_still(
        self, frame: VisualFrame, output_path: Path, duration: int, quality: str
    ) -> Path:
        """Encode a still frame into a timed segment."""
        ...

    @abstractmethod
    async def render_placeholder(
        self, hue: int, output_path: Path, duration: int, quality: str
    ) -> Path:
        """Encode a solid-color segment used when synthesis fails."""
        ...

    @abstractmethod
    async def assemble(
        self,
        clip_paths: Sequence[Path],
        audio_path: Path,
        output_path: Path,
        list_path: Path,
    ) -> Path:
        """Concatenate ordered segments and mux them with the track."""
        ...

    @abstractmethod
    async def probe_audio(self, audio_path: Path) -> AudioInfo:
        """Read duration (rounded seconds) and tempo from an audio file."""
        ...


class FfmpegEncoder(MediaEncoder):
    """MediaEncoder backed by the ffmpeg and ffprobe binaries on PATH."""

    def __init__(self, timeout: Optional[int] = None):
        self.timeout = timeout or settings.pipeline.encoder_timeout_seconds

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(cmd, check=True, capture_output=True, timeout=self.timeout)
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode(errors="replace") if e.stderr else "No error output"
            raise EncoderError(f"{cmd[0]} exited with status {e.returncode}", stderr[-2000:]) from e
        except subprocess.TimeoutExpired as e:
            raise EncoderError(f"{cmd[0]} timed out after {self.timeout}s") from e
        except FileNotFoundError as e:
            raise EncoderError(f"{cmd[0]} not found on PATH") from e

    async def render_still(
        self, frame: VisualFrame, output_path: Path, duration: int, quality: str
    ) -> Path:
        suffix = _IMAGE_SUFFIXES.get(frame.mime_type, ".png")
        image_path = output_path.with_suffix(suffix)
        image_path.write_bytes(frame.image_bytes)
        try:
            await asyncio.to_thread(
                self._run, build_still_command(image_path, output_path, duration, quality)
            )
        finally:
            image_path.unlink(missing_ok=True)
        return output_path

    async def render_placeholder(
        self, hue: int, output_path: Path, duration: int, quality: str
    ) -> Path:
        await asyncio.to_thread(
            self._run, build_placeholder_command(hue, output_path, duration, quality)
        )
        return output_path

    async def assemble(
        self,
        clip_paths: Sequence[Path],
        audio_path: Path,
        output_path: Path,
        list_path: Path,
    ) -> Path:
        write_concat_list(clip_paths, list_path)
        try:
            await asyncio.to_thread(
                self._run, build_assemble_command(list_path, audio_path, output_path)
            )
        finally:
            list_path.unlink(missing_ok=True)
        logger.info(f"Assembled {len(clip_paths)} segments -> {output_path}")
        return output_path

    async def probe_audio(self, audio_path: Path) -> AudioInfo:
        cmd = [
            "ffprobe",
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            str(audio_path),
        ]
        result = await asyncio.to_thread(self._run, cmd)
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise EncoderError(f"Failed to parse ffprobe output: {e}") from e
        return parse_probe(data)


def parse_probe(data: dict) -> AudioInfo:
    """Extract AudioInfo from ffprobe -show_format JSON.

    Missing or malformed values fall back to 0 seconds and 120 bpm.
    """
    format_info = data.get("format", {})
    try:
        duration = round(float(format_info.get("duration", 0)))
    except (TypeError, ValueError):
        duration = 0

    bpm = DEFAULT_BPM
    tags = {str(k).lower(): v for k, v in (format_info.get("tags") or {}).items()}
    raw_bpm = tags.get("bpm") or tags.get("tbpm")
    if raw_bpm:
        try:
            bpm = round(float(raw_bpm)) or DEFAULT_BPM
        except (TypeError, ValueError):
            pass
    return AudioInfo(duration=duration, bpm=bpm)
