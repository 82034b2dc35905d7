"""Segment generation loop.

Splits the track into fixed-length segments, synthesizes one still per
segment and encodes it into a clip. A segment whose synthesis or encoding
fails is replaced by a deterministic solid-color placeholder so a single bad
frame never fails the take.

Segments are processed by a bounded pool (settings.pipeline.segment_concurrency,
default 1 = strictly sequential). Database writes are serialized through one
lock; clips are keyed by sequence_order so completion order does not matter.
"""

import asyncio
import logging
import math
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from songreel.config import settings
from songreel.db.models import FALLBACK_PROMPT, Clip, Project
from songreel.exceptions import RunSuperseded, SegmentGenerationError
from songreel.orchestrator import progress
from songreel.orchestrator.state import ProjectStatus, transition
from songreel.schemas.analysis import AnalysisResult, FrameRequest
from songreel.services.file_manager import FileManager
from songreel.services.media_encoder import MediaEncoder, resolution_for
from songreel.services.providers.base import ContentProvider

logger = logging.getLogger(__name__)


def segment_seconds(quality: str) -> int:
    """Segment length for a quality tier."""
    if quality == "high":
        return settings.pipeline.high_segment_seconds
    return settings.pipeline.fast_segment_seconds


def plan_segments(duration: Optional[int], quality: str) -> tuple[int, int]:
    """Return (segment_seconds, total_clips) for a track.

    Unknown duration (None or 0) is treated as the configured default length.
    """
    seconds = segment_seconds(quality)
    track = duration or settings.pipeline.default_track_seconds
    return seconds, math.ceil(track / seconds)


def fallback_hue(index: int, total: int) -> int:
    """Placeholder hue in degrees, spread evenly across the take."""
    return round(index / total * 360)


def build_segment_prompt(analysis: AnalysisResult, index: int, total: int) -> str:
    """Combine the resolved style, the section hint and the mood for segment index."""
    position = index / total
    section = analysis.section_at(position)
    hint = section.hint if section is not None else ""
    if hint:
        return (
            f"{analysis.visual_prompt}. Current section: {hint}. "
            f"Clip {index + 1} of {total}. "
            f"{analysis.mood} mood, {analysis.energy or 'medium'} energy."
        )
    return (
        f"{analysis.visual_prompt}. Clip {index + 1} of {total}, "
        f"position {round(position * 100)}% through the song. {analysis.mood} mood."
    )


async def _clear_clips(session: AsyncSession, project: Project) -> None:
    """Delete the previous take's clip rows and files."""
    result = await session.execute(select(Clip.file_path).where(Clip.project_id == project.id))
    old_files = result.scalars().all()
    await session.execute(delete(Clip).where(Clip.project_id == project.id))
    await session.commit()
    for path in old_files:
        FileManager.remove_file(path)
    if old_files:
        logger.info(f"Project {project.id}: cleared {len(old_files)} clips from the previous take")


async def generate_segments(
    session: AsyncSession,
    project: Project,
    analysis: AnalysisResult,
    provider: ContentProvider,
    encoder: MediaEncoder,
    file_mgr: FileManager,
    concurrency: Optional[int] = None,
) -> int:
    """Generate every segment of the current take and move it to ready_to_render.

    Args:
        session: Async database session
        project: Project in 'generating'
        analysis: Analysis with the resolved visual prompt
        provider: Content provider for frame synthesis
        encoder: Media encoder for stills and placeholders
        file_mgr: Artifact storage
        concurrency: Pool size; defaults to settings.pipeline.segment_concurrency

    Returns:
        Number of placeholder segments used

    Raises:
        RunSuperseded: If the project left 'generating' before the loop finished
    """
    seconds, total = plan_segments(project.duration, project.quality)
    width, height = resolution_for(project.quality)
    take = project.take_number
    concurrency = concurrency or settings.pipeline.segment_concurrency

    await _clear_clips(session, project)
    project.total_clips = total
    project.generated_clips = 0
    await session.commit()

    logger.info(
        f"Project {project.id}: generating {total} segments of {seconds}s "
        f"({width}x{height}, concurrency={concurrency})"
    )

    semaphore = asyncio.Semaphore(concurrency)
    store_lock = asyncio.Lock()
    completed = 0
    fallbacks = 0
    aborted = False

    async def _render(index: int) -> tuple[str, str]:
        """Return (file_path, prompt_used) for one segment."""
        prompt = build_segment_prompt(analysis, index, total)
        clip_path = file_mgr.get_clip_path(project.id, take, index)
        try:
            frame = await provider.synthesize_frame(FrameRequest(
                prompt=prompt,
                width=width,
                height=height,
                quality=project.quality,
                index=index,
                total=total,
            ))
            await encoder.render_still(frame, clip_path, seconds, project.quality)
            return str(clip_path), prompt
        except SegmentGenerationError as e:
            logger.warning(
                f"Project {project.id}: segment {index + 1}/{total} failed ({e}); using placeholder"
            )
        except Exception as e:
            logger.warning(
                f"Project {project.id}: segment {index + 1}/{total} failed "
                f"({type(e).__name__}: {e}); using placeholder"
            )
        # Placeholder failures propagate and end the run
        FileManager.remove_file(clip_path)
        await encoder.render_placeholder(
            fallback_hue(index, total), clip_path, seconds, project.quality
        )
        return str(clip_path), FALLBACK_PROMPT

    async def _worker(index: int) -> None:
        nonlocal completed, fallbacks, aborted
        async with semaphore:
            # A failed segment loses the take; skip the rest
            if aborted:
                return
            try:
                file_path, prompt_used = await _render(index)
            except Exception:
                aborted = True
                raise

        async with store_lock:
            if aborted:
                FileManager.remove_file(file_path)
                return
            session.add(Clip(
                project_id=project.id,
                file_path=file_path,
                prompt_used=prompt_used,
                duration=seconds,
                sequence_order=index,
                status="generated",
            ))
            completed += 1
            if prompt_used == FALLBACK_PROMPT:
                fallbacks += 1
            project.generated_clips = completed
            project.progress = max(project.progress, progress.segment_progress(completed, total))
            try:
                await session.commit()
            except Exception:
                aborted = True
                raise
            logger.info(f"Project {project.id}: segment {index + 1}/{total} stored ({completed} done)")

    results = await asyncio.gather(
        *(_worker(i) for i in range(total)), return_exceptions=True
    )
    errors = [r for r in results if isinstance(r, BaseException)]
    if errors:
        raise errors[0]

    ready = await transition(
        session, project, ProjectStatus.READY_TO_RENDER,
        from_states={ProjectStatus.GENERATING},
        progress=progress.SEGMENTS_DONE,
    )
    if not ready:
        raise RunSuperseded(f"Project {project.id} left generation before it finished")

    logger.info(f"Project {project.id}: {total} segments ready ({fallbacks} placeholders)")
    return fallbacks
