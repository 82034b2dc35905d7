"""Assembly stage: ordered clips + original audio -> final video.

Expects the project to be claimed in 'rendering' already (by the full
pipeline after its loop, or by start_render). Concatenates clips in
sequence_order with the concat demuxer and muxes them against the uploaded
track with the shortest-stream-wins length policy.
"""

import logging
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from songreel.db.models import Clip, Project
from songreel.exceptions import AssemblyFailed, EncoderError, NoClipsToAssemble, RunSuperseded
from songreel.orchestrator import progress
from songreel.orchestrator.state import ProjectStatus, transition
from songreel.services.file_manager import FileManager
from songreel.services.media_encoder import MediaEncoder

logger = logging.getLogger(__name__)


async def assemble_project(
    session: AsyncSession,
    project: Project,
    encoder: MediaEncoder,
    file_mgr: FileManager,
) -> Path:
    """Assemble the current take and mark the project completed.

    On encoder failure the partial output is deleted and the previous take's
    deliverable (if any) is left in place.

    Returns:
        Path to the final video

    Raises:
        NoClipsToAssemble: If the project has no clips
        AssemblyFailed: If the encoder could not produce the video
        RunSuperseded: If the project left 'rendering' while encoding
    """
    result = await session.execute(
        select(Clip)
        .where(Clip.project_id == project.id)
        .order_by(Clip.sequence_order)
    )
    clips = result.scalars().all()
    if not clips:
        logger.error(f"Project {project.id}: no clips to render")
        raise NoClipsToAssemble("No clips to render")

    clip_paths = [Path(clip.file_path) for clip in clips]
    missing = [p for p in clip_paths if not p.exists()]
    if missing:
        raise AssemblyFailed(f"Missing clip files: {[str(p) for p in missing]}")

    audio_path = file_mgr.resolve_upload(project.audio_path)
    output_path = file_mgr.get_output_path(project.id, project.take_number)
    list_path = file_mgr.get_concat_list_path(project.id)

    project.progress = max(project.progress, progress.RENDER_CONCAT_READY)
    await session.commit()

    logger.info(f"Project {project.id}: assembling {len(clip_paths)} clips against {audio_path.name}")
    try:
        await encoder.assemble(clip_paths, audio_path, output_path, list_path)
    except EncoderError as e:
        FileManager.remove_file(output_path)
        logger.error(f"Project {project.id}: assembly failed: {e}\n{e.stderr}")
        raise AssemblyFailed(f"Video assembly failed: {e}") from e

    previous_output = project.output_path
    done = await transition(
        session, project, ProjectStatus.COMPLETED,
        from_states={ProjectStatus.RENDERING},
        progress=progress.COMPLETE,
        output_path=str(output_path),
    )
    if not done:
        FileManager.remove_file(output_path)
        raise RunSuperseded(f"Project {project.id} left rendering before assembly finished")

    if previous_output and previous_output != str(output_path):
        FileManager.remove_file(previous_output)

    logger.info(f"Project {project.id}: completed -> {output_path}")
    return output_path
