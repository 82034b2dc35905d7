"""Core project operations shared by the HTTP API and the CLI.

These functions validate and claim state synchronously. Scheduling the
resulting background run is left to the caller, which owns the event loop
policy (FastAPI BackgroundTasks for the API, inline await for the CLI).
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from songreel.db.models import Clip, PipelineRun, Project
from songreel.exceptions import ProjectNotFound, RunConflict
from songreel.orchestrator import progress
from songreel.orchestrator.state import TAKE_SOURCES, ProjectStatus, current_status, transition
from songreel.pipeline.dedup import CreateResult, admit_upload
from songreel.services.file_manager import FileManager
from songreel.services.media_encoder import MediaEncoder

logger = logging.getLogger(__name__)


async def get_project(session: AsyncSession, project_id: uuid.UUID) -> Project:
    result = await session.execute(select(Project).where(Project.id == project_id))
    project = result.scalar_one_or_none()
    if project is None:
        raise ProjectNotFound(project_id)
    return project


async def _conflict_or_missing(session: AsyncSession, project_id: uuid.UUID) -> RunConflict:
    status = await current_status(session, project_id)
    if status is None:
        raise ProjectNotFound(project_id)
    return RunConflict(project_id, status)


async def create_project(
    session: AsyncSession,
    audio_bytes: bytes,
    *,
    encoder: MediaEncoder,
    file_mgr: Optional[FileManager] = None,
    filename: Optional[str] = None,
    mime_type: Optional[str] = None,
    title: Optional[str] = None,
    style_intent: Optional[str] = None,
    quality: Optional[str] = None,
) -> CreateResult:
    """Submit a track.

    A new track becomes a project claimed for its first run (status
    'analyzing'); the caller must then schedule run_pipeline. A duplicate
    returns the existing project untouched.
    """
    file_mgr = file_mgr or FileManager()
    result = await admit_upload(
        session, file_mgr, encoder, audio_bytes,
        filename=filename,
        mime_type=mime_type,
        title=title,
        style_intent=style_intent,
        quality=quality,
    )
    if result.duplicate:
        return result

    claimed = await transition(
        session, result.project, ProjectStatus.ANALYZING,
        from_states={ProjectStatus.PENDING},
        progress=progress.ANALYSIS_STARTED,
    )
    if not claimed:
        raise await _conflict_or_missing(session, result.project.id)
    return result


async def start_generation(session: AsyncSession, project_id: uuid.UUID) -> Project:
    """Claim a new take for an idle project.

    Atomically sets status 'generating', increments take_number and resets
    progress and clip counters. The caller must then schedule run_pipeline.

    Raises:
        ProjectNotFound: If the project does not exist
        RunConflict: If a run is active on the project
    """
    project = await get_project(session, project_id)
    claimed = await transition(
        session, project, ProjectStatus.GENERATING,
        from_states=TAKE_SOURCES,
        take_number=Project.take_number + 1,
        progress=0,
        generated_clips=0,
        total_clips=0,
    )
    if not claimed:
        raise await _conflict_or_missing(session, project_id)

    logger.info(f"Project {project_id}: take {project.take_number} claimed")
    return project


async def start_render(session: AsyncSession, project_id: uuid.UUID) -> Project:
    """Claim assembly for a project whose segments are ready.

    The caller must then schedule run_render.

    Raises:
        ProjectNotFound: If the project does not exist
        RunConflict: If the project is not in 'ready_to_render'
    """
    project = await get_project(session, project_id)
    claimed = await transition(
        session, project, ProjectStatus.RENDERING,
        from_states={ProjectStatus.READY_TO_RENDER},
        progress=progress.RENDER_STARTED,
    )
    if not claimed:
        raise await _conflict_or_missing(session, project_id)

    logger.info(f"Project {project_id}: render claimed for take {project.take_number}")
    return project


async def delete_project(
    session: AsyncSession,
    project_id: uuid.UUID,
    file_mgr: Optional[FileManager] = None,
) -> None:
    """Remove a project, its clips, its run records and every artifact on disk.

    A run still working on the project notices on its next write and stops.

    Raises:
        ProjectNotFound: If the project does not exist
    """
    file_mgr = file_mgr or FileManager()
    project = await get_project(session, project_id)

    result = await session.execute(select(Clip.file_path).where(Clip.project_id == project_id))
    clip_files = result.scalars().all()
    audio_path = project.audio_path
    output_path = project.output_path

    await session.execute(delete(Clip).where(Clip.project_id == project_id))
    await session.execute(delete(PipelineRun).where(PipelineRun.project_id == project_id))
    await session.execute(delete(Project).where(Project.id == project_id))
    await session.commit()

    for path in clip_files:
        FileManager.remove_file(path)
    FileManager.remove_file(output_path)
    FileManager.remove_file(audio_path)
    file_mgr.remove_project_dir(project_id)

    logger.info(f"Project {project_id}: deleted with {len(clip_files)} clips")
