"""Pipeline drivers with per-stage timing and failure persistence.

run_pipeline chains analysis -> segment generation -> assembly for one take
and claims the render itself once segments are ready. run_render performs
assembly alone for a project that start_render already claimed.

Each invocation records a PipelineRun. Unhandled errors are logged, the
project is moved to 'failed' when that is still legal, and the error is
re-raised for the caller (the background task wrapper) to log. A project
deleted mid-run ends the run quietly. A cancelled run is marked failed the
same way before the cancellation propagates.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from songreel.db.models import PipelineRun, Project
from songreel.exceptions import ProjectNotFound, RunSuperseded
from songreel.orchestrator import progress
from songreel.orchestrator.state import ProjectStatus, current_status, transition
from songreel.pipeline.analysis import analyze_track
from songreel.pipeline.assembly import assemble_project
from songreel.pipeline.segments import generate_segments
from songreel.services.file_manager import FileManager
from songreel.services.media_encoder import MediaEncoder
from songreel.services.providers.base import ContentProvider

logger = logging.getLogger(__name__)


async def _load(session: AsyncSession, project_id: uuid.UUID) -> Project:
    result = await session.execute(select(Project).where(Project.id == project_id))
    project = result.scalar_one_or_none()
    if project is None:
        raise ProjectNotFound(project_id)
    return project


async def _start_run(session: AsyncSession, project: Project, kind: str) -> PipelineRun:
    run = PipelineRun(project_id=project.id, take_number=project.take_number, kind=kind)
    session.add(run)
    await session.commit()
    return run


async def _finish_run(
    session: AsyncSession,
    run_id: uuid.UUID,
    started: float,
    step_log: Dict[str, object],
    outcome: str,
) -> None:
    """Close the run record; a record removed with its project is skipped."""
    result = await session.execute(select(PipelineRun).where(PipelineRun.id == run_id))
    run = result.scalar_one_or_none()
    if run is None:
        return
    run.completed_at = datetime.utcnow()
    run.total_duration_seconds = time.monotonic() - started
    run.outcome = outcome
    run.log = dict(step_log)
    await session.commit()


async def _handle_failure(
    session: AsyncSession,
    project: Project,
    project_id: uuid.UUID,
    run_id: uuid.UUID,
    started: float,
    step_log: Dict[str, object],
    error: BaseException,
) -> bool:
    """Persist a failed run. Returns False when the project no longer exists."""
    # The failing stage may have left the session mid-transaction
    await session.rollback()

    if await current_status(session, project_id) is None:
        logger.info(f"Project {project_id}: deleted during the run, stopping")
        return False

    logger.error(f"Project {project_id}: run failed: {type(error).__name__}: {error}")
    await session.refresh(project)
    await transition(session, project, ProjectStatus.FAILED)

    step_log["error"] = f"{type(error).__name__}: {str(error)[:500]}"
    await _finish_run(session, run_id, started, step_log, "failed")
    return True


async def run_pipeline(
    session: AsyncSession,
    project_id: uuid.UUID,
    provider: ContentProvider,
    encoder: MediaEncoder,
    file_mgr: Optional[FileManager] = None,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> None:
    """Execute one full take: analysis, segment loop, then assembly.

    The project must already be claimed, either 'analyzing' (fresh upload)
    or 'generating' (start_generation).

    Args:
        session: Async database session for all operations
        project_id: UUID of project to execute
        provider: Content provider for analysis and frames
        encoder: Media encoder for segments and assembly
        file_mgr: Artifact storage; defaults to the configured directories
        progress_callback: Optional callback for stage descriptions (CLI display)

    Raises:
        ProjectNotFound: If the project does not exist when the run starts
        Exception: Re-raises any stage failure after persisting 'failed'
    """
    file_mgr = file_mgr or FileManager()
    project = await _load(session, project_id)
    logger.info(f"Project {project_id}: starting take {project.take_number}, status {project.status}")

    run = await _start_run(session, project, "full")
    run_id = run.id
    step_log: Dict[str, object] = {}
    started = time.monotonic()

    try:
        step_start = time.monotonic()
        if progress_callback:
            progress_callback("Analyzing track...")
        analysis = await analyze_track(session, project, provider, file_mgr)
        step_log["analysis"] = time.monotonic() - step_start

        step_start = time.monotonic()
        if progress_callback:
            progress_callback("Generating segments...")
        fallbacks = await generate_segments(session, project, analysis, provider, encoder, file_mgr)
        step_log["segments"] = time.monotonic() - step_start
        step_log["fallback_segments"] = fallbacks

        claimed = await transition(
            session, project, ProjectStatus.RENDERING,
            progress=progress.RENDER_STARTED,
        )
        if not claimed:
            # A manual render took over, or the project is gone
            logger.info(f"Project {project_id}: render already claimed elsewhere, stopping")
            await _finish_run(session, run_id, started, step_log, "superseded")
            return

        step_start = time.monotonic()
        if progress_callback:
            progress_callback("Rendering final video...")
        await assemble_project(session, project, encoder, file_mgr)
        step_log["assembly"] = time.monotonic() - step_start

        await _finish_run(session, run_id, started, step_log, "completed")
        logger.info(f"Project {project_id}: take completed in {time.monotonic() - started:.2f}s")

    except RunSuperseded as e:
        logger.info(f"Project {project_id}: {e}")
        await _finish_run(session, run_id, started, step_log, "superseded")

    except asyncio.CancelledError as e:
        # Cancelled runs (Ctrl-C, server shutdown) must not leave the project active
        logger.warning(f"Project {project_id}: run cancelled")
        await asyncio.shield(
            _handle_failure(session, project, project_id, run_id, started, step_log, e)
        )
        raise

    except Exception as e:
        if await _handle_failure(session, project, project_id, run_id, started, step_log, e):
            raise
        # Deleted mid-run: drop whatever the stages wrote after the delete
        file_mgr.remove_project_dir(project_id)


async def run_render(
    session: AsyncSession,
    project_id: uuid.UUID,
    encoder: MediaEncoder,
    file_mgr: Optional[FileManager] = None,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> None:
    """Assemble a project that start_render moved into 'rendering'.

    Raises:
        ProjectNotFound: If the project does not exist when the run starts
        Exception: Re-raises any assembly failure after persisting 'failed'
    """
    file_mgr = file_mgr or FileManager()
    project = await _load(session, project_id)
    logger.info(f"Project {project_id}: render-only run for take {project.take_number}")

    run = await _start_run(session, project, "render")
    run_id = run.id
    step_log: Dict[str, object] = {}
    started = time.monotonic()

    try:
        if progress_callback:
            progress_callback("Rendering final video...")
        await assemble_project(session, project, encoder, file_mgr)
        step_log["assembly"] = time.monotonic() - started
        await _finish_run(session, run_id, started, step_log, "completed")

    except RunSuperseded as e:
        logger.info(f"Project {project_id}: {e}")
        await _finish_run(session, run_id, started, step_log, "superseded")

    except asyncio.CancelledError as e:
        # Cancelled runs (Ctrl-C, server shutdown) must not leave the project active
        logger.warning(f"Project {project_id}: run cancelled")
        await asyncio.shield(
            _handle_failure(session, project, project_id, run_id, started, step_log, e)
        )
        raise

    except Exception as e:
        if await _handle_failure(session, project, project_id, run_id, started, step_log, e):
            raise
        # Deleted mid-run: drop whatever the stages wrote after the delete
        file_mgr.remove_project_dir(project_id)
