"""API route handlers and Pydantic response schemas."""

import logging
import uuid
from pathlib import Path
from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Form,
    HTTPException,
    Request,
    Response,
    UploadFile,
)
from fastapi.responses import FileResponse
from pydantic import BaseModel
from sqlalchemy import select

from songreel import __version__
from songreel.config import settings
from songreel.db import async_session
from songreel.db.models import Clip, Project
from songreel.exceptions import ProjectNotFound, RunConflict
from songreel.orchestrator import commands
from songreel.orchestrator.pipeline import run_pipeline, run_render
from songreel.orchestrator.state import is_active
from songreel.services.file_manager import FileManager
from songreel.services.media_encoder import FfmpegEncoder, MediaEncoder
from songreel.services.providers import ContentProvider, get_provider

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ============================================================================
# Dependencies
# ============================================================================

def get_content_provider(request: Request) -> ContentProvider:
    """Provider built once per application from settings."""
    provider = getattr(request.app.state, "provider", None)
    if provider is None:
        provider = get_provider()
        request.app.state.provider = provider
    return provider


def get_media_encoder(request: Request) -> MediaEncoder:
    encoder = getattr(request.app.state, "encoder", None)
    if encoder is None:
        encoder = FfmpegEncoder()
        request.app.state.encoder = encoder
    return encoder


def get_file_manager() -> FileManager:
    return FileManager()


# ============================================================================
# Response Schemas
# ============================================================================

class ProjectResponse(BaseModel):
    """Project snapshot returned by create, list and detail endpoints."""
    project_id: str
    title: str
    prompt: str
    visual_prompt: Optional[str] = None
    status: str
    quality: str
    duration: Optional[int] = None
    bpm: Optional[int] = None
    mood: Optional[str] = None
    energy: Optional[str] = None
    lyrics: Optional[str] = None
    progress: int
    total_clips: int
    generated_clips: int
    take_number: int
    audio_filename: str
    audio_url: str
    output_url: Optional[str] = None
    created_at: str
    updated_at: str
    duplicate: bool = False


class ClipDetail(BaseModel):
    """Segment within ProjectDetail response."""
    clip_id: str
    sequence_order: int
    duration: int
    status: str
    prompt_used: Optional[str] = None
    is_fallback: bool
    clip_url: str


class ProjectDetail(ProjectResponse):
    """Response schema for GET /api/projects/{id}."""
    clips: list[ClipDetail] = []


class StatusResponse(BaseModel):
    """Response schema for GET /api/projects/{id}/status."""
    project_id: str
    status: str
    progress: int
    generated_clips: int
    total_clips: int
    take_number: int
    should_poll: bool
    poll_interval_seconds: float
    output_url: Optional[str] = None
    updated_at: str


class RunResponse(BaseModel):
    """Response schema for POST generate/render."""
    project_id: str
    status: str
    take_number: int
    status_url: str


def _project_response(project: Project, duplicate: bool = False) -> ProjectResponse:
    return ProjectResponse(
        project_id=str(project.id),
        title=project.title,
        prompt=project.prompt,
        visual_prompt=project.visual_prompt,
        status=project.status,
        quality=project.quality,
        duration=project.duration,
        bpm=project.bpm,
        mood=project.mood,
        energy=project.energy,
        lyrics=project.lyrics,
        progress=project.progress,
        total_clips=project.total_clips,
        generated_clips=project.generated_clips,
        take_number=project.take_number,
        audio_filename=project.audio_filename,
        audio_url=f"/api/projects/{project.id}/audio",
        output_url=f"/api/projects/{project.id}/download" if project.output_path else None,
        created_at=project.created_at.isoformat(),
        updated_at=project.updated_at.isoformat(),
        duplicate=duplicate,
    )


def _run_response(project: Project) -> RunResponse:
    return RunResponse(
        project_id=str(project.id),
        status=project.status,
        take_number=project.take_number,
        status_url=f"/api/projects/{project.id}/status",
    )


# ============================================================================
# Background Task Wrappers
# ============================================================================

async def run_pipeline_background(
    project_id: uuid.UUID,
    provider: ContentProvider,
    encoder: MediaEncoder,
    file_mgr: FileManager,
):
    """Run a full take in background with a fresh session.

    Never share a session across async boundaries; the request's session is
    closed by the time this runs.
    """
    async with async_session() as session:
        try:
            await run_pipeline(session, project_id, provider, encoder, file_mgr)
        except Exception as e:
            # Failure already persisted to the database by the orchestrator
            logger.error(f"Background pipeline failed for {project_id}: {type(e).__name__}: {str(e)}")


async def run_render_background(
    project_id: uuid.UUID,
    encoder: MediaEncoder,
    file_mgr: FileManager,
):
    """Run assembly alone in background with a fresh session."""
    async with async_session() as session:
        try:
            await run_render(session, project_id, encoder, file_mgr)
        except Exception as e:
            logger.error(f"Background render failed for {project_id}: {type(e).__name__}: {str(e)}")


# ============================================================================
# Endpoint Handlers
# ============================================================================

@router.post("/projects", status_code=201, response_model=ProjectResponse)
async def create_project(
    response: Response,
    background_tasks: BackgroundTasks,
    audio: Optional[UploadFile] = File(None),
    title: str = Form(""),
    prompt: str = Form(""),
    quality: str = Form("fast"),
    provider: ContentProvider = Depends(get_content_provider),
    encoder: MediaEncoder = Depends(get_media_encoder),
    file_mgr: FileManager = Depends(get_file_manager),
):
    """Upload a track and start its first take.

    Returns 201 with the new project, or 200 with the existing project and
    duplicate=true when the same audio was uploaded before.
    """
    if audio is None:
        raise HTTPException(status_code=400, detail="No audio file uploaded")
    audio_bytes = await audio.read()
    if not audio_bytes:
        raise HTTPException(status_code=400, detail="Uploaded audio file is empty")

    async with async_session() as session:
        try:
            result = await commands.create_project(
                session, audio_bytes,
                encoder=encoder,
                file_mgr=file_mgr,
                filename=audio.filename,
                mime_type=audio.content_type,
                title=title,
                style_intent=prompt,
                quality=quality,
            )
        except RunConflict as e:
            raise HTTPException(status_code=409, detail=str(e))

        if result.duplicate:
            response.status_code = 200
            return _project_response(result.project, duplicate=True)

        project_id = result.project.id
        body = _project_response(result.project)

    background_tasks.add_task(run_pipeline_background, project_id, provider, encoder, file_mgr)
    return body


@router.get("/projects", response_model=list[ProjectResponse])
async def list_projects():
    """List all projects ordered by creation date (newest first)."""
    async with async_session() as session:
        result = await session.execute(
            select(Project).order_by(Project.created_at.desc())
        )
        projects = result.scalars().all()
        return [_project_response(p) for p in projects]


@router.get("/projects/{project_id}", response_model=ProjectDetail)
async def get_project_detail(project_id: uuid.UUID):
    """Get full project detail with its clips in timeline order."""
    async with async_session() as session:
        try:
            project = await commands.get_project(session, project_id)
        except ProjectNotFound:
            raise HTTPException(status_code=404, detail="Project not found")

        clips_result = await session.execute(
            select(Clip)
            .where(Clip.project_id == project_id)
            .order_by(Clip.sequence_order)
        )
        clips = [
            ClipDetail(
                clip_id=str(clip.id),
                sequence_order=clip.sequence_order,
                duration=clip.duration,
                status=clip.status,
                prompt_used=clip.prompt_used,
                is_fallback=clip.is_fallback,
                clip_url=f"/api/clips/{clip.id}",
            )
            for clip in clips_result.scalars().all()
        ]
        return ProjectDetail(**_project_response(project).model_dump(), clips=clips)


@router.get("/projects/{project_id}/status", response_model=StatusResponse)
async def get_project_status(project_id: uuid.UUID):
    """Get lightweight project status for polling.

    should_poll stays true while a run holds the project; clients stop once
    the project is completed or failed.
    """
    async with async_session() as session:
        try:
            project = await commands.get_project(session, project_id)
        except ProjectNotFound:
            raise HTTPException(status_code=404, detail="Project not found")

        return StatusResponse(
            project_id=str(project.id),
            status=project.status,
            progress=project.progress,
            generated_clips=project.generated_clips,
            total_clips=project.total_clips,
            take_number=project.take_number,
            should_poll=is_active(project.status),
            poll_interval_seconds=settings.pipeline.poll_interval_seconds,
            output_url=f"/api/projects/{project.id}/download" if project.output_path else None,
            updated_at=project.updated_at.isoformat(),
        )


@router.post("/projects/{project_id}/generate", status_code=202, response_model=RunResponse)
async def generate_take(
    project_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    provider: ContentProvider = Depends(get_content_provider),
    encoder: MediaEncoder = Depends(get_media_encoder),
    file_mgr: FileManager = Depends(get_file_manager),
):
    """Start a new take (re-analysis, new segments, new render).

    Returns 409 while another run is active on the project.
    """
    async with async_session() as session:
        try:
            project = await commands.start_generation(session, project_id)
        except ProjectNotFound:
            raise HTTPException(status_code=404, detail="Project not found")
        except RunConflict as e:
            raise HTTPException(status_code=409, detail=str(e))
        body = _run_response(project)

    background_tasks.add_task(run_pipeline_background, project_id, provider, encoder, file_mgr)
    return body


@router.post("/projects/{project_id}/render", status_code=202, response_model=RunResponse)
async def render_take(
    project_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    encoder: MediaEncoder = Depends(get_media_encoder),
    file_mgr: FileManager = Depends(get_file_manager),
):
    """Re-trigger assembly for a project whose segments are ready.

    Returns 409 unless the project is in 'ready_to_render'.
    """
    async with async_session() as session:
        try:
            project = await commands.start_render(session, project_id)
        except ProjectNotFound:
            raise HTTPException(status_code=404, detail="Project not found")
        except RunConflict as e:
            raise HTTPException(status_code=409, detail=str(e))
        body = _run_response(project)

    background_tasks.add_task(run_render_background, project_id, encoder, file_mgr)
    return body


@router.delete("/projects/{project_id}", status_code=204)
async def delete_project(
    project_id: uuid.UUID,
    file_mgr: FileManager = Depends(get_file_manager),
):
    """Delete a project, its clips and every artifact on disk."""
    async with async_session() as session:
        try:
            await commands.delete_project(session, project_id, file_mgr)
        except ProjectNotFound:
            raise HTTPException(status_code=404, detail="Project not found")
    return Response(status_code=204)


@router.get("/projects/{project_id}/download")
async def download_video(project_id: uuid.UUID):
    """Download the latest final MP4 video.

    Returns 409 if no take has completed yet.
    Returns 404 if the output file does not exist.
    """
    async with async_session() as session:
        try:
            project = await commands.get_project(session, project_id)
        except ProjectNotFound:
            raise HTTPException(status_code=404, detail="Project not found")

        if not project.output_path:
            raise HTTPException(
                status_code=409,
                detail=f"Project not ready for download (status: {project.status})"
            )

        output_path = Path(project.output_path)
        if not output_path.exists():
            raise HTTPException(status_code=404, detail="Output file not found on disk")

        return FileResponse(
            path=str(output_path),
            media_type="video/mp4",
            filename=f"songreel_{project_id}.mp4",
        )


@router.get("/projects/{project_id}/audio")
async def get_project_audio(
    project_id: uuid.UUID,
    file_mgr: FileManager = Depends(get_file_manager),
):
    """Serve the uploaded source audio."""
    async with async_session() as session:
        try:
            project = await commands.get_project(session, project_id)
        except ProjectNotFound:
            raise HTTPException(status_code=404, detail="Project not found")

        try:
            audio_path = file_mgr.resolve_upload(project.audio_path)
        except ValueError:
            raise HTTPException(status_code=404, detail="Audio file not found")
        if not audio_path.exists():
            raise HTTPException(status_code=404, detail="Audio file not found on disk")

        return FileResponse(
            path=str(audio_path),
            media_type=project.audio_mime_type or "audio/mpeg",
        )


@router.get("/clips/{clip_id}")
async def get_clip_video(clip_id: uuid.UUID):
    """Serve a segment clip by its database ID."""
    async with async_session() as session:
        result = await session.execute(
            select(Clip).where(Clip.id == clip_id)
        )
        clip = result.scalar_one_or_none()

        if not clip:
            raise HTTPException(status_code=404, detail="Clip not found")

        file_path = Path(clip.file_path)
        if not file_path.exists():
            raise HTTPException(status_code=404, detail="Clip file not found on disk")

        return FileResponse(
            path=str(file_path),
            media_type="video/mp4",
        )


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": __version__,
    }
