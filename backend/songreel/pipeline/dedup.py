"""Deduplication gate for uploaded tracks.

Identical audio bytes map to exactly one project. The lookup is by SHA-256
of the raw upload; the unique index on Project.audio_hash settles races
between concurrent identical uploads.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from songreel.db.models import Project
from songreel.exceptions import EncoderError
from songreel.services.file_manager import FileManager, mime_type_for
from songreel.services.media_encoder import AudioInfo, MediaEncoder

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Untitled Project"


@dataclass
class CreateResult:
    """Outcome of submitting a track: the owning project and whether it already existed."""

    project: Project
    duplicate: bool


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest of the raw upload."""
    return hashlib.sha256(data).hexdigest()


def normalize_quality(quality: Optional[str]) -> str:
    return "high" if quality == "high" else "fast"


def _resolve_mime(declared: Optional[str], filename: str) -> str:
    """Declared audio/* type if present, else inferred from the extension."""
    if declared and declared.startswith("audio/"):
        return declared
    return mime_type_for(filename)


async def find_by_hash(session: AsyncSession, digest: str) -> Optional[Project]:
    result = await session.execute(select(Project).where(Project.audio_hash == digest))
    return result.scalar_one_or_none()


async def admit_upload(
    session: AsyncSession,
    file_mgr: FileManager,
    encoder: MediaEncoder,
    audio_bytes: bytes,
    *,
    filename: Optional[str] = None,
    mime_type: Optional[str] = None,
    title: Optional[str] = None,
    style_intent: Optional[str] = None,
    quality: Optional[str] = None,
) -> CreateResult:
    """Return the existing project for these bytes, or store them as a new pending project.

    A duplicate writes nothing: no file, no project row, no clips.

    Args:
        session: Async database session
        file_mgr: Storage for the uploaded audio
        encoder: Used to probe duration and tempo of new uploads
        audio_bytes: Raw uploaded audio
        filename: Original upload name (used for display and mime inference)
        mime_type: Declared content type of the upload
        title: Display title; defaults to "Untitled Project"
        style_intent: Visual style direction; empty asks for auto-style
        quality: "high" or anything else for "fast"

    Returns:
        CreateResult with duplicate=True when the bytes were seen before
    """
    digest = content_hash(audio_bytes)
    existing = await find_by_hash(session, digest)
    if existing is not None:
        logger.info(f"Duplicate upload matches project {existing.id} (sha256 {digest[:12]})")
        return CreateResult(project=existing, duplicate=True)

    audio_filename = filename or "audio"
    stored_path = file_mgr.save_upload(audio_bytes, audio_filename)

    try:
        info = await encoder.probe_audio(stored_path)
    except EncoderError as e:
        logger.warning(f"Could not read metadata from {audio_filename}: {e}; using defaults")
        info = AudioInfo()

    project = Project(
        title=(title or "").strip() or DEFAULT_TITLE,
        prompt=(style_intent or "").strip(),
        audio_path=str(stored_path),
        audio_filename=audio_filename,
        audio_mime_type=_resolve_mime(mime_type, audio_filename),
        audio_hash=digest,
        quality=normalize_quality(quality),
        duration=info.duration,
        bpm=info.bpm,
        status="pending",
    )
    session.add(project)
    try:
        await session.commit()
    except IntegrityError:
        # A concurrent identical upload committed first
        await session.rollback()
        FileManager.remove_file(stored_path)
        existing = await find_by_hash(session, digest)
        if existing is None:
            raise
        logger.info(f"Upload race resolved to existing project {existing.id}")
        return CreateResult(project=existing, duplicate=True)

    logger.info(
        f"Project {project.id}: created from {audio_filename} "
        f"({info.duration}s, {info.bpm} bpm, quality={project.quality})"
    )
    return CreateResult(project=project, duplicate=False)
