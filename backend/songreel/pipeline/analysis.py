"""Analysis stage: audio + style intent -> resolved visual direction.

Moves the project into 'analyzing' (unless the upload already claimed it),
asks the content provider for mood, energy, lyrics, a visual description
and section hints, stores them, and hands the take over to 'generating'.
"""

import asyncio
import logging
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession

from songreel.db.models import Project
from songreel.exceptions import AnalysisParseError, RunSuperseded
from songreel.orchestrator import progress
from songreel.orchestrator.state import ProjectStatus, transition
from songreel.schemas.analysis import AnalysisResult
from songreel.services.file_manager import FileManager, mime_type_for
from songreel.services.providers.base import ContentProvider

logger = logging.getLogger(__name__)

DEFAULT_STYLE = (
    "Cinematic abstract music video with flowing light patterns, "
    "deep atmospheric colors, smooth organic motion"
)


def resolve_style(analysis: AnalysisResult, user_intent: str) -> str:
    """Visual prompt for the take: analysis first, then the user's intent, then the default."""
    return analysis.visual_prompt or user_intent or DEFAULT_STYLE


async def analyze_track(
    session: AsyncSession,
    project: Project,
    provider: ContentProvider,
    file_mgr: FileManager,
) -> AnalysisResult:
    """Run content analysis for the project's current take.

    A parse failure degrades to generic defaults; a provider outage
    propagates and ends the run.

    Returns:
        The analysis with visual_prompt replaced by the resolved style

    Raises:
        RunSuperseded: If the project left the expected state mid-stage
        ProviderUnavailable: If the provider could not be reached
    """
    if project.status != ProjectStatus.ANALYZING.value:
        claimed = await transition(
            session, project, ProjectStatus.ANALYZING,
            from_states={ProjectStatus.GENERATING},
            progress=progress.ANALYSIS_STARTED,
        )
        if not claimed:
            raise RunSuperseded(f"Project {project.id} could not enter analysis")

    audio_path = file_mgr.resolve_upload(project.audio_path)
    audio = await asyncio.to_thread(Path(audio_path).read_bytes)
    mime_type = project.audio_mime_type or mime_type_for(project.audio_filename)
    intent = project.prompt or ""

    logger.info(
        f"Project {project.id}: analyzing {len(audio)} bytes ({mime_type}), "
        f"{'auto-style' if not intent else 'directed style'}"
    )
    try:
        analysis = await provider.analyze(audio, mime_type, intent)
    except AnalysisParseError as e:
        logger.warning(f"Project {project.id}: {e}; falling back to generic analysis")
        analysis = AnalysisResult.fallback(intent)

    style = resolve_style(analysis, intent)
    analysis = analysis.model_copy(update={"visual_prompt": style})

    handed_over = await transition(
        session, project, ProjectStatus.GENERATING,
        from_states={ProjectStatus.ANALYZING},
        progress=progress.ANALYSIS_DONE,
        visual_prompt=style,
        lyrics=analysis.lyrics,
        mood=analysis.mood,
        energy=analysis.energy,
    )
    if not handed_over:
        raise RunSuperseded(f"Project {project.id} left analysis before it finished")

    logger.info(
        f"Project {project.id}: analysis done (mood={analysis.mood}, energy={analysis.energy}, "
        f"{len(analysis.sections)} sections)"
    )
    return analysis
