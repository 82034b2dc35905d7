"""End-to-end tests for the pipeline drivers and the project commands.

Runs use the in-process FakeProvider/FakeEncoder, so a full take completes
in milliseconds without network access or ffmpeg.
"""

import asyncio
import uuid
from pathlib import Path

import pytest
from sqlalchemy import func, select

from songreel.db import async_session
from songreel.db.models import Clip, PipelineRun, Project
from songreel.exceptions import (
    AssemblyFailed,
    NoClipsToAssemble,
    ProjectNotFound,
    ProviderUnavailable,
    RunConflict,
)
from songreel.orchestrator import commands
from songreel.orchestrator.pipeline import run_pipeline, run_render
from songreel.pipeline.analysis import DEFAULT_STYLE, analyze_track
from songreel.pipeline.segments import generate_segments
from songreel.schemas.analysis import GENERIC_VISUAL_PROMPT

from conftest import FakeEncoder, FakeProvider


async def _create(session, audio_bytes, encoder, file_mgr, **kwargs) -> Project:
    result = await commands.create_project(
        session, audio_bytes,
        encoder=encoder,
        file_mgr=file_mgr,
        filename=kwargs.pop("filename", "song.mp3"),
        **kwargs,
    )
    return result.project


async def _clips(session, project_id) -> list[Clip]:
    result = await session.execute(
        select(Clip).where(Clip.project_id == project_id).order_by(Clip.sequence_order)
    )
    return list(result.scalars().all())


async def _runs(session, project_id) -> list[PipelineRun]:
    result = await session.execute(
        select(PipelineRun).where(PipelineRun.project_id == project_id).order_by(PipelineRun.started_at)
    )
    return list(result.scalars().all())


async def _count(session, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestFullRun:
    async def test_take_completes_with_video(self, session, file_mgr, provider, encoder, audio_bytes):
        project = await _create(session, audio_bytes, encoder, file_mgr, title="Night Drive")

        await run_pipeline(session, project.id, provider, encoder, file_mgr)

        await session.refresh(project)
        assert project.status == "completed"
        assert project.progress == 100
        assert project.take_number == 1
        assert project.total_clips == project.generated_clips == 6
        assert project.visual_prompt == "neon rain over a quiet city"
        assert project.mood == "dreamy"
        assert project.energy == "high"
        assert project.lyrics == "la la la"
        assert Path(project.output_path).read_bytes() == b"final-video"
        assert Path(project.output_path).name == "take1.mp4"

        clips = await _clips(session, project.id)
        assert [c.sequence_order for c in clips] == list(range(6))
        assert encoder.assembled == [[Path(c.file_path) for c in clips]]
        assert provider.analyze_calls == [("audio/mpeg", "")]

        runs = await _runs(session, project.id)
        assert len(runs) == 1
        assert runs[0].kind == "full"
        assert runs[0].outcome == "completed"
        assert runs[0].completed_at is not None
        assert {"analysis", "segments", "assembly"} <= set(runs[0].log)
        assert runs[0].log["fallback_segments"] == 0

    async def test_style_intent_reaches_provider(self, session, file_mgr, provider, encoder, audio_bytes):
        project = await _create(
            session, audio_bytes, encoder, file_mgr, style_intent="paper lanterns on a river",
        )

        await run_pipeline(session, project.id, provider, encoder, file_mgr)

        assert provider.analyze_calls == [("audio/mpeg", "paper lanterns on a river")]
        await session.refresh(project)
        assert project.prompt == "paper lanterns on a river"

    async def test_stage_callback_reports_each_stage(self, session, file_mgr, provider, encoder, audio_bytes):
        project = await _create(session, audio_bytes, encoder, file_mgr)
        stages = []

        await run_pipeline(session, project.id, provider, encoder, file_mgr, progress_callback=stages.append)

        assert stages == ["Analyzing track...", "Generating segments...", "Rendering final video..."]

    async def test_failed_frame_uses_placeholder(self, session, file_mgr, encoder, audio_bytes):
        provider = FakeProvider(fail_frames={3})
        project = await _create(session, audio_bytes, encoder, file_mgr)

        await run_pipeline(session, project.id, provider, encoder, file_mgr)

        await session.refresh(project)
        clips = await _clips(session, project.id)
        assert project.status == "completed"
        assert project.generated_clips == project.total_clips == len(clips)
        assert [c.sequence_order for c in clips if c.is_fallback] == [3]
        assert (await _runs(session, project.id))[0].log["fallback_segments"] == 1

    async def test_unparseable_analysis_uses_defaults(self, session, file_mgr, encoder, audio_bytes):
        provider = FakeProvider(parse_error=True)
        project = await _create(session, audio_bytes, encoder, file_mgr)

        await run_pipeline(session, project.id, provider, encoder, file_mgr)

        await session.refresh(project)
        assert project.status == "completed"
        assert project.mood == "cinematic"
        assert project.energy == "medium"
        assert project.visual_prompt == GENERIC_VISUAL_PROMPT

    async def test_unparseable_analysis_keeps_user_intent(self, session, file_mgr, encoder, audio_bytes):
        provider = FakeProvider(parse_error=True)
        project = await _create(session, audio_bytes, encoder, file_mgr, style_intent="chalk drawings")

        await run_pipeline(session, project.id, provider, encoder, file_mgr)

        await session.refresh(project)
        assert project.visual_prompt == "chalk drawings"

    async def test_empty_visual_prompt_uses_default_style(self, session, file_mgr, encoder, audio_bytes):
        provider = FakeProvider()
        provider.analysis = provider.analysis.model_copy(update={"visual_prompt": ""})
        project = await _create(session, audio_bytes, encoder, file_mgr)

        await run_pipeline(session, project.id, provider, encoder, file_mgr)

        await session.refresh(project)
        assert project.visual_prompt == DEFAULT_STYLE
        assert provider.frame_requests[0].prompt.startswith(DEFAULT_STYLE)


class TestFailures:
    async def test_provider_outage_fails_run(self, session, file_mgr, encoder, audio_bytes):
        provider = FakeProvider(unavailable=True)
        project = await _create(session, audio_bytes, encoder, file_mgr)

        with pytest.raises(ProviderUnavailable):
            await run_pipeline(session, project.id, provider, encoder, file_mgr)

        await session.refresh(project)
        assert project.status == "failed"
        assert project.output_path is None
        assert await _clips(session, project.id) == []

        run = (await _runs(session, project.id))[0]
        assert run.outcome == "failed"
        assert run.log["error"].startswith("ProviderUnavailable")

    async def test_assembly_failure_removes_partial_output(self, session, file_mgr, provider, audio_bytes):
        encoder = FakeEncoder(fail_assemble=True)
        project = await _create(session, audio_bytes, encoder, file_mgr)

        with pytest.raises(AssemblyFailed):
            await run_pipeline(session, project.id, provider, encoder, file_mgr)

        await session.refresh(project)
        assert project.status == "failed"
        assert project.output_path is None
        assert not file_mgr.get_output_path(project.id, 1).exists()

    async def test_render_without_clips_fails(self, session, file_mgr, encoder):
        project = Project(
            title="Empty",
            audio_path=str(file_mgr.save_upload(b"audio", "empty.mp3")),
            audio_filename="empty.mp3",
            status="ready_to_render",
        )
        session.add(project)
        await session.commit()

        await commands.start_render(session, project.id)
        with pytest.raises(NoClipsToAssemble):
            await run_render(session, project.id, encoder, file_mgr)

        await session.refresh(project)
        assert project.status == "failed"
        run = (await _runs(session, project.id))[0]
        assert run.kind == "render"
        assert run.outcome == "failed"

    async def test_missing_project_raises(self, session, file_mgr, provider, encoder):
        with pytest.raises(ProjectNotFound):
            await run_pipeline(session, uuid.uuid4(), provider, encoder, file_mgr)


class TestTakes:
    async def test_regenerate_replaces_take(self, session, file_mgr, provider, encoder, audio_bytes):
        project = await _create(session, audio_bytes, encoder, file_mgr)
        await run_pipeline(session, project.id, provider, encoder, file_mgr)
        first_clips = [Path(c.file_path) for c in await _clips(session, project.id)]
        first_output = Path(project.output_path)

        await commands.start_generation(session, project.id)
        assert project.status == "generating"
        assert project.take_number == 2
        assert project.progress == 0
        assert project.generated_clips == 0

        await run_pipeline(session, project.id, provider, encoder, file_mgr)

        await session.refresh(project)
        clips = await _clips(session, project.id)
        assert project.status == "completed"
        assert len(provider.analyze_calls) == 2
        assert len(clips) == 6
        assert all(Path(c.file_path).name.startswith("take2_") for c in clips)
        assert not any(p.exists() for p in first_clips)
        assert Path(project.output_path).name == "take2.mp4"
        assert not first_output.exists()
        assert [r.take_number for r in await _runs(session, project.id)] == [1, 2]

    async def test_failed_regenerate_keeps_previous_video(self, session, file_mgr, provider, audio_bytes):
        encoder = FakeEncoder()
        project = await _create(session, audio_bytes, encoder, file_mgr)
        await run_pipeline(session, project.id, provider, encoder, file_mgr)
        first_output = project.output_path

        await commands.start_generation(session, project.id)
        encoder.fail_assemble = True
        with pytest.raises(AssemblyFailed):
            await run_pipeline(session, project.id, provider, encoder, file_mgr)

        await session.refresh(project)
        assert project.status == "failed"
        assert project.output_path == first_output
        assert Path(first_output).read_bytes() == b"final-video"

    async def test_retry_after_failure(self, session, file_mgr, encoder, audio_bytes):
        project = await _create(session, audio_bytes, encoder, file_mgr)
        with pytest.raises(ProviderUnavailable):
            await run_pipeline(session, project.id, FakeProvider(unavailable=True), encoder, file_mgr)

        await commands.start_generation(session, project.id)
        await run_pipeline(session, project.id, FakeProvider(), encoder, file_mgr)

        await session.refresh(project)
        assert project.status == "completed"
        assert project.take_number == 2


class TestConflicts:
    async def test_generate_while_active_is_rejected(self, session, file_mgr, encoder, audio_bytes):
        project = await _create(session, audio_bytes, encoder, file_mgr)

        with pytest.raises(RunConflict) as exc_info:
            await commands.start_generation(session, project.id)

        assert exc_info.value.status == "analyzing"
        await session.refresh(project)
        assert project.take_number == 1
        assert project.progress == 5

    async def test_second_generate_claim_loses(self, session, file_mgr, provider, encoder, audio_bytes):
        project = await _create(session, audio_bytes, encoder, file_mgr)
        await run_pipeline(session, project.id, provider, encoder, file_mgr)

        await commands.start_generation(session, project.id)
        with pytest.raises(RunConflict):
            await commands.start_generation(session, project.id)

        await session.refresh(project)
        assert project.take_number == 2

    async def test_render_requires_ready_project(self, session, file_mgr, provider, encoder, audio_bytes):
        project = await _create(session, audio_bytes, encoder, file_mgr)
        await run_pipeline(session, project.id, provider, encoder, file_mgr)

        with pytest.raises(RunConflict) as exc_info:
            await commands.start_render(session, project.id)

        assert exc_info.value.status == "completed"

    async def test_unknown_project(self, session):
        with pytest.raises(ProjectNotFound):
            await commands.start_generation(session, uuid.uuid4())
        with pytest.raises(ProjectNotFound):
            await commands.start_render(session, uuid.uuid4())


async def test_manual_render_after_segments(session, file_mgr, provider, encoder, audio_bytes):
    project = await _create(session, audio_bytes, encoder, file_mgr)
    analysis = await analyze_track(session, project, provider, file_mgr)
    await generate_segments(session, project, analysis, provider, encoder, file_mgr)
    assert project.status == "ready_to_render"

    await commands.start_render(session, project.id)
    assert project.status == "rendering"
    assert project.progress == 92

    await run_render(session, project.id, encoder, file_mgr)

    await session.refresh(project)
    assert project.status == "completed"
    assert project.progress == 100
    run = (await _runs(session, project.id))[0]
    assert run.kind == "render"
    assert run.outcome == "completed"


class TestDelete:
    async def test_delete_removes_rows_and_files(self, session, file_mgr, provider, encoder, audio_bytes):
        project = await _create(session, audio_bytes, encoder, file_mgr)
        await run_pipeline(session, project.id, provider, encoder, file_mgr)
        project_id = project.id
        audio_path = Path(project.audio_path)
        project_dir = file_mgr.base_dir / str(project_id)

        await commands.delete_project(session, project_id, file_mgr)

        assert await _count(session, Project) == 0
        assert await _count(session, Clip) == 0
        assert await _count(session, PipelineRun) == 0
        assert not audio_path.exists()
        assert not project_dir.exists()

    async def test_delete_unknown_project(self, session, file_mgr):
        with pytest.raises(ProjectNotFound):
            await commands.delete_project(session, uuid.uuid4(), file_mgr)

    async def test_delete_during_run_stops_quietly(self, session, file_mgr, encoder, audio_bytes):
        async def delete_midway(index):
            if index == 2:
                async with async_session() as other:
                    await commands.delete_project(other, project_id, file_mgr)

        provider = FakeProvider(on_frame=delete_midway)
        project = await _create(session, audio_bytes, encoder, file_mgr)
        project_id = project.id

        await run_pipeline(session, project_id, provider, encoder, file_mgr)

        assert await _count(session, Project) == 0
        assert await _count(session, Clip) == 0
        assert await _count(session, PipelineRun) == 0
        assert not (file_mgr.base_dir / str(project_id)).exists()
        assert encoder.assembled == []


class TestCancellation:
    async def test_cancelled_run_marks_failed_and_allows_new_take(
        self, session, file_mgr, encoder, audio_bytes,
    ):
        stalled = asyncio.Event()

        async def stall_on_third_segment(index):
            if index != 2:
                return
            # Wait until segment 2's row is committed so the cancel lands in synthesis
            while True:
                async with async_session() as observer:
                    stored = (await observer.execute(
                        select(Project.generated_clips).where(Project.id == project_id)
                    )).scalar_one()
                if stored >= 2:
                    break
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.05)
            stalled.set()
            await asyncio.Event().wait()

        provider = FakeProvider(on_frame=stall_on_third_segment)
        project = await _create(session, audio_bytes, encoder, file_mgr)
        project_id = project.id

        task = asyncio.create_task(run_pipeline(session, project_id, provider, encoder, file_mgr))
        await asyncio.wait_for(stalled.wait(), timeout=10)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await session.refresh(project)
        assert project.status == "failed"
        assert project.output_path is None
        run = (await _runs(session, project_id))[0]
        assert run.outcome == "failed"
        assert run.log["error"].startswith("CancelledError")

        await commands.start_generation(session, project_id)
        assert project.status == "generating"
        assert project.take_number == 2

    async def test_cancelled_render_marks_failed(self, session, file_mgr, provider, audio_bytes):
        class StallingEncoder(FakeEncoder):
            async def assemble(self, clip_paths, audio_path, output_path, list_path):
                self.started.set()
                await asyncio.Event().wait()

        encoder = StallingEncoder()
        encoder.started = asyncio.Event()
        project = await _create(session, audio_bytes, encoder, file_mgr)
        analysis = await analyze_track(session, project, provider, file_mgr)
        await generate_segments(session, project, analysis, provider, encoder, file_mgr)
        await commands.start_render(session, project.id)

        task = asyncio.create_task(run_render(session, project.id, encoder, file_mgr))
        await asyncio.wait_for(encoder.started.wait(), timeout=10)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await session.refresh(project)
        assert project.status == "failed"
        await commands.start_generation(session, project.id)
        assert project.status == "generating"
