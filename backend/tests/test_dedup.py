"""Tests for the upload deduplication gate and project creation."""

import asyncio
import hashlib

from sqlalchemy import func, select

from songreel.db import async_session
from songreel.db.models import Clip, Project
from songreel.orchestrator import commands
from songreel.pipeline import dedup
from songreel.pipeline.dedup import admit_upload, content_hash, normalize_quality

from conftest import FakeEncoder


async def _count(session, model) -> int:
    result = await session.execute(select(func.count()).select_from(model))
    return result.scalar_one()


def test_content_hash_is_sha256_hex():
    data = b"some audio"
    assert content_hash(data) == hashlib.sha256(data).hexdigest()
    assert len(content_hash(data)) == 64


def test_normalize_quality():
    assert normalize_quality("high") == "high"
    assert normalize_quality("fast") == "fast"
    assert normalize_quality("ultra") == "fast"
    assert normalize_quality(None) == "fast"


async def test_new_upload_creates_pending_project(session, file_mgr, encoder, audio_bytes):
    result = await admit_upload(
        session, file_mgr, encoder, audio_bytes,
        filename="song.mp3", mime_type="audio/mpeg",
        title="My Song", style_intent="neon city", quality="high",
    )

    project = result.project
    assert not result.duplicate
    assert project.status == "pending"
    assert project.audio_hash == content_hash(audio_bytes)
    assert project.title == "My Song"
    assert project.prompt == "neon city"
    assert project.quality == "high"
    assert project.duration == 30
    assert project.bpm == 128
    assert project.take_number == 1
    assert project.output_path is None


async def test_duplicate_returns_existing_and_stores_nothing(session, file_mgr, encoder, audio_bytes):
    first = await admit_upload(session, file_mgr, encoder, audio_bytes, filename="a.mp3")
    uploads_before = sorted(file_mgr.uploads_dir.iterdir())

    second = await admit_upload(
        session, file_mgr, encoder, audio_bytes,
        filename="renamed.mp3", title="Another title",
    )

    assert second.duplicate
    assert second.project.id == first.project.id
    assert second.project.title == first.project.title
    assert await _count(session, Project) == 1
    assert await _count(session, Clip) == 0
    assert sorted(file_mgr.uploads_dir.iterdir()) == uploads_before


async def test_different_bytes_make_different_projects(session, file_mgr, encoder, audio_bytes):
    first = await admit_upload(session, file_mgr, encoder, audio_bytes, filename="a.mp3")
    second = await admit_upload(session, file_mgr, encoder, audio_bytes + b"\x00", filename="a.mp3")

    assert not second.duplicate
    assert first.project.id != second.project.id
    assert await _count(session, Project) == 2


async def test_defaults_for_title_quality_and_mime(session, file_mgr, encoder, audio_bytes):
    result = await admit_upload(
        session, file_mgr, encoder, audio_bytes,
        filename="track.M4A", mime_type="application/octet-stream",
        title="   ", quality="best",
    )

    assert result.project.title == "Untitled Project"
    assert result.project.quality == "fast"
    assert result.project.audio_mime_type == "audio/mp4"
    assert result.project.prompt == ""


async def test_probe_failure_falls_back_to_defaults(session, file_mgr, audio_bytes):
    encoder = FakeEncoder(fail_probe=True)

    result = await admit_upload(session, file_mgr, encoder, audio_bytes, filename="x.wav")

    assert result.project.duration == 0
    assert result.project.bpm == 120
    assert result.project.audio_mime_type == "audio/wav"


async def test_create_project_claims_first_run(session, file_mgr, encoder, audio_bytes):
    result = await commands.create_project(
        session, audio_bytes, encoder=encoder, file_mgr=file_mgr, filename="song.mp3",
    )

    assert not result.duplicate
    assert result.project.status == "analyzing"
    assert result.project.progress == 5


async def test_create_project_duplicate_leaves_state_alone(session, file_mgr, encoder, audio_bytes):
    first = await commands.create_project(
        session, audio_bytes, encoder=encoder, file_mgr=file_mgr, filename="song.mp3",
    )

    again = await commands.create_project(
        session, audio_bytes, encoder=encoder, file_mgr=file_mgr, filename="song.mp3",
    )

    assert again.duplicate
    assert again.project.id == first.project.id
    assert again.project.status == "analyzing"
    assert again.project.take_number == 1


async def test_concurrent_identical_uploads_share_one_project(fresh_database, file_mgr, encoder, audio_bytes):
    async def submit():
        async with async_session() as s:
            return await commands.create_project(
                s, audio_bytes, encoder=encoder, file_mgr=file_mgr, filename="song.mp3",
            )

    results = await asyncio.gather(submit(), submit())

    assert sorted(r.duplicate for r in results) == [False, True]
    assert results[0].project.id == results[1].project.id
    assert len(list(file_mgr.uploads_dir.iterdir())) == 1
    async with async_session() as s:
        assert await _count(s, Project) == 1


async def test_lost_insert_race_returns_winner(session, file_mgr, encoder, audio_bytes, monkeypatch):
    real_find = dedup.find_by_hash
    winner_ids = []

    async def find_after_competing_insert(s, digest):
        if not winner_ids:
            # Another upload of the same bytes commits between the lookup and our insert
            async with async_session() as other:
                winner = Project(
                    title="Winner",
                    audio_path=str(file_mgr.uploads_dir / "winner.mp3"),
                    audio_filename="winner.mp3",
                    audio_hash=digest,
                )
                other.add(winner)
                await other.commit()
                winner_ids.append(winner.id)
            return None
        return await real_find(s, digest)

    monkeypatch.setattr(dedup, "find_by_hash", find_after_competing_insert)

    result = await admit_upload(session, file_mgr, encoder, audio_bytes, filename="song.mp3")

    assert result.duplicate
    assert result.project.id == winner_ids[0]
    assert list(file_mgr.uploads_dir.iterdir()) == []
    assert await _count(session, Project) == 1
