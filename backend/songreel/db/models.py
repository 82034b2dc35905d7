"""SQLAlchemy 2.0 ORM models for songreel."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Sentinel stored in Clip.prompt_used for placeholder segments
FALLBACK_PROMPT = "Fallback visual"


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class Project(Base):
    """One uploaded track and the state of its current take.

    prompt holds the user's style intent verbatim (empty means auto-style);
    visual_prompt holds the description resolved by analysis for the latest take.
    """
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(200), default="Untitled Project")
    prompt: Mapped[str] = mapped_column(Text, default="")
    visual_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    audio_path: Mapped[str] = mapped_column(String(255))
    audio_filename: Mapped[str] = mapped_column(String(255))
    audio_mime_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    # Nullable for projects created before hashing existed
    audio_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True, index=True)

    status: Mapped[str] = mapped_column(String(50), default="pending")
    quality: Mapped[str] = mapped_column(String(10), default="fast")
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    bpm: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    lyrics: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mood: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    energy: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    progress: Mapped[int] = mapped_column(Integer, default=0)
    total_clips: Mapped[int] = mapped_column(Integer, default=0)
    generated_clips: Mapped[int] = mapped_column(Integer, default=0)
    take_number: Mapped[int] = mapped_column(Integer, default=1)

    output_path: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)


class Clip(Base):
    """One rendered segment of a project's timeline."""
    __tablename__ = "clips"
    __table_args__ = (
        UniqueConstraint("project_id", "sequence_order", name="uq_clips_project_sequence"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    file_path: Mapped[str] = mapped_column(String(255))
    prompt_used: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration: Mapped[int] = mapped_column(Integer)
    sequence_order: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # 'pending' or 'generated'
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)

    @property
    def is_fallback(self) -> bool:
        return self.prompt_used == FALLBACK_PROMPT


class PipelineRun(Base):
    """Execution record for one invocation of a pipeline driver."""
    __tablename__ = "pipeline_runs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    take_number: Mapped[int] = mapped_column(Integer)
    kind: Mapped[str] = mapped_column(String(20))  # 'full' or 'render'
    outcome: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    started_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    total_duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    log: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
