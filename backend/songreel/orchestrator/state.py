"""State machine constants and transition logic for the project lifecycle.

Every status write in songreel goes through transition(), which performs a
compare-and-swap UPDATE guarded by the legal source states for the target.
A run owns a project only while its claim holds; losing a CAS means another
caller got there first or the project was deleted.
"""

import uuid
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from songreel.db.models import Project


class ProjectStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    GENERATING = "generating"
    READY_TO_RENDER = "ready_to_render"
    RENDERING = "rendering"
    COMPLETED = "completed"
    FAILED = "failed"


PROJECT_STATES = {
    ProjectStatus.PENDING: "Uploaded, no run has claimed the project yet",
    ProjectStatus.ANALYZING: "Content provider is analyzing the track",
    ProjectStatus.GENERATING: "Take claimed, segments are being synthesized",
    ProjectStatus.READY_TO_RENDER: "All segments exist, waiting for assembly",
    ProjectStatus.RENDERING: "Segments are being concatenated against the audio",
    ProjectStatus.COMPLETED: "Final video is available",
    ProjectStatus.FAILED: "Run ended with an unrecoverable error",
}

# target -> legal source states
TRANSITIONS: Dict[ProjectStatus, FrozenSet[ProjectStatus]] = {
    ProjectStatus.ANALYZING: frozenset({
        ProjectStatus.PENDING,
        ProjectStatus.GENERATING,
    }),
    ProjectStatus.GENERATING: frozenset({
        ProjectStatus.ANALYZING,
        ProjectStatus.PENDING,
        ProjectStatus.COMPLETED,
        ProjectStatus.FAILED,
    }),
    ProjectStatus.READY_TO_RENDER: frozenset({ProjectStatus.GENERATING}),
    ProjectStatus.RENDERING: frozenset({ProjectStatus.READY_TO_RENDER}),
    ProjectStatus.COMPLETED: frozenset({ProjectStatus.RENDERING}),
    ProjectStatus.FAILED: frozenset({
        ProjectStatus.ANALYZING,
        ProjectStatus.GENERATING,
        ProjectStatus.READY_TO_RENDER,
        ProjectStatus.RENDERING,
    }),
    ProjectStatus.PENDING: frozenset(),
}

# A run holds the project while it is in one of these
ACTIVE_STATES = frozenset({
    ProjectStatus.ANALYZING,
    ProjectStatus.GENERATING,
    ProjectStatus.READY_TO_RENDER,
    ProjectStatus.RENDERING,
})

# Idle states a new take may be claimed from
TAKE_SOURCES = frozenset({
    ProjectStatus.PENDING,
    ProjectStatus.COMPLETED,
    ProjectStatus.FAILED,
})


def is_active(status: str) -> bool:
    """Return True if a run currently holds a project in this status."""
    return ProjectStatus(status) in ACTIVE_STATES


def can_transition(current: str, target: str) -> bool:
    """Check the transition table for current -> target.

    Args:
        current: Status the project is in now
        target: Status the caller wants to move to

    Returns:
        True if the table allows the move, False otherwise
    """
    return ProjectStatus(current) in TRANSITIONS[ProjectStatus(target)]


async def transition(
    session: AsyncSession,
    project: Project,
    target: ProjectStatus,
    *,
    from_states: Optional[Iterable[ProjectStatus]] = None,
    **values,
) -> bool:
    """Atomically move a project to target if it is still in a legal source state.

    Extra keyword arguments are written in the same UPDATE (progress counters,
    take_number expressions, output path). On success the instance is refreshed
    from the database; on failure it is left untouched.

    Args:
        session: Session the project is attached to
        project: Project to move
        target: Desired status
        from_states: Optional narrowing of the legal source states
        **values: Additional column values to set with the status

    Returns:
        True if this caller won the swap, False if the project was in another
        state or no longer exists
    """
    sources = TRANSITIONS[target]
    if from_states is not None:
        sources = sources & frozenset(from_states)
    if not sources:
        return False

    stmt = (
        update(Project)
        .where(Project.id == project.id)
        .where(Project.status.in_([s.value for s in sources]))
        .values(status=target.value, **values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()

    if result.rowcount != 1:
        return False
    await session.refresh(project)
    return True


async def current_status(session: AsyncSession, project_id: uuid.UUID) -> Optional[str]:
    """Read the stored status without touching the identity map."""
    result = await session.execute(select(Project.status).where(Project.id == project_id))
    return result.scalar_one_or_none()
