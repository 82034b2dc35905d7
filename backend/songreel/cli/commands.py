"""CLI commands for songreel using Typer and Rich.

Commands:
- create: Upload a track and run its first take
- generate: Run a new take for an existing project
- render: Re-run assembly for a project whose segments are ready
- status: Show detailed project information
- watch: Poll a project until its run finishes
- list: List all projects in a table
- delete: Remove a project and its artifacts

Runs execute inline in the CLI process, so a take started here is finished
here; the API's background runner is not involved.
"""

import asyncio
import logging
import mimetypes
import uuid
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table
from sqlalchemy import select

from songreel import validate_dependencies
from songreel.config import settings
from songreel.db import async_session, init_database
from songreel.db.models import PipelineRun, Project
from songreel.exceptions import ProjectNotFound, RunConflict
from songreel.orchestrator import commands
from songreel.orchestrator.pipeline import run_pipeline, run_render
from songreel.orchestrator.state import PROJECT_STATES, ProjectStatus, is_active
from songreel.services.file_manager import FileManager
from songreel.services.media_encoder import FfmpegEncoder
from songreel.services.providers import get_provider

app = typer.Typer(name="songreel", help="Turn a song into an AI-generated music video")
console = Console()


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show pipeline logs"),
):
    """songreel command line interface."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _require_dependencies() -> None:
    try:
        validate_dependencies()
    except RuntimeError as e:
        console.print(f"[red]Error:[/red] {str(e)}")
        raise typer.Exit(code=1)


def _parse_uuid(project_id_str: str) -> uuid.UUID:
    try:
        return uuid.UUID(project_id_str)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid project UUID: {project_id_str}")
        raise typer.Exit(code=1)


async def _run_with_status(coro_factory, label: str, project_id: uuid.UUID) -> None:
    """Await a pipeline driver while showing its stage in a Rich status line."""
    try:
        with console.status(f"[bold green]{label}") as status:
            def callback_wrapper(msg: str):
                status.update(f"[bold green]{msg}")

            await coro_factory(callback_wrapper)
    except asyncio.CancelledError:
        # Ctrl-C cancels the coroutine; the driver has already marked the project failed
        console.print()
        console.print("[yellow]Interrupted. The take was marked failed; start a new one with:[/yellow]")
        console.print(f"  songreel generate {project_id}")
        raise
    except Exception as e:
        console.print()
        console.print(f"[red]\u2717 Run failed:[/red] {str(e)}")
        console.print(f"[yellow]You can retry with:[/yellow] songreel generate {project_id}")
        raise typer.Exit(code=1)


@app.command()
def create(
    audio_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Audio file (mp3, wav, m4a)"),
    title: str = typer.Option("", "--title", "-t", help="Project title"),
    prompt: str = typer.Option("", "--prompt", "-p", help="Visual style direction; omit for auto-style"),
    quality: str = typer.Option("fast", "--quality", "-q", help="'fast' (720p, 5s segments) or 'high' (1080p, 4s segments)"),
):
    """Upload a track and generate its music video.

    Identical audio maps to the existing project instead of creating a new one.
    """
    _require_dependencies()
    asyncio.run(_create_async(audio_file, title, prompt, quality))


async def _create_async(audio_file: Path, title: str, prompt: str, quality: str):
    """Async implementation of create command."""
    await init_database()
    encoder = FfmpegEncoder()
    file_mgr = FileManager()

    async with async_session() as session:
        result = await commands.create_project(
            session, audio_file.read_bytes(),
            encoder=encoder,
            file_mgr=file_mgr,
            filename=audio_file.name,
            mime_type=mimetypes.guess_type(audio_file.name)[0],
            title=title or audio_file.stem,
            style_intent=prompt,
            quality=quality,
        )
        project = result.project

        if result.duplicate:
            console.print(f"[yellow]Duplicate upload:[/yellow] this track already belongs to project {project.id}")
            console.print(f"[yellow]Status:[/yellow] {project.status}")
            return

        console.print(f"[green]Created project:[/green] {project.id}")
        console.print(f"[green]Track:[/green] {project.duration}s at {project.bpm} bpm, quality {project.quality}")
        console.print()

        provider = get_provider()
        await _run_with_status(
            lambda cb: run_pipeline(session, project.id, provider, encoder, file_mgr, progress_callback=cb),
            "Starting pipeline...",
            project.id,
        )
        await session.refresh(project)
        _print_outcome(project)


@app.command()
def generate(
    project_id: str = typer.Argument(..., help="Project UUID"),
):
    """Run a new take: re-analyze the track, regenerate every segment and render."""
    _require_dependencies()
    asyncio.run(_generate_async(project_id))


async def _generate_async(project_id_str: str):
    """Async implementation of generate command."""
    project_uuid = _parse_uuid(project_id_str)
    await init_database()

    async with async_session() as session:
        try:
            project = await commands.start_generation(session, project_uuid)
        except ProjectNotFound:
            console.print(f"[red]Error:[/red] Project not found: {project_uuid}")
            raise typer.Exit(code=1)
        except RunConflict as e:
            console.print(f"[red]Error:[/red] {str(e)}")
            raise typer.Exit(code=1)

        console.print(f"[yellow]Starting take {project.take_number}:[/yellow] {project.id}")
        provider = get_provider()
        encoder = FfmpegEncoder()
        await _run_with_status(
            lambda cb: run_pipeline(session, project.id, provider, encoder, progress_callback=cb),
            "Starting take...",
            project.id,
        )
        await session.refresh(project)
        _print_outcome(project)


@app.command()
def render(
    project_id: str = typer.Argument(..., help="Project UUID"),
):
    """Re-run assembly for a project in 'ready_to_render'."""
    _require_dependencies()
    asyncio.run(_render_async(project_id))


async def _render_async(project_id_str: str):
    """Async implementation of render command."""
    project_uuid = _parse_uuid(project_id_str)
    await init_database()

    async with async_session() as session:
        try:
            project = await commands.start_render(session, project_uuid)
        except ProjectNotFound:
            console.print(f"[red]Error:[/red] Project not found: {project_uuid}")
            raise typer.Exit(code=1)
        except RunConflict as e:
            console.print(f"[red]Error:[/red] {str(e)}")
            raise typer.Exit(code=1)

        encoder = FfmpegEncoder()
        await _run_with_status(
            lambda cb: run_render(session, project.id, encoder, progress_callback=cb),
            "Rendering final video...",
            project.id,
        )
        await session.refresh(project)
        _print_outcome(project)


@app.command()
def status(
    project_id: str = typer.Argument(..., help="Project UUID"),
):
    """Show detailed project status and information."""
    asyncio.run(_status_async(project_id))


async def _status_async(project_id_str: str):
    """Async implementation of status command."""
    project_uuid = _parse_uuid(project_id_str)
    await init_database()

    async with async_session() as session:
        try:
            project = await commands.get_project(session, project_uuid)
        except ProjectNotFound:
            console.print(f"[red]Error:[/red] Project not found: {project_uuid}")
            raise typer.Exit(code=1)

        run_result = await session.execute(
            select(PipelineRun)
            .where(PipelineRun.project_id == project.id)
            .order_by(PipelineRun.started_at.desc())
            .limit(1)
        )
        latest_run = run_result.scalar_one_or_none()

        console.print(Panel(
            "\n".join(_status_lines(project, latest_run)),
            title="[bold]Project Status[/bold]",
            border_style="blue",
        ))


def _status_lines(project: Project, latest_run: Optional[PipelineRun]) -> list[str]:
    """Rich-markup lines for the status panel."""
    status_color = _get_status_color(project.status)
    prompt_display = project.prompt or "(auto-style)"
    if len(prompt_display) > 80:
        prompt_display = prompt_display[:77] + "..."

    info_lines = [
        f"[bold]ID:[/bold] {project.id}",
        f"[bold]Title:[/bold] {project.title}",
        f"[bold]Track:[/bold] {project.audio_filename} ({project.duration}s, {project.bpm} bpm)",
        f"[bold]Prompt:[/bold] {prompt_display}",
        f"[bold]Status:[/bold] [{status_color}]{project.status}[/{status_color}] "
        f"[dim]({PROJECT_STATES[ProjectStatus(project.status)]})[/dim]",
        f"[bold]Progress:[/bold] {project.progress}%",
        f"[bold]Segments:[/bold] {project.generated_clips}/{project.total_clips}",
        f"[bold]Take:[/bold] {project.take_number}",
        f"[bold]Quality:[/bold] {project.quality}",
        f"[bold]Created:[/bold] {project.created_at.strftime('%Y-%m-%d %H:%M:%S')}",
        f"[bold]Updated:[/bold] {project.updated_at.strftime('%Y-%m-%d %H:%M:%S')}",
    ]
    if project.mood:
        info_lines.append(f"[bold]Mood:[/bold] {project.mood} ({project.energy} energy)")
    if project.output_path:
        info_lines.append(f"[bold]Output:[/bold] [green]{project.output_path}[/green]")

    if latest_run and latest_run.total_duration_seconds:
        duration = latest_run.total_duration_seconds
        if duration < 60:
            duration_str = f"{duration:.1f}s"
        else:
            mins = int(duration // 60)
            secs = duration % 60
            duration_str = f"{mins}m {secs:.1f}s"
        info_lines.append(f"[bold]Last Run:[/bold] {latest_run.kind}, {latest_run.outcome}, {duration_str}")

    return info_lines


@app.command()
def watch(
    project_id: str = typer.Argument(..., help="Project UUID"),
):
    """Poll a project until it is completed or failed."""
    asyncio.run(_watch_async(project_id))


async def _watch_async(project_id_str: str):
    """Async implementation of watch command."""
    project_uuid = _parse_uuid(project_id_str)
    await init_database()
    interval = settings.pipeline.poll_interval_seconds

    with Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console,
    ) as bar:
        task = bar.add_task("waiting", total=100)
        while True:
            async with async_session() as session:
                try:
                    project = await commands.get_project(session, project_uuid)
                except ProjectNotFound:
                    console.print(f"[red]Error:[/red] Project not found: {project_uuid}")
                    raise typer.Exit(code=1)

            bar.update(
                task,
                completed=project.progress,
                description=f"{project.status} ({project.generated_clips}/{project.total_clips})",
            )
            if not is_active(project.status):
                break
            await asyncio.sleep(interval)

    _print_outcome(project)


@app.command(name="list")
def list_projects():
    """List all projects."""
    asyncio.run(_list_async())


async def _list_async():
    """Async implementation of list command."""
    await init_database()

    async with async_session() as session:
        result = await session.execute(
            select(Project).order_by(Project.created_at.desc())
        )
        projects = result.scalars().all()

        if not projects:
            console.print("[yellow]No projects found[/yellow]")
            return

        table = Table(show_header=True, header_style="bold blue")
        table.add_column("ID", style="dim")
        table.add_column("Title")
        table.add_column("Status")
        table.add_column("Progress", justify="right")
        table.add_column("Take", justify="right")
        table.add_column("Created")

        for project in projects:
            status_color = _get_status_color(project.status)
            title_display = project.title if len(project.title) <= 40 else project.title[:37] + "..."
            table.add_row(
                str(project.id)[:8] + "...",
                title_display,
                f"[{status_color}]{project.status}[/{status_color}]",
                f"{project.progress}%",
                str(project.take_number),
                project.created_at.strftime("%Y-%m-%d %H:%M"),
            )

        console.print(table)


@app.command()
def delete(
    project_id: str = typer.Argument(..., help="Project UUID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a project, its clips and every file it produced."""
    if not yes:
        typer.confirm(f"Delete project {project_id} and all of its files?", abort=True)
    asyncio.run(_delete_async(project_id))


async def _delete_async(project_id_str: str):
    """Async implementation of delete command."""
    project_uuid = _parse_uuid(project_id_str)
    await init_database()

    async with async_session() as session:
        try:
            await commands.delete_project(session, project_uuid)
        except ProjectNotFound:
            console.print(f"[red]Error:[/red] Project not found: {project_uuid}")
            raise typer.Exit(code=1)

    console.print(f"[green]\u2713[/green] Deleted project {project_uuid}")


def _print_outcome(project: Project) -> None:
    if project.status == ProjectStatus.COMPLETED.value:
        console.print("[green]\u2713[/green] Music video complete!")
        console.print(f"[green]Output:[/green] {project.output_path}")
    elif project.status == ProjectStatus.FAILED.value:
        console.print(f"[red]\u2717 Project failed[/red] (take {project.take_number})")
        if project.output_path:
            console.print(f"[yellow]Previous take still available:[/yellow] {project.output_path}")
    else:
        console.print(f"[yellow]Status:[/yellow] {project.status} ({project.progress}%)")


def _get_status_color(status: str) -> str:
    """Get Rich color for a project status.

    Color coding:
    - completed: green
    - failed: red
    - active states: yellow
    - pending: dim
    """
    if status == ProjectStatus.COMPLETED.value:
        return "green"
    elif status == ProjectStatus.FAILED.value:
        return "red"
    elif is_active(status):
        return "yellow"
    elif status == ProjectStatus.PENDING.value:
        return "dim"
    else:
        return "white"


if __name__ == "__main__":
    app()
