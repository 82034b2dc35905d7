"""
File management service for songreel.

Handles structured filesystem artifact storage with path traversal protection.
Creates per-project directories with subdirectories for clips and output, and
stores uploaded audio under a separate uploads directory.
"""
import logging
import shutil
import uuid
from pathlib import Path
from typing import Optional

from songreel.config import settings

logger = logging.getLogger(__name__)

MIME_BY_EXTENSION = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".m4a": "audio/mp4",
}
DEFAULT_AUDIO_MIME = "audio/mpeg"


def mime_type_for(filename: str) -> str:
    """Audio MIME type inferred from a file extension, defaulting to audio/mpeg."""
    return MIME_BY_EXTENSION.get(Path(filename).suffix.lower(), DEFAULT_AUDIO_MIME)


class FileManager:
    """
    Manage filesystem artifacts for songreel projects.

    Creates structured directories:
    - {base_dir}/{project_id}/clips/ - Per-segment video clips
    - {base_dir}/{project_id}/output/ - Final assembled video for each take
    - {uploads_dir}/ - Uploaded source audio, stored under random names

    Implements path traversal protection to prevent directory escape attacks.
    """

    def __init__(
        self,
        base_dir: str | Path | None = None,
        uploads_dir: str | Path | None = None,
    ):
        """
        Initialize FileManager with base directories.

        Args:
            base_dir: Root directory for all project artifacts.
                     If None, uses settings.storage.tmp_dir
            uploads_dir: Directory for uploaded audio.
                     If None, uses settings.storage.uploads_dir
        """
        if base_dir is None:
            base_dir = settings.storage.tmp_dir
        if uploads_dir is None:
            uploads_dir = settings.storage.uploads_dir

        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.uploads_dir = Path(uploads_dir).resolve()
        self.uploads_dir.mkdir(parents=True, exist_ok=True)

    def get_project_dir(self, project_id: uuid.UUID) -> Path:
        """
        Get or create project directory with subdirectories.

        Raises:
            ValueError: If project_id creates path outside base_dir (traversal attack)
        """
        project_dir = (self.base_dir / str(project_id)).resolve()

        if not project_dir.is_relative_to(self.base_dir):
            raise ValueError("Invalid project path")

        project_dir.mkdir(exist_ok=True)
        (project_dir / "clips").mkdir(exist_ok=True)
        (project_dir / "output").mkdir(exist_ok=True)

        return project_dir

    def get_clip_path(self, project_id: uuid.UUID, take_number: int, index: int) -> Path:
        """Path for the segment at sequence position index of a take."""
        project_dir = self.get_project_dir(project_id)
        return project_dir / "clips" / f"take{take_number}_clip_{index:04d}.mp4"

    def get_output_path(self, project_id: uuid.UUID, take_number: int) -> Path:
        """Path for the final video of a take."""
        project_dir = self.get_project_dir(project_id)
        return project_dir / "output" / f"take{take_number}.mp4"

    def get_concat_list_path(self, project_id: uuid.UUID) -> Path:
        """Path for the ffmpeg concat demuxer list file."""
        project_dir = self.get_project_dir(project_id)
        return project_dir / "output" / "concat_list.txt"

    def save_upload(self, data: bytes, original_filename: Optional[str]) -> Path:
        """
        Store uploaded audio under a random name, keeping only the extension.

        Returns:
            Path to the stored file
        """
        suffix = Path(original_filename or "").suffix.lower()
        if not suffix.isascii() or len(suffix) > 8:
            suffix = ""
        filepath = self.uploads_dir / f"{uuid.uuid4().hex}{suffix}"
        filepath.write_bytes(data)
        return filepath

    def resolve_upload(self, stored_path: str) -> Path:
        """
        Resolve a stored audio path and make sure it lives under uploads_dir.

        Raises:
            ValueError: If the path escapes the uploads directory
        """
        path = Path(stored_path)
        if not path.is_absolute():
            path = self.uploads_dir / path
        path = path.resolve()
        if not path.is_relative_to(self.uploads_dir):
            raise ValueError("Invalid upload path")
        return path

    @staticmethod
    def remove_file(path: str | Path | None) -> None:
        """Delete a single artifact if it exists."""
        if not path:
            return
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove {path}: {e}")

    def remove_project_dir(self, project_id: uuid.UUID) -> None:
        """Delete every artifact under the project's directory."""
        project_dir = (self.base_dir / str(project_id)).resolve()
        if not project_dir.is_relative_to(self.base_dir) or project_dir == self.base_dir:
            raise ValueError("Invalid project path")
        shutil.rmtree(project_dir, ignore_errors=True)
