"""
clipportal.services.upload_service — Media File Storage
========================================================

Handles uploaded clips and profile images.  Files live under the configured
media root and are served by static mounts::

    <media_root>/uploads/      → /uploads/<name>      (videos)
    <media_root>/thumbnails/   → /thumbnails/<name>   (generated stills)
    <media_root>/profiles/     → /profiles/<name>     (avatars, banners)

Deletion is tolerant: a file that is already gone is not an error.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path

from clipportal.errors import InvalidInput

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = {".mp4", ".webm", ".mov", ".mkv", ".m4v", ".avi"}
IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp"}
ALLOWED_IMAGE_MIME_TYPES = {
    "image/png",
    "image/jpeg",
    "image/gif",
    "image/webp",
}
MAX_IMAGE_SIZE = 5 * 1024 * 1024  # 5 MB

_AREAS = {"uploads", "thumbnails", "profiles"}


class MediaStore:
    def __init__(self, media_root: str | Path, max_video_mb: int = 100) -> None:
        self.root = Path(media_root)
        self.max_video_bytes = max_video_mb * 1024 * 1024

    @property
    def uploads_dir(self) -> Path:
        return self.root / "uploads"

    @property
    def thumbnails_dir(self) -> Path:
        return self.root / "thumbnails"

    @property
    def profiles_dir(self) -> Path:
        return self.root / "profiles"

    def ensure_dirs(self) -> None:
        """Create the media directories if they don't exist."""
        for folder in (self.uploads_dir, self.thumbnails_dir, self.profiles_dir):
            folder.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------
    def save_video(self, filename: str, content: bytes, content_type: str | None = None) -> str:
        """Validate and persist an uploaded video.

        Returns
        -------
        str
            URL path of the stored file (e.g. ``/uploads/3f2a….mp4``).

        Raises
        ------
        InvalidInput
            Wrong type or too large.
        """
        if len(content) > self.max_video_bytes:
            raise InvalidInput(
                f"File too large. Maximum size is {self.max_video_bytes // 1024 // 1024}MB."
            )
        if content_type and not content_type.startswith("video/"):
            raise InvalidInput("Only video files are allowed")
        ext = Path(filename or "").suffix.lower()
        if ext not in VIDEO_EXTENSIONS:
            raise InvalidInput("Only video files are allowed")

        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        unique_name = f"{uuid.uuid4().hex}{ext}"
        (self.uploads_dir / unique_name).write_bytes(content)
        return f"/uploads/{unique_name}"

    def save_image(self, filename: str, content: bytes, content_type: str | None = None) -> str:
        """Validate and persist a profile avatar or banner."""
        if len(content) > MAX_IMAGE_SIZE:
            raise InvalidInput(
                f"File too large: {len(content)} bytes (max {MAX_IMAGE_SIZE // 1024 // 1024}MB)"
            )
        ext = Path(filename or "").suffix.lower()
        if ext not in IMAGE_EXTENSIONS:
            raise InvalidInput(
                f"File type not allowed: {ext!r}. "
                f"Allowed: {', '.join(sorted(IMAGE_EXTENSIONS))}"
            )
        if content_type and content_type not in ALLOWED_IMAGE_MIME_TYPES:
            raise InvalidInput(f"MIME type not allowed: {content_type!r}")

        self.profiles_dir.mkdir(parents=True, exist_ok=True)
        unique_name = f"{uuid.uuid4().hex}{ext}"
        (self.profiles_dir / unique_name).write_bytes(content)
        return f"/profiles/{unique_name}"

    def new_thumbnail_path(self) -> tuple[Path, str]:
        """Return ``(filesystem path, url path)`` for a fresh thumbnail."""
        name = f"thumb_{uuid.uuid4()}.jpg"
        return self.thumbnails_dir / name, f"/thumbnails/{name}"

    # ------------------------------------------------------------------
    # Lookup / deletion
    # ------------------------------------------------------------------
    def resolve(self, url_path: str | None) -> Path | None:
        """Map a ``/uploads/…`` style URL path onto the filesystem.

        Returns None for external URLs, placeholders and anything that
        tries to escape its media area.
        """
        if not url_path or not url_path.startswith("/"):
            return None
        parts = url_path.strip("/").split("/")
        if len(parts) != 2 or parts[0] not in _AREAS or parts[1] in ("", ".", ".."):
            return None
        return self.root / parts[0] / parts[1]

    def delete(self, url_path: str | None) -> bool:
        """Remove a stored media file.  Returns True if a file was deleted."""
        path = self.resolve(url_path)
        if path is None:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("Could not delete media %s: %s", url_path, exc)
            return False
        logger.info("Deleted media file %s", url_path)
        return True
