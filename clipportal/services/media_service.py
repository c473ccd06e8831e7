"""
clipportal.services.media_service — Video Probing & Thumbnails
===============================================================

Thin wrapper around the ``ffprobe`` / ``ffmpeg`` binaries, plus the
known-provider thumbnail rules for linked clips.  The clip catalog only
talks to :class:`MediaProber`, so tests swap in a fake with fixed
durations.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
from pathlib import Path

from clipportal.constants import TWITCH_PLACEHOLDER, VIDEO_PLACEHOLDER

logger = logging.getLogger(__name__)

THUMBNAIL_SIZE = "400x225"  # 16:9
PROBE_TIMEOUT_SECONDS = 30

_YOUTUBE_RE = re.compile(
    r"(?:https?://)?(?:www\.)?"
    r"(?:youtube\.com/(?:[^/\n\s]+/\S+/|(?:v|e(?:mbed)?)/|\S*?[?&]v=)|youtu\.be/)"
    r"([a-zA-Z0-9_-]{11})"
)
_TWITCH_RE = re.compile(r"(?:https?://)?(?:www\.)?twitch\.tv/videos/(\d+)")


class MediaProber:
    """Shells out to ffprobe/ffmpeg.  Binaries are looked up on ``PATH``."""

    def __init__(self, ffprobe: str = "ffprobe", ffmpeg: str = "ffmpeg") -> None:
        self.ffprobe = ffprobe
        self.ffmpeg = ffmpeg

    def probe_duration(self, video_path: Path) -> float | None:
        """Container duration in seconds, or ``None`` if unreadable."""
        try:
            result = subprocess.run(
                [
                    self.ffprobe, "-v", "quiet", "-print_format", "json",
                    "-show_format", str(video_path),
                ],
                capture_output=True, text=True, timeout=PROBE_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("ffprobe failed for %s: %s", video_path.name, exc)
            return None
        if result.returncode != 0:
            logger.warning("ffprobe exited %d for %s", result.returncode, video_path.name)
            return None
        try:
            probe = json.loads(result.stdout or "{}")
            return float(probe["format"]["duration"])
        except (KeyError, TypeError, ValueError):
            return None

    def generate_thumbnail(self, video_path: Path, thumbnail_path: Path) -> bool:
        """Grab the first frame as a 400x225 JPEG.  Returns success."""
        thumbnail_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.ffmpeg, "-y", "-loglevel", "error",
            "-ss", "0", "-i", str(video_path),
            "-frames:v", "1", "-s", THUMBNAIL_SIZE,
            str(thumbnail_path),
        ]
        try:
            subprocess.run(cmd, check=True, timeout=PROBE_TIMEOUT_SECONDS)
        except (OSError, subprocess.CalledProcessError, subprocess.TimeoutExpired) as exc:
            logger.error("Thumbnail generation failed for %s: %s", video_path.name, exc)
            return False
        return thumbnail_path.exists()


# ---------------------------------------------------------------------------
# Linked clips
# ---------------------------------------------------------------------------
def youtube_thumbnail(url: str) -> str | None:
    match = _YOUTUBE_RE.search(url or "")
    if match:
        return f"https://img.youtube.com/vi/{match.group(1)}/hqdefault.jpg"
    return None


def provider_thumbnail(url: str | None) -> str:
    """Thumbnail for an external URL: YouTube still, Twitch or generic placeholder."""
    if not url:
        return VIDEO_PLACEHOLDER
    youtube = youtube_thumbnail(url)
    if youtube:
        return youtube
    if _TWITCH_RE.search(url):
        return TWITCH_PLACEHOLDER
    return VIDEO_PLACEHOLDER
