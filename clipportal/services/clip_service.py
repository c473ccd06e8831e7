"""
clipportal.services.clip_service — Clip Catalog
================================================

Submission, moderation, rating and listing of clips.

Lifecycle::

    submit()  ──►  pending  ──approve()──►  approved
        │                                       │
        └──────────────── delete() ◄────────────┘

* Non-admin callers only ever see ``approved`` clips; a pending clip looks
  exactly like a missing one to them.
* ``rating`` is the running mean of every accepted 1–5 vote; the
  ``clip_ratings`` table holds one row per rater, which is what makes a
  second vote from the same user a :class:`Conflict`.
* Uploaded files are probed for duration before the record is written;
  an over-length upload is deleted and rejected.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError

from clipportal.constants import (
    DEFAULT_CATEGORY,
    DURATION_TOLERANCE_SECONDS,
    MAX_RATING,
    MIN_RATING,
    VIDEO_PLACEHOLDER,
    isoformat,
    seconds_to_timestamp,
)
from clipportal.database.engine import get_session, read_or_default
from clipportal.database.models import AuditAction, Clip, ClipRating, ClipStatus
from clipportal.errors import Conflict, InvalidInput, NotFound
from clipportal.services.media_service import provider_thumbnail

logger = logging.getLogger(__name__)

_EMPTY_STATS = {"total_clips": 0, "total_ratings": 0, "average_rating": 0}


def _summarize(clips: list[dict[str, Any]]) -> dict[str, Any]:
    if not clips:
        return dict(_EMPTY_STATS)
    return {
        "total_clips": len(clips),
        "total_ratings": sum(c["rating_count"] for c in clips),
        "average_rating": round(sum(c["rating"] for c in clips) / len(clips), 1),
    }


class ClipCatalog:
    """Owns ``clips`` and ``clip_ratings``.

    Parameters
    ----------
    engine:
        Database engine.
    media:
        :class:`~clipportal.services.upload_service.MediaStore` for stored files.
    prober:
        Object with ``probe_duration(path)`` and ``generate_thumbnail(src, dst)``
        (see :class:`~clipportal.services.media_service.MediaProber`).
    max_seconds:
        Longest accepted upload.
    """

    def __init__(self, engine: Engine, media, prober, max_seconds: int = 30, audit=None) -> None:
        self.engine = engine
        self.media = media
        self.prober = prober
        self.max_seconds = max_seconds
        self.audit = audit

    @staticmethod
    def _clip_dict(clip: Clip) -> dict[str, Any]:
        return {
            "id": clip.id,
            "title": clip.title,
            "description": clip.description or "",
            "category": clip.category or DEFAULT_CATEGORY,
            "url": clip.url,
            "file_path": clip.file_path,
            "thumbnail": clip.thumbnail,
            "duration": clip.duration,
            "duration_seconds": clip.duration_seconds,
            "status": ClipStatus(clip.status or ClipStatus.PENDING).value,
            "rating": round(clip.rating or 0.0, 1),
            "rating_count": clip.rating_count or 0,
            "submitted_by": clip.submitted_by,
            "submitted_by_name": clip.submitted_by_name,
            "created_at": isoformat(clip.created_at),
            "updated_at": isoformat(clip.updated_at),
        }

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def submit(
        self,
        title: str | None,
        *,
        url: str | None = None,
        file_path: str | None = None,
        category: str | None = None,
        description: str | None = None,
        submitter: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Create a pending clip from a link or an already-saved upload.

        *file_path* is the media URL returned by
        :meth:`MediaStore.save_video`.  On any rejection the upload is
        removed from disk.
        """
        title = (title or "").strip()
        url = (url or "").strip() or None
        try:
            if not title:
                raise InvalidInput("Title is required")
            if not url and not file_path:
                raise InvalidInput("Either URL or file is required")
            if file_path:
                thumbnail, seconds = self._process_upload(file_path)
            else:
                thumbnail, seconds = provider_thumbnail(url), None
        except InvalidInput:
            if file_path:
                self.media.delete(file_path)
            raise

        with get_session(self.engine) as session:
            clip = Clip(
                title=title,
                description=(description or "").strip(),
                category=(category or "").strip() or DEFAULT_CATEGORY,
                url=url,
                file_path=file_path,
                thumbnail=thumbnail,
                duration=seconds_to_timestamp(seconds) if seconds else "0:00",
                duration_seconds=seconds,
                status=ClipStatus.PENDING,
                submitted_by=submitter["id"] if submitter else None,
                submitted_by_name=submitter["username"] if submitter else None,
            )
            session.add(clip)
            session.flush()
            logger.info("Clip %s submitted (%s)", clip.id, "upload" if file_path else "link")
            return self._clip_dict(clip)

    def _process_upload(self, file_path: str) -> tuple[str, float]:
        video = self.media.resolve(file_path)
        if video is None or not video.exists():
            raise InvalidInput("Uploaded file not found")
        seconds = self.prober.probe_duration(video)
        if seconds is None or seconds <= 0:
            raise InvalidInput(
                f"Failed to process video. Ensure it is a valid file up to {self.max_seconds} seconds."
            )
        if seconds > self.max_seconds + DURATION_TOLERANCE_SECONDS:
            raise InvalidInput(f"Maximum clip length is {self.max_seconds} seconds.")

        thumb_path, thumb_url = self.media.new_thumbnail_path()
        if self.prober.generate_thumbnail(video, thumb_path):
            return thumb_url, seconds
        # ensure_thumbnails() retries placeholders on the next start
        return VIDEO_PLACEHOLDER, seconds

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, clip_id: str, viewer_id: str | None = None, is_admin: bool = False) -> dict[str, Any]:
        with get_session(self.engine) as session:
            clip = session.get(Clip, clip_id)
            if clip is None or (clip.status != ClipStatus.APPROVED and not is_admin):
                raise NotFound("Clip not found")
            data = self._clip_dict(clip)
            data["user_has_rated"] = bool(viewer_id) and session.scalar(
                select(ClipRating.id).where(
                    ClipRating.clip_id == clip_id, ClipRating.user_id == viewer_id
                )
            ) is not None
            return data

    def _list(self, category: str | None, status: str | None, sort: str, is_admin: bool) -> dict[str, Any]:
        stmt = select(Clip)
        wanted = (status or "").lower()
        if not is_admin:
            stmt = stmt.where(Clip.status == ClipStatus.APPROVED)
        elif wanted in (ClipStatus.PENDING.value, ClipStatus.APPROVED.value):
            stmt = stmt.where(Clip.status == ClipStatus(wanted))
        if category:
            stmt = stmt.where(func.lower(Clip.category) == category.strip().lower())

        if sort == "oldest":
            stmt = stmt.order_by(Clip.created_at.asc())
        elif sort == "rating":
            stmt = stmt.order_by(Clip.rating.desc(), Clip.created_at.desc())
        elif sort == "popular":
            stmt = stmt.order_by(Clip.rating_count.desc(), Clip.created_at.desc())
        else:  # newest
            stmt = stmt.order_by(Clip.created_at.desc())

        with get_session(self.engine) as session:
            clips = [self._clip_dict(c) for c in session.scalars(stmt).all()]
        return {"clips": clips, "stats": _summarize(clips)}

    def list(
        self,
        category: str | None = None,
        status: str | None = None,
        sort: str = "newest",
        is_admin: bool = False,
    ) -> dict[str, Any]:
        """Filtered, sorted clips plus summary stats of that same set.

        Non-admin callers are pinned to approved clips whatever *status*
        says.  Admins may pass ``pending``, ``approved`` or ``all``.
        """
        empty = {"clips": [], "stats": dict(_EMPTY_STATS)}
        return read_or_default(empty, self._list, category, status, sort or "newest", is_admin)

    def pending_count(self) -> int:
        with get_session(self.engine) as session:
            return session.scalar(
                select(func.count()).select_from(Clip).where(Clip.status == ClipStatus.PENDING)
            ) or 0

    def stats(self) -> dict[str, Any]:
        """Site-wide numbers over approved clips."""
        return self.list()["stats"]

    # ------------------------------------------------------------------
    # Moderation & rating
    # ------------------------------------------------------------------
    def approve(self, clip_id: str, actor_id: str | None = None) -> dict[str, Any]:
        with get_session(self.engine) as session:
            clip = session.get(Clip, clip_id)
            if clip is None:
                raise NotFound("Clip not found")
            clip.status = ClipStatus.APPROVED
            data = self._clip_dict(clip)
        if self.audit:
            self.audit.record(actor_id, AuditAction.CLIP_APPROVED, {"clip_id": clip_id, "title": data["title"]})
        return data

    def rate(self, clip_id: str, user_id: str, value: Any) -> dict[str, Any]:
        """Record one vote and fold it into the running mean.

        Raises
        ------
        InvalidInput
            Value is not an integer 1–5.
        NotFound
            Unknown (or still pending) clip.
        Conflict
            *user_id* already rated this clip.
        """
        if isinstance(value, bool) or not isinstance(value, int) or not MIN_RATING <= value <= MAX_RATING:
            raise InvalidInput(f"Rating must be between {MIN_RATING} and {MAX_RATING}")
        with get_session(self.engine) as session:
            clip = session.get(Clip, clip_id)
            if clip is None or clip.status != ClipStatus.APPROVED:
                raise NotFound("Clip not found")
            already = session.scalar(
                select(ClipRating.id).where(
                    ClipRating.clip_id == clip_id, ClipRating.user_id == user_id
                )
            )
            if already is not None:
                raise Conflict("You have already rated this clip")
            session.add(ClipRating(clip_id=clip_id, user_id=user_id, value=value))
            try:
                session.flush()
            except IntegrityError:
                raise Conflict("You have already rated this clip") from None

            count = clip.rating_count or 0
            clip.rating = ((clip.rating or 0.0) * count + value) / (count + 1)
            clip.rating_count = count + 1
            return self._clip_dict(clip)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------
    def _drop_files(self, file_path: str | None, thumbnail: str | None) -> None:
        if file_path:
            self.media.delete(file_path)
        if thumbnail and thumbnail.startswith("/thumbnails/"):
            self.media.delete(thumbnail)

    def delete(self, clip_id: str, actor_id: str | None = None) -> dict[str, Any]:
        """Remove the clip, its votes and comments, then its files."""
        with get_session(self.engine) as session:
            clip = session.get(Clip, clip_id)
            if clip is None:
                raise NotFound("Clip not found")
            data = self._clip_dict(clip)
            session.delete(clip)
        self._drop_files(data["file_path"], data["thumbnail"])
        if self.audit:
            self.audit.record(actor_id, AuditAction.CLIP_DELETED, {"clip_id": clip_id, "title": data["title"]})
        return data

    def delete_by_submitter(self, user_id: str) -> int:
        """Remove every clip submitted by *user_id*; returns how many."""
        with get_session(self.engine) as session:
            clips = session.scalars(select(Clip).where(Clip.submitted_by == user_id)).all()
            files = [(c.file_path, c.thumbnail) for c in clips]
            for clip in clips:
                session.delete(clip)
        for file_path, thumbnail in files:
            self._drop_files(file_path, thumbnail)
        return len(files)

    # ------------------------------------------------------------------
    # Startup maintenance
    # ------------------------------------------------------------------
    def ensure_thumbnails(self) -> int:
        """Generate stills for uploads still showing a placeholder."""
        with get_session(self.engine) as session:
            todo = [
                (c.id, c.file_path)
                for c in session.scalars(select(Clip).where(Clip.file_path.is_not(None))).all()
                if not c.thumbnail or c.thumbnail.startswith("/images/")
            ]

        fixed = 0
        for clip_id, file_path in todo:
            video = self.media.resolve(file_path)
            if video is None or not video.exists():
                logger.warning("Video not found for thumbnail generation: %s", file_path)
                continue
            thumb_path = self.media.thumbnails_dir / f"thumb_{clip_id}.jpg"
            if not self.prober.generate_thumbnail(video, thumb_path):
                continue
            with get_session(self.engine) as session:
                clip = session.get(Clip, clip_id)
                if clip is not None:
                    clip.thumbnail = f"/thumbnails/{thumb_path.name}"
                    fixed += 1
        if fixed:
            logger.info("Ensured thumbnails for %d existing clip(s)", fixed)
        return fixed
