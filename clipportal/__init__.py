"""
Clip Portal — Community Video-Clip Sharing
===========================================
Users submit short clips (upload or external link), admins moderate them,
members rate and comment, befriend each other and exchange direct messages.

Package layout::

    clipportal/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Shared limits + time helpers
    ├── errors.py          # Error taxonomy (InvalidInput, Conflict, …)
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + session helpers
    │   └── models.py      # All ORM models (9 tables)
    ├── services/
    │   ├── registry.py        # Builds every store once at startup
    │   ├── crypto.py          # AES-GCM field cipher + blind index
    │   ├── throttle.py        # In-process sliding-window limiter
    │   ├── auth_service.py    # Register / login / sessions / magic links
    │   ├── user_service.py    # User directory + cascade delete
    │   ├── friend_service.py  # Friend graph
    │   ├── clip_service.py    # Clip catalog, moderation, ratings
    │   ├── message_service.py # Direct messages + clip comments
    │   ├── audit_service.py   # Bounded audit log
    │   ├── backup_service.py  # Snapshots, retention, restore, scheduler
    │   ├── upload_service.py  # Upload validation + media files
    │   ├── media_service.py   # ffprobe / ffmpeg / provider thumbnails
    │   └── email_service.py   # SMTP mailer with log fallback
    ├── backup/
    │   └── __main__.py    # ``python -m clipportal.backup`` CLI
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Dependency injection + JWT secret
        ├── auth.py        # Register / login / magic-link routes
        ├── realtime.py    # Per-user WebSocket push channel
        └── routes/        # Clips, friends, messages, users, admin
"""

__version__ = "0.1.0"
