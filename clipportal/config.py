"""
clipportal.config — YAML Configuration Loader
==============================================

**Why this file exists:**
This module reads ``config.yaml`` for **infrastructure-only** settings
(paths, token lifetimes, moderation limits, backup policy).  Secrets such as
``JWT_SECRET``, ``CLIPPORTAL_ENCRYPTION_KEY`` and SMTP credentials stay in the
environment (``.env``) and are never written to this file.

Usage::

    from clipportal.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.site_name)         # "Clip Portal"
    print(cfg.max_clip_seconds)  # 30
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Typed settings object — infrastructure only.
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class ClipPortalConfig:
    """Immutable configuration loaded from ``config.yaml``.

    Every field has a default so a fresh checkout runs without a config
    file.  Secrets are read from the environment, not from here.
    """

    # Identity
    site_name: str = "Clip Portal"
    site_base_url: str = "http://localhost:3000"

    # Storage
    data_dir: str = "data"
    media_dir: str = "media"  # holds uploads/, thumbnails/, profiles/

    # Auth
    session_ttl_days: int = 30
    magic_link_ttl_minutes: int = 15
    password_hash_rounds: int = 10
    require_email_verification: bool = True
    # Explicit bootstrap policy: the first account registered into an
    # empty directory becomes admin.  Disable for multi-instance deploys.
    bootstrap_first_admin: bool = True

    # Throttling (magic links / verification mail)
    magic_link_ip_limit: int = 10
    magic_link_email_limit: int = 3
    magic_link_window_seconds: int = 15 * 60

    # Clips
    max_clip_seconds: int = 30
    max_upload_mb: int = 100

    # Audit
    audit_cap: int = 1000

    # Backups
    backup_dir: str = "data/backups"
    backup_retain: int = 30
    backup_schedule: str = "0 2 * * *"  # daily at 02:00 UTC

    @property
    def media_path(self) -> Path:
        return Path(self.media_dir)

    @property
    def backup_path(self) -> Path:
        return Path(self.backup_dir)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
_INT_KEYS = (
    "session_ttl_days",
    "magic_link_ttl_minutes",
    "password_hash_rounds",
    "magic_link_ip_limit",
    "magic_link_email_limit",
    "magic_link_window_seconds",
    "max_clip_seconds",
    "max_upload_mb",
    "audit_cap",
    "backup_retain",
)
_BOOL_KEYS = ("require_email_verification", "bootstrap_first_admin")
_STR_KEYS = (
    "site_name",
    "site_base_url",
    "data_dir",
    "media_dir",
    "backup_dir",
    "backup_schedule",
)


def load_config(path: str | Path | None = None) -> ClipPortalConfig:
    """Read *path* and return a :class:`ClipPortalConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.  Defaults to
        ``$CLIPPORTAL_CONFIG`` or ``config.yaml`` in the working directory.
        A missing file yields the built-in defaults.

    Raises
    ------
    ValueError
        If the file is not a YAML mapping or a value has the wrong type.
    """
    config_path = Path(path or os.getenv("CLIPPORTAL_CONFIG", "config.yaml"))
    if not config_path.exists():
        logger.info(
            "No configuration file at %s — using defaults "
            "(copy config.yaml.example → config.yaml to customise)",
            config_path.resolve(),
        )
        return ClipPortalConfig()

    with open(config_path, encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}

    if not isinstance(raw, dict):
        raise ValueError(f"{config_path} must contain a YAML mapping")

    values: dict = {}
    try:
        for key in _STR_KEYS:
            if raw.get(key) is not None:
                values[key] = str(raw[key])
        for key in _INT_KEYS:
            if raw.get(key) is not None:
                values[key] = int(raw[key])
        for key in _BOOL_KEYS:
            if raw.get(key) is not None:
                values[key] = bool(raw[key])
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid value in {config_path}: {exc}") from exc

    unknown = set(raw) - set(_STR_KEYS) - set(_INT_KEYS) - set(_BOOL_KEYS)
    if unknown:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))

    return ClipPortalConfig(**values)
