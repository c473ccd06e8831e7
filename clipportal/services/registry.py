"""
clipportal.services.registry — Store Wiring
============================================

Builds every store from one engine and config so the API, the backup CLI
and the tests share the same graph::

    cipher ─► audit ─► media ─► clips ─► users ─► friends ─► messages
                                                   comments, auth, backups
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import Engine

from clipportal.config import ClipPortalConfig
from clipportal.services.audit_service import AuditLog
from clipportal.services.auth_service import AuthService
from clipportal.services.backup_service import BackupManager, BackupScheduler
from clipportal.services.clip_service import ClipCatalog
from clipportal.services.crypto import FieldCipher
from clipportal.services.email_service import Mailer, SMTPSettings
from clipportal.services.friend_service import FriendGraph
from clipportal.services.media_service import MediaProber
from clipportal.services.message_service import CommentStore, MessageStore
from clipportal.services.upload_service import MediaStore
from clipportal.services.user_service import UserDirectory


@dataclass
class Services:
    cfg: ClipPortalConfig
    engine: Engine
    cipher: FieldCipher
    audit: AuditLog
    media: MediaStore
    clips: ClipCatalog
    users: UserDirectory
    friends: FriendGraph
    messages: MessageStore
    comments: CommentStore
    auth: AuthService
    backups: BackupManager
    scheduler: BackupScheduler


def build_services(
    engine: Engine,
    cfg: ClipPortalConfig,
    jwt_secret: str,
    *,
    cipher: FieldCipher | None = None,
    mailer=None,
    prober=None,
) -> Services:
    """Wire the stores.  Unset collaborators are built from the environment."""
    cipher = cipher or FieldCipher.from_env()
    if mailer is None:
        mailer = Mailer(SMTPSettings.from_env(), site_name=cfg.site_name)
    audit = AuditLog(engine, cipher, cap=cfg.audit_cap)
    media = MediaStore(cfg.media_path, max_video_mb=cfg.max_upload_mb)
    clips = ClipCatalog(engine, media, prober or MediaProber(), max_seconds=cfg.max_clip_seconds, audit=audit)
    users = UserDirectory(engine, cipher, media=media, clips=clips, audit=audit)
    friends = FriendGraph(engine)
    backups = BackupManager(engine, cfg.backup_path, cfg.backup_retain, cipher=cipher, audit=audit)
    return Services(
        cfg=cfg,
        engine=engine,
        cipher=cipher,
        audit=audit,
        media=media,
        clips=clips,
        users=users,
        friends=friends,
        messages=MessageStore(engine, friends),
        comments=CommentStore(engine),
        auth=AuthService(engine, users, cfg, jwt_secret, mailer=mailer, audit=audit),
        backups=backups,
        scheduler=BackupScheduler(backups, cfg.backup_schedule),
    )
