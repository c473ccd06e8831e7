"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of clipportal.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from pathlib import Path  # noqa: E402
from urllib.parse import parse_qs, urlparse  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from clipportal.config import ClipPortalConfig  # noqa: E402
from clipportal.database.models import Base  # noqa: E402
from clipportal.services.crypto import FieldCipher  # noqa: E402
from clipportal.services.registry import Services, build_services  # noqa: E402

TEST_PASSWORD = "hunter22"


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------
class FakeProber:
    """Stands in for ffprobe/ffmpeg.

    ``duration`` is what every probe reports; ``thumbnails_work`` decides
    whether thumbnail generation succeeds (a JPEG stub is written).
    """

    def __init__(self, duration: float | None = 12.0, thumbnails_work: bool = True) -> None:
        self.duration = duration
        self.thumbnails_work = thumbnails_work
        self.probed: list[Path] = []

    def probe_duration(self, video_path: Path) -> float | None:
        self.probed.append(Path(video_path))
        return self.duration

    def generate_thumbnail(self, video_path: Path, thumb_path: Path) -> bool:
        if not self.thumbnails_work:
            return False
        thumb_path = Path(thumb_path)
        thumb_path.parent.mkdir(parents=True, exist_ok=True)
        thumb_path.write_bytes(b"\xff\xd8\xff\xe0stub")
        return True


class FakeMailer:
    """Captures every link instead of sending mail."""

    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []

    def send_link(self, to_email: str, username: str, purpose: str, link: str) -> bool:
        self.sent.append({"to": to_email, "username": username, "purpose": purpose, "link": link})
        return True

    def last_token(self, purpose: str | None = None) -> str:
        for mail in reversed(self.sent):
            if purpose is None or mail["purpose"] == purpose:
                return parse_qs(urlparse(mail["link"]).query)["token"][0]
        raise AssertionError(f"No {purpose or 'any'} link was sent")


# ---------------------------------------------------------------------------
# Database & stores
# ---------------------------------------------------------------------------
@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Clip Portal tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def cfg(tmp_path: Path) -> ClipPortalConfig:
    """Defaults, with cheap bcrypt and every path under ``tmp_path``."""
    return ClipPortalConfig(
        site_base_url="http://portal.test",
        data_dir=str(tmp_path / "data"),
        media_dir=str(tmp_path / "media"),
        backup_dir=str(tmp_path / "backups"),
        password_hash_rounds=4,
    )


@pytest.fixture
def cipher() -> FieldCipher:
    return FieldCipher(bytes(range(32)))


@pytest.fixture
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def services(db_engine, cfg, cipher, mailer, prober) -> Services:
    svc = build_services(db_engine, cfg, _TEST_JWT_SECRET, cipher=cipher, mailer=mailer, prober=prober)
    svc.media.ensure_dirs()
    return svc


def make_user(
    services: Services,
    username: str,
    *,
    email: str | None = None,
    admin: bool = False,
    verified: bool = True,
    password: str = TEST_PASSWORD,
) -> dict:
    """Insert a user directly (skips registration policy)."""
    return services.users.create(
        username,
        email or f"{username.lower()}@example.com",
        services.auth.hash_password(password),
        is_verified=verified,
        is_admin=admin,
    )


def make_friends(services: Services, a: dict, b: dict) -> None:
    services.friends.send_request(a["id"], b["id"])
    services.friends.accept(a["id"], b["id"])


def make_video(services: Services, name: str = "clip.mp4") -> str:
    """Store a fake upload and return its media URL path."""
    return services.media.save_video(name, b"\x00\x00\x00\x18ftypmp42", "video/mp4")


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------
@pytest.fixture
def client(services):
    """FastAPI TestClient wired to the test stores.

    Created without a ``with`` block so the lifespan (scheduler, startup
    maintenance) does not run.
    """
    from fastapi.testclient import TestClient

    from clipportal.api.deps import get_services
    from clipportal.api.main import app

    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


def login(client, username: str, password: str = TEST_PASSWORD) -> str:
    resp = client.post("/api/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    # Tests authenticate with explicit Bearer headers
    client.cookies.clear()
    return resp.json()["token"]


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
