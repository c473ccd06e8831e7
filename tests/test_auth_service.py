"""
tests/test_auth_service.py — Registration, Sessions & Magic Links
==================================================================
"""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest
from conftest import TEST_PASSWORD, make_user
from sqlalchemy import select, update

from clipportal.constants import utcnow
from clipportal.database.engine import get_session
from clipportal.database.models import AuditAction, MagicLinkToken, User, UserSession
from clipportal.errors import (
    Conflict,
    Forbidden,
    InvalidInput,
    InvalidToken,
    RateLimited,
    Unauthenticated,
    Unauthorized,
)
from clipportal.services.auth_service import AuthService, hash_token


def _register(services, username="alice", email="alice@example.com", password=TEST_PASSWORD):
    return services.auth.register(username, email, password, "10.0.0.1", "pytest")


# ===========================================================================
# Registration
# ===========================================================================
class TestRegister:
    def test_email_round_trips_through_encryption(self, services, db_engine):
        """The stored email is ciphertext; lookups return the submitted address."""
        user_id = _register(services, email="Alice@Example.com")
        with get_session(db_engine) as session:
            raw = session.get(User, user_id).email
        assert raw.startswith("enc:v1:")
        assert services.users.get_by_username("alice")["email"] == "alice@example.com"
        assert services.users.get_by_email("ALICE@example.com")["id"] == user_id

    def test_duplicate_username_any_case(self, services):
        _register(services)
        with pytest.raises(Conflict, match="Username already taken"):
            _register(services, username="ALICE", email="other@example.com")

    def test_duplicate_email_any_case(self, services):
        _register(services)
        with pytest.raises(Conflict, match="Email already in use"):
            _register(services, username="bob", email="ALICE@EXAMPLE.COM")

    @pytest.mark.parametrize(
        ("username", "email", "password", "message"),
        [
            ("", "a@example.com", "secret1", "required"),
            ("al", "a@example.com", "secret1", "3\\+ chars"),
            ("alice", "a@example.com", "123", "6\\+ chars"),
            ("alice", "not-an-email", "secret1", "valid email"),
            ("alice", "a@example.com", "x" * 80, "at most 72 bytes"),
            ("a" * 40, "a@example.com", "secret1", "at most 32"),
        ],
    )
    def test_validation(self, services, username, email, password, message):
        with pytest.raises(InvalidInput, match=message):
            services.auth.register(username, email, password)

    def test_first_account_becomes_admin(self, services):
        """Bootstrap policy: only the first account in an empty directory is admin."""
        first = _register(services)
        second = _register(services, username="bob", email="bob@example.com")
        assert services.users.get_by_id(first)["is_admin"] is True
        assert services.users.get_by_id(second)["is_admin"] is False

    def test_bootstrap_can_be_disabled(self, services):
        services.auth.cfg = replace(services.cfg, bootstrap_first_admin=False)
        user_id = _register(services)
        assert services.users.get_by_id(user_id)["is_admin"] is False

    def test_sends_verification_link(self, services, mailer):
        _register(services)
        assert mailer.sent[-1]["purpose"] == "verify"
        assert mailer.sent[-1]["to"] == "alice@example.com"
        assert mailer.sent[-1]["link"].startswith("http://portal.test/api/auth/verify?token=")

    def test_registration_is_audited(self, services):
        user_id = _register(services)
        entries = services.audit.entries(user_id=user_id)
        assert entries[0]["action"] == AuditAction.USER_REGISTERED
        assert entries[0]["ip_address"] == "10.0.0.1"

    def test_password_hash_is_bcrypt(self, services):
        user_id = _register(services)
        stored = services.users.get_by_id(user_id)["password_hash"]
        assert stored.startswith("$2")
        assert TEST_PASSWORD not in stored


# ===========================================================================
# Login & sessions
# ===========================================================================
class TestLogin:
    def test_unverified_login_is_forbidden(self, services):
        _register(services)
        with pytest.raises(Forbidden) as excinfo:
            services.auth.login("alice", TEST_PASSWORD)
        assert excinfo.value.needs_verification is True

    def test_verify_then_login(self, services, mailer):
        _register(services)
        user_id = services.auth.verify(mailer.last_token("verify"))
        result = services.auth.login("ALICE", TEST_PASSWORD)
        assert result.user["id"] == user_id
        assert services.auth.validate_session(result.token) == user_id

    def test_wrong_password(self, services):
        make_user(services, "bob")
        with pytest.raises(Unauthorized, match="Invalid credentials"):
            services.auth.login("bob", "wrong-password")

    def test_unknown_user(self, services):
        with pytest.raises(Unauthorized, match="Invalid credentials"):
            services.auth.login("nobody", TEST_PASSWORD)

    def test_only_token_hash_is_stored(self, services, db_engine):
        make_user(services, "bob")
        result = services.auth.login("bob", TEST_PASSWORD)
        with get_session(db_engine) as session:
            row = session.get(UserSession, result.session_id)
            assert row.token_hash == hash_token(result.token)
            assert row.token_hash != result.token


class TestSessions:
    def test_logout_invalidates(self, services):
        """A token stops validating once its session is logged out."""
        make_user(services, "bob")
        result = services.auth.login("bob", TEST_PASSWORD)
        services.auth.logout(result.token)
        with pytest.raises(Unauthenticated):
            services.auth.validate_session(result.token)

    def test_logout_with_garbage_is_harmless(self, services):
        services.auth.logout("not-a-token")
        services.auth.logout(None)

    def test_expired_session_is_rejected_and_removed(self, services, db_engine):
        make_user(services, "bob")
        result = services.auth.login("bob", TEST_PASSWORD)
        with get_session(db_engine) as session:
            session.execute(
                update(UserSession)
                .where(UserSession.id == result.session_id)
                .values(expires_at=utcnow() - timedelta(minutes=1))
            )
        with pytest.raises(Unauthenticated):
            services.auth.validate_session(result.token)
        with get_session(db_engine) as session:
            assert session.get(UserSession, result.session_id) is None

    def test_token_signed_with_other_secret(self, services, cfg):
        make_user(services, "bob")
        other = AuthService(services.engine, services.users, cfg, "y" * 64)
        forged = other.login("bob", TEST_PASSWORD).token
        with pytest.raises(Unauthenticated):
            services.auth.validate_session(forged)

    def test_missing_token(self, services):
        with pytest.raises(Unauthenticated):
            services.auth.validate_session(None)

    def test_login_purges_expired_sessions(self, services, db_engine):
        make_user(services, "bob")
        old = services.auth.login("bob", TEST_PASSWORD)
        with get_session(db_engine) as session:
            session.execute(
                update(UserSession)
                .where(UserSession.id == old.session_id)
                .values(expires_at=utcnow() - timedelta(days=1))
            )
        services.auth.login("bob", TEST_PASSWORD)
        with get_session(db_engine) as session:
            assert session.get(UserSession, old.session_id) is None

    def test_change_password_revokes_other_sessions(self, services):
        user = make_user(services, "bob")
        keep = services.auth.login("bob", TEST_PASSWORD)
        other = services.auth.login("bob", TEST_PASSWORD)
        services.auth.change_password(user["id"], TEST_PASSWORD, "new-secret", keep.token)

        assert services.auth.validate_session(keep.token) == user["id"]
        with pytest.raises(Unauthenticated):
            services.auth.validate_session(other.token)
        assert services.auth.login("bob", "new-secret").user["id"] == user["id"]

    def test_change_password_requires_current(self, services):
        user = make_user(services, "bob")
        with pytest.raises(Unauthorized):
            services.auth.change_password(user["id"], "wrong", "new-secret")


# ===========================================================================
# Magic links
# ===========================================================================
class TestMagicLinks:
    def test_login_link_opens_session(self, services, mailer):
        user = make_user(services, "bob")
        services.auth.request_magic_link("bob@example.com", ip="1.2.3.4")
        result = services.auth.consume_magic_link(mailer.last_token("login"))
        assert result.purpose == "login"
        assert result.login is not None
        assert services.auth.validate_session(result.login.token) == user["id"]

    def test_link_is_single_use(self, services, mailer):
        make_user(services, "bob")
        services.auth.request_magic_link("bob@example.com")
        token = mailer.last_token("login")
        services.auth.consume_magic_link(token)
        with pytest.raises(InvalidToken):
            services.auth.consume_magic_link(token)

    def test_login_link_verifies_account(self, services, mailer):
        user = make_user(services, "bob", verified=False)
        services.auth.request_magic_link("bob@example.com")
        services.auth.consume_magic_link(mailer.last_token("login"))
        assert services.users.get_by_id(user["id"])["is_verified"] is True

    def test_expired_link(self, services, mailer, db_engine):
        make_user(services, "bob")
        services.auth.request_magic_link("bob@example.com")
        with get_session(db_engine) as session:
            session.execute(update(MagicLinkToken).values(expires_at=utcnow() - timedelta(seconds=1)))
        with pytest.raises(InvalidToken):
            services.auth.consume_magic_link(mailer.last_token("login"))

    def test_newer_link_supersedes_older(self, services, mailer):
        make_user(services, "bob")
        services.auth.request_magic_link("bob@example.com")
        first = mailer.last_token("login")
        services.auth.request_magic_link("bob@example.com")
        second = mailer.last_token("login")
        with pytest.raises(InvalidToken):
            services.auth.consume_magic_link(first)
        assert services.auth.consume_magic_link(second).login is not None

    def test_unknown_token(self, services):
        with pytest.raises(InvalidToken):
            services.auth.consume_magic_link("made-up")

    def test_verify_rejects_login_token_without_spending_it(self, services, mailer):
        make_user(services, "bob")
        services.auth.request_magic_link("bob@example.com")
        token = mailer.last_token("login")
        with pytest.raises(InvalidToken):
            services.auth.verify(token)
        assert services.auth.consume_magic_link(token).purpose == "login"

    def test_only_hash_is_stored(self, services, mailer, db_engine):
        make_user(services, "bob")
        services.auth.request_magic_link("bob@example.com")
        token = mailer.last_token("login")
        with get_session(db_engine) as session:
            hashes = session.scalars(select(MagicLinkToken.token_hash)).all()
        assert hashes == [hash_token(token)]

    def test_unknown_email_succeeds_silently(self, services, mailer):
        services.auth.request_magic_link("ghost@example.com")
        assert mailer.sent == []

    def test_fourth_request_for_one_email_is_throttled(self, services):
        """Three requests per address per window; the fourth is refused."""
        make_user(services, "bob")
        for i in range(3):
            services.auth.request_magic_link("bob@example.com", ip=f"10.0.0.{i}")
        with pytest.raises(RateLimited) as excinfo:
            services.auth.request_magic_link("bob@example.com", ip="10.0.0.99")
        assert excinfo.value.retry_after >= 1

    def test_ip_throttle(self, services):
        for i in range(10):
            services.auth.request_magic_link(f"user{i}@example.com", ip="9.9.9.9")
        with pytest.raises(RateLimited):
            services.auth.request_magic_link("user99@example.com", ip="9.9.9.9")

    def test_invalid_email_is_rejected(self, services):
        with pytest.raises(InvalidInput):
            services.auth.request_magic_link("nope")


class TestResendVerification:
    def test_already_verified(self, services):
        make_user(services, "bob")
        assert services.auth.resend_verification("bob") == "Already verified"

    def test_resend_by_email(self, services, mailer):
        make_user(services, "bob", verified=False)
        assert services.auth.resend_verification("bob@example.com") == "Verification email sent"
        services.auth.verify(mailer.last_token("verify"))
        assert services.users.get_by_username("bob")["is_verified"] is True

    def test_unknown_account_is_silent(self, services, mailer):
        assert services.auth.resend_verification("ghost") == "Verification email sent"
        assert mailer.sent == []

    def test_requires_value(self, services):
        with pytest.raises(InvalidInput):
            services.auth.resend_verification("  ")
