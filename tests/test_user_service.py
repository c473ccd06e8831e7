"""
tests/test_user_service.py — User Directory
============================================
"""

from __future__ import annotations

import pytest
from conftest import make_friends, make_user, make_video
from sqlalchemy import select

from clipportal.database.engine import get_session
from clipportal.database.models import Friendship, Message, User
from clipportal.errors import Conflict, InvalidInput, NotFound, PolicyViolation
from clipportal.services.crypto import FieldCipher
from clipportal.services.user_service import UserDirectory, normalize_profile, public_user


class TestLookups:
    def test_username_lookup_ignores_case(self, services):
        user = make_user(services, "Alice")
        assert services.users.get_by_username("aLiCe")["id"] == user["id"]

    def test_username_or_email(self, services):
        user = make_user(services, "bob")
        assert services.users.get_by_username_or_email("bob")["id"] == user["id"]
        assert services.users.get_by_username_or_email("BOB@example.com")["id"] == user["id"]
        assert services.users.get_by_username_or_email("ghost") is None

    def test_public_projection_hides_secrets(self, services):
        user = make_user(services, "bob")
        public = public_user(user)
        assert set(public) == {"id", "username", "created_at", "profile"}

    def test_update_email_rechecks_uniqueness(self, services):
        make_user(services, "alice")
        bob = make_user(services, "bob")
        with pytest.raises(Conflict):
            services.users.update(bob["id"], email="ALICE@example.com")
        updated = services.users.update(bob["id"], email="robert@example.com")
        assert updated["email"] == "robert@example.com"
        assert services.users.get_by_email("robert@example.com")["id"] == bob["id"]

    def test_update_rejects_unknown_fields(self, services):
        bob = make_user(services, "bob")
        with pytest.raises(InvalidInput):
            services.users.update(bob["id"], nickname="bobby")


class TestSearch:
    def test_substring_case_insensitive(self, services):
        for name in ("GamerOne", "gamertwo", "other"):
            make_user(services, name)
        names = [u["username"] for u in services.users.search("GAMER")]
        assert names == ["GamerOne", "gamertwo"]

    def test_like_wildcards_are_literal(self, services):
        make_user(services, "plain")
        make_user(services, "with_underscore")
        assert [u["username"] for u in services.users.search("_")] == ["with_underscore"]

    def test_empty_query_lists_everyone(self, services):
        make_user(services, "alice")
        make_user(services, "bob")
        assert len(services.users.search("")) == 2


class TestDelete:
    def test_cascade(self, services, db_engine):
        """Deleting a user removes their clips, files, friend edges and messages."""
        admin = make_user(services, "admin", admin=True)
        victim = make_user(services, "victim")
        other = make_user(services, "other")
        make_friends(services, victim, other)
        services.messages.send_message(victim["id"], other["id"], "hi")
        services.messages.send_message(other["id"], victim["id"], "hello")
        video = make_video(services)
        clip = services.clips.submit("Mine", file_path=video, submitter=victim)
        video_file = services.media.resolve(video)
        thumb_file = services.media.resolve(clip["thumbnail"])
        assert video_file.exists() and thumb_file.exists()

        summary = services.users.delete(victim["id"], actor_id=admin["id"])

        assert summary == {"clips": 1, "friendships": 1, "messages": 2}
        assert services.users.get_by_id(victim["id"]) is None
        assert not video_file.exists()
        assert not thumb_file.exists()
        with get_session(db_engine) as session:
            assert session.scalars(select(Friendship)).all() == []
            assert session.scalars(select(Message)).all() == []
        assert services.friends.list_friends(other["id"]) == []

    def test_removes_profile_images(self, services):
        admin = make_user(services, "admin", admin=True)
        victim = make_user(services, "victim")
        avatar = services.media.save_image("me.png", b"\x89PNG", "image/png")
        services.users.set_profile_image(victim["id"], "avatar", avatar)
        services.users.delete(victim["id"], actor_id=admin["id"])
        assert not services.media.resolve(avatar).exists()

    def test_cannot_delete_self(self, services):
        admin = make_user(services, "admin", admin=True)
        make_user(services, "second", admin=True)
        with pytest.raises(PolicyViolation):
            services.users.delete(admin["id"], actor_id=admin["id"])

    def test_cannot_delete_last_admin(self, services):
        admin = make_user(services, "admin", admin=True)
        with pytest.raises(PolicyViolation, match="at least one admin"):
            services.users.delete(admin["id"])
        assert services.users.get_by_id(admin["id"]) is not None

    def test_unknown_user(self, services):
        with pytest.raises(NotFound):
            services.users.delete("missing")

    def test_deletion_is_audited(self, services):
        admin = make_user(services, "admin", admin=True)
        victim = make_user(services, "victim")
        services.users.delete(victim["id"], actor_id=admin["id"])
        entry = services.audit.entries(user_id=admin["id"])[0]
        assert entry["action"] == "USER_DELETED"
        assert entry["details"]["username"] == "victim"


class TestAdminFlag:
    def test_promote(self, services):
        bob = make_user(services, "bob")
        assert services.users.set_admin(bob["id"])["is_admin"] is True
        assert services.users.count_admins() == 1

    def test_cannot_demote_last_admin(self, services):
        admin = make_user(services, "admin", admin=True)
        with pytest.raises(PolicyViolation):
            services.users.set_admin(admin["id"], False)

    def test_ensure_admin_promotes_oldest(self, services):
        first = make_user(services, "first")
        make_user(services, "second")
        assert services.users.ensure_admin() == "first"
        assert services.users.get_by_id(first["id"])["is_admin"] is True
        assert services.users.ensure_admin() is None

    def test_ensure_admin_on_empty_directory(self, services):
        assert services.users.ensure_admin() is None


class TestProfile:
    def test_update_merges_fields(self, services):
        bob = make_user(services, "bob")
        services.users.update_profile(bob["id"], display_name=" Bobby ", social={"twitter": "@bob"})
        profile = services.users.update_profile(bob["id"], bio="Hello")
        assert profile["display_name"] == "Bobby"
        assert profile["bio"] == "Hello"
        assert profile["social"]["twitter"] == "@bob"
        assert profile["social"]["steam"] == ""

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"display_name": "x" * 51},
            {"bio": "x" * 501},
            {"theme_color": "red"},
            {"social": {"myspace": "tom"}},
        ],
    )
    def test_validation(self, services, kwargs):
        bob = make_user(services, "bob")
        with pytest.raises(InvalidInput):
            services.users.update_profile(bob["id"], **kwargs)

    def test_replacing_avatar_deletes_previous_file(self, services):
        bob = make_user(services, "bob")
        first = services.media.save_image("a.png", b"1", "image/png")
        second = services.media.save_image("b.png", b"2", "image/png")
        services.users.set_profile_image(bob["id"], "avatar", first)
        profile = services.users.set_profile_image(bob["id"], "avatar", second)
        assert profile["avatar"] == second
        assert not services.media.resolve(first).exists()
        assert services.media.resolve(second).exists()

    def test_normalize_drops_unknown_keys(self):
        profile = normalize_profile({"bio": "x", "evil": 1, "social": {"steam": "s", "bad": "b"}})
        assert "evil" not in profile
        assert profile["social"] == {"steam": "s", "twitter": "", "youtube": "", "other": ""}


class TestEncryptPlainEmails:
    def test_rewrites_clear_rows(self, db_engine, cipher):
        """Rows written without a key are sealed once a key is configured."""
        clear = UserDirectory(db_engine, FieldCipher(None))
        clear.create("legacy", "Legacy@Example.com", "hash")

        sealed = UserDirectory(db_engine, cipher)
        assert sealed.encrypt_plain_emails() == 1
        with get_session(db_engine) as session:
            row = session.scalar(select(User))
            assert FieldCipher.is_encrypted(row.email)
        assert sealed.get_by_email("legacy@example.com")["username"] == "legacy"
        assert sealed.encrypt_plain_emails() == 0

    def test_noop_without_key(self, db_engine):
        directory = UserDirectory(db_engine, FieldCipher(None))
        directory.create("legacy", "legacy@example.com", "hash")
        assert directory.encrypt_plain_emails() == 0
