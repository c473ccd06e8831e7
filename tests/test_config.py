"""
tests/test_config.py — YAML Configuration Loader
=================================================
"""

from __future__ import annotations

import pytest

from clipportal.config import ClipPortalConfig, load_config


class TestLoadConfig:
    def test_missing_file_uses_defaults(self, tmp_path):
        cfg = load_config(tmp_path / "absent.yaml")
        assert cfg == ClipPortalConfig()
        assert cfg.max_clip_seconds == 30
        assert cfg.backup_schedule == "0 2 * * *"

    def test_overrides(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "site_name: Frag Reel\nmax_clip_seconds: 45\nrequire_email_verification: false\n",
            encoding="utf-8",
        )
        cfg = load_config(path)
        assert cfg.site_name == "Frag Reel"
        assert cfg.max_clip_seconds == 45
        assert cfg.require_email_verification is False
        assert cfg.backup_retain == 30

    def test_env_var_points_at_file(self, tmp_path, monkeypatch):
        path = tmp_path / "elsewhere.yaml"
        path.write_text("audit_cap: 50\n", encoding="utf-8")
        monkeypatch.setenv("CLIPPORTAL_CONFIG", str(path))
        assert load_config().audit_cap == 50

    def test_unknown_keys_are_ignored(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("mystery: 1\n", encoding="utf-8")
        assert load_config(path) == ClipPortalConfig()

    def test_bad_value(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("backup_retain: lots\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Invalid value"):
            load_config(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ValueError, match="mapping"):
            load_config(path)

    def test_paths(self):
        cfg = ClipPortalConfig(media_dir="m", backup_dir="b")
        assert cfg.media_path.name == "m"
        assert cfg.backup_path.name == "b"
