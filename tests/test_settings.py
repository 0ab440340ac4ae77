"""Tests for the settings store."""

from __future__ import annotations

import json

from dirstat.settings import Settings


class TestSettings:
    def test_defaults(self, isolate_settings):
        settings = Settings()
        assert settings.path == isolate_settings
        assert settings.progress_interval == 0.1
        assert settings.cross_filesystems is False
        assert settings.exclude_rules == [r".*/\.snapshot$"]
        assert settings.default_cache_name == "dirstat.cache.gz"

    def test_set_persists(self, isolate_settings):
        Settings().set("scan.cross_filesystems", True)

        assert json.loads(isolate_settings.read_text())["scan"]["cross_filesystems"] is True
        reloaded = Settings()
        assert reloaded.cross_filesystems is True
        assert reloaded.progress_interval == 0.1

    def test_file_merges_over_defaults(self, isolate_settings):
        isolate_settings.parent.mkdir(parents=True)
        isolate_settings.write_text(json.dumps({"scan": {"exclude_rules": [".*/node_modules"]}}))

        settings = Settings()
        assert settings.exclude_rules == [".*/node_modules"]
        assert settings.progress_interval == 0.1

    def test_corrupt_file_falls_back(self, isolate_settings):
        isolate_settings.parent.mkdir(parents=True)
        isolate_settings.write_text("{not json")

        assert Settings().default_cache_name == "dirstat.cache.gz"

    def test_bad_values_ignored(self, isolate_settings):
        isolate_settings.parent.mkdir(parents=True)
        isolate_settings.write_text(json.dumps({"scan": {"progress_interval": "fast", "exclude_rules": "x"}}))

        settings = Settings()
        assert settings.progress_interval == 0.1
        assert settings.exclude_rules == []

    def test_get_unknown_key(self):
        assert Settings().get("no.such.key", "fallback") == "fallback"

    def test_instance_is_shared(self):
        assert Settings.instance() is Settings.instance()
