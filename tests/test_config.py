"""
tests/test_config.py — YAML Configuration Loader Tests
========================================================
"""

from __future__ import annotations

from pathlib import Path

import pytest

from mentorguard.config import (
    GovernanceConfig,
    RateLimitSettings,
    load_config,
)

EXAMPLE = Path(__file__).resolve().parent.parent / "config.yaml.example"


class TestLoadConfig:
    def test_example_file_loads(self):
        cfg = load_config(EXAMPLE)
        assert cfg.rate_limit.max_requests_per_minute == 20
        assert cfg.copy_paste.similarity_threshold == 0.85
        assert cfg.temporal.gaming_threshold == 70
        assert cfg.security_alert_threshold == 95.0

    def test_missing_sections_keep_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("rate_limit:\n  max_requests_per_minute: 5\n", encoding="utf-8")
        cfg = load_config(path)
        assert cfg.rate_limit.max_requests_per_minute == 5
        assert cfg.rate_limit.max_requests_per_hour == 100
        assert cfg.context_cache == GovernanceConfig().context_cache

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path) == GovernanceConfig()

    def test_env_var_path(self, tmp_path, monkeypatch):
        path = tmp_path / "custom.yaml"
        path.write_text("temporal:\n  min_prompts: 5\n", encoding="utf-8")
        monkeypatch.setenv("MENTORGUARD_CONFIG", str(path))
        assert load_config().temporal.min_prompts == 5

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.yaml")

    def test_unknown_key_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("rate_limit:\n  max_requests_per_second: 1\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Unknown keys"):
            load_config(path)

    def test_section_must_be_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("temporal: 5\n", encoding="utf-8")
        with pytest.raises(ValueError, match="must be a mapping"):
            load_config(path)


class TestSettingsValidation:
    @pytest.mark.parametrize("window", [0, -1, 10, 30])
    def test_burst_window_bounds(self, window):
        with pytest.raises(ValueError):
            RateLimitSettings(burst_window_seconds=window)

    def test_negative_quota(self):
        with pytest.raises(ValueError):
            RateLimitSettings(max_requests_per_minute=-1)

    def test_burst_window_out_of_range_in_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("rate_limit:\n  burst_window_seconds: 60\n", encoding="utf-8")
        with pytest.raises(ValueError, match="burst_window_seconds"):
            load_config(path)
