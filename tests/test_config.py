"""
tests/test_config.py — YAML Configuration Loader Tests
=======================================================
"""

from __future__ import annotations

import pytest

from tally.config import DEFAULT_REWARD_POINTS, TallyConfig, default_config, load_config


def _write(tmp_path, text: str):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_empty_file_gives_defaults(self, tmp_path):
        assert load_config(_write(tmp_path, "")) == TallyConfig()

    def test_sections_are_read(self, tmp_path):
        cfg = load_config(_write(tmp_path, """
app_name: FitTally
base_url: https://fit.example.com/
invitations:
  ttl_days: 14
  team_ttl_days: 3
reward_points:
  CLIENT_ACCEPTED: 15
retention:
  delay_days: 60
  window_hours: 12
  activity_lookback_days: 5
scheduler:
  retention_minutes: 30
  reconcile_hours: 24
"""))

        assert cfg.app_name == "FitTally"
        assert (cfg.invitation_ttl_days, cfg.team_invitation_ttl_days) == (14, 3)
        assert cfg.points_for("CLIENT_ACCEPTED") == 15
        assert cfg.points_for("TRAINER_ACCEPTED") == 25
        assert (cfg.retention_delay_days, cfg.retention_window_hours) == (60, 12)
        assert cfg.activity_lookback_days == 5
        assert cfg.retention_sweep_minutes == 30
        assert cfg.expiry_sweep_minutes == 60
        assert cfg.reconcile_hours == 24
        assert cfg.invitation_url("abc") == "https://fit.example.com/invitations/abc"

    def test_unknown_reward_type_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="Unknown reward type"):
            load_config(_write(tmp_path, "reward_points:\n  SIGNUP: 5\n"))

    def test_non_positive_reward_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="must be positive"):
            load_config(_write(tmp_path, "reward_points:\n  BONUS_RETENTION: 0\n"))

    def test_example_file_matches_defaults(self):
        from pathlib import Path

        example = Path(__file__).resolve().parent.parent / "config.yaml.example"
        assert load_config(example) == default_config()


class TestDefaults:
    def test_documented_amounts(self):
        cfg = default_config()
        assert cfg.reward_points == DEFAULT_REWARD_POINTS
        assert cfg.points_for("BONUS_TRAINER_VERIFICATION") == 100
        assert cfg.retention_delay_days == 30
        assert cfg.invitation_ttl_days == 7
