"""Tests for configuration loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from modsync.utils.config import BASE_DIR, Config, load_config


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults_without_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a missing file yields the documented defaults."""
        monkeypatch.delenv("CURSEFORGE_API_KEY", raising=False)
        monkeypatch.delenv("BOT_TOKEN", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.setenv("USERPROFILE", str(tmp_path))

        config = load_config(tmp_path / "missing.yaml")

        assert config.deployment.mode == "copy"
        assert config.updates.check_interval_hours == 6.0
        assert config.updates.recheck_after_minutes == 30.0
        assert config.backups.keep_count == 3
        assert config.api.batch_size == 100
        assert config.paths.mods_dir is None
        assert config.paths.data_dir == (BASE_DIR / "data").resolve()

    def test_yaml_values_and_env_substitution(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test YAML sections are applied and ${VAR} secrets resolved."""
        monkeypatch.setenv("MY_KEY", "from-env")
        path = tmp_path / "config.yaml"
        path.write_text(
            "api:\n"
            "  api_key: ${MY_KEY}\n"
            "  base_url: https://backend.example\n"
            "deployment:\n"
            "  mode: link\n"
            "paths:\n"
            f"  mods_dir: {tmp_path / 'Mods'}\n"
            f"  data_dir: {tmp_path / 'data'}\n"
        )

        config = load_config(path)

        assert config.api.api_key == "from-env"
        assert config.api.base_url == "https://backend.example"
        assert config.deployment.mode == "link"
        assert config.paths.mods_dir == tmp_path / "Mods"
        assert config.paths.update_state_file == tmp_path / "data" / "updates.json"

    def test_env_secret_fallback(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test secrets fall back to well-known environment variables."""
        monkeypatch.setenv("CURSEFORGE_API_KEY", "env-key")
        monkeypatch.setenv("BOT_TOKEN", "123:abc")

        config = load_config(tmp_path / "missing.yaml")

        assert config.api.api_key == "env-key"
        assert config.telegram.bot_token == "123:abc"

    def test_config_path_from_environment(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test MODSYNC_CONFIG selects the file when no path is given."""
        path = tmp_path / "alt.yaml"
        path.write_text("log_level: DEBUG\n")
        monkeypatch.setenv("MODSYNC_CONFIG", str(path))

        assert load_config().log_level == "DEBUG"

    def test_invalid_values_rejected(self) -> None:
        """Test out-of-range values fail validation."""
        with pytest.raises(ValidationError):
            Config(deployment={"mode": "hardlink"})
        with pytest.raises(ValidationError):
            Config(api={"batch_size": 500})

    def test_mods_dir_detected_when_unset(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the game's default mods folder fills in a missing mods_dir."""
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.setenv("USERPROFILE", str(tmp_path))
        mods = tmp_path / "Documents" / "Electronic Arts" / "The Sims 4" / "Mods"
        mods.mkdir(parents=True)

        assert load_config(tmp_path / "missing.yaml").paths.mods_dir == mods

        path = tmp_path / "config.yaml"
        path.write_text("paths:\n  auto_detect_mods_dir: false\n")
        assert load_config(path).paths.mods_dir is None
