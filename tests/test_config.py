"""Tests for gitorch configuration loading."""

import os

import pytest
import yaml

from gitorch.config import ConfigError, GitorchConfig, get_gitorch_home, load_config


def _write_config(home, data):
    home.mkdir(parents=True, exist_ok=True)
    path = home / "config.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestGitorchHome:
    def test_env_override(self, isolated_home):
        assert get_gitorch_home() == isolated_home

    def test_default(self, monkeypatch):
        monkeypatch.delenv("GITORCH_HOME", raising=False)
        assert get_gitorch_home().name == "gitorch"


class TestFromDict:
    """Tests for GitorchConfig.from_dict()."""

    def test_defaults(self):
        config = GitorchConfig.from_dict({})
        assert config.validation.provider == "github-actions"
        assert config.error_handling.max_retries == 3
        assert config.error_handling.enable_rollback is True
        assert config.deploy.environment == "production"

    def test_sections_override_defaults(self):
        config = GitorchConfig.from_dict({
            "validation": {"provider": "gitlab-ci", "backoff": "linear"},
            "error_handling": {"max_retries": 5},
        })
        assert config.validation.provider == "gitlab-ci"
        assert config.validation.backoff == "linear"
        assert config.error_handling.max_retries == 5

    def test_unknown_top_level_key(self):
        with pytest.raises(ConfigError, match="Unknown config keys"):
            GitorchConfig.from_dict({"bigquery": {}})

    def test_unknown_section_key(self):
        with pytest.raises(ConfigError, match="Invalid config section 'git'"):
            GitorchConfig.from_dict({"git": {"colour": "blue"}})

    def test_section_must_be_mapping(self):
        with pytest.raises(ConfigError, match="must be a mapping"):
            GitorchConfig.from_dict({"deploy": ["production"]})

    def test_unsupported_provider(self):
        with pytest.raises(ConfigError, match="Unsupported validation provider"):
            GitorchConfig.from_dict({"validation": {"provider": "travis"}})

    def test_unknown_backoff(self):
        with pytest.raises(ConfigError, match="Unknown backoff"):
            GitorchConfig.from_dict({"validation": {"backoff": "exponential"}})

    def test_negative_retries(self):
        with pytest.raises(ConfigError, match="max_retries"):
            GitorchConfig.from_dict({"error_handling": {"max_retries": -1}})

    def test_negative_delay(self):
        with pytest.raises(ConfigError, match="retry_delay_seconds"):
            GitorchConfig.from_dict({"error_handling": {"retry_delay_seconds": -0.5}})

    @pytest.mark.parametrize("section, key", [
        ("validation", "poll_interval_seconds"),
        ("deploy", "readiness_interval_seconds"),
    ])
    @pytest.mark.parametrize("value", [0, -1])
    def test_poll_intervals_must_be_positive(self, section, key, value):
        with pytest.raises(ConfigError, match=f"{section}.{key} must be > 0"):
            GitorchConfig.from_dict({section: {key: value}})

    def test_bad_log_format(self):
        with pytest.raises(ConfigError, match="logging.format"):
            GitorchConfig.from_dict({"logging": {"format": "xml"}})

    def test_to_dict_round_trips(self):
        config = GitorchConfig.from_dict({"portal": {"base_url": "https://portal.example.test"}})
        assert GitorchConfig.from_dict(config.to_dict()).portal.base_url == "https://portal.example.test"


class TestLoadConfig:
    """Tests for load_config()."""

    def test_missing_file(self, isolated_home):
        with pytest.raises(FileNotFoundError, match="gitorch init"):
            load_config()

    def test_empty_file(self, isolated_home):
        isolated_home.mkdir(parents=True)
        (isolated_home / "config.yaml").write_text("")
        with pytest.raises(ConfigError, match="empty"):
            load_config()

    def test_invalid_yaml(self, isolated_home):
        isolated_home.mkdir(parents=True)
        (isolated_home / "config.yaml").write_text("git: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config()

    def test_not_a_mapping(self, isolated_home):
        isolated_home.mkdir(parents=True)
        (isolated_home / "config.yaml").write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config()

    def test_loads_from_home(self, isolated_home):
        _write_config(isolated_home, {"git": {"owner": "templates-team"}})
        config = load_config()
        assert config.git.owner == "templates-team"
        assert config.home == isolated_home

    def test_explicit_path(self, tmp_path):
        path = _write_config(tmp_path / "elsewhere", {"deploy": {"environment": "staging"}})
        assert load_config(path).deploy.environment == "staging"

    def test_env_file_loaded_without_override(self, isolated_home, monkeypatch):
        monkeypatch.delenv("GITORCH_PORTAL_TOKEN", raising=False)
        monkeypatch.setenv("GITORCH_TEST_EXISTING", "keep")
        env_path = isolated_home / ".env"
        _write_config(isolated_home, {"env_file": str(env_path)})
        env_path.write_text("GITORCH_PORTAL_TOKEN=secret-token\nGITORCH_TEST_EXISTING=replaced\n")

        try:
            config = load_config()
            assert config.portal.token == "secret-token"
            assert os.environ["GITORCH_TEST_EXISTING"] == "keep"
        finally:
            os.environ.pop("GITORCH_PORTAL_TOKEN", None)


class TestLoggingConfig:
    def test_log_path_relative_to_home(self, tmp_path):
        config = GitorchConfig.from_dict({"logging": {"output": "logs/run.log"}})
        assert config.logging.get_log_file_path(tmp_path) == tmp_path / "logs" / "run.log"

    def test_date_interpolation(self, tmp_path):
        config = GitorchConfig.from_dict({})
        path = config.logging.get_log_file_path(tmp_path)
        assert "{date}" not in str(path)
        assert path.name.startswith("gitorch-")

    def test_level_upper_cased(self):
        assert GitorchConfig.from_dict({"logging": {"level": "debug"}}).logging.get_log_level() == "DEBUG"
