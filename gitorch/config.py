"""
Configuration management for gitorch.

Configuration lives in <GITORCH_HOME>/config.yaml (default
~/.config/gitorch). An optional env_file is loaded into the process
environment with python-dotenv; existing variables are not overridden.
"""

import os
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from gitorch.poller import Backoff
from gitorch.providers import SUPPORTED_PROVIDERS


class ConfigError(Exception):
    """Configuration validation error."""
    pass


def get_gitorch_home() -> Path:
    """Config home: $GITORCH_HOME or ~/.config/gitorch."""
    env_home = os.environ.get("GITORCH_HOME")
    if env_home:
        return Path(env_home)
    return Path("~/.config/gitorch").expanduser()


@dataclass
class GitConfig:
    remote_url: str = "https://github.com"
    default_branch: str = "main"
    owner: str = "platform-team"
    repositories_root: str = "~/.local/share/gitorch/repos"


@dataclass
class ValidationConfig:
    provider: str = "github-actions"
    poll_interval_seconds: float = 5.0
    poll_timeout_seconds: float = 300.0
    backoff: str = "fixed"


@dataclass
class DeployConfig:
    environment: str = "production"
    serving_root: str = "~/.local/share/gitorch/serving"
    services: list[str] = field(default_factory=lambda: ["portal-frontend", "portal-backend", "catalog-processor"])
    readiness_interval_seconds: float = 10.0
    readiness_timeout_seconds: float = 300.0


@dataclass
class PortalConfig:
    base_url: Optional[str] = None
    token_env: str = "GITORCH_PORTAL_TOKEN"
    timeout_seconds: float = 30.0

    @property
    def token(self) -> Optional[str]:
        return os.environ.get(self.token_env)


@dataclass
class ErrorHandlingConfig:
    max_retries: int = 3
    retry_delay_seconds: float = 1.0
    enable_rollback: bool = True
    enable_recovery: bool = True


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "structured"
    console: bool = True
    output: str = "logs/gitorch-{date}.log"

    def get_log_file_path(self, home: Optional[Path] = None) -> Path:
        """Log file path with date interpolation, relative to home."""
        path = Path(self.output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))).expanduser()
        if not path.is_absolute() and home is not None:
            path = home / path
        return path

    def get_log_level(self) -> str:
        return self.level.upper()


SECTIONS = {
    "git": GitConfig,
    "validation": ValidationConfig,
    "deploy": DeployConfig,
    "portal": PortalConfig,
    "error_handling": ErrorHandlingConfig,
    "logging": LoggingConfig,
}


@dataclass
class GitorchConfig:
    """Complete gitorch configuration."""
    git: GitConfig = field(default_factory=GitConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    deploy: DeployConfig = field(default_factory=DeployConfig)
    portal: PortalConfig = field(default_factory=PortalConfig)
    error_handling: ErrorHandlingConfig = field(default_factory=ErrorHandlingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    env_file: Optional[str] = None
    home: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], home: Optional[Path] = None) -> "GitorchConfig":
        """
        Build a config from a parsed YAML mapping.

        Raises:
            ConfigError: On unknown keys, wrong section types or invalid values
        """
        unknown = set(data) - set(SECTIONS) - {"env_file"}
        if unknown:
            raise ConfigError(f"Unknown config keys: {sorted(unknown)}")

        sections: dict[str, Any] = {}
        for key, section_cls in SECTIONS.items():
            raw = data.get(key) or {}
            if not isinstance(raw, dict):
                raise ConfigError(f"Config section '{key}' must be a mapping")
            try:
                sections[key] = section_cls(**raw)
            except TypeError as e:
                raise ConfigError(f"Invalid config section '{key}': {e}")

        config = cls(**sections, env_file=data.get("env_file"), home=home)
        config.validate()
        return config

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {key: asdict(getattr(self, key)) for key in SECTIONS}
        result["env_file"] = self.env_file
        return result

    def validate(self) -> None:
        if self.validation.provider not in SUPPORTED_PROVIDERS:
            raise ConfigError(
                f"Unsupported validation provider '{self.validation.provider}'. "
                f"Supported: {', '.join(SUPPORTED_PROVIDERS)}"
            )
        try:
            Backoff(self.validation.backoff)
        except ValueError:
            raise ConfigError(f"Unknown backoff '{self.validation.backoff}' (use fixed or linear)")
        if self.error_handling.max_retries < 0:
            raise ConfigError("error_handling.max_retries must be >= 0")
        for name, value in (
            ("error_handling.retry_delay_seconds", self.error_handling.retry_delay_seconds),
            ("validation.poll_timeout_seconds", self.validation.poll_timeout_seconds),
            ("deploy.readiness_timeout_seconds", self.deploy.readiness_timeout_seconds),
        ):
            if value < 0:
                raise ConfigError(f"{name} must be >= 0")
        for name, value in (
            ("validation.poll_interval_seconds", self.validation.poll_interval_seconds),
            ("deploy.readiness_interval_seconds", self.deploy.readiness_interval_seconds),
        ):
            if value <= 0:
                raise ConfigError(f"{name} must be > 0")
        if self.logging.format not in ("structured", "pretty"):
            raise ConfigError(f"logging.format must be 'structured' or 'pretty', got '{self.logging.format}'")

    @staticmethod
    def default_dict(home: Path) -> dict[str, Any]:
        """Default config written by `gitorch init`."""
        data = GitorchConfig().to_dict()
        data["env_file"] = str(home / ".env")
        return data


def load_config(config_path: Optional[Path] = None) -> GitorchConfig:
    """
    Load gitorch configuration.

    Args:
        config_path: Path to config file. Defaults to <GITORCH_HOME>/config.yaml

    Returns:
        GitorchConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the config is empty or invalid
    """
    home = get_gitorch_home()
    if config_path is None:
        config_path = home / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(f"gitorch config.yaml not found at {config_path}. Run 'gitorch init'.")

    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")
    if not data:
        raise ConfigError("Configuration file is empty")
    if not isinstance(data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    config = GitorchConfig.from_dict(data, home=home)

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path, override=False)

    return config
