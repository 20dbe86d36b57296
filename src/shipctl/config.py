"""Configuration management for shipctl using Pydantic."""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from shipctl.core.exceptions import ConfigError
from shipctl.core.output import OutputFormat
from shipctl.core.logging import LogLevel
from shipctl.core.utils import merge_dicts


def _env_int(*names: str) -> int | None:
    for name in names:
        value = os.environ.get(name)
        if value:
            try:
                return int(value)
            except ValueError:
                raise ConfigError(f"{name} must be an integer, got {value!r}")
    return None


class TargetConfig(BaseModel):
    """Remote host the service is deployed to."""

    host: str | None = None
    user: str = "ubuntu"
    port: int = 22
    identity_file: str | None = None
    connect_timeout: int = 10
    reachability_attempts: int = 4
    reachability_max_delay: float = 30.0

    def get_host(self) -> str | None:
        """Get target host from config or environment."""
        return os.environ.get("SHIPCTL_HOST") or os.environ.get("SERVER_HOST") or self.host

    def get_user(self) -> str:
        """Get SSH user from config or environment."""
        return os.environ.get("SHIPCTL_USER") or os.environ.get("SERVER_USER") or self.user

    def get_identity_file(self) -> str | None:
        """Get SSH private key path from config or environment."""
        path = os.environ.get("SHIPCTL_IDENTITY_FILE") or self.identity_file
        return str(Path(path).expanduser()) if path else None


class RegistryConfig(BaseModel):
    """Artifact registry configuration (Docker Hub compatible API)."""

    base_url: str = "https://hub.docker.com/v2"
    namespace: str | None = None
    repository: str = "todo-api"
    token: str | None = None
    page_size: int = 10
    mutable_aliases: list[str] = Field(default_factory=lambda: ["latest"])
    timeout: int = 30

    def get_namespace(self) -> str | None:
        """Get registry namespace (Docker user) from config or environment."""
        return (
            os.environ.get("SHIPCTL_REGISTRY_NAMESPACE")
            or os.environ.get("DOCKER_USERNAME")
            or self.namespace
        )

    def get_repository(self) -> str:
        """Get repository name from config or environment."""
        return os.environ.get("SHIPCTL_REPOSITORY") or os.environ.get("APP_NAME") or self.repository

    def get_token(self) -> str | None:
        """Get registry token from config or environment."""
        token = self.token
        if token == "from_env" or token is None:
            token = os.environ.get("SHIPCTL_REGISTRY_TOKEN") or os.environ.get("DOCKER_TOKEN")
        return token

    def full_repository(self, namespace: str | None = None) -> str:
        """Return ``namespace/repository``."""
        ns = namespace or self.get_namespace()
        if not ns:
            raise ConfigError(
                "Registry namespace not configured. Use --docker-user or set DOCKER_USERNAME."
            )
        return f"{ns}/{self.get_repository()}"


class HealthConfig(BaseModel):
    """Health endpoint polling configuration."""

    scheme: str = "http"
    port: int | None = None
    path: str = "/health"
    interval: float = 15.0
    max_attempts: int = 20
    request_timeout: float = 10.0

    @field_validator("scheme")
    @classmethod
    def validate_scheme(cls, v: str) -> str:
        if v not in ("http", "https"):
            raise ValueError("scheme must be 'http' or 'https'")
        return v

    @field_validator("max_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v

    def endpoint_for(self, host: str) -> str:
        """Build the health URL for ``host``."""
        netloc = f"{host}:{self.port}" if self.port else host
        return f"{self.scheme}://{netloc}{self.path}"


class DeployConfig(BaseModel):
    """Deployment orchestration configuration.

    The three commands are Jinja2 templates rendered with ``host``,
    ``image``, ``repository``, ``tag``, ``app_dir``, ``app_env`` and
    ``run_id``; use the ``shquote`` filter for shell quoting.
    """

    app_dir: str = "/opt/todo-api"
    app_env: str = "production"
    auto_rollback: bool = False
    prepare_command: str = "mkdir -p {{ app_dir | shquote }} && command -v docker >/dev/null"
    configure_command: str = (
        "printf 'APP_IMAGE=%s\\nAPP_ENV=%s\\nRELEASE_ID=%s\\n' "
        "{{ image | shquote }} {{ app_env | shquote }} {{ run_id | shquote }} "
        "> {{ app_dir | shquote }}/.env"
    )
    activate_command: str = (
        "cd {{ app_dir | shquote }} && docker compose pull && docker compose up -d --remove-orphans"
    )
    state_dir: str | None = None

    def get_app_env(self) -> str:
        """Get application environment from config or environment."""
        return os.environ.get("APP_ENV") or self.app_env


class BackupConfig(BaseModel):
    """Backup/restore configuration for the service's data store."""

    backup_dir: str = "/opt/todo-api/backups"
    container: str = "todo-api-mongodb-1"
    db_name: str = "todoapp"
    retention_days: int = 7
    schedule: str = "0 2 * * *"
    script_path: str = "/opt/todo-api/backup-db.sh"
    log_path: str = "/var/log/todo-api-backup.log"
    command_timeout: int = 1800

    def get_backup_dir(self) -> str:
        return os.environ.get("BACKUP_DIR") or self.backup_dir

    def get_container(self) -> str:
        return os.environ.get("CONTAINER_NAME") or self.container

    def get_db_name(self) -> str:
        return os.environ.get("DB_NAME") or self.db_name

    def get_retention_days(self) -> int:
        days = _env_int("SHIPCTL_RETENTION_DAYS", "RETENTION_DAYS")
        return days if days is not None else self.retention_days


class ProfileConfig(BaseModel):
    """Profile configuration grouping all service settings."""

    target: TargetConfig = Field(default_factory=TargetConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    backup: BackupConfig = Field(default_factory=BackupConfig)


class GlobalConfig(BaseModel):
    """Global settings."""

    output_format: OutputFormat = OutputFormat.TABLE
    color: str = "auto"  # auto, always, never
    verbosity: LogLevel = LogLevel.INFO
    dry_run: bool = False
    confirm_destructive: bool = True
    timeout: int = 300

    @field_validator("color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        if v not in ("auto", "always", "never"):
            raise ValueError("color must be 'auto', 'always', or 'never'")
        return v


class ShipCtlConfig(BaseModel):
    """Main configuration model."""

    model_config = {"populate_by_name": True}

    version: str = "1"
    global_settings: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    profiles: dict[str, ProfileConfig] = Field(default_factory=lambda: {"default": ProfileConfig()})

    def get_profile(self, name: str | None = None) -> ProfileConfig:
        """Get a profile by name, defaulting to 'default'."""
        profile_name = name or "default"
        if profile_name not in self.profiles:
            raise ConfigError(f"Profile '{profile_name}' not found")
        return self.profiles[profile_name]


class ConfigLoader:
    """Loads and merges configuration from multiple sources."""

    CONFIG_FILENAMES = ["shipctl.yaml", "shipctl.yml", ".shipctl.yaml", ".shipctl.yml"]

    def __init__(self):
        self._config: ShipCtlConfig | None = None

    def load(
        self,
        config_file: str | Path | None = None,
        profile: str | None = None,
    ) -> ShipCtlConfig:
        """Load configuration from files.

        Priority (highest to lowest):
        1. Explicitly specified config file
        2. Project config (./shipctl.yaml)
        3. User config (~/.shipctl/config.yaml)

        Environment variables are applied per field when values are read.

        Args:
            config_file: Optional explicit config file path
            profile: Profile name that must exist after loading

        Returns:
            Merged configuration
        """
        configs: list[dict[str, Any]] = []

        user_config_path = Path.home() / ".shipctl" / "config.yaml"
        if user_config_path.exists():
            configs.append(self._load_yaml_file(user_config_path))

        project_config = self._find_project_config()
        if project_config:
            configs.append(self._load_yaml_file(project_config))

        if config_file:
            config_path = Path(config_file)
            if not config_path.exists():
                raise ConfigError(f"Config file not found: {config_file}")
            configs.append(self._load_yaml_file(config_path))

        merged: dict[str, Any] = {}
        for config in configs:
            merged = merge_dicts(merged, config)

        try:
            self._config = ShipCtlConfig(**merged)
        except ValueError as e:
            raise ConfigError(f"Invalid configuration: {e}")

        if profile:
            self._config.get_profile(profile)

        return self._config

    def _find_project_config(self) -> Path | None:
        """Find project config file in current or parent directories."""
        current = Path.cwd()

        while current != current.parent:
            for filename in self.CONFIG_FILENAMES:
                config_path = current / filename
                if config_path.exists():
                    return config_path
            current = current.parent

        return None

    def _load_yaml_file(self, path: Path) -> dict[str, Any]:
        """Load a YAML config file."""
        try:
            with open(path) as f:
                content = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read {path}: {e}")

        if not isinstance(content, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return content


# Global config loader instance
_config_loader = ConfigLoader()


def load_config(
    config_file: str | Path | None = None,
    profile: str | None = None,
) -> ShipCtlConfig:
    """Load shipctl configuration.

    Args:
        config_file: Optional explicit config file path
        profile: Profile name to use

    Returns:
        Loaded configuration
    """
    return _config_loader.load(config_file, profile)


def get_default_config() -> ShipCtlConfig:
    """Get default configuration without loading from files."""
    return ShipCtlConfig()
