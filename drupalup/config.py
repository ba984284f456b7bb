import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator
from pydantic_settings import BaseSettings

from drupalup.core.exceptions import ConfigurationError, SiteValidationError
from drupalup.schemas.site import SiteDescriptor

APP_NAME = "Drupal Updater"
APP_VERSION = "1.0.0"

SETTINGS_FILE_NAME = "drupalup.settings.yml"
SITES_FILE_NAME = "drupalup.sites.yml"

# Searched in order; the first directory holding each file wins.
DEFAULT_CONFIG_DIRS = [
    "~/drupalup",
    "~",
    "/usr/local/etc/drupalup",
    "/usr/local/etc",
]

# "Name <email@example.com>"
COMMIT_AUTHOR_PATTERN = re.compile(r"^[^<>]*\S\s+<[^<>\s@]+@[^<>\s@]+\.[^<>\s@]+>$")


class Settings(BaseSettings):
    """Process-level settings loaded from environment variables."""

    config_dir: str | None = None
    log_level: str = "info"
    log_file_path: str | None = None

    model_config = {"env_prefix": "drupalup_", "case_sensitive": False}


settings = Settings()


class GitConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    remote_key: str = "origin"
    commit_author: str
    main_branch: str = "master"
    update_branch: str = "drupal-updates"

    @field_validator("remote_key", "main_branch", "update_branch", mode="before")
    @classmethod
    def _default_when_empty(cls, value, info: ValidationInfo):
        if value is None or (isinstance(value, str) and not value.strip()):
            return cls.model_fields[info.field_name].get_default()
        return value

    @field_validator("commit_author")
    @classmethod
    def _valid_author(cls, value: str) -> str:
        if not COMMIT_AUTHOR_PATTERN.match(value.strip()):
            raise ValueError(
                'Git commit author must be in the format "Name <email@example.com>". '
                f"Value provided was: {value}."
            )
        return value.strip()


class TimeoutConfig(BaseModel):
    """Per-command timeouts in seconds."""

    short: int = Field(default=60, gt=0)
    long: int = Field(default=300, gt=0)


class AppConfig(BaseModel):
    """drupalup.settings.yml"""

    model_config = ConfigDict(extra="ignore")

    composer_path: str | None = None
    git_path: str | None = None
    log_file_path: str = "/var/log"
    post_update_script: str | None = None
    post_update_diff_files: list[str] = Field(default_factory=list)
    post_update_revert_files: list[str] = Field(default_factory=list)
    sanitize_databases_on_sync: bool
    always_notify: bool = False
    max_parallel_sites: int = Field(default=1, ge=1)
    git: GitConfig
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)

    @field_validator("composer_path", "git_path", "log_file_path", "post_update_script", "timeouts", mode="before")
    @classmethod
    def _default_when_empty(cls, value, info: ValidationInfo):
        if value is None or (isinstance(value, str) and not value.strip()):
            return cls.model_fields[info.field_name].get_default(call_default_factory=True)
        return value

    @field_validator("post_update_script")
    @classmethod
    def _valid_script(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                shlex.split(value)
            except ValueError as e:
                raise ValueError(f"Not a valid command line: {e}.")
        return value

    @field_validator("post_update_diff_files", "post_update_revert_files", mode="before")
    @classmethod
    def _file_list(cls, value):
        # YAML writes an empty list as {} or leaves the key blank.
        if not value:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, dict):
            return [str(v) for v in value.values()]
        return [str(v) for v in value]

    @property
    def diff_only_files(self) -> list[str]:
        """Diff files not also listed for reverting; the revert list wins."""
        revert = set(self.post_update_revert_files)
        return [f for f in self.post_update_diff_files if f not in revert]

    def resolved_log_dir(self) -> Path:
        return Path(self.log_file_path).expanduser()


@dataclass
class LoadedConfig:
    """Everything read from the configuration directories."""

    app: AppConfig
    settings_file: Path
    sites_file: Path
    sites: list[SiteDescriptor] = field(default_factory=list)
    invalid_sites: list[SiteValidationError] = field(default_factory=list)


def config_search_dirs(config_dir: str | None = None) -> list[Path]:
    dirs = [config_dir] if config_dir else []
    dirs.extend(DEFAULT_CONFIG_DIRS)
    return [Path(d).expanduser() for d in dirs]


def locate_config_files(config_dir: str | None = None) -> tuple[Path | None, Path | None]:
    """Find the settings and sites files independently of each other."""
    settings_file = None
    sites_file = None
    for base in config_search_dirs(config_dir):
        if settings_file is None and (base / SETTINGS_FILE_NAME).is_file():
            settings_file = base / SETTINGS_FILE_NAME
        if sites_file is None and (base / SITES_FILE_NAME).is_file():
            sites_file = base / SITES_FILE_NAME
    return settings_file, sites_file


def _read_yaml(path: Path):
    try:
        with open(path) as f:
            return yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not read {path}: {e}")


def _format_validation_error(exc: ValidationError) -> list[str]:
    messages = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err["loc"])
        message = err["msg"].removeprefix("Value error, ")
        messages.append(f"{location}: {message}" if location else message)
    return messages


def parse_app_config(data) -> AppConfig:
    if not data:
        raise ConfigurationError("No configuration file found or config file is empty.")
    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        errors = _format_validation_error(e)
        raise ConfigurationError("Invalid configuration: " + "; ".join(errors), details={"errors": errors})


def parse_sites(data) -> tuple[list[SiteDescriptor], list[SiteValidationError]]:
    """Validate each site on its own; a bad entry never hides the good ones."""
    if not data:
        raise ConfigurationError("No sites file found or sites file is empty.")
    if isinstance(data, dict):
        data = list(data.values())

    sites = []
    invalid = []
    for index, entry in enumerate(data):
        label = entry.get("uri") if isinstance(entry, dict) else None
        label = label if isinstance(label, str) else f"site #{index}"
        try:
            sites.append(SiteDescriptor.model_validate(entry))
        except ValidationError as e:
            errors = _format_validation_error(e)
            invalid.append(
                SiteValidationError(
                    message=f"Invalid site definition for {label}: " + "; ".join(errors),
                    details={"site": label, "errors": errors},
                )
            )
    return sites, invalid


def load_config(config_dir: str | None = None) -> LoadedConfig:
    settings_file, sites_file = locate_config_files(config_dir or settings.config_dir)
    if settings_file is None:
        raise ConfigurationError("No configuration file found or config file is empty.")
    if sites_file is None:
        raise ConfigurationError("No sites file found or sites file is empty.")

    app_config = parse_app_config(_read_yaml(settings_file))
    if settings.log_file_path:
        app_config.log_file_path = settings.log_file_path
    sites, invalid = parse_sites(_read_yaml(sites_file))
    return LoadedConfig(
        app=app_config,
        settings_file=settings_file,
        sites_file=sites_file,
        sites=sites,
        invalid_sites=invalid,
    )
