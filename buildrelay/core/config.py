"""Configuration for the build relay.

Two layers:

  Settings    : process settings loaded from environment variables / .env
              (tokens, timeouts, where the YAML config lives).
  RelayConfig : the static YAML file describing which repositories may
              upload, their webhook secrets, and the storage targets
              artifacts are fanned out to.

Both are read-only once loaded. RelayConfig is validated eagerly so a bad
storage template or an unknown storage reference stops the service at
startup instead of surfacing on the first check suite.
"""

from __future__ import annotations

import re
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Placeholders a storage path / public URL template may reference.
TEMPLATE_VARIABLES = frozenset(
    {
        "owner",
        "repo",
        "pull_number",
        "file_name",
        "file_basename",
        "file_extname",
        "file_hash",
        "commit_short_hash",
    }
)

TEMPLATE_PLACEHOLDER_RE = re.compile(r"\[:([a-zA-Z0-9_]+)\]")

DEFAULT_UPLOAD_LABEL = "allow-build-upload"
DEFAULT_BUILD_FILE_HASHES_PATTERN = r"BuildFileHashes: (\[.+\])"


class ConfigError(Exception):
    """Raised when the relay configuration file is missing or invalid."""


class Settings(BaseSettings):
    """Process settings loaded from environment variables.

    The GitHub token needs read access to pull requests, checks and
    Actions logs, and write access to issue comments on every
    repository listed in the relay config.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # GitHub
    github_auth_token: str = ""
    github_api_base: str = "https://api.github.com"
    github_timeout_seconds: float = 30.0

    # Path of the YAML relay config (repositories + storages).
    config_path: str = "config.yml"

    # Timeouts for the publishing stage. A timed-out call is retried once.
    log_fetch_timeout_seconds: float = 60.0
    storage_write_timeout_seconds: float = 120.0

    # Serialise job log retrieval process-wide. Only needed when the log
    # source is a singleton resource (e.g. a single scraping session).
    serialize_log_retrieval: bool = False

    # Rate limiting: SlowAPI format, applied per repository to uploads.
    upload_rate_limit: str = "60/minute"

    # Sentry: leave blank to disable error capture.
    sentry_dsn: str = ""

    # App
    debug: bool = True


def get_settings() -> Settings:
    return Settings()


class StorageDefinition(BaseModel):
    """A named storage target from the ``storages`` section."""

    method: Literal["file", "s3", "supabase"]
    path: str = Field(..., min_length=1)
    public_url: Optional[str] = None

    # Object stores (s3 / supabase)
    bucket: Optional[str] = None
    region: Optional[str] = None
    endpoint: str = "s3.amazonaws.com"
    secure: bool = True
    acl: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("path", "public_url")
    @classmethod
    def check_placeholders(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        unknown = set(template_placeholders(v)) - TEMPLATE_VARIABLES
        if unknown:
            raise ValueError(
                f"unknown template placeholder(s) {sorted(unknown)} in {v!r}"
            )
        return v

    @model_validator(mode="after")
    def check_backend_fields(self) -> "StorageDefinition":
        if self.method in ("s3", "supabase") and not self.bucket:
            raise ValueError(f"{self.method} storage requires a bucket")
        if self.method == "supabase" and not (self.supabase_url and self.supabase_key):
            raise ValueError("supabase storage requires supabase_url and supabase_key")
        return self


class RepositoryStorage(BaseModel):
    """One storage a repository publishes into."""

    storage: str
    publish_url: bool = False


class RepositoryConfig(BaseModel):
    gh_notify_secret: str = Field(..., min_length=1)
    storages: list[RepositoryStorage] = Field(default_factory=list)


class RelayConfig(BaseModel):
    """The parsed and validated YAML relay configuration."""

    repositories: dict[str, RepositoryConfig] = Field(default_factory=dict)
    storages: dict[str, StorageDefinition] = Field(default_factory=dict)
    build_allowed_upload_label: str = DEFAULT_UPLOAD_LABEL
    build_file_hashes_pattern: str = DEFAULT_BUILD_FILE_HASHES_PATTERN

    @field_validator("build_file_hashes_pattern")
    @classmethod
    def check_pattern(cls, v: str) -> str:
        try:
            compiled = re.compile(v)
        except re.error as exc:
            raise ValueError(f"invalid manifest pattern: {exc}") from exc
        if compiled.groups < 1:
            raise ValueError("manifest pattern must capture the JSON array in group 1")
        return v

    @model_validator(mode="after")
    def check_storage_references(self) -> "RelayConfig":
        for full_name, repo in self.repositories.items():
            if full_name.count("/") != 1:
                raise ValueError(f"repository key must be 'owner/repo', got {full_name!r}")
            for entry in repo.storages:
                if entry.storage not in self.storages:
                    raise ValueError(
                        f"repository {full_name} references undefined storage {entry.storage!r}"
                    )
        return self

    def is_allowed(self, owner: str, repo: str) -> bool:
        return f"{owner}/{repo}" in self.repositories

    def repository(self, owner: str, repo: str) -> Optional[RepositoryConfig]:
        return self.repositories.get(f"{owner}/{repo}")


def template_placeholders(template: str) -> list[str]:
    """Return the placeholder names referenced by a ``[:name]`` template."""
    return TEMPLATE_PLACEHOLDER_RE.findall(template)


def parse_relay_config(text: str) -> RelayConfig:
    """Parse and validate relay config YAML text.

    Raises:
        ConfigError: If the YAML is malformed or fails validation.
    """
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"config is not valid YAML: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")

    try:
        return RelayConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"invalid relay config: {exc}") from exc


def load_relay_config(path: str | Path) -> RelayConfig:
    """Read and validate the relay config file at ``path``."""
    config_file = Path(path)
    try:
        text = config_file.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(
            f"failed to read {config_file}; copy config.example.yml and adjust it"
        ) from exc
    return parse_relay_config(text)


@lru_cache(maxsize=1)
def _cached_relay_config(path: str) -> RelayConfig:
    return load_relay_config(path)


def get_relay_config() -> RelayConfig:
    """FastAPI dependency: the relay config named by ``Settings.config_path``."""
    return _cached_relay_config(get_settings().config_path)
