"""Berth configuration management.

Configuration sources (in priority order):
1. Environment variables (BERTH_ prefix)
2. Config file (config.yaml)
3. Defaults
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 9000


class ResourceSpec(BaseModel):
    """Container resource ceiling (fixed, not negotiated per session)."""

    cpus: float = 1.0
    memory: str = "1g"
    pids_limit: int = 256


class DockerConfig(BaseModel):
    """Container runtime configuration."""

    socket: str = "unix:///var/run/docker.sock"
    network: str | None = None

    # Shared base image, built once at startup
    image: str = "berth-user:latest"
    base_image: str = "node:20-bookworm-slim"
    dockerfile: str | None = None

    # Per-user containers are named <container_prefix><user id>
    container_prefix: str = "user-"
    workdir: str = "/workspace"
    shell: list[str] = Field(default_factory=lambda: ["/bin/bash", "-l"])
    resources: ResourceSpec = Field(default_factory=ResourceSpec)
    exposed_ports: list[int] = Field(default_factory=lambda: [3000, 5000, 8000, 8080])
    # Directory names pruned from the workspace manifest
    manifest_excludes: list[str] = Field(
        default_factory=lambda: ["node_modules", ".git", "__pycache__", ".cache"]
    )

    provision_timeout: float = 60.0
    command_timeout: float = 30.0


class S3Config(BaseModel):
    """S3-compatible object store (AWS S3, MinIO, R2)."""

    bucket: str = "berth-files"
    endpoint_url: str | None = None
    access_key: str | None = None
    secret_key: str | None = None
    region: str = "us-east-1"
    prefix: str = "users"


class DatabaseConfig(BaseModel):
    """Database configuration for the SQL durable store."""

    url: str = "sqlite+aiosqlite:///./berth.db"
    echo: bool = False


class StorageConfig(BaseModel):
    """Durable storage configuration."""

    backend: Literal["sql", "s3"] = "sql"
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    s3: S3Config = Field(default_factory=S3Config)
    # Upper bound on concurrent object writes during a bulk backup
    max_concurrency: int = 8
    health_timeout: float = 3.0


class SecurityConfig(BaseModel):
    """Security configuration."""

    jwt_secret: str = "dev-secret-change-in-production"
    jwt_algorithm: str = "HS256"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    json_logs: bool = False


class Settings(BaseSettings):
    """Berth application settings."""

    model_config = SettingsConfigDict(
        env_prefix="BERTH_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment wins over values passed in from the YAML file
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. BERTH_CONFIG_FILE environment variable
    2. ./config.yaml
    3. /etc/berth/config.yaml
    """
    config_paths = [
        os.environ.get("BERTH_CONFIG_FILE"),
        Path("config.yaml"),
        Path("/etc/berth/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Environment variables override values from the YAML file.
    """
    file_config = _load_config_file()
    return Settings(**file_config)
