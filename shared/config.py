"""
Shared configuration management for the Table Access Layer.
"""

from typing import Dict, List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="TABLES_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Storage cluster
    cluster_uri: str = Field(default="memory://localhost")
    storage_backend: str = Field(default="memory")
    visible_instances: Optional[List[str]] = Field(default=None)
    memory_instances: Dict[str, List[str]] = Field(default_factory=dict)

    # Resource cache
    table_idle_expiry_seconds: float = Field(default=600.0, gt=0)
    reader_idle_expiry_seconds: float = Field(default=600.0, gt=0)
    expiry_sweep_interval_seconds: float = Field(default=60.0, gt=0)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
