"""
Gazer Configuration

Settings and configuration management.
"""
import logging
from typing import Optional
from pydantic_settings import BaseSettings


class GazerSettings(BaseSettings):
    """Controller configuration settings."""

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    # Control loop
    worker_count: int = 3
    short_requeue_seconds: int = 60
    long_requeue_seconds: int = 360
    resync_seconds: int = 30
    watch_timeout_seconds: int = 30
    ls_remote_timeout_seconds: float = 30.0

    # Build jobs
    job_prefix: str = "gazer-build"
    builder_image: str = "gcr.io/kaniko-project/executor:latest"

    # Cluster
    watch_namespace: Optional[str] = None
    kubeconfig: Optional[str] = None
    in_cluster: Optional[bool] = None

    log_level: str = "INFO"

    @property
    def log_level_number(self) -> int:
        """Get the numeric stdlib logging level (INFO if unknown)."""
        level = logging.getLevelName(self.log_level.upper())
        return level if isinstance(level, int) else logging.INFO

    class Config:
        env_prefix = "GAZER_"
        env_file = ".env"
        case_sensitive = False
