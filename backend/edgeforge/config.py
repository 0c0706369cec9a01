"""
Runtime configuration for the EdgeForge service.

RuntimeConfig holds process-level knobs (queue sizing, lock timings,
storage locations). Per-site optimization options live in
edgeforge.settings and are NOT configured here.

Values can be overridden with EDGEFORGE_* environment variables,
e.g. EDGEFORGE_MAX_CONCURRENT_BUILDS=4.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

ENV_PREFIX = "EDGEFORGE_"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class RuntimeConfig(BaseModel):
    """Immutable process configuration."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    db_path: str = str(Path.cwd() / "edgeforge.db")
    workspace_root: str = str(Path.cwd() / "workspaces")
    content_store_root: str = str(Path.cwd() / "content-store")
    content_store_base_url: str = "https://cdn.edgeforge.local"

    # Build queue
    max_concurrent_builds: int = Field(default=2, ge=1)
    build_attempts: int = Field(default=2, ge=1)
    build_backoff_seconds: float = Field(default=30.0, ge=0)
    lock_duration_seconds: float = Field(default=600.0, gt=0)
    stalled_interval_seconds: float = Field(default=30.0, gt=0)

    # Agent queue (serialized, slow external calls)
    agent_lock_duration_seconds: float = Field(default=1800.0, gt=0)
    agent_stalled_interval_seconds: float = Field(default=300.0, gt=0)

    # Monitor queue
    monitor_interval_seconds: float = Field(default=1800.0, gt=0)
    monitor_lock_duration_seconds: float = Field(default=300.0, gt=0)

    # Pipeline
    checkpoint_max_age_seconds: float = Field(default=6 * 3600.0, gt=0)
    optimizer_concurrency: int = Field(default=4, ge=1)
    migration_concurrency: int = Field(default=10, ge=1)
    migration_max_size_mb: float = Field(default=10.0, gt=0)

    # Build event streams
    event_subscriber_max_pending: int = Field(default=1000, ge=1)

    # Settings cache
    settings_cache_ttl_seconds: float = Field(default=300.0, ge=0)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RuntimeConfig":
        """
        Build config from EDGEFORGE_* environment variables.

        Unknown EDGEFORGE_* names are rejected by pydantic (extra="forbid").
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for key, raw in environ.items():
            if not key.startswith(ENV_PREFIX):
                continue
            values[key[len(ENV_PREFIX):].lower()] = raw
        return cls.model_validate(values)


def configure_logging(level: int = logging.INFO) -> None:
    """Configure root logging for the service process."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
