"""
Service configuration loaded from the environment.
"""

import logging
import math
import os
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

BACKENDS = ("process", "docker")
ENVIRONMENTS = ("development", "production", "test")


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _list_env(name: str, default: str) -> List[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _pairs_env(name: str) -> Dict[str, str]:
    """Parse ``KEY=VALUE,KEY2=VALUE2`` into a dict."""
    pairs = {}
    for item in _list_env(name, ""):
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"{name} entries must look like KEY=VALUE, got {item!r}")
        pairs[key.strip()] = value
    return pairs


@dataclass
class Settings:
    """Runtime settings for the evaluator service."""

    redis_url: str = "redis://localhost:6379/0"
    host: str = "0.0.0.0"
    port: int = 8000
    public_url: Optional[str] = None
    script_ttl: int = 30
    eval_timeout: float = 10.0
    backend: str = "docker"
    python_executable: str = sys.executable
    image: str = "python:3.12-slim"
    memory_limit_mb: int = 512
    cpu_quota: int = 100000
    pids_limit: int = 16
    permissions: List[str] = field(default_factory=lambda: ["network", "environment"])
    worker_env: Dict[str, str] = field(default_factory=dict)
    max_message_bytes: int = 8 * 1024 * 1024
    max_log_entries: int = 1000
    environment: str = "production"
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])

    def __post_init__(self):
        if self.backend not in BACKENDS:
            raise ValueError(f"Unsupported sandbox backend: {self.backend}")
        if self.environment not in ENVIRONMENTS:
            raise ValueError(f"Unknown environment: {self.environment}")
        if not math.isfinite(self.eval_timeout) or self.eval_timeout <= 0:
            raise ValueError("EVAL_TIMEOUT must be a positive number of seconds")
        if self.script_ttl <= 0:
            raise ValueError("SCRIPT_TTL must be a positive number of seconds")
        if self.max_log_entries <= 0 or self.max_message_bytes <= 0:
            raise ValueError("Message and log limits must be positive")
        if not self.public_url:
            host = "host.docker.internal" if self.backend == "docker" else "127.0.0.1"
            self.public_url = f"http://{host}:{self.port}"
        self.public_url = self.public_url.rstrip("/")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def script_url(self, script_id: str) -> str:
        """URL a worker uses to fetch a staged script."""
        return f"{self.public_url}/scripts/{script_id}"

    @classmethod
    def from_env(cls) -> 'Settings':
        """Build settings from environment variables."""
        return cls(
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379/0"),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=_int_env("PORT", 8000),
            public_url=os.environ.get("PUBLIC_URL") or None,
            script_ttl=_int_env("SCRIPT_TTL", 30),
            eval_timeout=_float_env("EVAL_TIMEOUT", 10.0),
            backend=os.environ.get("SANDBOX_BACKEND", "docker").lower(),
            python_executable=os.environ.get("SANDBOX_PYTHON", sys.executable),
            image=os.environ.get("SANDBOX_IMAGE", "python:3.12-slim"),
            memory_limit_mb=_int_env("SANDBOX_MEMORY_MB", 512),
            cpu_quota=_int_env("SANDBOX_CPU_QUOTA", 100000),
            pids_limit=_int_env("SANDBOX_PIDS_LIMIT", 16),
            permissions=_list_env("SANDBOX_PERMISSIONS", "network,environment"),
            worker_env=_pairs_env("SANDBOX_ENV"),
            max_message_bytes=_int_env("MAX_MESSAGE_BYTES", 8 * 1024 * 1024),
            max_log_entries=_int_env("MAX_LOG_ENTRIES", 1000),
            environment=os.environ.get("EVALUATOR_ENV", "production").lower(),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
            cors_origins=_list_env("CORS_ORIGINS", "*"),
        )


def configure_logging(settings: Settings) -> None:
    """Configure root logging for the selected environment."""
    if settings.environment == "test":
        logging.basicConfig(level=logging.WARNING, format=LOG_FORMAT)
        return

    if settings.environment == "development":
        logging.basicConfig(level=settings.log_level, format=LOG_FORMAT, datefmt="%H:%M:%S")
        return

    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
