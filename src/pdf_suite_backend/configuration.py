from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

# Load environment variables from .env file
load_dotenv()

CONFIG_PATH_ENV = "PDF_SUITE_CONFIG"
ENV_PREFIX = "PDF_SUITE__"


@dataclass
class StorageConfig:
    upload_dir: str = "temp_uploads"
    output_dir: str = "temp_outputs"
    ttl_minutes: float = 30.0
    sweep_interval_seconds: float = 60.0
    shard_count: int = 16
    purge_on_shutdown: bool = True


@dataclass
class LimitsConfig:
    max_upload_bytes: int = 50 * 1024 * 1024
    max_upload_files: int = 50
    operation_timeout_seconds: float = 60.0
    max_stalled_jobs: int = 4
    max_json_bytes: int = 100 * 1024 * 1024
    max_compress_images: int = 2000


@dataclass
class RateLimitConfig:
    enabled: bool = True
    window_seconds: int = 15 * 60
    api_max_requests: int = 100
    upload_max_requests: int = 20


@dataclass
class ServiceConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


def _env_dotlist(environ: Dict[str, str]) -> List[str]:
    """Translate ``PDF_SUITE__RATE_LIMIT__ENABLED=false`` into ``rate_limit.enabled=false``."""
    dotlist = []
    for key, value in environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        path = key[len(ENV_PREFIX):].lower().replace("__", ".")
        if path:
            dotlist.append(f"{path}={value}")
    return dotlist


def load_config(overrides: Optional[Dict[str, Any]] = None, environ: Optional[Dict[str, str]] = None) -> DictConfig:
    """
    Build the runtime configuration.

    Precedence, lowest first: dataclass defaults, the YAML file named by
    ``PDF_SUITE_CONFIG``, ``PDF_SUITE__*`` environment variables, ``overrides``.
    Unknown keys raise, since the structured base is locked.
    """
    environ = dict(os.environ) if environ is None else environ
    base = OmegaConf.structured(ServiceConfig)
    OmegaConf.set_struct(base, True)

    layers = []
    config_file = environ.get(CONFIG_PATH_ENV)
    if config_file:
        path = Path(config_file)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found at {path}")
        layers.append(OmegaConf.load(path))

    dotlist = _env_dotlist(environ)
    if dotlist:
        layers.append(OmegaConf.from_dotlist(dotlist))

    if overrides:
        layers.append(OmegaConf.create(overrides))

    merged = OmegaConf.merge(base, *layers) if layers else base
    return merged
