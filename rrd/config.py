"""
Configuration for the round-robin store.

Values are layered, later layers winning:
1. rrd_config.json bundled with the package
2. an optional JSON file passed by the caller
3. RRD_* environment variables
4. an overrides dict (used by the CLI and tests)
"""

import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple
from dataclasses import dataclass, asdict


DEFAULT_CONFIG_PATH = Path(__file__).parent / "rrd_config.json"

BACKEND_CHOICES = ("arrow", "memory")


@dataclass
class StorageConfig:
    """Which backend to use and where it keeps its files."""
    backend: str
    base_path: str
    wal_path: str
    snapshot_path: str


@dataclass
class CapacityConfig:
    max_records: int
    reconcile_on_startup: bool


@dataclass
class WALConfig:
    """Write-ahead log and snapshot settings of the arrow backend."""
    fsync: bool
    max_segment_size_mb: int
    snapshot_interval: int
    compression: str


@dataclass
class ServerConfig:
    host: str
    port: int
    request_timeout: float


@dataclass
class LoggingConfig:
    level: str
    console_output: bool
    logs_path: str


def _as_bool(text: str) -> bool:
    return text.strip().lower() in ('true', '1', 'yes', 'on')


ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
    'RRD_STORAGE_BACKEND': ('storage', 'backend', str),
    'RRD_STORAGE_PATH': ('storage', 'base_path', str),
    'RRD_MAX_RECORDS': ('capacity', 'max_records', int),
    'RRD_RECONCILE_ON_STARTUP': ('capacity', 'reconcile_on_startup', _as_bool),
    'RRD_WAL_FSYNC': ('wal', 'fsync', _as_bool),
    'RRD_HTTP_HOST': ('server', 'host', str),
    'RRD_HTTP_PORT': ('server', 'port', int),
    'RRD_LOG_LEVEL': ('logging', 'level', str),
}


def _read_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path, 'r') as f:
        return json.load(f)


def _deep_merge(target: Dict[str, Any], source: Dict[str, Any]):
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        else:
            target[key] = value


class RRDConfig:
    """Typed view over the layered settings."""

    def __init__(self, config_path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        self.config_path = config_path

        data = _read_json(DEFAULT_CONFIG_PATH)
        if config_path:
            _deep_merge(data, _read_json(Path(config_path)))
        _deep_merge(data, self._environment())
        if overrides:
            _deep_merge(data, overrides)

        self.storage = StorageConfig(**data['storage'])
        self.capacity = CapacityConfig(**data['capacity'])
        self.wal = WALConfig(**data['wal'])
        self.server = ServerConfig(**data['server'])
        self.logging = LoggingConfig(**data['logging'])
        self._validate()

    @staticmethod
    def _environment() -> Dict[str, Any]:
        found: Dict[str, Any] = {}
        for env_var, (section, key, convert) in ENV_OVERRIDES.items():
            raw = os.getenv(env_var)
            if raw is not None:
                found.setdefault(section, {})[key] = convert(raw)
        return found

    def _validate(self):
        if self.storage.backend not in BACKEND_CHOICES:
            raise ValueError(f"Unknown storage backend {self.storage.backend!r}, expected one of {BACKEND_CHOICES}")
        if self.capacity.max_records <= 0:
            raise ValueError(f"capacity.max_records must be positive, got {self.capacity.max_records}")
        if self.wal.snapshot_interval <= 0:
            raise ValueError(f"wal.snapshot_interval must be positive, got {self.wal.snapshot_interval}")

    def get_storage_path(self) -> Path:
        return Path(self.storage.base_path)

    def get_wal_path(self) -> Path:
        return self.get_storage_path() / self.storage.wal_path

    def get_snapshot_path(self) -> Path:
        return self.get_storage_path() / self.storage.snapshot_path

    def get_logs_path(self) -> Path:
        """Log files live under the storage directory."""
        return self.get_storage_path() / self.logging.logs_path

    def to_dict(self) -> Dict[str, Any]:
        return {
            'storage': asdict(self.storage),
            'capacity': asdict(self.capacity),
            'wal': asdict(self.wal),
            'server': asdict(self.server),
            'logging': asdict(self.logging),
        }

    def save_to_file(self, path: str):
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def __repr__(self) -> str:
        return f"RRDConfig(config_path={self.config_path})"


_global_config: Optional[RRDConfig] = None


def get_config(config_path: Optional[str] = None) -> RRDConfig:
    """Process-wide config, loaded on first use. config_path only matters on the first call."""
    global _global_config
    if _global_config is None:
        _global_config = RRDConfig(config_path)
    return _global_config


def reset_config():
    """Forget the process-wide config (tests)."""
    global _global_config
    _global_config = None
