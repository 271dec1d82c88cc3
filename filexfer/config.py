"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional
import json

from dotenv import load_dotenv

from .transfer.framing import DEFAULT_CHUNK_SIZE


@dataclass
class Config:
    """
    File transfer configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (FILEXFER_*)
    2. Config file (config.json)
    3. Default values
    """
    # Network
    host: str = '127.0.0.1'
    port: int = 5001

    # Protocol
    chunk_size: int = DEFAULT_CHUNK_SIZE

    # Storage
    storage_dir: Path = field(default_factory=lambda: Path('./storage'))
    download_dir: Path = field(default_factory=lambda: Path('.'))

    # Concurrency
    max_connections: int = 64

    # Timeouts (seconds, None disables)
    io_timeout: Optional[float] = 30.0
    idle_timeout: Optional[float] = None
    connect_timeout: float = 10.0

    # Logging
    log_level: str = 'INFO'

    def validate(self) -> 'Config':
        """
        Check value ranges.

        Raises:
            ValueError: on the first invalid field
        """
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if not 0 < self.chunk_size <= 16 * 1024 * 1024:
            raise ValueError(f"chunk_size must be positive and at most 16MB: {self.chunk_size}")
        if self.max_connections <= 0:
            raise ValueError(f"max_connections must be positive: {self.max_connections}")
        if self.io_timeout is not None and self.io_timeout <= 0:
            raise ValueError(f"io_timeout must be positive: {self.io_timeout}")
        if self.idle_timeout is not None and self.idle_timeout <= 0:
            raise ValueError(f"idle_timeout must be positive: {self.idle_timeout}")
        if self.connect_timeout <= 0:
            raise ValueError(f"connect_timeout must be positive: {self.connect_timeout}")
        return self

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Network
        config.host = os.getenv('FILEXFER_HOST', config.host)
        config.port = int(os.getenv('FILEXFER_PORT', config.port))

        # Protocol
        config.chunk_size = int(os.getenv('FILEXFER_CHUNK_SIZE', config.chunk_size))

        # Storage
        storage_dir = os.getenv('FILEXFER_STORAGE_DIR')
        if storage_dir:
            config.storage_dir = Path(storage_dir)
        download_dir = os.getenv('FILEXFER_DOWNLOAD_DIR')
        if download_dir:
            config.download_dir = Path(download_dir)

        # Concurrency
        config.max_connections = int(
            os.getenv('FILEXFER_MAX_CONNECTIONS', config.max_connections)
        )

        # Timeouts
        io_timeout = os.getenv('FILEXFER_IO_TIMEOUT')
        if io_timeout is not None:
            config.io_timeout = _parse_timeout(io_timeout)
        idle_timeout = os.getenv('FILEXFER_IDLE_TIMEOUT')
        if idle_timeout is not None:
            config.idle_timeout = _parse_timeout(idle_timeout)
        config.connect_timeout = float(
            os.getenv('FILEXFER_CONNECT_TIMEOUT', config.connect_timeout)
        )

        # Logging
        config.log_level = os.getenv('FILEXFER_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        # Network
        config.host = data.get('host', config.host)
        config.port = data.get('port', config.port)

        # Protocol
        config.chunk_size = data.get('chunk_size', config.chunk_size)

        # Storage
        if 'storage_dir' in data:
            config.storage_dir = Path(data['storage_dir'])
        if 'download_dir' in data:
            config.download_dir = Path(data['download_dir'])

        # Concurrency
        config.max_connections = data.get('max_connections', config.max_connections)

        # Timeouts
        config.io_timeout = data.get('io_timeout', config.io_timeout)
        config.idle_timeout = data.get('idle_timeout', config.idle_timeout)
        config.connect_timeout = data.get('connect_timeout', config.connect_timeout)

        # Logging
        config.log_level = data.get('log_level', config.log_level)

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'port': self.port,
            'chunk_size': self.chunk_size,
            'storage_dir': str(self.storage_dir),
            'download_dir': str(self.download_dir),
            'max_connections': self.max_connections,
            'io_timeout': self.io_timeout,
            'idle_timeout': self.idle_timeout,
            'connect_timeout': self.connect_timeout,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def _parse_timeout(value: str) -> Optional[float]:
    """Parse a timeout; 'none' or 'off' disable it."""
    if value.strip().lower() in ('', 'none', 'off'):
        return None
    return float(value)


# Config field -> environment variable overriding it
_ENV_VARS = {
    'host': 'FILEXFER_HOST',
    'port': 'FILEXFER_PORT',
    'chunk_size': 'FILEXFER_CHUNK_SIZE',
    'storage_dir': 'FILEXFER_STORAGE_DIR',
    'download_dir': 'FILEXFER_DOWNLOAD_DIR',
    'max_connections': 'FILEXFER_MAX_CONNECTIONS',
    'io_timeout': 'FILEXFER_IO_TIMEOUT',
    'idle_timeout': 'FILEXFER_IDLE_TIMEOUT',
    'connect_timeout': 'FILEXFER_CONNECT_TIMEOUT',
    'log_level': 'FILEXFER_LOG_LEVEL',
}


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    # Override with environment variables (from_env also loads .env)
    env_config = Config.from_env()

    # Every variable that is set wins, even when it equals the default
    for key, env_name in _ENV_VARS.items():
        if os.getenv(env_name):
            setattr(config, key, getattr(env_config, key))

    return config.validate()


# Example config file template
EXAMPLE_CONFIG = """
{
  "host": "127.0.0.1",
  "port": 5001,
  "chunk_size": 4096,
  "storage_dir": "./storage",
  "download_dir": ".",
  "max_connections": 64,
  "io_timeout": 30.0,
  "idle_timeout": null,
  "connect_timeout": 10.0,
  "log_level": "INFO"
}
"""

