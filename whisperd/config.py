"""
Whisper Configuration Management

Handles loading and validation of configuration from TOML file.
"""

from pathlib import Path
from typing import Any, Dict, Optional
from dataclasses import dataclass, field

import toml

from . import DEFAULT_TTL, KEY_SIZE


# Default configuration path
DEFAULT_CONFIG_PATH = Path("~/.whisper/config.toml").expanduser()

# Default data directory
DEFAULT_DATA_DIR = Path("~/.whisper").expanduser()

# Supported cipher names
CIPHER_NAMES = ("sha-stream", "chacha20-poly1305")

# Supported transport types
TRANSPORT_TYPES = ("loopback",)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class MeshConfig:
    """Flood routing configuration."""
    default_ttl: int = DEFAULT_TTL  # hops
    relay_addressed: bool = True
    seen_cache_size: int = 10000
    send_timeout: float = 5.0  # seconds


@dataclass
class StorageConfig:
    """Storage configuration."""
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)
    db_name: str = "whisper.db"
    timeout: float = 5.0  # seconds per backend call

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name


@dataclass
class SecurityConfig:
    """Security configuration."""
    cipher: str = "sha-stream"
    key_size: int = KEY_SIZE  # bytes


@dataclass
class TransportConfig:
    """Link layer configuration."""
    type: str = "loopback"
    latency_ms: int = 0
    loss_probability: float = 0.0


@dataclass
class Config:
    """
    Complete Whisper configuration.
    """
    # Node name (for display)
    node_name: str = ""

    # Sub-configurations
    mesh: MeshConfig = field(default_factory=MeshConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)

    # Paths
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG_PATH)

    # Logging
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> 'Config':
        """
        Load configuration from file.

        A missing file yields the defaults.

        Args:
            config_path: Path to config file (default: ~/.whisper/config.toml)

        Returns:
            Loaded configuration

        Raises:
            ValueError: If the file exists but is not valid TOML
        """
        path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
        config = cls()
        config.config_path = path

        if not path.exists():
            return config

        try:
            data = toml.load(path)
        except (toml.TomlDecodeError, OSError) as e:
            raise ValueError(f"Cannot read config {path}: {e}")

        config._apply_dict(data)
        return config

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary data to config."""
        # Top-level settings
        if "node_name" in data:
            self.node_name = str(data["node_name"])
        if "log_level" in data:
            self.log_level = str(data["log_level"]).upper()
        if "log_file" in data:
            self.log_file = Path(data["log_file"]).expanduser()

        # Mesh config
        if "mesh" in data:
            m = data["mesh"]
            if "default_ttl" in m:
                self.mesh.default_ttl = int(m["default_ttl"])
            if "relay_addressed" in m:
                self.mesh.relay_addressed = bool(m["relay_addressed"])
            if "seen_cache_size" in m:
                self.mesh.seen_cache_size = int(m["seen_cache_size"])
            if "send_timeout" in m:
                self.mesh.send_timeout = float(m["send_timeout"])

        # Storage config
        if "storage" in data:
            s = data["storage"]
            if "data_dir" in s:
                self.storage.data_dir = Path(s["data_dir"]).expanduser()
            if "db_name" in s:
                self.storage.db_name = str(s["db_name"])
            if "timeout" in s:
                self.storage.timeout = float(s["timeout"])

        # Security config
        if "security" in data:
            sec = data["security"]
            if "cipher" in sec:
                self.security.cipher = str(sec["cipher"])
            if "key_size" in sec:
                self.security.key_size = int(sec["key_size"])

        # Transport config
        if "transport" in data:
            t = data["transport"]
            if "type" in t:
                self.transport.type = str(t["type"])
            if "latency_ms" in t:
                self.transport.latency_ms = int(t["latency_ms"])
            if "loss_probability" in t:
                self.transport.loss_probability = float(t["loss_probability"])

    def validate(self) -> None:
        """
        Validate configuration.

        Raises:
            ValueError: If configuration is invalid
        """
        # Validate TTL
        if self.mesh.default_ttl < 0 or self.mesh.default_ttl > 255:
            raise ValueError(f"Invalid TTL: {self.mesh.default_ttl}")

        if self.mesh.seen_cache_size < 1:
            raise ValueError(f"Invalid seen cache size: {self.mesh.seen_cache_size}")

        if self.mesh.send_timeout <= 0:
            raise ValueError(f"Invalid send timeout: {self.mesh.send_timeout}")
        if self.storage.timeout <= 0:
            raise ValueError(f"Invalid storage timeout: {self.storage.timeout}")

        if self.security.key_size != KEY_SIZE:
            raise ValueError(f"Invalid key size: {self.security.key_size} (expected {KEY_SIZE})")

        if self.security.cipher not in CIPHER_NAMES:
            raise ValueError(f"Unknown cipher: {self.security.cipher}")

        if self.transport.type not in TRANSPORT_TYPES:
            raise ValueError(f"Unknown transport type: {self.transport.type}")

        if self.transport.latency_ms < 0:
            raise ValueError(f"Invalid latency: {self.transport.latency_ms}")

        if not 0.0 <= self.transport.loss_probability <= 1.0:
            raise ValueError(f"Invalid loss probability: {self.transport.loss_probability}")

        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {self.log_level}")
