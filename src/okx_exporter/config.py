"""Configuration for the OKX exporter."""

import argparse
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import yaml

from .errors import ConfigurationError
from .topics import INSTRUMENT_ETH_USDT

# Looked up in order when --config is not given
DEFAULT_CONFIG_FILES = (Path("config.yaml"), Path("config/config.yaml"))


@dataclass
class OKXConfig:
    """Feed connection settings."""
    ws_host: str = "ws.okx.com:8443"
    instrument: str = INSTRUMENT_ETH_USDT

    read_timeout: float = 15.0  # Seconds without a pong before reconnecting
    write_timeout: float = 15.0
    ping_interval: float = 10.0
    queue_size: int = 100

    # Reconnect backoff
    reconnect_min_seconds: float = 1.0
    reconnect_max_seconds: float = 60.0


@dataclass
class ExporterConfig:
    """
    Configuration container for the exporter.

    Layered from defaults, environment variables, an optional YAML file and
    command-line flags, each overriding the previous one.
    """
    # HTTP server settings
    host: str = "0.0.0.0"
    port: int = 9100

    okx: OKXConfig = field(default_factory=OKXConfig)

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ExporterConfig":
        """Load configuration from environment variables."""
        env = os.environ if environ is None else environ
        try:
            return cls(
                host=env.get("HOST", "0.0.0.0"),
                port=int(env.get("PORT", "9100")),
                okx=OKXConfig(
                    ws_host=env.get("OKX_WS_HOST", "ws.okx.com:8443"),
                    instrument=env.get("OKX_INSTRUMENT", INSTRUMENT_ETH_USDT),
                    read_timeout=float(env.get("OKX_READ_TIMEOUT", "15")),
                    write_timeout=float(env.get("OKX_WRITE_TIMEOUT", "15")),
                    ping_interval=float(env.get("OKX_PING_INTERVAL", "10")),
                    queue_size=int(env.get("OKX_QUEUE_SIZE", "100")),
                    reconnect_min_seconds=float(env.get("OKX_RECONNECT_MIN_SECONDS", "1")),
                    reconnect_max_seconds=float(env.get("OKX_RECONNECT_MAX_SECONDS", "60")),
                ),
                log_level=env.get("LOG_LEVEL", "INFO"),
            )
        except ValueError as e:
            raise ConfigurationError(f"invalid environment value: {e}") from e

    def apply_mapping(self, data: Mapping[str, Any]) -> None:
        """
        Override fields from a mapping shaped like the YAML file:

            host: 0.0.0.0
            port: 9100
            okx:
              ws_host: ws.okx.com:8443
        """
        _apply(self, data, "")

    def apply_args(self, args: argparse.Namespace) -> None:
        """Override fields with command-line flags that were given."""
        if args.host is not None:
            self.host = args.host
        if args.port is not None:
            self.port = args.port
        if args.ws_host is not None:
            self.okx.ws_host = args.ws_host
        if args.instrument is not None:
            self.okx.instrument = args.instrument
        if args.log_level is not None:
            self.log_level = args.log_level

    def validate(self) -> None:
        """Validate configuration values."""
        if not self.host:
            raise ConfigurationError("host is required")

        if not self.port:
            raise ConfigurationError("port is required")

        if self.port < 1 or self.port > 65535:
            raise ConfigurationError("port must be between 1 and 65535")

        if not self.okx.ws_host:
            raise ConfigurationError("okx.ws_host is required")

        if not self.okx.instrument:
            raise ConfigurationError("okx.instrument is required")

        if self.okx.read_timeout <= 0 or self.okx.write_timeout <= 0:
            raise ConfigurationError("okx timeouts must be positive")

        if not 0 < self.okx.ping_interval < self.okx.read_timeout:
            raise ConfigurationError("okx.ping_interval must be positive and below okx.read_timeout")

        if self.okx.queue_size < 1:
            raise ConfigurationError("okx.queue_size must be positive")


def _apply(target: Any, data: Mapping[str, Any], prefix: str) -> None:
    known = {f.name: f for f in fields(target)}
    for key, value in data.items():
        if key not in known:
            raise ConfigurationError(f"unknown config key: {prefix}{key}")

        current = getattr(target, key)
        if isinstance(current, OKXConfig):
            if not isinstance(value, Mapping):
                raise ConfigurationError(f"{prefix}{key} must be a mapping")
            _apply(current, value, f"{prefix}{key}.")
            continue

        if value is None:
            raise ConfigurationError(f"{prefix}{key} must not be empty")
        if isinstance(current, int) and isinstance(value, float) and not value.is_integer():
            raise ConfigurationError(f"{prefix}{key} must be a whole number, got {value!r}")

        try:
            setattr(target, key, type(current)(value))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"invalid value for {prefix}{key}: {value!r}") from e


def load_yaml(path: Path) -> dict:
    """Read a YAML config file. An empty file yields an empty mapping."""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"can't read config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"config file {path} must contain a mapping")
    return data


def find_config_file(explicit: Optional[str] = None) -> Optional[Path]:
    """Return the config file to use, if any."""
    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise ConfigurationError(f"config file not found: {path}")
        return path

    for path in DEFAULT_CONFIG_FILES:
        if path.is_file():
            return path
    return None


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="okx-exporter",
        description="Export OKX market data as Prometheus metrics",
    )
    parser.add_argument("--config", help="Path to a YAML config file")
    parser.add_argument("--host", help="Metrics server listen host")
    parser.add_argument("--port", type=int, help="Metrics server listen port")
    parser.add_argument("--ws-host", dest="ws_host", help="OKX websocket host, e.g. ws.okx.com:8443")
    parser.add_argument("--instrument", help="Instrument to export, e.g. ETH-USDT")
    parser.add_argument("--log-level", dest="log_level", help="DEBUG, INFO, WARNING, ERROR")
    return parser


def load_config(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ExporterConfig:
    """
    Load configuration from env, an optional YAML file and flags.

    Raises:
        ConfigurationError: if any source is invalid
    """
    args = build_arg_parser().parse_args(argv)

    config = ExporterConfig.from_env(environ)

    path = find_config_file(args.config)
    if path is not None:
        config.apply_mapping(load_yaml(path))

    config.apply_args(args)
    return config
