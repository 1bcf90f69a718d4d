"""
Configuration management for the RTSP re-encoder.

Reads a YAML config file, then applies overrides from a .env file and
REENCODER_* environment variables. Every section and key is optional; anything
missing keeps its default.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional

import yaml
from dotenv import load_dotenv

from reencoder.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path("config.yaml")
DEFAULT_ENV_FILE = Path("/etc/reencoder/reencoder.env")
ENV_PREFIX = "REENCODER_"

VALID_TRANSPORTS = ("tcp", "udp")
VALID_OUTPUT_MODES = ("stdout", "rtsp")
VALID_PRESETS = ("UltraLowLatency", "ultrafast", "LowLatency", "fast", "HP", "medium", "HQ", "slow")
VALID_PROFILES = ("baseline", "main", "high")
VALID_CONTROL_RATES = ("cbr", "vbr")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

MIN_BITRATE_KBPS = 100
MAX_BITRATE_KBPS = 50000


@dataclass
class RtspConfig:
    """Upstream acquisition settings."""
    url: str = "rtsp://192.168.1.120:554/test"
    transport: str = "tcp"
    latency_ms: int = 200
    reconnect_delay_s: int = 3
    retry_count: int = 5
    tcp_timeout_ms: int = 5000


@dataclass
class EncoderConfig:
    """Hardware encoder settings."""
    width: int = 1280
    height: int = 720
    framerate: int = 30
    target_bitrate_kbps: int = 1800
    max_bitrate_kbps: int = 2000
    idr_interval: int = 30
    preset: str = "UltraLowLatency"
    profile: str = "high"
    control_rate: str = "cbr"


@dataclass
class OutputConfig:
    port: int = 8554
    path: str = "/stream"
    mode: str = "rtsp"  # stdout | rtsp


@dataclass
class StatsConfig:
    enabled: bool = True
    interval_s: int = 5


@dataclass
class ResilienceConfig:
    watchdog_timeout_s: int = 10
    max_pipeline_restarts: int = 0  # 0 = unlimited
    startup_grace_s: int = 0  # 0 = never time out before the first unit
    shutdown_grace_s: float = 2.0


@dataclass
class ControlConfig:
    host: str = "127.0.0.1"
    port: int = 0  # 0 = disabled


@dataclass
class PipelineConfig:
    """Complete re-encoder configuration."""

    rtsp: RtspConfig = field(default_factory=RtspConfig)
    encoder: EncoderConfig = field(default_factory=EncoderConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    stats: StatsConfig = field(default_factory=StatsConfig)
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)
    control: ControlConfig = field(default_factory=ControlConfig)
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def copy(self) -> "PipelineConfig":
        """Deep copy, used for the manager's working copy."""
        return dataclasses.replace(
            self,
            rtsp=dataclasses.replace(self.rtsp),
            encoder=dataclasses.replace(self.encoder),
            output=dataclasses.replace(self.output),
            stats=dataclasses.replace(self.stats),
            resilience=dataclasses.replace(self.resilience),
            control=dataclasses.replace(self.control),
        )

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigError: If any value is out of bounds
        """
        rtsp, enc, out = self.rtsp, self.encoder, self.output

        if not rtsp.url:
            raise ConfigError("RTSP URL cannot be empty")
        if rtsp.transport not in VALID_TRANSPORTS:
            raise ConfigError(f"RTSP transport must be 'tcp' or 'udp', got {rtsp.transport!r}")
        if rtsp.latency_ms < 0:
            raise ConfigError(f"Invalid RTSP latency: {rtsp.latency_ms} (must be >= 0)")
        if rtsp.reconnect_delay_s < 1:
            raise ConfigError(f"Invalid reconnect delay: {rtsp.reconnect_delay_s} (must be >= 1)")
        if rtsp.retry_count < 0 or rtsp.tcp_timeout_ms < 0:
            raise ConfigError("RTSP retry count and TCP timeout cannot be negative")

        if enc.width < 0 or enc.height < 0:
            raise ConfigError("Encoder width/height cannot be negative")
        if enc.framerate < 1 or enc.framerate > 120:
            raise ConfigError(f"Framerate must be between 1 and 120, got {enc.framerate}")
        if enc.max_bitrate_kbps < MIN_BITRATE_KBPS or enc.max_bitrate_kbps > MAX_BITRATE_KBPS:
            raise ConfigError(
                f"Max bitrate must be between {MIN_BITRATE_KBPS} and {MAX_BITRATE_KBPS} kbps, "
                f"got {enc.max_bitrate_kbps}"
            )
        if enc.target_bitrate_kbps < 1:
            raise ConfigError("Target bitrate must be >= 1 kbps")
        if enc.target_bitrate_kbps > enc.max_bitrate_kbps:
            raise ConfigError("Target bitrate cannot exceed max bitrate")
        if enc.idr_interval < 1:
            raise ConfigError("IDR interval must be >= 1")
        if enc.preset not in VALID_PRESETS:
            raise ConfigError(f"Unknown encoder preset {enc.preset!r} (must be one of: {', '.join(VALID_PRESETS)})")
        if enc.profile not in VALID_PROFILES:
            raise ConfigError(f"Unknown encoder profile {enc.profile!r} (must be one of: {', '.join(VALID_PROFILES)})")
        if enc.control_rate not in VALID_CONTROL_RATES:
            raise ConfigError(f"Control rate must be 'cbr' or 'vbr', got {enc.control_rate!r}")

        if out.port < 1 or out.port > 65535:
            raise ConfigError(f"Output port must be 1-65535, got {out.port}")
        if not out.path.startswith("/"):
            raise ConfigError(f"Output path must start with '/', got {out.path!r}")
        if out.mode not in VALID_OUTPUT_MODES:
            raise ConfigError(f"Output mode must be 'stdout' or 'rtsp', got {out.mode!r}")

        if self.stats.interval_s < 1:
            raise ConfigError("Stats interval must be >= 1 second")

        res = self.resilience
        if res.watchdog_timeout_s < 1:
            raise ConfigError("Watchdog timeout must be >= 1 second")
        if res.max_pipeline_restarts < 0:
            raise ConfigError("Max pipeline restarts cannot be negative")
        if res.startup_grace_s < 0:
            raise ConfigError("Startup grace period cannot be negative")
        if res.shutdown_grace_s < 0:
            raise ConfigError("Shutdown grace period cannot be negative")

        if self.control.port < 0 or self.control.port > 65535:
            raise ConfigError(f"Control port must be 0-65535, got {self.control.port}")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            raise ConfigError(
                f"Invalid log level: {self.log_level} "
                f"(must be one of: {', '.join(VALID_LOG_LEVELS)})"
            )

    def summary_lines(self) -> Iterator[str]:
        """Human-readable configuration banner."""
        enc = self.encoder
        yield "=" * 40
        yield "  RTSP Re-Encoder Configuration"
        yield "=" * 40
        yield f"  RTSP Source:  {self.rtsp.url}"
        yield f"  Transport:    {self.rtsp.transport}"
        yield f"  Latency:      {self.rtsp.latency_ms} ms"
        yield f"  Resolution:   {enc.width}x{enc.height}"
        yield f"  Framerate:    {enc.framerate} fps"
        yield f"  Bitrate:      {enc.target_bitrate_kbps} / {enc.max_bitrate_kbps} kbps (target/max)"
        yield f"  Rate Control: {enc.control_rate}"
        yield f"  Preset:       {enc.preset}"
        yield f"  Profile:      {enc.profile}"
        yield f"  IDR Interval: {enc.idr_interval} frames"
        if self.output.mode == "rtsp":
            yield f"  RTSP Output:  rtsp://localhost:{self.output.port}{self.output.path}"
        else:
            yield "  Output:       stdout (H.264 byte-stream)"
        yield f"  Watchdog:     {self.resilience.watchdog_timeout_s}s"
        yield "=" * 40


_SECTIONS = ("rtsp", "encoder", "output", "stats", "resilience", "control")


def _load_env_file() -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(os.getenv("REENCODER_ENV_FILE", str(DEFAULT_ENV_FILE)))
    if env_path.exists():
        load_dotenv(env_path, override=False)  # Don't override existing env vars


def _coerce(raw: str, current: Any, var: str) -> Any:
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, int):
        try:
            return int(raw)
        except ValueError:
            raise ConfigError(f"Invalid {var}: {raw} (must be an integer)")
    if isinstance(current, float):
        try:
            return float(raw)
        except ValueError:
            raise ConfigError(f"Invalid {var}: {raw} (must be a number)")
    return raw


def _apply_section(target: Any, values: Mapping[str, Any], section: str) -> None:
    if not isinstance(values, Mapping):
        raise ConfigError(f"Section '{section}' must be a mapping")
    known = {f.name for f in dataclasses.fields(target)}
    for key, value in values.items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key: {section}.{key}")
            continue
        current = getattr(target, key)
        if value is None:
            raise ConfigError(f"Invalid {section}.{key}: value is empty")
        if isinstance(current, bool):
            if not isinstance(value, bool):
                raise ConfigError(f"Invalid {section}.{key}: {value!r} (must be true or false)")
        elif isinstance(current, str):
            if not isinstance(value, str):
                raise ConfigError(f"Invalid {section}.{key}: {value!r} (must be a string)")
        elif isinstance(current, (int, float)):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"Invalid {section}.{key}: {value!r} (must be a number)")
            value = type(current)(value)
        setattr(target, key, value)


def _apply_env_overrides(config: PipelineConfig) -> None:
    for section in _SECTIONS:
        target = getattr(config, section)
        for f in dataclasses.fields(target):
            var = f"{ENV_PREFIX}{section.upper()}_{f.name.upper()}"
            raw = os.getenv(var)
            if raw is None or raw == "":
                continue
            setattr(target, f.name, _coerce(raw, getattr(target, f.name), var))

    log_level = os.getenv(f"{ENV_PREFIX}LOG_LEVEL")
    if log_level:
        config.log_level = log_level
    log_file = os.getenv(f"{ENV_PREFIX}LOG_FILE")
    if log_file is not None:
        config.log_file = log_file or None


def load_config(path: Optional[os.PathLike] = None) -> PipelineConfig:
    """
    Load and validate configuration.

    Args:
        path: YAML file to read (default: config.yaml). A missing file is not
              an error; defaults are used and a warning is logged.

    Returns:
        Validated PipelineConfig

    Raises:
        ConfigError: If the file cannot be parsed or any value is invalid
    """
    config = PipelineConfig()
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_FILE

    if not config_path.exists():
        logger.warning(f"Config file '{config_path}' not found, using defaults.")
    else:
        try:
            with open(config_path, "r") as f:
                root = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"YAML parse error: {e}")
        if not isinstance(root, Mapping):
            raise ConfigError("Config root must be a mapping")

        for section in _SECTIONS:
            if root.get(section) is not None:
                _apply_section(getattr(config, section), root[section], section)
        if root.get("log_level"):
            config.log_level = str(root["log_level"])
        if root.get("log_file"):
            config.log_file = str(root["log_file"])

    _load_env_file()
    _apply_env_overrides(config)

    config.validate()
    return config
