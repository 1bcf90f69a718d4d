"""
Mapping of encoder settings to nvv4l2h264enc property values.

The Jetson V4L2 encoder takes enum integers for preset, profile and rate
control, and bits per second for bitrates.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Dict

logger = logging.getLogger(__name__)


class PresetLevel(enum.IntEnum):
    DISABLE = 1
    ULTRA_FAST = 2  # UltraLowLatency
    FAST = 3  # LowLatency
    MEDIUM = 4  # HP
    SLOW = 5  # HQ


class Profile(enum.IntEnum):
    BASELINE = 0
    MAIN = 2
    HIGH = 4


class ControlRate(enum.IntEnum):
    DISABLE = 0
    CBR = 1
    VBR = 2


_PRESETS = {
    "UltraLowLatency": PresetLevel.ULTRA_FAST,
    "ultrafast": PresetLevel.ULTRA_FAST,
    "LowLatency": PresetLevel.FAST,
    "fast": PresetLevel.FAST,
    "HP": PresetLevel.MEDIUM,
    "medium": PresetLevel.MEDIUM,
    "HQ": PresetLevel.SLOW,
    "slow": PresetLevel.SLOW,
}

_PROFILES = {
    "baseline": Profile.BASELINE,
    "main": Profile.MAIN,
    "high": Profile.HIGH,
}

_CONTROL_RATES = {
    "cbr": ControlRate.CBR,
    "vbr": ControlRate.VBR,
}


def preset_to_enum(preset: str) -> PresetLevel:
    level = _PRESETS.get(preset)
    if level is None:
        logger.warning(f"Unknown preset '{preset}', defaulting to UltraFast")
        return PresetLevel.ULTRA_FAST
    return level


def profile_to_enum(profile: str) -> Profile:
    value = _PROFILES.get(profile)
    if value is None:
        logger.warning(f"Unknown profile '{profile}', defaulting to High")
        return Profile.HIGH
    return value


def control_rate_to_enum(rate: str) -> ControlRate:
    value = _CONTROL_RATES.get(rate)
    if value is None:
        logger.warning(f"Unknown control rate '{rate}', defaulting to CBR")
        return ControlRate.CBR
    return value


@dataclass(frozen=True)
class EncoderSettings:
    """Construction-time encoder parameters."""
    target_bitrate_kbps: int
    max_bitrate_kbps: int
    idr_interval: int
    preset: str
    profile: str
    control_rate: str
    framerate: int = 30

    def element_properties(self) -> Dict[str, object]:
        """Properties to set on the encoder element before PLAYING."""
        props = bitrate_properties(self.target_bitrate_kbps, self.max_bitrate_kbps)
        props.update({
            "control-rate": int(control_rate_to_enum(self.control_rate)),
            "preset-level": int(preset_to_enum(self.preset)),
            "profile": int(profile_to_enum(self.profile)),
            "idrinterval": self.idr_interval,
            "insert-sps-pps": True,
            "maxperf-enable": True,
            # Roughly one frame at the target rate keeps the output close to CBR
            "vbv-size": (self.target_bitrate_kbps * 1000) // max(self.framerate, 1),
        })
        return props


def bitrate_properties(target_kbps: int, max_kbps: int) -> Dict[str, object]:
    """Runtime-settable bitrate properties, in bits per second."""
    return {
        "bitrate": target_kbps * 1000,
        "peak-bitrate": max_kbps * 1000,
    }
