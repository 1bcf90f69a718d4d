"""Runtime bitrate changes for the active stage."""

import logging
from typing import Optional, Tuple

from reencoder.config import MAX_BITRATE_KBPS, MIN_BITRATE_KBPS
from reencoder.errors import BitrateError
from reencoder.stage.base import TranscodeStageAdapter

logger = logging.getLogger(__name__)


def validate_bitrate(target_kbps: int, max_kbps: int) -> Tuple[int, int]:
    """
    Check a target/max pair against the same bounds as the config file.

    Raises:
        BitrateError: If either value is out of range or target > max
    """
    if isinstance(target_kbps, bool) or isinstance(max_kbps, bool):
        raise BitrateError("Bitrates must be integers")
    try:
        target, peak = int(target_kbps), int(max_kbps)
    except (TypeError, ValueError):
        raise BitrateError(f"Bitrates must be integers, got {target_kbps!r} / {max_kbps!r}")
    if peak < MIN_BITRATE_KBPS or peak > MAX_BITRATE_KBPS:
        raise BitrateError(
            f"Max bitrate must be between {MIN_BITRATE_KBPS} and {MAX_BITRATE_KBPS} kbps, got {peak}"
        )
    if target < 1:
        raise BitrateError("Target bitrate must be >= 1 kbps")
    if target > peak:
        raise BitrateError(f"Target bitrate ({target}) cannot exceed max bitrate ({peak})")
    return target, peak


class BitrateController:
    """Validates a new bitrate pair and forwards it to the stage. No rebuild."""

    def __init__(self) -> None:
        self.last_applied: Optional[Tuple[int, int]] = None

    def apply(self, stage: Optional[TranscodeStageAdapter], target_kbps: int, max_kbps: int) -> bool:
        """
        Returns:
            True if the stage received the new values, False if there is no
            active stage (the request is ignored)

        Raises:
            BitrateError: If the values are invalid
        """
        target, peak = validate_bitrate(target_kbps, max_kbps)
        if stage is None or not stage.is_active:
            logger.debug(f"Ignoring bitrate {target}/{peak} kbps: no active stage")
            return False
        stage.update_bitrate(target, peak)
        self.last_applied = (target, peak)
        return True
