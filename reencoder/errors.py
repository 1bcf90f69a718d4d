"""
Error taxonomy for the re-encoder.

Stage-local faults (BuildError, ActivateError, RuntimeFault) are recovered at the
restart boundary. Consumer-local faults (ConsumerForwardError) never leave the
feeder that hit them. Only RestartBudgetExhausted escalates to process exit.
"""

import enum
from typing import Optional


class ReencoderError(Exception):
    """Base class for all re-encoder errors."""


class ConfigError(ReencoderError, ValueError):
    """Invalid or unreadable configuration. Always fatal at startup."""


class StageKind(enum.Enum):
    """Logical stage of the transcode chain, used to diagnose build failures."""
    ACQUISITION = "acquisition"
    DECODE = "decode"
    TRANSFORM = "transform"
    ENCODE = "encode"
    PARSE = "parse"
    OUTPUT = "output"


class StartError(ReencoderError):
    """The system (or one stage attempt) could not be brought up."""


class BuildError(StartError):
    """
    A stage element is unavailable or failed to link.

    Attributes:
        stage: Logical stage that failed
        element: Element factory or link name, when known
    """

    def __init__(self, stage: StageKind, message: str, element: Optional[str] = None):
        self.stage = stage
        self.element = element
        detail = f" ({element})" if element else ""
        super().__init__(f"{stage.value} stage failed{detail}: {message}")


class ActivateError(StartError):
    """The assembled chain did not reach the running state."""


class FaultKind(enum.Enum):
    ERROR = "error"
    END_OF_STREAM = "eos"


class RuntimeFault(ReencoderError):
    """
    Asynchronous fault reported by a running stage.

    Never raised across threads: stages record it in their FaultSignal and the
    supervising loop takes it on its next tick.
    """

    def __init__(self, kind: FaultKind, message: str = ""):
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {message}" if message else kind.value)


class ConsumerForwardError(ReencoderError):
    """Writing a unit to one downstream consumer failed."""


class RestartBudgetExhausted(ReencoderError):
    """Configured maximum number of restarts reached. Terminal."""

    def __init__(self, restarts: int, max_restarts: int):
        self.restarts = restarts
        self.max_restarts = max_restarts
        super().__init__(f"Max restarts reached ({restarts}/{max_restarts})")


class BitrateError(ReencoderError, ValueError):
    """Rejected target/max bitrate pair."""
